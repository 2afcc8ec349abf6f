from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.settings import GOOGLE_SYNC, SYNC
from utils.datetime_utils import UTC, coerce_calendar_date, to_rfc3339_utc, utc_now


logger = logging.getLogger("taskflow.google_calendar")

Event = Dict[str, Any]


class CalendarProviderError(RuntimeError):
    """A provider call failed; ``status`` carries the HTTP status when known."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status in (404, 410)

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class InvalidGrantError(CalendarProviderError):
    """The refresh token was revoked or expired; the user has to reconnect."""


class CalendarProvider(Protocol):
    def authorize(self, access_token: str) -> None: ...

    def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    def create_event(self, calendar_id: str, payload: Event) -> Event: ...

    def update_event(self, calendar_id: str, event_id: str, payload: Event) -> Event: ...

    def delete_event(self, calendar_id: str, event_id: str) -> None: ...

    def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]: ...

    def list_calendars(self) -> List[Dict[str, Any]]: ...


def _http_status(exc: HttpError) -> Optional[int]:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _wrap_http_error(exc: HttpError, action: str) -> CalendarProviderError:
    status = _http_status(exc)
    return CalendarProviderError(f"Google Calendar {action} failed ({status}): {exc}", status=status)


def _shift_all_day_end(event: Event, days: int) -> Event:
    end = event.get("end") or {}
    day = coerce_calendar_date(end.get("date")) if end.get("date") else None
    if day is None:
        return event
    return {**event, "end": {**end, "date": (day + timedelta(days=days)).isoformat()}}


def to_google_event(payload: Event) -> Event:
    """Inclusive all-day end date to the exclusive one Google stores."""
    return _shift_all_day_end(payload, 1)


def from_google_event(event: Event) -> Event:
    return _shift_all_day_end(event, -1)


class GoogleCalendar:
    """Google Calendar v3 client bound to one user's access token."""

    def __init__(
        self,
        client_id: str = GOOGLE_SYNC.client_id,
        client_secret: str = GOOGLE_SYNC.client_secret,
        *,
        token_uri: str = GOOGLE_SYNC.token_uri,
        scopes: tuple[str, ...] = GOOGLE_SYNC.scopes,
        service_factory: Callable[..., Any] = build,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri
        self.scopes = list(scopes)
        self._service_factory = service_factory
        self.service = None

    def _credentials(self, token: Optional[str], refresh_token: Optional[str] = None) -> Credentials:
        return Credentials(
            token=token,
            refresh_token=refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id or None,
            client_secret=self.client_secret or None,
            scopes=self.scopes,
        )

    def authorize(self, access_token: str) -> None:
        self.service = self._service_factory(
            "calendar",
            "v3",
            credentials=self._credentials(access_token),
            cache_discovery=False,
        )

    def _require_service(self):
        if self.service is None:
            raise CalendarProviderError("GoogleCalendar: authorize() was not called")
        return self.service

    # ----- events -----
    def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        service = self._require_service()
        params = dict(
            calendarId=calendar_id,
            timeMin=to_rfc3339_utc(time_min),
            timeMax=to_rfc3339_utc(time_max),
            singleEvents=True,
            orderBy="startTime",
            maxResults=SYNC.page_size,
        )
        if page_token:
            params["pageToken"] = page_token
        try:
            res = service.events().list(**params).execute()
        except HttpError as exc:
            raise _wrap_http_error(exc, "list") from exc
        result: Dict[str, Any] = {"items": [from_google_event(item) for item in res.get("items", [])]}
        if res.get("nextPageToken"):
            result["nextPageToken"] = res["nextPageToken"]
        return result

    def create_event(self, calendar_id: str, payload: Event) -> Event:
        service = self._require_service()
        try:
            created = service.events().insert(calendarId=calendar_id, body=to_google_event(payload)).execute()
        except HttpError as exc:
            raise _wrap_http_error(exc, "insert") from exc
        return from_google_event(created)

    def update_event(self, calendar_id: str, event_id: str, payload: Event) -> Event:
        service = self._require_service()
        try:
            updated = service.events().update(
                calendarId=calendar_id, eventId=event_id, body=to_google_event(payload)
            ).execute()
        except HttpError as exc:
            raise _wrap_http_error(exc, "update") from exc
        return from_google_event(updated)

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        service = self._require_service()
        try:
            service.events().delete(calendarId=calendar_id, eventId=event_id).execute()
        except HttpError as exc:
            if _http_status(exc) in (404, 410):
                logger.debug("Event %s already gone from %s", event_id, calendar_id)
                return
            raise _wrap_http_error(exc, "delete") from exc

    # ----- calendars -----
    def list_calendars(self) -> List[Dict[str, Any]]:
        service = self._require_service()
        calendars: List[Dict[str, Any]] = []
        page_token = None
        while True:
            try:
                res = service.calendarList().list(pageToken=page_token).execute()
            except HttpError as exc:
                raise _wrap_http_error(exc, "calendarList") from exc
            for item in res.get("items", []):
                calendars.append(
                    {
                        "id": item.get("id"),
                        "summary": item.get("summary") or item.get("id"),
                        "primary": bool(item.get("primary")),
                    }
                )
            page_token = res.get("nextPageToken")
            if not page_token:
                return calendars

    # ----- tokens -----
    def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        creds = self._credentials(None, refresh_token)
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            if "invalid_grant" in str(exc):
                raise InvalidGrantError(f"Refresh token rejected: {exc}", status=400) from exc
            raise CalendarProviderError(f"Token refresh failed: {exc}") from exc
        except TransportError as exc:
            raise CalendarProviderError(f"Token endpoint unreachable: {exc}") from exc

        expires_in = 3600
        if creds.expiry is not None:
            # google-auth keeps expiry as naive UTC
            expiry = creds.expiry.replace(tzinfo=UTC)
            expires_in = max(0, int((expiry - utc_now()).total_seconds()))
        return {"access_token": creds.token, "expires_in": expires_in}


__all__ = [
    "CalendarProvider",
    "CalendarProviderError",
    "Event",
    "GoogleCalendar",
    "InvalidGrantError",
    "from_google_event",
    "to_google_event",
]
