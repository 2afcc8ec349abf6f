"""Persistence of OAuth tokens, auto-sync preferences and calendar selection."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from sqlmodel import Session, select

from core.settings import GOOGLE_SYNC, SYNC
from models.integration import CalendarSetting, UserIntegration
from storage.db import get_session
from utils.datetime_utils import ensure_utc, utc_now


logger = logging.getLogger("taskflow.integrations")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # instants are written aware UTC
    return ensure_utc(value)


class IntegrationStore:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        provider: str = GOOGLE_SYNC.provider,
    ):
        self._session_factory = session_factory
        self.provider = provider

    def _load(self, session: Session, user_id: str) -> Optional[UserIntegration]:
        return session.get(UserIntegration, (user_id, self.provider))

    def get(self, user_id: str) -> Optional[UserIntegration]:
        with self._session_factory() as session:
            return self._load(session, user_id)

    def _modify(self, user_id: str, create: bool = False, **fields: Any) -> Optional[UserIntegration]:
        with self._session_factory() as session:
            record = self._load(session, user_id)
            if record is None:
                if not create:
                    return None
                record = UserIntegration(user_id=user_id, provider=self.provider)
            for key, value in fields.items():
                if isinstance(value, datetime):
                    value = _as_utc(value)
                setattr(record, key, value)
            record.updated_at = utc_now()
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def save_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> UserIntegration:
        """Store a freshly granted token set and mark the integration connected."""

        fields: dict = {
            "access_token": access_token,
            "token_expires_at": expires_at,
            "connected": True,
            "auto_sync_enabled": True,
        }
        # Google omits the refresh token on repeat consent
        if refresh_token:
            fields["refresh_token"] = refresh_token
        return self._modify(user_id, create=True, **fields)

    def update_access_token(self, user_id: str, access_token: str, expires_at: Optional[datetime]) -> None:
        self._modify(user_id, access_token=access_token, token_expires_at=expires_at)

    def mark_disconnected(self, user_id: str) -> None:
        """Consent was revoked: keep the row, stop all syncing until reconnect."""

        logger.warning("Marking %s integration of %s as disconnected", self.provider, user_id)
        self._modify(
            user_id,
            connected=False,
            auto_sync_enabled=False,
            access_token=None,
            token_expires_at=None,
        )

    def disconnect(self, user_id: str) -> None:
        self._modify(
            user_id,
            connected=False,
            auto_sync_enabled=False,
            access_token=None,
            refresh_token=None,
            token_expires_at=None,
        )

    def set_auto_sync(self, user_id: str, enabled: bool, interval_minutes: Optional[int] = None) -> None:
        fields: dict = {"auto_sync_enabled": bool(enabled)}
        if interval_minutes is not None:
            if interval_minutes < 1:
                raise ValueError("Sync interval must be at least one minute")
            fields["sync_interval_minutes"] = int(interval_minutes)
        self._modify(user_id, **fields)

    def sync_window(self, user_id: str) -> Tuple[int, int]:
        """Days before and after now that a pull covers for ``user_id``."""

        record = self.get(user_id)
        if record is None:
            return SYNC.lookback_days, SYNC.lookahead_days
        return record.days_past, record.days_future

    def set_sync_window(
        self, user_id: str, days_past: Optional[int] = None, days_future: Optional[int] = None
    ) -> None:
        fields: dict = {}
        if days_past is not None:
            if days_past < 0:
                raise ValueError("Days in the past must not be negative")
            fields["days_past"] = int(days_past)
        if days_future is not None:
            if days_future < 1:
                raise ValueError("Days in the future must be at least one")
            fields["days_future"] = int(days_future)
        if fields:
            self._modify(user_id, **fields)

    def mark_synced(self, user_id: str, when: datetime) -> None:
        self._modify(user_id, last_synced_at=when)

    # ----- calendars -----
    def list_calendars(self, user_id: str) -> List[CalendarSetting]:
        with self._session_factory() as session:
            stmt = (
                select(CalendarSetting)
                .where(CalendarSetting.user_id == user_id)
                .order_by(CalendarSetting.calendar_id.asc())
            )
            return list(session.exec(stmt))

    def enabled_calendar_ids(self, user_id: str, default: str = SYNC.default_calendar_id) -> List[str]:
        """Calendars taking part in sync; the default calendar is enabled when none are."""

        with self._session_factory() as session:
            stmt = select(CalendarSetting).where(
                CalendarSetting.user_id == user_id,
                CalendarSetting.enabled == True,  # noqa: E712
            )
            enabled = [row.calendar_id for row in session.exec(stmt)]
            if enabled:
                return sorted(enabled)

            record = session.get(CalendarSetting, (user_id, default))
            if record is None:
                record = CalendarSetting(user_id=user_id, calendar_id=default, name=default)
            record.enabled = True
            session.add(record)
            session.commit()
            logger.info("No calendars enabled for %s, enabling %s", user_id, default)
            return [default]

    def set_calendar_enabled(self, user_id: str, calendar_id: str, enabled: bool) -> None:
        with self._session_factory() as session:
            record = session.get(CalendarSetting, (user_id, calendar_id))
            if record is None:
                record = CalendarSetting(user_id=user_id, calendar_id=calendar_id, name=calendar_id)
            record.enabled = bool(enabled)
            session.add(record)
            session.commit()

    def upsert_calendars(self, user_id: str, calendars: Iterable[Mapping[str, Any]]) -> List[CalendarSetting]:
        """Record calendars reported by the provider; new ones start enabled only if primary.

        The primary calendar is stored under the ``primary`` alias so it is
        never synced twice under two ids.
        """

        with self._session_factory() as session:
            for item in calendars:
                calendar_id = SYNC.default_calendar_id if item.get("primary") else item.get("id")
                if not calendar_id:
                    continue
                record = session.get(CalendarSetting, (user_id, calendar_id))
                if record is None:
                    record = CalendarSetting(
                        user_id=user_id,
                        calendar_id=calendar_id,
                        enabled=bool(item.get("primary")),
                    )
                record.name = item.get("summary") or calendar_id
                session.add(record)
            session.commit()
        return self.list_calendars(user_id)


__all__ = ["IntegrationStore"]
