"""In-memory stand-ins for the storage and calendar ports used by the tests."""

from __future__ import annotations

import copy
import itertools
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.entities import TaskHistoryEntry
from services.google_calendar import CalendarProviderError, InvalidGrantError
from services.task_repository import TaskChange, TaskNotFoundError
from utils.datetime_utils import to_rfc3339_utc, utc_now


class InMemoryTaskStore:
    """Dictionary-backed implementation of the task storage port."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.history: List[tuple[str, TaskHistoryEntry]] = []
        self.listeners: Dict[str, List[Callable[[TaskChange], None]]] = {}
        self.clock = clock
        self.updates: List[tuple[str, Dict[str, Any]]] = []

    def _emit(self, kind: str, row: Dict[str, Any]) -> None:
        for listener in list(self.listeners.get(row.get("user_id"), [])):
            listener(TaskChange(kind, copy.deepcopy(row)))

    def _record(self, user_id, history):
        if history is not None:
            self.history.append((user_id, history))

    def insert(self, row, history=None):
        stored = copy.deepcopy(dict(row))
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("tags", [])
        if not stored.get("updated_at"):
            stored["updated_at"] = to_rfc3339_utc(self.clock())
        self.rows[stored["id"]] = stored
        self._record(stored.get("user_id"), history)
        self._emit("insert", stored)
        return copy.deepcopy(stored)

    def update(self, task_id, changes, history=None):
        if task_id not in self.rows:
            raise TaskNotFoundError(task_id)
        self.updates.append((task_id, copy.deepcopy(dict(changes))))
        stored = self.rows[task_id]
        stored.update(copy.deepcopy(dict(changes)))
        if "updated_at" not in changes:
            stored["updated_at"] = to_rfc3339_utc(self.clock())
        self._record(stored.get("user_id"), history)
        self._emit("update", stored)
        return copy.deepcopy(stored)

    def delete(self, task_id, history=None):
        removed = self.rows.pop(task_id, None)
        if removed is not None:
            self._record(removed.get("user_id"), history)
            self._emit("delete", removed)

    def get(self, task_id):
        row = self.rows.get(task_id)
        return copy.deepcopy(row) if row is not None else None

    def find_by_event(self, user_id, calendar_id, event_id):
        for row in self.rows.values():
            if (
                row.get("user_id") == user_id
                and row.get("google_calendar_id") == calendar_id
                and row.get("google_calendar_event_id") == event_id
            ):
                return copy.deepcopy(row)
        return None

    def list_by_user(self, user_id):
        return [copy.deepcopy(r) for r in self.rows.values() if r.get("user_id") == user_id]

    def subscribe(self, user_id, callback):
        self.listeners.setdefault(user_id, []).append(callback)
        return lambda: self.listeners[user_id].remove(callback)

    def append_history(self, user_id, entry):
        self.history.append((user_id, entry))
        return entry

    def list_history(self, user_id, task_id=None):
        return [e for uid, e in self.history if uid == user_id and (task_id is None or e.task_id == task_id)]


class FakeCalendarProvider:
    """Calendar provider keeping events per calendar in memory."""

    def __init__(self, clock: Callable[[], datetime] = utc_now, page_size: int = 50):
        self.events: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.clock = clock
        self.page_size = page_size
        self.ids = itertools.count(1)
        self.authorized_with: List[str] = []
        self.calls: List[tuple] = []
        self.refresh_result: Any = {"access_token": "fresh-token", "expires_in": 3600}
        self.fail_titles: set[str] = set()
        self.update_error: Optional[CalendarProviderError] = None
        self.delete_error: Optional[CalendarProviderError] = None
        self.calendars = [{"id": "me@example.com", "summary": "Me", "primary": True}]

    # helpers for arranging test data
    def add_event(self, calendar_id: str = "primary", **event: Any) -> Dict[str, Any]:
        event.setdefault("id", f"evt-{next(self.ids)}")
        event.setdefault("status", "confirmed")
        event.setdefault("updated", to_rfc3339_utc(self.clock()))
        self.events.setdefault(calendar_id, {})[event["id"]] = event
        return event

    def authorize(self, access_token):
        self.authorized_with.append(access_token)

    def list_events(self, calendar_id, time_min, time_max, page_token=None):
        self.calls.append(("list", calendar_id, time_min, time_max, page_token))
        items = list(self.events.get(calendar_id, {}).values())
        start = int(page_token or 0)
        page = items[start:start + self.page_size]
        result: Dict[str, Any] = {"items": copy.deepcopy(page)}
        if start + self.page_size < len(items):
            result["nextPageToken"] = str(start + self.page_size)
        return result

    def create_event(self, calendar_id, payload):
        self.calls.append(("create", calendar_id, copy.deepcopy(payload)))
        if payload.get("summary") in self.fail_titles:
            raise CalendarProviderError("backend error", status=503)
        return copy.deepcopy(self.add_event(calendar_id, **copy.deepcopy(payload)))

    def update_event(self, calendar_id, event_id, payload):
        self.calls.append(("update", calendar_id, event_id, copy.deepcopy(payload)))
        if self.update_error is not None:
            raise self.update_error
        if payload.get("summary") in self.fail_titles:
            raise CalendarProviderError("backend error", status=503)
        if event_id not in self.events.get(calendar_id, {}):
            raise CalendarProviderError("not found", status=404)
        event = dict(payload, id=event_id, updated=to_rfc3339_utc(self.clock()))
        self.events[calendar_id][event_id] = event
        return copy.deepcopy(event)

    def delete_event(self, calendar_id, event_id):
        self.calls.append(("delete", calendar_id, event_id))
        if self.delete_error is not None:
            raise self.delete_error
        self.events.get(calendar_id, {}).pop(event_id, None)

    def refresh_access_token(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return dict(self.refresh_result)

    def list_calendars(self):
        return copy.deepcopy(self.calendars)


class MutableClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: Any) -> datetime:
        self.now += timedelta(**delta)
        return self.now


def timed_event(start: str, end: str, **extra: Any) -> Dict[str, Any]:
    return {"start": {"dateTime": start}, "end": {"dateTime": end}, **extra}


def all_day_event(day: date, days: int = 1, **extra: Any) -> Dict[str, Any]:
    # provider events carry inclusive all-day end dates
    return {
        "start": {"date": day.isoformat()},
        "end": {"date": (day + timedelta(days=days - 1)).isoformat()},
        **extra,
    }


__all__ = [
    "FakeCalendarProvider",
    "InMemoryTaskStore",
    "InvalidGrantError",
    "MutableClock",
    "all_day_event",
    "timed_event",
]
