"""Utilities for Taskflow <-> Google Calendar event translation.

Events seen here use inclusive all-day end dates: a single-day all-day event
has ``end.date == start.date``. ``GoogleCalendar`` converts to and from the
exclusive end dates of the Google API.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Optional, Tuple

from core.entities import Task
from utils.datetime_utils import coerce_calendar_date, parse_rfc3339, to_rfc3339_utc
from utils.timezones import instant_to_local_date


EventTimes = Tuple[date, bool, Optional[datetime], Optional[datetime]]


def event_updated(event: Dict[str, Any]) -> Optional[datetime]:
    return parse_rfc3339(event.get("updated"))


def _event_date(payload: Optional[Dict[str, Any]]) -> Optional[date]:
    if not payload or not payload.get("date"):
        return None
    return coerce_calendar_date(payload["date"])


def is_multi_day_all_day(event: Dict[str, Any]) -> bool:
    """True for all-day events covering more than one day."""

    start = _event_date(event.get("start"))
    end = _event_date(event.get("end"))
    if start is None or end is None:
        return False
    return end > start


def parse_event_times(event: Dict[str, Any], timezone: Optional[str]) -> Optional[EventTimes]:
    """Return ``(due_date, is_all_day, start, end)`` or ``None`` if the event has no usable times."""

    start_payload = event.get("start") or {}
    end_payload = event.get("end") or {}
    if not (end_payload.get("date") or end_payload.get("dateTime")):
        return None

    if start_payload.get("date"):
        day = _event_date(start_payload)
        if day is None:
            return None
        return day, True, None, None

    start = parse_rfc3339(start_payload.get("dateTime"))
    end = parse_rfc3339(end_payload.get("dateTime"))
    if start is None or end is None:
        return None
    if end < start:
        end = None
    # the due day is where the event starts on the user's wall clock
    day = instant_to_local_date(start, timezone)
    return day, False, start, end


def event_description(event: Dict[str, Any]) -> str:
    return (event.get("description") or "").strip()


def build_event_payload(task: Task, timezone: str) -> Dict[str, Any]:
    """Event body for ``task``; all-day tasks map to single-day all-day events."""

    body: Dict[str, Any] = {
        "summary": task.title,
        "description": task.description or f"Priority: {task.priority.value}",
        "status": "confirmed",
    }
    if task.is_all_day or task.start_time is None:
        day = task.due_date.isoformat()
        body["start"] = {"date": day, "timeZone": "UTC"}
        body["end"] = {"date": day, "timeZone": "UTC"}
    else:
        body["start"] = {"dateTime": to_rfc3339_utc(task.start_time), "timeZone": timezone}
        body["end"] = {"dateTime": to_rfc3339_utc(task.effective_end_time), "timeZone": timezone}
    return body


__all__ = [
    "build_event_payload",
    "event_description",
    "event_updated",
    "is_multi_day_all_day",
    "parse_event_times",
]
