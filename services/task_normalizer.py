"""Mapping between flat storage rows and :class:`core.entities.Task`.

Rows are plain dictionaries shaped like the ``task`` table as seen through
the storage port: instants are RFC3339 strings in UTC, ``due_date`` is the
UTC midnight of the calendar day and the recurrence rule is flattened into
``recurring_*`` columns.
"""

from __future__ import annotations

import json
import logging
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from core.entities import (
    EndCondition,
    Frequency,
    NEVER,
    RecurrenceRule,
    SyncSource,
    Task,
    TaskValidationError,
    WEEKDAYS,
    normalize_weekday,
)
from core.priorities import normalize_priority
from utils.datetime_utils import (
    coerce_calendar_date,
    due_date_to_storage,
    parse_rfc3339,
    to_rfc3339_utc,
)
from utils.timezones import instant_to_local_time_of_day


logger = logging.getLogger("taskflow.normalizer")

Row = Dict[str, Any]

RECURRENCE_COLUMNS = (
    "recurring_frequency",
    "recurring_custom_days",
    "recurring_end_date",
    "recurring_end_after",
)

_INSTANT_FIELDS = ("start_time", "end_time", "last_synced_at", "updated_at")
_PLAIN_FIELDS = ("id", "user_id", "description", "completed", "google_calendar_event_id", "google_calendar_id")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _parse_custom_days(value: Any) -> Iterable[str]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            decoded = value.split(",")
        value = decoded if isinstance(decoded, list) else [decoded]
    days = []
    for item in value:
        try:
            days.append(normalize_weekday(item))
        except ValueError:
            logger.warning("Ignoring unknown weekday %r in stored recurrence", item)
    return days


def _rule_from_row(row: Mapping[str, Any]) -> Optional[RecurrenceRule]:
    raw = row.get("recurring_frequency")
    if raw is None or raw == "":
        return None
    try:
        frequency = Frequency(str(raw).strip().lower())
    except ValueError:
        logger.warning("Unknown recurrence frequency %r on task %s, treating as custom", raw, row.get("id"))
        frequency = Frequency.CUSTOM

    end_date = coerce_calendar_date(row.get("recurring_end_date"))
    end_after = row.get("recurring_end_after")
    if end_date is not None:
        end = EndCondition.until(end_date)
    elif end_after not in (None, ""):
        end = EndCondition.after(int(end_after))
    else:
        end = NEVER
    # stored rules are not validated on read; the recurrence engine rejects broken ones
    return RecurrenceRule(
        frequency=frequency,
        custom_days=frozenset(_parse_custom_days(row.get("recurring_custom_days"))),
        end=end,
    )


def _parse_instant(value: Any, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise TaskValidationError(f"{name} must be timezone-aware")
        return value
    parsed = parse_rfc3339(str(value))
    if parsed is None:
        raise TaskValidationError(f"Unparseable {name}: {value!r}")
    return parsed


def from_storage_row(row: Mapping[str, Any]) -> Task:
    """Build a task entity from a storage row."""

    is_all_day = _as_bool(row.get("is_all_day", True))
    start = _parse_instant(row.get("start_time"), "start_time")
    end = _parse_instant(row.get("end_time"), "end_time")
    if is_all_day and (start or end):
        logger.debug("Dropping times on all-day task %s", row.get("id"))
        start = end = None
    if start is None:
        end = None
    elif end is not None and end < start:
        logger.warning("Task %s ends before it starts, ignoring end_time", row.get("id"))
        end = None

    event_id = row.get("google_calendar_event_id") or None
    calendar_id = row.get("google_calendar_id") or None
    if bool(event_id) != bool(calendar_id):
        logger.warning("Task %s has a half-populated calendar link, dropping it", row.get("id"))
        event_id = calendar_id = None

    return Task(
        id=row.get("id"),
        user_id=row.get("user_id"),
        title=row.get("title") or "",
        description=row.get("description") or "",
        priority=normalize_priority(row.get("priority")),
        due_date=coerce_calendar_date(row.get("due_date")),
        is_all_day=is_all_day,
        start_time=start,
        end_time=end,
        completed=_as_bool(row.get("completed", False)),
        tags=frozenset(row.get("tags") or ()),
        recurring=_rule_from_row(row),
        occurrence_index=int(row.get("recurring_occurrence_index") or 0),
        google_calendar_event_id=event_id,
        google_calendar_id=calendar_id,
        sync_source=SyncSource.parse(row.get("sync_source")),
        last_synced_at=_parse_instant(row.get("last_synced_at"), "last_synced_at"),
        updated_at=_parse_instant(row.get("updated_at"), "updated_at"),
    )


def _flatten_rule(rule: Optional[RecurrenceRule]) -> Row:
    if rule is None:
        return {column: None for column in RECURRENCE_COLUMNS}
    rule.validate()
    days = [day for day in WEEKDAYS if day in rule.custom_days]
    return {
        "recurring_frequency": rule.frequency.value,
        "recurring_custom_days": days if rule.frequency is Frequency.CUSTOM else [],
        "recurring_end_date": rule.end.end_date.isoformat() if rule.end.kind == "end_date" else None,
        "recurring_end_after": rule.end.end_after if rule.end.kind == "end_after" else None,
    }


def _instant_to_storage(value: Any, name: str) -> Optional[str]:
    parsed = _parse_instant(value, name)
    return to_rfc3339_utc(parsed) if parsed is not None else None


def _due_date_to_storage(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    stored = due_date_to_storage(value)
    if stored is None:
        raise TaskValidationError(f"Unparseable due date: {value!r}")
    return stored


def to_storage_row(changes: Union[Task, Mapping[str, Any]]) -> Row:
    """Serialize a task, or a partial mapping of task fields, into row columns.

    Only keys present in ``changes`` are emitted so a partial update never
    touches unrelated columns. Setting ``is_all_day`` to true clears both
    times in the same write.
    """

    if isinstance(changes, Task):
        values = {f.name: getattr(changes, f.name) for f in dataclass_fields(Task)}
        if values.get("id") is None:
            values.pop("id")
    else:
        values = dict(changes)

    row: Row = {}
    for key, value in values.items():
        if key == "title":
            title = (value or "").strip()
            if not title:
                raise TaskValidationError("Task title must not be empty")
            row["title"] = title
        elif key == "priority":
            row["priority"] = normalize_priority(value).value
        elif key == "due_date":
            row["due_date"] = _due_date_to_storage(value)
        elif key == "is_all_day":
            row["is_all_day"] = bool(value)
        elif key in _INSTANT_FIELDS:
            row[key] = _instant_to_storage(value, key)
        elif key == "tags":
            row["tags"] = sorted(set(value or ()))
        elif key == "recurring":
            row.update(_flatten_rule(value))
            if value is None:
                row["recurring_occurrence_index"] = 0
        elif key == "occurrence_index":
            row["recurring_occurrence_index"] = int(value or 0)
        elif key == "sync_source":
            source = SyncSource.parse(value)
            row["sync_source"] = source.value if source else None
        elif key in _PLAIN_FIELDS:
            row[key] = value if key != "description" else (value or "")
        else:
            raise TaskValidationError(f"Unknown task field: {key}")

    if row.get("is_all_day"):
        row["start_time"] = None
        row["end_time"] = None
    return row


def display_times(task: Task, timezone: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if task.is_all_day or task.start_time is None:
        return None, None
    start = instant_to_local_time_of_day(task.start_time, timezone)
    end = instant_to_local_time_of_day(task.end_time, timezone) if task.end_time else None
    return start, end


__all__ = [
    "RECURRENCE_COLUMNS",
    "Row",
    "display_times",
    "from_storage_row",
    "to_storage_row",
]
