"""In-memory task entities and their invariants."""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional

from core.priorities import DEFAULT_PRIORITY, Priority, normalize_priority
from core.settings import SYNC


DEFAULT_DURATION = timedelta(minutes=SYNC.default_duration_minutes)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_WEEKDAY_ALIASES = {name[:3]: name for name in WEEKDAYS}


class TaskValidationError(ValueError):
    """Task fields violate an entity invariant."""


class RecurrenceRuleError(ValueError):
    """A recurrence rule cannot produce occurrences."""


class SyncSource(str, Enum):
    APP = "app"
    GOOGLE_CALENDAR = "google_calendar"

    @classmethod
    def parse(cls, value: Any) -> Optional["SyncSource"]:
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        # older rows were written with the bare "calendar" tag
        if text in {"calendar", "google", "google_calendar"}:
            return cls.GOOGLE_CALENDAR
        if text == "app":
            return cls.APP
        return None


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class HistoryAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    DELETED = "deleted"
    SYNCED = "synced"


def normalize_weekday(value: str) -> str:
    text = str(value or "").strip().lower()
    if text in WEEKDAYS:
        return text
    alias = _WEEKDAY_ALIASES.get(text[:3]) if len(text) >= 3 else None
    if alias and alias.startswith(text):
        return alias
    raise RecurrenceRuleError(f"Unknown weekday: {value!r}")


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


@dataclass(frozen=True)
class EndCondition:
    """Exactly one of: never, an inclusive end date, or a total occurrence count."""

    kind: str = "never"
    end_date: Optional[date] = None
    end_after: Optional[int] = None

    @classmethod
    def never(cls) -> "EndCondition":
        return cls()

    @classmethod
    def until(cls, end_date: date) -> "EndCondition":
        return cls(kind="end_date", end_date=end_date)

    @classmethod
    def after(cls, count: int) -> "EndCondition":
        return cls(kind="end_after", end_after=count)

    def validate(self) -> None:
        if self.kind == "never":
            return
        if self.kind == "end_date":
            if not isinstance(self.end_date, date):
                raise RecurrenceRuleError("endDate condition requires a calendar date")
            return
        if self.kind == "end_after":
            if isinstance(self.end_after, bool) or not isinstance(self.end_after, int) or self.end_after < 1:
                raise RecurrenceRuleError("endAfter condition requires a positive occurrence count")
            return
        raise RecurrenceRuleError(f"Unknown end condition: {self.kind!r}")


NEVER = EndCondition.never()


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency
    custom_days: FrozenSet[str] = frozenset()
    end: EndCondition = NEVER

    @classmethod
    def build(
        cls,
        frequency: Frequency | str,
        custom_days: Iterable[str] = (),
        *,
        end_date: Optional[date] = None,
        end_after: Optional[int] = None,
    ) -> "RecurrenceRule":
        if end_date is not None and end_after is not None:
            raise RecurrenceRuleError("endDate and endAfter are mutually exclusive")
        if end_date is not None:
            end = EndCondition.until(end_date)
        elif end_after is not None:
            end = EndCondition.after(end_after)
        else:
            end = NEVER
        try:
            freq = Frequency(frequency)
        except ValueError as exc:
            raise RecurrenceRuleError(f"Unknown frequency: {frequency!r}") from exc
        rule = cls(
            frequency=freq,
            custom_days=frozenset(normalize_weekday(day) for day in custom_days),
            end=end,
        )
        rule.validate()
        return rule

    def validate(self) -> None:
        if not isinstance(self.frequency, Frequency):
            raise RecurrenceRuleError("Recurrence rule has no frequency")
        if self.frequency is Frequency.CUSTOM:
            if not self.custom_days:
                raise RecurrenceRuleError("Custom recurrence needs at least one weekday")
            for day in self.custom_days:
                if day not in WEEKDAYS:
                    raise RecurrenceRuleError(f"Unknown weekday: {day!r}")
        self.end.validate()

    @property
    def weekday_numbers(self) -> FrozenSet[int]:
        return frozenset(WEEKDAYS.index(day) for day in self.custom_days if day in WEEKDAYS)


@dataclass(frozen=True)
class Task:
    title: str
    id: Optional[str] = None
    user_id: Optional[str] = None
    description: str = ""
    priority: Priority = DEFAULT_PRIORITY
    due_date: Optional[date] = None
    is_all_day: bool = True
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    completed: bool = False
    tags: FrozenSet[str] = frozenset()
    recurring: Optional[RecurrenceRule] = None
    occurrence_index: int = 0
    google_calendar_event_id: Optional[str] = None
    google_calendar_id: Optional[str] = None
    sync_source: Optional[SyncSource] = SyncSource.APP
    last_synced_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        title = (self.title or "").strip()
        if not title:
            raise TaskValidationError("Task title must not be empty")
        object.__setattr__(self, "title", title)
        object.__setattr__(self, "description", self.description or "")
        object.__setattr__(self, "priority", normalize_priority(self.priority))
        object.__setattr__(self, "tags", frozenset(self.tags or ()))

        if isinstance(self.due_date, datetime):
            raise TaskValidationError("due_date must be a calendar date, not an instant")
        for name in ("start_time", "end_time", "last_synced_at", "updated_at"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, datetime) or value.tzinfo is None):
                raise TaskValidationError(f"{name} must be a timezone-aware datetime")

        if self.is_all_day and (self.start_time is not None or self.end_time is not None):
            raise TaskValidationError("All-day tasks cannot carry start/end times")
        if self.end_time is not None and self.start_time is None:
            raise TaskValidationError("end_time requires start_time")
        if self.start_time is not None and self.end_time is not None and self.end_time < self.start_time:
            raise TaskValidationError("end_time must not precede start_time")
        if bool(self.google_calendar_event_id) != bool(self.google_calendar_id):
            raise TaskValidationError("Calendar event id and calendar id must be set together")
        if self.occurrence_index < 0:
            raise TaskValidationError("occurrence_index must not be negative")

    @property
    def effective_end_time(self) -> Optional[datetime]:
        if self.start_time is None:
            return None
        return self.end_time or self.start_time + DEFAULT_DURATION

    @property
    def is_linked(self) -> bool:
        return bool(self.google_calendar_event_id)

    @property
    def has_pending_local_edit(self) -> bool:
        if self.sync_source not in (None, SyncSource.APP):
            return False
        if self.last_synced_at is None:
            return True
        return self.updated_at is not None and self.updated_at > self.last_synced_at

    def evolve(self, **changes: Any) -> "Task":
        return replace(self, **changes)


TASK_FIELDS = tuple(f.name for f in fields(Task))


def make_task(**values: Any) -> Task:
    """Build a task, rejecting inconsistent field combinations.

    Passing ``start_time`` without ``is_all_day`` implies a timed task.
    """

    unknown = set(values) - set(TASK_FIELDS)
    if unknown:
        raise TaskValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")
    if "is_all_day" not in values:
        values["is_all_day"] = values.get("start_time") is None
    task = Task(**values)
    if task.recurring is not None:
        task.recurring.validate()
        if task.due_date is None:
            raise TaskValidationError("Recurring tasks need a due date")
    return task


@dataclass(frozen=True)
class TaskHistoryEntry:
    task_id: str
    task_title: str
    action: HistoryAction
    timestamp: datetime
    details: Optional[str] = None
    id: Optional[int] = field(default=None, compare=False)


__all__ = [
    "DEFAULT_DURATION",
    "EndCondition",
    "Frequency",
    "HistoryAction",
    "NEVER",
    "RecurrenceRule",
    "RecurrenceRuleError",
    "SyncSource",
    "TASK_FIELDS",
    "Task",
    "TaskHistoryEntry",
    "TaskValidationError",
    "WEEKDAYS",
    "make_task",
    "normalize_weekday",
    "weekday_name",
]
