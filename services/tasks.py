# taskflow/services/tasks.py
from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from core.entities import (
    HistoryAction,
    RecurrenceRule,
    SyncSource,
    Task,
    TaskHistoryEntry,
    TaskValidationError,
    make_task,
)
from core.logs import get_logger
from services.recurrence import schedule_next_occurrence
from services.task_normalizer import from_storage_row, to_storage_row
from services.task_repository import TaskNotFoundError, TaskStore
from utils.datetime_utils import coerce_calendar_date, ensure_utc, utc_now
from utils.timezones import (
    combine_date_and_time_of_day,
    format_calendar_date,
    instant_to_local_date,
    instant_to_local_time_of_day,
    resolve_local_timezone,
)


logger = get_logger("tasks")

TimeInput = Union[datetime, str, None]

_EDITABLE = (
    "title",
    "description",
    "priority",
    "due_date",
    "is_all_day",
    "start",
    "end",
    "tags",
    "recurring",
    "completed",
)


class TaskService:
    """User-facing task operations for one user.

    Every mutation is written through the storage port, recorded in the task
    history and announced to ``after_create``/``after_update``/``after_delete``
    listeners (the sync coordinator debounces on them).
    """

    def __init__(
        self,
        store: TaskStore,
        user_id: str,
        *,
        reconciler=None,
        timezone: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.reconciler = reconciler
        self.timezone = timezone or resolve_local_timezone()
        self.clock = clock
        self._listeners: Dict[str, set] = {
            "after_create": set(),
            "after_update": set(),
            "after_delete": set(),
        }

    def subscribe(self, event: str, callback) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unsupported event: {event}")
        self._listeners[event].add(callback)

    def unsubscribe(self, event: str, callback) -> None:
        if event not in self._listeners:
            return
        self._listeners[event].discard(callback)

    def _emit(self, event: str, task_id: str) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(task_id)
            except Exception:
                logger.exception("Listener for %s failed", event)

    # ---------- helpers ----------
    def _entry(
        self, task_id: str, title: str, action: HistoryAction, details: Optional[str] = None
    ) -> TaskHistoryEntry:
        return TaskHistoryEntry(
            task_id=task_id,
            task_title=title,
            action=action,
            timestamp=self.clock(),
            details=details,
        )

    def _require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _resolve_time(self, day: Optional[date], value: TimeInput, name: str) -> Optional[datetime]:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise TaskValidationError(f"{name} must be timezone-aware")
            return ensure_utc(value)
        if day is None:
            raise TaskValidationError(f"{name} given as a time of day needs a due date")
        instant = combine_date_and_time_of_day(day, str(value), self.timezone)
        if instant is None:
            raise TaskValidationError(f"Invalid {name}: {value!r}")
        return instant

    def _resolve_window(
        self, day: Optional[date], start: TimeInput, end: TimeInput
    ) -> tuple[Optional[datetime], Optional[datetime]]:
        start_time = self._resolve_time(day, start, "start")
        end_time = self._resolve_time(day, end, "end")
        # "22:00"-"01:00" runs past midnight
        if start_time and end_time and end_time < start_time and isinstance(end, str):
            end_time = self._resolve_time(day + timedelta(days=1), end, "end")
        return start_time, end_time

    def _move_times(self, task: Task, day: date) -> tuple[Optional[datetime], Optional[datetime]]:
        """Keep the local wall-clock times of ``task`` while moving it to ``day``."""

        if task.start_time is None:
            return None, None
        start_day = instant_to_local_date(task.start_time, self.timezone)
        offset = day - (task.due_date or start_day)
        new_start = combine_date_and_time_of_day(
            start_day + offset, instant_to_local_time_of_day(task.start_time, self.timezone), self.timezone
        )
        new_end = None
        if task.end_time is not None and new_start is not None:
            new_end = new_start + (task.end_time - task.start_time)
        return new_start, new_end

    @staticmethod
    def _parse_due_date(value: Any) -> Optional[date]:
        if value is None or value == "":
            return None
        day = coerce_calendar_date(value)
        if day is None:
            raise TaskValidationError(f"Invalid due date: {value!r}")
        return day

    # ---------- queries ----------
    def get(self, task_id: str) -> Optional[Task]:
        row = self.store.get(task_id)
        if row is None or row.get("user_id") != self.user_id:
            return None
        return from_storage_row(row)

    def list(self, *, day: Optional[date] = None, include_completed: bool = True) -> List[Task]:
        tasks = [from_storage_row(row) for row in self.store.list_by_user(self.user_id)]
        if day is not None:
            tasks = [t for t in tasks if t.due_date == day]
        if not include_completed:
            tasks = [t for t in tasks if not t.completed]
        return tasks

    def history(self, task_id: Optional[str] = None) -> List[TaskHistoryEntry]:
        return self.store.list_history(self.user_id, task_id)

    # ---------- mutations ----------
    def create(
        self,
        title: str,
        *,
        description: str = "",
        priority: Any = None,
        due_date: Any = None,
        start: TimeInput = None,
        end: TimeInput = None,
        is_all_day: Optional[bool] = None,
        tags: Iterable[str] = (),
        recurring: Optional[RecurrenceRule] = None,
    ) -> Task:
        day = self._parse_due_date(due_date)
        start_time, end_time = self._resolve_window(day, start, end)
        if day is None and start_time is not None:
            day = instant_to_local_date(start_time, self.timezone)
        values: Dict[str, Any] = dict(
            id=str(uuid.uuid4()),
            title=title,
            user_id=self.user_id,
            description=description or "",
            priority=priority,
            due_date=day,
            start_time=start_time,
            end_time=end_time,
            tags=frozenset(tags or ()),
            recurring=recurring,
            sync_source=SyncSource.APP,
        )
        if is_all_day is not None:
            values["is_all_day"] = is_all_day
        task = make_task(**values)

        history = self._entry(task.id, task.title, HistoryAction.CREATED)
        created = from_storage_row(self.store.insert(to_storage_row(task), history=history))
        logger.info("Created task %s", created.id)
        self._emit("after_create", created.id)
        return created

    def update(self, task_id: str, **changes: Any) -> Task:
        unknown = set(changes) - set(_EDITABLE)
        if unknown:
            raise TaskValidationError(f"Cannot edit: {', '.join(sorted(unknown))}")
        current = self._require(task_id)

        fields: Dict[str, Any] = {}
        for key in ("title", "description", "priority", "tags", "recurring", "completed"):
            if key in changes:
                fields[key] = frozenset(changes[key] or ()) if key == "tags" else changes[key]

        day = current.due_date
        if "due_date" in changes:
            day = self._parse_due_date(changes["due_date"])
            fields["due_date"] = day
        if "start" in changes or "end" in changes:
            start_time, end_time = self._resolve_window(
                day,
                changes.get("start", current.start_time),
                changes.get("end", current.end_time if "start" not in changes else None),
            )
            fields["start_time"], fields["end_time"] = start_time, end_time
            if start_time is not None and "is_all_day" not in changes:
                fields["is_all_day"] = False
        elif "due_date" in changes and day is not None and current.start_time is not None:
            fields["start_time"], fields["end_time"] = self._move_times(current, day)
        if changes.get("is_all_day") is True:
            fields["is_all_day"] = True
            fields["start_time"] = fields["end_time"] = None
        elif "is_all_day" in changes:
            fields["is_all_day"] = bool(changes["is_all_day"])

        # validates the combined result before anything is written
        merged = make_task(**{**_entity_values(current), **fields})
        if merged.recurring is not None and "recurring" in changes and current.recurring != merged.recurring:
            fields["occurrence_index"] = 0

        row = to_storage_row({**fields, "sync_source": SyncSource.APP})
        changed = ", ".join(sorted(changes))
        history = self._entry(task_id, merged.title, HistoryAction.UPDATED, f"Changed: {changed}")
        updated = from_storage_row(self.store.update(task_id, row, history=history))
        self._emit("after_update", updated.id)
        return updated

    def complete(self, task_id: str, *, series: bool = False) -> Task:
        """Complete the current occurrence; recurring tasks move on to the next one.

        With ``series=True`` a recurring task is completed for good instead of
        advancing.
        """

        current = self._require(task_id)
        if current.recurring is None:
            return self._write_completion(current, {"completed": True}, None)
        if series:
            return self._write_completion(current, {"completed": True}, "Recurring series completed")

        upcoming = schedule_next_occurrence(current.evolve(completed=True), timezone=self.timezone)
        if upcoming is None:
            return self._write_completion(current, {"completed": True}, "Recurring series finished")

        changes = {
            "completed": False,
            "due_date": upcoming.due_date,
            "start_time": upcoming.start_time,
            "end_time": upcoming.end_time,
            "occurrence_index": upcoming.occurrence_index,
        }
        details = f"Next occurrence on {format_calendar_date(upcoming.due_date)}"
        return self._write_completion(current, changes, details)

    def _write_completion(self, current: Task, changes: Dict[str, Any], details: Optional[str]) -> Task:
        row = to_storage_row({**changes, "sync_source": SyncSource.APP})
        history = self._entry(current.id, current.title, HistoryAction.COMPLETED, details)
        updated = from_storage_row(self.store.update(current.id, row, history=history))
        self._emit("after_update", updated.id)
        return updated

    def reopen(self, task_id: str) -> Task:
        current = self._require(task_id)
        row = to_storage_row({"completed": False, "sync_source": SyncSource.APP})
        history = self._entry(current.id, current.title, HistoryAction.UPDATED, "Marked as not completed")
        updated = from_storage_row(self.store.update(current.id, row, history=history))
        self._emit("after_update", updated.id)
        return updated

    def delete(self, task_id: str) -> None:
        """Delete locally, then try to remove the linked calendar event.

        A failing remote delete never undoes or blocks the local one.
        """

        current = self._require(task_id)
        self.store.delete(task_id, history=self._entry(current.id, current.title, HistoryAction.DELETED))
        logger.info("Deleted task %s", task_id)
        self._emit("after_delete", task_id)
        if current.is_linked and self.reconciler is not None:
            self.reconciler.delete_remote_event(current, self.user_id)


def _entity_values(task: Task) -> Dict[str, Any]:
    return {
        "title": task.title,
        "user_id": task.user_id,
        "description": task.description,
        "priority": task.priority,
        "due_date": task.due_date,
        "is_all_day": task.is_all_day,
        "start_time": task.start_time,
        "end_time": task.end_time,
        "completed": task.completed,
        "tags": task.tags,
        "recurring": task.recurring,
        "occurrence_index": task.occurrence_index,
        "google_calendar_event_id": task.google_calendar_event_id,
        "google_calendar_id": task.google_calendar_id,
    }


__all__ = ["TaskService"]
