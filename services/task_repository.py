from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from sqlmodel import Session, select

from core.entities import HistoryAction, TaskHistoryEntry
from models.tag import Tag, TaskTag
from models.task import TaskRecord
from models.task_history import TaskHistoryRecord
from services.tags import ensure_tags
from storage.db import get_session
from utils.datetime_utils import coerce_calendar_date, ensure_utc, parse_rfc3339, to_rfc3339_utc, utc_now


logger = logging.getLogger("taskflow.storage")

Row = Dict[str, Any]

_INSTANT_COLUMNS = ("due_date", "start_time", "end_time", "last_synced_at", "updated_at")
_READONLY_COLUMNS = ("id", "user_id", "created_at")


class TaskNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class TaskChange:
    kind: str  # insert / update / delete
    row: Row


ChangeCallback = Callable[[TaskChange], None]


class TaskStore(Protocol):
    """Persistence port for task rows, their change feed and history."""

    def insert(self, row: Mapping[str, Any], history: Optional[TaskHistoryEntry] = None) -> Row: ...

    def update(
        self, task_id: str, changes: Mapping[str, Any], history: Optional[TaskHistoryEntry] = None
    ) -> Row: ...

    def delete(self, task_id: str, history: Optional[TaskHistoryEntry] = None) -> None: ...

    def get(self, task_id: str) -> Optional[Row]: ...

    def find_by_event(self, user_id: str, calendar_id: str, event_id: str) -> Optional[Row]: ...

    def list_by_user(self, user_id: str) -> List[Row]: ...

    def subscribe(self, user_id: str, callback: ChangeCallback) -> Callable[[], None]: ...

    def append_history(self, user_id: str, entry: TaskHistoryEntry) -> TaskHistoryEntry: ...

    def list_history(self, user_id: str, task_id: Optional[str] = None) -> List[TaskHistoryEntry]: ...


def _to_db_instant(value: Any) -> Optional[datetime]:
    # columns are written aware UTC; reads go through ensure_utc either way
    if value is None or value == "":
        return None
    parsed = ensure_utc(value) if isinstance(value, datetime) else parse_rfc3339(str(value))
    if parsed is None:
        raise ValueError(f"Unparseable instant: {value!r}")
    return parsed


def _record_to_row(record: TaskRecord, tags: Iterable[str]) -> Row:
    custom_days: List[str] = []
    if record.recurring_custom_days:
        try:
            custom_days = list(json.loads(record.recurring_custom_days))
        except (TypeError, json.JSONDecodeError):
            logger.warning("Task %s has malformed custom days %r", record.id, record.recurring_custom_days)
    end_date = record.recurring_end_date
    return {
        "id": record.id,
        "user_id": record.user_id,
        "title": record.title,
        "description": record.description or "",
        "priority": record.priority,
        "due_date": to_rfc3339_utc(record.due_date),
        "completed": bool(record.completed),
        "start_time": to_rfc3339_utc(record.start_time),
        "end_time": to_rfc3339_utc(record.end_time),
        "is_all_day": bool(record.is_all_day),
        "google_calendar_event_id": record.google_calendar_event_id,
        "google_calendar_id": record.google_calendar_id,
        "sync_source": record.sync_source,
        "last_synced_at": to_rfc3339_utc(record.last_synced_at),
        "recurring_frequency": record.recurring_frequency,
        "recurring_custom_days": custom_days,
        "recurring_end_date": end_date.isoformat() if isinstance(end_date, date) else None,
        "recurring_end_after": record.recurring_end_after,
        "recurring_occurrence_index": record.recurring_occurrence_index or 0,
        "updated_at": to_rfc3339_utc(record.updated_at),
        "created_at": to_rfc3339_utc(record.created_at),
        "tags": sorted(tags),
    }


def _apply_row(record: TaskRecord, row: Mapping[str, Any]) -> None:
    for key, value in row.items():
        if key in _READONLY_COLUMNS or key == "tags":
            continue
        if key in _INSTANT_COLUMNS:
            setattr(record, key, _to_db_instant(value))
        elif key == "recurring_end_date":
            record.recurring_end_date = coerce_calendar_date(value)
        elif key == "recurring_custom_days":
            record.recurring_custom_days = json.dumps(list(value)) if value else None
        elif key == "recurring_occurrence_index":
            record.recurring_occurrence_index = int(value or 0)
        elif hasattr(record, key):
            setattr(record, key, value)
        else:
            raise ValueError(f"Unknown task column: {key}")


def _history_record(user_id: str, entry: TaskHistoryEntry) -> TaskHistoryRecord:
    return TaskHistoryRecord(
        user_id=user_id,
        task_id=entry.task_id,
        task_title=entry.task_title,
        action=HistoryAction(entry.action).value,
        details=entry.details,
        timestamp=_to_db_instant(entry.timestamp),
    )


def _history_entry(record: TaskHistoryRecord) -> TaskHistoryEntry:
    return TaskHistoryEntry(
        task_id=record.task_id,
        task_title=record.task_title,
        action=HistoryAction(record.action),
        timestamp=ensure_utc(record.timestamp),
        details=record.details,
        id=record.id,
    )


class SqlTaskRepository:
    """SQLModel implementation of :class:`TaskStore`.

    Every call runs in its own session and commits once, so a failed write
    leaves nothing behind. A ``history`` entry passed to a write is stored in
    the same transaction as the row.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory
        self._listeners: Dict[str, List[ChangeCallback]] = {}
        self._lock = threading.Lock()

    # ----- change feed -----
    def subscribe(self, user_id: str, callback: ChangeCallback) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(user_id, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._listeners.get(user_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return _unsubscribe

    def _emit(self, kind: str, row: Row) -> None:
        with self._lock:
            listeners = list(self._listeners.get(row.get("user_id"), []))
        for listener in listeners:
            try:
                listener(TaskChange(kind, dict(row)))
            except Exception:
                logger.exception("Task change listener failed for %s %s", kind, row.get("id"))

    # ----- helpers -----
    @staticmethod
    def _tags_for(session: Session, task_ids: List[str]) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {task_id: [] for task_id in task_ids}
        if not task_ids:
            return result
        stmt = (
            select(TaskTag.task_id, Tag.name)
            .join(Tag, Tag.id == TaskTag.tag_id)
            .where(TaskTag.task_id.in_(task_ids))
        )
        for task_id, name in session.exec(stmt):
            result.setdefault(task_id, []).append(name)
        return result

    @staticmethod
    def _replace_tags(session: Session, user_id: str, task_id: str, names: Iterable[str]) -> None:
        for link in session.exec(select(TaskTag).where(TaskTag.task_id == task_id)):
            session.delete(link)
        for tag in ensure_tags(session, user_id, names):
            session.add(TaskTag(task_id=task_id, tag_id=tag.id))

    @staticmethod
    def _add_history(session: Session, user_id: str, history: Optional[TaskHistoryEntry]) -> None:
        if history is not None:
            session.add(_history_record(user_id, history))

    # ----- rows -----
    def insert(self, row: Mapping[str, Any], history: Optional[TaskHistoryEntry] = None) -> Row:
        if not row.get("user_id"):
            raise ValueError("Task rows need a user_id")
        if not (row.get("title") or "").strip():
            raise ValueError("Task rows need a title")
        now = utc_now()
        task_id = row.get("id") or str(uuid.uuid4())
        with self._session_factory() as session:
            record = TaskRecord(id=task_id, user_id=row["user_id"], title=row["title"])
            _apply_row(record, row)
            record.created_at = _to_db_instant(now)
            if not row.get("updated_at"):
                record.updated_at = _to_db_instant(now)
            session.add(record)
            self._replace_tags(session, record.user_id, task_id, row.get("tags") or ())
            self._add_history(session, record.user_id, history)
            session.commit()
            session.refresh(record)
            stored = _record_to_row(record, self._tags_for(session, [task_id])[task_id])
        self._emit("insert", stored)
        return stored

    def update(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        history: Optional[TaskHistoryEntry] = None,
    ) -> Row:
        with self._session_factory() as session:
            record = session.get(TaskRecord, task_id)
            if record is None:
                raise TaskNotFoundError(task_id)
            _apply_row(record, changes)
            if "updated_at" not in changes:
                record.updated_at = _to_db_instant(utc_now())
            if "tags" in changes:
                self._replace_tags(session, record.user_id, task_id, changes["tags"] or ())
            session.add(record)
            self._add_history(session, record.user_id, history)
            session.commit()
            session.refresh(record)
            stored = _record_to_row(record, self._tags_for(session, [task_id])[task_id])
        self._emit("update", stored)
        return stored

    def delete(self, task_id: str, history: Optional[TaskHistoryEntry] = None) -> None:
        with self._session_factory() as session:
            record = session.get(TaskRecord, task_id)
            if record is None:
                return
            removed = _record_to_row(record, self._tags_for(session, [task_id])[task_id])
            for link in session.exec(select(TaskTag).where(TaskTag.task_id == task_id)):
                session.delete(link)
            session.delete(record)
            self._add_history(session, record.user_id, history)
            session.commit()
        self._emit("delete", removed)

    def get(self, task_id: str) -> Optional[Row]:
        with self._session_factory() as session:
            record = session.get(TaskRecord, task_id)
            if record is None:
                return None
            return _record_to_row(record, self._tags_for(session, [task_id])[task_id])

    def find_by_event(self, user_id: str, calendar_id: str, event_id: str) -> Optional[Row]:
        if not event_id:
            return None
        with self._session_factory() as session:
            stmt = select(TaskRecord).where(
                TaskRecord.user_id == user_id,
                TaskRecord.google_calendar_id == calendar_id,
                TaskRecord.google_calendar_event_id == event_id,
            )
            record = session.exec(stmt).first()
            if record is None:
                return None
            return _record_to_row(record, self._tags_for(session, [record.id])[record.id])

    def list_by_user(self, user_id: str) -> List[Row]:
        with self._session_factory() as session:
            stmt = (
                select(TaskRecord)
                .where(TaskRecord.user_id == user_id)
                .order_by(TaskRecord.due_date.asc(), TaskRecord.start_time.asc(), TaskRecord.created_at.asc())
            )
            records = list(session.exec(stmt))
            tags = self._tags_for(session, [r.id for r in records])
            return [_record_to_row(r, tags.get(r.id, [])) for r in records]

    # ----- history -----
    def append_history(self, user_id: str, entry: TaskHistoryEntry) -> TaskHistoryEntry:
        with self._session_factory() as session:
            record = _history_record(user_id, entry)
            session.add(record)
            session.commit()
            session.refresh(record)
            return _history_entry(record)

    def list_history(self, user_id: str, task_id: Optional[str] = None) -> List[TaskHistoryEntry]:
        with self._session_factory() as session:
            stmt = select(TaskHistoryRecord).where(TaskHistoryRecord.user_id == user_id)
            if task_id is not None:
                stmt = stmt.where(TaskHistoryRecord.task_id == task_id)
            stmt = stmt.order_by(TaskHistoryRecord.timestamp.asc(), TaskHistoryRecord.id.asc())
            return [_history_entry(r) for r in session.exec(stmt)]


__all__ = ["ChangeCallback", "SqlTaskRepository", "TaskChange", "TaskNotFoundError", "TaskStore"]
