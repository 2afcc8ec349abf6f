"""Two-way reconciliation of local tasks with Google Calendar events.

Authority per record is decided from ``sync_source``, ``last_synced_at`` and
``updated_at``:

* pull overwrites a task only when the event changed after the task was last
  reconciled and no newer local edit is waiting to be pushed;
* push sends tasks authored locally whose ``updated_at`` is past
  ``last_synced_at`` (or that were never synced).

Every sync write stamps ``updated_at`` and ``last_synced_at`` with the same
instant, so a write made by the reconciler never looks like a pending edit.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.entities import HistoryAction, SyncSource, Task, TaskHistoryEntry
from core.logs import get_logger
from core.priorities import DEFAULT_PRIORITY
from core.settings import SYNC
from services.google_calendar import CalendarProvider, CalendarProviderError, InvalidGrantError
from services.google_sync import (
    build_event_payload,
    event_description,
    event_updated,
    is_multi_day_all_day,
    parse_event_times,
)
from services.integrations import IntegrationStore
from services.task_normalizer import from_storage_row, to_storage_row
from services.task_repository import TaskNotFoundError, TaskStore
from utils.datetime_utils import ensure_utc, utc_now
from utils.timezones import resolve_local_timezone


logger = get_logger("sync")

# refresh slightly before the provider would reject the token
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


class CalendarDisconnectedError(RuntimeError):
    """No usable consent; syncing stays off until the user reconnects."""


class CalendarAuthError(RuntimeError):
    """The token could not be refreshed right now; the next trigger retries."""


@dataclass(frozen=True)
class SyncItemResult:
    direction: str  # pull / push
    action: str  # created / updated / unchanged / skipped / failed
    task_id: Optional[str] = None
    event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.action != "failed"


@dataclass
class SyncReport:
    direction: str
    items: List[SyncItemResult] = field(default_factory=list)

    def add(self, action: str, **details: Any) -> SyncItemResult:
        item = SyncItemResult(direction=self.direction, action=action, **details)
        self.items.append(item)
        return item

    def count(self, action: str) -> int:
        return sum(1 for item in self.items if item.action == action)

    @property
    def attempted(self) -> int:
        return sum(1 for item in self.items if item.action != "skipped")

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.action not in ("skipped", "failed"))

    @property
    def failures(self) -> List[SyncItemResult]:
        return [item for item in self.items if item.action == "failed"]

    def summary(self) -> str:
        created, updated = self.count("created"), self.count("updated")
        if self.direction == "push":
            return (
                f"Synced {self.succeeded} of {self.attempted} tasks to Google Calendar "
                f"({created} created, {updated} updated)"
            )
        return (
            f"Imported {self.succeeded} of {self.attempted} events from Google Calendar "
            f"({created} created, {updated} updated)"
        )


@dataclass
class SyncOutcome:
    user_id: str
    trigger: str
    pull: SyncReport
    push: SyncReport
    started_at: datetime
    finished_at: datetime

    @property
    def ok(self) -> bool:
        return not self.pull.failures and not self.push.failures

    def summary(self) -> str:
        return f"{self.pull.summary()}; {self.push.summary()}"


class CalendarReconciler:
    def __init__(
        self,
        store: TaskStore,
        provider: CalendarProvider,
        integrations: IntegrationStore,
        *,
        timezone: Optional[str] = None,
        default_calendar_id: str = SYNC.default_calendar_id,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.provider = provider
        self.integrations = integrations
        self.timezone = timezone or resolve_local_timezone()
        self.default_calendar_id = default_calendar_id
        self.clock = clock
        # one pass or remote delete at a time; the provider client is not thread-safe
        self._provider_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Authorization
    def authorize(self, user_id: str) -> None:
        """Hand a valid access token to the provider, refreshing it first if expired."""

        integration = self.integrations.get(user_id)
        if integration is None or not integration.connected:
            raise CalendarDisconnectedError(f"Google Calendar is not connected for {user_id}")

        token = integration.access_token
        expires_at = ensure_utc(integration.token_expires_at)
        now = self.clock()
        if token and (expires_at is None or expires_at - TOKEN_EXPIRY_SKEW > now):
            self.provider.authorize(token)
            return

        if not integration.refresh_token:
            self.integrations.mark_disconnected(user_id)
            raise CalendarDisconnectedError("Access token expired and no refresh token is stored")

        logger.info("Refreshing Google access token for %s", user_id)
        try:
            refreshed = self.provider.refresh_access_token(integration.refresh_token)
        except InvalidGrantError as exc:
            self.integrations.mark_disconnected(user_id)
            raise CalendarDisconnectedError("Google Calendar consent was revoked, reconnect to sync") from exc
        except CalendarProviderError as exc:
            raise CalendarAuthError(f"Token refresh failed: {exc}") from exc

        token = refreshed["access_token"]
        expires_at = now + timedelta(seconds=int(refreshed.get("expires_in") or 3600))
        self.integrations.update_access_token(user_id, token, expires_at)
        self.provider.authorize(token)

    # ------------------------------------------------------------------
    # Pull
    def import_events_to_tasks(self, user_id: str, now: Optional[datetime] = None) -> SyncReport:
        now = now or self.clock()
        report = SyncReport("pull")
        days_past, days_future = self.integrations.sync_window(user_id)
        time_min = now - timedelta(days=days_past)
        time_max = now + timedelta(days=days_future)

        for calendar_id in self.integrations.enabled_calendar_ids(user_id, self.default_calendar_id):
            page_token: Optional[str] = None
            while True:
                try:
                    page = self.provider.list_events(calendar_id, time_min, time_max, page_token)
                except CalendarProviderError as exc:
                    logger.error("Listing events of %s failed: %s", calendar_id, exc)
                    report.add("failed", calendar_id=calendar_id, error=str(exc))
                    break
                for event in page.get("items", []):
                    try:
                        self._import_event(user_id, calendar_id, event, now, report)
                    except Exception as exc:
                        logger.exception("Importing event %s failed", event.get("id"))
                        report.add("failed", calendar_id=calendar_id, event_id=event.get("id"), error=str(exc))
                page_token = page.get("nextPageToken")
                if not page_token:
                    break

        logger.info(report.summary())
        return report

    def _import_event(
        self,
        user_id: str,
        calendar_id: str,
        event: Dict[str, Any],
        now: datetime,
        report: SyncReport,
    ) -> None:
        event_id = event.get("id")
        title = (event.get("summary") or "").strip()
        times = parse_event_times(event, self.timezone)
        if not event_id or event.get("status") == "cancelled" or not title or times is None:
            report.add("skipped", calendar_id=calendar_id, event_id=event_id)
            return
        if is_multi_day_all_day(event):
            logger.debug("Skipping multi-day event %s", event_id)
            report.add("skipped", calendar_id=calendar_id, event_id=event_id)
            return

        due_date, is_all_day, start, end = times
        remote_updated = event_updated(event) or now
        synced_at = max(now, remote_updated)
        fields = {
            "title": title,
            "description": event_description(event),
            "due_date": due_date,
            "is_all_day": is_all_day,
            "start_time": start,
            "end_time": end,
            "sync_source": SyncSource.GOOGLE_CALENDAR,
            "last_synced_at": synced_at,
            "updated_at": synced_at,
        }

        existing = self.store.find_by_event(user_id, calendar_id, event_id)
        if existing is None:
            task_id = str(uuid.uuid4())
            row = to_storage_row(
                {
                    **fields,
                    "id": task_id,
                    "user_id": user_id,
                    "priority": DEFAULT_PRIORITY,
                    "completed": False,
                    "google_calendar_event_id": event_id,
                    "google_calendar_id": calendar_id,
                }
            )
            history = self._synced(task_id, title, "Task imported from Google Calendar", synced_at)
            self.store.insert(row, history=history)
            report.add("created", task_id=task_id, event_id=event_id, calendar_id=calendar_id)
            return

        task = from_storage_row(existing)
        if task.last_synced_at is not None and remote_updated <= task.last_synced_at:
            report.add("unchanged", task_id=task.id, event_id=event_id, calendar_id=calendar_id)
            return
        if task.has_pending_local_edit and task.updated_at is not None and task.updated_at >= remote_updated:
            logger.debug("Local edit of task %s is newer than event %s", task.id, event_id)
            report.add("unchanged", task_id=task.id, event_id=event_id, calendar_id=calendar_id)
            return

        history = self._synced(task.id, title, "Task updated from Google Calendar", synced_at)
        self.store.update(task.id, to_storage_row(fields), history=history)
        report.add("updated", task_id=task.id, event_id=event_id, calendar_id=calendar_id)

    # ------------------------------------------------------------------
    # Push
    @staticmethod
    def needs_push(task: Task) -> bool:
        if task.due_date is None:
            return False
        if task.sync_source not in (None, SyncSource.APP):
            return False
        return task.last_synced_at is None or (
            task.updated_at is not None and task.updated_at > task.last_synced_at
        )

    def export_tasks_to_events(
        self,
        user_id: str,
        task_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SyncReport:
        """Push dirty tasks, or exactly ``task_id`` when given, to the calendar."""

        now = now or self.clock()
        report = SyncReport("push")
        if task_id is not None:
            row = self.store.get(task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            task = from_storage_row(row)
            candidates = [task] if task.due_date is not None else []
        else:
            candidates = [
                task for task in map(from_storage_row, self.store.list_by_user(user_id)) if self.needs_push(task)
            ]

        for task in candidates:
            try:
                self._export_task(user_id, task, now, report)
            except Exception as exc:
                logger.exception("Pushing task %s failed", task.id)
                report.add(
                    "failed",
                    task_id=task.id,
                    event_id=task.google_calendar_event_id,
                    calendar_id=task.google_calendar_id,
                    error=str(exc),
                )

        logger.info(report.summary())
        return report

    def _export_task(self, user_id: str, task: Task, now: datetime, report: SyncReport) -> None:
        payload = build_event_payload(task, self.timezone)
        calendar_id = task.google_calendar_id or self.default_calendar_id
        action = "created"
        event = None
        if task.google_calendar_event_id:
            try:
                event = self.provider.update_event(calendar_id, task.google_calendar_event_id, payload)
                action = "updated"
            except CalendarProviderError as exc:
                # event removed remotely or calendar no longer writable
                if not (exc.not_found or exc.status == 403):
                    raise
                logger.info("Event %s is gone, recreating it for task %s", task.google_calendar_event_id, task.id)
        if event is None:
            event = self.provider.create_event(calendar_id, payload)

        event_id = event.get("id") or task.google_calendar_event_id
        if not event_id:
            raise CalendarProviderError("Provider returned an event without an id")
        # the provider stamps its own modification time; pulling it back must be a no-op
        synced_at = max(now, event_updated(event) or now)
        details = "Task updated in Google Calendar" if action == "updated" else "Task synced to Google Calendar"
        self.store.update(
            task.id,
            to_storage_row(
                {
                    "google_calendar_event_id": event_id,
                    "google_calendar_id": calendar_id,
                    "sync_source": SyncSource.APP,
                    "last_synced_at": synced_at,
                    "updated_at": synced_at,
                }
            ),
            history=self._synced(task.id, task.title, details, synced_at),
        )
        report.add(action, task_id=task.id, event_id=event_id, calendar_id=calendar_id)

    # ------------------------------------------------------------------
    # Deletion
    def delete_remote_event(self, task: Task, user_id: Optional[str] = None) -> bool:
        """Best-effort removal of the event linked to ``task``; never raises."""

        if not task.is_linked:
            return False
        owner = user_id or task.user_id
        try:
            with self._provider_lock:
                self.authorize(owner)
                self.provider.delete_event(task.google_calendar_id, task.google_calendar_event_id)
        except CalendarProviderError as exc:
            if exc.not_found:
                return True
            logger.warning("Deleting event %s failed: %s", task.google_calendar_event_id, exc)
            return False
        except (CalendarDisconnectedError, CalendarAuthError) as exc:
            logger.warning("Cannot delete event %s: %s", task.google_calendar_event_id, exc)
            return False
        except Exception:
            logger.exception("Deleting event %s crashed", task.google_calendar_event_id)
            return False
        logger.info("Deleted event %s of task %s", task.google_calendar_event_id, task.id)
        return True

    # ------------------------------------------------------------------
    def refresh_calendar_list(self, user_id: str):
        with self._provider_lock:
            self.authorize(user_id)
            calendars = self.provider.list_calendars()
        return self.integrations.upsert_calendars(user_id, calendars)

    def run(self, user_id: str, trigger: str = "manual") -> SyncOutcome:
        """One full pass: authorize, pull, push. Auth failures propagate.

        Remote deletes requested meanwhile wait until the pass is over.
        """

        with self._provider_lock:
            started = self.clock()
            logger.info("Sync started for %s (%s)", user_id, trigger)
            self.authorize(user_id)
            pull = self.import_events_to_tasks(user_id, now=started)
            push = self.export_tasks_to_events(user_id, now=self.clock())
            finished = self.clock()
            self.integrations.mark_synced(user_id, finished)
        outcome = SyncOutcome(user_id, trigger, pull, push, started, finished)
        logger.info("Sync finished for %s: %s", user_id, outcome.summary())
        return outcome

    @staticmethod
    def _synced(task_id: str, title: str, details: str, when: datetime) -> TaskHistoryEntry:
        return TaskHistoryEntry(
            task_id=task_id,
            task_title=title,
            action=HistoryAction.SYNCED,
            timestamp=when,
            details=details,
        )


__all__ = [
    "CalendarAuthError",
    "CalendarDisconnectedError",
    "CalendarReconciler",
    "SyncItemResult",
    "SyncOutcome",
    "SyncReport",
]
