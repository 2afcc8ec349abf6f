from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from core.logs import get_logger
from core.settings import SYNC
from services.calendar_sync import (
    CalendarAuthError,
    CalendarDisconnectedError,
    CalendarReconciler,
    SyncOutcome,
)


logger = get_logger("sync.coordinator")

OutcomeListener = Callable[[SyncOutcome], None]

_MUTATION_EVENTS = ("after_create", "after_update", "after_delete")


class SyncCoordinator:
    """Serializes startup, periodic and debounced syncs of one user on an asyncio loop.

    Only one pass runs at a time. Triggers arriving meanwhile collapse into a
    single rerun; the result of the pass they interrupted is dropped instead
    of being published.
    """

    def __init__(
        self,
        reconciler: CalendarReconciler,
        user_id: str,
        *,
        interval_sec: Optional[float] = None,
        debounce_sec: float = SYNC.debounce_sec,
        enabled: bool = True,
    ) -> None:
        self.reconciler = reconciler
        self.user_id = user_id
        self.interval_sec = interval_sec or SYNC.interval_sec
        self.debounce_sec = debounce_sec
        self.enabled = enabled
        self.last_outcome: Optional[SyncOutcome] = None
        self.last_error: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._periodic: Optional[asyncio.Task] = None
        self._debounce: Optional[asyncio.Task] = None
        self._in_flight = False
        self._rerun_trigger: Optional[str] = None
        self._listeners: List[OutcomeListener] = []

    # ----- listeners -----
    def add_listener(self, callback: OutcomeListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _publish(self, outcome: SyncOutcome) -> None:
        self.last_outcome = outcome
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception:
                logger.exception("Sync listener failed")

    def attach(self, task_service) -> None:
        """Schedule a debounced sync after every local mutation made through ``task_service``."""

        for event in _MUTATION_EVENTS:
            task_service.subscribe(event, self.notify_local_change)

    # ----- lifecycle -----
    @property
    def is_syncing(self) -> bool:
        return self._in_flight

    async def start(self) -> Optional[SyncOutcome]:
        self._loop = asyncio.get_running_loop()
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.create_task(self._periodic_loop())
        return await self.sync_now("startup")

    async def stop(self) -> None:
        for task in (self._periodic, self._debounce):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._periodic = None
        self._debounce = None

    def reconnect(self) -> None:
        """Re-enable triggers after the user connected the calendar again."""

        self.enabled = True
        self.last_error = None

    # ----- triggers -----
    def notify_local_change(self, *_args) -> None:
        if not self.enabled or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._restart_debounce)

    def _restart_debounce(self) -> None:
        if self._debounce is not None and not self._debounce.done():
            self._debounce.cancel()
        self._debounce = asyncio.ensure_future(self._debounced())

    async def _debounced(self) -> None:
        await asyncio.sleep(self.debounce_sec)
        await self.sync_now("debounce")

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            if self.enabled:
                await self.sync_now("interval")

    async def sync_now(self, trigger: str = "manual") -> Optional[SyncOutcome]:
        """Run a pass now, or queue one rerun if a pass is already in flight."""

        if not self.enabled:
            logger.debug("Sync (%s) skipped: auto-sync is off", trigger)
            return None
        if self._in_flight:
            logger.debug("Sync (%s) coalesced into a rerun", trigger)
            self._rerun_trigger = trigger
            return None

        self._in_flight = True
        try:
            while True:
                self._rerun_trigger = None
                outcome = await self._run_once(trigger)
                if self._rerun_trigger is not None and self.enabled:
                    logger.info("Discarding %s sync result, a newer sync was requested", trigger)
                    trigger = self._rerun_trigger
                    continue
                if outcome is not None:
                    self._publish(outcome)
                return outcome
        finally:
            self._in_flight = False

    async def _run_once(self, trigger: str) -> Optional[SyncOutcome]:
        try:
            outcome = await asyncio.to_thread(self.reconciler.run, self.user_id, trigger)
        except CalendarDisconnectedError as exc:
            self.enabled = False
            self.last_error = str(exc)
            logger.warning("Auto-sync disabled for %s: %s", self.user_id, exc)
            return None
        except CalendarAuthError as exc:
            self.last_error = str(exc)
            logger.warning("Sync (%s) failed to authorize: %s", trigger, exc)
            return None
        except Exception as exc:
            self.last_error = str(exc)
            logger.exception("Sync (%s) crashed", trigger)
            return None
        self.last_error = None
        return outcome


__all__ = ["SyncCoordinator"]
