# taskflow/main.py
"""Command line entry point for Taskflow."""
from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import List, Optional

from core.entities import RecurrenceRule, RecurrenceRuleError, TaskValidationError
from core.logs import get_logger
from core.priorities import priority_label
from services.calendar_sync import CalendarAuthError, CalendarDisconnectedError, CalendarReconciler
from services.google_auth import GoogleAuth
from services.google_calendar import GoogleCalendar
from services.integrations import IntegrationStore
from services.sync_service import SyncCoordinator
from services.tags import DEFAULT_TAG_COLOR, TagService, TagValidationError
from services.task_normalizer import display_times
from services.task_repository import SqlTaskRepository, TaskNotFoundError
from services.tasks import TaskService
from storage.config import AppConfig, ensure_user_id, update_config
from storage.db import init_db
from utils.datetime_utils import coerce_calendar_date
from utils.timezones import format_calendar_date, get_zone, resolve_local_timezone


logger = get_logger("cli")


@dataclass
class App:
    config: AppConfig
    timezone: str
    integrations: IntegrationStore
    auth: GoogleAuth
    reconciler: CalendarReconciler
    tasks: TaskService
    tags: TagService

    @property
    def user_id(self) -> str:
        return self.config.user_id


def build_app() -> App:
    init_db()
    config = ensure_user_id()
    timezone = config.timezone if get_zone(config.timezone) else resolve_local_timezone()
    store = SqlTaskRepository()
    integrations = IntegrationStore()
    auth = GoogleAuth(integrations)
    try:
        client_id, client_secret = auth.client_credentials()
    except (FileNotFoundError, ValueError) as exc:
        logger.warning("No OAuth client configured: %s", exc)
        client_id, client_secret = "", ""
    provider = GoogleCalendar(client_id, client_secret)
    reconciler = CalendarReconciler(
        store,
        provider,
        integrations,
        timezone=timezone,
        default_calendar_id=config.default_calendar_id,
    )
    tasks = TaskService(store, config.user_id, reconciler=reconciler, timezone=timezone)
    return App(config, timezone, integrations, auth, reconciler, tasks, TagService(config.user_id))


# ---------- commands ----------
def cmd_connect(app: App, args) -> int:
    app.auth.connect(app.user_id)
    calendars = app.reconciler.refresh_calendar_list(app.user_id)
    print(f"Connected. {len(calendars)} calendars found.")
    return 0


def cmd_disconnect(app: App, args) -> int:
    app.auth.disconnect(app.user_id)
    print("Google Calendar disconnected.")
    return 0


def cmd_calendars(app: App, args) -> int:
    if args.refresh:
        app.reconciler.refresh_calendar_list(app.user_id)
    for calendar_id in args.enable or []:
        app.integrations.set_calendar_enabled(app.user_id, calendar_id, True)
    for calendar_id in args.disable or []:
        app.integrations.set_calendar_enabled(app.user_id, calendar_id, False)
    for setting in app.integrations.list_calendars(app.user_id):
        mark = "x" if setting.enabled else " "
        print(f"[{mark}] {setting.calendar_id}  {setting.name}")
    return 0


def cmd_sync(app: App, args) -> int:
    outcome = app.reconciler.run(app.user_id, trigger="manual")
    print(outcome.summary())
    for item in outcome.pull.failures + outcome.push.failures:
        print(f"  {item.direction} failed: {item.task_id or item.event_id or item.calendar_id}: {item.error}")
    return 0 if outcome.ok else 1


def build_coordinator(app: App, interval: Optional[int] = None) -> SyncCoordinator:
    """Coordinator for the current user, honouring the stored auto-sync preference."""

    integration = app.integrations.get(app.user_id)
    if interval is None and integration is not None:
        interval = integration.sync_interval_minutes * 60
    enabled = bool(integration and integration.connected and integration.auto_sync_enabled)
    coordinator = SyncCoordinator(app.reconciler, app.user_id, interval_sec=interval, enabled=enabled)
    coordinator.attach(app.tasks)
    return coordinator


def cmd_watch(app: App, args) -> int:
    coordinator = build_coordinator(app, args.interval)
    if not coordinator.enabled:
        print("Auto-sync is off. Run `taskflow autosync on` or `taskflow connect` first.")
        return 1
    coordinator.add_listener(lambda outcome: print(f"[{outcome.trigger}] {outcome.summary()}"))

    async def _watch() -> None:
        await coordinator.start()
        try:
            while coordinator.enabled:
                await asyncio.sleep(1)
            print(f"Sync stopped: {coordinator.last_error}")
        finally:
            await coordinator.stop()

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        pass
    return 0


def cmd_status(app: App, args) -> int:
    integration = app.integrations.get(app.user_id)
    print(f"User: {app.user_id}")
    print(f"Timezone: {app.timezone}")
    if integration is None:
        print("Google Calendar: not connected")
        return 0
    state = "connected" if integration.connected else "disconnected"
    auto = f"every {integration.sync_interval_minutes} min" if integration.auto_sync_enabled else "off"
    print(f"Google Calendar: {state}, auto-sync {auto}")
    print(f"Sync window: {integration.days_past} days back, {integration.days_future} days ahead")
    if integration.last_synced_at:
        print(f"Last sync: {integration.last_synced_at:%Y-%m-%d %H:%M} UTC")
    return 0


def cmd_autosync(app: App, args) -> int:
    integration = app.integrations.get(app.user_id)
    if integration is None:
        print("Google Calendar is not connected. Run `taskflow connect` first.")
        return 1
    enabled = integration.auto_sync_enabled if args.state is None else args.state == "on"
    try:
        app.integrations.set_auto_sync(app.user_id, enabled, args.interval)
        app.integrations.set_sync_window(app.user_id, args.past, args.future)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return cmd_status(app, args)


def _build_rule(args) -> Optional[RecurrenceRule]:
    if not args.repeat:
        return None
    until = coerce_calendar_date(args.until) if args.until else None
    if args.until and until is None:
        raise TaskValidationError(f"Invalid --until date: {args.until}")
    return RecurrenceRule.build(args.repeat, args.days or (), end_date=until, end_after=args.count)


def cmd_tasks(app: App, args) -> int:
    action = args.action
    if action == "add":
        task = app.tasks.create(
            args.title,
            description=args.description or "",
            priority=args.priority,
            due_date=args.due,
            start=args.start,
            end=args.end,
            tags=args.tag or (),
            recurring=_build_rule(args),
        )
        print(f"Created {task.id}")
    elif action == "done":
        task = app.tasks.complete(args.id, series=args.forever)
        print("Completed." if task.completed else f"Next occurrence: {format_calendar_date(task.due_date)}")
    elif action == "reopen":
        app.tasks.reopen(args.id)
    elif action == "rm":
        app.tasks.delete(args.id)
    else:
        day = coerce_calendar_date(args.day) if args.day else None
        for task in app.tasks.list(day=day, include_completed=args.all):
            start, end = display_times(task, app.timezone)
            when = format_calendar_date(task.due_date) or "no date"
            if start:
                when += f" {start}" + (f"-{end}" if end else "")
            mark = "x" if task.completed else " "
            repeat = f" ({task.recurring.frequency.value})" if task.recurring else ""
            print(f"[{mark}] {task.id}  {when}  {task.title}{repeat}  [{priority_label(task.priority, short=True)}]")
    return 0


def cmd_history(app: App, args) -> int:
    for entry in app.tasks.history(args.task):
        details = f" - {entry.details}" if entry.details else ""
        print(f"{entry.timestamp:%Y-%m-%d %H:%M}  {entry.action.value:<9} {entry.task_title}{details}")
    return 0


def cmd_tags(app: App, args) -> int:
    action = args.action
    if action == "add":
        tag = app.tags.create(args.name, args.color)
        print(f"Created tag {tag.id} {tag.name}")
        return 0
    if action in ("rename", "color", "rm"):
        tag = app.tags.get_by_name(args.name)
        if tag is None:
            print(f"No tag named {args.name!r}", file=sys.stderr)
            return 1
        if action == "rename":
            app.tags.rename(tag.id, args.new_name)
        elif action == "color":
            app.tags.recolor(tag.id, args.color)
        else:
            app.tags.delete(tag.id)
        return 0
    usage = app.tags.usage()
    for tag in app.tags.list():
        print(f"{tag.color_hex}  {tag.name}  ({usage.get(tag.name, 0)} tasks)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskflow", description=__doc__ or "")
    parser.add_argument("--timezone", help="IANA timezone to remember for this installation")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("connect", help="Connect Google Calendar").set_defaults(func=cmd_connect)
    sub.add_parser("disconnect", help="Forget Google Calendar tokens").set_defaults(func=cmd_disconnect)

    calendars = sub.add_parser("calendars", help="List or select synced calendars")
    calendars.add_argument("--refresh", action="store_true")
    calendars.add_argument("--enable", action="append")
    calendars.add_argument("--disable", action="append")
    calendars.set_defaults(func=cmd_calendars)

    sub.add_parser("sync", help="Run one sync pass").set_defaults(func=cmd_sync)

    watch = sub.add_parser("watch", help="Keep syncing in the background")
    watch.add_argument("--interval", type=int, help="Seconds between periodic syncs")
    watch.set_defaults(func=cmd_watch)

    sub.add_parser("status", help="Show integration state").set_defaults(func=cmd_status)

    autosync = sub.add_parser("autosync", help="Configure background sync")
    autosync.add_argument("state", nargs="?", choices=("on", "off"))
    autosync.add_argument("--interval", type=int, help="Minutes between periodic syncs")
    autosync.add_argument("--past", type=int, help="Days before today to import")
    autosync.add_argument("--future", type=int, help="Days after today to import")
    autosync.set_defaults(func=cmd_autosync)

    tasks = sub.add_parser("tasks", help="Manage tasks")
    tasks_sub = tasks.add_subparsers(dest="action")
    listing = tasks_sub.add_parser("list")
    listing.add_argument("--day")
    listing.add_argument("--all", action="store_true", help="Include completed tasks")
    add = tasks_sub.add_parser("add")
    add.add_argument("title")
    add.add_argument("--description")
    add.add_argument("--priority", choices=("low", "medium", "high"))
    add.add_argument("--due")
    add.add_argument("--start", help="HH:MM or 2:30 PM")
    add.add_argument("--end")
    add.add_argument("--tag", action="append")
    add.add_argument("--repeat", choices=("daily", "weekly", "monthly", "custom"))
    add.add_argument("--days", nargs="+", help="Weekdays for custom repeats")
    add.add_argument("--until")
    add.add_argument("--count", type=int)
    done = tasks_sub.add_parser("done")
    done.add_argument("id")
    done.add_argument("--forever", action="store_true", help="Complete a recurring task for good")
    for name in ("reopen", "rm"):
        tasks_sub.add_parser(name).add_argument("id")
    tasks.set_defaults(func=cmd_tasks, action="list", day=None, all=False)

    history = sub.add_parser("history", help="Show task history")
    history.add_argument("--task")
    history.set_defaults(func=cmd_history)

    tags = sub.add_parser("tags", help="Manage tags")
    tags_sub = tags.add_subparsers(dest="action")
    tags_sub.add_parser("list")
    tag_add = tags_sub.add_parser("add")
    tag_add.add_argument("name")
    tag_add.add_argument("--color", default=DEFAULT_TAG_COLOR, help="#RRGGBB")
    tag_rename = tags_sub.add_parser("rename")
    tag_rename.add_argument("name")
    tag_rename.add_argument("new_name")
    tag_color = tags_sub.add_parser("color")
    tag_color.add_argument("name")
    tag_color.add_argument("color", help="#RRGGBB")
    tags_sub.add_parser("rm").add_argument("name")
    tags.set_defaults(func=cmd_tags, action="list")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.timezone:
        if get_zone(args.timezone) is None:
            print(f"Unknown timezone: {args.timezone}", file=sys.stderr)
            return 2
        update_config(timezone=args.timezone)
    app = build_app()
    try:
        return args.func(app, args)
    except CalendarDisconnectedError as exc:
        print(f"Google Calendar is disconnected: {exc}. Run `taskflow connect`.", file=sys.stderr)
        return 2
    except CalendarAuthError as exc:
        print(f"Could not authorize with Google: {exc}", file=sys.stderr)
        return 1
    except (TaskValidationError, RecurrenceRuleError, TaskNotFoundError, TagValidationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
