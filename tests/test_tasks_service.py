from datetime import date, datetime, timedelta, timezone

import pytest

from core.entities import HistoryAction, RecurrenceRule, SyncSource, TaskValidationError
from core.priorities import Priority
from services.calendar_sync import CalendarReconciler
from services.google_calendar import CalendarProviderError
from services.integrations import IntegrationStore
from services.task_repository import SqlTaskRepository, TaskNotFoundError
from services.tasks import TaskService
from fakes import FakeCalendarProvider, InMemoryTaskStore, MutableClock

UTC = timezone.utc
NY = "America/New_York"


@pytest.fixture()
def clock():
    return MutableClock(datetime(2024, 6, 10, 12, 0, tzinfo=UTC))


@pytest.fixture()
def store(clock):
    return InMemoryTaskStore(clock)


@pytest.fixture()
def service(store, clock):
    return TaskService(store, "u1", timezone=NY, clock=clock)


def test_create_all_day_task(service):
    task = service.create("Pay rent", due_date="2024-06-15", priority="high", tags=["home"])
    assert task.id
    assert task.is_all_day is True
    assert task.due_date == date(2024, 6, 15)
    assert task.priority is Priority.HIGH
    assert task.tags == frozenset({"home"})
    assert task.sync_source is SyncSource.APP
    assert task.has_pending_local_edit


def test_create_combines_time_of_day_with_due_date(service):
    task = service.create("Standup", due_date=date(2024, 6, 15), start="09:00", end="9:30 AM")
    assert task.is_all_day is False
    assert task.start_time == datetime(2024, 6, 15, 13, 0, tzinfo=UTC)
    assert task.end_time == datetime(2024, 6, 15, 13, 30, tzinfo=UTC)


def test_create_window_past_midnight_ends_next_day(service):
    task = service.create("Night shift", due_date="2024-06-15", start="22:00", end="01:00")
    assert task.end_time == datetime(2024, 6, 16, 5, 0, tzinfo=UTC)


def test_create_from_instant_derives_local_due_date(service):
    task = service.create("Late call", start=datetime(2024, 6, 16, 2, 0, tzinfo=UTC))
    assert task.due_date == date(2024, 6, 15)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"title": "  "},
        {"title": "No day", "start": "09:00"},
        {"title": "Bad time", "due_date": "2024-06-15", "start": "25:00"},
        {"title": "Bad day", "due_date": "someday"},
        {"title": "Naive", "due_date": "2024-06-15", "start": datetime(2024, 6, 15, 9, 0)},
        {"title": "Backwards", "start": datetime(2024, 6, 15, 9, 0, tzinfo=UTC), "end": datetime(2024, 6, 15, 8, 0, tzinfo=UTC)},
    ],
)
def test_create_rejects_invalid_input(service, store, kwargs):
    with pytest.raises(TaskValidationError):
        service.create(**kwargs)
    assert store.rows == {}


def test_recurring_task_needs_due_date(service):
    with pytest.raises(TaskValidationError):
        service.create("Gym", recurring=RecurrenceRule.build("daily"))


def test_every_mutation_is_recorded(service):
    task = service.create("Write report", due_date="2024-06-15")
    service.update(task.id, title="Write final report")
    service.complete(task.id)
    service.reopen(task.id)
    service.delete(task.id)

    actions = [entry.action for entry in service.history(task.id)]
    assert actions == [
        HistoryAction.CREATED,
        HistoryAction.UPDATED,
        HistoryAction.COMPLETED,
        HistoryAction.UPDATED,
        HistoryAction.DELETED,
    ]
    assert service.history(task.id)[1].details == "Changed: title"


def test_listeners_receive_task_ids(service):
    events = []
    for name in ("after_create", "after_update", "after_delete"):
        service.subscribe(name, lambda task_id, name=name: events.append((name, task_id)))

    def broken(_task_id):
        raise RuntimeError("boom")

    service.subscribe("after_create", broken)
    task = service.create("Plan trip")
    service.update(task.id, description="Lisbon")
    service.delete(task.id)

    assert events == [("after_create", task.id), ("after_update", task.id), ("after_delete", task.id)]
    with pytest.raises(ValueError):
        service.subscribe("before_create", broken)


def test_update_marks_synced_task_dirty(service, store, clock):
    task = service.create("Linked", due_date="2024-06-15")
    store.update(
        task.id,
        {
            "google_calendar_event_id": "evt-1",
            "google_calendar_id": "primary",
            "last_synced_at": "2024-06-10T12:00:00Z",
            "updated_at": "2024-06-10T12:00:00Z",
        },
    )
    clock.advance(minutes=1)

    updated = service.update(task.id, priority="low")

    assert updated.priority is Priority.LOW
    assert updated.has_pending_local_edit
    assert CalendarReconciler.needs_push(updated)


def test_moving_due_date_keeps_local_times(service):
    task = service.create("Dentist", due_date="2024-03-08", start="15:00", end="16:00")
    moved = service.update(task.id, due_date="2024-03-12")
    # DST started on Mar 10; wall clock stays put
    assert moved.start_time == datetime(2024, 3, 12, 19, 0, tzinfo=UTC)
    assert moved.end_time == datetime(2024, 3, 12, 20, 0, tzinfo=UTC)


def test_switching_to_all_day_clears_times(service):
    task = service.create("Lunch", due_date="2024-06-15", start="12:00")
    updated = service.update(task.id, is_all_day=True)
    assert updated.is_all_day is True
    assert updated.start_time is None and updated.end_time is None


def test_changing_start_only_drops_old_end(service):
    task = service.create("Call", due_date="2024-06-15", start="10:00", end="11:00")
    updated = service.update(task.id, start="14:00")
    assert updated.start_time == datetime(2024, 6, 15, 18, 0, tzinfo=UTC)
    assert updated.end_time is None


def test_update_rejects_unknown_and_invalid_changes(service, store):
    task = service.create("Keep me", due_date="2024-06-15")
    with pytest.raises(TaskValidationError):
        service.update(task.id, google_calendar_event_id="evt-9")
    with pytest.raises(TaskValidationError):
        service.update(task.id, title="")
    with pytest.raises(TaskNotFoundError):
        service.update("missing", title="x")
    assert service.get(task.id).title == "Keep me"


def test_completing_recurring_task_advances_it(service):
    task = service.create(
        "Water plants",
        due_date="2024-06-15",
        start="08:00",
        recurring=RecurrenceRule.build("daily"),
    )

    advanced = service.complete(task.id)

    assert advanced.id == task.id
    assert advanced.completed is False
    assert advanced.due_date == date(2024, 6, 16)
    assert advanced.start_time == datetime(2024, 6, 16, 12, 0, tzinfo=UTC)
    assert advanced.occurrence_index == 1
    entry = service.history(task.id)[-1]
    assert entry.action is HistoryAction.COMPLETED
    assert entry.details == "Next occurrence on Jun 16, 2024"


def test_completing_last_occurrence_finishes_series(service):
    task = service.create("Course", due_date="2024-06-15", recurring=RecurrenceRule.build("weekly", end_after=2))
    service.complete(task.id)
    finished = service.complete(task.id)

    assert finished.completed is True
    assert finished.due_date == date(2024, 6, 22)
    assert service.history(task.id)[-1].details == "Recurring series finished"


def test_completing_whole_series_does_not_advance(service, store):
    task = service.create(
        "Water plants",
        due_date="2024-06-15",
        start="08:00",
        recurring=RecurrenceRule.build("daily"),
    )

    done = service.complete(task.id, series=True)

    assert done.completed is True
    assert done.due_date == date(2024, 6, 15)
    assert done.start_time == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)
    assert done.occurrence_index == 0
    assert done.recurring == task.recurring
    assert len(store.rows) == 1
    entry = service.history(task.id)[-1]
    assert entry.action is HistoryAction.COMPLETED
    assert entry.details == "Recurring series completed"


def test_completing_series_of_plain_task_just_completes(service):
    task = service.create("Buy milk", due_date="2024-06-15")
    done = service.complete(task.id, series=True)
    assert done.completed is True
    assert service.history(task.id)[-1].details is None


def test_mutations_and_history_share_one_write(session_factory, clock):
    store = SqlTaskRepository(session_factory)
    service = TaskService(store, "u1", timezone=NY, clock=clock)

    task = service.create("Pay rent", due_date="2024-06-15", tags=["home"])
    service.update(task.id, title="Pay the rent")
    service.complete(task.id)

    assert service.get(task.id).tags == frozenset({"home"})
    assert [e.action for e in service.history(task.id)] == [
        HistoryAction.CREATED,
        HistoryAction.UPDATED,
        HistoryAction.COMPLETED,
    ]
    assert service.history(task.id)[1].task_title == "Pay the rent"


def test_list_filters_by_day_and_completion(service):
    first = service.create("First", due_date="2024-06-15")
    service.create("Second", due_date="2024-06-16")
    service.create("Undated")
    service.complete(first.id)

    assert [t.title for t in service.list(day=date(2024, 6, 15))] == ["First"]
    assert {t.title for t in service.list(include_completed=False)} == {"Second", "Undated"}


def test_get_hides_other_users_tasks(service, store, clock):
    other = TaskService(store, "u2", timezone=NY, clock=clock).create("Private")
    assert service.get(other.id) is None
    with pytest.raises(TaskNotFoundError):
        service.delete(other.id)


def test_delete_survives_remote_event_already_gone(store, clock, session_factory):
    provider = FakeCalendarProvider(clock)
    provider.delete_error = CalendarProviderError("not found", status=404)
    integrations = IntegrationStore(session_factory)
    integrations.save_tokens("u1", access_token="token", refresh_token="r", expires_at=clock.now + timedelta(hours=1))
    reconciler = CalendarReconciler(store, provider, integrations, timezone=NY, clock=clock)
    service = TaskService(store, "u1", reconciler=reconciler, timezone=NY, clock=clock)

    task = service.create("Linked", due_date="2024-06-15")
    reconciler.export_tasks_to_events("u1")
    event_id = service.get(task.id).google_calendar_event_id

    service.delete(task.id)

    assert service.get(task.id) is None
    assert ("delete", "primary", event_id) in provider.calls


def test_delete_without_consent_still_deletes_locally(store, clock, session_factory):
    provider = FakeCalendarProvider(clock)
    integrations = IntegrationStore(session_factory)
    reconciler = CalendarReconciler(store, provider, integrations, timezone=NY, clock=clock)
    service = TaskService(store, "u1", reconciler=reconciler, timezone=NY, clock=clock)
    task = service.create("Linked", due_date="2024-06-15")
    store.update(task.id, {"google_calendar_event_id": "evt-1", "google_calendar_id": "primary"})

    service.delete(task.id)

    assert store.rows == {}
    assert not [c for c in provider.calls if c[0] == "delete"]
