"""Advancing recurring tasks to their next occurrence.

A recurring series is represented by a single task record that always holds
the *current* occurrence. Completing it moves the record forward in place.
Nothing in here touches storage or the network.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterator, Optional

from dateutil.relativedelta import relativedelta

from core.entities import Frequency, RecurrenceRule, RecurrenceRuleError, Task
from utils.timezones import (
    combine_date_and_time_of_day,
    instant_to_local_date,
    instant_to_local_time_of_day,
    resolve_local_timezone,
)


logger = logging.getLogger("taskflow.recurrence")


def next_due_date(rule: RecurrenceRule, current: date) -> date:
    """Return the due date that follows ``current`` under ``rule``.

    Monthly steps keep the day of month and clamp to the last day of shorter
    months, so Jan 31 is followed by Feb 29 in a leap year.
    """

    rule.validate()
    if rule.frequency is Frequency.DAILY:
        return current + timedelta(days=1)
    if rule.frequency is Frequency.WEEKLY:
        return current + timedelta(days=7)
    if rule.frequency is Frequency.MONTHLY:
        return current + relativedelta(months=1)

    weekdays = rule.weekday_numbers
    if not weekdays:
        raise RecurrenceRuleError("Custom recurrence needs at least one weekday")
    candidate = current
    for _ in range(7):
        candidate += timedelta(days=1)
        if candidate.weekday() in weekdays:
            return candidate
    raise RecurrenceRuleError("Custom recurrence weekdays never match")  # pragma: no cover


def _series_ended(rule: RecurrenceRule, candidate: date, occurrence_index: int) -> bool:
    end = rule.end
    if end.kind == "end_date":
        return candidate > end.end_date
    if end.kind == "end_after":
        return occurrence_index + 1 >= end.end_after
    return False


def _shift_times(task: Task, shift: timedelta, timezone: str) -> Task:
    """Move start/end by ``shift`` days keeping their local wall-clock times."""

    if task.start_time is None:
        return task.evolve(start_time=None, end_time=None)

    local_start_day = instant_to_local_date(task.start_time, timezone)
    start_clock = instant_to_local_time_of_day(task.start_time, timezone)
    new_start_day = local_start_day + shift
    new_start = combine_date_and_time_of_day(new_start_day, start_clock, timezone)
    if new_start is None:
        raise RecurrenceRuleError(f"Cannot place {start_clock} on {new_start_day} in {timezone}")

    new_end = None
    if task.end_time is not None:
        # keeps events that run past midnight spanning the same number of days
        day_span = instant_to_local_date(task.end_time, timezone) - local_start_day
        end_clock = instant_to_local_time_of_day(task.end_time, timezone)
        new_end = combine_date_and_time_of_day(new_start_day + day_span, end_clock, timezone)
        if new_end is None or new_end < new_start:
            new_end = new_start + (task.end_time - task.start_time)

    return task.evolve(start_time=new_start, end_time=new_end)


def schedule_next_occurrence(
    task: Task,
    occurrence_index: Optional[int] = None,
    timezone: Optional[str] = None,
) -> Optional[Task]:
    """Return the task advanced to its next occurrence, or ``None`` when the series is over.

    ``occurrence_index`` is the zero-based index of ``task`` within its series
    and defaults to the index the task carries. Timed occurrences keep their
    local time of day in ``timezone`` across DST changes.
    """

    rule = task.recurring
    if rule is None:
        raise RecurrenceRuleError("Task is not recurring")
    rule.validate()
    if task.due_date is None:
        raise RecurrenceRuleError("Recurring task has no due date")

    index = task.occurrence_index if occurrence_index is None else occurrence_index
    if index < 0:
        raise RecurrenceRuleError("occurrence_index must not be negative")

    candidate = next_due_date(rule, task.due_date)
    if _series_ended(rule, candidate, index):
        logger.debug("Series of task %s ended after occurrence %s", task.id, index)
        return None

    advanced = task.evolve(due_date=candidate, completed=False, occurrence_index=index + 1)
    if not task.is_all_day:
        advanced = _shift_times(advanced, candidate - task.due_date, timezone or resolve_local_timezone())
    return advanced


def iter_occurrences(task: Task, limit: int, timezone: Optional[str] = None) -> Iterator[Task]:
    """Yield up to ``limit`` occurrences following ``task``."""

    current = task
    for _ in range(max(0, limit)):
        upcoming = schedule_next_occurrence(current, timezone=timezone)
        if upcoming is None:
            return
        yield upcoming
        current = upcoming


__all__ = ["iter_occurrences", "next_due_date", "schedule_next_occurrence"]
