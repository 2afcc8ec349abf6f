# taskflow/models/task.py
from typing import Optional
from datetime import date, datetime

from utils.datetime_utils import utc_now
from sqlmodel import SQLModel, Field


class TaskRecord(SQLModel, table=True):
    __tablename__ = "task"

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    title: str
    description: str = ""
    priority: str = "medium"         # low / medium / high
    due_date: Optional[datetime] = None  # UTC midnight of the calendar day
    is_all_day: bool = True
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    completed: bool = False
    recurring_frequency: Optional[str] = None
    recurring_custom_days: Optional[str] = None  # JSON list of weekday names
    recurring_end_date: Optional[date] = None
    recurring_end_after: Optional[int] = None
    recurring_occurrence_index: int = 0
    google_calendar_event_id: Optional[str] = Field(default=None, index=True)
    google_calendar_id: Optional[str] = None
    sync_source: Optional[str] = "app"
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["TaskRecord"]
