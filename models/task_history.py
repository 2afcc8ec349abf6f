"""Append-only audit trail of task mutations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


class TaskHistoryRecord(SQLModel, table=True):
    __tablename__ = "task_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    # no foreign key: entries outlive the task they describe
    task_id: str = Field(index=True)
    task_title: str
    action: str
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now, index=True)


__all__ = ["TaskHistoryRecord"]
