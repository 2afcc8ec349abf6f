# taskflow/models/tag.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


DEFAULT_TAG_COLOR = "#9CA3AF"


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tags_user_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    name: str
    color_hex: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TaskTag(SQLModel, table=True):
    __tablename__ = "task_tags"

    task_id: str = Field(primary_key=True, foreign_key="task.id")
    tag_id: int = Field(primary_key=True, foreign_key="tags.id")


__all__ = ["DEFAULT_TAG_COLOR", "Tag", "TaskTag"]
