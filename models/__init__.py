"""ORM models exposed by the Taskflow application."""
from .task import TaskRecord
from .tag import Tag, TaskTag
from .task_history import TaskHistoryRecord
from .integration import CalendarSetting, UserIntegration

__all__ = ["TaskRecord", "Tag", "TaskTag", "TaskHistoryRecord", "UserIntegration", "CalendarSetting"]
