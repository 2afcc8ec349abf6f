"""SQLModel tables for calendar provider credentials and calendar selection."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from core.settings import SYNC
from utils.datetime_utils import utc_now


class UserIntegration(SQLModel, table=True):
    """OAuth tokens and auto-sync preferences of one user for one provider."""

    __tablename__ = "user_integration"

    user_id: str = Field(primary_key=True)
    provider: str = Field(default="google_calendar", primary_key=True)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    connected: bool = False
    auto_sync_enabled: bool = True
    sync_interval_minutes: int = 5
    # pull window around "now"
    days_past: int = SYNC.lookback_days
    days_future: int = SYNC.lookahead_days
    last_synced_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)


class CalendarSetting(SQLModel, table=True):
    """Which external calendars take part in sync."""

    __tablename__ = "calendar_setting"

    user_id: str = Field(primary_key=True)
    calendar_id: str = Field(primary_key=True)
    name: str = ""
    enabled: bool = False


__all__ = ["UserIntegration", "CalendarSetting"]
