"""Utilities for working with RFC3339 timestamps, UTC datetimes and calendar dates."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional, Union

UTC = timezone.utc

DateLike = Union[date, datetime, str]


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def _normalize_fraction(s: str) -> str:
    """Pad or trim fractional seconds to 6 digits."""

    digits = s[:6]
    if len(digits) < 6:
        digits = digits + "0" * (6 - len(digits))
    return digits


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = str(s).strip()
    if not value:
        return None

    if value.endswith("Z") or value.endswith("z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        tz_sign = "+"
        tz_suffix = "00:00"
        if "+" in tail:
            frac, tz_suffix = tail.split("+", 1)
            tz_sign = "+"
        elif "-" in tail:
            frac, tz_suffix = tail.split("-", 1)
            tz_sign = "-"
        else:
            frac = tail
        frac = _normalize_fraction(frac)
        value = f"{head}.{frac}{tz_sign}{tz_suffix}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    else:
        dt = dt.astimezone(UTC)
    return dt


def to_rfc3339_utc(dt: Optional[Union[datetime, str]]) -> Optional[str]:
    """Serialize a datetime (or RFC3339 string) to RFC3339 in UTC with second precision."""

    if dt is None:
        return None
    if isinstance(dt, str):
        dt = parse_rfc3339(dt)
    value = ensure_utc(dt)
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def coerce_calendar_date(value: Optional[DateLike]) -> Optional[date]:
    """Return the calendar date carried by ``value``.

    Accepts ``date`` objects, ``datetime`` objects (aware ones are read in UTC,
    which is how due dates are stored), ``YYYY-MM-DD`` strings and full
    RFC3339 instants. Returns ``None`` when the value cannot be interpreted.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if len(text) == 10:
        try:
            return date.fromisoformat(text)
        except ValueError:
            return None
    parsed = parse_rfc3339(text)
    return parsed.date() if parsed else None


def due_date_to_storage(value: Optional[DateLike]) -> Optional[str]:
    day = coerce_calendar_date(value)
    if day is None:
        return None
    return to_rfc3339_utc(midnight_utc(day))


__all__ = [
    "UTC",
    "DateLike",
    "coerce_calendar_date",
    "due_date_to_storage",
    "ensure_utc",
    "midnight_utc",
    "parse_rfc3339",
    "to_rfc3339_utc",
    "utc_now",
]
