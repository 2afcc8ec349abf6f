"""Conversions between local wall-clock time and absolute instants.

Storage always carries UTC instants. Offsets for a wall-clock moment are
derived from the current IANA rules of the named zone at conversion time,
so a 16:00 meeting stays at 16:00 local time on either side of a DST change.
Calendar dates (all-day tasks) are never pushed through a local zone for
storage, only for display.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import date, datetime, time, tzinfo
from pathlib import Path
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from utils.datetime_utils import UTC, coerce_calendar_date, ensure_utc, parse_rfc3339


logger = logging.getLogger("taskflow.timezones")

InstantLike = Union[datetime, str]

_TIME_24H_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]?\d)(?::[0-5]\d)?$")
_TIME_12H_RE = re.compile(r"^(\d{1,2})(?::(\d{1,2}))?(?::\d{1,2})?\s*([ap]\.?m\.?)$", re.I)
_ZONEINFO_MARKER = "zoneinfo/"


def get_zone(name: Optional[str]) -> Optional[tzinfo]:
    """Return the ``ZoneInfo`` for ``name`` or ``None`` if it is unknown."""

    if not name:
        return None
    key = str(name).strip()
    if key.upper() in {"UTC", "Z", "ETC/UTC"}:
        return UTC
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _zone_from_localtime_link(path: Path = Path("/etc/localtime")) -> Optional[str]:
    try:
        target = os.path.realpath(path)
    except OSError:
        return None
    idx = target.find(_ZONEINFO_MARKER)
    if idx < 0:
        return None
    candidate = target[idx + len(_ZONEINFO_MARKER):]
    for prefix in ("posix/", "right/"):
        if candidate.startswith(prefix):
            candidate = candidate[len(prefix):]
    return candidate if get_zone(candidate) is not None else None


def resolve_local_timezone() -> str:
    """Best-effort IANA name of the machine's timezone; ``UTC`` on any failure."""

    try:
        env_tz = (os.environ.get("TZ") or "").strip().lstrip(":")
        if env_tz and get_zone(env_tz) is not None:
            return "UTC" if get_zone(env_tz) is UTC else env_tz

        linked = _zone_from_localtime_link()
        if linked:
            return linked

        local_tz = datetime.now().astimezone().tzinfo
        key = getattr(local_tz, "key", None)
        if key and get_zone(key) is not None:
            return key
    except Exception as exc:  # pragma: no cover - platform specific
        logger.debug("Timezone detection failed: %s", exc)
    return "UTC"


def to_24_hour(value: Optional[str]) -> Optional[str]:
    """Normalize ``"2:30 PM"``, ``"9pm"`` or ``"14:30"`` to ``"HH:MM"``."""

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    match = _TIME_24H_RE.match(text)
    if match:
        return f"{int(match.group(1)):02d}:{int(match.group(2)):02d}"

    match = _TIME_12H_RE.match(text.replace(" ", ""))
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    if not 1 <= hours <= 12 or minutes > 59:
        return None
    period = match.group(3).lower().replace(".", "")
    if period == "pm" and hours < 12:
        hours += 12
    elif period == "am" and hours == 12:
        hours = 0
    return f"{hours:02d}:{minutes:02d}"


def _parse_time_of_day(value: Optional[str]) -> Optional[time]:
    normalized = to_24_hour(value)
    if normalized is None:
        return None
    hours, minutes = normalized.split(":")
    return time(int(hours), int(minutes))


def _coerce_instant(value: Optional[InstantLike]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return parse_rfc3339(str(value))


def combine_date_and_time_of_day(
    day: Union[date, str, None],
    time_of_day: Optional[str],
    timezone: Optional[str],
) -> Optional[datetime]:
    """Return the UTC instant for ``time_of_day`` on ``day`` in ``timezone``.

    Without a time of day the result is local midnight. Returns ``None`` for
    malformed input instead of raising.
    """

    calendar_day = coerce_calendar_date(day) if not isinstance(day, datetime) else None
    if calendar_day is None:
        logger.debug("combine: invalid date %r", day)
        return None
    zone = get_zone(timezone)
    if zone is None:
        logger.debug("combine: unknown timezone %r", timezone)
        return None

    if time_of_day is None:
        moment = time(0, 0)
    else:
        moment = _parse_time_of_day(time_of_day)
        if moment is None:
            logger.debug("combine: invalid time %r", time_of_day)
            return None

    local = datetime.combine(calendar_day, moment, tzinfo=zone)
    return local.astimezone(UTC)


def instant_to_local_time_of_day(instant: Optional[InstantLike], timezone: Optional[str]) -> Optional[str]:
    value = _coerce_instant(instant)
    zone = get_zone(timezone)
    if value is None or zone is None:
        return None
    return value.astimezone(zone).strftime("%H:%M")


def instant_to_local_date(instant: Optional[InstantLike], timezone: Optional[str]) -> Optional[date]:
    value = _coerce_instant(instant)
    zone = get_zone(timezone) or UTC
    if value is None:
        return None
    return value.astimezone(zone).date()


def format_calendar_date(value: Union[date, datetime, str, None], timezone: Optional[str] = None) -> str:
    """Display form ``Jun 15, 2024``; calendar dates are shown as-is."""

    if value is None:
        return ""
    if isinstance(value, datetime) or (isinstance(value, str) and len(value.strip()) > 10):
        day = instant_to_local_date(value, timezone)
    else:
        day = coerce_calendar_date(value)
    if day is None:
        return ""
    return f"{day:%b} {day.day}, {day.year}"


def format_time_of_day(value: Optional[InstantLike], timezone: Optional[str] = None) -> str:
    """Display form ``4:00 PM`` of an instant in ``timezone``."""

    instant = _coerce_instant(value)
    if instant is None:
        return ""
    local = instant.astimezone(get_zone(timezone) or UTC)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix}"


__all__ = [
    "combine_date_and_time_of_day",
    "format_calendar_date",
    "format_time_of_day",
    "get_zone",
    "instant_to_local_date",
    "instant_to_local_time_of_day",
    "resolve_local_timezone",
    "to_24_hour",
]
