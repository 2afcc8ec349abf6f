"""Utility helpers for task priorities."""
from __future__ import annotations

from enum import Enum
from typing import Dict


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


PRIORITY_META: Dict[Priority, Dict[str, str]] = {
    Priority.LOW: {
        "label": "Low priority",
        "short": "Low",
        "color": "#22C55E",    # green-500
    },
    Priority.MEDIUM: {
        "label": "Medium priority",
        "short": "Medium",
        "color": "#F59E0B",    # amber-500
    },
    Priority.HIGH: {
        "label": "High priority",
        "short": "High",
        "color": "#EF4444",    # red-500
    },
}

DEFAULT_PRIORITY = Priority.MEDIUM

# legacy numeric levels: 0 none, 1 low, 2 medium, 3 high
_NUMERIC = {0: DEFAULT_PRIORITY, 1: Priority.LOW, 2: Priority.MEDIUM, 3: Priority.HIGH}


def normalize_priority(value: Priority | int | str | None) -> Priority:
    """Map external values onto the supported priorities."""
    if value is None:
        return DEFAULT_PRIORITY
    if isinstance(value, Priority):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return _NUMERIC.get(max(0, min(3, value)), DEFAULT_PRIORITY)
    text = str(value).strip().lower()
    if text.isdigit():
        return normalize_priority(int(text))
    try:
        return Priority(text)
    except ValueError:
        return DEFAULT_PRIORITY


def priority_label(value: Priority, *, short: bool = False) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return meta["short" if short else "label"]


def priority_color(value: Priority) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return meta["color"]


__all__ = [
    "DEFAULT_PRIORITY",
    "PRIORITY_META",
    "Priority",
    "normalize_priority",
    "priority_color",
    "priority_label",
]
