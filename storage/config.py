"""Simple JSON-backed configuration store."""
from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import CONFIG_PATH, SYNC


@dataclass
class AppConfig:
    """Per-installation preferences persisted to ``config.json``."""

    user_id: Optional[str] = None
    timezone: Optional[str] = None
    default_calendar_id: str = SYNC.default_calendar_id


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _load_raw(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def load_config(path: Optional[Path] = None) -> AppConfig:
    target = path or CONFIG_PATH
    data = _load_raw(target)
    return AppConfig(
        user_id=data.get("user_id"),
        timezone=data.get("timezone"),
        default_calendar_id=data.get("default_calendar_id") or SYNC.default_calendar_id,
    )


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    _ensure_parent(target)
    payload = json.dumps(asdict(config), ensure_ascii=False, indent=2, sort_keys=True)
    tmp = target.with_suffix(".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(target)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def update_config(path: Optional[Path] = None, **changes: Any) -> AppConfig:
    target = path or CONFIG_PATH
    cfg = load_config(target)
    for key, value in changes.items():
        if hasattr(cfg, key):
            setattr(cfg, key, value)
    save_config(cfg, target)
    return cfg


def ensure_user_id(path: Optional[Path] = None) -> AppConfig:
    """Return the stored config, assigning a local user id on first run."""

    target = path or CONFIG_PATH
    cfg = load_config(target)
    if not cfg.user_id:
        cfg.user_id = str(uuid.uuid4())
        save_config(cfg, target)
    return cfg


__all__ = ["AppConfig", "ensure_user_id", "load_config", "save_config", "update_config"]
