# calwatch/core/config_validation.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from calwatch.core.errors import ConfigError

logger = logging.getLogger(__name__)

_URL_SCHEMES = ("http://", "https://", "webcal://")

_POSITIVE_SETTINGS = (
    "REMINDER_CHECK_INTERVAL_S",
    "REMINDER_TRIGGER_WINDOW_S",
    "REMINDER_BACKFILL_S",
    "REMINDER_RETRY_BASE_S",
    "REMINDER_RETRY_MAX_S",
    "REMINDER_MAX_RETRIES",
    "SYNC_INTERVAL_S",
    "SYNC_RETRY_BASE_S",
    "SYNC_RETRY_MAX_S",
    "SYNC_MAX_RETRIES",
    "HEARTBEAT_STALE_S",
)


def load_sources_file(path: str | Path) -> List[Dict[str, Any]]:
    """Read calendar sources from a YAML file with a top-level `sources:` list."""
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        logger.error(f"Sources file not found at {path}")
        raise
    sources = raw.get("sources", []) if isinstance(raw, dict) else None
    if not isinstance(sources, list):
        raise ConfigError(f"{path}: 'sources' must be a list")
    return sources


def validate_sources(sources: Any) -> None:
    if not isinstance(sources, list):
        raise ConfigError("CALENDAR_SOURCES must be a list")
    seen: set[str] = set()
    for s in sources:
        if not isinstance(s, dict):
            raise ConfigError("each calendar source must be a mapping")
        for key in ("name", "url"):
            if not str(s.get(key) or "").strip():
                raise ConfigError(f"calendar source missing required field: {key}")
        name = s["name"]
        if name in seen:
            raise ConfigError(f"duplicate calendar source name '{name}'")
        seen.add(name)
        if not str(s["url"]).startswith(_URL_SCHEMES):
            raise ConfigError(
                f"calendar source '{name}': url must start with http://, https:// or webcal://"
            )


def validate_config(cfg: Any) -> None:
    """Validate runtime configuration before starting the service."""
    if getattr(cfg, "TZ", None) is None:
        raise ConfigError("TZ must be set")

    for name in _POSITIVE_SETTINGS:
        value = getattr(cfg, name, None)
        if value is None:
            continue
        if not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{name} must be a positive number, got {value!r}")

    for prefix in ("REMINDER", "SYNC"):
        base = getattr(cfg, f"{prefix}_RETRY_BASE_S", None)
        cap = getattr(cfg, f"{prefix}_RETRY_MAX_S", None)
        if base is not None and cap is not None and cap < base:
            raise ConfigError(f"{prefix}_RETRY_MAX_S must be >= {prefix}_RETRY_BASE_S")

    validate_sources(getattr(cfg, "CALENDAR_SOURCES", []))
