"""
Runtime configuration for calwatch.
All reminder arithmetic is done in tz-aware datetimes; naive event times are
interpreted in TIMEZONE.
"""

from __future__ import annotations

import os
from typing import Any
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# Load .env from the working directory (BOT_TOKEN, CHAT_ID)
load_dotenv()

# --------------------------------------------------------------------------------------
# Core settings
# --------------------------------------------------------------------------------------
# IMPORTANT: no hardcoded token in repo; provide via env or explicit override
BOT_TOKEN: str | None = None
CHAT_ID: int | None = None
TIMEZONE = "Europe/Kyiv"
TZ = ZoneInfo(TIMEZONE)

# --------------------------------------------------------------------------------------
# Reminder evaluation engine
# --------------------------------------------------------------------------------------
REMINDER_CHECK_INTERVAL_S = 15
REMINDER_TRIGGER_WINDOW_S = 120
REMINDER_BACKFILL_S = 120
REMINDER_RETRY_BASE_S = 1
REMINDER_RETRY_MAX_S = 300
REMINDER_MAX_RETRIES = 5
REMINDER_RESTART_COOLDOWN_S = 5

# --------------------------------------------------------------------------------------
# Calendar sync scheduler
# --------------------------------------------------------------------------------------
SYNC_INTERVAL_S = 300
SYNC_RETRY_BASE_S = 10
SYNC_RETRY_MAX_S = 1800
SYNC_MAX_RETRIES = 3
SYNC_RESTART_COOLDOWN_S = 30
FEED_TIMEOUT_S = 30.0

# --------------------------------------------------------------------------------------
# Host
# --------------------------------------------------------------------------------------
EVENT_PUSH_INTERVAL_S = 60
HEARTBEAT_CHECK_INTERVAL_S = 60
HEARTBEAT_STALE_S = 120
FATAL_RECREATE_DELAY_S = 10

# --------------------------------------------------------------------------------------
# Logging
# --------------------------------------------------------------------------------------
AUDIT_LOG_FILE = "calwatch/logs/audit.log"

# --------------------------------------------------------------------------------------
# Calendar sources (example/demo values; replace with real feeds)
# --------------------------------------------------------------------------------------
SOURCES_FILE: str | None = os.getenv("CALWATCH_SOURCES_FILE")

CALENDAR_SOURCES: list[dict[str, Any]] = [
    {
        "name": "Holidays",
        "url": "webcal://calendar.google.com/calendar/ical/en.ukrainian%23holiday%40group.v.calendar.google.com/public/basic.ics",
        "is_active": True,
    },
]


def get_bot_token() -> str:
    token = BOT_TOKEN or os.getenv("BOT_TOKEN")
    if not token:
        raise RuntimeError(
            "Bot token is not set. Set env var BOT_TOKEN or override BOT_TOKEN in config.py."
        )
    return token


def get_chat_id() -> int:
    raw = CHAT_ID if CHAT_ID is not None else os.getenv("CHAT_ID")
    if raw is None or str(raw).strip() == "":
        raise RuntimeError(
            "Chat id is not set. Set env var CHAT_ID or override CHAT_ID in config.py."
        )
    return int(raw)
