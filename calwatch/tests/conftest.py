# calwatch/tests/conftest.py
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# This file is at <project_root>/calwatch/tests/conftest.py
# Project root is two levels up from here.
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from calwatch import config as cfg  # noqa: E402
from calwatch.core.reminder_state import Clock  # noqa: E402


class FakeClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        super().__init__(now.tzinfo)
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **delta) -> None:
        self._now += timedelta(**delta)


class Recorder(list):
    """emit() sink that keeps every notification."""

    def __call__(self, note):
        self.append(note)

    def of(self, kind):
        return [n for n in self if n.kind == kind]


@pytest.fixture
def t0():
    return datetime(2026, 3, 2, 9, 0, tzinfo=cfg.TZ)


@pytest.fixture
def clock(t0):
    return FakeClock(t0)


@pytest.fixture
def notes():
    return Recorder()


@pytest.fixture
def make_cfg():
    """Config class with the production defaults, overridable per test."""

    def _make(**overrides):
        attrs = {
            "TZ": cfg.TZ,
            "REMINDER_CHECK_INTERVAL_S": cfg.REMINDER_CHECK_INTERVAL_S,
            "REMINDER_TRIGGER_WINDOW_S": cfg.REMINDER_TRIGGER_WINDOW_S,
            "REMINDER_BACKFILL_S": cfg.REMINDER_BACKFILL_S,
            "REMINDER_RETRY_BASE_S": cfg.REMINDER_RETRY_BASE_S,
            "REMINDER_RETRY_MAX_S": cfg.REMINDER_RETRY_MAX_S,
            "REMINDER_MAX_RETRIES": cfg.REMINDER_MAX_RETRIES,
            "REMINDER_RESTART_COOLDOWN_S": cfg.REMINDER_RESTART_COOLDOWN_S,
            "SYNC_INTERVAL_S": cfg.SYNC_INTERVAL_S,
            "SYNC_RETRY_BASE_S": cfg.SYNC_RETRY_BASE_S,
            "SYNC_RETRY_MAX_S": cfg.SYNC_RETRY_MAX_S,
            "SYNC_MAX_RETRIES": cfg.SYNC_MAX_RETRIES,
            "SYNC_RESTART_COOLDOWN_S": cfg.SYNC_RESTART_COOLDOWN_S,
            "HEARTBEAT_STALE_S": cfg.HEARTBEAT_STALE_S,
            "FATAL_RECREATE_DELAY_S": cfg.FATAL_RECREATE_DELAY_S,
            "CALENDAR_SOURCES": [],
        }
        attrs.update(overrides)
        return type("Cfg", (), attrs)

    return _make
