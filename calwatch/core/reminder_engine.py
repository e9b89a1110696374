# calwatch/core/reminder_engine.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from calwatch.core.channel import (
    Command,
    CommandKind,
    Heartbeat,
    NotificationKind,
    TriggeredReminder,
)
from calwatch.core.logging_utils import kv
from calwatch.core.models import Event
from calwatch.core.reminder_state import (
    Clock,
    EngineStatus,
    ReminderKey,
    ReminderState,
)
from calwatch.core.tick_loop import BackoffPolicy, Emit, TickLoop


@dataclass(frozen=True)
class EngineSnapshot:
    """Point-in-time copy of the engine state, for diagnostics and tests."""

    status: EngineStatus
    running: bool
    consecutive_failures: int
    working_set_size: int
    fired_count: int
    dismissed_count: int


def reminder_policy(cfg: Any) -> BackoffPolicy:
    return BackoffPolicy(
        base_interval_s=float(getattr(cfg, "REMINDER_CHECK_INTERVAL_S", 15)),
        base_retry_s=float(getattr(cfg, "REMINDER_RETRY_BASE_S", 1)),
        max_delay_s=float(getattr(cfg, "REMINDER_RETRY_MAX_S", 300)),
        max_retries=int(getattr(cfg, "REMINDER_MAX_RETRIES", 5)),
        restart_cooldown_s=float(getattr(cfg, "REMINDER_RESTART_COOLDOWN_S", 5)),
    )


class ReminderEngine(TickLoop):
    """
    Background reminder evaluation.

    Every tick scans the working set, surfaces each newly due reminder once and
    sends a heartbeat. Fired keys are forgotten on restart or clear_fired();
    dismissed keys live as long as the engine instance.
    """

    name = "reminders"

    def __init__(self, config: Any, *, emit: Emit, clock: Optional[Clock] = None):
        self.cfg = config
        tz = getattr(config, "TZ", None) or ZoneInfo(
            getattr(config, "TIMEZONE", "Europe/Kyiv")
        )
        clock = clock or Clock(tz)
        super().__init__(
            reminder_policy(config),
            emit=emit,
            clock=clock,
            logger=logging.getLogger("calwatch.reminders"),
        )
        self.window = timedelta(seconds=getattr(config, "REMINDER_TRIGGER_WINDOW_S", 120))
        self.backfill = timedelta(seconds=getattr(config, "REMINDER_BACKFILL_S", 120))
        self.state_mgr = ReminderState(clock.tz)

    # ---- host operations --------------------------------------------------------------
    def update_events(self, events: Iterable[Event]) -> None:
        events = list(events)
        backfilled = self.state_mgr.replace_working_set(
            events, now=self.clock.now(), backfill=self.backfill
        )
        # A data push is evidence the host is alive.
        self._loop_state.consecutive_failures = 0
        self.log.info(
            "events.update "
            + kv(
                events=len(events),
                tracked=self.state_mgr.working_set_size,
                backfilled=backfilled,
            )
        )

    def dismiss(self, key: ReminderKey) -> None:
        self.state_mgr.dismiss(key)
        self.log.info("reminder.dismiss " + kv(key=key.as_id()))

    def clear_fired(self) -> None:
        n = self.state_mgr.clear_fired()
        self.log.info("reminders.clear_fired " + kv(cleared=n))

    def snapshot(self) -> EngineSnapshot:
        s = self._loop_state
        return EngineSnapshot(
            status=s.status,
            running=s.running,
            consecutive_failures=s.consecutive_failures,
            working_set_size=self.state_mgr.working_set_size,
            fired_count=self.state_mgr.fired_count,
            dismissed_count=self.state_mgr.dismissed_count,
        )

    # ---- tick -------------------------------------------------------------------------
    async def _tick(self) -> None:
        self.evaluate(self.clock.now())

    def evaluate(self, now: datetime) -> None:
        """Surface newly due reminders and send the heartbeat. Runs without awaiting."""
        due = self.state_mgr.collect_due(now, self.window)
        if due:
            for d in due:
                self.log.info(
                    "reminder.fire "
                    + kv(event_id=d.event.id, label=d.label, fire_time=d.fire_time.isoformat())
                )
            self._emit(
                NotificationKind.REMINDERS_TRIGGERED,
                [TriggeredReminder(d.event, d.label, d.fire_time, d.key) for d in due],
            )
        self._emit(
            NotificationKind.HEARTBEAT,
            Heartbeat(
                now=now,
                working_set_size=self.state_mgr.working_set_size,
                fired_count=self.state_mgr.fired_count,
            ),
        )

    def _on_restart(self) -> None:
        n = self.state_mgr.clear_fired()
        self.log.debug("reminders.restart.clear " + kv(cleared=n))

    # ---- commands ---------------------------------------------------------------------
    async def _handle_command(self, command: Command) -> bool:
        if command.kind == CommandKind.REPLACE_WORKING_SET:
            self.update_events(command.payload or [])
        elif command.kind == CommandKind.DISMISS_REMINDER:
            key = command.payload
            if not isinstance(key, ReminderKey):
                raise TypeError(f"dismiss-reminder expects a ReminderKey, got {type(key).__name__}")
            self.dismiss(key)
        elif command.kind == CommandKind.CLEAR_FIRED:
            self.clear_fired()
        else:
            return False
        return True


__all__ = ["ReminderEngine", "EngineSnapshot", "reminder_policy"]
