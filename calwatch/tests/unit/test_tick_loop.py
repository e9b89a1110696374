# calwatch/tests/unit/test_tick_loop.py
import asyncio
import logging
from datetime import timedelta

import pytest

from calwatch.core.channel import NotificationKind
from calwatch.core.models import Event
from calwatch.core.reminder_engine import ReminderEngine, reminder_policy
from calwatch.core.reminder_state import EngineStatus
from calwatch.core.sync_scheduler import sync_policy
from calwatch.core.tick_loop import BackoffPolicy, TickLoop


class FlakyLoop(TickLoop):
    name = "flaky"

    def __init__(self, policy, *, emit, clock):
        super().__init__(policy, emit=emit, clock=clock, logger=logging.getLogger("calwatch.test"))
        self.fail = False
        self.ticks = 0
        self.restart_hooks = 0

    async def _tick(self):
        self.ticks += 1
        if self.fail:
            raise RuntimeError("db down")

    def _on_restart(self):
        self.restart_hooks += 1


def _policy(**kw):
    base = dict(
        base_interval_s=15,
        base_retry_s=1,
        max_delay_s=300,
        max_retries=5,
        restart_cooldown_s=5,
    )
    base.update(kw)
    return BackoffPolicy(**base)


def test_delay_grows_exponentially_and_caps():
    p = _policy()
    assert [p.delay_for(n) for n in range(0, 5)] == [15, 2, 4, 8, 16]
    assert p.delay_for(9) == 300


def test_policies_from_config(make_cfg):
    cfg = make_cfg()
    rp = reminder_policy(cfg)
    sp = sync_policy(cfg)
    assert (rp.base_interval_s, rp.base_retry_s, rp.max_delay_s, rp.max_retries) == (15, 1, 300, 5)
    assert (sp.base_interval_s, sp.base_retry_s, sp.max_delay_s, sp.max_retries) == (300, 10, 1800, 3)
    assert sp.delay_for(3) == 80


@pytest.mark.asyncio
async def test_failures_report_growing_retry_delay(clock, notes):
    loop = FlakyLoop(_policy(), emit=notes, clock=clock)
    loop.fail = True

    for _ in range(3):
        assert await loop.run_once() is False

    errors = [n.payload for n in notes.of(NotificationKind.TICK_ERROR)]
    assert [e.consecutive_failures for e in errors] == [1, 2, 3]
    assert [e.next_retry_delay_ms for e in errors] == [2000, 4000, 8000]
    assert errors[0].error_message == "db down"
    assert loop.consecutive_failures == 3


@pytest.mark.asyncio
async def test_success_resets_failures(clock, notes):
    loop = FlakyLoop(_policy(), emit=notes, clock=clock)
    loop.fail = True
    await loop.run_once()
    await loop.run_once()

    loop.fail = False
    await loop.run_once()

    assert loop.consecutive_failures == 0
    assert loop.policy.delay_for(loop.consecutive_failures) == 15


@pytest.mark.asyncio
async def test_reaching_the_cap_restarts(clock, notes):
    loop = FlakyLoop(_policy(restart_cooldown_s=60), emit=notes, clock=clock)
    loop.start()
    loop.fail = True

    results = [await loop.run_once() for _ in range(5)]

    assert results == [False, False, False, False, True]
    assert loop.consecutive_failures == 0
    assert loop.status == EngineStatus.RESTARTING
    assert loop.running is False
    assert loop.restart_hooks == 1
    restarted = notes.of(NotificationKind.RESTARTED)
    assert len(restarted) == 1
    assert restarted[0].payload.timestamp == clock.now()
    await loop.aclose()


@pytest.mark.asyncio
async def test_restart_resumes_after_cooldown(clock, notes):
    loop = FlakyLoop(_policy(base_interval_s=60, restart_cooldown_s=0.01), emit=notes, clock=clock)
    loop.start()
    loop.restart()
    assert loop.running is False

    await asyncio.sleep(0.05)

    assert loop.running is True
    assert loop.status == EngineStatus.IDLE
    assert loop.next_delay_s == 60
    await loop.aclose()


@pytest.mark.asyncio
async def test_stop_during_cooldown_cancels_resume(clock, notes):
    loop = FlakyLoop(_policy(restart_cooldown_s=0.01), emit=notes, clock=clock)
    loop.start()
    loop.restart()
    loop.stop()

    await asyncio.sleep(0.05)

    assert loop.running is False
    assert loop.status == EngineStatus.STOPPED


@pytest.mark.asyncio
async def test_start_is_idempotent_and_schedules_one_timer(clock, notes):
    loop = FlakyLoop(_policy(base_interval_s=0.05), emit=notes, clock=clock)
    loop.start()
    loop.start()

    await asyncio.sleep(0.075)
    assert loop.ticks == 1
    await loop.aclose()


@pytest.mark.asyncio
async def test_scheduled_ticks_repeat_until_stopped(clock, notes):
    loop = FlakyLoop(_policy(base_interval_s=0.01), emit=notes, clock=clock)
    loop.start()
    await asyncio.sleep(0.1)
    loop.stop()
    seen = loop.ticks
    await asyncio.sleep(0.05)

    assert seen >= 2
    assert loop.ticks == seen
    assert loop.status == EngineStatus.STOPPED


@pytest.mark.asyncio
async def test_stop_cancels_pending_tick(clock, notes):
    loop = FlakyLoop(_policy(base_interval_s=0.02), emit=notes, clock=clock)
    loop.start()
    loop.stop()
    await asyncio.sleep(0.05)
    assert loop.ticks == 0


@pytest.mark.asyncio
async def test_failed_tick_reschedules_with_backoff(clock, notes):
    loop = FlakyLoop(_policy(base_interval_s=0.01, base_retry_s=30), emit=notes, clock=clock)
    loop.fail = True
    loop.start()
    await asyncio.sleep(0.05)

    assert loop.ticks == 1
    assert loop.next_delay_s == 60
    await loop.aclose()


@pytest.mark.asyncio
async def test_engine_restart_keeps_dismissals_and_forgets_fired(make_cfg, clock, notes, t0):
    eng = ReminderEngine(make_cfg(REMINDER_RESTART_COOLDOWN_S=60), emit=notes, clock=clock)
    eng.update_events(
        [
            Event(id=1, title="a", start_time=t0 + timedelta(minutes=15), reminders=("15 minutes before",)),
            Event(id=2, title="b", start_time=t0 + timedelta(minutes=5), reminders=("5 minutes before",)),
        ]
    )
    eng.evaluate(t0)
    fired = [r for n in notes.of(NotificationKind.REMINDERS_TRIGGERED) for r in n.payload]
    eng.dismiss(fired[0].key)

    eng.restart()
    snap = eng.snapshot()
    assert snap.fired_count == 0
    assert snap.dismissed_count == 1
    assert snap.working_set_size == 2

    eng.evaluate(t0 + timedelta(seconds=15))
    again = notes.of(NotificationKind.REMINDERS_TRIGGERED)[-1].payload
    assert [r.key for r in again] == [fired[1].key]
    await eng.aclose()
