# calwatch/tests/unit/test_sync_scheduler.py
import asyncio

import pytest

from calwatch.core.channel import Command, CommandKind, NotificationKind
from calwatch.core.models import CalendarSource
from calwatch.core.sync_scheduler import SyncOutcome, SyncScheduler


def _sources(*names):
    return [CalendarSource(name=n, url=f"https://example.com/{n}.ics", id=i) for i, n in enumerate(names, 1)]


class FakeSync:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def __call__(self, source):
        self.calls.append(source.name)
        if source.name in self.failing:
            raise RuntimeError(f"{source.name} unreachable")
        return SyncOutcome(f"Successfully synced 2 events from {source.name}", 2)


def _scheduler(make_cfg, clock, notes, sync_one, **overrides):
    return SyncScheduler(make_cfg(**overrides), sync_one=sync_one, emit=notes, clock=clock)


@pytest.mark.asyncio
async def test_one_failing_source_does_not_fail_the_batch(make_cfg, clock, notes):
    sync = FakeSync(failing={"B"})
    sched = _scheduler(make_cfg, clock, notes, sync)
    sched.update_sources(_sources("A", "B", "C"))

    assert await sched.run_once() is False

    assert sync.calls == ["A", "B", "C"]
    batches = notes.of(NotificationKind.SYNC_BATCH_COMPLETED)
    assert len(batches) == 1
    batch = batches[0].payload
    assert (batch.success_count, batch.error_count) == (2, 1)
    assert batch.timestamp == clock.now()
    failed = [r for r in batch.results if not r.success]
    assert failed[0].calendar == "B"
    assert failed[0].error == "B unreachable"
    assert batch.results[0].message == "Successfully synced 2 events from A"
    assert batch.results[0].events_count == 2
    assert sched.consecutive_failures == 0
    assert notes.of(NotificationKind.TICK_ERROR) == []


@pytest.mark.asyncio
async def test_empty_source_list_is_a_quiet_success(make_cfg, clock, notes):
    sched = _scheduler(make_cfg, clock, notes, FakeSync())
    sched._loop_state.consecutive_failures = 2

    assert await sched.run_once() is False

    assert list(notes) == []
    assert sched.consecutive_failures == 0


@pytest.mark.asyncio
async def test_empty_message_falls_back_to_default(make_cfg, clock, notes):
    async def sync_one(source):
        return SyncOutcome("")

    sched = _scheduler(make_cfg, clock, notes, sync_one)
    sched.update_sources(_sources("A"))
    await sched.run_once()

    result = notes.of(NotificationKind.SYNC_BATCH_COMPLETED)[0].payload.results[0]
    assert result.message == "Sync successful"
    assert result.events_count == 0


@pytest.mark.asyncio
async def test_batch_level_error_counts_as_tick_failure(make_cfg, clock, notes):
    def emit(note):
        if note.kind == NotificationKind.SYNC_BATCH_COMPLETED:
            raise RuntimeError("host gone")
        notes(note)

    sched = SyncScheduler(make_cfg(), sync_one=FakeSync(), emit=emit, clock=clock)
    sched.update_sources(_sources("A"))

    await sched.run_once()

    err = notes.of(NotificationKind.TICK_ERROR)[0].payload
    assert err.consecutive_failures == 1
    assert err.next_retry_delay_ms == 20_000


@pytest.mark.asyncio
async def test_three_batch_failures_restart_the_scheduler(make_cfg, clock, notes):
    def emit(note):
        if note.kind == NotificationKind.SYNC_BATCH_COMPLETED:
            raise RuntimeError("host gone")
        notes(note)

    sched = SyncScheduler(make_cfg(), sync_one=FakeSync(), emit=emit, clock=clock)
    sched.update_sources(_sources("A"))

    results = [await sched.run_once() for _ in range(3)]

    assert results == [False, False, True]
    assert len(notes.of(NotificationKind.RESTARTED)) == 1
    await sched.aclose()


@pytest.mark.asyncio
async def test_trigger_immediate_leaves_timer_alone(make_cfg, clock, notes):
    sync = FakeSync()
    sched = _scheduler(make_cfg, clock, notes, sync)
    sched.update_sources(_sources("A"))
    sched.start()
    timer = sched._timer

    await sched.handle(Command(CommandKind.TRIGGER_IMMEDIATE))
    await asyncio.sleep(0.01)

    assert sync.calls == ["A"]
    assert sched._timer is timer
    assert not timer.cancelled()
    assert sched.running is True
    await sched.aclose()


class GatedSync(FakeSync):
    """Each sync waits until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def __call__(self, source):
        self.calls.append(source.name)
        await self.gate.wait()
        return SyncOutcome(f"Successfully synced 0 events from {source.name}", 0)


@pytest.mark.asyncio
async def test_stop_applies_while_immediate_batch_is_in_flight(make_cfg, clock, notes):
    sync = GatedSync()
    sched = _scheduler(make_cfg, clock, notes, sync)
    sched.update_sources(_sources("A"))
    sched.start()

    await sched.handle(Command(CommandKind.TRIGGER_IMMEDIATE))
    await asyncio.sleep(0.01)
    assert sync.calls == ["A"]

    await sched.handle(Command(CommandKind.STOP))
    assert sched.running is False

    sync.gate.set()
    await sched.aclose()
    assert len(notes.of(NotificationKind.SYNC_BATCH_COMPLETED)) == 1


@pytest.mark.asyncio
async def test_timer_tick_waiting_on_lock_is_skipped_after_stop(make_cfg, clock, notes):
    sync = GatedSync()
    sched = _scheduler(make_cfg, clock, notes, sync, SYNC_INTERVAL_S=0.01)
    sched.update_sources(_sources("A"))
    sched.start()

    await sched.handle(Command(CommandKind.TRIGGER_IMMEDIATE))
    # the timer fires while the immediate batch holds the tick lock
    await asyncio.sleep(0.05)
    await sched.handle(Command(CommandKind.STOP))

    sync.gate.set()
    await sched.aclose()

    assert sync.calls == ["A"]
    assert sched.running is False


@pytest.mark.asyncio
async def test_replace_working_set_command_updates_sources(make_cfg, clock, notes):
    sched = _scheduler(make_cfg, clock, notes, FakeSync())
    sched._loop_state.consecutive_failures = 2

    await sched.handle(Command(CommandKind.REPLACE_WORKING_SET, _sources("A", "B")))

    assert sched.source_count == 2
    assert sched.consecutive_failures == 0


@pytest.mark.asyncio
async def test_reminder_only_command_is_ignored(make_cfg, clock, notes):
    sched = _scheduler(make_cfg, clock, notes, FakeSync())
    await sched.handle(Command(CommandKind.CLEAR_FIRED))
    assert list(notes) == []
