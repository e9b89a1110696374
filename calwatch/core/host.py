# calwatch/core/host.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from calwatch.core.calendar_sync import CalendarSyncService
from calwatch.core.channel import Channel, Command, CommandKind, Notification, NotificationKind
from calwatch.core.i18n import MESSAGES
from calwatch.core.logging_utils import kv
from calwatch.core.reminder_engine import ReminderEngine
from calwatch.core.reminder_state import Clock, ReminderKey
from calwatch.core.store import MemoryStore
from calwatch.core.sync_scheduler import SyncScheduler
from calwatch.core.tick_loop import Emit, TickLoop

EngineFactory = Callable[[Emit], TickLoop]
Listener = Callable[[Notification], Awaitable[None]]


@dataclass
class WorkerStatus:
    is_active: bool = False
    last_heartbeat: Optional[datetime] = None
    error_count: int = 0
    restart_count: int = 0


class EngineHost:
    """
    Runs one engine behind its own Channel and keeps it alive:
    tracks heartbeats, requests a restart when they go stale and builds a new
    engine after a fatal channel error.
    """

    def __init__(
        self,
        name: str,
        factory: EngineFactory,
        *,
        clock: Clock,
        listener: Optional[Listener] = None,
        on_started: Optional[Callable[[], Awaitable[None]]] = None,
        stale_after_s: float = 120,
        recreate_delay_s: float = 10,
    ) -> None:
        self.name = name
        self.clock = clock
        self.status = WorkerStatus()
        self.channel: Optional[Channel] = None
        self.engine: Optional[TickLoop] = None
        self.generation = 0
        self._factory = factory
        self._listener = listener
        self._on_started = on_started
        self._stale_after = timedelta(seconds=stale_after_s)
        self._recreate_delay_s = recreate_delay_s
        self._tasks: List[asyncio.Task] = []
        self._recreate_task: Optional[asyncio.Task] = None
        self.log = logging.getLogger(f"calwatch.host.{name}")

    async def start(self) -> None:
        channel = Channel()
        self.channel = channel
        self.engine = self._factory(channel.publish)
        self.generation += 1
        self._tasks = [
            asyncio.create_task(self.engine.serve(channel)),
            asyncio.create_task(self._pump(channel)),
        ]
        await channel.send(Command(CommandKind.START))
        self.log.info("host.engine.started " + kv(generation=self.generation))
        if self._on_started is not None:
            await self._on_started()

    async def stop(self) -> None:
        if self._recreate_task is not None and self._recreate_task is not asyncio.current_task():
            self._recreate_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recreate_task
            self._recreate_task = None
        await self._teardown()

    async def send(self, kind: CommandKind, payload: Any = None) -> bool:
        channel = self.channel
        if channel is None or channel.closed:
            self.log.debug("host.send.drop " + kv(kind=kind.value, reason="no channel"))
            return False
        await channel.send(Command(kind, payload))
        return True

    def check_heartbeat(self, now: datetime) -> bool:
        """Request a restart when an active engine has gone quiet for too long."""
        st = self.status
        if not st.is_active or st.last_heartbeat is None:
            return False
        silence = now - st.last_heartbeat
        if silence <= self._stale_after:
            return False
        self.log.warning(
            "host.heartbeat.stale " + kv(silence_s=int(silence.total_seconds()))
        )
        if self.channel is not None and not self.channel.closed:
            self.channel.send_nowait(Command(CommandKind.RESTART))
        return True

    # ---- internals --------------------------------------------------------------------
    async def _pump(self, channel: Channel) -> None:
        while True:
            note = await channel.next_notification()
            self._track(note)
            if self._listener is None:
                continue
            try:
                await self._listener(note)
            except Exception as e:
                self.log.error(
                    "host.listener.error " + kv(kind=note.kind.value, err=str(e))
                )

    def _track(self, note: Notification) -> None:
        st = self.status
        if note.kind == NotificationKind.HEARTBEAT:
            st.is_active = True
            st.last_heartbeat = note.payload.now
        elif note.kind == NotificationKind.SYNC_BATCH_COMPLETED:
            st.is_active = True
            st.last_heartbeat = note.payload.timestamp
        elif note.kind == NotificationKind.TICK_ERROR:
            st.error_count += 1
            self.log.warning(
                "host.engine.error "
                + kv(
                    err=note.payload.error_message,
                    failures=note.payload.consecutive_failures,
                    next_retry_ms=note.payload.next_retry_delay_ms,
                )
            )
        elif note.kind == NotificationKind.RESTARTED:
            st.restart_count += 1
            st.error_count = 0
            self.log.info("host.engine.restarted " + kv(restarts=st.restart_count))
        elif note.kind == NotificationKind.FATAL_ERROR:
            st.is_active = False
            st.error_count += 1
            self.log.error(
                "host.engine.fatal "
                + kv(err=note.payload.error_message, recreate_in_s=self._recreate_delay_s)
            )
            if self._recreate_task is None or self._recreate_task.done():
                self._recreate_task = asyncio.create_task(self._recreate_later())

    async def _recreate_later(self) -> None:
        await asyncio.sleep(self._recreate_delay_s)
        await self._teardown()
        await self.start()

    async def _teardown(self) -> None:
        # Cancel before closing: a closed channel reads as a fatal error to serve().
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self._tasks = []
        if self.engine is not None:
            await self.engine.aclose()
        if self.channel is not None:
            self.channel.close()


class CalendarHost:
    """
    Drives the reminder engine and the sync scheduler for one store and one
    presenter: pushes working sets, forwards triggered reminders, refreshes
    the reminder working set after every sync batch.
    """

    def __init__(
        self,
        config: Any,
        store: MemoryStore,
        presenter: Any,
        sync_service: CalendarSyncService,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cfg = config
        self.store = store
        self.presenter = presenter
        self.clock = clock or Clock(config.TZ)
        stale = getattr(config, "HEARTBEAT_STALE_S", 120)
        recreate = getattr(config, "FATAL_RECREATE_DELAY_S", 10)

        self.reminders = EngineHost(
            "reminders",
            lambda emit: ReminderEngine(config, emit=emit, clock=self.clock),
            clock=self.clock,
            listener=self._on_reminder_note,
            on_started=self.push_events,
            stale_after_s=stale,
            recreate_delay_s=recreate,
        )
        self.sync = EngineHost(
            "sync",
            lambda emit: SyncScheduler(
                config, sync_one=sync_service.sync_source, emit=emit, clock=self.clock
            ),
            clock=self.clock,
            listener=self._on_sync_note,
            on_started=self.push_sources,
            stale_after_s=stale,
            recreate_delay_s=recreate,
        )
        self.log = logging.getLogger("calwatch.host")

    async def start(self) -> None:
        await self.reminders.start()
        await self.sync.start()
        self.log.info("host.ready")

    async def stop(self) -> None:
        await self.sync.stop()
        await self.reminders.stop()
        self.log.info("host.stopped")

    # ---- host -> engine ---------------------------------------------------------------
    async def push_events(self) -> None:
        await self.reminders.send(CommandKind.REPLACE_WORKING_SET, self.store.all_events())

    async def push_sources(self) -> None:
        await self.sync.send(CommandKind.REPLACE_WORKING_SET, self.store.active_sources())

    async def dismiss(self, key: ReminderKey) -> None:
        await self.reminders.send(CommandKind.DISMISS_REMINDER, key)

    async def on_focus(self) -> None:
        """The user is back: re-surface reminders that fired while nobody was looking."""
        await self.reminders.send(CommandKind.CLEAR_FIRED)

    async def sync_now(self) -> None:
        await self.sync.send(CommandKind.TRIGGER_IMMEDIATE)

    async def check_heartbeats(self) -> None:
        self.reminders.check_heartbeat(self.clock.now())

    # ---- engine -> host ---------------------------------------------------------------
    async def _on_reminder_note(self, note: Notification) -> None:
        if note.kind == NotificationKind.REMINDERS_TRIGGERED and note.payload:
            await self.presenter.show_reminders(note.payload)
        elif note.kind == NotificationKind.RESTARTED:
            await self.presenter.send_message(MESSAGES["engine_restarted"])

    async def _on_sync_note(self, note: Notification) -> None:
        if note.kind != NotificationKind.SYNC_BATCH_COMPLETED:
            return
        await self.push_events()
        if note.payload.error_count:
            await self.presenter.send_sync_summary(note.payload)


__all__ = ["WorkerStatus", "EngineHost", "CalendarHost"]
