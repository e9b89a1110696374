# calwatch/core/channel.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from calwatch.core.errors import ChannelClosedError
from calwatch.core.models import Event
from calwatch.core.reminder_state import ReminderKey


class CommandKind(str, Enum):
    START = "start"
    STOP = "stop"
    REPLACE_WORKING_SET = "replace-working-set"
    DISMISS_REMINDER = "dismiss-reminder"
    CLEAR_FIRED = "clear-fired"
    TRIGGER_IMMEDIATE = "trigger-immediate"  # sync scheduler only
    RESTART = "restart"


class NotificationKind(str, Enum):
    REMINDERS_TRIGGERED = "reminders-triggered"
    HEARTBEAT = "heartbeat"
    TICK_ERROR = "tick-error"
    RESTARTED = "restarted"
    FATAL_ERROR = "fatal-error"
    SYNC_BATCH_COMPLETED = "sync-batch-completed"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    payload: Any = None


# ---- notification payloads ---------------------------------------------------------------
@dataclass(frozen=True)
class TriggeredReminder:
    event: Event
    label: str
    fire_time: datetime
    key: ReminderKey


@dataclass(frozen=True)
class Heartbeat:
    now: datetime
    working_set_size: int
    fired_count: int


@dataclass(frozen=True)
class TickError:
    error_message: str
    consecutive_failures: int
    next_retry_delay_ms: int


@dataclass(frozen=True)
class Restarted:
    timestamp: datetime


@dataclass(frozen=True)
class FatalError:
    error_message: str


@dataclass(frozen=True)
class SyncResult:
    calendar: str
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    events_count: int = 0


@dataclass(frozen=True)
class SyncBatch:
    timestamp: datetime
    results: List[SyncResult] = field(default_factory=list)
    success_count: int = 0
    error_count: int = 0


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    payload: Any
    engine: str = ""


class Channel:
    """
    Host <-> engine boundary:
    - commands flow in through an asyncio queue (send -> receive);
    - notifications flow out through a second queue (publish -> next_notification).
    Closing the channel breaks the command side; notifications already
    published (and a final fatal-error) remain readable by the host.
    """

    def __init__(self) -> None:
        self._commands: asyncio.Queue[Command] = asyncio.Queue()
        self._notifications: asyncio.Queue[Notification] = asyncio.Queue()
        self._closed = False
        self._waiters: set[asyncio.Future] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- command side --------------------------------------------------------------
    async def send(self, command: Command) -> None:
        if self._closed:
            raise ChannelClosedError("channel is closed")
        await self._commands.put(command)

    def send_nowait(self, command: Command) -> None:
        if self._closed:
            raise ChannelClosedError("channel is closed")
        self._commands.put_nowait(command)

    async def receive(self) -> Command:
        if self._closed:
            raise ChannelClosedError("channel is closed")
        getter = asyncio.ensure_future(self._commands.get())
        self._waiters.add(getter)
        try:
            return await getter
        except asyncio.CancelledError:
            if self._closed:
                raise ChannelClosedError("channel closed while waiting") from None
            raise
        finally:
            self._waiters.discard(getter)

    # ---- notification side ---------------------------------------------------------
    def publish(self, notification: Notification) -> None:
        self._notifications.put_nowait(notification)

    async def next_notification(self) -> Notification:
        return await self._notifications.get()

    def pending_notifications(self) -> List[Notification]:
        """Drain everything published so far without waiting."""
        out: List[Notification] = []
        while not self._notifications.empty():
            out.append(self._notifications.get_nowait())
        return out

    def close(self) -> None:
        self._closed = True
        for w in list(self._waiters):
            w.cancel()


__all__ = [
    "Command",
    "CommandKind",
    "Notification",
    "NotificationKind",
    "TriggeredReminder",
    "Heartbeat",
    "TickError",
    "Restarted",
    "FatalError",
    "SyncResult",
    "SyncBatch",
    "Channel",
]
