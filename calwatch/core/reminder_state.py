# calwatch/core/reminder_state.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Set, Tuple
from zoneinfo import ZoneInfo

from calwatch.core.models import Event
from calwatch.core.reminder_offsets import ParsedReminder, parse_reminders


class EngineStatus(str, Enum):
    STOPPED = "stopped"
    IDLE = "idle"
    TICKING = "ticking"
    RESTARTING = "restarting"


@dataclass(frozen=True)
class ReminderKey:
    """Stable identity for a single reminder occurrence."""

    event_id: int
    label: str
    fire_time: datetime

    def as_id(self) -> str:
        ms = int(self.fire_time.timestamp() * 1000)
        return f"{self.event_id}-{self.label}-{ms}"


@dataclass
class TrackedEvent:
    """An event in the working set together with its recognized reminders."""

    event: Event
    reminders: List[ParsedReminder] = field(default_factory=list)

    def keyed_reminders(self) -> Iterable[Tuple[ParsedReminder, ReminderKey]]:
        for r in self.reminders:
            fire_time = self.event.start_time - timedelta(minutes=r.offset_minutes)
            yield r, ReminderKey(self.event.id, r.label, fire_time)


@dataclass(frozen=True)
class DueReminder:
    event: Event
    label: str
    fire_time: datetime
    key: ReminderKey


class Clock:
    """Injectable, testable clock bound to a timezone."""

    def __init__(self, tz: ZoneInfo):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(self.tz)


class ReminderState:
    """
    Owns the working set and the fired/dismissed key sets.
    Only manipulates keys and tracked events; orchestration lives in the engine.
    """

    def __init__(self, tz: ZoneInfo):
        self.tz = tz
        self._working_set: Dict[int, TrackedEvent] = {}
        self._fired: Set[ReminderKey] = set()
        self._dismissed: Set[ReminderKey] = set()

    # -- read access ----------------------------------------------------
    @property
    def working_set_size(self) -> int:
        return len(self._working_set)

    @property
    def fired_count(self) -> int:
        return len(self._fired)

    @property
    def dismissed_count(self) -> int:
        return len(self._dismissed)

    def is_fired(self, key: ReminderKey) -> bool:
        return key in self._fired

    def is_dismissed(self, key: ReminderKey) -> bool:
        return key in self._dismissed

    # -- working set ----------------------------------------------------
    def replace_working_set(
        self, events: Iterable[Event], *, now: datetime, backfill: timedelta
    ) -> int:
        """
        Replace the working set wholesale. On the first fill (set was empty),
        reminders older than `backfill` are marked fired without being surfaced.
        Returns the number of reminders backfilled.
        """
        first_fill = not self._working_set
        fresh: Dict[int, TrackedEvent] = {}
        for ev in events:
            if ev.id is None:
                continue
            ev = self._localize(ev)
            fresh[ev.id] = TrackedEvent(event=ev, reminders=parse_reminders(ev.reminders))

        backfilled = 0
        if first_fill:
            for t in fresh.values():
                for _, key in t.keyed_reminders():
                    if now - key.fire_time > backfill and not self.is_fired(key):
                        self._fired.add(key)
                        backfilled += 1

        self._working_set = fresh
        return backfilled

    # -- selection ------------------------------------------------------
    def collect_due(self, now: datetime, window: timedelta) -> List[DueReminder]:
        """Newly due reminders; each returned key is marked fired immediately."""
        due: List[DueReminder] = []
        for t in self._working_set.values():
            for r, key in t.keyed_reminders():
                age = now - key.fire_time
                if not (timedelta(0) <= age <= window):
                    continue
                if self.is_fired(key) or self.is_dismissed(key):
                    continue
                self._fired.add(key)
                due.append(DueReminder(t.event, r.label, key.fire_time, key))
        return due

    # -- fired / dismissed ----------------------------------------------
    def dismiss(self, key: ReminderKey) -> None:
        self._fired.add(key)
        self._dismissed.add(key)

    def clear_fired(self) -> int:
        n = len(self._fired)
        self._fired.clear()
        return n

    # -- utilities ------------------------------------------------------
    def _localize(self, ev: Event) -> Event:
        if ev.start_time.tzinfo is not None:
            return ev
        return replace(ev, start_time=ev.start_time.replace(tzinfo=self.tz))


__all__ = [
    "EngineStatus",
    "ReminderKey",
    "TrackedEvent",
    "DueReminder",
    "Clock",
    "ReminderState",
]
