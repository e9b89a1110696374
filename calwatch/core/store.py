# calwatch/core/store.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from calwatch.core.models import CalendarSource, Event


class MemoryStore:
    """
    In-memory event and calendar-source store.
    Ids are assigned on create and never reused.
    """

    def __init__(self) -> None:
        self._events: Dict[int, Event] = {}
        self._sources: Dict[int, CalendarSource] = {}
        self._next_event_id = 1
        self._next_source_id = 1

    # ---- events -----------------------------------------------------------------------
    def all_events(self) -> List[Event]:
        return sorted(self._events.values(), key=lambda e: e.start_time)

    def get_event(self, event_id: int) -> Optional[Event]:
        return self._events.get(event_id)

    def events_in_range(self, start: datetime, end: datetime) -> List[Event]:
        return [e for e in self.all_events() if start <= e.start_time <= end]

    def create_event(self, event: Event) -> Event:
        stored = replace(event, id=self._next_event_id)
        self._next_event_id += 1
        self._events[stored.id] = stored
        return stored

    def bulk_create_events(self, events: Iterable[Event]) -> List[Event]:
        return [self.create_event(e) for e in events]

    def update_event(self, event_id: int, **changes: Any) -> Optional[Event]:
        current = self._events.get(event_id)
        if current is None:
            return None
        changes.pop("id", None)
        updated = replace(current, **changes)
        self._events[event_id] = updated
        return updated

    def delete_event(self, event_id: int) -> bool:
        return self._events.pop(event_id, None) is not None

    def search_events(self, query: str) -> List[Event]:
        q = (query or "").lower()
        if not q:
            return []

        def _hit(e: Event) -> bool:
            return any(q in (field or "").lower() for field in (e.title, e.description, e.location))

        return [e for e in self.all_events() if _hit(e)]

    def delete_events_by_source(self, source_calendar: str) -> int:
        doomed = [i for i, e in self._events.items() if e.source_calendar == source_calendar]
        for i in doomed:
            del self._events[i]
        return len(doomed)

    # ---- calendar sources -------------------------------------------------------------
    def all_sources(self) -> List[CalendarSource]:
        return list(self._sources.values())

    def active_sources(self) -> List[CalendarSource]:
        return [s for s in self._sources.values() if s.is_active]

    def get_source(self, source_id: int) -> Optional[CalendarSource]:
        return self._sources.get(source_id)

    def create_source(self, source: CalendarSource) -> CalendarSource:
        stored = replace(source, id=self._next_source_id)
        self._next_source_id += 1
        self._sources[stored.id] = stored
        return stored

    def update_source(self, source_id: int, **changes: Any) -> Optional[CalendarSource]:
        current = self._sources.get(source_id)
        if current is None:
            return None
        changes.pop("id", None)
        updated = replace(current, **changes)
        self._sources[source_id] = updated
        return updated

    def delete_source(self, source_id: int) -> bool:
        """Remove a source together with the events imported from it."""
        source = self._sources.pop(source_id, None)
        if source is None:
            return False
        self.delete_events_by_source(source.name)
        return True


__all__ = ["MemoryStore"]
