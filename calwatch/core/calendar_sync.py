# calwatch/core/calendar_sync.py
from __future__ import annotations

import logging
from typing import Awaitable, Callable, List
from zoneinfo import ZoneInfo

from calwatch.core.errors import SyncError
from calwatch.core.logging_utils import kv
from calwatch.core.models import CalendarSource, Event
from calwatch.core.reminder_state import Clock
from calwatch.core.store import MemoryStore
from calwatch.core.sync_scheduler import SyncOutcome

Fetch = Callable[[str], Awaitable[str]]
Parse = Callable[[str, str, ZoneInfo], List[Event]]


class CalendarSyncService:
    """
    Replaces the events of one calendar source with a fresh copy of its feed.

    The feed is fetched and parsed before anything is deleted, so a failing
    feed leaves the previously imported events in place.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        fetch: Fetch,
        parse: Parse,
        clock: Clock,
    ) -> None:
        self.store = store
        self._fetch = fetch
        self._parse = parse
        self.clock = clock
        self.log = logging.getLogger("calwatch.sync.service")

    async def sync_source(self, source: CalendarSource) -> SyncOutcome:
        if not source.is_active:
            raise SyncError("Calendar source is not active")

        self.log.info("sync.source.start " + kv(calendar=source.name, url=source.url))
        text = await self._fetch(source.url)
        drafts = self._parse(text, source.name, self.clock.tz)

        removed = self.store.delete_events_by_source(source.name)
        created = self.store.bulk_create_events(drafts)
        if source.id is not None:
            self.store.update_source(source.id, last_synced=self.clock.now())

        self.log.info(
            "sync.source.done "
            + kv(calendar=source.name, removed=removed, created=len(created))
        )
        return SyncOutcome(
            message=f"Successfully synced {len(created)} events from {source.name}",
            events_count=len(created),
        )


__all__ = ["CalendarSyncService"]
