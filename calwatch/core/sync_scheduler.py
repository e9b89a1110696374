# calwatch/core/sync_scheduler.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from calwatch.core.channel import (
    Command,
    CommandKind,
    NotificationKind,
    SyncBatch,
    SyncResult,
)
from calwatch.core.logging_utils import kv
from calwatch.core.models import CalendarSource
from calwatch.core.reminder_state import Clock
from calwatch.core.tick_loop import BackoffPolicy, Emit, TickLoop


@dataclass(frozen=True)
class SyncOutcome:
    message: str
    events_count: int = 0


SyncOne = Callable[[CalendarSource], Awaitable[SyncOutcome]]


def sync_policy(cfg: Any) -> BackoffPolicy:
    return BackoffPolicy(
        base_interval_s=float(getattr(cfg, "SYNC_INTERVAL_S", 300)),
        base_retry_s=float(getattr(cfg, "SYNC_RETRY_BASE_S", 10)),
        max_delay_s=float(getattr(cfg, "SYNC_RETRY_MAX_S", 1800)),
        max_retries=int(getattr(cfg, "SYNC_MAX_RETRIES", 3)),
        restart_cooldown_s=float(getattr(cfg, "SYNC_RESTART_COOLDOWN_S", 30)),
    )


class SyncScheduler(TickLoop):
    """
    Periodic re-fetch of external calendar sources.

    Sources are synced one after another to bound load on the feed servers.
    A failing source is recorded in the batch result; only an exception that
    escapes the batch itself counts as a tick failure.
    """

    name = "sync"

    def __init__(
        self,
        config: Any,
        *,
        sync_one: SyncOne,
        emit: Emit,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(
            sync_policy(config),
            emit=emit,
            clock=clock or Clock(config.TZ),
            logger=logging.getLogger("calwatch.sync"),
        )
        self.cfg = config
        self._sync_one = sync_one
        self._sources: List[CalendarSource] = []

    @property
    def source_count(self) -> int:
        return len(self._sources)

    def update_sources(self, sources: Iterable[CalendarSource]) -> None:
        self._sources = list(sources)
        self._loop_state.consecutive_failures = 0
        self.log.info("sources.update " + kv(sources=len(self._sources)))

    async def trigger_immediate(self) -> None:
        """Run one batch now; the scheduled timer is left as it is."""
        self.log.info("sync.trigger_immediate")
        await self.run_once()

    # ---- tick -------------------------------------------------------------------------
    async def _tick(self) -> None:
        sources = list(self._sources)  # commands arriving mid-batch apply to the next one
        if not sources:
            self.log.debug("sync.skip " + kv(reason="no sources"))
            return

        results: List[SyncResult] = []
        for source in sources:
            results.append(await self._sync_source(source))

        ok = sum(1 for r in results if r.success)
        batch = SyncBatch(
            timestamp=self.clock.now(),
            results=results,
            success_count=ok,
            error_count=len(results) - ok,
        )
        self.log.info(
            "sync.batch.done " + kv(success=batch.success_count, errors=batch.error_count)
        )
        self._emit(NotificationKind.SYNC_BATCH_COMPLETED, batch)

    async def _sync_source(self, source: CalendarSource) -> SyncResult:
        try:
            outcome = await self._sync_one(source)
        except Exception as e:
            self.log.warning("sync.source.error " + kv(calendar=source.name, err=str(e)))
            return SyncResult(calendar=source.name, success=False, error=str(e))
        self.log.debug(
            "sync.source.ok " + kv(calendar=source.name, events=outcome.events_count)
        )
        return SyncResult(
            calendar=source.name,
            success=True,
            message=outcome.message or "Sync successful",
            events_count=outcome.events_count or 0,
        )

    # ---- commands ---------------------------------------------------------------------
    async def _handle_command(self, command: Command) -> bool:
        if command.kind == CommandKind.REPLACE_WORKING_SET:
            self.update_sources(command.payload or [])
        elif command.kind == CommandKind.TRIGGER_IMMEDIATE:
            # background task: serve() keeps applying commands during the batch
            self._spawn(self.trigger_immediate())
        else:
            return False
        return True


__all__ = ["SyncScheduler", "SyncOutcome", "SyncOne", "sync_policy"]
