# calwatch/core/tick_loop.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

from calwatch.core.channel import (
    Channel,
    Command,
    CommandKind,
    FatalError,
    Notification,
    NotificationKind,
    Restarted,
    TickError,
)
from calwatch.core.logging_utils import kv
from calwatch.core.reminder_state import Clock, EngineStatus

Emit = Callable[[Notification], None]


@dataclass(frozen=True)
class BackoffPolicy:
    """Tick cadence and the exponential backoff applied after failed ticks."""

    base_interval_s: float
    base_retry_s: float
    max_delay_s: float
    max_retries: int
    restart_cooldown_s: float

    def delay_for(self, failures: int) -> float:
        if failures <= 0:
            return self.base_interval_s
        return min(self.base_retry_s * (2**failures), self.max_delay_s)


@dataclass
class LoopState:
    running: bool = False
    consecutive_failures: int = 0
    status: EngineStatus = EngineStatus.STOPPED
    next_delay_s: Optional[float] = None
    restarts: int = 0


class TickLoop:
    """
    Self-rescheduling tick loop with backoff and self-restart.

    The next tick is only scheduled after the current one completes. Ticks run
    under a lock so a scheduled tick and an immediate one never overlap.
    Subclasses implement `_tick()`, and optionally `_on_restart()` and
    `_handle_command()`.
    """

    name = "engine"

    def __init__(
        self,
        policy: BackoffPolicy,
        *,
        emit: Emit,
        clock: Clock,
        logger: logging.Logger,
    ) -> None:
        self.policy = policy
        self.clock = clock
        self.log = logger
        self._emit_cb = emit
        self._loop_state = LoopState()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._restart_timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Set[asyncio.Task] = set()
        self._tick_lock = asyncio.Lock()

    # ---- read-only views --------------------------------------------------------------
    @property
    def status(self) -> EngineStatus:
        return self._loop_state.status

    @property
    def running(self) -> bool:
        return self._loop_state.running

    @property
    def consecutive_failures(self) -> int:
        return self._loop_state.consecutive_failures

    @property
    def next_delay_s(self) -> Optional[float]:
        """Delay used for the most recently scheduled tick."""
        return self._loop_state.next_delay_s

    # ---- lifecycle --------------------------------------------------------------------
    def start(self) -> None:
        s = self._loop_state
        if s.running:
            return
        self._cancel_restart_timer()
        s.running = True
        if s.status != EngineStatus.TICKING:
            s.status = EngineStatus.IDLE
        self.log.info(f"{self.name}.start")
        self._schedule_next()

    def stop(self) -> None:
        s = self._loop_state
        was_running = s.running
        s.running = False
        self._cancel_timer()
        self._cancel_restart_timer()
        # An in-flight tick completes on its own and then sees running=False.
        if s.status != EngineStatus.TICKING:
            s.status = EngineStatus.STOPPED
        if was_running:
            self.log.info(f"{self.name}.stop")

    def restart(self) -> None:
        """Reset transient state and resume ticking after the restart cooldown."""
        self.stop()
        s = self._loop_state
        s.consecutive_failures = 0
        s.restarts += 1
        self._on_restart()
        s.status = EngineStatus.RESTARTING
        self.log.warning(
            f"{self.name}.restart "
            + kv(restarts=s.restarts, cooldown_s=self.policy.restart_cooldown_s)
        )
        self._emit_safely(NotificationKind.RESTARTED, Restarted(self.clock.now()))
        loop = asyncio.get_running_loop()
        self._restart_timer = loop.call_later(
            self.policy.restart_cooldown_s, self._restart_elapsed
        )

    async def aclose(self) -> None:
        """Stop and wait for an in-flight tick to finish."""
        self.stop()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # ---- ticking ----------------------------------------------------------------------
    async def run_once(self, *, scheduled: bool = False) -> bool:
        """
        Run one tick now. Returns True when the failure cap was reached and a
        restart was performed.

        A scheduled tick that was waiting on the lock while the loop got
        stopped is skipped.
        """
        async with self._tick_lock:
            s = self._loop_state
            if scheduled and not s.running:
                self.log.debug(f"{self.name}.tick.skip " + kv(reason="stopped"))
                return False
            s.status = EngineStatus.TICKING
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                return self._on_failure(e)
            else:
                s.consecutive_failures = 0
                return False
            finally:
                if s.status == EngineStatus.TICKING:
                    s.status = EngineStatus.IDLE if s.running else EngineStatus.STOPPED

    async def _tick(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _on_restart(self) -> None:
        """Hook: drop transient state before a restart."""

    # ---- commands ---------------------------------------------------------------------
    async def handle(self, command: Command) -> None:
        self.log.debug(f"{self.name}.cmd " + kv(kind=command.kind.value))
        if command.kind == CommandKind.START:
            self.start()
        elif command.kind == CommandKind.STOP:
            self.stop()
        elif command.kind == CommandKind.RESTART:
            self.restart()
        elif not await self._handle_command(command):
            self.log.warning(
                f"{self.name}.cmd.unknown " + kv(kind=command.kind.value)
            )

    async def _handle_command(self, command: Command) -> bool:
        return False

    async def serve(self, channel: Channel) -> None:
        """
        Apply commands from `channel` one at a time until it breaks.
        A broken channel is fatal: the engine stops and reports it; the host
        must create a new engine.
        """
        self.log.debug(f"{self.name}.serve.start")
        try:
            while True:
                command = await channel.receive()
                await self.handle(command)
        except asyncio.CancelledError:
            self.stop()
            raise
        except Exception as e:
            self.stop()
            self.log.error(f"{self.name}.serve.fatal " + kv(err=str(e)))
            self._emit_safely(NotificationKind.FATAL_ERROR, FatalError(str(e)))

    # ---- internals --------------------------------------------------------------------
    def _emit(self, kind: NotificationKind, payload: Any) -> None:
        self._emit_cb(Notification(kind=kind, payload=payload, engine=self.name))

    def _emit_safely(self, kind: NotificationKind, payload: Any) -> None:
        try:
            self._emit(kind, payload)
        except Exception:
            self.log.exception(f"{self.name}.notify.fail " + kv(kind=kind.value))

    def _on_failure(self, exc: Exception) -> bool:
        s = self._loop_state
        s.consecutive_failures = min(s.consecutive_failures + 1, self.policy.max_retries)
        delay = self.policy.delay_for(s.consecutive_failures)
        self.log.warning(
            f"{self.name}.tick.error "
            + kv(err=str(exc), failures=s.consecutive_failures, next_retry_s=delay)
        )
        self._emit_safely(
            NotificationKind.TICK_ERROR,
            TickError(
                error_message=str(exc),
                consecutive_failures=s.consecutive_failures,
                next_retry_delay_ms=int(delay * 1000),
            ),
        )
        if s.consecutive_failures >= self.policy.max_retries:
            self.restart()
            return True
        return False

    def _schedule_next(self) -> None:
        s = self._loop_state
        if not s.running or self._timer is not None:
            return
        delay = self.policy.delay_for(s.consecutive_failures)
        s.next_delay_s = delay
        self._timer = asyncio.get_running_loop().call_later(delay, self._timer_fired)
        self.log.debug(
            f"{self.name}.schedule " + kv(delay_s=delay, failures=s.consecutive_failures)
        )

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run `coro` in the background; aclose() waits for it."""
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _timer_fired(self) -> None:
        self._timer = None
        self._spawn(self._run_scheduled())

    async def _run_scheduled(self) -> None:
        restarted = await self.run_once(scheduled=True)
        if not restarted:
            self._schedule_next()

    def _restart_elapsed(self) -> None:
        self._restart_timer = None
        self.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_restart_timer(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None


__all__ = ["BackoffPolicy", "LoopState", "TickLoop", "Emit"]
