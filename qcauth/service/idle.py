"""Idle-session state machine.

``ACTIVE -> WARNING -> EXPIRED``. Silence for ``timeout - warning`` ms raises
the warning; a one-second countdown then runs for ``warning`` ms and forces a
logout when it reaches zero. Activity or an explicit extension during ACTIVE
or WARNING goes back through ``_reset``, the only transition that (re)arms
timers, so no path can leave two timers pending.

Timers come from an injected ``Scheduler``; tests drive a fake one instead of
sleeping.
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, FrozenSet, Iterable, Optional, Protocol

from qcauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_WARNING_MS = 15_000
COUNTDOWN_STEP_MS = 1_000

DEFAULT_ACTIVITY_EVENTS: FrozenSet[str] = frozenset(
    {"mousedown", "mousemove", "keypress", "scroll", "touchstart", "click", "wheel"}
)


class MonitorState(str, Enum):
    ACTIVE = "ACTIVE"
    WARNING = "WARNING"
    EXPIRED = "EXPIRED"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now_ms(self) -> float: ...


class AsyncioScheduler:
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay_ms) / 1000.0, callback)

    def now_ms(self) -> float:
        return self.loop.time() * 1000.0


class IdleActivityMonitor:
    def __init__(
        self,
        scheduler: Scheduler,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        warning_ms: int = DEFAULT_WARNING_MS,
        on_warning: Optional[Callable[[int], Any]] = None,
        on_countdown: Optional[Callable[[int], Any]] = None,
        on_logout: Optional[Callable[[], Any]] = None,
        on_logout_failed: Optional[Callable[[BaseException], Any]] = None,
        events: Iterable[str] = DEFAULT_ACTIVITY_EVENTS,
    ) -> None:
        if not 0 < warning_ms < timeout_ms:
            raise ValueError("warning_ms must be positive and smaller than timeout_ms")
        self.scheduler = scheduler
        self.timeout_ms = timeout_ms
        self.warning_ms = warning_ms
        self.on_warning = on_warning
        self.on_countdown = on_countdown
        self.on_logout = on_logout
        self.on_logout_failed = on_logout_failed
        self.events = frozenset(events)

        self.state = MonitorState.ACTIVE
        self.countdown_ms: Optional[int] = None
        self.paused = False
        self.started = False
        self._warning_timer: Optional[TimerHandle] = None
        self._countdown_timer: Optional[TimerHandle] = None
        self._last_activity_ms: float = 0.0
        self._paused_remaining_ms: Optional[int] = None
        self._logout_fired = False

    # timers
    def _cancel_timers(self) -> None:
        if self._warning_timer is not None:
            self._warning_timer.cancel()
            self._warning_timer = None
        if self._countdown_timer is not None:
            self._countdown_timer.cancel()
            self._countdown_timer = None

    def _reset(self) -> None:
        self._cancel_timers()
        self.state = MonitorState.ACTIVE
        self.countdown_ms = None
        self._last_activity_ms = self.scheduler.now_ms()
        self._warning_timer = self.scheduler.call_later(
            self.timeout_ms - self.warning_ms, self._enter_warning
        )

    def _enter_warning(self) -> None:
        self._warning_timer = None
        if self.state is not MonitorState.ACTIVE or self.paused:
            return
        self.state = MonitorState.WARNING
        self.countdown_ms = self.warning_ms
        logger.debug("idle_warning", remaining_ms=self.warning_ms)
        if self.on_warning:
            self.on_warning(self.warning_ms)
        self._schedule_tick()

    def _schedule_tick(self) -> None:
        step = min(COUNTDOWN_STEP_MS, self.countdown_ms or 0)
        self._countdown_timer = self.scheduler.call_later(step, lambda: self._tick(step))

    def _tick(self, step: int) -> None:
        self._countdown_timer = None
        if self.state is not MonitorState.WARNING or self.paused:
            return
        self.countdown_ms = max(0, (self.countdown_ms or 0) - step)
        if self.countdown_ms <= 0:
            self._expire()
            return
        if self.on_countdown:
            self.on_countdown(self.countdown_ms)
        self._schedule_tick()

    def _expire(self) -> None:
        self._cancel_timers()
        self.state = MonitorState.EXPIRED
        self.countdown_ms = 0
        if self._logout_fired:
            return
        self._logout_fired = True
        logger.info("idle_session_expired", timeout_ms=self.timeout_ms)
        if self.on_logout is None:
            return
        try:
            result = self.on_logout()
        except Exception as exc:
            self._logout_failed(exc)
            return
        if inspect.isawaitable(result):
            try:
                asyncio.get_running_loop()
            except RuntimeError as exc:
                # Nothing would ever drive the coroutine
                if inspect.iscoroutine(result):
                    result.close()
                self._logout_failed(exc)
                return
            task = asyncio.ensure_future(result)
            task.add_done_callback(self._logout_done)

    def _logout_done(self, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            self._logout_failed(asyncio.CancelledError())
        elif task.exception() is not None:
            self._logout_failed(task.exception())

    def _logout_failed(self, exc: BaseException) -> None:
        logger.error("idle_logout_failed", error_type=type(exc).__name__, error=str(exc))
        if self.on_logout_failed:
            self.on_logout_failed(exc)

    # public api
    def start(self) -> None:
        if self.state is MonitorState.EXPIRED:
            return
        self.started = True
        self.paused = False
        self._reset()

    def stop(self) -> None:
        """Detach from the scheduler without firing callbacks."""
        self._cancel_timers()
        self.started = False

    def record_activity(self, event: str = "mousemove") -> bool:
        if event not in self.events:
            return False
        return self.extend_session()

    def extend_session(self) -> bool:
        if not self.started or self.paused or self.state is MonitorState.EXPIRED:
            return False
        self._reset()
        return True

    def pause(self) -> None:
        if self.paused or self.state is MonitorState.EXPIRED:
            return
        self._paused_remaining_ms = self.remaining_time()
        self._cancel_timers()
        self.paused = True

    def resume(self) -> None:
        if self.state is MonitorState.EXPIRED:
            return
        self.paused = False
        self._paused_remaining_ms = None
        self.started = True
        self._reset()

    def remaining_time(self) -> int:
        """Milliseconds until forced logout."""
        if self.state is MonitorState.EXPIRED:
            return 0
        if self.paused and self._paused_remaining_ms is not None:
            return self._paused_remaining_ms
        if self.state is MonitorState.WARNING and self.countdown_ms is not None:
            return self.countdown_ms
        elapsed = self.scheduler.now_ms() - self._last_activity_ms
        return max(0, int(self.timeout_ms - elapsed))
