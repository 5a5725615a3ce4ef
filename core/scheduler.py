"""
Ticker Engine Core: Update Scheduler

Two-state machine (RUNNING / PAUSED) driving the periodic price tick.

- Pausing cancels the pending timer outright; nothing buffered fires on resume
- Changing the interval while RUNNING cancels and reschedules at the new cadence
- A failing tick is reported through on_error and never stops later ticks
- shutdown() is terminal: the timer is cancelled and never restarted
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Timer(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Timer]


class RepeatingTimer(threading.Thread):
    """Daemon thread invoking callback every interval_seconds until cancelled."""

    def __init__(self, interval_seconds: float, callback: Callable[[], None], name: str = "RepeatingTimer"):
        super().__init__(name=name, daemon=True)
        self.interval_seconds = float(interval_seconds)
        self._callback = callback
        self._cancelled = threading.Event()

    def run(self) -> None:
        while not self._cancelled.wait(self.interval_seconds):
            self._callback()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class SchedulerState(Enum):
    RUNNING = "running"
    PAUSED = "paused"


class UpdateScheduler:
    """
    Timer-driven tick loop for the ticker store.

    The scheduler owns no ticker state; on_tick is the store's "apply tick"
    entry point and on_error lets the store apply its error-severity policy.
    """

    def __init__(
        self,
        on_tick: Callable[[], None],
        interval_ms: int,
        on_error: Optional[Callable[[Exception], None]] = None,
        timer_factory: Optional[TimerFactory] = None,
    ):
        self._on_tick = on_tick
        self._on_error = on_error
        self._timer_factory: TimerFactory = timer_factory or (
            lambda seconds, callback: RepeatingTimer(seconds, callback, name="UpdateScheduler")
        )
        self._interval_ms = int(interval_ms)
        self._state = SchedulerState.PAUSED
        self._timer: Optional[Timer] = None
        self._closed = False
        self._ticks = 0
        self._generation = 0
        self._lock = threading.RLock()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def tick_count(self) -> int:
        return self._ticks

    @property
    def closed(self) -> bool:
        return self._closed

    def resume(self) -> None:
        """PAUSED -> RUNNING; no-op when already running or shut down"""
        with self._lock:
            if self._closed or self._state is SchedulerState.RUNNING:
                return
            self._state = SchedulerState.RUNNING
            self._schedule()
            logger.debug(f"Scheduler running every {self._interval_ms}ms")

    start = resume

    def pause(self) -> None:
        """RUNNING -> PAUSED, cancelling the pending timer"""
        with self._lock:
            if self._state is SchedulerState.PAUSED:
                return
            self._state = SchedulerState.PAUSED
            self._cancel_timer()
            logger.debug("Scheduler paused")

    def set_interval(self, interval_ms: int) -> None:
        with self._lock:
            interval_ms = int(interval_ms)
            if interval_ms == self._interval_ms:
                return
            self._interval_ms = interval_ms
            if self._state is SchedulerState.RUNNING:
                self._cancel_timer()
                self._schedule()
                logger.debug(f"Scheduler rescheduled at {interval_ms}ms")

    def sync(self, is_paused: bool, interval_ms: int) -> None:
        """Bring the scheduler in line with the store's published state"""
        with self._lock:
            self.set_interval(interval_ms)
            if is_paused:
                self.pause()
            else:
                self.resume()

    def shutdown(self) -> Optional[Timer]:
        """
        Cancel the timer permanently.

        Returns the cancelled timer so the caller can join it outside any lock.
        """
        with self._lock:
            self._closed = True
            self._state = SchedulerState.PAUSED
            timer = self._timer
            self._cancel_timer()
            return timer

    def tick(self) -> bool:
        """
        Run one tick if RUNNING.

        Returns:
            True if the tick callback was invoked
        """
        if self._state is not SchedulerState.RUNNING:
            return False
        self._ticks += 1
        try:
            self._on_tick()
        except Exception as e:
            logger.error(f"Error in scheduled price update: {e}", exc_info=True)
            if self._on_error is not None:
                self._on_error(e)
        return True

    def _schedule(self) -> None:
        self._generation += 1
        generation = self._generation

        def fire() -> None:
            # a cancelled timer may already be past its wait; drop its tick
            if generation == self._generation:
                self.tick()

        self._timer = self._timer_factory(self._interval_ms / 1000.0, fire)
        self._timer.start()

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


__all__ = ["RepeatingTimer", "SchedulerState", "Timer", "TimerFactory", "UpdateScheduler"]
