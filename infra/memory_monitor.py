"""
Ticker Engine Infrastructure: Memory Monitor

Samples heap usage on its own timer and force-pauses the engine when the
configured budget is exceeded. Heap introspection uses tracemalloc; when it is
not tracing, no sample is available and the budget is assumed to hold.
"""

import logging
import time
import tracemalloc
from typing import Callable, Optional, Protocol

from core.exceptions import ErrorKind
from core.models import MemoryStats, ValidationResult
from core.scheduler import RepeatingTimer, Timer, TimerFactory

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL_MS = 10_000
DEFAULT_MAX_USAGE_MB = 100.0

HeapSampler = Callable[[], Optional[MemoryStats]]


class MonitoredEngine(Protocol):
    """Store entry points the monitor is allowed to use"""

    @property
    def is_paused(self) -> bool: ...

    def record_memory_stats(self, stats: MemoryStats) -> None: ...

    def force_pause(self, reason: str, memory_stats: Optional[MemoryStats] = None) -> None: ...


class TracemallocSampler:
    """Heap sampler backed by tracemalloc (current = used, peak = total)."""

    def __init__(self, limit_bytes: int = 0, clock: Optional[Callable[[], float]] = None):
        self.limit_bytes = int(limit_bytes)
        self._clock = clock or (lambda: time.time() * 1000.0)

    def __call__(self) -> Optional[MemoryStats]:
        if not tracemalloc.is_tracing():
            return None
        current, peak = tracemalloc.get_traced_memory()
        return MemoryStats(
            heap_size_limit=self.limit_bytes,
            total_heap_size=peak,
            used_heap_size=current,
            last_checked=self._clock(),
        )


def check_memory_usage(stats: Optional[MemoryStats], max_usage_mb: float = DEFAULT_MAX_USAGE_MB) -> ValidationResult:
    if stats is None:
        return ValidationResult.ok()  # can't check, assume within budget

    used_mb = stats.used_mb
    if used_mb > max_usage_mb:
        return ValidationResult.fail(
            ErrorKind.INTERNAL,
            f"Memory usage exceeds limit: {round(used_mb)}MB used of {max_usage_mb:g}MB limit",
        )
    return ValidationResult.ok()


class MemoryMonitor:
    """
    Periodic heap usage check.

    Each tick either refreshes the engine's cached memory stats or, when over
    budget and not already paused, force-pauses it with a warning.
    """

    def __init__(
        self,
        engine: MonitoredEngine,
        sampler: Optional[HeapSampler] = None,
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
        max_usage_mb: float = DEFAULT_MAX_USAGE_MB,
        timer_factory: Optional[TimerFactory] = None,
    ):
        self._engine = engine
        self.max_usage_mb = float(max_usage_mb)
        self._sampler: HeapSampler = sampler or TracemallocSampler(limit_bytes=int(self.max_usage_mb * 1024 * 1024))
        self.check_interval_ms = int(check_interval_ms)
        self._timer_factory: TimerFactory = timer_factory or (
            lambda seconds, callback: RepeatingTimer(seconds, callback, name="MemoryMonitor")
        )
        self._timer: Optional[Timer] = None
        self.breaches = 0

    @property
    def running(self) -> bool:
        return self._timer is not None

    def sample(self) -> Optional[MemoryStats]:
        try:
            return self._sampler()
        except Exception as e:
            logger.warning(f"Memory statistics not available: {e}")
            return None

    def check(self) -> ValidationResult:
        """One monitor tick"""
        try:
            stats = self.sample()
            if stats is None:
                return ValidationResult.ok()

            result = check_memory_usage(stats, self.max_usage_mb)
            if not result.is_valid and not self._engine.is_paused:
                self.breaches += 1
                logger.warning(result.error_message)
                self._engine.force_pause(f"Memory warning: {result.error_message}", memory_stats=stats)
            else:
                self._engine.record_memory_stats(stats)
            return result
        except Exception as e:
            logger.error(f"Error monitoring memory: {e}", exc_info=True)
            return ValidationResult.fail(ErrorKind.INTERNAL, f"Failed to check memory: {e}")

    def start(self) -> None:
        if self._timer is not None:
            return
        self._timer = self._timer_factory(self.check_interval_ms / 1000.0, self.check)
        self._timer.start()
        logger.debug(f"Memory monitor checking every {self.check_interval_ms}ms (budget {self.max_usage_mb:g}MB)")

    def stop(self) -> Optional[Timer]:
        """Cancel the monitor timer; returns it so the caller can join outside any lock"""
        timer = self._timer
        if timer is not None:
            timer.cancel()
        self._timer = None
        return timer


__all__ = ["MemoryMonitor", "TracemallocSampler", "check_memory_usage"]
