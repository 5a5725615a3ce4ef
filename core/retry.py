"""
Ticker Engine Core: Retry Tracker

Bounds how many times a fallible operation may be attempted in quick
succession. Attempts reset only after a cooldown of twice the retry delay
has elapsed since the last attempt.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from core.models import RetryTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 1000


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class RetryOutcome(Generic[T]):
    """Result of with_retry(); error is set when fn was refused or raised"""
    result: Optional[T] = None
    error: Optional[str] = None
    exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class RetryPolicy:
    """
    Per-operation attempt counters.

    Usage:
        policy = RetryPolicy(max_attempts=3, retry_delay_ms=1000)
        outcome = policy.with_retry("saveState", lambda: codec.persist(key, data))
        if not outcome.ok:
            ...
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_ms: float = DEFAULT_RETRY_DELAY_MS,
        clock: Callable[[], float] = _now_ms,
    ):
        self.max_attempts = int(max_attempts)
        self.retry_delay_ms = float(retry_delay_ms)
        self._clock = clock
        self._trackers: Dict[str, RetryTracker] = {}
        self._lock = Lock()

    @property
    def cooldown_ms(self) -> float:
        return self.retry_delay_ms * 2

    def tracker(self, operation: str) -> RetryTracker:
        with self._lock:
            return self._get_or_create(operation)

    def _get_or_create(self, operation: str) -> RetryTracker:
        tracker = self._trackers.get(operation)
        if tracker is None:
            tracker = RetryTracker(operation=operation, attempts=0, last_attempt=self._clock())
            self._trackers[operation] = tracker
        return tracker

    def with_retry(
        self,
        operation: str,
        fn: Callable[[], T],
        max_attempts: Optional[int] = None,
    ) -> RetryOutcome[T]:
        """
        Invoke fn unless operation has used up its attempts within the cooldown.

        Exceptions raised by fn are reported in the outcome, never propagated.
        """
        limit = self.max_attempts if max_attempts is None else int(max_attempts)

        with self._lock:
            now = self._clock()
            tracker = self._get_or_create(operation)

            if tracker.attempts >= limit:
                if now - tracker.last_attempt > self.cooldown_ms:
                    tracker.attempts = 0
                else:
                    logger.warning(f"Retry attempts exhausted for {operation} ({tracker.attempts}/{limit})")
                    return RetryOutcome(
                        error=f"Maximum retry attempts ({limit}) exceeded for {operation}",
                        exhausted=True,
                    )

            tracker.attempts += 1
            tracker.last_attempt = now

        try:
            return RetryOutcome(result=fn())
        except Exception as e:
            logger.error(f"Error in operation {operation}: {e}", exc_info=True)
            return RetryOutcome(error=f"Operation failed: {e}")

    def snapshot(self) -> Dict[str, RetryTracker]:
        with self._lock:
            return {key: tracker.copy() for key, tracker in self._trackers.items()}

    def reset(self, operation: Optional[str] = None) -> None:
        with self._lock:
            if operation:
                self._trackers.pop(operation, None)
            else:
                self._trackers.clear()


__all__ = ["RetryOutcome", "RetryPolicy", "DEFAULT_MAX_ATTEMPTS", "DEFAULT_RETRY_DELAY_MS"]
