"""
Ticker Engine Core: Per-Action Rate Limiter

Bounds how often each store operation may run inside a rolling window.
Trackers are created lazily per action key ("setPrice-GOOGL", "addStock", ...)
so limits on one instrument never affect another.

Default ceilings (per 60s window):
- setPrice: 120 per symbol
- updateSpeed: 10
- addStock: 20
- removeStock: 20
- selectStock: 60

Pattern: fixed window counter with a latch once the ceiling is hit
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

from core.exceptions import ErrorKind
from core.models import RateLimitTracker, ValidationResult

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX_UPDATES = 120

DEFAULT_ACTION_LIMITS: Dict[str, int] = {
    "setPrice": 120,
    "updateSpeed": 10,
    "addStock": 20,
    "removeStock": 20,
    "selectStock": 60,
}


def _now_ms() -> float:
    return time.time() * 1000.0


def check_rate_limit(
    tracker: RateLimitTracker,
    max_updates: int = DEFAULT_MAX_UPDATES,
    window_ms: float = DEFAULT_WINDOW_MS,
    now: Optional[float] = None,
) -> ValidationResult:
    """
    Account one call against tracker, mutating it in place.

    Args:
        tracker: Live tracker for the action
        max_updates: Ceiling of accepted calls per window
        window_ms: Window length in milliseconds
        now: Current time in epoch ms (defaults to wall clock)

    Returns:
        ValidationResult, failed with ErrorKind.RATE_LIMIT when over the ceiling
    """
    now = _now_ms() if now is None else now

    # Reset counter if window has elapsed
    if now - tracker.last_update_timestamp > window_ms:
        tracker.update_count = 0
        tracker.is_rate_limited = False
        tracker.last_update_timestamp = now

    if tracker.is_rate_limited:
        return ValidationResult.fail(ErrorKind.RATE_LIMIT, "Rate limit exceeded. Please try again later.")

    if tracker.update_count >= max_updates:
        tracker.is_rate_limited = True
        return ValidationResult.fail(
            ErrorKind.RATE_LIMIT,
            f"Rate limit of {max_updates} updates per {window_ms / 1000:g} seconds exceeded.",
        )

    tracker.update_count += 1
    tracker.last_update_timestamp = now
    return ValidationResult.ok()


@dataclass
class ActionQuota:
    """Ceiling for one action family"""
    name: str
    max_updates: int
    window_ms: float = DEFAULT_WINDOW_MS


@dataclass
class RateLimitStats:
    """Statistics for one action key"""
    action: str
    update_count: int
    max_updates: int
    is_rate_limited: bool
    violations: int

    @property
    def utilization(self) -> float:
        return self.update_count / self.max_updates if self.max_updates > 0 else 0.0


class RateLimiter:
    """
    Registry of per-action trackers.

    Features:
    - Action-family quotas (configurable ceilings and window)
    - Lazily created trackers per action key
    - Violation counting for observability

    Usage:
        limiter = RateLimiter()
        limiter.configure({"setPrice": 120, "addStock": 20})

        result = limiter.check("setPrice-GOOGL", quota="setPrice")
        if not result.is_valid:
            return result
    """

    def __init__(
        self,
        window_ms: float = DEFAULT_WINDOW_MS,
        clock: Callable[[], float] = _now_ms,
    ):
        """
        Args:
            window_ms: Default window applied to quotas without their own
            clock: Returns current time in epoch ms
        """
        self._window_ms = float(window_ms)
        self._clock = clock
        self._quotas: Dict[str, ActionQuota] = {}
        self._trackers: Dict[str, RateLimitTracker] = {}
        self._violations: Dict[str, int] = {}
        self._lock = Lock()

        self.configure(DEFAULT_ACTION_LIMITS)

    def configure(self, action_limits: Dict[str, int], window_ms: Optional[float] = None) -> None:
        """
        Configure per-action ceilings.

        Args:
            action_limits: Mapping action family -> max updates per window
            window_ms: Window override for every action in this call
        """
        with self._lock:
            if window_ms is not None:
                self._window_ms = float(window_ms)

            for action, max_updates in action_limits.items():
                if max_updates <= 0:
                    logger.warning(f"Invalid rate limit for {action}: {max_updates}, skipping")
                    continue
                self._quotas[action] = ActionQuota(
                    name=action,
                    max_updates=int(max_updates),
                    window_ms=self._window_ms,
                )

        logger.debug(f"Configured {len(self._quotas)} action quotas (window={self._window_ms:.0f}ms)")

    def quota_for(self, action: str) -> ActionQuota:
        quota = self._quotas.get(action)
        if quota is None:
            return ActionQuota(name=action, max_updates=DEFAULT_MAX_UPDATES, window_ms=self._window_ms)
        return quota

    def tracker(self, key: str) -> RateLimitTracker:
        """Get the live tracker for key, creating it on first use"""
        with self._lock:
            return self._get_or_create(key)

    def _get_or_create(self, key: str) -> RateLimitTracker:
        tracker = self._trackers.get(key)
        if tracker is None:
            tracker = RateLimitTracker(last_update_timestamp=self._clock())
            self._trackers[key] = tracker
            logger.debug(f"Created rate limiter for {key}")
        return tracker

    def check(self, key: str, quota: Optional[str] = None) -> ValidationResult:
        """
        Account one call for key against its action family's quota.

        Args:
            key: Tracker key, e.g. "setPrice-GOOGL"
            quota: Action family whose ceiling applies (defaults to key)
        """
        action_quota = self.quota_for(quota or key)
        with self._lock:
            tracker = self._get_or_create(key)
            result = check_rate_limit(
                tracker,
                max_updates=action_quota.max_updates,
                window_ms=action_quota.window_ms,
                now=self._clock(),
            )
            if not result.is_valid:
                self._violations[key] = self._violations.get(key, 0) + 1

        if not result.is_valid:
            logger.warning(f"Rate limit hit for {key}: {result.error_message}")
        return result

    def snapshot(self) -> Dict[str, RateLimitTracker]:
        """Copies of every live tracker"""
        with self._lock:
            return {key: tracker.copy() for key, tracker in self._trackers.items()}

    def get_stats(self, key: str, quota: Optional[str] = None) -> RateLimitStats:
        action_quota = self.quota_for(quota or key)
        with self._lock:
            tracker = self._get_or_create(key)
            return RateLimitStats(
                action=key,
                update_count=tracker.update_count,
                max_updates=action_quota.max_updates,
                is_rate_limited=tracker.is_rate_limited,
                violations=self._violations.get(key, 0),
            )

    def reset(self, key: Optional[str] = None) -> None:
        """Reset tracker state (for testing)"""
        with self._lock:
            if key:
                self._trackers.pop(key, None)
                self._violations.pop(key, None)
            else:
                self._trackers.clear()
                self._violations.clear()
