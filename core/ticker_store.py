"""
Ticker Engine Core: Ticker State Store

The single authoritative model of the instrument catalogue. Every mutating
operation follows the same skeleton:

    sanitize -> validate -> rate-limit -> business rule -> apply or fail

and returns a ValidationResult instead of raising. Unexpected exceptions are
caught at the operation boundary, surfaced as a dismissable error banner and,
when judged severe, force the update scheduler into PAUSED.

All mutations (caller operations, scheduler ticks, memory monitor ticks) run
under one re-entrant lock, so no operation observes a half-applied change.
Each change publishes a new immutable TickerState snapshot to subscribers.
"""

import logging
import random
import threading
import time
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from core.exceptions import ErrorKind, StorageIntegrityError
from core.models import (
    MAX_HISTORY_POINTS,
    MemoryStats,
    PricePoint,
    StockInfo,
    TickerState,
    ValidationResult,
    ms_to_datetime,
)
from core.pricing import apply_price, apply_tick, perturb_price
from core.rate_limiter import DEFAULT_WINDOW_MS, RateLimiter
from core.retry import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY_MS, RetryOutcome, RetryPolicy
from core.scheduler import TimerFactory, UpdateScheduler
from core.validation import (
    SecurityConstraints,
    build_validators,
    mask_sensitive_data,
    sanitize_stock_name,
    sanitize_stock_symbol,
    validate_stock_name,
    validate_stock_price,
    validate_stock_symbol,
    validate_update_interval,
)
from infra.memory_monitor import DEFAULT_CHECK_INTERVAL_MS, DEFAULT_MAX_USAGE_MB, HeapSampler, MemoryMonitor
from infra.metrics import MetricsRecorder
from infra.secure_storage import SecureStorageCodec

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL_MS = 2000
DEFAULT_MAX_STOCKS = 50
DEFAULT_STATE_KEY = "tickerState"

DEFAULT_STOCKS: Tuple[Tuple[str, str, float], ...] = (
    ("BNOX", "Bane&Ox", 185.75),
    ("GOOGL", "Alphabet Inc.", 176.30),
    ("MSFT", "Microsoft Corporation", 415.20),
)

StateListener = Callable[[TickerState], None]


def _now_ms() -> float:
    return time.time() * 1000.0


class TickerStore:
    """
    Aggregate root owning the TickerState.

    Responsibilities:
    - Validate, rate-limit and apply catalogue mutations
    - Drive the update scheduler and memory monitor
    - Persist/restore a subset of state through the storage codec
    - Publish snapshots to subscribers
    - Convert internal errors into results (error banner + severity policy)

    Usage:
        store = TickerStore(config)
        store.subscribe(render)
        with store:
            store.set_price("GOOGL", 200.0)
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        *,
        codec: Optional[SecureStorageCodec] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = _now_ms,
        rng: Optional[random.Random] = None,
        timer_factory: Optional[TimerFactory] = None,
        memory_sampler: Optional[HeapSampler] = None,
    ):
        """
        Args:
            config: Parsed ticker.yaml (every section and key optional)
            codec: Storage codec (default: built from the storage section)
            metrics: Metrics recorder (default: shared disabled recorder)
            clock: Returns current time in epoch ms
            rng: Random source for price perturbation
            timer_factory: Builds the scheduler/monitor timers
            memory_sampler: Heap sampler for the memory monitor
        """
        config = config or {}
        ticker_cfg = config.get("ticker", {}) or {}
        rate_cfg = config.get("rate_limits", {}) or {}
        retry_cfg = config.get("retry", {}) or {}
        memory_cfg = config.get("memory", {}) or {}
        storage_cfg = config.get("storage", {}) or {}
        errors_cfg = config.get("errors", {}) or {}

        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self._listeners: List[StateListener] = []
        self._error: Optional[str] = None
        self._started = False
        self._closed = False

        self.constraints = SecurityConstraints.from_config(config.get("constraints", {}))
        self.max_history_points = int(ticker_cfg.get("max_history_points", MAX_HISTORY_POINTS))
        self.max_stocks = int(ticker_cfg.get("max_stocks", DEFAULT_MAX_STOCKS))
        self.price_fluctuation_pct = float(ticker_cfg.get("price_fluctuation_pct", 2.0))
        self.state_key = storage_cfg.get("state_key", DEFAULT_STATE_KEY)

        # Internal error severity policy
        self._error_window_seconds = float(errors_cfg.get("window_seconds", 300))
        self._error_pause_threshold = int(errors_cfg.get("pause_threshold", 2))
        self._internal_errors: Deque[float] = deque()

        self.metrics = metrics or MetricsRecorder(enabled=False)
        self.codec = codec or SecureStorageCodec.from_config(storage_cfg, clock=clock)

        self.rate_limiter = RateLimiter(window_ms=rate_cfg.get("window_ms", DEFAULT_WINDOW_MS), clock=clock)
        self.rate_limiter.configure(rate_cfg.get("actions", {}) or {})

        self.retry_policy = RetryPolicy(
            max_attempts=retry_cfg.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            retry_delay_ms=retry_cfg.get("retry_delay_ms", DEFAULT_RETRY_DELAY_MS),
            clock=clock,
        )

        interval_ms = int(ticker_cfg.get("update_interval_ms", DEFAULT_UPDATE_INTERVAL_MS))
        interval_check = validate_update_interval(interval_ms, self.constraints)
        if not interval_check.is_valid:
            raise ValueError(f"Invalid update_interval_ms: {interval_check.error_message}")

        self.scheduler = UpdateScheduler(
            on_tick=self._apply_tick,
            interval_ms=interval_ms,
            on_error=self._on_tick_error,
            timer_factory=timer_factory,
        )
        self.memory_monitor = MemoryMonitor(
            self,
            sampler=memory_sampler,
            check_interval_ms=memory_cfg.get("check_interval_ms", DEFAULT_CHECK_INTERVAL_MS),
            max_usage_mb=memory_cfg.get("max_usage_mb", DEFAULT_MAX_USAGE_MB),
            timer_factory=timer_factory,
        )

        stocks = self._initial_stocks(config.get("stocks"))
        self._state = TickerState(
            stocks=stocks,
            update_interval_ms=interval_ms,
            is_paused=bool(ticker_cfg.get("start_paused", False)),
            selected_stock=stocks[0].symbol if stocks else None,
            memory_stats=self.memory_monitor.sample(),
            last_debounced_action=self._clock(),
        )

        logger.info(
            f"TickerStore initialized: {len(stocks)} instruments, interval={interval_ms}ms, "
            f"history={self.max_history_points}, max_stocks={self.max_stocks}"
        )

    def _initial_stocks(self, configured: Optional[List[Dict[str, Any]]]) -> Tuple[StockInfo, ...]:
        if configured is None:
            entries = [{"symbol": s, "name": n, "price": p} for s, n, p in DEFAULT_STOCKS]
        else:
            entries = configured

        timestamp = ms_to_datetime(self._clock())
        stocks: List[StockInfo] = []
        for entry in entries:
            symbol = sanitize_stock_symbol(entry.get("symbol"))
            name = sanitize_stock_name(entry.get("name"), self.constraints)
            price = entry.get("price")
            for check in (
                validate_stock_symbol(symbol),
                validate_stock_name(name, self.constraints),
                validate_stock_price(price, self.constraints),
            ):
                if not check.is_valid:
                    raise ValueError(f"Invalid configured stock {entry!r}: {check.error_message}")
            if any(stock.symbol == symbol for stock in stocks):
                raise ValueError(f"Duplicate configured stock symbol: {symbol}")
            stocks.append(StockInfo.create(symbol, name, float(price), timestamp))
        return tuple(stocks)

    # ------------------------------------------------------------------
    # Snapshot access and subscription
    # ------------------------------------------------------------------

    @property
    def ticker_state(self) -> TickerState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._state.is_paused

    @property
    def error(self) -> Optional[str]:
        """Current error banner, if any"""
        return self._error

    def dismiss_error(self) -> None:
        self._error = None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register listener for every new snapshot.

        Returns:
            Callable that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: TickerState) -> None:
        """Install a new snapshot; caller must hold the lock"""
        state = replace(
            state,
            rate_limiters=self.rate_limiter.snapshot(),
            retry_trackers=self.retry_policy.snapshot(),
        )
        self._state = state
        self.metrics.record_state(state.is_paused, len(state.stocks))

        if self._started:
            self.scheduler.sync(state.is_paused, state.update_interval_ms)

        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Ticker state listener failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Error boundary
    # ------------------------------------------------------------------

    def _guard(self, operation: str, fn: Callable[[], ValidationResult]) -> ValidationResult:
        try:
            with self._lock:
                result = fn()
        except Exception as e:
            return self._handle_internal_error(operation, e)

        if result.is_valid:
            self.metrics.record_operation(operation, "ok")
        else:
            self.metrics.record_operation(operation, "rejected", kind=str(result.error_kind))
            logger.debug(f"{operation} rejected: {result.error_message}")
        return result

    def _handle_internal_error(self, operation: str, exc: Exception) -> ValidationResult:
        logger.error(f"Error in {operation}: {exc}", exc_info=exc)
        self.metrics.record_internal_error(operation)
        self.metrics.record_operation(operation, "error", kind=str(ErrorKind.INTERNAL))

        with self._lock:
            self._error = f"Error in {operation}: {exc}"
            now_s = self._clock() / 1000.0
            self._internal_errors.append(now_s)
            while self._internal_errors and now_s - self._internal_errors[0] > self._error_window_seconds:
                self._internal_errors.popleft()

            severe = isinstance(exc, (MemoryError, RecursionError)) or (
                len(self._internal_errors) >= self._error_pause_threshold
            )
            if severe and not self._state.is_paused:
                try:
                    self.force_pause(f"Paused after internal error in {operation}: {exc}", source="error_policy")
                except Exception as pause_exc:  # pragma: no cover - last-resort logging
                    logger.error(f"Failed to pause after internal error: {pause_exc}", exc_info=True)

        return ValidationResult.fail(ErrorKind.INTERNAL, f"Internal error in {operation}: {exc}")

    def _on_tick_error(self, exc: Exception) -> None:
        self._handle_internal_error("priceTick", exc)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def set_price(self, symbol: str, price: float) -> ValidationResult:
        """Set a manual price for an existing instrument"""
        return self._guard("setPrice", lambda: self._set_price(symbol, price))

    def _set_price(self, symbol: str, price: float) -> ValidationResult:
        sanitized = sanitize_stock_symbol(symbol)
        symbol_check = validate_stock_symbol(sanitized)
        if not symbol_check.is_valid:
            return symbol_check

        price_check = validate_stock_price(price, self.constraints)
        if not price_check.is_valid:
            return price_check

        rate_check = self.rate_limiter.check(f"setPrice-{sanitized}", quota="setPrice")
        if not rate_check.is_valid:
            return rate_check

        stock = self._state.find(sanitized)
        if stock is None:
            return ValidationResult.fail(ErrorKind.NOT_FOUND, f"Stock with symbol {sanitized} does not exist")

        updated = apply_price(stock, float(price), ms_to_datetime(self._clock()), self.max_history_points)
        self._publish(replace(
            self._state,
            stocks=tuple(updated if s.symbol == sanitized else s for s in self._state.stocks),
        ))
        logger.debug(f"Set {sanitized} price to {price} ({updated.percentage_change:+.2f}%)")
        return ValidationResult.ok()

    def update_speed(self, interval_ms: int) -> ValidationResult:
        """Change the scheduler cadence"""
        return self._guard("updateSpeed", lambda: self._update_speed(interval_ms))

    def _update_speed(self, interval_ms: int) -> ValidationResult:
        interval_check = validate_update_interval(interval_ms, self.constraints)
        if not interval_check.is_valid:
            return interval_check

        rate_check = self.rate_limiter.check("updateSpeed")
        if not rate_check.is_valid:
            return rate_check

        self._publish(replace(self._state, update_interval_ms=int(interval_ms)))
        logger.debug(f"Update interval set to {int(interval_ms)}ms")
        return ValidationResult.ok()

    def toggle_pause(self) -> ValidationResult:
        return self._guard("togglePause", self._toggle_pause)

    def _toggle_pause(self) -> ValidationResult:
        self._publish(replace(self._state, is_paused=not self._state.is_paused))
        logger.debug(f"Ticker {'paused' if self._state.is_paused else 'resumed'}")
        return ValidationResult.ok()

    def add_stock(self, symbol: str, name: str, initial_price: float) -> ValidationResult:
        """Add an instrument with a single-point history"""
        return self._guard("addStock", lambda: self._add_stock(symbol, name, initial_price))

    def _add_stock(self, symbol: str, name: str, initial_price: float) -> ValidationResult:
        sanitized_symbol = sanitize_stock_symbol(symbol)
        sanitized_name = sanitize_stock_name(name, self.constraints)

        for check in (
            validate_stock_symbol(sanitized_symbol),
            validate_stock_name(sanitized_name, self.constraints),
            validate_stock_price(initial_price, self.constraints),
        ):
            if not check.is_valid:
                return check

        rate_check = self.rate_limiter.check("addStock")
        if not rate_check.is_valid:
            return rate_check

        if self._state.has_stock(sanitized_symbol):
            return ValidationResult.fail(
                ErrorKind.VALIDATION, f"Stock with symbol {sanitized_symbol} already exists"
            )

        if len(self._state.stocks) >= self.max_stocks:
            return ValidationResult.fail(
                ErrorKind.VALIDATION, f"Cannot track more than {self.max_stocks} stocks"
            )

        stock = StockInfo.create(
            sanitized_symbol, sanitized_name, float(initial_price), ms_to_datetime(self._clock())
        )
        self._publish(replace(
            self._state,
            stocks=self._state.stocks + (stock,),
            selected_stock=self._state.selected_stock or sanitized_symbol,
        ))
        logger.debug(f"Added {sanitized_symbol} ({sanitized_name}) at {initial_price}")
        return ValidationResult.ok()

    def remove_stock(self, symbol: str) -> ValidationResult:
        return self._guard("removeStock", lambda: self._remove_stock(symbol))

    def _remove_stock(self, symbol: str) -> ValidationResult:
        sanitized = sanitize_stock_symbol(symbol)
        symbol_check = validate_stock_symbol(sanitized)
        if not symbol_check.is_valid:
            return symbol_check

        if not self._state.has_stock(sanitized):
            return ValidationResult.fail(ErrorKind.NOT_FOUND, f"Stock with symbol {sanitized} does not exist")

        rate_check = self.rate_limiter.check("removeStock")
        if not rate_check.is_valid:
            return rate_check

        remaining = tuple(s for s in self._state.stocks if s.symbol != sanitized)
        selected = self._state.selected_stock
        if selected == sanitized:
            selected = remaining[0].symbol if remaining else None

        self._publish(replace(self._state, stocks=remaining, selected_stock=selected))
        logger.debug(f"Removed {sanitized}; selected={selected}")
        return ValidationResult.ok()

    def select_stock(self, symbol: str) -> ValidationResult:
        return self._guard("selectStock", lambda: self._select_stock(symbol))

    def _select_stock(self, symbol: str) -> ValidationResult:
        sanitized = sanitize_stock_symbol(symbol)
        symbol_check = validate_stock_symbol(sanitized)
        if not symbol_check.is_valid:
            return symbol_check

        if not self._state.has_stock(sanitized):
            return ValidationResult.fail(ErrorKind.NOT_FOUND, f"Stock with symbol {sanitized} does not exist")

        rate_check = self.rate_limiter.check("selectStock")
        if not rate_check.is_valid:
            return rate_check

        self._publish(replace(self._state, selected_stock=sanitized))
        return ValidationResult.ok()

    def get_stock_price_history(self, symbol: str) -> List[PricePoint]:
        """Copy of an instrument's history; empty (with a warning) if unknown"""
        try:
            sanitized = sanitize_stock_symbol(symbol)
            if not sanitized:
                logger.warning("Invalid symbol provided to get_stock_price_history")
                return []

            stock = self._state.find(sanitized)
            if stock is None:
                logger.warning(f"Stock not found: {sanitized}")
                return []

            return list(stock.price_history)
        except Exception as e:
            self._handle_internal_error("getStockPriceHistory", e)
            return []

    def validate_input(self, kind: str, value: Any) -> ValidationResult:
        """Run one of the symbol/name/price/interval validators"""
        validator = build_validators(self.constraints).get(kind)
        if validator is None:
            return ValidationResult.fail(ErrorKind.VALIDATION, f"Unknown input kind: {kind}")
        return validator(value)

    @staticmethod
    def mask_sensitive_data(data: Any, kind: str) -> str:
        return mask_sensitive_data(data, kind)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_state_to_storage(self) -> ValidationResult:
        return self._guard("saveStateToStorage", self._save_state)

    def _save_state(self) -> ValidationResult:
        payload = self._state.persistable()
        result = self.codec.persist(self.state_key, payload)
        if result.is_valid:
            logger.info(f"Saved ticker state ({len(payload['stocks'])} instruments)")
        return result

    def load_state_from_storage(self) -> ValidationResult:
        return self._guard("loadStateFromStorage", self._load_state)

    def _load_state(self) -> ValidationResult:
        result, data = self.codec.restore(self.state_key)
        if not result.is_valid:
            return result

        try:
            restored = self._parse_persisted(data)
        except StorageIntegrityError as e:
            logger.warning(f"Persisted ticker state rejected: {e}")
            return ValidationResult.fail(ErrorKind.STORAGE, str(e))

        # rate limiters, retry trackers and memory stats always stay live
        self._publish(replace(
            self._state,
            memory_stats=self.memory_monitor.sample() or self._state.memory_stats,
            **restored,
        ))
        logger.info(f"Loaded ticker state ({len(restored['stocks'])} instruments)")
        return ValidationResult.ok()

    def retry_operation(
        self,
        operation: str,
        fn: Callable[[], Any],
        max_attempts: Optional[int] = None,
    ) -> RetryOutcome:
        """
        Run fn under the per-operation attempt counter.

        fn runs outside the store lock, so it may call back into the store.
        The updated tracker is published with the next snapshot.
        """
        outcome = self.retry_policy.with_retry(operation, fn, max_attempts)
        with self._lock:
            if not self._closed:
                self._publish(self._state)
        if outcome.exhausted:
            self.metrics.record_operation(operation, "rejected", kind=str(ErrorKind.RETRY_EXHAUSTED))
        return outcome

    def _parse_persisted(self, data: Any) -> Dict[str, Any]:
        """Rebuild and validate the persisted subset; raises StorageIntegrityError"""
        key = self.state_key
        if not isinstance(data, dict):
            raise StorageIntegrityError(key, "Persisted state is not an object")

        try:
            stocks = tuple(StockInfo.from_dict(entry) for entry in data["stocks"])
            interval_ms = data["update_interval_ms"]
            is_paused = data["is_paused"]
            selected = data.get("selected_stock")
        except (KeyError, TypeError, ValueError) as e:
            raise StorageIntegrityError(key, f"Persisted state is malformed: {e}", e) from e

        seen = set()
        for stock in stocks:
            for check in (
                validate_stock_symbol(stock.symbol),
                validate_stock_name(stock.name, self.constraints),
                validate_stock_price(stock.current_price, self.constraints),
                validate_stock_price(stock.previous_price, self.constraints),
            ):
                if not check.is_valid:
                    raise StorageIntegrityError(key, f"Persisted stock {stock.symbol!r} invalid: {check.error_message}")
            if stock.symbol in seen:
                raise StorageIntegrityError(key, f"Persisted state has duplicate symbol {stock.symbol}")
            if len(stock.price_history) > self.max_history_points:
                raise StorageIntegrityError(key, f"Persisted history for {stock.symbol} exceeds limit")
            seen.add(stock.symbol)

        interval_check = validate_update_interval(interval_ms, self.constraints)
        if not interval_check.is_valid:
            raise StorageIntegrityError(key, interval_check.error_message)
        if not isinstance(is_paused, bool):
            raise StorageIntegrityError(key, "Persisted is_paused is not a boolean")

        if selected not in seen:
            selected = stocks[0].symbol if stocks else None

        return {
            "stocks": stocks,
            "update_interval_ms": int(interval_ms),
            "is_paused": is_paused,
            "selected_stock": selected,
        }

    # ------------------------------------------------------------------
    # Memory monitor entry points
    # ------------------------------------------------------------------

    def record_memory_stats(self, stats: MemoryStats) -> None:
        with self._lock:
            self.metrics.record_memory(stats)
            self._publish(replace(self._state, memory_stats=stats))

    def force_pause(
        self,
        reason: str,
        memory_stats: Optional[MemoryStats] = None,
        source: str = "memory_monitor",
    ) -> None:
        """
        Privileged pause used by the memory monitor and the error policy.

        The only path that flips is_paused without a caller action.
        """
        with self._lock:
            logger.warning(f"Forcing pause ({source}): {reason}")
            self._error = reason
            if memory_stats is not None:
                self.metrics.record_memory(memory_stats)
            self.metrics.record_forced_pause(source, reason)
            self._publish(replace(
                self._state,
                is_paused=True,
                memory_stats=memory_stats or self._state.memory_stats,
            ))

    def get_memory_usage(self) -> Optional[MemoryStats]:
        """Fresh heap sample, or the cached one if the host cannot sample"""
        return self.memory_monitor.sample() or self._state.memory_stats

    # ------------------------------------------------------------------
    # Scheduler tick
    # ------------------------------------------------------------------

    def _apply_tick(self) -> None:
        with self._lock:
            state = self._state
            # a tick that was waiting on the lock during shutdown is dropped
            if self._closed or state.is_paused:
                return

            started = time.perf_counter()
            timestamp = ms_to_datetime(self._clock())
            stocks = tuple(
                apply_tick(
                    stock,
                    perturb_price(
                        stock.current_price,
                        self._rng,
                        max_change_pct=self.price_fluctuation_pct,
                        min_price=self.constraints.min_stock_price,
                        max_price=self.constraints.max_stock_price,
                    ),
                    timestamp,
                    self.max_history_points,
                )
                for stock in state.stocks
            )
            self._publish(replace(state, stocks=stocks))
            self.metrics.record_tick(time.perf_counter() - started, len(stocks))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler (unless paused) and the memory monitor"""
        with self._lock:
            if self._closed:
                raise RuntimeError("TickerStore has been shut down")
            if self._started:
                return
            self._started = True
            self.scheduler.sync(self._state.is_paused, self._state.update_interval_ms)
            self.memory_monitor.start()
        logger.info("TickerStore started")

    def shutdown(self) -> None:
        """Cancel both timers; joins their threads outside the store lock"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._started = False
            timers = [self.scheduler.shutdown(), self.memory_monitor.stop()]

        for timer in timers:
            if isinstance(timer, threading.Thread) and timer.is_alive() and timer is not threading.current_thread():
                timer.join(timeout=2.0)
        logger.info("TickerStore shut down")

    def __enter__(self) -> "TickerStore":
        self.start()
        return self

    def __exit__(self, *_) -> None:
        self.shutdown()


__all__ = ["DEFAULT_STOCKS", "DEFAULT_UPDATE_INTERVAL_MS", "TickerStore"]
