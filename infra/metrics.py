"""Prometheus-backed metrics hooks for the ticker engine."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

from core.models import MemoryStats

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "ticker_"


class MetricsRecorder:
    """
    Expose ticker engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    When disabled, only the in-process last-value snapshots are kept.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._operation_counts: Dict[Tuple[str, str], int] = {}
        self._rejection_counts: Dict[str, int] = {}
        self._ticks = 0
        self._internal_errors = 0
        self._last_memory_stats: Optional[MemoryStats] = None
        self._last_pause_reason: Optional[str] = None

        if not self._enabled:
            self._operations_counter = None
            self._rejections_counter = None
            self._ticks_counter = None
            self._tick_summary = None
            self._paused_gauge = None
            self._instruments_gauge = None
            self._heap_used_gauge = None
            self._internal_errors_counter = None
            self._forced_pauses_counter = None
            return

        self._operations_counter = Counter(
            "ticker_operations_total",
            "Store operations by name and outcome",
            labelnames=("operation", "outcome"),
        )
        self._rejections_counter = Counter(
            "ticker_rejections_total",
            "Rejected store operations by error kind",
            labelnames=("kind",),
        )
        self._ticks_counter = Counter(
            "ticker_scheduler_ticks_total",
            "Scheduler ticks applied to the catalogue",
        )
        self._tick_summary = Summary(
            "ticker_scheduler_tick_duration_seconds",
            "Duration of one scheduler tick",
        )
        self._paused_gauge = Gauge(
            "ticker_paused",
            "Whether price simulation is paused (1) or running (0)",
        )
        self._instruments_gauge = Gauge(
            "ticker_instruments",
            "Number of instruments in the catalogue",
        )
        self._heap_used_gauge = Gauge(
            "ticker_heap_used_bytes",
            "Last sampled heap usage",
        )
        self._internal_errors_counter = Counter(
            "ticker_internal_errors_total",
            "Unexpected exceptions caught at the store boundary",
            labelnames=("operation",),
        )
        self._forced_pauses_counter = Counter(
            "ticker_forced_pauses_total",
            "Pauses forced by the memory monitor or error policy",
            labelnames=("source",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            collectors_to_remove = []
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_operation(self, operation: str, outcome: str, kind: Optional[str] = None) -> None:
        key = (operation, outcome)
        self._operation_counts[key] = self._operation_counts.get(key, 0) + 1
        if kind:
            self._rejection_counts[kind] = self._rejection_counts.get(kind, 0) + 1
        if self._enabled and self._operations_counter:
            self._operations_counter.labels(operation=operation, outcome=outcome).inc()
            if kind and self._rejections_counter:
                self._rejections_counter.labels(kind=kind).inc()

    def record_tick(self, duration: float, instruments: int) -> None:
        self._ticks += 1
        if self._enabled:
            assert self._ticks_counter and self._tick_summary and self._instruments_gauge
            self._ticks_counter.inc()
            self._tick_summary.observe(duration)
            self._instruments_gauge.set(max(instruments, 0))

    def record_state(self, is_paused: bool, instruments: int) -> None:
        if self._enabled and self._paused_gauge and self._instruments_gauge:
            self._paused_gauge.set(1 if is_paused else 0)
            self._instruments_gauge.set(max(instruments, 0))

    def record_memory(self, stats: MemoryStats) -> None:
        self._last_memory_stats = stats
        if self._enabled and self._heap_used_gauge:
            self._heap_used_gauge.set(max(stats.used_heap_size, 0))

    def record_internal_error(self, operation: str) -> None:
        self._internal_errors += 1
        if self._enabled and self._internal_errors_counter:
            self._internal_errors_counter.labels(operation=operation).inc()

    def record_forced_pause(self, source: str, reason: str) -> None:
        self._last_pause_reason = reason
        if self._enabled and self._forced_pauses_counter:
            self._forced_pauses_counter.labels(source=source).inc()

    def operation_snapshot(self) -> Dict[Tuple[str, str], int]:
        return dict(self._operation_counts)

    def rejection_snapshot(self) -> Dict[str, int]:
        return dict(self._rejection_counts)

    def tick_count(self) -> int:
        return self._ticks

    def internal_error_count(self) -> int:
        return self._internal_errors

    def last_memory_stats(self) -> Optional[MemoryStats]:
        return self._last_memory_stats

    def last_pause_reason(self) -> Optional[str]:
        return self._last_pause_reason


__all__ = ["MetricsRecorder"]
