"""
Ticker Engine - Runner

Hosts a TickerStore as a long-running process:
- Validates and loads config/ticker.yaml
- Configures logging, heap tracing and the metrics exporter
- Restores the persisted snapshot on start, saves it on shutdown
- Logs a catalogue summary periodically until stopped
"""

import logging
import signal
import threading
import time
import tracemalloc
from pathlib import Path
from typing import Any, Dict, Optional

from core.models import TickerState
from core.ticker_store import TickerStore
from infra.metrics import MetricsRecorder
from tools.config_validator import load_config

logger = logging.getLogger(__name__)

SUMMARY_INTERVAL_SECONDS = 30.0


def configure_logging(log_cfg: Optional[Dict[str, Any]]) -> None:
    log_cfg = log_cfg or {}
    handlers: list = [logging.StreamHandler()]
    log_file = log_cfg.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def format_summary(state: TickerState) -> str:
    quotes = ", ".join(
        f"{stock.symbol}={stock.current_price:.2f} ({stock.percentage_change:+.2f}%)"
        for stock in state.stocks
    )
    status = "paused" if state.is_paused else f"every {state.update_interval_ms}ms"
    return f"[{status}] selected={state.selected_stock} {quotes or 'no instruments'}"


class TickerLoop:
    """
    Process wrapper around TickerStore.

    Usage:
        loop = TickerLoop("config/ticker.yaml")
        loop.run(duration_seconds=60)
    """

    def __init__(
        self,
        config_path: str = "config/ticker.yaml",
        config: Optional[Dict[str, Any]] = None,
        autoload: Optional[bool] = None,
        install_signal_handlers: bool = True,
        summary_interval_seconds: float = SUMMARY_INTERVAL_SECONDS,
    ):
        self.config = config if config is not None else load_config(config_path)
        configure_logging(self.config.get("logging"))

        storage_cfg = self.config.get("storage", {}) or {}
        memory_cfg = self.config.get("memory", {}) or {}
        monitoring_cfg = self.config.get("monitoring", {}) or {}

        self.autoload = bool(storage_cfg.get("autoload", True)) if autoload is None else autoload
        self.autosave = bool(storage_cfg.get("autosave", True))
        self.summary_interval_seconds = float(summary_interval_seconds)

        if memory_cfg.get("trace_allocations", True) and not tracemalloc.is_tracing():
            tracemalloc.start()
            logger.info("Heap tracing enabled for memory monitoring")

        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()

        self.store = TickerStore(self.config, metrics=self.metrics)
        self._stop = threading.Event()

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(
            f"Initialized TickerLoop (autoload={self.autoload}, autosave={self.autosave}, "
            f"storage={self.store.codec.backend.describe()})"
        )

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received - stopping ticker")
        self._stop.set()

    def stop(self) -> None:
        self._stop.set()

    def run(self, duration_seconds: Optional[float] = None) -> TickerState:
        """
        Run until stopped (signal or stop()) or duration_seconds elapses.

        Returns:
            Final snapshot
        """
        if self.autoload:
            result = self.store.load_state_from_storage()
            if result.is_valid:
                logger.info("Restored persisted ticker state")
            else:
                logger.info(f"Starting from configured catalogue: {result.error_message}")

        self.store.start()
        started = time.monotonic()
        last_summary = started
        logger.info(format_summary(self.store.ticker_state))

        try:
            while not self._stop.is_set():
                now = time.monotonic()
                if duration_seconds is not None and now - started >= duration_seconds:
                    logger.info(f"Run duration of {duration_seconds:g}s reached")
                    break
                if now - last_summary >= self.summary_interval_seconds:
                    logger.info(format_summary(self.store.ticker_state))
                    if self.store.error:
                        logger.warning(f"Active error: {self.store.error}")
                    last_summary = now
                wait = 1.0 if duration_seconds is None else min(1.0, max(0.0, duration_seconds - (now - started)))
                self._stop.wait(wait)
        finally:
            self.store.shutdown()
            if self.autosave:
                result = self.store.save_state_to_storage()
                if not result.is_valid:
                    logger.error(f"Failed to save ticker state: {result.error_message}")

        final_state = self.store.ticker_state
        logger.info(f"Stopped: {format_summary(final_state)}")
        return final_state


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Ticker state engine")
    parser.add_argument("--config", default="config/ticker.yaml", help="Path to ticker.yaml")
    parser.add_argument("--duration", type=float, default=None, help="Seconds to run before exiting (default: forever)")
    parser.add_argument("--no-autoload", action="store_true", help="Ignore any persisted snapshot")

    args = parser.parse_args()

    loop = TickerLoop(config_path=args.config, autoload=False if args.no_autoload else None)
    loop.run(duration_seconds=args.duration)


if __name__ == "__main__":
    main()
