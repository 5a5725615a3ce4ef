"""
Ticker Engine Core: Data Model

Immutable snapshot types (PricePoint, StockInfo, TickerState) plus the mutable
trackers owned by the store's live registries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

from core.exceptions import ErrorKind

# Maximum number of points retained in an instrument's price history
MAX_HISTORY_POINTS = 30

T = TypeVar("T")


def ms_to_datetime(timestamp_ms: float) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation step or a store operation."""
    is_valid: bool
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(is_valid=True)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> "ValidationResult":
        return cls(is_valid=False, error_message=message, error_kind=kind)

    def __bool__(self) -> bool:
        return self.is_valid


@dataclass(frozen=True)
class PricePoint:
    """Single price observation, oldest-first within a history."""
    timestamp: datetime
    price: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "price": self.price}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PricePoint":
        return cls(
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            price=float(payload["price"]),
        )


@dataclass(frozen=True)
class StockInfo:
    """A tracked instrument"""
    symbol: str
    name: str
    current_price: float
    previous_price: float
    percentage_change: float
    last_updated: datetime
    price_history: Tuple[PricePoint, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "current_price": self.current_price,
            "previous_price": self.previous_price,
            "percentage_change": self.percentage_change,
            "last_updated": self.last_updated.isoformat(),
            "price_history": [point.to_dict() for point in self.price_history],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "StockInfo":
        return cls(
            symbol=payload["symbol"],
            name=payload["name"],
            current_price=float(payload["current_price"]),
            previous_price=float(payload["previous_price"]),
            percentage_change=float(payload["percentage_change"]),
            last_updated=datetime.fromisoformat(payload["last_updated"]),
            price_history=tuple(PricePoint.from_dict(p) for p in payload.get("price_history", [])),
        )

    @classmethod
    def create(cls, symbol: str, name: str, price: float, timestamp: datetime) -> "StockInfo":
        """New instrument with a single-point history."""
        return cls(
            symbol=symbol,
            name=name,
            current_price=price,
            previous_price=price,
            percentage_change=0.0,
            last_updated=timestamp,
            price_history=(PricePoint(timestamp=timestamp, price=price),),
        )


@dataclass
class RateLimitTracker:
    """Per-action call counter; mutated in place by check_rate_limit()."""
    last_update_timestamp: float
    update_count: int = 0
    is_rate_limited: bool = False

    def copy(self) -> "RateLimitTracker":
        return RateLimitTracker(self.last_update_timestamp, self.update_count, self.is_rate_limited)


@dataclass
class RetryTracker:
    """Per-operation attempt counter with cooldown"""
    operation: str
    attempts: int = 0
    last_attempt: float = 0.0

    def copy(self) -> "RetryTracker":
        return RetryTracker(self.operation, self.attempts, self.last_attempt)


@dataclass(frozen=True)
class MemoryStats:
    """Heap usage sample in bytes; last_checked in epoch ms."""
    heap_size_limit: int
    total_heap_size: int
    used_heap_size: int
    last_checked: float

    @property
    def used_mb(self) -> float:
        return self.used_heap_size / (1024 * 1024)


@dataclass(frozen=True)
class SecureStorageItem(Generic[T]):
    """Checksum envelope written for every persisted snapshot."""
    data: T
    timestamp: float
    checksum: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "timestamp": self.timestamp,
            "checksum": self.checksum,
            "version": self.version,
        }


@dataclass(frozen=True)
class TickerState:
    """
    Aggregate snapshot of the engine.

    Never mutated in place; the store publishes a new value for every change.
    """
    stocks: Tuple[StockInfo, ...]
    update_interval_ms: int
    is_paused: bool
    selected_stock: Optional[str] = None
    rate_limiters: Dict[str, RateLimitTracker] = field(default_factory=dict)
    retry_trackers: Dict[str, RetryTracker] = field(default_factory=dict)
    memory_stats: Optional[MemoryStats] = None
    last_debounced_action: Optional[float] = None

    def find(self, symbol: str) -> Optional[StockInfo]:
        for stock in self.stocks:
            if stock.symbol == symbol:
                return stock
        return None

    def has_stock(self, symbol: str) -> bool:
        return self.find(symbol) is not None

    def persistable(self) -> Dict[str, Any]:
        """Subset of fields written by save_state_to_storage()."""
        return {
            "stocks": [stock.to_dict() for stock in self.stocks],
            "update_interval_ms": self.update_interval_ms,
            "is_paused": self.is_paused,
            "selected_stock": self.selected_stock,
        }


__all__ = [
    "MAX_HISTORY_POINTS",
    "MemoryStats",
    "PricePoint",
    "RateLimitTracker",
    "RetryTracker",
    "SecureStorageItem",
    "StockInfo",
    "TickerState",
    "ValidationResult",
    "ms_to_datetime",
]
