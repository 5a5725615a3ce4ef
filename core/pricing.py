"""Price arithmetic shared by manual price sets and scheduler ticks."""

import random
from dataclasses import replace
from datetime import datetime
from typing import Tuple

from core.models import MAX_HISTORY_POINTS, PricePoint, StockInfo


def percentage_change(new_price: float, previous_price: float) -> float:
    if previous_price == 0:
        return 0.0
    return ((new_price - previous_price) / previous_price) * 100


def append_price_point(
    history: Tuple[PricePoint, ...],
    point: PricePoint,
    max_points: int = MAX_HISTORY_POINTS,
) -> Tuple[PricePoint, ...]:
    """Append point, evicting the oldest entries beyond max_points."""
    updated = history + (point,)
    if len(updated) > max_points:
        updated = updated[-max_points:]
    return updated


def apply_price(
    stock: StockInfo,
    new_price: float,
    timestamp: datetime,
    max_points: int = MAX_HISTORY_POINTS,
) -> StockInfo:
    """
    Set a manual price: the outgoing current price becomes previous_price.
    """
    previous_price = stock.current_price
    return replace(
        stock,
        previous_price=previous_price,
        current_price=new_price,
        percentage_change=percentage_change(new_price, previous_price),
        last_updated=timestamp,
        price_history=append_price_point(stock.price_history, PricePoint(timestamp, new_price), max_points),
    )


def perturb_price(
    current_price: float,
    rng: random.Random,
    max_change_pct: float = 2.0,
    min_price: float = 0.01,
    max_price: float = 1_000_000.0,
) -> float:
    """current +/- up to max_change_pct percent, clamped to the price bounds."""
    fluctuation_pct = rng.uniform(-max_change_pct, max_change_pct)
    new_price = current_price + current_price * (fluctuation_pct / 100)
    return max(min_price, min(max_price, new_price))


def apply_tick(
    stock: StockInfo,
    new_price: float,
    timestamp: datetime,
    max_points: int = MAX_HISTORY_POINTS,
) -> StockInfo:
    """
    Scheduler tick: percentage change is measured against the instrument's
    own previous_price, then previous_price advances to the pre-tick price.
    """
    return replace(
        stock,
        previous_price=stock.current_price,
        current_price=new_price,
        percentage_change=percentage_change(new_price, stock.previous_price),
        last_updated=timestamp,
        price_history=append_price_point(stock.price_history, PricePoint(timestamp, new_price), max_points),
    )
