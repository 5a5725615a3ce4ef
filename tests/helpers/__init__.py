"""Test helpers for the ticker engine test suite"""

from tests.helpers.ticker_stubs import (
    MB,
    FakeClock,
    FakeTimer,
    FakeTimerFactory,
    FixedSampler,
)

__all__ = [
    "MB",
    "FakeClock",
    "FakeTimer",
    "FakeTimerFactory",
    "FixedSampler",
]
