"""
Pytest configuration and fixtures for ticker engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import random

import pytest

from tests.helpers import FakeClock, FakeTimerFactory, FixedSampler


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset the metrics singleton between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def sampler(clock):
    return FixedSampler(used_mb=10.0, clock=clock)


@pytest.fixture
def store_factory(clock, timers, sampler):
    """Build a TickerStore on fake time with an in-memory storage backend"""
    from core.ticker_store import TickerStore
    from infra.secure_storage import InMemoryKeyValueStore, SecureStorageCodec

    def build(config=None, codec=None, seed=42):
        return TickerStore(
            config or {},
            codec=codec or SecureStorageCodec(backend=InMemoryKeyValueStore(), clock=clock),
            clock=clock,
            rng=random.Random(seed),
            timer_factory=timers,
            memory_sampler=sampler,
        )

    return build


@pytest.fixture
def store(store_factory):
    ticker_store = store_factory()
    yield ticker_store
    ticker_store.shutdown()
