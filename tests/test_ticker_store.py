"""
Tests for the ticker state store.

Covers every public operation, scheduler and monitor integration,
persistence, subscription and the internal error policy.
"""
import pytest

import core.ticker_store as ticker_store_module
from core.exceptions import ErrorKind
from core.models import TickerState
from core.ticker_store import DEFAULT_STOCKS, TickerStore
from infra.secure_storage import InMemoryKeyValueStore, SecureStorageCodec


def _scheduler_timers(timers, interval_seconds=2.0):
    return timers.active_at(interval_seconds)


class TestInitialState:
    """Test the seeded catalogue"""

    def test_default_catalogue(self, store):
        state = store.ticker_state
        assert [s.symbol for s in state.stocks] == [symbol for symbol, _, _ in DEFAULT_STOCKS]
        assert state.update_interval_ms == 2000
        assert not state.is_paused
        assert state.selected_stock == "BNOX"

    def test_single_point_history(self, store):
        for stock in store.ticker_state.stocks:
            assert len(stock.price_history) == 1
            assert stock.previous_price == stock.current_price
            assert stock.percentage_change == 0.0

    def test_memory_stats_sampled(self, store, sampler):
        assert store.ticker_state.memory_stats is not None
        assert store.get_memory_usage().used_heap_size == int(sampler.used_mb * 1024 * 1024)

    def test_configured_catalogue(self, store_factory):
        store = store_factory({
            "ticker": {"update_interval_ms": 500, "start_paused": True},
            "stocks": [{"symbol": "acme", "name": "Acme Corp", "price": 12.5}],
        })
        state = store.ticker_state
        assert [s.symbol for s in state.stocks] == ["ACME"]
        assert state.update_interval_ms == 500
        assert state.is_paused

    def test_empty_catalogue(self, store_factory):
        store = store_factory({"stocks": []})
        assert store.ticker_state.stocks == ()
        assert store.ticker_state.selected_stock is None

    def test_invalid_configured_stock(self, store_factory):
        with pytest.raises(ValueError, match="Invalid configured stock"):
            store_factory({"stocks": [{"symbol": "ACME", "name": "Acme", "price": -1}]})

    def test_invalid_interval(self, store_factory):
        with pytest.raises(ValueError, match="update_interval_ms"):
            store_factory({"ticker": {"update_interval_ms": 10}})


class TestSetPrice:
    """Test manual price sets"""

    def test_percentage_change_against_old_price(self, store):
        result = store.set_price("GOOGL", 200)
        assert result.is_valid

        googl = store.ticker_state.find("GOOGL")
        assert googl.current_price == 200
        assert googl.previous_price == 176.30
        assert googl.percentage_change == pytest.approx(13.44, abs=0.01)
        assert len(googl.price_history) == 2
        assert googl.price_history[-1].price == 200

    def test_symbol_sanitized(self, store):
        assert store.set_price("  googl ", 190).is_valid
        assert store.ticker_state.find("GOOGL").current_price == 190

    def test_invalid_price(self, store):
        before = store.ticker_state
        result = store.set_price("GOOGL", 0)
        assert result.error_kind is ErrorKind.VALIDATION
        assert store.ticker_state is before

    def test_invalid_symbol(self, store):
        result = store.set_price("123", 10)
        assert result.error_message == "Stock symbol is required"

    def test_unknown_symbol(self, store):
        result = store.set_price("ZZZ", 10)
        assert result.error_kind is ErrorKind.NOT_FOUND
        assert result.error_message == "Stock with symbol ZZZ does not exist"

    def test_history_capped(self, store, clock):
        for i in range(40):
            clock.advance(10)
            assert store.set_price("MSFT", 400 + i).is_valid
        history = store.get_stock_price_history("MSFT")
        assert len(history) == 30
        assert history[-1].price == 439
        assert history[0].price == 410

    def test_metrics_recorded(self, store):
        store.set_price("GOOGL", 200)
        store.set_price("GOOGL", -5)
        counts = store.metrics.operation_snapshot()
        assert counts[("setPrice", "ok")] == 1
        assert counts[("setPrice", "rejected")] == 1
        assert store.metrics.rejection_snapshot() == {"validation": 1}


class TestUpdateSpeed:
    def test_updates_interval(self, store):
        assert store.update_speed(500).is_valid
        assert store.ticker_state.update_interval_ms == 500

    def test_below_minimum(self, store):
        result = store.update_speed(50)
        assert result.error_message == "Update interval cannot be less than 100ms"
        assert store.ticker_state.update_interval_ms == 2000

    def test_reschedules_running_scheduler(self, store, timers):
        store.start()
        old = _scheduler_timers(timers)
        assert len(old) == 1

        store.update_speed(500)
        assert old[0].cancelled
        assert len(_scheduler_timers(timers, 0.5)) == 1


class TestTogglePause:
    def test_toggle(self, store):
        assert store.toggle_pause().is_valid
        assert store.is_paused
        assert store.toggle_pause().is_valid
        assert not store.is_paused

    def test_double_toggle_restores_cadence(self, store, timers):
        store.start()
        stocks_before = store.ticker_state.stocks

        store.toggle_pause()
        assert _scheduler_timers(timers) == []
        store.toggle_pause()

        assert len(_scheduler_timers(timers)) == 1
        assert store.ticker_state.stocks == stocks_before
        assert store.ticker_state.update_interval_ms == 2000


class TestAddStock:
    def test_adds_with_single_point(self, store):
        result = store.add_stock("nvda", "NVIDIA Corp", 120.5)
        assert result.is_valid
        nvda = store.ticker_state.find("NVDA")
        assert nvda.name == "NVIDIA Corp"
        assert nvda.current_price == nvda.previous_price == 120.5
        assert len(nvda.price_history) == 1
        # selection unchanged when one exists
        assert store.ticker_state.selected_stock == "BNOX"

    def test_first_stock_becomes_selected(self, store_factory):
        store = store_factory({"stocks": []})
        store.add_stock("ACME", "Acme", 5)
        assert store.ticker_state.selected_stock == "ACME"

    def test_name_sanitized(self, store):
        store.add_stock("ACME", "<Acme> Corp", 5)
        assert store.ticker_state.find("ACME").name == "Acme Corp"

    def test_duplicate_rejected(self, store):
        result = store.add_stock("GOOGL", "Alphabet", 100)
        assert result.error_kind is ErrorKind.VALIDATION
        assert result.error_message == "Stock with symbol GOOGL already exists"

    def test_capacity(self, store_factory):
        store = store_factory({"ticker": {"max_stocks": 3}})
        result = store.add_stock("ACME", "Acme", 5)
        assert not result.is_valid
        assert result.error_message == "Cannot track more than 3 stocks"

    def test_invalid_price(self, store):
        assert store.add_stock("ACME", "Acme", 2_000_000).error_kind is ErrorKind.VALIDATION
        assert not store.ticker_state.has_stock("ACME")


class TestRemoveAndSelect:
    def test_remove_selected_reselects_first(self, store):
        assert store.remove_stock("BNOX").is_valid
        assert store.ticker_state.selected_stock == "GOOGL"

    def test_remove_other_keeps_selection(self, store):
        store.remove_stock("MSFT")
        assert store.ticker_state.selected_stock == "BNOX"
        assert not store.ticker_state.has_stock("MSFT")

    def test_remove_all_clears_selection(self, store):
        for symbol in ("BNOX", "GOOGL", "MSFT"):
            assert store.remove_stock(symbol).is_valid
        assert store.ticker_state.stocks == ()
        assert store.ticker_state.selected_stock is None

    def test_remove_unknown(self, store):
        assert store.remove_stock("ZZZ").error_kind is ErrorKind.NOT_FOUND

    def test_select(self, store):
        assert store.select_stock("msft").is_valid
        assert store.ticker_state.selected_stock == "MSFT"

    def test_select_unknown(self, store):
        result = store.select_stock("ZZZ")
        assert result.error_kind is ErrorKind.NOT_FOUND
        assert store.ticker_state.selected_stock == "BNOX"


class TestRateLimiting:
    """Test per-action quotas"""

    def test_rejects_then_recovers(self, store_factory, clock):
        store = store_factory({"rate_limits": {"actions": {"selectStock": 2}}})
        assert store.select_stock("GOOGL").is_valid
        assert store.select_stock("MSFT").is_valid

        result = store.select_stock("BNOX")
        assert result.error_kind is ErrorKind.RATE_LIMIT
        assert store.ticker_state.selected_stock == "MSFT"
        assert store.rate_limiter.tracker("selectStock").is_rate_limited
        assert store.rate_limiter.get_stats("selectStock").violations == 1

        clock.advance(60_001)
        assert store.select_stock("BNOX").is_valid

    def test_set_price_limited_per_symbol(self, store_factory):
        store = store_factory({"rate_limits": {"actions": {"setPrice": 1}}})
        assert store.set_price("GOOGL", 180).is_valid
        assert store.set_price("GOOGL", 181).error_kind is ErrorKind.RATE_LIMIT
        assert store.set_price("MSFT", 420).is_valid
        assert set(store.ticker_state.rate_limiters) == {"setPrice-GOOGL", "setPrice-MSFT"}

    def test_snapshot_trackers_are_copies(self, store):
        store.select_stock("GOOGL")
        snapshot = store.ticker_state
        store.select_stock("MSFT")
        assert snapshot.rate_limiters["selectStock"].update_count == 1
        assert store.ticker_state.rate_limiters["selectStock"].update_count == 2


class TestPriceTicks:
    """Test scheduler-driven price simulation"""

    def test_tick_moves_prices_within_band(self, store, timers):
        store.start()
        before = {s.symbol: s for s in store.ticker_state.stocks}

        _scheduler_timers(timers)[0].fire()

        for stock in store.ticker_state.stocks:
            old = before[stock.symbol]
            assert abs(stock.current_price - old.current_price) <= old.current_price * 0.02 + 1e-9
            assert stock.previous_price == old.current_price
            assert len(stock.price_history) == 2
            assert abs(stock.percentage_change) <= 2.0 + 1e-9

    def test_percentage_against_own_previous(self, store, timers):
        store.start()
        timer = _scheduler_timers(timers)[0]
        timer.fire()
        after_first = store.ticker_state.find("GOOGL")
        timer.fire()
        after_second = store.ticker_state.find("GOOGL")

        expected = (after_second.current_price - after_first.previous_price) / after_first.previous_price * 100
        assert after_second.percentage_change == pytest.approx(expected)

    def test_history_capped_under_ticks(self, store, timers):
        store.start()
        timer = _scheduler_timers(timers)[0]
        for _ in range(45):
            timer.fire()
        for stock in store.ticker_state.stocks:
            assert len(stock.price_history) == 30
        assert store.metrics.tick_count() == 45

    def test_no_ticks_before_start(self, store, timers):
        assert _scheduler_timers(timers) == []

    def test_paused_store_does_not_tick(self, store, timers):
        store.start()
        timer = _scheduler_timers(timers)[0]
        store.toggle_pause()
        before = store.ticker_state
        timer.fire()
        assert store.ticker_state is before


class TestPersistence:
    """Test save/load through the storage codec"""

    def test_round_trip(self, store):
        store.set_price("GOOGL", 200)
        store.update_speed(750)
        store.select_stock("MSFT")
        saved = store.ticker_state
        assert store.save_state_to_storage().is_valid

        store.remove_stock("GOOGL")
        store.toggle_pause()

        assert store.load_state_from_storage().is_valid
        restored = store.ticker_state
        assert restored.stocks == saved.stocks
        assert restored.update_interval_ms == 750
        assert restored.selected_stock == "MSFT"
        assert not restored.is_paused

    def test_load_keeps_live_trackers(self, store):
        store.save_state_to_storage()
        store.select_stock("GOOGL")
        store.retry_operation("refreshQuotes", lambda: None)
        store.load_state_from_storage()
        assert store.ticker_state.rate_limiters["selectStock"].update_count == 1
        assert store.ticker_state.retry_trackers["refreshQuotes"].attempts == 1

    def test_corrupted_blob_leaves_state_untouched(self, store):
        store.save_state_to_storage()
        codec = store.codec
        key = codec.storage_key("tickerState")
        blob = codec.backend.get(key)
        middle = len(blob) // 2
        codec.backend.set(key, blob[:middle] + ("A" if blob[middle] != "A" else "B") + blob[middle + 1:])

        store.set_price("GOOGL", 300)
        before = store.ticker_state
        result = store.load_state_from_storage()

        assert result.error_kind is ErrorKind.STORAGE
        assert store.ticker_state.stocks == before.stocks
        assert store.ticker_state.find("GOOGL").current_price == 300

    def test_nothing_saved(self, store):
        result = store.load_state_from_storage()
        assert result.error_kind is ErrorKind.STORAGE
        assert result.error_message == "No data found for key: tickerState"

    def test_invalid_persisted_content_rejected(self, store):
        store.codec.persist("tickerState", {
            "stocks": [{"symbol": "bad!", "name": "x"}],
            "update_interval_ms": 2000,
            "is_paused": False,
        })
        before = store.ticker_state
        result = store.load_state_from_storage()
        assert result.error_kind is ErrorKind.STORAGE
        assert store.ticker_state is before

    def test_repeated_saves_and_loads_succeed(self, store):
        for _ in range(5):
            assert store.save_state_to_storage().is_valid
            assert store.load_state_from_storage().is_valid
        assert store.ticker_state.retry_trackers == {}

    def test_persisted_null_rejected(self, store):
        store.codec.persist("tickerState", None)
        before = store.ticker_state
        result = store.load_state_from_storage()
        assert result.error_kind is ErrorKind.STORAGE
        assert "not an object" in result.error_message
        assert store.ticker_state is before

    def test_load_resyncs_scheduler(self, store, timers):
        store.toggle_pause()
        store.save_state_to_storage()
        store.toggle_pause()
        store.start()
        assert len(_scheduler_timers(timers)) == 1

        store.load_state_from_storage()
        assert store.is_paused
        assert _scheduler_timers(timers) == []

    def test_shared_backend_between_stores(self, store_factory, clock):
        codec = SecureStorageCodec(backend=InMemoryKeyValueStore(), clock=clock)
        first = store_factory(codec=codec)
        first.set_price("MSFT", 500)
        first.save_state_to_storage()

        second = store_factory(codec=codec)
        assert second.load_state_from_storage().is_valid
        assert second.ticker_state.find("MSFT").current_price == 500


class TestRetryOperation:
    """Test the per-operation attempt counter exposed by the store"""

    def test_returns_result_and_tracks_attempt(self, store):
        outcome = store.retry_operation("refreshQuotes", lambda: 42)
        assert outcome.ok
        assert outcome.result == 42
        assert store.ticker_state.retry_trackers["refreshQuotes"].attempts == 1

    def test_exhausted_until_cooldown(self, store, clock):
        for _ in range(3):
            assert store.retry_operation("refreshQuotes", lambda: "ok").ok
        outcome = store.retry_operation("refreshQuotes", lambda: "ok")
        assert outcome.exhausted
        assert outcome.error == "Maximum retry attempts (3) exceeded for refreshQuotes"

        clock.advance(2001)
        assert store.retry_operation("refreshQuotes", lambda: "ok").ok

    def test_custom_max_attempts(self, store):
        assert store.retry_operation("refreshQuotes", lambda: 1, max_attempts=1).ok
        assert store.retry_operation("refreshQuotes", lambda: 1, max_attempts=1).exhausted

    def test_failure_reported_not_raised(self, store):
        def boom():
            raise OSError("disk gone")

        outcome = store.retry_operation("refreshQuotes", boom)
        assert not outcome.ok
        assert not outcome.exhausted
        assert "disk gone" in outcome.error

    def test_independent_of_persistence(self, store):
        for _ in range(3):
            store.retry_operation("refreshQuotes", lambda: None)
        assert store.retry_operation("refreshQuotes", lambda: None).exhausted
        assert store.save_state_to_storage().is_valid


class TestSubscription:
    def test_listener_receives_snapshots(self, store):
        seen = []
        store.subscribe(seen.append)
        store.select_stock("GOOGL")
        assert len(seen) == 1
        assert isinstance(seen[0], TickerState)
        assert seen[0].selected_stock == "GOOGL"

    def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        store.select_stock("GOOGL")
        assert seen == []

    def test_failing_listener_isolated(self, store):
        seen = []

        def broken(_state):
            raise RuntimeError("render failed")

        store.subscribe(broken)
        store.subscribe(seen.append)
        assert store.select_stock("GOOGL").is_valid
        assert len(seen) == 1


class TestErrorPolicy:
    """Test internal error handling and severity escalation"""

    def test_operation_error_becomes_result(self, store, monkeypatch):
        def broken(*_args, **_kwargs):
            raise RuntimeError("arithmetic broke")

        monkeypatch.setattr(ticker_store_module, "apply_price", broken)
        result = store.set_price("GOOGL", 200)

        assert result.error_kind is ErrorKind.INTERNAL
        assert store.error == "Error in setPrice: arithmetic broke"
        assert not store.is_paused
        assert store.metrics.internal_error_count() == 1

    def test_dismiss_error(self, store, monkeypatch):
        monkeypatch.setattr(ticker_store_module, "apply_price", lambda *a, **k: 1 / 0)
        store.set_price("GOOGL", 200)
        store.dismiss_error()
        assert store.error is None

    def test_repeated_tick_errors_force_pause(self, store, timers, monkeypatch):
        def broken(*_args, **_kwargs):
            raise ValueError("rng failure")

        monkeypatch.setattr(ticker_store_module, "perturb_price", broken)
        store.start()
        timer = _scheduler_timers(timers)[0]

        timer.fire()
        assert not store.is_paused
        assert store.error == "Error in priceTick: rng failure"

        timer.fire()
        assert store.is_paused
        assert _scheduler_timers(timers) == []
        assert store.metrics.last_pause_reason().startswith("Paused after internal error in priceTick")

    def test_errors_outside_window_not_escalated(self, store, clock, monkeypatch):
        monkeypatch.setattr(ticker_store_module, "apply_price", lambda *a, **k: 1 / 0)
        store.set_price("GOOGL", 200)
        clock.advance(301_000)
        store.set_price("MSFT", 200)
        assert not store.is_paused

    def test_memory_error_pauses_immediately(self, store, monkeypatch):
        def exhausted(*_args, **_kwargs):
            raise MemoryError("out of memory")

        monkeypatch.setattr(ticker_store_module, "apply_price", exhausted)
        result = store.set_price("GOOGL", 200)
        assert result.error_kind is ErrorKind.INTERNAL
        assert store.is_paused

    def test_history_lookup_never_raises(self, store):
        assert store.get_stock_price_history("ZZZ") == []
        assert store.get_stock_price_history("") == []
        history = store.get_stock_price_history("googl")
        history.clear()
        assert len(store.get_stock_price_history("GOOGL")) == 1


class TestMemoryMonitorIntegration:
    def test_over_budget_forces_pause(self, store_factory, sampler, timers):
        store = store_factory({"memory": {"max_usage_mb": 100}})
        store.start()
        sampler.used_mb = 150

        timers.active_at(10.0)[0].fire()

        assert store.is_paused
        assert store.error.startswith("Memory warning: Memory usage exceeds limit")
        assert store.ticker_state.memory_stats.used_mb == pytest.approx(150)
        assert _scheduler_timers(timers) == []
        store.shutdown()

    def test_within_budget_refreshes_stats(self, store, sampler, timers, clock):
        store.start()
        clock.advance(10_000)
        timers.active_at(10.0)[0].fire()
        assert store.ticker_state.memory_stats.last_checked == clock()
        assert not store.is_paused


class TestInputHelpers:
    def test_validate_input(self, store):
        assert store.validate_input("symbol", "GOOGL").is_valid
        assert not store.validate_input("price", -1).is_valid
        assert not store.validate_input("interval", 10).is_valid
        assert store.validate_input("colour", "red").error_message == "Unknown input kind: colour"

    def test_mask_sensitive_data(self, store):
        assert store.mask_sensitive_data("MSFT", "symbol") == "M**T"
        assert TickerStore.mask_sensitive_data(415.2, "price") == "$***.**"


class TestLifecycle:
    def test_context_manager(self, store_factory, timers):
        with store_factory() as store:
            assert store.scheduler.is_running
            assert store.memory_monitor.running
        assert store.scheduler.closed
        assert timers.active() == []

    def test_start_after_shutdown_rejected(self, store):
        store.shutdown()
        with pytest.raises(RuntimeError):
            store.start()

    def test_shutdown_idempotent(self, store):
        store.start()
        store.shutdown()
        store.shutdown()
        assert not store.scheduler.is_running

    def test_tick_after_shutdown_is_dropped(self, store, timers):
        store.start()
        store.shutdown()
        before = store.ticker_state
        # a timer thread that passed the scheduler check before shutdown
        store._apply_tick()
        assert store.ticker_state is before
