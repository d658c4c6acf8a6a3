"""
ObservaStock - Instrument Registry Tests
"""

import math
import threading

import pytest
from opentelemetry.metrics import Observation

from observastock.errors import InstrumentConfigurationError, InvalidArgumentError
from observastock.telemetry.metrics import TRADING_METER, TradingMetrics
from observastock.telemetry.registry import InstrumentKind, record_safely


class TestGetOrCreate:
    """Tests for instrument identity."""

    def test_same_key_same_kind_returns_same_handle(self, pipeline):
        registry = pipeline.registry

        first = registry.get_or_create("TradingMetrics", "orders", InstrumentKind.COUNTER)
        second = registry.get_or_create("TradingMetrics", "orders", InstrumentKind.COUNTER)

        assert first is second
        assert len(registry.instruments()) == 1

    def test_same_key_different_kind_fails(self, pipeline, metric_points):
        registry = pipeline.registry
        counter = registry.counter("TradingMetrics", "orders", unit="orders")
        counter.record(2)

        with pytest.raises(InstrumentConfigurationError) as exc_info:
            registry.histogram("TradingMetrics", "orders")

        assert exc_info.value.code == "instrument_kind_mismatch"
        assert exc_info.value.error.details["existing_kind"] == "counter"
        assert exc_info.value.error.details["requested_kind"] == "histogram"

        # The existing series is untouched
        assert registry.counter("TradingMetrics", "orders") is counter
        counter.record(3)
        points = metric_points("orders")
        assert len(points) == 1
        assert points[0].value == 5

    def test_same_name_in_different_meters_is_distinct(self, pipeline):
        registry = pipeline.registry

        a = registry.counter("MeterA", "requests")
        b = registry.histogram("MeterB", "requests")

        assert a is not b
        assert a.kind is InstrumentKind.COUNTER
        assert b.kind is InstrumentKind.HISTOGRAM

    def test_kind_accepts_string_value(self, pipeline):
        handle = pipeline.registry.get_or_create("m", "level", "gauge", unit="items")
        assert handle.kind is InstrumentKind.GAUGE
        assert handle.unit == "items"

    def test_names_differing_only_in_case_are_one_instrument(self, pipeline, metric_points):
        registry = pipeline.registry

        first = registry.counter("TradingMetrics", "Requests")
        second = registry.counter("TradingMetrics", "requests")
        first.record(1)
        second.record(2)

        assert first is second
        points = metric_points("requests")
        assert len(points) == 1
        assert points[0].value == 3

    def test_case_variant_with_different_kind_fails(self, pipeline):
        registry = pipeline.registry
        registry.counter("TradingMetrics", "Requests")

        with pytest.raises(InstrumentConfigurationError) as exc_info:
            registry.histogram("TradingMetrics", "requests")

        assert exc_info.value.code == "instrument_kind_mismatch"
        assert len(registry.instruments()) == 1

    def test_unknown_kind_is_configuration_error(self, pipeline):
        with pytest.raises(InstrumentConfigurationError) as exc_info:
            pipeline.registry.get_or_create("TradingMetrics", "latency", "summary")

        assert exc_info.value.code == "instrument_kind_unknown"
        assert exc_info.value.error.details["requested_kind"] == "summary"
        assert pipeline.registry.instruments() == []

    def test_observable_kind_requires_callbacks(self, pipeline):
        with pytest.raises(InvalidArgumentError):
            pipeline.registry.get_or_create("m", "queue_depth", InstrumentKind.OBSERVABLE_GAUGE)

    def test_observe_reports_callback_values(self, pipeline, metric_points):
        handle = pipeline.registry.observe(
            "m",
            "queue_depth",
            lambda options: [Observation(7, {"queue": "orders"})],
        )

        assert handle.kind is InstrumentKind.OBSERVABLE_GAUGE
        points = metric_points("queue_depth")
        assert len(points) == 1
        assert points[0].value == 7
        assert dict(points[0].attributes) == {"queue": "orders"}

        with pytest.raises(InvalidArgumentError):
            handle.record(1)

    def test_register_meters(self, pipeline):
        names = pipeline.registry.register_meters(["TradingMetrics", "Runtime"])
        assert "TradingMetrics" in names
        assert "Runtime" in names


class TestRecording:
    """Tests for sample recording."""

    def test_counter_total_is_sum_of_increments(self, pipeline, metric_points):
        counter = pipeline.registry.counter("TradingMetrics", "shares_total")
        increments = [1, 5, 0, 12, 3]

        for value in increments:
            pipeline.registry.record(counter, value, {"symbol": "MSFT"})

        points = metric_points("shares_total")
        assert len(points) == 1
        assert points[0].value == sum(increments)

    def test_counter_never_decreases(self, pipeline, metric_points):
        counter = pipeline.registry.counter("TradingMetrics", "monotonic_total")
        counter.record(4)
        first = metric_points("monotonic_total")[0].value

        with pytest.raises(InvalidArgumentError):
            counter.record(-1)

        counter.record(1)
        second = metric_points("monotonic_total")[0].value
        assert second >= first
        assert second == 5

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_values_rejected(self, pipeline, value):
        histogram = pipeline.registry.histogram("m", "latency")

        with pytest.raises(InvalidArgumentError):
            histogram.record(value)

    @pytest.mark.parametrize("value", ["12", None, True])
    def test_non_numeric_values_rejected(self, pipeline, value):
        gauge = pipeline.registry.gauge("m", "level")

        with pytest.raises(InvalidArgumentError):
            gauge.record(value)

    def test_histogram_accepts_negative_values(self, pipeline, metric_points):
        histogram = pipeline.registry.histogram("m", "pnl")
        histogram.record(-12.5)
        histogram.record(2.5)

        points = metric_points("pnl")
        assert points[0].count == 2
        assert points[0].sum == pytest.approx(-10.0)

    def test_gauge_last_write_wins_per_tag_set(self, pipeline, metric_points):
        gauge = pipeline.registry.gauge("m", "queue_depth")
        gauge.record(10, {"queue": "a"})
        gauge.record(3, {"queue": "a"})
        gauge.record(7, {"queue": "b"})

        values = {dict(p.attributes)["queue"]: p.value for p in metric_points("queue_depth")}
        assert values == {"a": 3, "b": 7}

    def test_concurrent_recording_without_caller_locks(self, pipeline, metric_points):
        registry = pipeline.registry
        threads_count = 8
        per_thread = 250

        def worker():
            # Creation races on the same key must still yield one series
            handle = registry.counter("TradingMetrics", "concurrent_total")
            for _ in range(per_thread):
                handle.record(1, {"symbol": "AAPL"})

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        points = metric_points("concurrent_total")
        assert len(points) == 1
        assert points[0].value == threads_count * per_thread

    def test_record_safely_swallows_errors(self, pipeline, caplog):
        counter = pipeline.registry.counter("m", "safe_total")

        assert record_safely(counter, -1) is False
        assert record_safely(counter, 1) is True
        assert any("Dropped metric sample" in r.getMessage() for r in caplog.records)


class TestTradingMetrics:
    """Tests for the trading business instruments."""

    def test_record_trade(self, pipeline, metric_points):
        metrics = TradingMetrics(pipeline.registry)

        metrics.record_trade("MSFT", "Buy", 1000.0)
        metrics.record_trade("MSFT", "Buy", 500.0)
        metrics.record_trade("AAPL", "Sell", 250.0)

        assert metrics.trades_placed.meter_name == TRADING_METER
        assert metrics.trades_placed.unit == "trades"
        assert metrics.trade_value.unit == "USD"

        counts = {
            (p.attributes["symbol"], p.attributes["action"]): p.value
            for p in metric_points("total_trades_placed")
        }
        assert counts == {("MSFT", "Buy"): 2, ("AAPL", "Sell"): 1}

        values = {
            (p.attributes["symbol"], p.attributes["action"]): p.sum
            for p in metric_points("trade_value_usd")
        }
        assert values[("MSFT", "Buy")] == pytest.approx(1500.0)

    def test_invalid_trade_value_does_not_raise(self, pipeline, metric_points):
        metrics = TradingMetrics(pipeline.registry)

        assert metrics.record_trade("MSFT", "Buy", math.nan) is False
        # The trade is still counted
        assert metric_points("total_trades_placed")[0].value == 1
