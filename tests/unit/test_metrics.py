"""
Unit tests for RelayMetrics.

Tests for:
- The in-process tally behind get_publisher_metrics()
- Sliding-window throughput
- OpenTelemetry instruments (via an InMemoryMetricReader)
"""

from __future__ import annotations

from typing import Any

import pytest

from outboxrelay.metrics import RelayMetrics
from outboxrelay.models import CycleResult, TableRef

# ============================================================================
# Helpers
# ============================================================================


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _get_metric_points(metrics_data: Any, metric_name: str) -> list[Any]:
    """Get all data points of a metric from InMemoryMetricReader.get_metrics_data()."""
    if not metrics_data or not metrics_data.resource_metrics:
        return []

    points = []
    for resource_metric in metrics_data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == metric_name:
                    points.extend(metric.data.data_points)
    return points


def _get_metric_value(metrics_data: Any, metric_name: str) -> int:
    return sum(point.value for point in _get_metric_points(metrics_data, metric_name))


# ============================================================================
# In-process tally
# ============================================================================


class TestRelayMetricsTally:
    """Tests that do not need an OpenTelemetry SDK."""

    def test_snapshot_accumulates_cycles(self):
        """Test that cycle outcomes add up across cycles."""
        metrics = RelayMetrics("outbox", enable_metrics=False)
        metrics.record_cycle(CycleResult(TableRef.OLD, claimed=5, published=4, failed=1))
        metrics.record_cycle(CycleResult(TableRef.NEW, claimed=2, published=1, quarantined=1))

        snapshot = metrics.snapshot(lag=7, quarantined_count=1)

        assert snapshot.cycles == 2
        assert snapshot.published_total == 5
        assert snapshot.failed_total == 1
        assert snapshot.lag == 7
        assert snapshot.quarantined_count == 1

    def test_throughput_uses_sliding_window(self):
        """Test that publications older than the window stop counting."""
        clock = FakeClock()
        metrics = RelayMetrics(
            "outbox",
            throughput_window_seconds=10.0,
            enable_metrics=False,
            clock=clock,
        )
        metrics.record_cycle(CycleResult(TableRef.OLD, claimed=50, published=50))
        clock.now += 5
        metrics.record_cycle(CycleResult(TableRef.OLD, claimed=30, published=30))

        assert metrics.throughput() == pytest.approx(8.0)

        clock.now += 6
        assert metrics.throughput() == pytest.approx(3.0)

        clock.now += 10
        assert metrics.throughput() == 0.0

    def test_window_trimmed_while_recording(self):
        """Test that an unpolled relay keeps only the window's publications."""
        clock = FakeClock()
        metrics = RelayMetrics(
            "outbox",
            throughput_window_seconds=10.0,
            enable_metrics=False,
            clock=clock,
        )

        for _ in range(100):
            metrics.record_cycle(CycleResult(TableRef.OLD, claimed=1, published=1))
            clock.now += 1

        assert len(metrics._window) <= 11

    def test_precondition_failures_counted(self):
        metrics = RelayMetrics("outbox", enable_metrics=False)

        metrics.record_precondition_failure("complete_cutover")
        metrics.record_precondition_failure("advance")

        assert metrics.snapshot(lag=0, quarantined_count=0).precondition_failures == 2

    def test_negative_lag_clamped(self):
        metrics = RelayMetrics("outbox", enable_metrics=False)

        metrics.record_lag(-3)

        assert metrics._lag == 0

    def test_copied_total(self):
        metrics = RelayMetrics("outbox", enable_metrics=False)

        metrics.record_copied(100)
        metrics.record_copied(20)

        assert metrics.copied_total == 120


# ============================================================================
# OpenTelemetry instruments
# ============================================================================


class TestRelayMetricsInstruments:
    """Tests that read the exported OpenTelemetry metrics."""

    def test_cycle_counters(self, metric_reader):
        """Test that cycle outcomes are exported with migration and source attributes."""
        metrics = RelayMetrics("orders")

        metrics.record_cycle(
            CycleResult(TableRef.OLD, claimed=3, published=2, failed=1, duration_ms=12.5)
        )

        data = metric_reader.get_metrics_data()
        assert _get_metric_value(data, "outboxrelay.records.claimed") == 3
        assert _get_metric_value(data, "outboxrelay.records.published") == 2
        assert _get_metric_value(data, "outboxrelay.records.failed") == 1
        point = _get_metric_points(data, "outboxrelay.records.published")[0]
        assert dict(point.attributes) == {"migration": "orders", "source": "old"}
        histogram = _get_metric_points(data, "outboxrelay.cycle.duration")[0]
        assert histogram.count == 1
        assert histogram.sum == pytest.approx(12.5)

    def test_zero_counts_not_exported(self, metric_reader):
        """Test that empty cycles add nothing to the record counters."""
        metrics = RelayMetrics("orders")

        metrics.record_cycle(CycleResult(TableRef.OLD))

        data = metric_reader.get_metrics_data()
        assert _get_metric_points(data, "outboxrelay.records.claimed") == []

    def test_transition_and_precondition_counters(self, metric_reader):
        """Test that transitions are counted per action."""
        metrics = RelayMetrics("orders")

        metrics.record_transition("start_unification")
        metrics.record_precondition_failure("complete_cutover")

        data = metric_reader.get_metrics_data()
        transition = _get_metric_points(data, "outboxrelay.cutover.transitions")[0]
        assert transition.value == 1
        assert transition.attributes["action"] == "start_unification"
        assert _get_metric_value(data, "outboxrelay.cutover.precondition_failures") == 1

    def test_lag_gauge(self, metric_reader):
        """Test that the lag gauge reports the last probed lag."""
        metrics = RelayMetrics("orders")

        metrics.snapshot(lag=42, quarantined_count=0)

        data = metric_reader.get_metrics_data()
        assert _get_metric_value(data, "outboxrelay.lag") == 42

    def test_reconciliation_counter(self, metric_reader):
        metrics = RelayMetrics("orders")

        metrics.record_copied(250)

        data = metric_reader.get_metrics_data()
        assert _get_metric_value(data, "outboxrelay.reconciliation.copied") == 250

    def test_disabled_metrics_create_no_instruments(self, metric_reader):
        """Test that enable_metrics=False exports nothing."""
        metrics = RelayMetrics("orders", enable_metrics=False)

        metrics.record_cycle(CycleResult(TableRef.OLD, claimed=1, published=1))

        data = metric_reader.get_metrics_data()
        assert _get_metric_points(data, "outboxrelay.records.published") == []
