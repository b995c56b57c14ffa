"""
OpenTelemetry metrics for the outbox relay.

Instruments are created on the global OpenTelemetry meter provider; without
an SDK configured the API's no-op provider makes every call free. An
in-process tally is kept alongside so ``get_publisher_metrics()`` can
answer without a metrics backend.

Metrics Exposed:
    - outboxrelay.records.claimed (Counter): Rows claimed by publisher cycles
    - outboxrelay.records.published (Counter): Rows delivered to the channel
    - outboxrelay.records.failed (Counter): Failed publish attempts
    - outboxrelay.records.quarantined (Counter): Rows quarantined as poison pills
    - outboxrelay.cycle.duration (Histogram): Publisher cycle duration
    - outboxrelay.reconciliation.copied (Counter): Rows moved by reconciliation
    - outboxrelay.cutover.transitions (Counter): Applied cutover transitions
    - outboxrelay.cutover.precondition_failures (Counter): Refused transitions
    - outboxrelay.lag (Gauge): Unpublished rows, refreshed on each status read

All metrics carry the ``migration`` attribute.

Example:
    >>> metrics = RelayMetrics("outbox")
    >>> metrics.record_cycle(result)
    >>> metrics.throughput()
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation

from outboxrelay.models import CycleResult, PublisherMetrics

_meter: Any = None


def _get_meter() -> Any:
    """Get or create the module-level meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("outboxrelay", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the module-level meter.

    Useful for testing with a fresh MeterProvider.
    """
    global _meter
    _meter = None


@dataclass
class RelayMetrics:
    """
    Container for relay metric instruments.

    Attributes:
        migration_name: Value of the ``migration`` attribute on every metric
        throughput_window_seconds: Sliding window for throughput
        enable_metrics: Create OpenTelemetry instruments (the in-process
                        tally is always kept)
        clock: Monotonic clock, injectable for tests
    """

    migration_name: str
    throughput_window_seconds: float = 60.0
    enable_metrics: bool = True
    clock: Callable[[], float] = time.monotonic

    _claimed_counter: Any = field(default=None, init=False, repr=False)
    _published_counter: Any = field(default=None, init=False, repr=False)
    _failed_counter: Any = field(default=None, init=False, repr=False)
    _quarantined_counter: Any = field(default=None, init=False, repr=False)
    _cycle_histogram: Any = field(default=None, init=False, repr=False)
    _copied_counter: Any = field(default=None, init=False, repr=False)
    _transition_counter: Any = field(default=None, init=False, repr=False)
    _precondition_counter: Any = field(default=None, init=False, repr=False)

    _published_total: int = field(default=0, init=False, repr=False)
    _failed_total: int = field(default=0, init=False, repr=False)
    _quarantined_total: int = field(default=0, init=False, repr=False)
    _copied_total: int = field(default=0, init=False, repr=False)
    _cycles: int = field(default=0, init=False, repr=False)
    _precondition_failures: int = field(default=0, init=False, repr=False)
    _lag: int = field(default=0, init=False, repr=False)
    _window: deque[tuple[float, int]] = field(default_factory=deque, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics:
            self._setup_metrics()

    def _setup_metrics(self) -> None:
        meter = _get_meter()
        self._claimed_counter = meter.create_counter(
            name="outboxrelay.records.claimed",
            unit="records",
            description="Rows claimed by publisher cycles",
        )
        self._published_counter = meter.create_counter(
            name="outboxrelay.records.published",
            unit="records",
            description="Rows delivered to the channel",
        )
        self._failed_counter = meter.create_counter(
            name="outboxrelay.records.failed",
            unit="records",
            description="Failed publish attempts",
        )
        self._quarantined_counter = meter.create_counter(
            name="outboxrelay.records.quarantined",
            unit="records",
            description="Rows quarantined after exhausting retries",
        )
        self._cycle_histogram = meter.create_histogram(
            name="outboxrelay.cycle.duration",
            unit="ms",
            description="Publisher cycle duration in milliseconds",
        )
        self._copied_counter = meter.create_counter(
            name="outboxrelay.reconciliation.copied",
            unit="records",
            description="Rows moved back into the old table by reconciliation",
        )
        self._transition_counter = meter.create_counter(
            name="outboxrelay.cutover.transitions",
            unit="transitions",
            description="Cutover state transitions applied by this instance",
        )
        self._precondition_counter = meter.create_counter(
            name="outboxrelay.cutover.precondition_failures",
            unit="failures",
            description="Operator transitions refused by a failed precondition",
        )
        meter.create_observable_gauge(
            name="outboxrelay.lag",
            callbacks=[self._observe_lag],
            unit="records",
            description="Unpublished rows waiting for the relay",
        )

    def _attributes(self, **extra: str) -> dict[str, str]:
        return {"migration": self.migration_name, **extra}

    def _observe_lag(self, options: CallbackOptions) -> Iterator[Observation]:
        yield Observation(value=self._lag, attributes=self._attributes())

    def _add(self, counter: Any, amount: int, **extra: str) -> None:
        if counter is not None and amount:
            counter.add(amount, self._attributes(**extra))

    def record_cycle(self, result: CycleResult) -> None:
        """Record the outcome of one publisher cycle."""
        source = result.source.value
        self._add(self._claimed_counter, result.claimed, source=source)
        self._add(self._published_counter, result.published, source=source)
        self._add(self._failed_counter, result.failed, source=source)
        self._add(self._quarantined_counter, result.quarantined, source=source)
        if self._cycle_histogram is not None:
            self._cycle_histogram.record(result.duration_ms, self._attributes(source=source))

        self._cycles += 1
        self._published_total += result.published
        self._failed_total += result.failed
        self._quarantined_total += result.quarantined
        now = self.clock()
        if result.published:
            self._window.append((now, result.published))
        self._expire(now)

    def record_copied(self, count: int) -> None:
        """Record rows moved by one reconciliation batch."""
        self._add(self._copied_counter, count)
        self._copied_total += count

    def record_transition(self, action: str) -> None:
        self._add(self._transition_counter, 1, action=action)

    def record_precondition_failure(self, action: str) -> None:
        self._add(self._precondition_counter, 1, action=action)
        self._precondition_failures += 1

    def record_lag(self, lag: int) -> None:
        self._lag = max(0, lag)

    def throughput(self) -> float:
        """Rows published per second over the sliding window."""
        self._expire(self.clock())
        published = sum(count for _, count in self._window)
        return published / self.throughput_window_seconds

    def _expire(self, now: float) -> None:
        cutoff = now - self.throughput_window_seconds
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    @property
    def copied_total(self) -> int:
        return self._copied_total

    def snapshot(self, *, lag: int, quarantined_count: int) -> PublisherMetrics:
        """
        Build the operator-facing metrics.

        Args:
            lag: Unpublished rows, probed from storage by the caller
            quarantined_count: Quarantined rows, counted in storage by the caller
        """
        self.record_lag(lag)
        return PublisherMetrics(
            lag=lag,
            throughput=self.throughput(),
            quarantined_count=quarantined_count,
            published_total=self._published_total,
            failed_total=self._failed_total,
            cycles=self._cycles,
            precondition_failures=self._precondition_failures,
        )


__all__ = [
    "RelayMetrics",
    "reset_meter",
]
