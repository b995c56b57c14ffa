"""
Batch Publisher - the relay's polling loop.

Each cycle claims a bounded batch of unpublished rows ordered by id from
the table the locator points at, hands every row to the channel sink and
commits. Claim and mark are one statement, so concurrent publishers never
claim the same row; rows whose delivery fails are reverted in the same
transaction and retried by a later cycle.

Poison pills:
    Every revert increments the row's ``retry_count``. A claimed row that
    already failed ``max_retries`` times is quarantined instead of being
    handed to the sink again, so one bad row never starves its batch.

Ordering:
    Within one table rows are published in id order. Across the cutover
    there is no global order: rows written late into the old table are
    swept up while the new table is being read, and may publish after
    newer rows from the new table.

Paused cutovers:
    In PAUSED the new table is not read. Cycles keep claiming from the old
    table, so rows written there late still drain and COMPLETE_CUTOVER can
    find it empty.

Usage:
    >>> publisher = BatchPublisher(gateway, locator, sink, config, controller=controller)
    >>> result = await publisher.run_cycle()
    >>>
    >>> worker = PublisherWorker(publisher)
    >>> worker.start()
    >>> await worker.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING

from outboxrelay.config import RelayConfig
from outboxrelay.exceptions import ErrorRecoverability, RelayError
from outboxrelay.locator import TableLocator
from outboxrelay.metrics import RelayMetrics
from outboxrelay.models import (
    CutoverPhase,
    CycleResult,
    OutboxRecord,
    PublishResult,
    TableCutoverState,
    TableRef,
)
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_CLAIMED,
    ATTR_FAILED,
    ATTR_MIGRATION_NAME,
    ATTR_PUBLISHED,
    ATTR_QUARANTINED,
    ATTR_SOURCE,
)
from outboxrelay.retry import calculate_backoff, is_retryable_exception
from outboxrelay.sinks.interface import ChannelSink
from outboxrelay.storage.interface import StorageGateway

if TYPE_CHECKING:
    from outboxrelay.controller import CutoverController

logger = logging.getLogger(__name__)


class BatchPublisher:
    """
    Runs publisher cycles against the current source table.

    The cutover state is read fresh at the start of every cycle; nothing
    about the source table is cached between cycles.

    Example:
        >>> result = await publisher.run_cycle()
        >>> print(f"{result.published}/{result.claimed} published")
    """

    def __init__(
        self,
        gateway: StorageGateway,
        locator: TableLocator,
        sink: ChannelSink,
        config: RelayConfig,
        *,
        controller: CutoverController | None = None,
        metrics: RelayMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the publisher.

        Args:
            gateway: Storage gateway used for claims
            locator: Source of truth for the table to claim from
            sink: Downstream channel
            config: Relay configuration
            controller: Receives the exhaustion signal for the old table.
                        Without one the publisher never moves the cutover.
            metrics: Metrics container; created if omitted
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._gateway = gateway
        self._locator = locator
        self._sink = sink
        self._config = config
        self._controller = controller
        self._metrics = metrics or RelayMetrics(
            config.name,
            throughput_window_seconds=config.throughput_window_seconds,
        )

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def metrics(self) -> RelayMetrics:
        return self._metrics

    async def run_cycle(self) -> CycleResult:
        """
        Claim, publish and commit one batch.

        Returns:
            CycleResult with the claimed, published, failed and quarantined counts

        Raises:
            TimeoutError: If the cycle exceeded ``cycle_timeout``; its
                          transaction was rolled back
            StorageError: If the backend rejected the claim
        """
        started = time.perf_counter()
        state = await self._locator.state()
        source = state.current_source

        with self._tracer.span(
            "outboxrelay.publisher.run_cycle",
            {
                ATTR_MIGRATION_NAME: state.name,
                ATTR_SOURCE: source.value,
                ATTR_BATCH_SIZE: self._config.batch_size,
            },
        ) as span:
            try:
                claimed, published, failed, quarantined = await asyncio.wait_for(
                    self._publish_batch(state),
                    timeout=self._config.cycle_timeout,
                )
            except TimeoutError:
                logger.warning(
                    "Publisher cycle on %s exceeded %.1fs and was rolled back",
                    self._config.table_name(source),
                    self._config.cycle_timeout,
                )
                raise

            if span:
                span.set_attribute(ATTR_CLAIMED, claimed)
                span.set_attribute(ATTR_PUBLISHED, published)
                span.set_attribute(ATTR_FAILED, failed)
                span.set_attribute(ATTR_QUARANTINED, quarantined)

        if claimed == 0 and source is TableRef.OLD and self._controller is not None:
            await self._controller.on_source_exhausted(source)

        result = CycleResult(
            source=source,
            claimed=claimed,
            published=published,
            failed=failed,
            quarantined=quarantined,
            paused=not state.phase.publishes,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        self._metrics.record_cycle(result)
        if claimed:
            logger.debug(
                "Cycle on %s: claimed=%d published=%d failed=%d quarantined=%d",
                source.value,
                claimed,
                published,
                failed,
                quarantined,
            )
        return result

    async def _publish_batch(self, state: TableCutoverState) -> tuple[int, int, int, int]:
        batch_size = self._config.batch_size
        published = failed = quarantined = 0

        async with self._gateway.transaction() as tx:
            table = self._config.table_name(state.current_source)
            claims = [(table, record) for record in await tx.claim_unpublished(table, batch_size)]

            # Old binaries may still write to the old table after the hand-over
            if state.phase == CutoverPhase.DUAL_WRITE_NEW_READ and len(claims) < batch_size:
                old_table = self._config.old_table
                stragglers = await tx.claim_unpublished(old_table, batch_size - len(claims))
                if stragglers:
                    logger.info("Sweeping %d late rows from %s", len(stragglers), old_table)
                claims.extend((old_table, record) for record in stragglers)

            for table, record in claims:
                if record.retry_count >= self._config.max_retries:
                    await self._quarantine(tx, table, record)
                    quarantined += 1
                    continue

                result = await self._deliver(record)
                if result.ok:
                    published += 1
                else:
                    await tx.revert_publish(table, [record.id], error=result.reason)
                    failed += 1

        return len(claims), published, failed, quarantined

    async def _deliver(self, record: OutboxRecord) -> PublishResult:
        timeout = self._config.effective_publish_timeout
        try:
            return await asyncio.wait_for(self._sink.publish(record.payload), timeout=timeout)
        except TimeoutError:
            logger.warning("Sink did not answer for row %d within %.1fs", record.id, timeout)
            return PublishResult.failure(f"timeout after {timeout}s")
        except Exception as e:
            logger.warning("Sink raised for row %d: %s", record.id, e)
            return PublishResult.failure(f"{type(e).__name__}: {e}")

    async def _quarantine(self, tx: StorageGateway, table: str, record: OutboxRecord) -> None:
        reason = (
            f"failed {record.retry_count} publish attempts; "
            f"last error: {record.last_error or 'unknown'}"
        )
        await tx.quarantine(table, record.id, reason)
        logger.error(
            "Quarantined row %d of %s: %s",
            record.id,
            table,
            reason,
            extra={"record_id": record.id, "table": table},
        )


class PublisherWorker:
    """
    Drives a BatchPublisher until stopped.

    Polls every ``poll_interval`` seconds while the outbox is idle and
    repolls immediately after a full batch. Transient failures back off
    exponentially; errors classified as fatal stop the worker.

    Example:
        >>> worker = PublisherWorker(publisher)
        >>> worker.start()
        >>> ...
        >>> await worker.stop()
    """

    def __init__(self, publisher: BatchPublisher) -> None:
        self._publisher = publisher
        self._config = publisher.config
        self._retry_config = self._config.retry_config()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._consecutive_errors = 0
        self.last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        """Run the loop in a background task."""
        if self.is_running:
            assert self._task is not None
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name=f"outboxrelay-{self._config.name}")
        return self._task

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the loop after the current cycle.

        A cycle still running after ``timeout`` seconds is cancelled, which
        rolls its transaction back.
        """
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except TimeoutError:
            logger.warning("Publisher worker did not stop in %.1fs; cancelling", timeout)
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        except RelayError as e:
            # The loop already logged it and recorded last_error
            logger.debug("Publisher worker had stopped on %s", type(e).__name__)
        finally:
            self._task = None

    async def run(self) -> None:
        """Run cycles until ``stop()`` is called."""
        logger.info("Publisher worker for %s started", self._config.name)
        while not self._stop_event.is_set():
            delay = await self._run_once()
            if delay > 0:
                await self._sleep(delay)
        logger.info("Publisher worker for %s stopped", self._config.name)

    async def _run_once(self) -> float:
        """Run one cycle and return the delay before the next."""
        try:
            result = await self._publisher.run_cycle()
        except RelayError as e:
            if e.recoverability == ErrorRecoverability.FATAL:
                logger.critical("Publisher worker stopping on fatal error: %s", e)
                self.last_error = str(e)
                raise
            return self._backoff(e)
        except Exception as e:
            return self._backoff(e)

        self._consecutive_errors = 0
        if result.claimed >= self._config.batch_size:
            return 0.0
        return self._config.poll_interval

    def _backoff(self, error: Exception) -> float:
        delay = calculate_backoff(self._consecutive_errors, self._retry_config)
        self._consecutive_errors += 1
        self.last_error = str(error)
        logger.log(
            logging.WARNING if is_retryable_exception(error) else logging.ERROR,
            "Publisher cycle failed (%d in a row), retrying in %.2fs: %s",
            self._consecutive_errors,
            delay,
            error,
            extra={"error_type": type(error).__name__},
        )
        return delay

    async def _sleep(self, delay: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)


__all__ = ["BatchPublisher", "PublisherWorker"]
