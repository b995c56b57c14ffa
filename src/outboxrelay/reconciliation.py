"""
ReconciliationJob - Moves published rows back into the unified old table.

Runs for COPRA and HOPER after START_UNIFICATION has attached the old table
as the default partition and detached the published partition. The
detached partition's rows are moved into the old table in bounded batches;
when none are left, the job triggers FINISH_UNIFICATION, which drops the
emptied table and marks unification complete.

Crash Safety:
    Each batch moves rows with one statement and counts what is left in
    the same transaction. A crash loses at most the in-flight batch;
    committed batches are never moved twice because they are no longer in
    the source table.

Usage:
    >>> job = ReconciliationJob(gateway, controller)
    >>> result = await job.copy_batch()
    >>> total = await job.run()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from outboxrelay.controller import CutoverController
from outboxrelay.exceptions import ReconciliationError, RelayError
from outboxrelay.metrics import RelayMetrics
from outboxrelay.models import CopyBatchResult, TransitionAction, UnificationPhase
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_COPIED,
    ATTR_MIGRATION_NAME,
    ATTR_REMAINING,
    ATTR_TABLE,
)
from outboxrelay.storage.interface import StorageGateway

logger = logging.getLogger(__name__)


class ReconciliationJob:
    """
    Background copy of the detached published partition into the old table.

    Supports pause, resume and cancel; progress is persisted by the data
    itself, so a cancelled or crashed job simply runs again.

    Attributes:
        _is_cancelled: Flag indicating cancellation requested.
        _is_paused: Flag indicating the job is paused.
        _pause_event: Event for pause/resume synchronization.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        controller: CutoverController,
        *,
        metrics: RelayMetrics | None = None,
        batch_size: int | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the job.

        Args:
            gateway: Storage gateway
            controller: Controller that owns the unification state
            metrics: Metrics container for the copied-rows counter
            batch_size: Rows per batch; defaults to ``reconciliation_batch_size``
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._gateway = gateway
        self._controller = controller
        self._config = controller.config
        self._metrics = metrics or RelayMetrics(
            self._config.name,
            throughput_window_seconds=self._config.throughput_window_seconds,
        )
        self._batch_size = batch_size or self._config.reconciliation_batch_size

        self._is_cancelled = False
        self._is_paused = False
        self._pause_event = asyncio.Event()
        self._pause_event.set()

    @property
    def source_table(self) -> str:
        return self._config.published_partition

    @property
    def target_table(self) -> str:
        return self._config.old_table

    async def copy_batch(self) -> CopyBatchResult:
        """
        Move one bounded batch and report what is left.

        Returns:
            CopyBatchResult(copied, remaining)
        """
        with self._tracer.span(
            "outboxrelay.reconciliation.copy_batch",
            {
                ATTR_MIGRATION_NAME: self._config.name,
                ATTR_TABLE: self.source_table,
                ATTR_BATCH_SIZE: self._batch_size,
            },
        ) as span:
            async with self._gateway.transaction() as tx:
                copied = await tx.move_rows(self.source_table, self.target_table, self._batch_size)
                remaining = await tx.count_rows(self.source_table)

            self._metrics.record_copied(copied)
            if span:
                span.set_attribute(ATTR_COPIED, copied)
                span.set_attribute(ATTR_REMAINING, remaining)

            logger.debug(
                "Moved %d rows from %s to %s, %d remaining",
                copied,
                self.source_table,
                self.target_table,
                remaining,
            )
            return CopyBatchResult(copied=copied, remaining=remaining)

    async def run(
        self,
        progress_callback: Callable[[CopyBatchResult], None] | None = None,
    ) -> int:
        """
        Copy batches until the source is empty, then finish unification.

        Returns:
            Rows moved by this run

        Raises:
            ReconciliationError: If a batch failed; ``copied`` counts the
                rows committed before the failure
        """
        state = await self._controller.locator.state()
        if not state.migration_pattern.requires_reconciliation:
            raise ReconciliationError(
                f"Pattern {state.migration_pattern.value} does not reconcile",
                0,
                migration_name=state.name,
            )
        if state.unification_phase == UnificationPhase.COMPLETE:
            logger.info("Unification of %s already complete", state.name)
            return 0
        if state.unification_phase != UnificationPhase.IN_PROGRESS:
            raise ReconciliationError(
                "Unification has not started; run start_unification first",
                0,
                migration_name=state.name,
            )

        self._is_cancelled = False
        copied_total = 0
        started = time.monotonic()
        logger.info(
            "Starting reconciliation of %s: %s -> %s in batches of %d",
            state.name,
            self.source_table,
            self.target_table,
            self._batch_size,
        )

        try:
            if await self._gateway.table_exists(self.source_table):
                while True:
                    await self._wait_if_paused()
                    if self._is_cancelled:
                        logger.info(
                            "Reconciliation of %s cancelled after %d rows",
                            state.name,
                            copied_total,
                        )
                        return copied_total

                    result = await self.copy_batch()
                    copied_total += result.copied
                    if progress_callback:
                        progress_callback(result)
                    if result.is_complete:
                        break

            await self._controller.trigger_transition(TransitionAction.FINISH_UNIFICATION)
        except RelayError as e:
            logger.error("Reconciliation of %s failed: %s", state.name, e)
            raise ReconciliationError(
                f"Reconciliation failed: {e}",
                copied_total,
                migration_name=state.name,
            ) from e

        logger.info(
            "Reconciliation of %s completed: %d rows in %.1fs",
            state.name,
            copied_total,
            time.monotonic() - started,
        )
        return copied_total

    def cancel(self) -> None:
        """Stop after the current batch; committed batches are kept."""
        self._is_cancelled = True
        self._pause_event.set()
        logger.info("Reconciliation cancellation requested")

    def pause(self) -> None:
        self._is_paused = True
        self._pause_event.clear()
        logger.info("Reconciliation paused")

    def resume(self) -> None:
        self._is_paused = False
        self._pause_event.set()
        logger.info("Reconciliation resumed")

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    async def _wait_if_paused(self) -> None:
        if self._is_paused:
            await self._pause_event.wait()


__all__ = ["ReconciliationJob"]
