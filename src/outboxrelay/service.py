"""
RelayService - operator-facing facade over one relay deployment.

Wires the locator, controller, publisher and worker for one migration and
exposes what operators and deployment tooling need:

- ``get_cutover_state()``: the persisted control record
- ``trigger_transition(action)``: operator transitions
- ``get_publisher_metrics()``: lag, throughput, quarantined rows
- ``get_status()``: all of the above plus the last refused transition

Example:
    >>> service = RelayService(gateway, repository, sink, RelayConfig(pattern=MigrationPattern.HOP))
    >>> async with service:
    ...     status = await service.get_status()
    ...     await service.trigger_transition("complete_cutover")
"""

from __future__ import annotations

import logging
from typing import Any

from outboxrelay.config import RelayConfig
from outboxrelay.controller import CutoverController
from outboxrelay.locator import TableLocator
from outboxrelay.metrics import RelayMetrics
from outboxrelay.models import (
    PublisherMetrics,
    RelayStatus,
    TableCutoverState,
    TableRef,
    TransitionAction,
    TransitionResult,
    UnificationPhase,
)
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.publisher import BatchPublisher, PublisherWorker
from outboxrelay.reconciliation import ReconciliationJob
from outboxrelay.retry import retry_async
from outboxrelay.repositories.cutover_state import CutoverStateRepository
from outboxrelay.sinks.interface import ChannelSink
from outboxrelay.storage.interface import StorageGateway
from outboxrelay.writer import OutboxWriter

logger = logging.getLogger(__name__)


class RelayService:
    """
    One relay instance for one migration.

    Any number of instances, running old or new code, may share the same
    database; they coordinate only through the control record.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        repository: CutoverStateRepository,
        sink: ChannelSink,
        config: RelayConfig,
        *,
        enable_metrics: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._gateway = gateway
        self._config = config
        self._metrics = RelayMetrics(
            config.name,
            throughput_window_seconds=config.throughput_window_seconds,
            enable_metrics=enable_metrics,
        )
        self._locator = TableLocator(repository, config.name, tracer=self._tracer)
        self._controller = CutoverController(
            gateway,
            repository,
            config,
            locator=self._locator,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        self._publisher = BatchPublisher(
            gateway,
            self._locator,
            sink,
            config,
            controller=self._controller,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        self._worker = PublisherWorker(self._publisher)

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def locator(self) -> TableLocator:
        return self._locator

    @property
    def controller(self) -> CutoverController:
        return self._controller

    @property
    def publisher(self) -> BatchPublisher:
        return self._publisher

    @property
    def worker(self) -> PublisherWorker:
        return self._worker

    @property
    def metrics(self) -> RelayMetrics:
        return self._metrics

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Validate the deployment and start publishing.

        Raises:
            ConfigurationError: If the deployment is unsafe; nothing is started
            RetryError: If storage stayed unavailable through every startup retry
        """
        await retry_async(
            self._controller.initialize,
            self._config.retry_config(self._config.startup_retries),
            operation_name=f"initialize relay {self._config.name}",
        )
        self._worker.start()
        logger.info("Relay %s started", self._config.name)

    async def stop(self, timeout: float = 30.0) -> None:
        await self._worker.stop(timeout)
        logger.info("Relay %s stopped", self._config.name)

    async def __aenter__(self) -> RelayService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # =========================================================================
    # Factories
    # =========================================================================

    def writer(self, target: TableRef = TableRef.NEW) -> OutboxWriter:
        """Writer for the table this binary version inserts into."""
        return OutboxWriter(
            self._gateway,
            self._config,
            target=target,
            locator=self._locator,
            controller=self._controller,
            tracer=self._tracer,
        )

    def reconciliation_job(self, batch_size: int | None = None) -> ReconciliationJob:
        return ReconciliationJob(
            self._gateway,
            self._controller,
            metrics=self._metrics,
            batch_size=batch_size,
            tracer=self._tracer,
        )

    # =========================================================================
    # Operator interface
    # =========================================================================

    async def get_cutover_state(self) -> TableCutoverState:
        return await self._locator.state()

    async def trigger_transition(self, action: TransitionAction | str) -> TransitionResult:
        """
        Apply an operator transition.

        Args:
            action: TransitionAction or its value, e.g. ``"start_unification"``

        Raises:
            ValueError: If ``action`` names no transition
        """
        return await self._controller.trigger_transition(TransitionAction(action))

    async def get_publisher_metrics(self) -> PublisherMetrics:
        """Probe storage for lag and quarantined rows and combine with local counters."""
        state = await self._locator.state()
        gateway = self._gateway
        config = self._config

        lag = await gateway.probe_unpublished_count(config.new_table)
        quarantined = await gateway.count_quarantined(config.new_table)
        if state.unification_phase == UnificationPhase.NOT_STARTED:
            # The old table is not yet a partition of the new one
            lag += await gateway.probe_unpublished_count(config.old_table)
            if await self._mirrors_published_rows():
                # Quarantined rows are published, so each one already has a copy in old
                quarantined = 0
            quarantined += await gateway.count_quarantined(config.old_table)
        elif state.unification_phase == UnificationPhase.IN_PROGRESS and await gateway.table_exists(
            config.published_partition
        ):
            quarantined += await gateway.count_quarantined(config.published_partition)

        return self._metrics.snapshot(lag=lag, quarantined_count=quarantined)

    async def _mirrors_published_rows(self) -> bool:
        return self._config.pattern.uses_replication_trigger and (
            await self._gateway.replication_trigger_exists(
                self._config.published_partition, self._config.old_table
            )
        )

    async def get_status(self) -> RelayStatus:
        return RelayStatus(
            state=await self._locator.state(),
            metrics=await self.get_publisher_metrics(),
            last_precondition_failure=self._controller.last_precondition_failure,
            worker_running=self._worker.is_running,
        )


__all__ = ["RelayService"]
