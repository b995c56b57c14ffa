"""
CutoverController - The table cutover state machine.

One state machine serves all five migration patterns; the pattern selects
a fixed sub-path through it and never changes mid-flight.

State Transitions:
    DUAL_WRITE_OLD_READ --exhausted--> PAUSED               (COP, COPRA)
    DUAL_WRITE_OLD_READ --exhausted--> DUAL_WRITE_NEW_READ  (HOP, HOPER, HOPIA)
    PAUSED / DUAL_WRITE_NEW_READ --COMPLETE_CUTOVER--> SINGLE_TABLE
    DUAL_WRITE_OLD_READ --COMPLETE_CUTOVER--> SINGLE_TABLE (any pattern)
    SINGLE_TABLE --START_UNIFICATION--> unification IN_PROGRESS (COPRA, HOPER)
                                        unification COMPLETE    (HOPIA)
    IN_PROGRESS --FINISH_UNIFICATION--> COMPLETE

Completing the cutover straight from DUAL_WRITE_OLD_READ is an operator
shortcut: an old table that is already drained (and, for HOPIA,
replicated) can be cut over without waiting for a publisher to observe
exhaustion, so COP and COPRA skip PAUSED.

Exhaustion is signalled by the publisher from its hot loop and only ever
touches the control record. Everything that needs DDL is an operator
action with its own timeout, so a slow schema change never stalls
delivery.

Unification attaches the old table to the new one as its DEFAULT
partition. PostgreSQL refuses that while the published partition still
covers published rows, so the published partition is detached in the same
transaction. Its rows are then moved into the old table by the
reconciliation job (COPRA, HOPER), or are already there because the HOPIA
replication trigger mirrored them.

Usage:
    >>> controller = CutoverController(gateway, repository, config)
    >>> await controller.initialize()
    >>> await controller.trigger_transition(TransitionAction.COMPLETE_CUTOVER)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from outboxrelay.config import RelayConfig
from outboxrelay.exceptions import (
    ConfigurationError,
    DDLTimeoutError,
    IdentifierSpaceCollisionError,
    InvalidTransitionError,
    PreconditionFailedError,
)
from outboxrelay.locator import TableLocator
from outboxrelay.metrics import RelayMetrics
from outboxrelay.models import (
    AdvanceResult,
    CutoverPhase,
    PartitionMode,
    TableCutoverState,
    TableRef,
    TransitionAction,
    TransitionResult,
    UnificationPhase,
)
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_ACTION,
    ATTR_MIGRATION_NAME,
    ATTR_PATTERN,
    ATTR_PHASE,
)
from outboxrelay.repositories.cutover_state import CutoverStateRepository
from outboxrelay.storage.interface import PUBLISHED_ONLY_EXPRESSION, StorageGateway

logger = logging.getLogger(__name__)

_Handler = Callable[[TableCutoverState], Awaitable[TransitionResult]]


class CutoverController:
    """
    Drives the cutover state machine for one migration.

    Every state change is a conditional update on the control record, so
    any number of instances may call ``on_source_exhausted`` concurrently.
    Losing a race is reported as ``changed=False``, never as an error.

    Attributes:
        last_precondition_failure: Message of the most recent refused
            operator transition on this instance, surfaced in the status
    """

    def __init__(
        self,
        gateway: StorageGateway,
        repository: CutoverStateRepository,
        config: RelayConfig,
        *,
        locator: TableLocator | None = None,
        metrics: RelayMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the controller.

        Args:
            gateway: Storage gateway for probes and DDL
            repository: Cutover state persistence
            config: Relay configuration (pattern, table names, timeouts)
            locator: Table locator; created from the repository if omitted
            metrics: Metrics container; created if omitted
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._gateway = gateway
        self._repository = repository
        self._config = config
        self._locator = locator or TableLocator(
            repository, config.name, tracer=self._tracer
        )
        self._metrics = metrics or RelayMetrics(
            config.name,
            throughput_window_seconds=config.throughput_window_seconds,
        )
        self._identifier_space_validated = False
        self.last_precondition_failure: str | None = None

    @property
    def locator(self) -> TableLocator:
        return self._locator

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def identifier_space_validated(self) -> bool:
        return self._identifier_space_validated

    @property
    def _old_table(self) -> str:
        return self._config.old_table

    @property
    def _new_table(self) -> str:
        return self._config.new_table

    # =========================================================================
    # Startup
    # =========================================================================

    async def initialize(self) -> TableCutoverState:
        """
        Create the control record if absent and validate the deployment.

        Raises:
            ConfigurationError: If the stored pattern differs from the configured one
            IdentifierSpaceCollisionError: If new identifiers could collide
                with old ones for a unifying pattern
        """
        pattern = self._config.pattern
        with self._tracer.span(
            "outboxrelay.controller.initialize",
            {ATTR_MIGRATION_NAME: self._config.name, ATTR_PATTERN: pattern.value},
        ):
            state = await self._repository.create_state(self._config.name, pattern)

            if state.migration_pattern != pattern:
                raise ConfigurationError(
                    f"Migration was started with pattern {state.migration_pattern.value}; "
                    f"the pattern cannot change to {pattern.value} mid-flight",
                    migration_name=self._config.name,
                )

            if pattern.unifies_storage and state.unification_phase == UnificationPhase.NOT_STARTED:
                await self.validate_identifier_space()

            if (
                pattern.uses_replication_trigger
                and state.phase == CutoverPhase.DUAL_WRITE_OLD_READ
                and not await self._replication_ready()
            ):
                logger.warning(
                    "Replication trigger for %s is not installed; "
                    "run %s before the old table is exhausted",
                    self._config.name,
                    TransitionAction.PREPARE_REPLICATION.value,
                )

            logger.info(
                "Cutover %s initialized: pattern=%s phase=%s source=%s unification=%s",
                state.name,
                pattern.value,
                state.phase.value,
                state.current_source.value,
                state.unification_phase.value,
            )
            return state

    async def validate_identifier_space(self) -> None:
        """
        Check that new table identifiers lie strictly above the old table's.

        Raises:
            IdentifierSpaceCollisionError: If the domains could overlap
        """
        old_max = await self._old_identifier_ceiling()
        if old_max is not None:
            new_floor = await self._gateway.identifier_floor(self._new_table)
            new_min = await self._gateway.min_identifier(self._new_table)
            lowest = new_floor if new_min is None else min(new_min, new_floor)
            if lowest <= old_max:
                logger.critical(
                    "Identifier space collision for %s: old max id %d, new ids start at %d",
                    self._config.name,
                    old_max,
                    lowest,
                )
                raise IdentifierSpaceCollisionError(
                    old_max, lowest, migration_name=self._config.name
                )
        self._identifier_space_validated = True

    async def _old_identifier_ceiling(self) -> int | None:
        """Highest identifier the old table assigned itself."""
        if self._config.pattern.uses_replication_trigger:
            # mirrored rows keep their new-table ids; only the sequence counts
            last = await self._gateway.identifier_floor(self._old_table) - 1
            return last if last > 0 else None
        return await self._gateway.max_identifier(self._old_table)

    # =========================================================================
    # Automatic transition
    # =========================================================================

    async def on_source_exhausted(self, source: TableRef) -> TransitionResult:
        """
        React to a publisher claiming zero rows from ``source``.

        Only an exhausted OLD table in DUAL_WRITE_OLD_READ moves the state
        machine, and only after a confirmation probe finds no unpublished
        rows left in OLD.
        """
        state = await self._locator.state()
        pattern = state.migration_pattern
        target = (
            CutoverPhase.PAUSED
            if pattern.pauses_publication
            else CutoverPhase.DUAL_WRITE_NEW_READ
        )
        unchanged = TransitionResult(previous=state, current=state, changed=False)
        if (
            source is not TableRef.OLD
            or state.current_source is not TableRef.OLD
            or not state.phase.can_transition_to(target, pattern)
        ):
            return unchanged

        pending = await self._gateway.probe_unpublished_count(self._old_table)
        if pending:
            logger.debug(
                "Exhaustion signal for %s ignored: probe found %d unpublished rows",
                self._config.name,
                pending,
            )
            return unchanged

        with self._tracer.span(
            "outboxrelay.controller.on_source_exhausted",
            {ATTR_MIGRATION_NAME: state.name, ATTR_PATTERN: pattern.value},
        ):
            if target.source is TableRef.OLD:
                changed = await self._transition(state, target, state.unification_phase)
                if changed:
                    logger.info(
                        "Old table of %s exhausted; publication paused until %s",
                        state.name,
                        TransitionAction.COMPLETE_CUTOVER.value,
                    )
            else:
                if pattern.uses_replication_trigger and not await self._replication_ready():
                    self.last_precondition_failure = (
                        f"{state.name}: old table exhausted but the replication "
                        "trigger is not installed; staying on the old table"
                    )
                    self._metrics.record_precondition_failure("advance")
                    logger.warning(self.last_precondition_failure)
                    return unchanged
                result = await self._locator.advance(TableRef.OLD, target.source, phase=target)
                changed = result is AdvanceResult.OK

            current = await self._locator.state()
            if changed:
                self._metrics.record_transition(current.phase.value)
            return TransitionResult(previous=state, current=current, changed=changed)

    # =========================================================================
    # Operator transitions
    # =========================================================================

    async def trigger_transition(self, action: TransitionAction) -> TransitionResult:
        """
        Apply an operator-triggered transition.

        Returns:
            TransitionResult; ``changed`` is False for idempotent repeats

        Raises:
            InvalidTransitionError: Action not valid for the pattern or phase
            PreconditionFailedError: A precondition does not hold; state unchanged
            DDLTimeoutError: The DDL sequence exceeded ``ddl_timeout``; rolled back
            DDLError: The DDL sequence failed; rolled back
        """
        handlers: dict[TransitionAction, _Handler] = {
            TransitionAction.COMPLETE_CUTOVER: self._complete_cutover,
            TransitionAction.PREPARE_REPLICATION: self._prepare_replication,
            TransitionAction.START_UNIFICATION: self._start_unification,
            TransitionAction.FINISH_UNIFICATION: self._finish_unification,
            TransitionAction.RETIRE: self._retire,
        }
        state = await self._locator.state()
        with self._tracer.span(
            "outboxrelay.controller.trigger_transition",
            {
                ATTR_MIGRATION_NAME: state.name,
                ATTR_ACTION: action.value,
                ATTR_PATTERN: state.migration_pattern.value,
                ATTR_PHASE: state.phase.value,
            },
        ):
            result = await handlers[action](state)

        if result.changed:
            self._metrics.record_transition(action.value)
            logger.info(
                "Applied %s to %s: phase %s -> %s, unification %s -> %s",
                action.value,
                state.name,
                result.previous.phase.value,
                result.current.phase.value,
                result.previous.unification_phase.value,
                result.current.unification_phase.value,
            )
        return result

    async def _complete_cutover(self, state: TableCutoverState) -> TransitionResult:
        action = TransitionAction.COMPLETE_CUTOVER
        if state.phase == CutoverPhase.SINGLE_TABLE:
            return TransitionResult(previous=state, current=state, changed=False)
        if not state.phase.can_transition_to(CutoverPhase.SINGLE_TABLE, state.migration_pattern):
            raise InvalidTransitionError(
                action, state.phase, state.migration_pattern, migration_name=state.name
            )

        pending = await self._gateway.probe_unpublished_count(self._old_table)
        if pending:
            self._refuse(
                action,
                f"old table {self._old_table} still has {pending} unpublished rows",
                unpublished_count=pending,
            )

        if (
            state.migration_pattern.uses_replication_trigger
            and state.phase == CutoverPhase.DUAL_WRITE_OLD_READ
            and not await self._replication_ready()
        ):
            self._refuse(action, "replication trigger is not installed")

        changed = await self._transition(state, CutoverPhase.SINGLE_TABLE, state.unification_phase)
        return TransitionResult(
            previous=state,
            current=await self._locator.state(),
            changed=changed,
        )

    async def _prepare_replication(self, state: TableCutoverState) -> TransitionResult:
        action = TransitionAction.PREPARE_REPLICATION
        if not state.migration_pattern.uses_replication_trigger:
            raise InvalidTransitionError(
                action,
                state.phase,
                state.migration_pattern,
                detail="only HOPIA replicates published rows",
                migration_name=state.name,
            )
        if state.phase != CutoverPhase.DUAL_WRITE_OLD_READ:
            raise InvalidTransitionError(
                action,
                state.phase,
                state.migration_pattern,
                detail="the trigger must exist before the new table is read",
                migration_name=state.name,
            )
        if await self._replication_ready():
            return TransitionResult(previous=state, current=state, changed=False)

        published = await self._gateway.count_rows(self._config.published_partition)
        if published:
            self._refuse(
                action,
                f"{self._config.published_partition} already holds {published} rows "
                "that would never be replicated",
            )

        await self._run_ddl(
            "create_replication_trigger",
            self._config.published_partition,
            lambda: self._gateway.create_replication_trigger(
                self._config.published_partition, self._old_table
            ),
        )
        return TransitionResult(previous=state, current=state, changed=True)

    async def _start_unification(self, state: TableCutoverState) -> TransitionResult:
        action = TransitionAction.START_UNIFICATION
        pattern = state.migration_pattern
        if not pattern.unifies_storage:
            raise InvalidTransitionError(
                action,
                state.phase,
                pattern,
                detail="pattern does not unify storage",
                migration_name=state.name,
            )
        if state.phase != CutoverPhase.SINGLE_TABLE:
            raise InvalidTransitionError(
                action,
                state.phase,
                pattern,
                detail="cutover must be complete first",
                migration_name=state.name,
            )
        if state.unification_phase != UnificationPhase.NOT_STARTED:
            return TransitionResult(previous=state, current=state, changed=False)

        pending = await self._gateway.probe_unpublished_count(self._old_table)
        if pending:
            self._refuse(
                action,
                f"old table {self._old_table} still has {pending} unpublished rows; "
                "it cannot become the default partition",
                unpublished_count=pending,
            )
        if pattern.uses_replication_trigger and not await self._replication_ready():
            self._refuse(action, "replication trigger is not installed")

        await self._run_ddl("attach_old_table", self._old_table, self._attach_old_table)

        target = (
            UnificationPhase.COMPLETE
            if pattern.uses_replication_trigger
            else UnificationPhase.IN_PROGRESS
        )
        changed = await self._transition(state, CutoverPhase.SINGLE_TABLE, target)
        return TransitionResult(
            previous=state,
            current=await self._locator.state(),
            changed=changed,
        )

    async def _attach_old_table(self) -> None:
        config = self._config
        constraint = config.unification_constraint
        async with self._gateway.transaction() as tx:
            # A validated check constraint lets the attach skip its full scan
            await tx.add_check_constraint_not_valid(
                self._old_table, constraint, PUBLISHED_ONLY_EXPRESSION
            )
            await tx.validate_check_constraint(self._old_table, constraint)
            await tx.detach_partition(self._new_table, config.published_partition)
            await tx.attach_partition(self._new_table, self._old_table, PartitionMode.DEFAULT)
            await tx.drop_constraint(self._old_table, constraint)
            if config.pattern.uses_replication_trigger:
                # Every row was mirrored into the old table; dropping also drops the trigger
                await tx.drop_table(config.published_partition)

    async def _finish_unification(self, state: TableCutoverState) -> TransitionResult:
        action = TransitionAction.FINISH_UNIFICATION
        if not state.migration_pattern.unifies_storage or state.phase != CutoverPhase.SINGLE_TABLE:
            raise InvalidTransitionError(
                action,
                state.phase,
                state.migration_pattern,
                migration_name=state.name,
            )
        if state.unification_phase == UnificationPhase.COMPLETE:
            return TransitionResult(previous=state, current=state, changed=False)
        if state.unification_phase == UnificationPhase.NOT_STARTED:
            raise InvalidTransitionError(
                action,
                state.phase,
                state.migration_pattern,
                detail="unification has not started",
                migration_name=state.name,
            )

        detached = self._config.published_partition
        if await self._gateway.table_exists(detached):
            remaining = await self._gateway.count_rows(detached)
            if remaining:
                self._refuse(
                    action,
                    f"{detached} still holds {remaining} rows; run reconciliation first",
                )
            await self._run_ddl(
                "drop_table", detached, lambda: self._gateway.drop_table(detached)
            )

        changed = await self._transition(
            state, CutoverPhase.SINGLE_TABLE, UnificationPhase.COMPLETE
        )
        return TransitionResult(
            previous=state,
            current=await self._locator.state(),
            changed=changed,
        )

    async def _retire(self, state: TableCutoverState) -> TransitionResult:
        if not state.is_finished:
            raise InvalidTransitionError(
                TransitionAction.RETIRE,
                state.phase,
                state.migration_pattern,
                detail="migration is not finished",
                migration_name=state.name,
            )
        deleted = await self._repository.delete_state(state.name)
        return TransitionResult(previous=state, current=state, changed=deleted)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _transition(
        self,
        state: TableCutoverState,
        phase: CutoverPhase,
        unification: UnificationPhase,
    ) -> bool:
        """Conditionally update the record read as ``state``; the source follows the phase."""
        return await self._repository.transition(
            state.name,
            state.phase,
            state.unification_phase,
            phase,
            unification,
            phase.source,
        )

    async def _replication_ready(self) -> bool:
        return await self._gateway.replication_trigger_exists(
            self._config.published_partition, self._old_table
        )

    def _refuse(
        self,
        action: TransitionAction,
        reason: str,
        *,
        unpublished_count: int | None = None,
    ) -> None:
        error = PreconditionFailedError(
            action,
            reason,
            unpublished_count=unpublished_count,
            migration_name=self._config.name,
        )
        self.last_precondition_failure = str(error)
        self._metrics.record_precondition_failure(action.value)
        logger.warning("Refused %s: %s", action.value, reason)
        raise error

    async def _run_ddl(
        self,
        operation: str,
        table: str,
        ddl: Callable[[], Awaitable[None]],
    ) -> None:
        timeout = self._config.ddl_timeout
        try:
            await asyncio.wait_for(ddl(), timeout=timeout)
        except TimeoutError as e:
            logger.warning(
                "DDL %s on %s timed out after %.1fs and was rolled back",
                operation,
                table,
                timeout,
            )
            raise DDLTimeoutError(operation, table, timeout) from e


__all__ = ["CutoverController"]
