"""
Table Locator - which table the publisher claims from.

The answer is the persisted cutover state, read fresh on every call. There
is no in-memory flag: instances restart, and several instances (old and new
binaries) share the decision.
"""

from __future__ import annotations

import logging

from outboxrelay.exceptions import CutoverStateNotFoundError, StorageError
from outboxrelay.models import AdvanceResult, CutoverPhase, TableCutoverState, TableRef
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_ADVANCE_RESULT,
    ATTR_MIGRATION_NAME,
    ATTR_SOURCE,
)
from outboxrelay.repositories.cutover_state import CutoverStateRepository

logger = logging.getLogger(__name__)


class TableLocator:
    """
    Persisted pointer to the current publication source.

    ``advance`` is a compare-and-swap: of N instances racing on the same
    ``(from, to)`` exactly one gets OK, the rest get STALE and should
    re-read ``current()``.

    Example:
        >>> locator = TableLocator(repository, "outbox")
        >>> source = await locator.current()
        >>> result = await locator.advance(TableRef.OLD, TableRef.NEW)
    """

    def __init__(
        self,
        repository: CutoverStateRepository,
        migration_name: str,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._repository = repository
        self._name = migration_name

    @property
    def migration_name(self) -> str:
        return self._name

    async def state(self) -> TableCutoverState:
        """
        Read the full control record.

        Raises:
            CutoverStateNotFoundError: If the record was never created
            StorageError: If the stored source contradicts the stored phase
        """
        state = await self._repository.get_state(self._name)
        if state is None:
            raise CutoverStateNotFoundError(self._name)
        if state.current_source is not state.phase.source:
            raise StorageError(
                f"Control record {self._name} reads {state.current_source.value} "
                f"in phase {state.phase.value}"
            )
        return state

    async def current(self) -> TableRef:
        """Table the publisher should claim from right now."""
        return (await self.state()).current_source

    async def advance(
        self,
        from_source: TableRef,
        to_source: TableRef,
        *,
        phase: CutoverPhase | None = None,
    ) -> AdvanceResult:
        """
        Swap the source if it still equals ``from_source``.

        Args:
            from_source: Source the caller believes is current
            to_source: Source to switch to
            phase: Phase recorded with the swap; defaults to the phase
                   that reads from ``to_source`` while both tables are written

        Returns:
            AdvanceResult.OK if this call performed the swap, STALE otherwise
        """
        if from_source == to_source:
            raise ValueError(f"Cannot advance from {from_source.value} to itself")
        if phase is None:
            phase = (
                CutoverPhase.DUAL_WRITE_NEW_READ
                if to_source is TableRef.NEW
                else CutoverPhase.DUAL_WRITE_OLD_READ
            )

        with self._tracer.span(
            "outboxrelay.locator.advance",
            {ATTR_MIGRATION_NAME: self._name, ATTR_SOURCE: to_source.value},
        ) as span:
            swapped = await self._repository.advance_source(
                self._name, from_source, to_source, phase
            )
            result = AdvanceResult.OK if swapped else AdvanceResult.STALE
            if span:
                span.set_attribute(ATTR_ADVANCE_RESULT, result.value)

        if swapped:
            logger.info(
                "Publication source of %s advanced from %s to %s (phase %s)",
                self._name,
                from_source.value,
                to_source.value,
                phase.value,
            )
        else:
            logger.debug(
                "Stale advance of %s from %s; another instance advanced first",
                self._name,
                from_source.value,
            )
        return result


__all__ = ["TableLocator"]
