"""
OutboxWriter - Application-side inserts into an outbox table.

During the rollout each binary version writes to one table: the previous
version to the old table, the new version to the new table. A writer is
configured with its target table and refuses to write to the old table
once publication has moved to the new one, since nothing would publish
those rows after the cutover completes.

Example:
    >>> writer = OutboxWriter(gateway, config, locator=locator, controller=controller)
    >>> async with gateway.transaction() as tx:
    ...     await save_order(tx, order)
    ...     await writer.write(OrderPlaced(...).to_event(), gateway=tx)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from outboxrelay.config import RelayConfig
from outboxrelay.controller import CutoverController
from outboxrelay.events import OutboxEvent
from outboxrelay.exceptions import ConfigurationError
from outboxrelay.locator import TableLocator
from outboxrelay.models import CutoverPhase, TableRef, UnificationPhase
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import ATTR_RECORD_ID, ATTR_TABLE
from outboxrelay.serialization import json_dumps
from outboxrelay.storage.interface import StorageGateway

logger = logging.getLogger(__name__)


class OutboxWriter:
    """
    Writes payloads to the configured outbox table.

    Args:
        gateway: Default storage gateway for inserts
        config: Relay configuration
        target: Table this binary version writes to
        locator: Consulted to reject writes to a retired old table
        controller: Validates the identifier space before the first write
                    to the new table of a unifying migration
    """

    def __init__(
        self,
        gateway: StorageGateway,
        config: RelayConfig,
        *,
        target: TableRef = TableRef.NEW,
        locator: TableLocator | None = None,
        controller: CutoverController | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._gateway = gateway
        self._config = config
        self._target = target
        self._locator = locator or (controller.locator if controller else None)
        self._controller = controller

    @property
    def target(self) -> TableRef:
        return self._target

    @property
    def table(self) -> str:
        return self._config.table_name(self._target)

    async def write(
        self,
        event: OutboxEvent | Mapping[str, Any] | str,
        *,
        gateway: StorageGateway | None = None,
    ) -> int:
        """
        Insert one payload.

        Args:
            event: OutboxEvent envelope, a mapping serialized to JSON, or an
                   already serialized payload
            gateway: Transaction-bound gateway, so the insert commits with
                     the business change that produced it

        Returns:
            Identifier assigned by the backend

        Raises:
            ConfigurationError: If the old table no longer accepts writes
            IdentifierSpaceCollisionError: If new identifiers could collide
                with old ones for a unifying pattern
        """
        await self._check_target()
        if isinstance(event, OutboxEvent):
            payload = event.to_payload()
        elif isinstance(event, str):
            payload = event
        else:
            payload = json_dumps(dict(event))

        with self._tracer.span(
            "outboxrelay.writer.write",
            {ATTR_TABLE: self.table},
        ) as span:
            record_id = await (gateway or self._gateway).insert(self.table, payload)
            if span:
                span.set_attribute(ATTR_RECORD_ID, record_id)
            return record_id

    async def _check_target(self) -> None:
        if self._target is TableRef.OLD and self._locator is not None:
            state = await self._locator.state()
            if state.phase == CutoverPhase.SINGLE_TABLE:
                raise ConfigurationError(
                    f"{self._config.old_table} is retired; write to {self._config.new_table}",
                    migration_name=state.name,
                )
            if state.current_source is TableRef.NEW:
                logger.warning(
                    "Writing to %s after the hand-over; the row is published as a straggler",
                    self._config.old_table,
                )
            return

        if (
            self._target is TableRef.NEW
            and self._controller is not None
            and self._config.pattern.unifies_storage
            and not self._controller.identifier_space_validated
        ):
            state = await self._controller.locator.state()
            # Once attached, the old table's rows are part of the new one
            if state.unification_phase == UnificationPhase.NOT_STARTED:
                await self._controller.validate_identifier_space()


__all__ = ["OutboxWriter"]
