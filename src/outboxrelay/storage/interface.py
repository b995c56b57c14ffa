"""
Storage gateway protocol.

The gateway is the relay's only view of the relational backend: a thin
transactional interface for outbox rows plus the schema primitives the
cutover needs. The backend's own partition routing, locking and constraint
validation are relied upon, not reimplemented.

Row operations run in their own transaction unless called on a gateway
obtained from ``transaction()``, in which case they share that transaction:

    >>> async with gateway.transaction() as tx:
    ...     records = await tx.claim_unpublished("outbox", 100)
    ...     await tx.revert_publish("outbox", [records[0].id], error="timeout")

Schema (DDL) primitives are single operator-invoked calls; they are never
retried automatically and never called from the publisher loop.
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable

from outboxrelay.models import OutboxRecord, PartitionMode

PUBLISHED_ONLY_EXPRESSION = "published_at IS NOT NULL"
"""Check expression proving a table holds no unpublished rows."""


def replication_trigger_name(source: str, target: str) -> str:
    """
    Deterministic trigger name for replicating ``source`` inserts into ``target``.

    Hashed so the name always fits PostgreSQL's 63 character identifier limit.
    """
    digest = hashlib.sha256(f"{source}->{target}".encode()).hexdigest()[:16]
    return f"outboxrelay_repl_{digest}"


@runtime_checkable
class StorageGateway(Protocol):
    """
    Protocol for outbox storage backends.

    Implementations must make ``claim_unpublished`` a single atomic
    claim-and-mark so concurrent relay instances never claim the same row.
    """

    def transaction(self) -> AbstractAsyncContextManager[StorageGateway]:
        """
        Open a transaction.

        Yields a gateway bound to the transaction. The transaction commits
        when the block exits normally and rolls back on any exception,
        including cancellation.
        """
        ...

    async def insert(self, table: str, payload: str) -> int:
        """
        Insert an unpublished row.

        Args:
            table: Physical table name
            payload: Serialized event body

        Returns:
            Backend-assigned row id
        """
        ...

    async def claim_unpublished(self, table: str, limit: int) -> list[OutboxRecord]:
        """
        Atomically claim and mark up to ``limit`` unpublished rows.

        Selects ``WHERE published_at IS NULL ORDER BY id LIMIT limit``,
        skipping rows locked by other transactions, and sets
        ``published_at`` on them.

        Returns:
            Claimed records in ascending id order
        """
        ...

    async def revert_publish(
        self,
        table: str,
        ids: Sequence[int],
        error: str | None = None,
    ) -> int:
        """
        Clear ``published_at`` on rows whose publish failed.

        Increments ``retry_count`` and records ``error`` as ``last_error``.

        Returns:
            Number of rows reverted
        """
        ...

    async def quarantine(self, table: str, record_id: int, reason: str) -> None:
        """Mark a row as terminally failed; it stays out of the unpublished set."""
        ...

    async def probe_unpublished_count(self, table: str) -> int:
        """Count rows with ``published_at IS NULL``."""
        ...

    async def count_rows(self, table: str) -> int:
        """Count all rows of a table (or partition)."""
        ...

    async def count_quarantined(self, table: str) -> int:
        """Count quarantined rows."""
        ...

    async def max_identifier(self, table: str) -> int | None:
        """Highest row id, or None for an empty table."""
        ...

    async def min_identifier(self, table: str) -> int | None:
        """Lowest row id, or None for an empty table."""
        ...

    async def identifier_floor(self, table: str) -> int:
        """Lowest id the table's identifier generator can still produce."""
        ...

    async def move_rows(self, source: str, target: str, limit: int) -> int:
        """
        Move up to ``limit`` rows (lowest ids first) from source to target.

        Insert and delete happen in one statement, so a batch is either
        fully moved or not at all.

        Returns:
            Number of rows moved
        """
        ...

    async def attach_partition(self, parent: str, child: str, mode: PartitionMode) -> None:
        """Attach ``child`` to the partitioned ``parent``."""
        ...

    async def detach_partition(self, parent: str, child: str) -> None:
        """Detach ``child`` from ``parent``; the child survives as a plain table."""
        ...

    async def add_check_constraint_not_valid(
        self,
        table: str,
        name: str,
        expression: str,
    ) -> None:
        """Add a check constraint enforced for new rows only."""
        ...

    async def validate_check_constraint(self, table: str, name: str) -> None:
        """Validate a NOT VALID check constraint against existing rows."""
        ...

    async def drop_constraint(self, table: str, name: str) -> None:
        """Drop a constraint."""
        ...

    async def create_replication_trigger(self, source: str, target: str) -> None:
        """
        Mirror row changes of ``source`` into ``target``.

        Inserts and updates on ``source`` are upserted into ``target`` by id;
        deletes (including rows moving out of a partition) are removed from it.
        """
        ...

    async def replication_trigger_exists(self, source: str, target: str) -> bool:
        """Check whether the replication trigger is installed."""
        ...

    async def table_exists(self, table: str) -> bool:
        """Check whether a table (or partition) exists."""
        ...

    async def drop_table(self, table: str) -> None:
        """Drop a table if it exists."""
        ...


__all__ = [
    "PUBLISHED_ONLY_EXPRESSION",
    "StorageGateway",
    "replication_trigger_name",
]
