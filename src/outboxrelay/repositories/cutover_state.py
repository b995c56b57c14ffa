"""
CutoverStateRepository - Persistence for the table cutover control record.

One record per migration name holds the current publication source, the
cutover phase and the unification progress. Every mutation is a
conditional update guarded by the expected current value, so concurrent
relay instances racing on the same transition converge: exactly one
update matches, the others observe a changed record and re-read.

Database Table:
    relay_cutover_state (see :func:`outboxrelay.schema.get_schema`)

Usage:
    >>> repo = PostgreSQLCutoverStateRepository(engine)
    >>> state = await repo.create_state("outbox", MigrationPattern.HOP)
    >>> won = await repo.advance_source(
    ...     "outbox",
    ...     TableRef.OLD,
    ...     TableRef.NEW,
    ...     CutoverPhase.DUAL_WRITE_NEW_READ,
    ... )
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from outboxrelay.config import validate_identifier
from outboxrelay.models import (
    CutoverPhase,
    MigrationPattern,
    TableCutoverState,
    TableRef,
    UnificationPhase,
)
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_NAME,
    ATTR_PHASE,
    ATTR_SOURCE,
)
from outboxrelay.repositories._connection import execute_with_connection

if TYPE_CHECKING:
    import aiosqlite

DEFAULT_STATE_TABLE = "relay_cutover_state"


@runtime_checkable
class CutoverStateRepository(Protocol):
    """
    Protocol for cutover control record persistence.

    All mutating methods return whether the conditional update matched.
    A False return is not an error: it means another instance changed the
    record first and the caller should re-read it.
    """

    async def get_state(self, name: str) -> TableCutoverState | None:
        """Get the control record, or None if it was never created."""
        ...

    async def create_state(
        self,
        name: str,
        pattern: MigrationPattern,
    ) -> TableCutoverState:
        """
        Create the control record if absent.

        Returns the existing record unchanged when one is already stored,
        including one created with a different pattern.
        """
        ...

    async def advance_source(
        self,
        name: str,
        from_source: TableRef,
        to_source: TableRef,
        phase: CutoverPhase,
    ) -> bool:
        """
        Swap the publication source if it still equals ``from_source``.

        Args:
            name: Migration name
            from_source: Expected current source
            to_source: New source
            phase: Phase to record together with the new source

        Returns:
            True if this call performed the swap
        """
        ...

    async def transition(
        self,
        name: str,
        expected_phase: CutoverPhase,
        expected_unification: UnificationPhase,
        phase: CutoverPhase,
        unification_phase: UnificationPhase,
        current_source: TableRef,
    ) -> bool:
        """
        Move to a new phase if phase and unification still match expectations.

        Returns:
            True if this call performed the transition
        """
        ...

    async def delete_state(self, name: str) -> bool:
        """Delete the control record. Returns True if one was deleted."""
        ...


def _row_to_state(row: Any, parse_datetime: Any = None) -> TableCutoverState:
    created_at = row[6]
    updated_at = row[7]
    if parse_datetime is not None:
        created_at = parse_datetime(created_at)
        updated_at = parse_datetime(updated_at)
    return TableCutoverState(
        name=row[0],
        migration_pattern=MigrationPattern(row[1]),
        current_source=TableRef(row[2]),
        phase=CutoverPhase(row[3]),
        unification_phase=UnificationPhase(row[4]),
        version=row[5],
        created_at=created_at,
        updated_at=updated_at,
    )


_COLUMNS = (
    "name, migration_pattern, current_source, phase, unification_phase, "
    "version, created_at, updated_at"
)


class PostgreSQLCutoverStateRepository:
    """
    PostgreSQL implementation of CutoverStateRepository.

    Conditional updates rely on row-level locking: concurrent UPDATEs on the
    control row serialize, and the loser's WHERE clause no longer matches
    once it re-evaluates against the committed row.

    Example:
        >>> repo = PostgreSQLCutoverStateRepository(engine)
        >>> state = await repo.get_state("outbox")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        table_name: str = DEFAULT_STATE_TABLE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the repository.

        Args:
            conn: Database connection or engine
            table_name: Name of the control table
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn
        self._table = validate_identifier(table_name, "table_name")

    async def get_state(self, name: str) -> TableCutoverState | None:
        with self._tracer.span(
            "outboxrelay.cutover_state.get",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"SELECT {_COLUMNS} FROM {self._table} WHERE name = :name")
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"name": name})
                row = result.fetchone()

            if row is None:
                return None
            return _row_to_state(row)

    async def create_state(
        self,
        name: str,
        pattern: MigrationPattern,
    ) -> TableCutoverState:
        with self._tracer.span(
            "outboxrelay.cutover_state.create",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "postgresql"},
        ):
            now = datetime.now(UTC)
            query = text(f"""
                INSERT INTO {self._table} ({_COLUMNS})
                VALUES (
                    :name, :pattern, :source, :phase, :unification,
                    0, :created_at, :updated_at
                )
                ON CONFLICT (name) DO NOTHING
                RETURNING {_COLUMNS}
            """)

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {
                        "name": name,
                        "pattern": pattern.value,
                        "source": TableRef.OLD.value,
                        "phase": CutoverPhase.DUAL_WRITE_OLD_READ.value,
                        "unification": UnificationPhase.NOT_STARTED.value,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                row = result.fetchone()

            if row is not None:
                return _row_to_state(row)

            # Another instance created it first
            existing = await self.get_state(name)
            if existing is None:
                raise RuntimeError(f"Failed to get or create cutover state {name!r}")
            return existing

    async def advance_source(
        self,
        name: str,
        from_source: TableRef,
        to_source: TableRef,
        phase: CutoverPhase,
    ) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.advance_source",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_SOURCE: to_source.value,
                ATTR_PHASE: phase.value,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text(f"""
                UPDATE {self._table}
                SET current_source = :to_source,
                    phase = :phase,
                    version = version + 1,
                    updated_at = :updated_at
                WHERE name = :name AND current_source = :from_source
            """)

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {
                        "name": name,
                        "from_source": from_source.value,
                        "to_source": to_source.value,
                        "phase": phase.value,
                        "updated_at": datetime.now(UTC),
                    },
                )
                return result.rowcount == 1

    async def transition(
        self,
        name: str,
        expected_phase: CutoverPhase,
        expected_unification: UnificationPhase,
        phase: CutoverPhase,
        unification_phase: UnificationPhase,
        current_source: TableRef,
    ) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.transition",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_PHASE: phase.value,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text(f"""
                UPDATE {self._table}
                SET phase = :phase,
                    unification_phase = :unification,
                    current_source = :source,
                    version = version + 1,
                    updated_at = :updated_at
                WHERE name = :name
                  AND phase = :expected_phase
                  AND unification_phase = :expected_unification
            """)

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {
                        "name": name,
                        "phase": phase.value,
                        "unification": unification_phase.value,
                        "source": current_source.value,
                        "expected_phase": expected_phase.value,
                        "expected_unification": expected_unification.value,
                        "updated_at": datetime.now(UTC),
                    },
                )
                return result.rowcount == 1

    async def delete_state(self, name: str) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.delete",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"DELETE FROM {self._table} WHERE name = :name")
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, {"name": name})
                return result.rowcount > 0


class SQLiteCutoverStateRepository:
    """
    SQLite implementation of CutoverStateRepository.

    SQLite serializes writers, so the conditional UPDATE is atomic per
    database file. Suitable for single-host deployments and tests.

    SQLite-specific adaptations:
    - Timestamps stored as TEXT in ISO 8601 format
    - Uses `?` positional parameters
    - Uses `INSERT OR IGNORE` instead of `ON CONFLICT DO NOTHING RETURNING`

    Example:
        >>> async with aiosqlite.connect("relay.db") as db:
        ...     repo = SQLiteCutoverStateRepository(db)
        ...     state = await repo.create_state("outbox", MigrationPattern.COP)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        *,
        table_name: str = DEFAULT_STATE_TABLE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection
        self._table = validate_identifier(table_name, "table_name")

    @staticmethod
    def _parse_datetime(value: str | None) -> datetime:
        """Parse ISO 8601 timestamp string to datetime."""
        if value is None:
            return datetime.now(UTC)
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, TypeError):
            return datetime.now(UTC)

    async def get_state(self, name: str) -> TableCutoverState | None:
        with self._tracer.span(
            "outboxrelay.cutover_state.get",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "sqlite"},
        ):
            async with self._connection.execute(
                f"SELECT {_COLUMNS} FROM {self._table} WHERE name = ?",
                (name,),
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                return None
            return _row_to_state(row, self._parse_datetime)

    async def create_state(
        self,
        name: str,
        pattern: MigrationPattern,
    ) -> TableCutoverState:
        with self._tracer.span(
            "outboxrelay.cutover_state.create",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "sqlite"},
        ):
            now = datetime.now(UTC).isoformat()
            await self._connection.execute(
                f"""
                INSERT OR IGNORE INTO {self._table} ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    name,
                    pattern.value,
                    TableRef.OLD.value,
                    CutoverPhase.DUAL_WRITE_OLD_READ.value,
                    UnificationPhase.NOT_STARTED.value,
                    now,
                    now,
                ),
            )
            await self._connection.commit()

            state = await self.get_state(name)
            if state is None:
                raise RuntimeError(f"Failed to get or create cutover state {name!r}")
            return state

    async def advance_source(
        self,
        name: str,
        from_source: TableRef,
        to_source: TableRef,
        phase: CutoverPhase,
    ) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.advance_source",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_SOURCE: to_source.value,
                ATTR_PHASE: phase.value,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            cursor = await self._connection.execute(
                f"""
                UPDATE {self._table}
                SET current_source = ?, phase = ?, version = version + 1, updated_at = ?
                WHERE name = ? AND current_source = ?
                """,
                (
                    to_source.value,
                    phase.value,
                    datetime.now(UTC).isoformat(),
                    name,
                    from_source.value,
                ),
            )
            await self._connection.commit()
            return cursor.rowcount == 1

    async def transition(
        self,
        name: str,
        expected_phase: CutoverPhase,
        expected_unification: UnificationPhase,
        phase: CutoverPhase,
        unification_phase: UnificationPhase,
        current_source: TableRef,
    ) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.transition",
            {ATTR_MIGRATION_NAME: name, ATTR_PHASE: phase.value, ATTR_DB_SYSTEM: "sqlite"},
        ):
            cursor = await self._connection.execute(
                f"""
                UPDATE {self._table}
                SET phase = ?, unification_phase = ?, current_source = ?,
                    version = version + 1, updated_at = ?
                WHERE name = ? AND phase = ? AND unification_phase = ?
                """,
                (
                    phase.value,
                    unification_phase.value,
                    current_source.value,
                    datetime.now(UTC).isoformat(),
                    name,
                    expected_phase.value,
                    expected_unification.value,
                ),
            )
            await self._connection.commit()
            return cursor.rowcount == 1

    async def delete_state(self, name: str) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.delete",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "sqlite"},
        ):
            cursor = await self._connection.execute(
                f"DELETE FROM {self._table} WHERE name = ?",
                (name,),
            )
            await self._connection.commit()
            return cursor.rowcount > 0


class InMemoryCutoverStateRepository:
    """
    In-memory implementation of CutoverStateRepository for testing.

    Share one instance between several services to simulate relay
    instances racing on the same control record.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._states: dict[str, TableCutoverState] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def get_state(self, name: str) -> TableCutoverState | None:
        with self._tracer.span(
            "outboxrelay.cutover_state.get",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                return self._states.get(name)

    async def create_state(
        self,
        name: str,
        pattern: MigrationPattern,
    ) -> TableCutoverState:
        with self._tracer.span(
            "outboxrelay.cutover_state.create",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                existing = self._states.get(name)
                if existing is not None:
                    return existing
                state = TableCutoverState(name=name, migration_pattern=pattern)
                self._states[name] = state
                return state

    async def advance_source(
        self,
        name: str,
        from_source: TableRef,
        to_source: TableRef,
        phase: CutoverPhase,
    ) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.advance_source",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_SOURCE: to_source.value,
                ATTR_PHASE: phase.value,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                state = self._states.get(name)
                if state is None or state.current_source != from_source:
                    return False
                self._states[name] = replace(
                    state,
                    current_source=to_source,
                    phase=phase,
                    version=state.version + 1,
                    updated_at=datetime.now(UTC),
                )
                return True

    async def transition(
        self,
        name: str,
        expected_phase: CutoverPhase,
        expected_unification: UnificationPhase,
        phase: CutoverPhase,
        unification_phase: UnificationPhase,
        current_source: TableRef,
    ) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.transition",
            {ATTR_MIGRATION_NAME: name, ATTR_PHASE: phase.value, ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                state = self._states.get(name)
                if (
                    state is None
                    or state.phase != expected_phase
                    or state.unification_phase != expected_unification
                ):
                    return False
                self._states[name] = replace(
                    state,
                    phase=phase,
                    unification_phase=unification_phase,
                    current_source=current_source,
                    version=state.version + 1,
                    updated_at=datetime.now(UTC),
                )
                return True

    async def delete_state(self, name: str) -> bool:
        with self._tracer.span(
            "outboxrelay.cutover_state.delete",
            {ATTR_MIGRATION_NAME: name, ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                return self._states.pop(name, None) is not None

    async def clear(self) -> None:
        """Clear all records. Useful for test setup/teardown."""
        async with self._lock:
            self._states.clear()


__all__ = [
    "DEFAULT_STATE_TABLE",
    "CutoverStateRepository",
    "PostgreSQLCutoverStateRepository",
    "SQLiteCutoverStateRepository",
    "InMemoryCutoverStateRepository",
]
