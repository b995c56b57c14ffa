"""
PostgreSQL storage gateway.

Row operations use SQLAlchemy ``text()`` statements over an AsyncEngine or
AsyncConnection. The claim is a single ``UPDATE ... FROM (SELECT ... FOR
UPDATE SKIP LOCKED)`` so concurrent relay instances never claim the same
row and never wait on each other's locks.

The new table is expected to be list-partitioned on ``(published_at IS
NULL)``; see :func:`outboxrelay.schema.get_schema`. Moving a row between
partitions when ``published_at`` changes is done by PostgreSQL itself.

Errors:
    Deadlocks, serialization failures, lock timeouts, query cancellations
    and lost connections are raised as TransientStorageError. Other
    database errors are raised as StorageError, or DDLError for schema
    operations.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from outboxrelay.config import validate_identifier
from outboxrelay.exceptions import DDLError, StorageError, TransientStorageError
from outboxrelay.models import OutboxRecord, PartitionMode
from outboxrelay.observability import SpanKindEnum, Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DDL_OPERATION,
    ATTR_RECORD_COUNT,
    ATTR_TABLE,
)
from outboxrelay.repositories._connection import execute_with_connection, transaction_scope
from outboxrelay.storage.interface import replication_trigger_name

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, payload, created_at, published_at, retry_count, last_error, "
    "quarantined_at, quarantine_reason"
)

# serialization_failure, deadlock_detected, lock_not_available, query_canceled,
# and the connection exception class
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014", "08000", "08003", "08006"})

_PARTITION_BOUNDS = {
    PartitionMode.UNPUBLISHED: "FOR VALUES IN (true)",
    PartitionMode.PUBLISHED: "FOR VALUES IN (false)",
    PartitionMode.DEFAULT: "DEFAULT",
}


def _sqlstate(error: DBAPIError) -> str | None:
    return getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)


def _is_transient(error: DBAPIError) -> bool:
    return bool(error.connection_invalidated) or _sqlstate(error) in _TRANSIENT_SQLSTATES


@contextmanager
def _storage_errors(operation: str, table: str) -> Iterator[None]:
    try:
        yield
    except DBAPIError as e:
        if _is_transient(e):
            raise TransientStorageError(f"{operation} on {table} failed: {e.orig}") from e
        raise StorageError(f"{operation} on {table} failed: {e.orig}") from e


@contextmanager
def _ddl_errors(operation: str, table: str) -> Iterator[None]:
    try:
        yield
    except DBAPIError as e:
        raise DDLError(operation, table, str(e.orig)) from e


def _row_to_record(row: Any) -> OutboxRecord:
    return OutboxRecord(
        id=row.id,
        payload=row.payload,
        created_at=row.created_at,
        published_at=row.published_at,
        retry_count=row.retry_count,
        last_error=row.last_error,
        quarantined_at=row.quarantined_at,
        quarantine_reason=row.quarantine_reason,
    )


class PostgreSQLStorageGateway:
    """
    PostgreSQL implementation of StorageGateway.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/app")
        >>> gateway = PostgreSQLStorageGateway(engine)
        >>> async with gateway.transaction() as tx:
        ...     records = await tx.claim_unpublished("outbox", 100)

    Schema operations set ``lock_timeout`` locally so an attach or detach
    waiting behind long transactions fails fast instead of queueing every
    other writer behind its ACCESS EXCLUSIVE lock request.
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        lock_timeout: float | None = 5.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the gateway.

        Args:
            conn: Database connection or engine
            lock_timeout: Lock wait limit in seconds for DDL (None to disable)
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn
        self._lock_timeout = lock_timeout

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgreSQLStorageGateway]:
        async with transaction_scope(self._conn) as conn:
            yield PostgreSQLStorageGateway(
                conn,
                lock_timeout=self._lock_timeout,
                tracer=self._tracer,
            )

    def _span(self, operation: str, table: str, **attributes: Any) -> Any:
        return self._tracer.span_with_kind(
            f"outboxrelay.storage.{operation}",
            SpanKindEnum.CLIENT,
            {
                ATTR_TABLE: table,
                ATTR_DB_OPERATION: operation,
                ATTR_DB_SYSTEM: "postgresql",
                **attributes,
            },
        )

    async def _scalar(self, operation: str, table: str, query: Any, params: dict[str, Any]) -> Any:
        with self._span(operation, table), _storage_errors(operation, table):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                return result.scalar()

    # =========================================================================
    # Rows
    # =========================================================================

    async def insert(self, table: str, payload: str) -> int:
        validate_identifier(table, "table")
        query = text(f"""
            INSERT INTO {table} (payload, created_at)
            VALUES (:payload, :created_at)
            RETURNING id
        """)
        with self._span("insert", table), _storage_errors("insert", table):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {"payload": payload, "created_at": datetime.now(UTC)},
                )
                return int(result.scalar_one())

    async def claim_unpublished(self, table: str, limit: int) -> list[OutboxRecord]:
        validate_identifier(table, "table")
        query = text(f"""
            WITH claimed AS (
                SELECT id FROM {table}
                WHERE published_at IS NULL
                ORDER BY id
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
            )
            UPDATE {table} AS o
            SET published_at = :now
            FROM claimed
            WHERE o.id = claimed.id
            RETURNING o.id, o.payload, o.created_at, o.published_at, o.retry_count,
                      o.last_error, o.quarantined_at, o.quarantine_reason
        """)
        with (
            self._span("claim_unpublished", table, **{ATTR_BATCH_SIZE: limit}) as span,
            _storage_errors("claim_unpublished", table),
        ):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, {"limit": limit, "now": datetime.now(UTC)})
                rows = result.fetchall()

            if span:
                span.set_attribute(ATTR_RECORD_COUNT, len(rows))
            # RETURNING order is unspecified
            return sorted((_row_to_record(row) for row in rows), key=lambda r: r.id)

    async def revert_publish(
        self,
        table: str,
        ids: Sequence[int],
        error: str | None = None,
    ) -> int:
        if not ids:
            return 0
        validate_identifier(table, "table")
        query = text(f"""
            UPDATE {table}
            SET published_at = NULL,
                retry_count = retry_count + 1,
                last_error = :error
            WHERE id IN :ids
        """).bindparams(bindparam("ids", expanding=True))
        with (
            self._span("revert_publish", table, **{ATTR_RECORD_COUNT: len(ids)}),
            _storage_errors("revert_publish", table),
        ):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, {"ids": list(ids), "error": error})
                return result.rowcount

    async def quarantine(self, table: str, record_id: int, reason: str) -> None:
        validate_identifier(table, "table")
        query = text(f"""
            UPDATE {table}
            SET published_at = COALESCE(published_at, :now),
                quarantined_at = :now,
                quarantine_reason = :reason
            WHERE id = :id
        """)
        with self._span("quarantine", table), _storage_errors("quarantine", table):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {"id": record_id, "reason": reason, "now": datetime.now(UTC)},
                )
                if result.rowcount == 0:
                    raise StorageError(f"row {record_id} not found in {table}")

    async def probe_unpublished_count(self, table: str) -> int:
        validate_identifier(table, "table")
        query = text(f"SELECT count(*) FROM {table} WHERE published_at IS NULL")
        return int(await self._scalar("probe_unpublished_count", table, query, {}))

    async def count_rows(self, table: str) -> int:
        validate_identifier(table, "table")
        query = text(f"SELECT count(*) FROM {table}")
        return int(await self._scalar("count_rows", table, query, {}))

    async def count_quarantined(self, table: str) -> int:
        validate_identifier(table, "table")
        query = text(f"SELECT count(*) FROM {table} WHERE quarantined_at IS NOT NULL")
        return int(await self._scalar("count_quarantined", table, query, {}))

    async def max_identifier(self, table: str) -> int | None:
        validate_identifier(table, "table")
        query = text(f"SELECT max(id) FROM {table}")
        value = await self._scalar("max_identifier", table, query, {})
        return None if value is None else int(value)

    async def min_identifier(self, table: str) -> int | None:
        validate_identifier(table, "table")
        query = text(f"SELECT min(id) FROM {table}")
        value = await self._scalar("min_identifier", table, query, {})
        return None if value is None else int(value)

    async def identifier_floor(self, table: str) -> int:
        validate_identifier(table, "table")
        query = text("""
            SELECT COALESCE(
                pg_sequence_last_value(seq) + 1,
                (SELECT seqstart FROM pg_sequence WHERE seqrelid = seq)
            )
            FROM (SELECT pg_get_serial_sequence(:table, 'id')::regclass AS seq) AS s
        """)
        value = await self._scalar("identifier_floor", table, query, {"table": table})
        if value is None:
            raise StorageError(f"{table}.id has no identity sequence")
        return int(value)

    async def move_rows(self, source: str, target: str, limit: int) -> int:
        validate_identifier(source, "source")
        validate_identifier(target, "target")
        query = text(f"""
            WITH moved AS (
                DELETE FROM {source}
                WHERE id IN (
                    SELECT id FROM {source}
                    ORDER BY id
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_COLUMNS}
            )
            INSERT INTO {target} ({_COLUMNS})
            SELECT {_COLUMNS} FROM moved
        """)
        with (
            self._span("move_rows", source, **{ATTR_BATCH_SIZE: limit}),
            _storage_errors("move_rows", source),
        ):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, {"limit": limit})
                return result.rowcount

    # =========================================================================
    # DDL
    # =========================================================================

    async def _ddl(self, operation: str, table: str, *statements: str) -> None:
        with (
            self._span(operation, table, **{ATTR_DDL_OPERATION: operation}),
            _ddl_errors(operation, table),
        ):
            async with transaction_scope(self._conn) as conn:
                if self._lock_timeout is not None:
                    timeout_ms = int(self._lock_timeout * 1000)
                    await conn.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
                for statement in statements:
                    await conn.execute(text(statement))
        logger.info("Executed %s on %s", operation, table)

    async def attach_partition(self, parent: str, child: str, mode: PartitionMode) -> None:
        validate_identifier(parent, "parent")
        validate_identifier(child, "child")
        await self._ddl(
            "attach_partition",
            child,
            f"ALTER TABLE {parent} ATTACH PARTITION {child} {_PARTITION_BOUNDS[mode]}",
        )

    async def detach_partition(self, parent: str, child: str) -> None:
        validate_identifier(parent, "parent")
        validate_identifier(child, "child")
        await self._ddl(
            "detach_partition",
            child,
            f"ALTER TABLE {parent} DETACH PARTITION {child}",
        )

    async def add_check_constraint_not_valid(
        self,
        table: str,
        name: str,
        expression: str,
    ) -> None:
        validate_identifier(table, "table")
        validate_identifier(name, "name")
        await self._ddl(
            "add_check_constraint",
            table,
            f"ALTER TABLE {table} ADD CONSTRAINT {name} CHECK ({expression}) NOT VALID",
        )

    async def validate_check_constraint(self, table: str, name: str) -> None:
        validate_identifier(table, "table")
        validate_identifier(name, "name")
        await self._ddl(
            "validate_check_constraint",
            table,
            f"ALTER TABLE {table} VALIDATE CONSTRAINT {name}",
        )

    async def drop_constraint(self, table: str, name: str) -> None:
        validate_identifier(table, "table")
        validate_identifier(name, "name")
        await self._ddl(
            "drop_constraint",
            table,
            f"ALTER TABLE {table} DROP CONSTRAINT {name}",
        )

    async def create_replication_trigger(self, source: str, target: str) -> None:
        validate_identifier(source, "source")
        validate_identifier(target, "target")
        name = replication_trigger_name(source, target)
        function = f"""
            CREATE OR REPLACE FUNCTION {name}() RETURNS trigger
            LANGUAGE plpgsql AS $$
            BEGIN
                IF TG_OP = 'DELETE' THEN
                    DELETE FROM {target} WHERE id = OLD.id;
                    RETURN OLD;
                END IF;
                INSERT INTO {target} ({_COLUMNS})
                VALUES (
                    NEW.id, NEW.payload, NEW.created_at, NEW.published_at,
                    NEW.retry_count, NEW.last_error, NEW.quarantined_at,
                    NEW.quarantine_reason
                )
                ON CONFLICT (id) DO UPDATE SET
                    published_at = EXCLUDED.published_at,
                    retry_count = EXCLUDED.retry_count,
                    last_error = EXCLUDED.last_error,
                    quarantined_at = EXCLUDED.quarantined_at,
                    quarantine_reason = EXCLUDED.quarantine_reason;
                RETURN NEW;
            END
            $$
        """
        trigger = (
            f"CREATE OR REPLACE TRIGGER {name} "
            f"AFTER INSERT OR UPDATE OR DELETE ON {source} "
            f"FOR EACH ROW EXECUTE FUNCTION {name}()"
        )
        await self._ddl("create_replication_trigger", source, function, trigger)

    async def replication_trigger_exists(self, source: str, target: str) -> bool:
        validate_identifier(source, "source")
        query = text("""
            SELECT EXISTS (
                SELECT 1 FROM pg_trigger
                WHERE tgname = :name AND tgrelid = to_regclass(:source)
            )
        """)
        return bool(
            await self._scalar(
                "replication_trigger_exists",
                source,
                query,
                {"name": replication_trigger_name(source, target), "source": source},
            )
        )

    async def table_exists(self, table: str) -> bool:
        validate_identifier(table, "table")
        query = text("SELECT to_regclass(:table) IS NOT NULL")
        return bool(await self._scalar("table_exists", table, query, {"table": table}))

    async def drop_table(self, table: str) -> None:
        validate_identifier(table, "table")
        await self._ddl("drop_table", table, f"DROP TABLE IF EXISTS {table}")


__all__ = ["PostgreSQLStorageGateway"]
