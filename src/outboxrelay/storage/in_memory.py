"""
In-memory storage gateway for testing.

Emulates the parts of the relational backend the relay depends on:

- identity generators per table (not rolled back, like sequences)
- partitioned tables routing rows by publication status, including
  row movement between partitions when ``published_at`` changes
- check constraints, NOT VALID until validated
- mirror triggers replicating row changes of one table into another
- transactions with rollback on error or cancellation

Several gateways sharing one :class:`InMemoryDatabase` behave like relay
instances sharing one database. Uncommitted changes are visible to other
transactions; claimed rows are already marked, so concurrent claims still
never overlap, which is what ``FOR UPDATE SKIP LOCKED`` guarantees.

Example:
    >>> database = InMemoryDatabase.from_config(config, new_id_start=1000)
    >>> gateway = InMemoryStorageGateway(database)
    >>> await gateway.insert(config.old_table, "payload")
    1
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from outboxrelay.exceptions import DDLError, StorageError
from outboxrelay.models import OutboxRecord, PartitionMode
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import ATTR_DB_OPERATION, ATTR_DB_SYSTEM, ATTR_TABLE
from outboxrelay.storage.interface import PUBLISHED_ONLY_EXPRESSION

if TYPE_CHECKING:
    from outboxrelay.config import RelayConfig

T = TypeVar("T")

Undo = list[Callable[[], None]]

_CHECK_PREDICATES: dict[str, Callable[[OutboxRecord], bool]] = {
    PUBLISHED_ONLY_EXPRESSION: lambda record: record.published_at is not None,
    "published_at IS NULL": lambda record: record.published_at is None,
}


@dataclass
class _Table:
    name: str
    rows: dict[int, OutboxRecord] = field(default_factory=dict)
    next_id: int = 1
    partitions: dict[str, PartitionMode] | None = None
    parent: str | None = None
    constraints: dict[str, str] = field(default_factory=dict)
    validated: set[str] = field(default_factory=set)


@dataclass
class _InjectedFailure:
    error: Exception
    skip: int
    times: int


class InMemoryDatabase:
    """
    Shared state of the in-memory backend.

    Tables are created through the helper methods below; the gateway itself
    only exposes the relay's operations.
    """

    def __init__(self) -> None:
        self.tables: dict[str, _Table] = {}
        self.triggers: set[tuple[str, str]] = set()
        self.lock: asyncio.Lock = asyncio.Lock()
        self._failures: dict[str, list[_InjectedFailure]] = {}
        self._delays: dict[str, float] = {}

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        *,
        old_id_start: int = 1,
        new_id_start: int = 1_000_000,
    ) -> InMemoryDatabase:
        """Create the old table and the partitioned new table named by a config."""
        database = cls()
        database.create_table(config.old_table, id_start=old_id_start)
        database.create_partitioned_table(
            config.new_table,
            {
                config.unpublished_partition: PartitionMode.UNPUBLISHED,
                config.published_partition: PartitionMode.PUBLISHED,
            },
            id_start=new_id_start,
        )
        return database

    # =========================================================================
    # Setup helpers
    # =========================================================================

    def create_table(self, name: str, *, id_start: int = 1) -> None:
        if name in self.tables:
            raise DDLError("create_table", name, "relation already exists")
        self.tables[name] = _Table(name=name, next_id=id_start)

    def create_partitioned_table(
        self,
        name: str,
        partitions: dict[str, PartitionMode],
        *,
        id_start: int = 1,
    ) -> None:
        if name in self.tables:
            raise DDLError("create_table", name, "relation already exists")
        self.tables[name] = _Table(name=name, next_id=id_start, partitions=dict(partitions))
        for child in partitions:
            self.tables[child] = _Table(name=child, parent=name)

    def set_identity(self, name: str, next_id: int) -> None:
        """Restart a table's identity generator."""
        self._table(name).next_id = next_id

    def rows(self, name: str) -> list[OutboxRecord]:
        """Copies of all rows of a table (or partitioned table), ordered by id."""
        return [replace(record) for record in self._rows(name)]

    def has_table(self, name: str) -> bool:
        return name in self.tables

    def partitions_of(self, name: str) -> dict[str, PartitionMode]:
        return dict(self._table(name).partitions or {})

    def inject_failure(
        self,
        operation: str,
        error: Exception,
        *,
        skip: int = 0,
        times: int = 1,
    ) -> None:
        """
        Make a gateway operation raise.

        Args:
            operation: Gateway method name, e.g. ``"move_rows"``
            error: Exception to raise
            skip: Calls that succeed before the first failure
            times: Number of failing calls
        """
        self._failures.setdefault(operation, []).append(
            _InjectedFailure(error=error, skip=skip, times=times)
        )

    def inject_delay(self, operation: str, seconds: float) -> None:
        """Make every call of a gateway operation sleep first, e.g. to exceed a timeout."""
        self._delays[operation] = seconds

    def delay_for(self, operation: str) -> float:
        return self._delays.get(operation, 0.0)

    def check_failure(self, operation: str) -> None:
        for failure in self._failures.get(operation, []):
            if failure.skip > 0:
                failure.skip -= 1
                continue
            if failure.times > 0:
                failure.times -= 1
                raise failure.error

    # =========================================================================
    # Row primitives (synchronous, called under the lock)
    # =========================================================================

    def _table(self, name: str) -> _Table:
        table = self.tables.get(name)
        if table is None:
            raise StorageError(f'relation "{name}" does not exist')
        return table

    def _physical(self, name: str) -> list[_Table]:
        table = self._table(name)
        if table.partitions is None:
            return [table]
        return [self.tables[child] for child in table.partitions]

    def _rows(self, name: str) -> list[OutboxRecord]:
        rows = [record for table in self._physical(name) for record in table.rows.values()]
        return sorted(rows, key=lambda record: record.id)

    def _locate(self, name: str, record_id: int) -> _Table | None:
        for table in self._physical(name):
            if record_id in table.rows:
                return table
        return None

    def _partition_accepts(self, parent: _Table, child: str, published: bool) -> bool:
        assert parent.partitions is not None
        mode = parent.partitions[child]
        if mode is not PartitionMode.DEFAULT:
            return mode.accepts(published)
        return not any(
            other_mode.accepts(published)
            for other, other_mode in parent.partitions.items()
            if other != child and other_mode is not PartitionMode.DEFAULT
        )

    def _route(self, name: str, record: OutboxRecord) -> _Table:
        table = self._table(name)
        if table.partitions is None:
            return table
        for child in table.partitions:
            if self._partition_accepts(table, child, record.is_published):
                return self.tables[child]
        raise StorageError(f'no partition of relation "{name}" found for row {record.id}')

    def _check_row(self, table: _Table, record: OutboxRecord) -> None:
        for name, expression in table.constraints.items():
            if not _CHECK_PREDICATES[expression](record):
                raise StorageError(
                    f'new row for relation "{table.name}" violates check constraint "{name}"'
                )
        if table.parent is not None:
            parent = self.tables[table.parent]
            if not self._partition_accepts(parent, table.name, record.is_published):
                raise StorageError(
                    f'new row for relation "{table.name}" violates partition constraint'
                )

    def _put(
        self,
        table: _Table,
        record_id: int,
        record: OutboxRecord | None,
        undo: Undo,
    ) -> None:
        previous = table.rows.get(record_id)
        if record is None:
            table.rows.pop(record_id, None)
        else:
            table.rows[record_id] = record

        def restore() -> None:
            if previous is None:
                table.rows.pop(record_id, None)
            else:
                table.rows[record_id] = previous

        undo.append(restore)

    def _write(
        self,
        table: _Table,
        record_id: int,
        record: OutboxRecord | None,
        undo: Undo,
    ) -> None:
        """Write or delete a physical row, firing mirror triggers on the table."""
        if record is not None:
            self._check_row(table, record)
        self._put(table, record_id, record, undo)

        for source, target in sorted(self.triggers):
            if source != table.name or target not in self.tables:
                continue
            existing = self._locate(target, record_id)
            if existing is not None:
                self._write(existing, record_id, None, undo)
            if record is not None:
                mirror = replace(record)
                self._write(self._route(target, mirror), record_id, mirror, undo)

    def _insert(self, name: str, record: OutboxRecord, undo: Undo) -> None:
        if self._locate(name, record.id) is not None:
            raise StorageError(
                f'duplicate key value violates unique constraint on "{name}": id={record.id}'
            )
        self._write(self._route(name, record), record.id, record, undo)

    def _update(self, name: str, updated: OutboxRecord, undo: Undo) -> bool:
        current = self._locate(name, updated.id)
        if current is None:
            return False
        table = self._table(name)
        if table.partitions is None:
            self._write(current, updated.id, updated, undo)
            return True
        destination = self._route(name, updated)
        if destination is current:
            self._write(current, updated.id, updated, undo)
        else:
            # Row movement: delete from the old partition, insert into the new one
            self._write(current, updated.id, None, undo)
            self._write(destination, updated.id, updated, undo)
        return True


class InMemoryStorageGateway:
    """
    In-memory implementation of StorageGateway for testing.

    Example:
        >>> gateway = InMemoryStorageGateway(InMemoryDatabase.from_config(config))
        >>> async with gateway.transaction() as tx:
        ...     records = await tx.claim_unpublished(config.old_table, 10)
    """

    def __init__(
        self,
        database: InMemoryDatabase | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        _undo: Undo | None = None,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._db = database or InMemoryDatabase()
        self._undo = _undo

    @property
    def database(self) -> InMemoryDatabase:
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryStorageGateway]:
        if self._undo is not None:
            yield self
            return

        undo: Undo = []
        bound = InMemoryStorageGateway(self._db, tracer=self._tracer, _undo=undo)
        try:
            yield bound
        except BaseException:
            for restore in reversed(undo):
                restore()
            raise

    async def _apply(
        self,
        operation: str,
        table: str,
        fn: Callable[[Undo], T],
    ) -> T:
        """Run a synchronous mutation atomically, joining the open transaction."""
        with self._tracer.span(
            f"outboxrelay.storage.{operation}",
            {ATTR_TABLE: table, ATTR_DB_OPERATION: operation, ATTR_DB_SYSTEM: "memory"},
        ):
            self._db.check_failure(operation)
            delay = self._db.delay_for(operation)
            if delay:
                await asyncio.sleep(delay)
            async with self._db.lock:
                undo: Undo = []
                try:
                    result = fn(undo)
                except BaseException:
                    for restore in reversed(undo):
                        restore()
                    raise
                if self._undo is not None:
                    self._undo.extend(undo)
                return result

    # =========================================================================
    # Rows
    # =========================================================================

    async def insert(self, table: str, payload: str) -> int:
        def do_insert(undo: Undo) -> int:
            target = self._db._table(table)
            record_id = target.next_id
            target.next_id += 1
            record = OutboxRecord(id=record_id, payload=payload, created_at=datetime.now(UTC))
            self._db._insert(table, record, undo)
            return record_id

        return await self._apply("insert", table, do_insert)

    async def claim_unpublished(self, table: str, limit: int) -> list[OutboxRecord]:
        def do_claim(undo: Undo) -> list[OutboxRecord]:
            now = datetime.now(UTC)
            pending = [record for record in self._db._rows(table) if record.published_at is None]
            claimed = []
            for record in pending[:limit]:
                updated = replace(record, published_at=now)
                self._db._update(table, updated, undo)
                claimed.append(replace(updated))
            return claimed

        return await self._apply("claim_unpublished", table, do_claim)

    async def revert_publish(
        self,
        table: str,
        ids: Sequence[int],
        error: str | None = None,
    ) -> int:
        def do_revert(undo: Undo) -> int:
            reverted = 0
            for record_id in ids:
                current = self._db._locate(table, record_id)
                if current is None:
                    continue
                record = current.rows[record_id]
                updated = replace(
                    record,
                    published_at=None,
                    retry_count=record.retry_count + 1,
                    last_error=error,
                )
                if self._db._update(table, updated, undo):
                    reverted += 1
            return reverted

        return await self._apply("revert_publish", table, do_revert)

    async def quarantine(self, table: str, record_id: int, reason: str) -> None:
        def do_quarantine(undo: Undo) -> None:
            current = self._db._locate(table, record_id)
            if current is None:
                raise StorageError(f'row {record_id} not found in "{table}"')
            record = current.rows[record_id]
            now = datetime.now(UTC)
            updated = replace(
                record,
                published_at=record.published_at or now,
                quarantined_at=now,
                quarantine_reason=reason,
            )
            self._db._update(table, updated, undo)

        await self._apply("quarantine", table, do_quarantine)

    async def probe_unpublished_count(self, table: str) -> int:
        return await self._apply(
            "probe_unpublished_count",
            table,
            lambda undo: sum(1 for r in self._db._rows(table) if r.published_at is None),
        )

    async def count_rows(self, table: str) -> int:
        return await self._apply("count_rows", table, lambda undo: len(self._db._rows(table)))

    async def count_quarantined(self, table: str) -> int:
        return await self._apply(
            "count_quarantined",
            table,
            lambda undo: sum(1 for r in self._db._rows(table) if r.is_quarantined),
        )

    async def max_identifier(self, table: str) -> int | None:
        def do_max(undo: Undo) -> int | None:
            rows = self._db._rows(table)
            return rows[-1].id if rows else None

        return await self._apply("max_identifier", table, do_max)

    async def min_identifier(self, table: str) -> int | None:
        def do_min(undo: Undo) -> int | None:
            rows = self._db._rows(table)
            return rows[0].id if rows else None

        return await self._apply("min_identifier", table, do_min)

    async def identifier_floor(self, table: str) -> int:
        return await self._apply(
            "identifier_floor", table, lambda undo: self._db._table(table).next_id
        )

    async def move_rows(self, source: str, target: str, limit: int) -> int:
        def do_move(undo: Undo) -> int:
            moved = 0
            for record in self._db._rows(source)[:limit]:
                current = self._db._locate(source, record.id)
                assert current is not None
                self._db._write(current, record.id, None, undo)
                self._db._insert(target, replace(record), undo)
                moved += 1
            return moved

        return await self._apply("move_rows", source, do_move)

    # =========================================================================
    # DDL
    # =========================================================================

    def _ddl_table(self, operation: str, name: str) -> _Table:
        table = self._db.tables.get(name)
        if table is None:
            raise DDLError(operation, name, "relation does not exist")
        return table

    async def attach_partition(self, parent: str, child: str, mode: PartitionMode) -> None:
        def do_attach(undo: Undo) -> None:
            parent_table = self._ddl_table("attach_partition", parent)
            child_table = self._ddl_table("attach_partition", child)
            if parent_table.partitions is None:
                raise DDLError("attach_partition", parent, "table is not partitioned")
            if child_table.parent is not None or child_table.partitions is not None:
                raise DDLError("attach_partition", child, "table is already a partition")
            if mode is PartitionMode.DEFAULT and PartitionMode.DEFAULT in (
                parent_table.partitions.values()
            ):
                raise DDLError("attach_partition", parent, "a default partition already exists")

            taken = {record.id for record in self._db._rows(parent)}
            if child_table.rows.keys() & taken:
                raise DDLError(
                    "attach_partition", child, "identifiers overlap existing partitions"
                )

            parent_table.partitions[child] = mode
            child_table.parent = parent

            def restore() -> None:
                assert parent_table.partitions is not None
                parent_table.partitions.pop(child, None)
                child_table.parent = None

            undo.append(restore)

            for record in child_table.rows.values():
                if not self._db._partition_accepts(parent_table, child, record.is_published):
                    raise DDLError(
                        "attach_partition",
                        child,
                        f"row {record.id} violates the partition constraint",
                    )

        await self._apply("attach_partition", child, do_attach)

    async def detach_partition(self, parent: str, child: str) -> None:
        def do_detach(undo: Undo) -> None:
            parent_table = self._ddl_table("detach_partition", parent)
            child_table = self._ddl_table("detach_partition", child)
            if parent_table.partitions is None or child not in parent_table.partitions:
                raise DDLError("detach_partition", child, f'not a partition of "{parent}"')
            mode = parent_table.partitions.pop(child)
            child_table.parent = None

            def restore() -> None:
                assert parent_table.partitions is not None
                parent_table.partitions[child] = mode
                child_table.parent = parent

            undo.append(restore)

        await self._apply("detach_partition", child, do_detach)

    async def add_check_constraint_not_valid(
        self,
        table: str,
        name: str,
        expression: str,
    ) -> None:
        def do_add(undo: Undo) -> None:
            target = self._ddl_table("add_check_constraint", table)
            if expression not in _CHECK_PREDICATES:
                raise DDLError(
                    "add_check_constraint", table, f"unsupported expression {expression!r}"
                )
            if name in target.constraints:
                raise DDLError(
                    "add_check_constraint", table, f'constraint "{name}" already exists'
                )
            target.constraints[name] = expression
            undo.append(lambda: target.constraints.pop(name, None))

        await self._apply("add_check_constraint", table, do_add)

    async def validate_check_constraint(self, table: str, name: str) -> None:
        def do_validate(undo: Undo) -> None:
            target = self._ddl_table("validate_check_constraint", table)
            expression = target.constraints.get(name)
            if expression is None:
                raise DDLError(
                    "validate_check_constraint", table, f'constraint "{name}" does not exist'
                )
            for record in self._db._rows(table):
                if not _CHECK_PREDICATES[expression](record):
                    raise DDLError(
                        "validate_check_constraint",
                        table,
                        f'check constraint "{name}" is violated by row {record.id}',
                    )
            if name not in target.validated:
                target.validated.add(name)
                undo.append(lambda: target.validated.discard(name))

        await self._apply("validate_check_constraint", table, do_validate)

    async def drop_constraint(self, table: str, name: str) -> None:
        def do_drop(undo: Undo) -> None:
            target = self._ddl_table("drop_constraint", table)
            if name not in target.constraints:
                raise DDLError("drop_constraint", table, f'constraint "{name}" does not exist')
            expression = target.constraints.pop(name)
            was_validated = name in target.validated
            target.validated.discard(name)

            def restore() -> None:
                target.constraints[name] = expression
                if was_validated:
                    target.validated.add(name)

            undo.append(restore)

        await self._apply("drop_constraint", table, do_drop)

    async def create_replication_trigger(self, source: str, target: str) -> None:
        def do_create(undo: Undo) -> None:
            self._ddl_table("create_replication_trigger", source)
            self._ddl_table("create_replication_trigger", target)
            key = (source, target)
            if key not in self._db.triggers:
                self._db.triggers.add(key)
                undo.append(lambda: self._db.triggers.discard(key))

        await self._apply("create_replication_trigger", source, do_create)

    async def replication_trigger_exists(self, source: str, target: str) -> bool:
        return await self._apply(
            "replication_trigger_exists",
            source,
            lambda undo: (source, target) in self._db.triggers,
        )

    async def table_exists(self, table: str) -> bool:
        return await self._apply(
            "table_exists", table, lambda undo: self._db.has_table(table)
        )

    async def drop_table(self, table: str) -> None:
        def do_drop(undo: Undo) -> None:
            dropped = self._db.tables.get(table)
            if dropped is None:
                return
            names = [table, *(dropped.partitions or {})]
            removed = {name: self._db.tables.pop(name) for name in names}
            triggers = {key for key in self._db.triggers if key[0] in names}
            self._db.triggers -= triggers

            parent_table = self._db.tables.get(dropped.parent) if dropped.parent else None
            mode = None
            if parent_table is not None and parent_table.partitions is not None:
                mode = parent_table.partitions.pop(table)

            def restore() -> None:
                self._db.tables.update(removed)
                self._db.triggers.update(triggers)
                if parent_table is not None and mode is not None:
                    assert parent_table.partitions is not None
                    parent_table.partitions[table] = mode

            undo.append(restore)

        await self._apply("drop_table", table, do_drop)


__all__ = [
    "InMemoryDatabase",
    "InMemoryStorageGateway",
]
