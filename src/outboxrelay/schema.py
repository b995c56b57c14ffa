"""
SQL schema for the outbox relay.

Table names come from :class:`RelayConfig`, so the DDL is generated rather
than shipped as static files.

Tables:
    - outbox: The flat outbox table (the old table)
    - outbox_partitioned: The new table, list-partitioned on
      ``(published_at IS NULL)`` with one partition per publication status
    - cutover_state: The cutover control table

Supported backends:
    - postgresql (default): All tables
    - sqlite: The cutover control table only

Usage:
    from outboxrelay.schema import get_schema, get_statements

    # Combined script for psql
    print(get_schema("all", config=config, new_id_start=10_000_000))

    # Statement by statement through SQLAlchemy
    async with engine.begin() as conn:
        for statement in get_statements("all", config=config):
            await conn.execute(text(statement))
"""

from typing import Literal

from outboxrelay.config import RelayConfig, validate_identifier
from outboxrelay.repositories.cutover_state import DEFAULT_STATE_TABLE

SchemaName = Literal["outbox", "outbox_partitioned", "cutover_state", "all"]

BackendName = Literal["postgresql", "sqlite"]

_OUTBOX_COLUMNS = """
    payload TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    published_at TIMESTAMPTZ,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    quarantined_at TIMESTAMPTZ,
    quarantine_reason TEXT"""

_STATE_CHECKS = """
    CONSTRAINT chk_{short}_source CHECK (current_source IN ('old', 'new')),
    CONSTRAINT chk_{short}_phase CHECK (
        phase IN ('dual_write_old_read', 'paused', 'dual_write_new_read', 'single_table')
    ),
    CONSTRAINT chk_{short}_unification CHECK (
        unification_phase IN ('not_started', 'in_progress', 'complete')
    )"""


def _short(table: str) -> str:
    """Table name without its schema, for naming indexes and constraints."""
    return table.rsplit(".", 1)[-1]


def _outbox(config: RelayConfig) -> list[str]:
    old = config.old_table
    return [
        f"""CREATE TABLE IF NOT EXISTS {old} (
    id BIGSERIAL PRIMARY KEY,{_OUTBOX_COLUMNS}
)""",
        f"""CREATE INDEX IF NOT EXISTS idx_{_short(old)}_unpublished
    ON {old} (id) WHERE published_at IS NULL""",
    ]


def _outbox_partitioned(config: RelayConfig, new_id_start: int) -> list[str]:
    new = config.new_table
    sequence = f"{new}_id_seq"
    return [
        f"CREATE SEQUENCE IF NOT EXISTS {sequence} START WITH {new_id_start}",
        # Partition key is an expression, so no primary key on id; ids are
        # unique because they come from one sequence
        f"""CREATE TABLE IF NOT EXISTS {new} (
    id BIGINT NOT NULL DEFAULT nextval('{sequence}'),{_OUTBOX_COLUMNS}
) PARTITION BY LIST ((published_at IS NULL))""",
        f"ALTER SEQUENCE {sequence} OWNED BY {new}.id",
        f"""CREATE TABLE IF NOT EXISTS {config.unpublished_partition}
    PARTITION OF {new} FOR VALUES IN (true)""",
        f"""CREATE TABLE IF NOT EXISTS {config.published_partition}
    PARTITION OF {new} FOR VALUES IN (false)""",
        f"CREATE INDEX IF NOT EXISTS idx_{_short(new)}_id ON {new} (id)",
    ]


def _cutover_state(table: str, backend: BackendName) -> list[str]:
    timestamp = "TIMESTAMPTZ" if backend == "postgresql" else "TEXT"
    checks = _STATE_CHECKS.format(short=_short(table))
    return [
        f"""CREATE TABLE IF NOT EXISTS {table} (
    name TEXT PRIMARY KEY,
    migration_pattern TEXT NOT NULL,
    current_source TEXT NOT NULL,
    phase TEXT NOT NULL,
    unification_phase TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    created_at {timestamp} NOT NULL,
    updated_at {timestamp} NOT NULL,{checks}
)""",
    ]


def get_statements(
    name: SchemaName = "all",
    backend: BackendName = "postgresql",
    *,
    config: RelayConfig | None = None,
    new_id_start: int = 1,
    state_table: str = DEFAULT_STATE_TABLE,
) -> list[str]:
    """
    Get the DDL statements for a schema, in execution order.

    Args:
        name: Which tables to create
        backend: The database backend (postgresql, sqlite)
        config: Supplies the outbox table names; defaults to RelayConfig()
        new_id_start: First identifier of the new table. For patterns that
                      unify storage it must exceed the old table's maximum id.
        state_table: Name of the cutover control table

    Raises:
        ValueError: If the schema is not available for the backend
    """
    config = config or RelayConfig()
    validate_identifier(state_table, "state_table")
    if new_id_start < 1:
        raise ValueError(f"new_id_start must be >= 1, got {new_id_start}")

    if backend == "sqlite":
        if name not in ("cutover_state", "all"):
            raise ValueError(
                f"Schema '{name}' is not available for backend 'sqlite'. "
                f"Available schemas: {list_schemas('sqlite')}"
            )
        return _cutover_state(state_table, backend)

    statements: list[str] = []
    if name in ("outbox", "all"):
        statements += _outbox(config)
    if name in ("outbox_partitioned", "all"):
        statements += _outbox_partitioned(config, new_id_start)
    if name in ("cutover_state", "all"):
        statements += _cutover_state(state_table, backend)
    return statements


def get_schema(
    name: SchemaName = "all",
    backend: BackendName = "postgresql",
    *,
    config: RelayConfig | None = None,
    new_id_start: int = 1,
    state_table: str = DEFAULT_STATE_TABLE,
) -> str:
    """Get a schema as one SQL script."""
    statements = get_statements(
        name,
        backend,
        config=config,
        new_id_start=new_id_start,
        state_table=state_table,
    )
    return ";\n\n".join(statements) + ";\n"


def list_schemas(backend: BackendName = "postgresql") -> list[str]:
    """List the schema names available for a backend."""
    if backend == "sqlite":
        return ["cutover_state", "all"]
    return ["outbox", "outbox_partitioned", "cutover_state", "all"]


__all__ = [
    "SchemaName",
    "BackendName",
    "get_schema",
    "get_statements",
    "list_schemas",
]
