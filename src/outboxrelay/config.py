"""
Configuration for the outbox relay.

This module provides:
- RelayConfig: Table names, batch bounds, timeouts and retry settings
- validate_identifier: Guard for table names interpolated into SQL
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from outboxrelay.models import MigrationPattern, TableRef
from outboxrelay.retry import RetryConfig

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

MAX_BATCH_SIZE = 10_000


def validate_identifier(value: str, field_name: str) -> str:
    """
    Validate a SQL identifier.

    Table, partition and constraint names are interpolated into statements,
    so only plain (optionally schema-qualified) identifiers are accepted.

    Raises:
        ValueError: If the value is not a plain identifier
    """
    if not _IDENTIFIER.match(value):
        raise ValueError(f"{field_name} must be a plain SQL identifier, got {value!r}")
    return value


@dataclass(frozen=True)
class RelayConfig:
    """
    Configuration for a relay deployment.

    Attributes:
        name: Migration name; key of the cutover control record
        pattern: Migration pattern, fixed for the lifetime of the migration
        old_table: Physical name of the flat outbox table
        new_table: Physical name of the partitioned outbox table
        unpublished_partition: Partition of new_table holding unpublished rows
        published_partition: Partition of new_table holding published rows
        batch_size: Maximum rows claimed per publisher cycle
        max_retries: Failed publishes before a row is quarantined
        poll_interval: Seconds between cycles when the outbox is idle
        cycle_timeout: Wall-clock budget of one cycle in seconds
        publish_timeout: Seconds one sink publish may take before it counts as a
            failure; half of cycle_timeout when unset
        ddl_timeout: Budget for one operator-triggered DDL sequence in seconds
        reconciliation_batch_size: Rows moved per reconciliation batch
        throughput_window_seconds: Sliding window for throughput metrics
        unification_constraint: Check constraint used while attaching the old table
        initial_retry_delay: First backoff delay after a failed cycle
        max_retry_delay: Upper bound on the cycle backoff delay
        retry_jitter: Jitter fraction applied to backoff delays
        startup_retries: Attempts to repeat initialization after transient storage errors

    Example:
        >>> config = RelayConfig(
        ...     pattern=MigrationPattern.HOPER,
        ...     batch_size=200,
        ... )
        >>> config.table_name(TableRef.NEW)
        'outbox_partitioned'
    """

    name: str = "outbox"
    pattern: MigrationPattern = MigrationPattern.HOP

    # Tables
    old_table: str = "outbox"
    new_table: str = "outbox_partitioned"
    unpublished_partition: str = "outbox_partitioned_unpublished"
    published_partition: str = "outbox_partitioned_published"
    unification_constraint: str = "outbox_published_only"

    # Publisher
    batch_size: int = 100
    max_retries: int = 3
    poll_interval: float = 1.0
    cycle_timeout: float = 30.0
    publish_timeout: float | None = None

    # Operator operations
    ddl_timeout: float = 60.0
    reconciliation_batch_size: int = 1000

    # Metrics
    throughput_window_seconds: float = 60.0

    # Cycle-level retry
    initial_retry_delay: float = 0.5
    max_retry_delay: float = 30.0
    retry_jitter: float = 0.1
    startup_retries: int = 3

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.name:
            raise ValueError("name must not be empty")

        for field_name in (
            "old_table",
            "new_table",
            "unpublished_partition",
            "published_partition",
            "unification_constraint",
        ):
            validate_identifier(getattr(self, field_name), field_name)

        tables = {
            self.old_table,
            self.new_table,
            self.unpublished_partition,
            self.published_partition,
        }
        if len(tables) != 4:
            raise ValueError("old_table, new_table and both partitions must be distinct")

        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {self.batch_size}. "
                "Unbounded claims hold row locks for too long."
            )

        if self.max_retries < 1:
            raise ValueError(
                f"max_retries must be >= 1, got {self.max_retries}. "
                "A row is published at least once before it can be quarantined."
            )

        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")

        if self.cycle_timeout <= 0:
            raise ValueError(f"cycle_timeout must be positive, got {self.cycle_timeout}")

        if self.publish_timeout is not None and not 0 < self.publish_timeout < self.cycle_timeout:
            raise ValueError(
                "publish_timeout must be positive and below cycle_timeout "
                f"({self.cycle_timeout}), got {self.publish_timeout}"
            )

        if self.ddl_timeout <= 0:
            raise ValueError(f"ddl_timeout must be positive, got {self.ddl_timeout}")

        if not 1 <= self.reconciliation_batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"reconciliation_batch_size must be between 1 and {MAX_BATCH_SIZE}, "
                f"got {self.reconciliation_batch_size}"
            )

        if self.throughput_window_seconds <= 0:
            raise ValueError(
                "throughput_window_seconds must be positive, "
                f"got {self.throughput_window_seconds}"
            )

        # RetryConfig validates the backoff settings
        self.retry_config(self.startup_retries)

    @property
    def effective_publish_timeout(self) -> float:
        if self.publish_timeout is None:
            return self.cycle_timeout / 2
        return self.publish_timeout

    def table_name(self, ref: TableRef) -> str:
        """Physical table name for a logical table reference."""
        return self.old_table if ref is TableRef.OLD else self.new_table

    def retry_config(self, max_retries: int = 0) -> RetryConfig:
        """Backoff settings for failed cycles and startup retries."""
        return RetryConfig(
            max_retries=max_retries,
            initial_delay=self.initial_retry_delay,
            max_delay=self.max_retry_delay,
            jitter=self.retry_jitter,
        )


__all__ = [
    "MAX_BATCH_SIZE",
    "RelayConfig",
    "validate_identifier",
]
