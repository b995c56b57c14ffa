"""
Standard span and metric attributes for outboxrelay.

Attribute constants shared by all relay components so spans and metrics are
labeled consistently. OpenTelemetry semantic conventions are used where one
exists (database and messaging attributes).

Example:
    >>> from outboxrelay.observability.attributes import ATTR_TABLE, ATTR_BATCH_SIZE
    >>>
    >>> with tracer.span(
    ...     "outboxrelay.gateway.claim_unpublished",
    ...     {ATTR_TABLE: "outbox", ATTR_BATCH_SIZE: 100},
    ... ):
    ...     pass
"""

# =============================================================================
# Outbox Attributes
# =============================================================================

ATTR_TABLE = "outboxrelay.table"
"""Physical table name an operation runs against."""

ATTR_SOURCE = "outboxrelay.source"
"""Logical table reference (old/new) the publisher claims from."""

ATTR_RECORD_ID = "outboxrelay.record.id"
"""Identifier of a single outbox record (integer)."""

ATTR_RECORD_COUNT = "outboxrelay.record.count"
"""Number of outbox records touched by an operation."""

ATTR_BATCH_SIZE = "outboxrelay.batch.size"
"""Configured batch bound for a claim or copy."""

# =============================================================================
# Publisher Attributes
# =============================================================================

ATTR_CLAIMED = "outboxrelay.publisher.claimed"
"""Rows claimed in a publisher cycle."""

ATTR_PUBLISHED = "outboxrelay.publisher.published"
"""Rows published in a publisher cycle."""

ATTR_FAILED = "outboxrelay.publisher.failed"
"""Rows reverted after a failed publish."""

ATTR_QUARANTINED = "outboxrelay.publisher.quarantined"
"""Rows quarantined in a publisher cycle."""

# =============================================================================
# Cutover Attributes
# =============================================================================

ATTR_MIGRATION_NAME = "outboxrelay.cutover.name"
"""Name of the cutover control record."""

ATTR_PATTERN = "outboxrelay.cutover.pattern"
"""Migration pattern (cop, copra, hop, hoper, hopia)."""

ATTR_PHASE = "outboxrelay.cutover.phase"
"""Cutover phase at the time of the operation."""

ATTR_ACTION = "outboxrelay.cutover.action"
"""Operator transition action."""

ATTR_ADVANCE_RESULT = "outboxrelay.cutover.advance_result"
"""Outcome of a locator advance (ok/stale)."""

ATTR_DDL_OPERATION = "outboxrelay.ddl.operation"
"""DDL primitive being executed."""

# =============================================================================
# Reconciliation Attributes
# =============================================================================

ATTR_COPIED = "outboxrelay.reconciliation.copied"
"""Rows moved by a reconciliation batch."""

ATTR_REMAINING = "outboxrelay.reconciliation.remaining"
"""Rows still waiting in the source partition."""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (postgresql, sqlite, memory)."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name."""

# =============================================================================
# Messaging Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (redis, memory, callback)."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Destination name (stream, queue, topic)."""


__all__ = [
    "ATTR_TABLE",
    "ATTR_SOURCE",
    "ATTR_RECORD_ID",
    "ATTR_RECORD_COUNT",
    "ATTR_BATCH_SIZE",
    "ATTR_CLAIMED",
    "ATTR_PUBLISHED",
    "ATTR_FAILED",
    "ATTR_QUARANTINED",
    "ATTR_MIGRATION_NAME",
    "ATTR_PATTERN",
    "ATTR_PHASE",
    "ATTR_ACTION",
    "ATTR_ADVANCE_RESULT",
    "ATTR_DDL_OPERATION",
    "ATTR_COPIED",
    "ATTR_REMAINING",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
]
