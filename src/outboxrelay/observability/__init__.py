"""
Observability utilities for outboxrelay.

Tracing follows a composition model: components take a ``Tracer`` and wrap
their operations in spans. Attribute constants live in
:mod:`outboxrelay.observability.attributes`.
"""

from outboxrelay.observability.attributes import (
    ATTR_ACTION,
    ATTR_ADVANCE_RESULT,
    ATTR_BATCH_SIZE,
    ATTR_CLAIMED,
    ATTR_COPIED,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DDL_OPERATION,
    ATTR_FAILED,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_MIGRATION_NAME,
    ATTR_PATTERN,
    ATTR_PHASE,
    ATTR_PUBLISHED,
    ATTR_QUARANTINED,
    ATTR_RECORD_COUNT,
    ATTR_RECORD_ID,
    ATTR_REMAINING,
    ATTR_SOURCE,
    ATTR_TABLE,
)
from outboxrelay.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Attributes
    "ATTR_ACTION",
    "ATTR_ADVANCE_RESULT",
    "ATTR_BATCH_SIZE",
    "ATTR_CLAIMED",
    "ATTR_COPIED",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DDL_OPERATION",
    "ATTR_FAILED",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MIGRATION_NAME",
    "ATTR_PATTERN",
    "ATTR_PHASE",
    "ATTR_PUBLISHED",
    "ATTR_QUARANTINED",
    "ATTR_RECORD_COUNT",
    "ATTR_RECORD_ID",
    "ATTR_REMAINING",
    "ATTR_SOURCE",
    "ATTR_TABLE",
]
