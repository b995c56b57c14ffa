"""
outboxrelay - Transactional outbox relay with live table cutover.

This library provides:
- Batch publisher claiming outbox rows in id order and delivering them to a channel sink
- Table locator and cutover controller moving publication from a flat
  outbox table to one partitioned by publication status
- Five migration patterns (COP, COPRA, HOP, HOPER, HOPIA)
- Reconciliation job unifying the old table into the partitioned one
- PostgreSQL, SQLite and in-memory backends
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("outboxrelay")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from outboxrelay.config import MAX_BATCH_SIZE, RelayConfig
from outboxrelay.controller import CutoverController
from outboxrelay.events import OutboxEvent
from outboxrelay.exceptions import (
    ConfigurationError,
    CutoverStateNotFoundError,
    DDLError,
    DDLTimeoutError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    IdentifierSpaceCollisionError,
    InvalidTransitionError,
    PreconditionFailedError,
    ReconciliationError,
    RelayError,
    StorageError,
    TransientStorageError,
)
from outboxrelay.locator import TableLocator
from outboxrelay.metrics import RelayMetrics
from outboxrelay.models import (
    AdvanceResult,
    CopyBatchResult,
    CutoverPhase,
    CycleResult,
    MigrationPattern,
    OutboxRecord,
    PartitionMode,
    PublisherMetrics,
    PublishResult,
    RelayStatus,
    TableCutoverState,
    TableRef,
    TransitionAction,
    TransitionResult,
    UnificationPhase,
)
from outboxrelay.publisher import BatchPublisher, PublisherWorker
from outboxrelay.reconciliation import ReconciliationJob
from outboxrelay.repositories import (
    CutoverStateRepository,
    InMemoryCutoverStateRepository,
    PostgreSQLCutoverStateRepository,
    SQLiteCutoverStateRepository,
)
from outboxrelay.retry import RetryConfig
from outboxrelay.schema import get_schema, get_statements
from outboxrelay.service import RelayService
from outboxrelay.sinks import CallbackSink, ChannelSink, InMemorySink
from outboxrelay.storage import (
    InMemoryDatabase,
    InMemoryStorageGateway,
    PostgreSQLStorageGateway,
    StorageGateway,
)
from outboxrelay.writer import OutboxWriter

__all__ = [
    "__version__",
    # Configuration
    "MAX_BATCH_SIZE",
    "RelayConfig",
    "RetryConfig",
    # Models
    "AdvanceResult",
    "CopyBatchResult",
    "CutoverPhase",
    "CycleResult",
    "MigrationPattern",
    "OutboxEvent",
    "OutboxRecord",
    "PartitionMode",
    "PublisherMetrics",
    "PublishResult",
    "RelayStatus",
    "TableCutoverState",
    "TableRef",
    "TransitionAction",
    "TransitionResult",
    "UnificationPhase",
    # Components
    "BatchPublisher",
    "CutoverController",
    "OutboxWriter",
    "PublisherWorker",
    "ReconciliationJob",
    "RelayMetrics",
    "RelayService",
    "TableLocator",
    # Storage
    "StorageGateway",
    "InMemoryDatabase",
    "InMemoryStorageGateway",
    "PostgreSQLStorageGateway",
    # Repositories
    "CutoverStateRepository",
    "InMemoryCutoverStateRepository",
    "PostgreSQLCutoverStateRepository",
    "SQLiteCutoverStateRepository",
    # Sinks
    "ChannelSink",
    "CallbackSink",
    "InMemorySink",
    # Schema
    "get_schema",
    "get_statements",
    # Exceptions
    "ConfigurationError",
    "CutoverStateNotFoundError",
    "DDLError",
    "DDLTimeoutError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "IdentifierSpaceCollisionError",
    "InvalidTransitionError",
    "PreconditionFailedError",
    "ReconciliationError",
    "RelayError",
    "StorageError",
    "TransientStorageError",
]
