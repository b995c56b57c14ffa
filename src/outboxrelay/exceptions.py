"""
Exceptions for the outbox relay.

Exception Hierarchy:
    RelayError (base)
    +-- ConfigurationError
    |   +-- IdentifierSpaceCollisionError
    +-- CutoverStateNotFoundError
    +-- InvalidTransitionError
    +-- PreconditionFailedError
    +-- DDLError
    |   +-- DDLTimeoutError
    +-- StorageError
    |   +-- TransientStorageError
    +-- ReconciliationError

Every RelayError carries an ErrorClassification (severity, recoverability,
error code, suggested action) so operators and the publisher loop can decide
how to react without matching on exception types.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from outboxrelay.models import CutoverPhase, MigrationPattern, TransitionAction


class ErrorSeverity(Enum):
    """
    Severity level of relay errors.

    Attributes:
        CRITICAL: Data integrity at stake; the service must not run.
        ERROR: Significant failure that needs operator attention.
        WARNING: Issue that should be monitored but may self-resolve.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """The corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for relay errors.

    Attributes:
        RECOVERABLE: Operator action resolves it; never retried automatically.
        TRANSIENT: May resolve on retry; the publisher loop backs off and retries.
        FATAL: No recovery without configuration or code changes.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


class RelayError(Exception):
    """
    Base exception for all relay errors.

    Attributes:
        message: Human-readable error description.
        migration_name: Name of the cutover control record involved, if any.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RELAY_ERROR",
        category="general",
        suggested_action="Review relay logs",
    )

    def __init__(self, message: str, *, migration_name: str | None = None) -> None:
        self.message = message
        self.migration_name = migration_name
        super().__init__(message)

    def __str__(self) -> str:
        if self.migration_name:
            return f"{self.message} migration={self.migration_name}"
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for status endpoints."""
        return {
            "message": self.message,
            "migration_name": self.migration_name,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class ConfigurationError(RelayError):
    """Raised when the deployment configuration cannot be used safely."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CONFIGURATION_ERROR",
        category="configuration",
        suggested_action="Fix the relay configuration and restart",
    )


class IdentifierSpaceCollisionError(ConfigurationError):
    """
    Raised when the new table's identifiers could overlap the old table's.

    Storage unification attaches the old table under the new one, so their
    identifier domains must be disjoint. Detected at startup.

    Attributes:
        old_max_id: Highest identifier in the old table.
        new_min_id: Lowest identifier the new table holds or will generate.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="IDENTIFIER_SPACE_COLLISION",
        category="configuration",
        suggested_action="Restart the new table's id sequence above the old table's maximum id",
    )

    def __init__(self, old_max_id: int, new_min_id: int, *, migration_name: str | None = None):
        self.old_max_id = old_max_id
        self.new_min_id = new_min_id
        super().__init__(
            f"New table identifiers start at {new_min_id} but the old table "
            f"already holds id {old_max_id}",
            migration_name=migration_name,
        )


class CutoverStateNotFoundError(RelayError):
    """Raised when the cutover control record does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CUTOVER_STATE_NOT_FOUND",
        category="state",
        suggested_action="Initialize the cutover controller before starting publishers",
    )

    def __init__(self, migration_name: str) -> None:
        super().__init__(
            f"No cutover state recorded for {migration_name!r}",
            migration_name=migration_name,
        )


class InvalidTransitionError(RelayError):
    """
    Raised when an action is not valid for the pattern or current phase.

    Attributes:
        action: The requested action.
        phase: The phase the migration was in.
        pattern: The configured migration pattern.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_TRANSITION",
        category="state",
        suggested_action="Check the migration pattern's transition path",
    )

    def __init__(
        self,
        action: TransitionAction,
        phase: CutoverPhase,
        pattern: MigrationPattern,
        *,
        detail: str | None = None,
        migration_name: str | None = None,
    ) -> None:
        self.action = action
        self.phase = phase
        self.pattern = pattern
        message = (
            f"Action {action.value} is not valid for pattern {pattern.value} "
            f"in phase {phase.value}"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, migration_name=migration_name)


class PreconditionFailedError(RelayError):
    """
    Raised when an operator transition's precondition does not hold.

    The state is left unchanged and the transition is never retried
    automatically.

    Attributes:
        action: The requested action.
        reason: Which precondition failed.
        unpublished_count: Unpublished rows found in the old table, if probed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PRECONDITION_FAILED",
        category="cutover",
        suggested_action="Let publishers drain the old table, then retry the transition",
    )

    def __init__(
        self,
        action: TransitionAction,
        reason: str,
        *,
        unpublished_count: int | None = None,
        migration_name: str | None = None,
    ) -> None:
        self.action = action
        self.reason = reason
        self.unpublished_count = unpublished_count
        super().__init__(
            f"Precondition failed for {action.value}: {reason}",
            migration_name=migration_name,
        )


class DDLError(RelayError):
    """
    Raised when a schema operation fails.

    Attributes:
        operation: The DDL primitive that failed.
        table: The table it targeted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DDL_ERROR",
        category="ddl",
        suggested_action="Inspect the schema and rerun the operator action",
    )

    def __init__(self, operation: str, table: str, reason: str) -> None:
        self.operation = operation
        self.table = table
        self.reason = reason
        super().__init__(f"DDL {operation} on {table} failed: {reason}")


class DDLTimeoutError(DDLError):
    """Raised when a DDL sequence exceeds its timeout."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DDL_TIMEOUT",
        category="ddl",
        suggested_action="Retry during low traffic or raise ddl_timeout",
    )

    def __init__(self, operation: str, table: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(operation, table, f"timed out after {timeout:.1f}s")


class StorageError(RelayError):
    """Raised when the storage backend rejects an operation."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="STORAGE_ERROR",
        category="storage",
        suggested_action="Check the outbox schema and database logs",
    )


class TransientStorageError(StorageError):
    """Raised for deadlocks, lock timeouts and lost connections."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="TRANSIENT_STORAGE_ERROR",
        category="storage",
        suggested_action="None; the publisher retries with backoff",
    )


class ReconciliationError(RelayError):
    """
    Raised when the reconciliation job cannot make progress.

    Attributes:
        copied: Rows committed before the failure.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RECONCILIATION_ERROR",
        category="reconciliation",
        suggested_action="Fix the cause and rerun the job; committed batches are kept",
    )

    def __init__(self, message: str, copied: int, *, migration_name: str | None = None):
        self.copied = copied
        super().__init__(message, migration_name=migration_name)


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RelayError",
    "ConfigurationError",
    "IdentifierSpaceCollisionError",
    "CutoverStateNotFoundError",
    "InvalidTransitionError",
    "PreconditionFailedError",
    "DDLError",
    "DDLTimeoutError",
    "StorageError",
    "TransientStorageError",
    "ReconciliationError",
]
