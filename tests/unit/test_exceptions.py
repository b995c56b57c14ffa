"""
Unit tests for exceptions module.

Tests the exception hierarchy, messages and error classification.
"""

import logging

import pytest

from outboxrelay.exceptions import (
    ConfigurationError,
    CutoverStateNotFoundError,
    DDLError,
    DDLTimeoutError,
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
from outboxrelay.models import CutoverPhase, MigrationPattern, TransitionAction


class TestRelayError:
    """Tests for the base RelayError."""

    def test_base_exception(self):
        """Test that RelayError can be raised with message."""
        with pytest.raises(RelayError) as exc_info:
            raise RelayError("Test error")
        assert str(exc_info.value) == "Test error"

    def test_migration_name_in_message(self):
        error = RelayError("Test error", migration_name="orders")

        assert str(error) == "Test error migration=orders"
        assert error.message == "Test error"

    def test_default_classification(self):
        error = RelayError("Test error")

        assert error.error_code == "RELAY_ERROR"
        assert error.severity == ErrorSeverity.ERROR
        assert error.recoverability == ErrorRecoverability.FATAL

    def test_to_dict(self):
        """Test conversion for status endpoints."""
        data = StorageError("disk full", migration_name="orders").to_dict()

        assert data["message"] == "disk full"
        assert data["migration_name"] == "orders"
        assert data["error_code"] == "STORAGE_ERROR"
        assert data["classification"]["category"] == "storage"
        assert data["classification"]["recoverability"] == "fatal"


class TestErrorEnums:
    def test_should_alert(self):
        assert ErrorSeverity.CRITICAL.should_alert
        assert ErrorSeverity.ERROR.should_alert
        assert not ErrorSeverity.WARNING.should_alert
        assert not ErrorSeverity.INFO.should_alert

    def test_log_level(self):
        assert ErrorSeverity.CRITICAL.log_level == logging.CRITICAL
        assert ErrorSeverity.WARNING.log_level == logging.WARNING

    def test_only_transient_should_retry(self):
        assert ErrorRecoverability.TRANSIENT.should_retry
        assert not ErrorRecoverability.RECOVERABLE.should_retry
        assert not ErrorRecoverability.FATAL.should_retry


class TestIdentifierSpaceCollisionError:
    """Tests for IdentifierSpaceCollisionError."""

    def test_attributes_and_message(self):
        error = IdentifierSpaceCollisionError(old_max_id=1500, new_min_id=1000)

        assert error.old_max_id == 1500
        assert error.new_min_id == 1000
        assert "1500" in str(error)
        assert "1000" in str(error)

    def test_is_critical_configuration_error(self):
        """Test that a collision stops the service."""
        error = IdentifierSpaceCollisionError(old_max_id=5, new_min_id=1)

        assert isinstance(error, ConfigurationError)
        assert error.error_code == "IDENTIFIER_SPACE_COLLISION"
        assert error.severity == ErrorSeverity.CRITICAL
        assert not error.recoverability.should_retry


class TestCutoverErrors:
    """Tests for the controller's errors."""

    def test_state_not_found(self):
        error = CutoverStateNotFoundError("orders")

        assert error.migration_name == "orders"
        assert "'orders'" in str(error)
        assert error.error_code == "CUTOVER_STATE_NOT_FOUND"

    def test_invalid_transition_message(self):
        error = InvalidTransitionError(
            TransitionAction.START_UNIFICATION,
            CutoverPhase.DUAL_WRITE_OLD_READ,
            MigrationPattern.HOP,
            detail="pattern does not unify storage",
        )

        assert error.action == TransitionAction.START_UNIFICATION
        assert error.phase == CutoverPhase.DUAL_WRITE_OLD_READ
        assert error.pattern == MigrationPattern.HOP
        assert str(error) == (
            "Action start_unification is not valid for pattern hop in phase "
            "dual_write_old_read: pattern does not unify storage"
        )

    def test_precondition_failed(self):
        """Test that failed preconditions are recoverable warnings."""
        error = PreconditionFailedError(
            TransitionAction.COMPLETE_CUTOVER,
            "old table still holds unpublished rows",
            unpublished_count=12,
        )

        assert error.unpublished_count == 12
        assert error.reason == "old table still holds unpublished rows"
        assert str(error).startswith("Precondition failed for complete_cutover")
        assert error.severity == ErrorSeverity.WARNING
        assert error.recoverability == ErrorRecoverability.RECOVERABLE


class TestDDLErrors:
    def test_ddl_error(self):
        error = DDLError("attach_partition", "outbox_partitioned", "lock not available")

        assert error.operation == "attach_partition"
        assert error.table == "outbox_partitioned"
        assert str(error) == "DDL attach_partition on outbox_partitioned failed: lock not available"

    def test_ddl_timeout(self):
        error = DDLTimeoutError("start_unification", "outbox", 2.5)

        assert isinstance(error, DDLError)
        assert error.timeout == 2.5
        assert "timed out after 2.5s" in str(error)
        assert error.error_code == "DDL_TIMEOUT"


class TestStorageErrors:
    def test_transient_is_storage_error(self):
        """Test that transient errors can be caught as StorageError."""
        with pytest.raises(StorageError):
            raise TransientStorageError("deadlock detected")

    def test_recoverability(self):
        assert StorageError("x").recoverability == ErrorRecoverability.FATAL
        assert TransientStorageError("x").recoverability == ErrorRecoverability.TRANSIENT


class TestReconciliationError:
    def test_copied_count(self):
        error = ReconciliationError("lost connection", copied=2000, migration_name="orders")

        assert error.copied == 2000
        assert str(error) == "lost connection migration=orders"
        assert error.error_code == "RECONCILIATION_ERROR"


@pytest.mark.parametrize(
    "error_class",
    [
        ConfigurationError,
        StorageError,
        TransientStorageError,
    ],
)
def test_all_errors_are_relay_errors(error_class):
    """Test that every error can be caught as RelayError."""
    assert issubclass(error_class, RelayError)
    assert issubclass(error_class, Exception)
