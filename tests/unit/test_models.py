"""
Unit tests for the relay data models.

Covers the pattern capability flags, the phase transition table and the
serialization of status objects.
"""

from datetime import UTC, datetime

import pytest

from outboxrelay.models import (
    CopyBatchResult,
    CutoverPhase,
    MigrationPattern,
    OutboxRecord,
    PartitionMode,
    PublisherMetrics,
    PublishResult,
    RelayStatus,
    TableCutoverState,
    TableRef,
    UnificationPhase,
)


class TestMigrationPattern:
    """Tests for the pattern capability flags."""

    @pytest.mark.parametrize(
        "pattern,pauses,unifies,reconciles,trigger",
        [
            (MigrationPattern.COP, True, False, False, False),
            (MigrationPattern.COPRA, True, True, True, False),
            (MigrationPattern.HOP, False, False, False, False),
            (MigrationPattern.HOPER, False, True, True, False),
            (MigrationPattern.HOPIA, False, True, False, True),
        ],
    )
    def test_capabilities(self, pattern, pauses, unifies, reconciles, trigger):
        assert pattern.pauses_publication is pauses
        assert pattern.unifies_storage is unifies
        assert pattern.requires_reconciliation is reconciles
        assert pattern.uses_replication_trigger is trigger


class TestCutoverPhase:
    """Tests for the phase transition table."""

    def test_source_per_phase(self):
        assert CutoverPhase.DUAL_WRITE_OLD_READ.source == TableRef.OLD
        assert CutoverPhase.PAUSED.source == TableRef.OLD
        assert CutoverPhase.DUAL_WRITE_NEW_READ.source == TableRef.NEW
        assert CutoverPhase.SINGLE_TABLE.source == TableRef.NEW

    def test_only_paused_stops_publishing(self):
        assert [phase for phase in CutoverPhase if not phase.publishes] == [CutoverPhase.PAUSED]

    def test_exhaustion_target_depends_on_pattern(self):
        """Test that pausing patterns pause and the others hand over."""
        start = CutoverPhase.DUAL_WRITE_OLD_READ

        assert start.can_transition_to(CutoverPhase.PAUSED, MigrationPattern.COP)
        assert not start.can_transition_to(CutoverPhase.DUAL_WRITE_NEW_READ, MigrationPattern.COP)
        assert start.can_transition_to(CutoverPhase.DUAL_WRITE_NEW_READ, MigrationPattern.HOPER)
        assert not start.can_transition_to(CutoverPhase.PAUSED, MigrationPattern.HOPIA)

    def test_single_table_is_terminal(self):
        for phase in CutoverPhase:
            for pattern in MigrationPattern:
                assert not CutoverPhase.SINGLE_TABLE.can_transition_to(phase, pattern)

    def test_no_way_back_to_old_read(self):
        for phase in (CutoverPhase.PAUSED, CutoverPhase.DUAL_WRITE_NEW_READ):
            assert not phase.can_transition_to(
                CutoverPhase.DUAL_WRITE_OLD_READ, MigrationPattern.HOP
            )


class TestTableCutoverState:
    """Tests for TableCutoverState."""

    def test_defaults(self):
        state = TableCutoverState(name="outbox", migration_pattern=MigrationPattern.HOP)

        assert state.current_source == TableRef.OLD
        assert state.phase == CutoverPhase.DUAL_WRITE_OLD_READ
        assert state.unification_phase == UnificationPhase.NOT_STARTED
        assert state.version == 0
        assert not state.is_finished

    def test_is_finished_without_unification(self):
        state = TableCutoverState(
            name="outbox",
            migration_pattern=MigrationPattern.COP,
            phase=CutoverPhase.SINGLE_TABLE,
        )

        assert state.is_finished

    def test_is_finished_requires_unification(self):
        """Test that unifying patterns finish only once unification completes."""
        state = TableCutoverState(
            name="outbox",
            migration_pattern=MigrationPattern.HOPER,
            phase=CutoverPhase.SINGLE_TABLE,
            unification_phase=UnificationPhase.IN_PROGRESS,
        )

        assert not state.is_finished

    def test_to_dict(self):
        created = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        state = TableCutoverState(
            name="outbox",
            migration_pattern=MigrationPattern.HOPIA,
            current_source=TableRef.NEW,
            phase=CutoverPhase.DUAL_WRITE_NEW_READ,
            version=3,
            created_at=created,
            updated_at=created,
        )

        assert state.to_dict() == {
            "name": "outbox",
            "migration_pattern": "hopia",
            "current_source": "new",
            "phase": "dual_write_new_read",
            "unification_phase": "not_started",
            "version": 3,
            "created_at": "2024-05-01T12:00:00+00:00",
            "updated_at": "2024-05-01T12:00:00+00:00",
        }


class TestSmallModels:
    def test_partition_mode_accepts(self):
        assert PartitionMode.UNPUBLISHED.accepts(published=False)
        assert not PartitionMode.UNPUBLISHED.accepts(published=True)
        assert PartitionMode.PUBLISHED.accepts(published=True)
        assert PartitionMode.DEFAULT.accepts(published=False)

    def test_outbox_record_flags(self):
        now = datetime.now(UTC)
        record = OutboxRecord(id=1, payload="a", created_at=now)

        assert not record.is_published
        assert not record.is_quarantined

        record.published_at = now
        record.quarantined_at = now
        assert record.is_published
        assert record.is_quarantined

    def test_publish_result_constructors(self):
        assert PublishResult.success() == PublishResult(ok=True)
        assert PublishResult.failure("timeout") == PublishResult(ok=False, reason="timeout")

    def test_copy_batch_result_complete(self):
        assert CopyBatchResult(copied=3, remaining=0).is_complete
        assert not CopyBatchResult(copied=3, remaining=1).is_complete

    def test_relay_status_to_dict(self):
        state = TableCutoverState(name="outbox", migration_pattern=MigrationPattern.HOP)
        status = RelayStatus(
            state=state,
            metrics=PublisherMetrics(lag=4, throughput=1.5),
            last_precondition_failure="refused",
            worker_running=True,
        )

        data = status.to_dict()

        assert data["metrics"]["lag"] == 4
        assert data["metrics"]["throughput"] == 1.5
        assert data["last_precondition_failure"] == "refused"
        assert data["worker_running"] is True
        assert data["state"]["name"] == "outbox"
