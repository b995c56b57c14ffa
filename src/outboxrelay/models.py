"""
Data models for the outbox relay and its table cutover.

Enums:
    - TableRef: Logical outbox tables (old flat table, new partitioned table)
    - MigrationPattern: The five migration strength levels
    - CutoverPhase: Read/write phases of the cutover state machine
    - UnificationPhase: Progress of re-attaching the old table
    - TransitionAction: Operator-triggered transitions
    - AdvanceResult: Outcome of a compare-and-swap locator advance
    - PartitionMode: How a child table is attached to the partitioned table

Core Models:
    - OutboxRecord: A row of an outbox table
    - TableCutoverState: Persisted cutover control record
    - PublishResult: Outcome of a channel publish
    - CycleResult: Outcome of one publisher cycle
    - CopyBatchResult: Outcome of one reconciliation batch
    - TransitionResult: Outcome of a controller transition
    - PublisherMetrics: Operator-facing publisher metrics
    - RelayStatus: Combined operator status
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TableRef(Enum):
    """
    Logical outbox tables taking part in the cutover.

    Attributes:
        OLD: The original flat outbox table.
        NEW: The table partitioned by publication status.
    """

    OLD = "old"
    NEW = "new"


class MigrationPattern(Enum):
    """
    Migration strength levels.

    Each pattern is a fixed sub-path through the same cutover state machine:

        COP:   pause on exhaustion, no unification
        COPRA: pause on exhaustion, unify by reconciliation copy
        HOP:   automatic hand-over, no unification
        HOPER: automatic hand-over, unify by reconciliation copy
        HOPIA: automatic hand-over, unify by immediate attach
               (a replication trigger keeps the old table current)
    """

    COP = "cop"
    COPRA = "copra"
    HOP = "hop"
    HOPER = "hoper"
    HOPIA = "hopia"

    @property
    def pauses_publication(self) -> bool:
        """True if exhaustion of the old table pauses publication."""
        return self in (MigrationPattern.COP, MigrationPattern.COPRA)

    @property
    def unifies_storage(self) -> bool:
        """True if the old table is later attached to the new one."""
        return self in (
            MigrationPattern.COPRA,
            MigrationPattern.HOPER,
            MigrationPattern.HOPIA,
        )

    @property
    def requires_reconciliation(self) -> bool:
        """True if published rows must be copied back into the old table."""
        return self in (MigrationPattern.COPRA, MigrationPattern.HOPER)

    @property
    def uses_replication_trigger(self) -> bool:
        """True if a trigger mirrors published rows into the old table."""
        return self == MigrationPattern.HOPIA


class CutoverPhase(Enum):
    """
    Read/write phases of the cutover state machine.

    State transitions:
        DUAL_WRITE_OLD_READ -> PAUSED               (COP/COPRA, old exhausted)
        DUAL_WRITE_OLD_READ -> DUAL_WRITE_NEW_READ  (HOP/HOPER/HOPIA, old exhausted)
        DUAL_WRITE_OLD_READ -> SINGLE_TABLE         (operator, old already drained)
        PAUSED -> SINGLE_TABLE                      (operator)
        DUAL_WRITE_NEW_READ -> SINGLE_TABLE         (operator)

    Attributes:
        DUAL_WRITE_OLD_READ: Publisher claims from the old table.
        PAUSED: Old table drained; the new table is not read until an operator
            completes the cutover. Rows written late into the old table still drain.
        DUAL_WRITE_NEW_READ: Publisher claims from the new table.
        SINGLE_TABLE: Only the new table is read and written.
    """

    DUAL_WRITE_OLD_READ = "dual_write_old_read"
    PAUSED = "paused"
    DUAL_WRITE_NEW_READ = "dual_write_new_read"
    SINGLE_TABLE = "single_table"

    @property
    def source(self) -> TableRef:
        """Table the publisher reads from in this phase."""
        if self in (CutoverPhase.DUAL_WRITE_OLD_READ, CutoverPhase.PAUSED):
            return TableRef.OLD
        return TableRef.NEW

    @property
    def publishes(self) -> bool:
        """False while publication of the new table is intentionally paused."""
        return self != CutoverPhase.PAUSED

    def can_transition_to(self, target: CutoverPhase, pattern: MigrationPattern) -> bool:
        """
        Check if transition to target phase is valid for a pattern.

        Args:
            target: The phase to transition to.
            pattern: The configured migration pattern.

        Returns:
            True if the transition is valid.
        """
        if self == CutoverPhase.DUAL_WRITE_OLD_READ:
            if target == CutoverPhase.PAUSED:
                return pattern.pauses_publication
            if target == CutoverPhase.DUAL_WRITE_NEW_READ:
                return not pattern.pauses_publication
            return target == CutoverPhase.SINGLE_TABLE
        if self in (CutoverPhase.PAUSED, CutoverPhase.DUAL_WRITE_NEW_READ):
            return target == CutoverPhase.SINGLE_TABLE
        return False


class UnificationPhase(Enum):
    """Progress of attaching the old table to the partitioned table."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class TransitionAction(Enum):
    """
    Operator-triggered cutover transitions.

    Attributes:
        COMPLETE_CUTOVER: Move to SINGLE_TABLE (resumes a paused cutover).
        PREPARE_REPLICATION: Install the HOPIA replication trigger.
        START_UNIFICATION: Attach the old table as the default partition.
        FINISH_UNIFICATION: Drop the emptied published partition.
        RETIRE: Delete the control record of a finished migration.
    """

    COMPLETE_CUTOVER = "complete_cutover"
    PREPARE_REPLICATION = "prepare_replication"
    START_UNIFICATION = "start_unification"
    FINISH_UNIFICATION = "finish_unification"
    RETIRE = "retire"


class AdvanceResult(Enum):
    """Outcome of a compare-and-swap advance of the publication source."""

    OK = "ok"
    STALE = "stale"


class PartitionMode(Enum):
    """
    Partition bound used when attaching a child table.

    Attributes:
        UNPUBLISHED: FOR VALUES IN (true) on (published_at IS NULL)
        PUBLISHED: FOR VALUES IN (false) on (published_at IS NULL)
        DEFAULT: The default partition
    """

    UNPUBLISHED = "unpublished"
    PUBLISHED = "published"
    DEFAULT = "default"

    def accepts(self, published: bool) -> bool:
        """Check whether a row with the given status belongs to this bound."""
        if self == PartitionMode.UNPUBLISHED:
            return not published
        if self == PartitionMode.PUBLISHED:
            return published
        return True


@dataclass
class OutboxRecord:
    """
    A row of an outbox table.

    Attributes:
        id: Backend-assigned identifier; defines publication order
        payload: Opaque serialized event body
        created_at: Insert timestamp, never used for ordering
        published_at: Publication timestamp; None while unpublished
        retry_count: Failed publish attempts so far
        last_error: Reason of the last failed publish
        quarantined_at: When the row was quarantined (if it was)
        quarantine_reason: Why the row was quarantined
    """

    id: int
    payload: str
    created_at: datetime
    published_at: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None
    quarantined_at: datetime | None = None
    quarantine_reason: str | None = None

    @property
    def is_published(self) -> bool:
        return self.published_at is not None

    @property
    def is_quarantined(self) -> bool:
        return self.quarantined_at is not None


@dataclass(frozen=True)
class TableCutoverState:
    """
    Persisted cutover control record.

    Exactly one record exists per migration name. It is mutated only by
    conditional updates, so concurrent relay instances converge.

    Attributes:
        name: Migration name (primary key of the control table)
        migration_pattern: Pattern fixed for the lifetime of the migration
        current_source: Table the publisher claims from
        phase: Current cutover phase
        unification_phase: Progress of old table re-attachment
        version: Incremented on every mutation
        created_at: When the record was created
        updated_at: When the record last changed
    """

    name: str
    migration_pattern: MigrationPattern
    current_source: TableRef = TableRef.OLD
    phase: CutoverPhase = CutoverPhase.DUAL_WRITE_OLD_READ
    unification_phase: UnificationPhase = UnificationPhase.NOT_STARTED
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_finished(self) -> bool:
        """True once no further transition can happen."""
        if self.phase != CutoverPhase.SINGLE_TABLE:
            return False
        if self.migration_pattern.unifies_storage:
            return self.unification_phase == UnificationPhase.COMPLETE
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "name": self.name,
            "migration_pattern": self.migration_pattern.value,
            "current_source": self.current_source.value,
            "phase": self.phase.value,
            "unification_phase": self.unification_phase.value,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class PublishResult:
    """Outcome of handing one payload to the channel."""

    ok: bool
    reason: str | None = None

    @classmethod
    def success(cls) -> PublishResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> PublishResult:
        return cls(ok=False, reason=reason)


@dataclass(frozen=True)
class CycleResult:
    """
    Outcome of one publisher cycle.

    Attributes:
        source: Table the cycle claimed from
        claimed: Rows claimed
        published: Rows delivered and left marked
        failed: Rows reverted for retry
        quarantined: Rows quarantined without publishing
        paused: True if the cycle ran while the hand-over to the new table is paused
        duration_ms: Wall-clock duration of the cycle
    """

    source: TableRef
    claimed: int = 0
    published: int = 0
    failed: int = 0
    quarantined: int = 0
    paused: bool = False
    duration_ms: float = 0.0


@dataclass(frozen=True)
class CopyBatchResult:
    """Outcome of one reconciliation batch."""

    copied: int
    remaining: int

    @property
    def is_complete(self) -> bool:
        return self.remaining == 0


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a controller transition.

    Attributes:
        previous: State before the transition
        current: State after the transition
        changed: False for idempotent no-ops and lost CAS races
    """

    previous: TableCutoverState
    current: TableCutoverState
    changed: bool


@dataclass(frozen=True)
class PublisherMetrics:
    """
    Operator-facing publisher metrics.

    Attributes:
        lag: Unpublished rows waiting in the current source table
        throughput: Rows published per second over the sampling window
        quarantined_count: Quarantined rows across both tables
        published_total: Rows published by this instance
        failed_total: Failed publish attempts seen by this instance
        cycles: Cycles run by this instance
        precondition_failures: Rejected operator transitions
    """

    lag: int = 0
    throughput: float = 0.0
    quarantined_count: int = 0
    published_total: int = 0
    failed_total: int = 0
    cycles: int = 0
    precondition_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "lag": self.lag,
            "throughput": self.throughput,
            "quarantined_count": self.quarantined_count,
            "published_total": self.published_total,
            "failed_total": self.failed_total,
            "cycles": self.cycles,
            "precondition_failures": self.precondition_failures,
        }


@dataclass(frozen=True)
class RelayStatus:
    """Combined status for operators and deployment tooling."""

    state: TableCutoverState
    metrics: PublisherMetrics
    last_precondition_failure: str | None = None
    worker_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.to_dict(),
            "metrics": self.metrics.to_dict(),
            "last_precondition_failure": self.last_precondition_failure,
            "worker_running": self.worker_running,
        }


__all__ = [
    "TableRef",
    "MigrationPattern",
    "CutoverPhase",
    "UnificationPhase",
    "TransitionAction",
    "AdvanceResult",
    "PartitionMode",
    "OutboxRecord",
    "TableCutoverState",
    "PublishResult",
    "CycleResult",
    "CopyBatchResult",
    "TransitionResult",
    "PublisherMetrics",
    "RelayStatus",
]
