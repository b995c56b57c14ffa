"""
Outbox event envelope.

Applications may write raw string payloads, or wrap their events in an
:class:`OutboxEvent` so every payload carries an id, a type and a
timestamp the consumers can rely on.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class OutboxEvent(BaseModel):
    """
    Immutable envelope serialized into the outbox ``payload`` column.

    Attributes:
        event_id: Unique identifier, lets consumers deduplicate
        event_type: Type name used for routing downstream
        occurred_at: When the event happened (UTC)
        aggregate_id: Optional id of the entity the event is about
        data: Event body
        headers: Transport headers forwarded to the channel

    Example:
        >>> event = OutboxEvent(event_type="OrderPlaced", data={"order": "ORD-1"})
        >>> payload = event.to_payload()
        >>> OutboxEvent.from_payload(payload) == event
        True
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier",
    )
    event_type: str = Field(
        ...,
        min_length=1,
        description="Type of event",
    )
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event occurred (UTC)",
    )
    aggregate_id: str | None = Field(
        default=None,
        description="Entity the event belongs to",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event body",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Transport headers",
    )

    def to_payload(self) -> str:
        """Serialize to the JSON string stored in the outbox."""
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str) -> OutboxEvent:
        """Parse a payload written by :meth:`to_payload`."""
        return cls.model_validate_json(payload)


__all__ = ["OutboxEvent"]
