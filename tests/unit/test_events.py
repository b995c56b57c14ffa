"""
Unit tests for the OutboxEvent envelope and payload serialization.
"""

import json
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

import pytest
from pydantic import ValidationError

from outboxrelay.events import OutboxEvent
from outboxrelay.serialization import RelayJSONEncoder, json_dumps, json_loads


class Status(Enum):
    PLACED = "placed"


class TestOutboxEvent:
    """Tests for OutboxEvent."""

    def test_defaults(self):
        """Test that id and timestamp are generated."""
        event = OutboxEvent(event_type="OrderPlaced")

        assert isinstance(event.event_id, UUID)
        assert event.occurred_at.tzinfo is not None
        assert event.aggregate_id is None
        assert event.data == {}
        assert event.headers == {}

    def test_event_type_required(self):
        with pytest.raises(ValidationError):
            OutboxEvent(event_type="")

    def test_frozen(self):
        event = OutboxEvent(event_type="OrderPlaced")

        with pytest.raises(ValidationError):
            event.event_type = "OrderCancelled"

    def test_payload_round_trip(self):
        """Test that a payload written by to_payload parses back equal."""
        event = OutboxEvent(
            event_type="OrderPlaced",
            aggregate_id="ORD-1",
            data={"total": 42, "items": ["a", "b"]},
            headers={"trace_id": "abc"},
        )

        assert OutboxEvent.from_payload(event.to_payload()) == event

    def test_payload_is_json(self):
        event_id = uuid4()
        event = OutboxEvent(
            event_id=event_id,
            event_type="OrderPlaced",
            occurred_at=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        )

        data = json.loads(event.to_payload())

        assert data["event_id"] == str(event_id)
        assert data["event_type"] == "OrderPlaced"
        assert data["occurred_at"].startswith("2024-05-01T12:00:00")


class TestJSONSerialization:
    """Tests for json_dumps and RelayJSONEncoder."""

    def test_compact_output(self):
        assert json_dumps({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_special_types(self):
        event_id = UUID("12345678-1234-5678-1234-567812345678")

        payload = json_dumps(
            {
                "id": event_id,
                "amount": Decimal("10.50"),
                "at": datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
                "day": date(2024, 5, 1),
                "status": Status.PLACED,
            }
        )

        assert json_loads(payload) == {
            "id": "12345678-1234-5678-1234-567812345678",
            "amount": "10.50",
            "at": "2024-05-01T12:00:00+00:00",
            "day": "2024-05-01",
            "status": "placed",
        }

    def test_pydantic_model(self):
        event = OutboxEvent(event_type="OrderPlaced", data={"n": 1})

        data = json_loads(json_dumps({"event": event}))

        assert data["event"]["event_type"] == "OrderPlaced"
        assert data["event"]["data"] == {"n": 1}

    def test_unknown_type_raises(self):
        with pytest.raises(TypeError):
            json.dumps({"x": object()}, cls=RelayJSONEncoder)
