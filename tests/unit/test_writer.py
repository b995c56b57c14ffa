"""Unit tests for OutboxWriter."""

import logging

import pytest

from outboxrelay.events import OutboxEvent
from outboxrelay.exceptions import ConfigurationError, IdentifierSpaceCollisionError
from outboxrelay.models import MigrationPattern, TableRef, TransitionAction
from outboxrelay.observability import ATTR_TABLE, MockTracer
from outboxrelay.writer import OutboxWriter


class TestOutboxWriter:
    """Tests for writing to the outbox tables."""

    @pytest.mark.asyncio
    async def test_writes_to_new_table(self, make_relay):
        """Test that the default writer inserts into the new table."""
        relay = make_relay()
        await relay.controller.initialize()

        record_id = await relay.service.writer().write("payload")

        assert record_id == 1_000_000
        rows = relay.database.rows(relay.config.new_table)
        assert [row.payload for row in rows] == ["payload"]
        assert rows[0].published_at is None

    @pytest.mark.asyncio
    async def test_serializes_outbox_event(self, make_relay):
        """Test that an OutboxEvent is stored as its JSON payload."""
        relay = make_relay()
        await relay.controller.initialize()
        event = OutboxEvent(event_type="OrderPlaced", data={"order": "ORD-1"})

        await relay.service.writer().write(event)

        stored = relay.database.rows(relay.config.new_table)[0].payload
        assert OutboxEvent.from_payload(stored) == event

    @pytest.mark.asyncio
    async def test_serializes_mapping(self, make_relay):
        """Test that plain mappings are stored as compact JSON."""
        relay = make_relay()
        await relay.controller.initialize()

        await relay.service.writer().write({"order": "ORD-1", "total": 3})

        stored = relay.database.rows(relay.config.new_table)[0].payload
        assert stored == '{"order":"ORD-1","total":3}'

    @pytest.mark.asyncio
    async def test_write_joins_transaction(self, make_relay):
        """Test that a rolled back business transaction discards the outbox row."""
        relay = make_relay()
        await relay.controller.initialize()
        writer = relay.service.writer()

        with pytest.raises(RuntimeError):
            async with relay.gateway.transaction() as tx:
                await writer.write("payload", gateway=tx)
                raise RuntimeError("business rule violated")

        assert relay.database.rows(relay.config.new_table) == []

    @pytest.mark.asyncio
    async def test_old_table_refused_after_cutover(self, make_relay):
        """Test that the retired old table rejects writes."""
        relay = make_relay()
        await relay.controller.initialize()
        await relay.service.trigger_transition(TransitionAction.COMPLETE_CUTOVER)

        with pytest.raises(ConfigurationError):
            await relay.service.writer(TableRef.OLD).write("late")

        assert relay.database.rows(relay.config.old_table) == []

    @pytest.mark.asyncio
    async def test_old_table_write_after_hand_over_warns(self, make_relay, caplog):
        """Test that old binaries may still write during the hand-over."""
        relay = make_relay()
        await relay.controller.initialize()
        await relay.drain()

        with caplog.at_level(logging.WARNING, logger="outboxrelay.writer"):
            await relay.service.writer(TableRef.OLD).write("late")

        assert "straggler" in caplog.text
        assert len(relay.database.rows(relay.config.old_table)) == 1

    @pytest.mark.asyncio
    async def test_new_table_validates_identifier_space(self, make_relay):
        """Test that the first write to the new table checks identifier overlap."""
        relay = make_relay(MigrationPattern.HOPER, new_id_start=1)
        await relay.insert(TableRef.OLD, "a")
        await relay.repository.create_state(relay.config.name, MigrationPattern.HOPER)

        with pytest.raises(IdentifierSpaceCollisionError):
            await relay.service.writer().write("b")

        assert relay.database.rows(relay.config.new_table) == []

    @pytest.mark.asyncio
    async def test_no_validation_after_unification(self, make_relay):
        """Test that an instance started after unification writes without false collisions."""
        relay = make_relay(MigrationPattern.HOPIA)
        await relay.controller.initialize()
        await relay.service.trigger_transition(TransitionAction.PREPARE_REPLICATION)
        await relay.insert(TableRef.OLD, "a")
        await relay.insert(TableRef.NEW, "b")
        await relay.drain()
        await relay.drain()
        await relay.service.trigger_transition(TransitionAction.COMPLETE_CUTOVER)
        await relay.service.trigger_transition(TransitionAction.START_UNIFICATION)
        late = relay.spawn()

        record_id = await late.service.writer().write("c")

        assert record_id == 1_000_001
        assert late.controller.identifier_space_validated is False

    @pytest.mark.asyncio
    async def test_write_creates_span(self, gateway, config):
        """Test that writes are traced with the target table."""
        tracer = MockTracer()
        writer = OutboxWriter(gateway, config, target=TableRef.OLD, tracer=tracer)

        await writer.write("payload")

        assert tracer.span_names == ["outboxrelay.writer.write"]
        assert tracer.spans[0][1][ATTR_TABLE] == config.old_table
