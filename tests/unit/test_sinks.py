"""
Unit tests for the channel sinks.

Tests for:
- InMemorySink scripted failures
- CallbackSink return value handling
- RedisStreamSink XADD calls and error handling (with a mocked client)
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from outboxrelay.models import PublishResult
from outboxrelay.observability import ATTR_MESSAGING_DESTINATION, MockTracer, SpanKindEnum
from outboxrelay.sinks import CallbackSink, ChannelSink, InMemorySink
from outboxrelay.sinks.redis import RedisSinkConfig, RedisStreamSink

# ============================================================================
# InMemorySink
# ============================================================================


class TestInMemorySink:
    """Tests for InMemorySink."""

    def test_satisfies_protocol(self, sink):
        assert isinstance(sink, ChannelSink)

    @pytest.mark.asyncio
    async def test_publish_is_producer_span(self):
        tracer = MockTracer()
        sink = InMemorySink(tracer=tracer)

        await sink.publish("a")

        assert tracer.span_names == ["outboxrelay.sink.publish"]
        assert tracer.span_kinds == [SpanKindEnum.PRODUCER]

    @pytest.mark.asyncio
    async def test_records_deliveries(self, sink):
        """Test that successful deliveries are kept in order."""
        await sink.publish("a")
        await sink.publish("b")

        assert sink.published == ["a", "b"]
        assert sink.attempts == ["a", "b"]

    @pytest.mark.asyncio
    async def test_fail_next(self, sink):
        """Test that the next N publishes fail regardless of payload."""
        sink.fail_next(2, reason="down")

        results = [await sink.publish(payload) for payload in ("a", "b", "c")]

        assert results == [
            PublishResult.failure("down"),
            PublishResult.failure("down"),
            PublishResult.success(),
        ]
        assert sink.published == ["c"]
        assert sink.attempts == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_fail_when(self, sink):
        """Test that matching payloads fail every time."""
        sink.fail_when(lambda payload: payload.startswith("bad"), reason="invalid")

        await sink.publish("bad-1")
        await sink.publish("good")
        await sink.publish("bad-1")

        assert sink.published == ["good"]
        assert sink.publish_count("good") == 1
        assert sink.publish_count("bad-1") == 0

    @pytest.mark.asyncio
    async def test_clear(self, sink):
        sink.fail_when(lambda payload: True)
        await sink.publish("a")

        sink.clear()
        await sink.publish("b")

        assert sink.published == ["b"]


# ============================================================================
# CallbackSink
# ============================================================================


class TestCallbackSink:
    """Tests for CallbackSink."""

    @pytest.mark.asyncio
    async def test_sync_function_returning_none(self):
        """Test that a plain function returning None counts as success."""
        received = []
        sink = CallbackSink(received.append)

        result = await sink.publish("a")

        assert result.ok
        assert received == ["a"]

    @pytest.mark.asyncio
    async def test_async_function_returning_bool(self):
        """Test that an async function's False becomes a failure naming it."""

        async def webhook(payload: str) -> bool:
            return payload != "rejected"

        sink = CallbackSink(webhook)

        assert (await sink.publish("accepted")).ok
        result = await sink.publish("rejected")
        assert not result.ok
        assert result.reason == "webhook rejected the payload"

    @pytest.mark.asyncio
    async def test_publish_result_passthrough(self):
        """Test that a returned PublishResult is used as is."""
        sink = CallbackSink(lambda payload: PublishResult.failure("quota exceeded"), name="api")

        result = await sink.publish("a")

        assert result.reason == "quota exceeded"
        assert sink.name == "api"

    @pytest.mark.asyncio
    async def test_exceptions_propagate(self):
        """Test that exceptions are left to the publisher."""

        def broken(payload: str) -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await CallbackSink(broken).publish("a")


# ============================================================================
# RedisStreamSink
# ============================================================================


@pytest.fixture
def redis_client() -> AsyncMock:
    client = AsyncMock()
    client.xadd.return_value = "1700000000000-0"
    return client


class TestRedisStreamSink:
    """Tests for RedisStreamSink with a mocked client."""

    @pytest.mark.asyncio
    async def test_publish_adds_stream_entry(self, redis_client):
        """Test that each payload becomes one XADD."""
        config = RedisSinkConfig(stream_name="orders", max_len=1000)
        sink = RedisStreamSink(config, client=redis_client, enable_tracing=False)

        result = await sink.publish('{"order":"ORD-1"}')

        assert result.ok
        assert sink.published_count == 1
        redis_client.xadd.assert_awaited_once_with(
            name="orders",
            fields={"payload": '{"order":"ORD-1"}'},
            maxlen=1000,
            approximate=True,
        )

    @pytest.mark.asyncio
    async def test_redis_error_becomes_failure(self, redis_client):
        """Test that Redis errors are reported as failures, not raised."""
        redis_client.xadd.side_effect = RedisConnectionError("connection refused")
        sink = RedisStreamSink(client=redis_client, enable_tracing=False)

        result = await sink.publish("a")

        assert not result.ok
        assert result.reason == "redis: connection refused"
        assert sink.published_count == 0

    @pytest.mark.asyncio
    async def test_connect_from_url(self, redis_client):
        """Test that the sink creates and closes its own client."""
        config = RedisSinkConfig(redis_url="redis://cache:6379/2")
        with patch(
            "outboxrelay.sinks.redis.aioredis.from_url", return_value=redis_client
        ) as from_url:
            sink = RedisStreamSink(config, enable_tracing=False)
            await sink.publish("a")
            await sink.close()

        assert from_url.call_args.args == ("redis://cache:6379/2",)
        redis_client.ping.assert_awaited_once()
        redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self, redis_client):
        """Test that a caller-owned client stays open."""
        sink = RedisStreamSink(client=redis_client, enable_tracing=False)

        await sink.close()

        redis_client.aclose.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_creates_span(self, redis_client):
        """Test that publishes are traced with the stream name."""
        tracer = MockTracer()
        sink = RedisStreamSink(
            RedisSinkConfig(stream_name="orders"), client=redis_client, tracer=tracer
        )

        await sink.publish("a")

        assert tracer.span_names == ["outboxrelay.sink.publish"]
        assert tracer.spans[0][1][ATTR_MESSAGING_DESTINATION] == "orders"
        assert tracer.span_kinds == [SpanKindEnum.PRODUCER]
