"""Redis Streams channel sink.

Each published row becomes one stream entry added with XADD. Requires the
``redis`` extra::

    pip install outboxrelay[redis]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from outboxrelay.models import PublishResult
from outboxrelay.observability import SpanKindEnum, Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
)

logger = logging.getLogger(__name__)


@dataclass
class RedisSinkConfig:
    """Configuration for the Redis Streams sink.

    Attributes:
        redis_url: Redis connection URL (e.g., "redis://localhost:6379")
        stream_name: Stream the payloads are appended to
        payload_field: Entry field holding the payload
        max_len: Approximate stream length cap (None = unbounded)
        socket_timeout: Socket timeout in seconds
        socket_connect_timeout: Socket connection timeout in seconds
        single_connection_client: Use a single connection instead of a pool.
            Useful for testing to avoid event loop issues.
    """

    redis_url: str = "redis://localhost:6379"
    stream_name: str = "outbox:stream"
    payload_field: str = "payload"
    max_len: int | None = None
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    single_connection_client: bool = False


class RedisStreamSink:
    """
    Channel sink appending payloads to a Redis stream.

    Connection errors are reported as publish failures, so the row is
    reverted and retried on a later cycle.

    Example:
        >>> sink = RedisStreamSink(RedisSinkConfig(stream_name="orders"))
        >>> await sink.connect()
        >>> await sink.publish('{"order": "ORD-1"}')
        >>> await sink.close()
    """

    def __init__(
        self,
        config: RedisSinkConfig | None = None,
        *,
        client: aioredis.Redis | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._config = config or RedisSinkConfig()
        self._redis = client
        self._owns_client = client is None
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.published_count = 0

    @property
    def config(self) -> RedisSinkConfig:
        return self._config

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=self._config.socket_timeout,
            socket_connect_timeout=self._config.socket_connect_timeout,
            single_connection_client=self._config.single_connection_client,
        )
        await self._redis.ping()
        logger.info(
            "Connected to Redis",
            extra={"redis_url": self._config.redis_url, "stream": self._config.stream_name},
        )

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, payload: str) -> PublishResult:
        with self._tracer.span_with_kind(
            "outboxrelay.sink.publish",
            SpanKindEnum.PRODUCER,
            {
                ATTR_MESSAGING_SYSTEM: "redis",
                ATTR_MESSAGING_DESTINATION: self._config.stream_name,
            },
        ) as span:
            try:
                await self.connect()
                assert self._redis is not None
                message_id = await self._redis.xadd(
                    name=self._config.stream_name,
                    fields={self._config.payload_field: payload},
                    maxlen=self._config.max_len,
                    approximate=True,
                )
            except RedisError as e:
                if span:
                    span.record_exception(e)
                logger.warning("XADD to %s failed: %s", self._config.stream_name, e)
                return PublishResult.failure(f"redis: {e}")

            self.published_count += 1
            logger.debug("Published to %s as %s", self._config.stream_name, message_id)
            return PublishResult.success()


__all__ = ["RedisSinkConfig", "RedisStreamSink"]
