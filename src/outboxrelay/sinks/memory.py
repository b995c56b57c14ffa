"""In-memory channel sink.

Records every delivery in process. Suitable for tests and local
development; failures can be scripted per payload to exercise the retry
and quarantine paths.
"""

import asyncio
import logging
from collections.abc import Callable

from outboxrelay.models import PublishResult
from outboxrelay.observability import SpanKindEnum, Tracer, create_tracer
from outboxrelay.observability.attributes import ATTR_MESSAGING_SYSTEM

logger = logging.getLogger(__name__)


class InMemorySink:
    """
    Channel sink that keeps delivered payloads in a list.

    Attributes:
        published: Payloads delivered successfully, in delivery order
        attempts: Every payload handed to ``publish``, including failures

    Example:
        >>> sink = InMemorySink()
        >>> sink.fail_when(lambda payload: payload == "poison", reason="bad payload")
        >>> await sink.publish("ok")
        PublishResult(ok=True, reason=None)
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.published: list[str] = []
        self.attempts: list[str] = []
        self._failure_predicates: list[tuple[Callable[[str], bool], str]] = []
        self._fail_next = 0
        self._fail_next_reason = ""
        self._lock = asyncio.Lock()

    def fail_when(self, predicate: Callable[[str], bool], *, reason: str = "rejected") -> None:
        """Fail every publish whose payload matches ``predicate``."""
        self._failure_predicates.append((predicate, reason))

    def fail_next(self, count: int = 1, *, reason: str = "unavailable") -> None:
        """Fail the next ``count`` publishes regardless of payload."""
        self._fail_next = count
        self._fail_next_reason = reason

    def publish_count(self, payload: str) -> int:
        """Number of successful deliveries of ``payload``."""
        return self.published.count(payload)

    def clear(self) -> None:
        self.published.clear()
        self.attempts.clear()
        self._failure_predicates.clear()
        self._fail_next = 0

    async def publish(self, payload: str) -> PublishResult:
        with self._tracer.span_with_kind(
            "outboxrelay.sink.publish",
            SpanKindEnum.PRODUCER,
            {ATTR_MESSAGING_SYSTEM: "memory"},
        ):
            async with self._lock:
                self.attempts.append(payload)
                if self._fail_next > 0:
                    self._fail_next -= 1
                    return PublishResult.failure(self._fail_next_reason)
                for predicate, reason in self._failure_predicates:
                    if predicate(payload):
                        logger.debug("Scripted failure for payload: %s", reason)
                        return PublishResult.failure(reason)
                self.published.append(payload)
                return PublishResult.success()


__all__ = ["InMemorySink"]
