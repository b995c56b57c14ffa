"""Channel sink interface.

A sink delivers one published-row payload to the downstream channel
(broker, queue or webhook). The relay only needs to know whether delivery
succeeded; ordering and deduplication downstream are the channel's concern.
"""

from typing import Protocol, runtime_checkable

from outboxrelay.models import PublishResult


@runtime_checkable
class ChannelSink(Protocol):
    """
    Protocol for downstream delivery.

    Implementations report failures by returning ``PublishResult.failure``.
    An exception raised from ``publish`` is treated the same way by the
    publisher, with the exception text as the reason.

    Example:
        >>> class StdoutSink:
        ...     async def publish(self, payload: str) -> PublishResult:
        ...         print(payload)
        ...         return PublishResult.success()
    """

    async def publish(self, payload: str) -> PublishResult:
        """Deliver ``payload``; return ok or fail(reason)."""
        ...


__all__ = ["ChannelSink"]
