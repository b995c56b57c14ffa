"""Channel sink wrapping a plain function.

Lets applications plug in a webhook client or broker producer without
writing a class. Sync and async callables are both accepted.
"""

import inspect
from collections.abc import Awaitable, Callable

from outboxrelay.models import PublishResult

PublishFunc = Callable[[str], Awaitable[PublishResult | bool | None] | PublishResult | bool | None]


class CallbackSink:
    """
    Adapts ``fn(payload)`` to the ChannelSink protocol.

    The callable may return a PublishResult, a bool, or None (treated as
    success). Exceptions propagate; the publisher turns them into failures.

    Example:
        >>> async def post(payload: str) -> bool:
        ...     response = await client.post(url, content=payload)
        ...     return response.is_success
        >>> sink = CallbackSink(post)
    """

    def __init__(self, fn: PublishFunc, *, name: str | None = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", type(fn).__name__)

    async def publish(self, payload: str) -> PublishResult:
        outcome = self._fn(payload)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, PublishResult):
            return outcome
        if outcome is False:
            return PublishResult.failure(f"{self.name} rejected the payload")
        return PublishResult.success()


__all__ = ["CallbackSink", "PublishFunc"]
