"""
Channel sinks for outboxrelay.

- ChannelSink: Protocol the publisher depends on
- InMemorySink: Records deliveries; scripted failures for tests
- CallbackSink: Wraps a plain sync or async function

The Redis Streams sink lives in :mod:`outboxrelay.sinks.redis` and needs
the ``redis`` extra.
"""

from outboxrelay.sinks.callback import CallbackSink, PublishFunc
from outboxrelay.sinks.interface import ChannelSink
from outboxrelay.sinks.memory import InMemorySink

__all__ = [
    "ChannelSink",
    "InMemorySink",
    "CallbackSink",
    "PublishFunc",
]
