"""Cache invalidation backbone.

Writers publish "topic changed" events; read-side caches subscribe. An
optional Redis Streams relay carries events between worker processes.

Exports:
    InvalidationBus: In-process topic-keyed publish/subscribe.
    InvalidationEvent: Event model with stream (de)serialization.
    Topic: Collection-level topic names.
    opportunity_topic / account_topic: Record-level topic builders.
    RedisInvalidationRelay: Cross-process fan-out via Redis Streams.
"""

from __future__ import annotations

from src.app.events.bus import InvalidationBus
from src.app.events.schemas import (
    InvalidationEvent,
    Topic,
    account_topic,
    opportunity_topic,
)

__all__ = [
    "InvalidationBus",
    "InvalidationEvent",
    "RedisInvalidationRelay",
    "Topic",
    "account_topic",
    "opportunity_topic",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the relay so the bus does not import redis."""
    if name == "RedisInvalidationRelay":
        from src.app.events.relay import RedisInvalidationRelay

        return RedisInvalidationRelay
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
