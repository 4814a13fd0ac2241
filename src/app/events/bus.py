"""In-process invalidation bus -- explicit publish/subscribe for cache topics.

Writers call ``invalidate(topics)`` after a successful write; read-side caches
(the pipeline aggregator, the Redis relay) subscribe to the topics they
depend on. Delivery is at-least-once from the reader's point of view:
redundant invalidations are harmless, so a failing handler is logged and the
remaining handlers still run.
"""

from __future__ import annotations

import inspect
import itertools
import uuid
from collections.abc import Awaitable, Callable, Iterable

import structlog

from src.app.events.schemas import InvalidationEvent, Topic

logger = structlog.get_logger(__name__)

InvalidationHandler = Callable[[InvalidationEvent], Awaitable[None] | None]


class InvalidationBus:
    """Topic-keyed observer registry.

    Args:
        origin: Identifier stamped on locally published events (defaults to a
            random per-process id).
    """

    def __init__(self, origin: str | None = None) -> None:
        self.origin = origin or uuid.uuid4().hex
        self._subscriptions: dict[int, tuple[frozenset[str], InvalidationHandler]] = {}
        self._ids = itertools.count()

    def subscribe(
        self, topics: str | Iterable[str], handler: InvalidationHandler
    ) -> Callable[[], None]:
        """Register ``handler`` for events touching any of ``topics``.

        Args:
            topics: One topic, several topics, or Topic.WILDCARD.
            handler: Sync or async callable receiving the InvalidationEvent.

        Returns:
            Callable that removes the subscription.
        """
        topic_set = frozenset([topics] if isinstance(topics, str) else topics)
        sub_id = next(self._ids)
        self._subscriptions[sub_id] = (topic_set, handler)

        def unsubscribe() -> None:
            self._subscriptions.pop(sub_id, None)

        return unsubscribe

    async def invalidate(
        self,
        topics: Iterable[str],
        *,
        source: str | None = None,
        origin: str | None = None,
    ) -> InvalidationEvent:
        """Publish an invalidation event and deliver it to matching subscribers.

        Args:
            topics: Topics whose cached reads are now stale.
            source: Operation that caused the change.
            origin: Publisher id; defaults to this bus's origin. The Redis
                relay passes the remote origin when replaying.

        Returns:
            The delivered InvalidationEvent.
        """
        event = InvalidationEvent(
            topics=list(topics), source=source, origin=origin or self.origin
        )
        await self.dispatch(event)
        return event

    async def dispatch(self, event: InvalidationEvent) -> int:
        """Deliver an already-built event. Returns the number of handlers run."""
        delivered = 0
        # Snapshot: handlers may unsubscribe while we iterate.
        for topic_set, handler in list(self._subscriptions.values()):
            if Topic.WILDCARD not in topic_set and topic_set.isdisjoint(event.topics):
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.warning(
                    "invalidation.handler_failed",
                    topics=event.topics,
                    event_id=event.event_id,
                    exc_info=True,
                )

        logger.debug(
            "invalidation.dispatched",
            topics=event.topics,
            source=event.source,
            delivered=delivered,
        )
        return delivered
