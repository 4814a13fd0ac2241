"""Redis Streams relay that fans invalidations out across processes.

Each API worker has its own InvalidationBus and its own read caches. The relay
forwards locally published events to a shared Redis stream (XADD with
approximate trimming) and replays events published by other workers onto the
local bus, skipping events that carry its own origin.

Note: This module uses the raw redis.asyncio.Redis client because it needs
XADD, XREAD and XREVRANGE directly.
"""

from __future__ import annotations

import asyncio

import redis.asyncio as aioredis
import structlog

from src.app.events.bus import InvalidationBus
from src.app.events.schemas import InvalidationEvent, Topic

logger = structlog.get_logger(__name__)


class RedisInvalidationRelay:
    """Bridge between a local InvalidationBus and a shared Redis stream.

    Args:
        redis: Raw async Redis client.
        bus: Local bus to forward from and replay onto.
        stream: Stream key shared by every worker.
        maxlen: Approximate stream length cap.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        bus: InvalidationBus,
        *,
        stream: str = "pipeline:invalidations",
        maxlen: int = 1000,
    ) -> None:
        self._redis = redis
        self._bus = bus
        self._stream = stream
        self._maxlen = maxlen
        self._last_id: str | None = None
        self._running = False
        self._unsubscribe = None

    def attach(self) -> None:
        """Start forwarding local events to the stream."""
        if self._unsubscribe is None:
            self._unsubscribe = self._bus.subscribe(Topic.WILDCARD, self._forward)

    def detach(self) -> None:
        """Stop forwarding and stop the poll loop."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._running = False

    async def _forward(self, event: InvalidationEvent) -> None:
        # Events replayed from other workers are already on the stream.
        if event.origin != self._bus.origin:
            return
        try:
            message_id = await self._redis.xadd(
                self._stream,
                event.to_stream_dict(),
                maxlen=self._maxlen,
                approximate=True,
            )
        except aioredis.RedisError as exc:
            # Local caches are already invalidated; only remote workers miss out.
            logger.warning(
                "invalidation_relay.forward_failed",
                stream=self._stream,
                topics=event.topics,
                error=str(exc),
            )
            return
        logger.debug(
            "invalidation_relay.forwarded",
            stream=self._stream,
            event_id=event.event_id,
            message_id=message_id,
        )

    async def _resolve_start(self) -> str:
        """Pin the read position to the newest entry, or the stream start when empty."""
        entries = await self._redis.xrevrange(self._stream, count=1)
        self._last_id = entries[0][0] if entries else "0-0"
        logger.debug(
            "invalidation_relay.start_resolved",
            stream=self._stream,
            last_id=self._last_id,
        )
        return self._last_id

    async def poll(self, *, count: int = 100, block: int = 5000) -> int:
        """Read new stream entries and replay remote ones onto the local bus.

        The first call pins a concrete start id so entries added between
        polls are never skipped.

        Args:
            count: Maximum entries to read per call.
            block: Milliseconds to block waiting for new entries.

        Returns:
            Number of remote events replayed.
        """
        if self._last_id is None:
            await self._resolve_start()
        response = await self._redis.xread(
            {self._stream: self._last_id}, count=count, block=block
        )
        replayed = 0
        for _stream_key, entries in response or []:
            for message_id, data in entries:
                self._last_id = message_id
                try:
                    event = InvalidationEvent.from_stream_dict(data)
                except (KeyError, ValueError):
                    logger.warning(
                        "invalidation_relay.malformed_entry",
                        message_id=message_id,
                    )
                    continue
                if event.origin == self._bus.origin:
                    continue
                await self._bus.dispatch(event)
                replayed += 1
        return replayed

    async def run(self, *, block: int = 5000, backoff_seconds: float = 1.0) -> None:
        """Poll until detach() is called. Redis errors back off and retry."""
        self._running = True
        logger.info("invalidation_relay.started", stream=self._stream)
        while self._running:
            try:
                await self.poll(block=block)
            except aioredis.RedisError as exc:
                logger.warning("invalidation_relay.poll_failed", error=str(exc))
                await asyncio.sleep(backoff_seconds)
        logger.info("invalidation_relay.stopped", stream=self._stream)
