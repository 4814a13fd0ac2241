"""Invalidation event schemas -- the "topic changed" messages writers publish.

Topics are opaque strings. Collection-level topics are the Topic constants;
record-level topics are built with opportunity_topic()/account_topic().
Events serialize to flat string dicts for Redis Streams and deserialize back
losslessly.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


class Topic:
    """Collection-level invalidation topics."""

    OPPORTUNITIES = "opportunities"
    OPPORTUNITIES_BY_STAGE = "opportunities-by-stage"
    PIPELINE_STATS = "pipeline-stats"
    ACCOUNTS = "accounts"
    EXECUTIVE_DASHBOARD = "executive-dashboard"

    # Subscribing to WILDCARD receives every event.
    WILDCARD = "*"


def opportunity_topic(opportunity_id: str) -> str:
    """Record-level topic for a single opportunity."""
    return f"{Topic.OPPORTUNITIES}:{opportunity_id}"


def account_topic(account_id: str) -> str:
    """Record-level topic for a single account."""
    return f"{Topic.ACCOUNTS}:{account_id}"


class InvalidationEvent(BaseModel):
    """Signal that cached reads for the listed topics are stale.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        topics: Topics whose cached reads must be refreshed.
        source: Operation that caused the change (e.g. "stage_transition").
        origin: Process identifier of the publisher, used by the Redis relay
            to skip its own events when replaying the shared stream.
        timestamp: UTC creation time.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topics: list[str]
    source: str | None = None
    origin: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("topics")
    @classmethod
    def _dedupe_topics(cls, topics: list[str]) -> list[str]:
        """Drop blanks and duplicates, keep first-seen order."""
        return list(dict.fromkeys(t for t in topics if t))

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for XADD."""
        return {
            "event_id": self.event_id,
            "topics": ",".join(self.topics),
            "source": self.source or "",
            "origin": self.origin or "",
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> InvalidationEvent:
        """Reverse of ``to_stream_dict()``."""
        return cls(
            event_id=raw["event_id"],
            topics=[t for t in raw.get("topics", "").split(",") if t],
            source=raw.get("source") or None,
            origin=raw.get("origin") or None,
            timestamp=datetime.fromisoformat(raw["timestamp"]),
        )
