"""Pipeline aggregator -- read-side grouping and rollup statistics.

The pure functions ``group_by_stage`` and ``compute_pipeline_stats`` do the
math. PipelineAggregator wraps them with a read cache keyed by
``include_lost`` that is dropped whenever the invalidation bus reports a
change to opportunities, stage grouping or pipeline stats.

A generation counter guards the cache: a read that started before an
invalidation may finish after it, and its result must not be stored.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.app.events.bus import InvalidationBus
from src.app.events.schemas import InvalidationEvent, Topic
from src.app.pipeline.schemas import (
    OpportunityFilter,
    OpportunityRead,
    PipelineStats,
    StageBreakdown,
)
from src.app.pipeline.stages import STAGE_ORDER, Stage
from src.app.pipeline.store.adapter import RecordStore

logger = structlog.get_logger(__name__)

CACHE_TOPICS: tuple[str, ...] = (
    Topic.OPPORTUNITIES,
    Topic.OPPORTUNITIES_BY_STAGE,
    Topic.PIPELINE_STATS,
)


def _newest_first(opportunities: Iterable[OpportunityRead]) -> list[OpportunityRead]:
    return sorted(
        opportunities,
        key=lambda o: o.created_at.timestamp() if o.created_at else float("-inf"),
        reverse=True,
    )


def group_by_stage(
    opportunities: Iterable[OpportunityRead],
) -> dict[Stage, list[OpportunityRead]]:
    """Group opportunities into a map with an entry for every stage.

    Keys follow pipeline order; stages with no opportunities map to an empty
    list. Each list is newest first.
    """
    grouped: dict[Stage, list[OpportunityRead]] = {stage: [] for stage in STAGE_ORDER}
    for opp in _newest_first(opportunities):
        grouped[opp.stage].append(opp)
    return grouped


def _copy_board(
    board: dict[Stage, list[OpportunityRead]],
) -> dict[Stage, list[OpportunityRead]]:
    return {stage: [opp.model_copy() for opp in items] for stage, items in board.items()}


def _copy_stats(stats: PipelineStats) -> PipelineStats:
    return stats.model_copy(deep=True)


def compute_pipeline_stats(opportunities: Iterable[OpportunityRead]) -> PipelineStats:
    """Count, total, probability-weighted total and average deal size.

    The average is 0 when there are no opportunities.
    """
    by_stage = {stage: StageBreakdown() for stage in STAGE_ORDER}
    total_count = 0
    total_value = 0.0
    weighted_value = 0.0

    for opp in opportunities:
        value = opp.value or 0.0
        total_count += 1
        total_value += value
        weighted_value += value * opp.probability / 100
        bucket = by_stage[opp.stage]
        bucket.count += 1
        bucket.value += value

    avg_deal_size = total_value / total_count if total_count else 0.0

    return PipelineStats(
        total_opportunities=total_count,
        total_value=total_value,
        weighted_value=weighted_value,
        avg_deal_size=avg_deal_size,
        by_stage=by_stage,
    )


class PipelineAggregator:
    """Cached board and stats reads over the record store.

    Args:
        store: Record store holding opportunities.
        bus: Invalidation bus; when given, the cache subscribes to it.
        include_lost_default: Whether lost deals are included when the
            caller does not say.
    """

    def __init__(
        self,
        store: RecordStore,
        bus: InvalidationBus | None = None,
        include_lost_default: bool = False,
    ) -> None:
        self._store = store
        self._include_lost_default = include_lost_default
        self._cache: dict[tuple[str, bool], Any] = {}
        self._generation = 0
        self._unsubscribe = bus.subscribe(CACHE_TOPICS, self._on_invalidate) if bus else None

    def close(self) -> None:
        """Detach from the bus."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_invalidate(self, event: InvalidationEvent) -> None:
        self._generation += 1
        self._cache.clear()
        logger.debug(
            "aggregator.cache_invalidated",
            topics=event.topics,
            generation=self._generation,
        )

    def invalidate(self) -> None:
        """Drop cached results without a bus event."""
        self._generation += 1
        self._cache.clear()

    def _resolve(self, include_lost: bool | None) -> bool:
        return self._include_lost_default if include_lost is None else include_lost

    async def _load(self, include_lost: bool) -> list[OpportunityRead]:
        filters = OpportunityFilter(exclude_stages=[] if include_lost else [Stage.LOST])
        return await self._store.list_opportunities(filters)

    async def _cached(self, kind: str, include_lost: bool, build, copy):
        """Serve ``kind`` from the cache, handing callers a copy of the cached value."""
        key = (kind, include_lost)
        if key in self._cache:
            return copy(self._cache[key])

        generation = self._generation
        result = build(await self._load(include_lost))
        if generation == self._generation:
            self._cache[key] = result
        else:
            logger.debug("aggregator.stale_read_discarded", kind=kind)
        return copy(result)

    async def get_opportunities_by_stage(
        self, include_lost: bool | None = None
    ) -> dict[Stage, list[OpportunityRead]]:
        """Non-deleted opportunities grouped by stage, every stage present."""
        return await self._cached(
            "by_stage", self._resolve(include_lost), group_by_stage, _copy_board
        )

    async def get_pipeline_stats(self, include_lost: bool | None = None) -> PipelineStats:
        """Rollup statistics over non-deleted opportunities."""
        return await self._cached(
            "stats", self._resolve(include_lost), compute_pipeline_stats, _copy_stats
        )
