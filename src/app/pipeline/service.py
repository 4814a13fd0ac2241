"""PipelineService -- the facade the API layer calls.

Wires the stage transition engine, the lead conversion sequencer and the
aggregator around one record store and one invalidation bus, and adds the
plain CRUD flows around them (create, read, list, generic edit).
"""

from __future__ import annotations

import structlog

from src.app.config import Settings, get_settings
from src.app.events.bus import InvalidationBus
from src.app.events.schemas import opportunity_topic
from src.app.pipeline.aggregator import PipelineAggregator
from src.app.pipeline.conversion import LeadConversionSequencer
from src.app.pipeline.errors import NotFoundError, PipelineError
from src.app.pipeline.feedback import LoggingFeedback, UserFeedback
from src.app.pipeline.notifications import NotificationSink
from src.app.pipeline.schemas import (
    ConversionResult,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
    PipelineStats,
    StageInfo,
)
from src.app.pipeline.stages import (
    ACTIVE_STAGES,
    CLOSING_STAGES,
    CONVERSION_ELIGIBLE_STAGES,
    INITIAL_STAGE,
    STAGE_ORDER,
    Stage,
    probability_for,
    stage_label,
)
from src.app.pipeline.store.adapter import RecordStore
from src.app.pipeline.transitions import TRANSITION_TOPICS, StageTransitionEngine

logger = structlog.get_logger(__name__)


class PipelineService:
    """Entry point for every pipeline operation.

    Args:
        store: Record store for accounts and opportunities.
        bus: Invalidation bus shared by writers and the aggregator.
        transitions: Stage transition engine.
        conversion: Lead conversion sequencer.
        aggregator: Cached board/stats reader.
        feedback: User feedback surface for the CRUD flows.
    """

    def __init__(
        self,
        store: RecordStore,
        bus: InvalidationBus,
        transitions: StageTransitionEngine,
        conversion: LeadConversionSequencer,
        aggregator: PipelineAggregator,
        feedback: UserFeedback,
    ) -> None:
        self.store = store
        self.bus = bus
        self.transitions = transitions
        self.conversion = conversion
        self.aggregator = aggregator
        self._feedback = feedback

    # ── Engines ─────────────────────────────────────────────────────────

    async def transition_stage(
        self, opportunity_id: str, target_stage: Stage | str
    ) -> OpportunityRead:
        return await self.transitions.transition_stage(opportunity_id, target_stage)

    async def convert_to_customer(self, opportunity_id: str) -> ConversionResult:
        return await self.conversion.convert_to_customer(opportunity_id)

    async def get_opportunities_by_stage(
        self, include_lost: bool | None = None
    ) -> dict[Stage, list[OpportunityRead]]:
        return await self.aggregator.get_opportunities_by_stage(include_lost)

    async def get_pipeline_stats(self, include_lost: bool | None = None) -> PipelineStats:
        return await self.aggregator.get_pipeline_stats(include_lost)

    # ── CRUD ────────────────────────────────────────────────────────────

    async def create_opportunity(self, data: OpportunityCreate) -> OpportunityRead:
        """Create an opportunity at the initial stage with its table probability."""
        try:
            created = await self.store.create_opportunity(
                data,
                stage=INITIAL_STAGE.value,
                probability=probability_for(INITIAL_STAGE),
            )
        except PipelineError as exc:
            exc.add_context(entity="opportunity", step="create_opportunity")
            self._feedback.error("Could not create project", exc.describe())
            raise

        logger.info(
            "opportunity.created",
            opportunity_id=created.id,
            account_id=created.account_id,
            owner_id=created.owner_id,
        )
        await self.bus.invalidate(TRANSITION_TOPICS, source="create_opportunity")
        self._feedback.success("Project created", created.title)
        return created

    async def get_opportunity(self, opportunity_id: str) -> OpportunityRead:
        opportunity = await self.store.get_opportunity(opportunity_id)
        if opportunity is None:
            raise NotFoundError(
                "Opportunity not found", entity="opportunity", entity_id=opportunity_id
            )
        return opportunity

    async def list_opportunities(
        self, filters: OpportunityFilter | None = None
    ) -> list[OpportunityRead]:
        return await self.store.list_opportunities(filters)

    async def update_opportunity(
        self, opportunity_id: str, data: OpportunityUpdate
    ) -> OpportunityRead:
        """Generic edit. Every field, ``stage`` and ``probability`` included, is written as given.

        No stage rules apply: probability is not recomputed and no deal-closed
        notification is sent. Stage moves go through ``transition_stage``.
        """
        try:
            updated = await self.store.update_opportunity(opportunity_id, data)
        except PipelineError as exc:
            exc.add_context(
                entity="opportunity", entity_id=opportunity_id, step="update_opportunity"
            )
            self._feedback.error("Could not update project", exc.describe())
            raise

        logger.info(
            "opportunity.updated",
            opportunity_id=opportunity_id,
            fields=sorted(data.model_dump(exclude_none=True)),
        )
        await self.bus.invalidate(
            [*TRANSITION_TOPICS, opportunity_topic(opportunity_id)],
            source="update_opportunity",
        )
        self._feedback.success("Project updated", updated.title)
        return updated

    # ── Catalogue ───────────────────────────────────────────────────────

    @staticmethod
    def stage_catalog() -> list[StageInfo]:
        """Describe every stage in pipeline order."""
        return [
            StageInfo(
                stage=stage,
                label=stage_label(stage),
                probability=probability_for(stage),
                position=position,
                active=stage in ACTIVE_STAGES,
                conversion_eligible=stage in CONVERSION_ELIGIBLE_STAGES,
                closing_outcome=(
                    CLOSING_STAGES[stage].value if stage in CLOSING_STAGES else None
                ),
            )
            for position, stage in enumerate(STAGE_ORDER)
        ]

    def close(self) -> None:
        self.aggregator.close()


def build_pipeline_service(
    store: RecordStore,
    *,
    bus: InvalidationBus | None = None,
    notifications: NotificationSink | None = None,
    feedback: UserFeedback | None = None,
    settings: Settings | None = None,
) -> PipelineService:
    """Assemble a PipelineService from settings.

    Args:
        store: Record store implementation.
        bus: Invalidation bus (a fresh one when omitted).
        notifications: Notification sink; notifications are skipped when None.
        feedback: Feedback surface (LoggingFeedback when omitted).
        settings: Settings (the cached singleton when omitted).
    """
    settings = settings or get_settings()
    bus = bus or InvalidationBus()
    feedback = feedback or LoggingFeedback()

    transitions = StageTransitionEngine(
        store,
        bus,
        feedback,
        notifications=notifications,
        currency=settings.CURRENCY,
    )
    conversion = LeadConversionSequencer(
        store,
        bus,
        feedback,
        notifications=notifications,
        enforce_eligibility=settings.ENFORCE_CONVERSION_ELIGIBILITY,
        celebration_seconds=settings.CELEBRATION_SECONDS,
        currency=settings.CURRENCY,
    )
    aggregator = PipelineAggregator(
        store, bus, include_lost_default=settings.PIPELINE_INCLUDE_LOST
    )
    return PipelineService(store, bus, transitions, conversion, aggregator, feedback)
