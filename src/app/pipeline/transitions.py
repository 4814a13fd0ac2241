"""Stage transition engine -- moves an opportunity to a new pipeline stage.

One transition is exactly one write: ``{stage, probability}`` with the
probability taken from the stage table. There is no existence pre-check and
no short-circuit for a same-stage move; the store reports a missing record,
and a repeated move still bumps ``updated_at`` and notifies observers.

After a successful write the engine invalidates every cached view grouped by
stage, acknowledges the move to the user and, for terminal stages (live,
lost), sends a "deal closed" notification to the opportunity's owner.
"""

from __future__ import annotations

import structlog

from src.app.core.monitoring import record_stage_transition, track_operation
from src.app.events.bus import InvalidationBus
from src.app.events.schemas import Topic, opportunity_topic
from src.app.pipeline.errors import ValidationFailure, as_pipeline_error
from src.app.pipeline.feedback import UserFeedback
from src.app.pipeline.notifications import (
    NotificationKind,
    NotificationSink,
    deal_closed_payload,
    send_quietly,
)
from src.app.pipeline.schemas import OpportunityRead, OpportunityUpdate
from src.app.pipeline.stages import (
    Stage,
    closing_outcome,
    parse_stage,
    probability_for,
    stage_label,
)
from src.app.pipeline.store.adapter import RecordStore

logger = structlog.get_logger(__name__)

# Topics refreshed after any stage change.
TRANSITION_TOPICS: tuple[str, ...] = (
    Topic.OPPORTUNITIES,
    Topic.OPPORTUNITIES_BY_STAGE,
    Topic.PIPELINE_STATS,
    Topic.EXECUTIVE_DASHBOARD,
)


def transition_message(opportunity: OpportunityRead) -> str:
    """Acknowledgment text for an opportunity that just moved to its current stage."""
    subject = opportunity.title
    if opportunity.account_name:
        subject = f"{opportunity.title} ({opportunity.account_name})"
    return f"{subject} moved to {stage_label(opportunity.stage)}"


class StageTransitionEngine:
    """Applies stage changes and keeps probability in step with stage.

    Args:
        store: Record store holding opportunities.
        bus: Invalidation bus for read-side caches.
        notifications: Sink for deal-closed notifications (optional).
        feedback: User feedback surface for toasts.
        currency: Currency code used in notification text.
    """

    def __init__(
        self,
        store: RecordStore,
        bus: InvalidationBus,
        feedback: UserFeedback,
        notifications: NotificationSink | None = None,
        currency: str = "EUR",
    ) -> None:
        self._store = store
        self._bus = bus
        self._feedback = feedback
        self._notifications = notifications
        self._currency = currency

    async def transition_stage(
        self, opportunity_id: str, target_stage: Stage | str
    ) -> OpportunityRead:
        """Move an opportunity to ``target_stage``.

        Args:
            opportunity_id: Opportunity to move.
            target_stage: Stage enum member or its string value.

        Returns:
            The updated opportunity with the new stage and table probability.

        Raises:
            ValidationFailure: target_stage is not a known stage (no write issued).
            PipelineError: The store rejected the write; kind is preserved.
        """
        try:
            stage = parse_stage(target_stage)
        except ValidationFailure as exc:
            exc.add_context(entity_id=opportunity_id, step="parse_stage")
            self._feedback.error("Could not change stage", exc.describe())
            record_stage_transition("unknown", "rejected")
            raise

        probability = probability_for(stage)

        async with track_operation("stage_transition"):
            try:
                updated = await self._store.update_opportunity(
                    opportunity_id,
                    OpportunityUpdate(stage=stage, probability=probability),
                )
            except Exception as raw:
                exc = as_pipeline_error(raw)
                exc.add_context(
                    entity="opportunity",
                    entity_id=opportunity_id,
                    step="update_opportunity_stage",
                )
                logger.warning(
                    "stage_transition.failed",
                    opportunity_id=opportunity_id,
                    stage=stage.value,
                    kind=exc.kind.value,
                    error=exc.message,
                )
                self._feedback.error("Could not change stage", exc.describe())
                record_stage_transition(stage.value, "failed")
                raise exc

        logger.info(
            "stage_transition.applied",
            opportunity_id=opportunity_id,
            stage=stage.value,
            probability=probability,
        )
        record_stage_transition(stage.value, "applied")

        await self._bus.invalidate(
            [*TRANSITION_TOPICS, opportunity_topic(opportunity_id)],
            source="stage_transition",
        )

        self._feedback.success("Stage updated", transition_message(updated))

        outcome = closing_outcome(stage)
        if outcome is not None:
            await send_quietly(
                self._notifications,
                updated.owner_id,
                NotificationKind.DEAL_CLOSED,
                deal_closed_payload(updated, outcome, self._currency),
            )

        return updated
