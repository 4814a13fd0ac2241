"""Lead conversion sequencer -- marks a deal signed and its account a customer.

The conversion is a short saga of independent writes, executed strictly in
order with no compensation:

1. UPDATE_ACCOUNT_STATUS     account.status -> customer (skipped if already)
2. UPDATE_OPPORTUNITY_STAGE  opportunity -> quote_signed at table probability
3. INVALIDATE_CACHES         opportunities, accounts, pipeline stats
4. NOTIFY_OWNER              "deal won" notification (fire-and-forget)
5. CELEBRATE                 cosmetic, time-bounded

Both writes are idempotent, so re-running the whole sequence is the recovery
path. If step 1 committed in this call and step 2 fails, the caller receives
PartialSequenceFailure carrying the completed steps; the account stays a
customer.
"""

from __future__ import annotations

from enum import Enum

import structlog

from src.app.core.monitoring import record_conversion, track_operation
from src.app.events.bus import InvalidationBus
from src.app.events.schemas import Topic, account_topic, opportunity_topic
from src.app.pipeline.errors import (
    NotFoundError,
    PartialSequenceFailure,
    ValidationFailure,
    as_pipeline_error,
)
from src.app.pipeline.feedback import UserFeedback
from src.app.pipeline.notifications import (
    NotificationKind,
    NotificationSink,
    deal_won_payload,
    send_quietly,
)
from src.app.pipeline.schemas import (
    AccountRead,
    AccountStatus,
    AccountUpdate,
    ConversionResult,
    OpportunityRead,
    OpportunityUpdate,
)
from src.app.pipeline.stages import (
    CONVERSION_ELIGIBLE_STAGES,
    CONVERSION_STAGE,
    Stage,
    probability_for,
    stage_label,
)
from src.app.pipeline.store.adapter import RecordStore

logger = structlog.get_logger(__name__)


class ConversionStep(str, Enum):
    """The ordered steps of a lead conversion."""

    UPDATE_ACCOUNT_STATUS = "update_account_status"
    UPDATE_OPPORTUNITY_STAGE = "update_opportunity_stage"
    INVALIDATE_CACHES = "invalidate_caches"
    NOTIFY_OWNER = "notify_owner"
    CELEBRATE = "celebrate"


# Re-converting a signed deal (or retrying after a partial failure) is allowed.
ACCEPTED_SOURCE_STAGES: frozenset[Stage] = CONVERSION_ELIGIBLE_STAGES | {CONVERSION_STAGE}


class LeadConversionSequencer:
    """Runs the lead-to-customer conversion saga.

    Args:
        store: Record store holding accounts and opportunities.
        bus: Invalidation bus for read-side caches.
        feedback: User feedback surface for toasts and the celebration.
        notifications: Sink for the deal-won notification (optional).
        enforce_eligibility: Reject conversion from stages other than
            quote_sent, negotiation or quote_signed before any write.
        celebration_seconds: Duration passed to ``feedback.celebrate``.
        currency: Currency code used in notification text.
    """

    def __init__(
        self,
        store: RecordStore,
        bus: InvalidationBus,
        feedback: UserFeedback,
        notifications: NotificationSink | None = None,
        *,
        enforce_eligibility: bool = True,
        celebration_seconds: float = 3.0,
        currency: str = "EUR",
    ) -> None:
        self._store = store
        self._bus = bus
        self._feedback = feedback
        self._notifications = notifications
        self._enforce_eligibility = enforce_eligibility
        self._celebration_seconds = celebration_seconds
        self._currency = currency

    async def convert_to_customer(self, opportunity_id: str) -> ConversionResult:
        """Convert the opportunity's account into a customer and sign the deal.

        Returns:
            ConversionResult with the opportunity and account ids.

        Raises:
            NotFoundError: Opportunity or its account does not exist.
            ValidationFailure: Source stage not eligible (guard enabled).
            PartialSequenceFailure: Account updated in this call, deal not.
            PipelineError: Any other store failure, kind preserved.
        """
        async with track_operation("lead_conversion"):
            try:
                return await self._run(opportunity_id)
            except Exception as raw:
                exc = as_pipeline_error(raw)
                self._feedback.error("Conversion failed", exc.describe())
                record_conversion(
                    "partial_failure"
                    if isinstance(exc, PartialSequenceFailure)
                    else "failed"
                )
                raise exc

    async def _run(self, opportunity_id: str) -> ConversionResult:
        opportunity = await self._load_opportunity(opportunity_id)
        self._check_eligibility(opportunity)
        account = await self._load_account(opportunity)

        completed: list[str] = []
        already_customer = account.status == AccountStatus.CUSTOMER

        # ── 1. Account status ───────────────────────────────────────────
        if already_customer:
            logger.info(
                "conversion.account_already_customer",
                account_id=account.id,
                opportunity_id=opportunity.id,
            )
        else:
            try:
                await self._store.update_account(
                    account.id, AccountUpdate(status=AccountStatus.CUSTOMER)
                )
            except Exception as raw:
                exc = as_pipeline_error(raw)
                exc.add_context(
                    entity="account",
                    entity_id=account.id,
                    step=ConversionStep.UPDATE_ACCOUNT_STATUS.value,
                )
                logger.warning(
                    "conversion.account_update_failed",
                    account_id=account.id,
                    opportunity_id=opportunity.id,
                    kind=exc.kind.value,
                )
                raise exc
            completed.append(ConversionStep.UPDATE_ACCOUNT_STATUS.value)

        # ── 2. Opportunity stage ────────────────────────────────────────
        try:
            updated = await self._store.update_opportunity(
                opportunity.id,
                OpportunityUpdate(
                    stage=CONVERSION_STAGE,
                    probability=probability_for(CONVERSION_STAGE),
                ),
            )
        except Exception as raw:
            exc = as_pipeline_error(raw)
            step = ConversionStep.UPDATE_OPPORTUNITY_STAGE.value
            if not completed:
                raise exc.add_context(
                    entity="opportunity", entity_id=opportunity.id, step=step
                )

            logger.error(
                "conversion.partial_failure",
                account_id=account.id,
                opportunity_id=opportunity.id,
                completed_steps=completed,
                failed_step=step,
                kind=exc.kind.value,
            )
            # The account did change; readers must not keep the old status.
            await self._bus.invalidate(
                [Topic.ACCOUNTS, account_topic(account.id)],
                source="lead_conversion",
            )
            raise PartialSequenceFailure(
                f'{account.name} was marked as customer but the deal "{opportunity.title}" '
                f"was not moved to {stage_label(CONVERSION_STAGE)} ({exc.message}). "
                "Retry the conversion.",
                completed_steps=completed,
                failed_step=step,
                account_id=account.id,
                opportunity_id=opportunity.id,
            ) from exc
        completed.append(ConversionStep.UPDATE_OPPORTUNITY_STAGE.value)

        # ── 3. Invalidate ───────────────────────────────────────────────
        await self._bus.invalidate(
            [
                Topic.OPPORTUNITIES,
                opportunity_topic(opportunity.id),
                Topic.ACCOUNTS,
                account_topic(account.id),
                Topic.PIPELINE_STATS,
                Topic.OPPORTUNITIES_BY_STAGE,
                Topic.EXECUTIVE_DASHBOARD,
            ],
            source="lead_conversion",
        )
        completed.append(ConversionStep.INVALIDATE_CACHES.value)

        # ── 4. Notify owner ─────────────────────────────────────────────
        if await send_quietly(
            self._notifications,
            updated.owner_id,
            NotificationKind.DEAL_WON,
            deal_won_payload(updated, account.name, self._currency),
        ):
            completed.append(ConversionStep.NOTIFY_OWNER.value)

        # ── 5. Celebrate ────────────────────────────────────────────────
        self._feedback.celebrate(self._celebration_seconds)
        completed.append(ConversionStep.CELEBRATE.value)

        if already_customer:
            message = (
                f"{account.name} is already a customer. "
                f'"{updated.title}" is now {stage_label(CONVERSION_STAGE)}'
            )
        else:
            message = f"{account.name} is now a customer"
        self._feedback.success("Deal won", message)

        logger.info(
            "conversion.completed",
            opportunity_id=opportunity.id,
            account_id=account.id,
            already_customer=already_customer,
            value=updated.value,
        )
        record_conversion("already_customer" if already_customer else "converted")

        return ConversionResult(
            opportunity_id=opportunity.id,
            account_id=account.id,
            already_customer=already_customer,
            completed_steps=completed,
            opportunity=updated,
            message=message,
        )

    # ── Preconditions ───────────────────────────────────────────────────

    async def _load_opportunity(self, opportunity_id: str) -> OpportunityRead:
        try:
            opportunity = await self._store.get_opportunity(opportunity_id)
        except Exception as exc:
            raise as_pipeline_error(exc).add_context(
                entity="opportunity", entity_id=opportunity_id, step="load_opportunity"
            )
        if opportunity is None:
            raise NotFoundError(
                "Opportunity not found",
                entity="opportunity",
                entity_id=opportunity_id,
                step="load_opportunity",
            )
        return opportunity

    def _check_eligibility(self, opportunity: OpportunityRead) -> None:
        if not self._enforce_eligibility:
            return
        if opportunity.stage in ACCEPTED_SOURCE_STAGES:
            return
        raise ValidationFailure(
            f"Only deals in {stage_label(Stage.QUOTE_SENT)} or "
            f"{stage_label(Stage.NEGOTIATION)} can be converted; "
            f'"{opportunity.title}" is in {stage_label(opportunity.stage)}',
            entity="opportunity",
            entity_id=opportunity.id,
            step="check_eligibility",
        )

    async def _load_account(self, opportunity: OpportunityRead) -> AccountRead:
        try:
            account = await self._store.get_account(opportunity.account_id)
        except Exception as exc:
            raise as_pipeline_error(exc).add_context(
                entity="account", entity_id=opportunity.account_id, step="load_account"
            )
        if account is None:
            raise NotFoundError(
                "Account not found",
                entity="account",
                entity_id=opportunity.account_id,
                step="load_account",
            )
        return account
