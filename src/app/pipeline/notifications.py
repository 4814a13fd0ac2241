"""Deal notifications -- payload builders and the notification sink.

Two distinct business events produce notifications and they are kept as
separate kinds:
- DEAL_CLOSED: an opportunity reached a terminal stage (live = won, lost = lost)
  through the stage transition engine.
- DEAL_WON: a lead was converted to a customer (opportunity signed).

Delivery is fire-and-forget from the engines' point of view: they call
``send_quietly`` which logs a failed delivery and never raises.

Exports:
    NotificationKind, NotificationPriority, NotificationPayload
    NotificationSink: Abstract sink interface.
    PostgresNotificationSink: Inserts rows into the notifications table.
    format_currency, deal_closed_payload, deal_won_payload, send_quietly
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.pipeline.models import NotificationModel
from src.app.pipeline.schemas import OpportunityRead
from src.app.pipeline.stages import ClosingOutcome

logger = structlog.get_logger(__name__)


class NotificationKind(str, Enum):
    """Notification types emitted by the pipeline engines."""

    DEAL_CLOSED = "deal_closed"
    DEAL_WON = "deal_won"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationPayload(BaseModel):
    """Content of a single in-app notification."""

    title: str
    message: str
    entity_type: str = "project"
    entity_id: str | None = None
    deep_link: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: dict[str, Any] = Field(default_factory=dict)


# ── Formatting ──────────────────────────────────────────────────────────────

_CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£"}


def format_currency(amount: float, currency: str = "EUR") -> str:
    """Format an amount in whole currency units with dotted thousands.

    >>> format_currency(5000)
    '€ 5.000'
    """
    symbol = _CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
    whole = int(round(amount))
    digits = f"{abs(whole):,}".replace(",", ".")
    sign = "-" if whole < 0 else ""
    return f"{sign}{symbol} {digits}"


def _deep_link(opportunity_id: str) -> str:
    return f"/projects/{opportunity_id}"


# ── Payload builders ────────────────────────────────────────────────────────


def deal_closed_payload(
    opportunity: OpportunityRead,
    outcome: ClosingOutcome,
    currency: str = "EUR",
) -> NotificationPayload:
    """Build the notification for an opportunity reaching live or lost."""
    if outcome is ClosingOutcome.WON:
        title = "Deal won"
        message = (
            f'Project "{opportunity.title}" went live! '
            f"Value: {format_currency(opportunity.value, currency)}"
        )
        priority = NotificationPriority.HIGH
    else:
        title = "Deal lost"
        message = f'Project "{opportunity.title}" was lost.'
        priority = NotificationPriority.NORMAL

    return NotificationPayload(
        title=title,
        message=message,
        entity_id=opportunity.id,
        deep_link=_deep_link(opportunity.id),
        priority=priority,
        data={
            "outcome": outcome.value,
            "value": opportunity.value,
            "currency": currency,
            "stage": opportunity.stage.value,
        },
    )


def deal_won_payload(
    opportunity: OpportunityRead,
    account_name: str | None,
    currency: str = "EUR",
) -> NotificationPayload:
    """Build the notification for a lead converted to a customer."""
    company = account_name or "The account"
    return NotificationPayload(
        title="Deal won!",
        message=(
            f'Congratulations! {company} is now a customer with project '
            f'"{opportunity.title}" ({format_currency(opportunity.value, currency)})'
        ),
        entity_id=opportunity.id,
        deep_link=_deep_link(opportunity.id),
        priority=NotificationPriority.HIGH,
        data={
            "value": opportunity.value,
            "currency": currency,
            "account_id": opportunity.account_id,
            "account_name": account_name,
        },
    )


# ── Sinks ───────────────────────────────────────────────────────────────────


class NotificationSink(ABC):
    """Destination for user notifications."""

    @abstractmethod
    async def notify(
        self,
        target_user_id: str,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> None:
        """Deliver one notification to one user."""
        ...


class PostgresNotificationSink(NotificationSink):
    """Stores notifications in the ``notifications`` table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def notify(
        self,
        target_user_id: str,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> None:
        async for session in self._session_factory():
            session.add(
                NotificationModel(
                    user_id=uuid.UUID(str(target_user_id)),
                    type=kind.value,
                    priority=payload.priority.value,
                    title=payload.title,
                    message=payload.message,
                    related_entity_type=payload.entity_type,
                    related_entity_id=payload.entity_id,
                    deep_link=payload.deep_link,
                    payload=payload.data,
                )
            )
            await session.commit()

        logger.info(
            "notification.stored",
            user_id=target_user_id,
            kind=kind.value,
            entity_id=payload.entity_id,
        )


async def send_quietly(
    sink: NotificationSink | None,
    target_user_id: str | None,
    kind: NotificationKind,
    payload: NotificationPayload,
) -> bool:
    """Deliver a notification without letting a failure reach the caller.

    Returns:
        True if the sink accepted the notification, False otherwise.
    """
    if sink is None or not target_user_id:
        logger.debug("notification.skipped", kind=kind.value, entity_id=payload.entity_id)
        return False
    try:
        await sink.notify(target_user_id, kind, payload)
    except Exception as exc:
        logger.warning(
            "notification.delivery_failed",
            kind=kind.value,
            user_id=target_user_id,
            entity_id=payload.entity_id,
            error=str(exc),
        )
        return False
    return True
