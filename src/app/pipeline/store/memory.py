"""In-process RecordStore for local development and the test-suite.

Holds pydantic records in dicts. Writes are serialized by the event loop (no
awaits between read and write), and ``updated_at`` is strictly increasing
even when two writes land within the same clock tick.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import structlog

from src.app.pipeline.errors import NotFoundError
from src.app.pipeline.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
    Stage,
)
from src.app.pipeline.store.adapter import RecordStore

logger = structlog.get_logger(__name__)


class InMemoryRecordStore(RecordStore):
    """Dict-backed RecordStore with the same contract as PostgresRecordStore."""

    def __init__(self) -> None:
        self._accounts: dict[str, AccountRead] = {}
        self._opportunities: dict[str, OpportunityRead] = {}
        self._last_tick: datetime | None = None

    def _now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(microseconds=1)
        self._last_tick = now
        return now

    def _with_account_name(self, opp: OpportunityRead) -> OpportunityRead:
        account = self._accounts.get(opp.account_id)
        return opp.model_copy(update={"account_name": account.name if account else None})

    # ── Accounts ────────────────────────────────────────────────────────────

    async def create_account(self, data: AccountCreate) -> AccountRead:
        now = self._now()
        account = AccountRead(id=str(uuid.uuid4()), created_at=now, **data.model_dump())
        self._accounts[account.id] = account
        return account

    async def get_account(self, account_id: str) -> AccountRead | None:
        return self._accounts.get(account_id)

    async def update_account(self, account_id: str, data: AccountUpdate) -> AccountRead:
        existing = self._accounts.get(account_id)
        if existing is None:
            raise NotFoundError("Account not found", entity="account", entity_id=account_id)

        updated = existing.model_copy(
            update={**data.model_dump(exclude_none=True), "updated_at": self._now()}
        )
        self._accounts[account_id] = updated
        return updated

    # ── Opportunities ───────────────────────────────────────────────────────

    async def create_opportunity(
        self, data: OpportunityCreate, *, stage: str, probability: int
    ) -> OpportunityRead:
        if data.account_id not in self._accounts:
            raise NotFoundError(
                "Account not found", entity="account", entity_id=data.account_id
            )
        opp = OpportunityRead(
            id=str(uuid.uuid4()),
            stage=Stage(stage),
            probability=probability,
            created_at=self._now(),
            **data.model_dump(),
        )
        self._opportunities[opp.id] = opp
        return self._with_account_name(opp)

    async def get_opportunity(self, opportunity_id: str) -> OpportunityRead | None:
        opp = self._opportunities.get(opportunity_id)
        if opp is None or opp.deleted_at is not None:
            return None
        return self._with_account_name(opp)

    async def update_opportunity(
        self, opportunity_id: str, data: OpportunityUpdate
    ) -> OpportunityRead:
        existing = self._opportunities.get(opportunity_id)
        if existing is None or existing.deleted_at is not None:
            raise NotFoundError(
                "Opportunity not found", entity="opportunity", entity_id=opportunity_id
            )

        updated = existing.model_copy(
            update={**data.model_dump(exclude_none=True), "updated_at": self._now()}
        )
        self._opportunities[opportunity_id] = updated
        return self._with_account_name(updated)

    async def list_opportunities(
        self, filters: OpportunityFilter | None = None
    ) -> list[OpportunityRead]:
        filters = filters or OpportunityFilter()
        matches = [o for o in self._opportunities.values() if filters.matches(o)]
        matches.sort(
            key=lambda o: o.created_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return [self._with_account_name(o) for o in matches]
