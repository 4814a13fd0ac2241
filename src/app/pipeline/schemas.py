"""Pydantic schemas for the sales pipeline -- accounts, opportunities, rollups.

Defines all structured types the engines and record stores exchange:
- Enums: AccountStatus (Stage is imported from stages, not duplicated)
- Accounts: AccountCreate/Update/Read
- Opportunities: OpportunityCreate/Update/Read/Filter
- Rollups: StageBreakdown, PipelineStats
- Results: ConversionResult, StageInfo
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from src.app.pipeline.stages import Stage  # noqa: F401 -- re-export


# ── Enums ───────────────────────────────────────────────────────────────────


class AccountStatus(str, Enum):
    """Lifecycle status of an account (company)."""

    PROSPECT = "prospect"
    ACTIVE = "active"
    CUSTOMER = "customer"
    INACTIVE = "inactive"
    CHURNED = "churned"


# ── Account Schemas ─────────────────────────────────────────────────────────


class AccountCreate(BaseModel):
    """Schema for creating a new account."""

    name: str
    status: AccountStatus = AccountStatus.PROSPECT
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    owner_id: str | None = None


class AccountUpdate(BaseModel):
    """Partial update for an account; None fields are left untouched."""

    name: str | None = None
    status: AccountStatus | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    owner_id: str | None = None


class AccountRead(BaseModel):
    """Schema for reading an account (includes all persisted fields)."""

    id: str
    name: str
    status: AccountStatus = AccountStatus.PROSPECT
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    owner_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Opportunity Schemas ─────────────────────────────────────────────────────


class OpportunityCreate(BaseModel):
    """Schema for creating a new opportunity.

    Stage and probability are not accepted here: new opportunities always
    start at the initial stage with its table probability.
    """

    account_id: str
    owner_id: str
    title: str
    description: str | None = None
    value: float = Field(default=0.0, ge=0.0)
    expected_close_date: datetime | None = None
    source: str | None = None
    notes: str | None = None


class OpportunityUpdate(BaseModel):
    """Partial update for an opportunity; None fields are left untouched.

    account_id is intentionally absent: an opportunity never moves between
    accounts after creation.
    """

    title: str | None = None
    description: str | None = None
    stage: Stage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    value: float | None = Field(default=None, ge=0.0)
    owner_id: str | None = None
    expected_close_date: datetime | None = None
    notes: str | None = None


class OpportunityRead(BaseModel):
    """Schema for reading an opportunity, with the owning account's name joined."""

    id: str
    account_id: str
    account_name: str | None = None
    owner_id: str
    title: str
    description: str | None = None
    stage: Stage = Stage.LEAD
    probability: int = Field(default=10, ge=0, le=100)
    value: float = 0.0
    expected_close_date: datetime | None = None
    source: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class OpportunityFilter(BaseModel):
    """Filter criteria for listing opportunities. All criteria are ANDed."""

    stage: Stage | None = None
    stages: list[Stage] | None = None
    exclude_stages: list[Stage] = Field(default_factory=list)
    account_id: str | None = None
    owner_id: str | None = None
    value_min: float | None = None
    value_max: float | None = None
    probability_min: int | None = Field(default=None, ge=0, le=100)
    probability_max: int | None = Field(default=None, ge=0, le=100)
    search: str | None = None
    include_deleted: bool = False

    def matches(self, opp: OpportunityRead) -> bool:
        """Evaluate the filter against a single record (used by non-SQL stores)."""
        if not self.include_deleted and opp.deleted_at is not None:
            return False
        if self.stage is not None and opp.stage != self.stage:
            return False
        if self.stages is not None and opp.stage not in self.stages:
            return False
        if opp.stage in self.exclude_stages:
            return False
        if self.account_id is not None and opp.account_id != self.account_id:
            return False
        if self.owner_id is not None and opp.owner_id != self.owner_id:
            return False
        if self.value_min is not None and opp.value < self.value_min:
            return False
        if self.value_max is not None and opp.value > self.value_max:
            return False
        if self.probability_min is not None and opp.probability < self.probability_min:
            return False
        if self.probability_max is not None and opp.probability > self.probability_max:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = f"{opp.title} {opp.description or ''}".lower()
            if needle not in haystack:
                return False
        return True


# ── Rollups ─────────────────────────────────────────────────────────────────


class StageBreakdown(BaseModel):
    """Count and summed value of the opportunities in one stage."""

    count: int = 0
    value: float = 0.0


class PipelineStats(BaseModel):
    """Aggregate statistics over the included opportunities."""

    total_opportunities: int = 0
    total_value: float = 0.0
    weighted_value: float = 0.0
    avg_deal_size: float = 0.0
    by_stage: dict[Stage, StageBreakdown] = Field(default_factory=dict)


# ── Results ─────────────────────────────────────────────────────────────────


class ConversionResult(BaseModel):
    """Outcome of a lead-to-customer conversion."""

    opportunity_id: str
    account_id: str
    already_customer: bool = False
    completed_steps: list[str] = Field(default_factory=list)
    opportunity: OpportunityRead | None = None
    message: str | None = None


class StageInfo(BaseModel):
    """Catalogue entry describing one stage to the UI."""

    stage: Stage
    label: str
    probability: int
    position: int
    active: bool
    conversion_eligible: bool
    closing_outcome: str | None = None
