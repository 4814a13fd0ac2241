"""REST API endpoints for the sales pipeline.

Thin HTTP surface over PipelineService: stage catalogue, opportunity CRUD,
stage transitions, lead conversion, and the board/stats read views.
PipelineError subclasses propagate to the application-level handler, which
maps their kind to a status code.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.app.pipeline.schemas import (
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
    PipelineStats,
    StageInfo,
)
from src.app.pipeline.service import PipelineService
from src.app.pipeline.stages import Stage
from src.app.pipeline.transitions import transition_message

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class OpportunityResponse(BaseModel):
    """Response for opportunity data, serializes datetimes to ISO strings."""

    id: str
    account_id: str
    account_name: str | None = None
    owner_id: str
    title: str
    description: str | None = None
    stage: str
    probability: int
    value: float = 0.0
    expected_close_date: str | None = None
    source: str | None = None
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class StageBreakdownResponse(BaseModel):
    count: int = 0
    value: float = 0.0


class PipelineStatsResponse(BaseModel):
    """Rollup statistics over the included opportunities."""

    total_opportunities: int = 0
    total_value: float = 0.0
    weighted_value: float = 0.0
    avg_deal_size: float = 0.0
    by_stage: dict[str, StageBreakdownResponse] = Field(default_factory=dict)


class BoardResponse(BaseModel):
    """Opportunities grouped by stage; every stage is present."""

    stages: dict[str, list[OpportunityResponse]] = Field(default_factory=dict)
    stage_counts: dict[str, int] = Field(default_factory=dict)
    total_value: float = 0.0


class StageTransitionResponse(OpportunityResponse):
    """Updated opportunity plus the acknowledgment shown to the user."""

    message: str


class ConversionResponse(BaseModel):
    """Result of a lead conversion."""

    opportunity_id: str
    account_id: str
    already_customer: bool = False
    completed_steps: list[str] = Field(default_factory=list)
    opportunity: OpportunityResponse | None = None
    message: str | None = None


# ── Request Schemas ──────────────────────────────────────────────────────────


class StageTransitionRequest(BaseModel):
    """Request body for moving an opportunity to another stage.

    Stage is a plain string so unknown values reach the engine and are
    reported as a validation failure with the list of valid stages.
    """

    stage: str


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_pipeline_service(request: Request) -> PipelineService:
    """Retrieve PipelineService from app.state, 503 if not available."""
    service = getattr(request.app.state, "pipeline_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return service


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _opportunity_to_response(opp: OpportunityRead) -> OpportunityResponse:
    """Convert OpportunityRead to OpportunityResponse."""
    return OpportunityResponse(
        id=opp.id,
        account_id=opp.account_id,
        account_name=opp.account_name,
        owner_id=opp.owner_id,
        title=opp.title,
        description=opp.description,
        stage=opp.stage.value,
        probability=opp.probability,
        value=opp.value,
        expected_close_date=_iso(opp.expected_close_date),
        source=opp.source,
        notes=opp.notes,
        created_at=_iso(opp.created_at),
        updated_at=_iso(opp.updated_at),
    )


def _stats_to_response(stats: PipelineStats) -> PipelineStatsResponse:
    return PipelineStatsResponse(
        total_opportunities=stats.total_opportunities,
        total_value=stats.total_value,
        weighted_value=stats.weighted_value,
        avg_deal_size=stats.avg_deal_size,
        by_stage={
            stage.value: StageBreakdownResponse(count=b.count, value=b.value)
            for stage, b in stats.by_stage.items()
        },
    )


# ── Catalogue ────────────────────────────────────────────────────────────────


@router.get("/stages", response_model=list[StageInfo])
async def list_stages() -> list[StageInfo]:
    """Stage catalogue in pipeline order with labels and probabilities."""
    return PipelineService.stage_catalog()


# ── Opportunity Endpoints ────────────────────────────────────────────────────


@router.get("/opportunities", response_model=list[OpportunityResponse])
async def list_opportunities(
    request: Request,
    stage: Stage | None = Query(default=None, description="Filter by stage"),
    account_id: str | None = Query(default=None, description="Filter by account ID"),
    owner_id: str | None = Query(default=None, description="Filter by owner ID"),
    value_min: float | None = Query(default=None, ge=0),
    value_max: float | None = Query(default=None, ge=0),
    probability_min: int | None = Query(default=None, ge=0, le=100),
    probability_max: int | None = Query(default=None, ge=0, le=100),
    search: str | None = Query(default=None, description="Title/description search"),
) -> list[OpportunityResponse]:
    """List non-deleted opportunities, newest first."""
    service = _get_pipeline_service(request)
    filters = OpportunityFilter(
        stage=stage,
        account_id=account_id,
        owner_id=owner_id,
        value_min=value_min,
        value_max=value_max,
        probability_min=probability_min,
        probability_max=probability_max,
        search=search,
    )
    opps = await service.list_opportunities(filters)
    return [_opportunity_to_response(o) for o in opps]


@router.post("/opportunities", response_model=OpportunityResponse, status_code=201)
async def create_opportunity(
    body: OpportunityCreate,
    request: Request,
) -> OpportunityResponse:
    """Create an opportunity. It always starts as a lead."""
    service = _get_pipeline_service(request)
    opp = await service.create_opportunity(body)
    return _opportunity_to_response(opp)


@router.get("/opportunities/{opportunity_id}", response_model=OpportunityResponse)
async def get_opportunity(opportunity_id: str, request: Request) -> OpportunityResponse:
    """Get a single opportunity by ID."""
    service = _get_pipeline_service(request)
    opp = await service.get_opportunity(opportunity_id)
    return _opportunity_to_response(opp)


@router.patch("/opportunities/{opportunity_id}", response_model=OpportunityResponse)
async def update_opportunity(
    opportunity_id: str,
    body: OpportunityUpdate,
    request: Request,
) -> OpportunityResponse:
    """Edit opportunity fields as given.

    A ``stage`` sent here is written verbatim: probability is not derived from
    it and no deal-closed notification is sent. Use the stage endpoint to move
    an opportunity through the pipeline.
    """
    service = _get_pipeline_service(request)
    opp = await service.update_opportunity(opportunity_id, body)
    return _opportunity_to_response(opp)


@router.post(
    "/opportunities/{opportunity_id}/stage", response_model=StageTransitionResponse
)
async def transition_stage(
    opportunity_id: str,
    body: StageTransitionRequest,
    request: Request,
) -> StageTransitionResponse:
    """Move an opportunity to another stage; probability follows the stage."""
    service = _get_pipeline_service(request)
    opp = await service.transition_stage(opportunity_id, body.stage)
    return StageTransitionResponse(
        **_opportunity_to_response(opp).model_dump(),
        message=transition_message(opp),
    )


@router.post("/opportunities/{opportunity_id}/convert", response_model=ConversionResponse)
async def convert_to_customer(opportunity_id: str, request: Request) -> ConversionResponse:
    """Sign the deal and mark its account a customer."""
    service = _get_pipeline_service(request)
    result = await service.convert_to_customer(opportunity_id)
    return ConversionResponse(
        opportunity_id=result.opportunity_id,
        account_id=result.account_id,
        already_customer=result.already_customer,
        completed_steps=result.completed_steps,
        opportunity=(
            _opportunity_to_response(result.opportunity) if result.opportunity else None
        ),
        message=result.message,
    )


# ── Read Views ───────────────────────────────────────────────────────────────


@router.get("/board", response_model=BoardResponse)
async def get_board(
    request: Request,
    include_lost: bool | None = Query(default=None, description="Include lost deals"),
) -> BoardResponse:
    """Kanban board: opportunities grouped by stage."""
    service = _get_pipeline_service(request)
    grouped = await service.get_opportunities_by_stage(include_lost)

    stages: dict[str, list[OpportunityResponse]] = {}
    stage_counts: dict[str, int] = {}
    total_value = 0.0
    for stage, opps in grouped.items():
        stages[stage.value] = [_opportunity_to_response(o) for o in opps]
        stage_counts[stage.value] = len(opps)
        total_value += sum(o.value for o in opps)

    return BoardResponse(stages=stages, stage_counts=stage_counts, total_value=total_value)


@router.get("/stats", response_model=PipelineStatsResponse)
async def get_stats(
    request: Request,
    include_lost: bool | None = Query(default=None, description="Include lost deals"),
) -> PipelineStatsResponse:
    """Pipeline rollup statistics."""
    service = _get_pipeline_service(request)
    stats = await service.get_pipeline_stats(include_lost)
    return _stats_to_response(stats)

