"""PostgreSQL record store -- SQLAlchemy async implementation of RecordStore.

Uses the session_factory callable pattern: every method opens a session from
the factory, does its work, commits and returns pydantic schemas. Driver and
SQLAlchemy errors are translated into the pipeline error taxonomy by
``_store_errors`` so callers only ever see PipelineError subclasses.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import Select, or_, select
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.pipeline.errors import (
    AuthorizationDeniedError,
    NotFoundError,
    PipelineError,
    TransportFailure,
    ValidationFailure,
    WriteConflictError,
)
from src.app.pipeline.models import AccountModel, OpportunityModel
from src.app.pipeline.schemas import (
    AccountCreate,
    AccountRead,
    AccountStatus,
    AccountUpdate,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
    Stage,
)
from src.app.pipeline.store.adapter import RecordStore

logger = structlog.get_logger(__name__)

# SQLSTATE for insufficient_privilege (row level security / grants).
_PERMISSION_DENIED = "42501"


# ── Error Translation ───────────────────────────────────────────────────────


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def translate_error(
    exc: BaseException, *, entity: str, entity_id: str | None = None
) -> PipelineError:
    """Map a SQLAlchemy/driver exception onto the pipeline error taxonomy."""
    if isinstance(exc, PipelineError):
        return exc.add_context(entity=entity, entity_id=entity_id)
    if isinstance(exc, IntegrityError):
        return WriteConflictError(
            f"Constraint violation: {exc.orig}", entity=entity, entity_id=entity_id
        )
    if isinstance(exc, DBAPIError):
        if _sqlstate(exc) == _PERMISSION_DENIED:
            return AuthorizationDeniedError(
                "Permission denied by record store policy",
                entity=entity,
                entity_id=entity_id,
            )
        if exc.connection_invalidated or isinstance(exc, (OperationalError, InterfaceError)):
            return TransportFailure(
                f"Record store unavailable: {exc.orig}", entity=entity, entity_id=entity_id
            )
        return WriteConflictError(
            f"Record store rejected the write: {exc.orig}",
            entity=entity,
            entity_id=entity_id,
        )
    if isinstance(exc, (TimeoutError, OSError)):
        return TransportFailure(
            f"Record store unreachable: {exc}", entity=entity, entity_id=entity_id
        )
    return TransportFailure(
        f"Record store error: {exc}", entity=entity, entity_id=entity_id
    )


@contextmanager
def _store_errors(entity: str, entity_id: str | None = None) -> Iterator[None]:
    try:
        yield
    except PipelineError:
        raise
    except (SQLAlchemyError, OSError) as exc:
        error = translate_error(exc, entity=entity, entity_id=entity_id)
        logger.warning(
            "record_store.error",
            entity=entity,
            entity_id=entity_id,
            kind=error.kind.value,
            error=str(exc),
        )
        raise error from exc


def _as_uuid(value: str, entity: str) -> uuid.UUID:
    """Parse an identifier; a malformed one cannot exist, so it is NotFound."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(
            f"{entity.capitalize()} not found", entity=entity, entity_id=str(value)
        ) from None


def _owner_uuid(value: str | None) -> uuid.UUID | None:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationFailure(
            f"Malformed owner id: {value!r}", entity="owner", entity_id=str(value)
        ) from None


def _column_values(data: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, Enum):
            value = value.value
        if key == "owner_id":
            value = _owner_uuid(value)
        values[key] = value
    return values


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_account(model: AccountModel) -> AccountRead:
    """Convert AccountModel to AccountRead schema."""
    return AccountRead(
        id=str(model.id),
        name=model.name,
        status=AccountStatus(model.status),
        email=model.email,
        phone=model.phone,
        website=model.website,
        owner_id=str(model.owner_id) if model.owner_id else None,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_opportunity(
    model: OpportunityModel, account_name: str | None = None
) -> OpportunityRead:
    """Convert OpportunityModel to OpportunityRead schema."""
    return OpportunityRead(
        id=str(model.id),
        account_id=str(model.account_id),
        account_name=account_name,
        owner_id=str(model.owner_id),
        title=model.title,
        description=model.description,
        stage=Stage(model.stage),
        probability=model.probability,
        value=model.value or 0.0,
        expected_close_date=model.expected_close_date,
        source=model.source,
        notes=model.notes,
        created_at=model.created_at,
        updated_at=model.updated_at,
        deleted_at=model.deleted_at,
    )


def _apply_filters(stmt: Select, filters: OpportunityFilter) -> Select:
    if not filters.include_deleted:
        stmt = stmt.where(OpportunityModel.deleted_at.is_(None))
    if filters.stage is not None:
        stmt = stmt.where(OpportunityModel.stage == filters.stage.value)
    if filters.stages is not None:
        stmt = stmt.where(OpportunityModel.stage.in_([s.value for s in filters.stages]))
    if filters.exclude_stages:
        stmt = stmt.where(
            OpportunityModel.stage.notin_([s.value for s in filters.exclude_stages])
        )
    if filters.account_id is not None:
        stmt = stmt.where(
            OpportunityModel.account_id == _as_uuid(filters.account_id, "account")
        )
    if filters.owner_id is not None:
        stmt = stmt.where(OpportunityModel.owner_id == _as_uuid(filters.owner_id, "owner"))
    if filters.value_min is not None:
        stmt = stmt.where(OpportunityModel.value >= filters.value_min)
    if filters.value_max is not None:
        stmt = stmt.where(OpportunityModel.value <= filters.value_max)
    if filters.probability_min is not None:
        stmt = stmt.where(OpportunityModel.probability >= filters.probability_min)
    if filters.probability_max is not None:
        stmt = stmt.where(OpportunityModel.probability <= filters.probability_max)
    if filters.search:
        pattern = f"%{filters.search}%"
        stmt = stmt.where(
            or_(
                OpportunityModel.title.ilike(pattern),
                OpportunityModel.description.ilike(pattern),
            )
        )
    return stmt


# ── Store ───────────────────────────────────────────────────────────────────


class PostgresRecordStore(RecordStore):
    """RecordStore backed by PostgreSQL through SQLAlchemy async sessions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Accounts ────────────────────────────────────────────────────────────

    async def create_account(self, data: AccountCreate) -> AccountRead:
        with _store_errors("account"):
            async for session in self._session_factory():
                model = AccountModel(
                    name=data.name,
                    status=data.status.value,
                    email=data.email,
                    phone=data.phone,
                    website=data.website,
                    owner_id=_owner_uuid(data.owner_id),
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_account(model)

    async def get_account(self, account_id: str) -> AccountRead | None:
        try:
            key = _as_uuid(account_id, "account")
        except NotFoundError:
            return None
        with _store_errors("account", account_id):
            async for session in self._session_factory():
                model = await session.get(AccountModel, key)
                if model is None:
                    return None
                return _model_to_account(model)

    async def update_account(self, account_id: str, data: AccountUpdate) -> AccountRead:
        key = _as_uuid(account_id, "account")
        with _store_errors("account", account_id):
            async for session in self._session_factory():
                model = await session.get(AccountModel, key)
                if model is None:
                    raise NotFoundError(
                        "Account not found", entity="account", entity_id=account_id
                    )

                for column, value in _column_values(
                    data.model_dump(exclude_none=True)
                ).items():
                    setattr(model, column, value)

                model.updated_at = datetime.now(timezone.utc)
                await session.commit()
                await session.refresh(model)
                return _model_to_account(model)

    # ── Opportunities ───────────────────────────────────────────────────────

    async def create_opportunity(
        self, data: OpportunityCreate, *, stage: str, probability: int
    ) -> OpportunityRead:
        account_key = _as_uuid(data.account_id, "account")
        with _store_errors("opportunity"):
            async for session in self._session_factory():
                account = await session.get(AccountModel, account_key)
                if account is None:
                    raise NotFoundError(
                        "Account not found", entity="account", entity_id=data.account_id
                    )
                model = OpportunityModel(
                    account_id=account_key,
                    owner_id=_owner_uuid(data.owner_id),
                    title=data.title,
                    description=data.description,
                    stage=stage,
                    probability=probability,
                    value=data.value,
                    expected_close_date=data.expected_close_date,
                    source=data.source,
                    notes=data.notes,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_opportunity(model, account.name)

    async def get_opportunity(self, opportunity_id: str) -> OpportunityRead | None:
        try:
            key = _as_uuid(opportunity_id, "opportunity")
        except NotFoundError:
            return None
        with _store_errors("opportunity", opportunity_id):
            async for session in self._session_factory():
                stmt = (
                    select(OpportunityModel, AccountModel.name)
                    .outerjoin(AccountModel, AccountModel.id == OpportunityModel.account_id)
                    .where(
                        OpportunityModel.id == key,
                        OpportunityModel.deleted_at.is_(None),
                    )
                )
                row = (await session.execute(stmt)).one_or_none()
                if row is None:
                    return None
                model, account_name = row
                return _model_to_opportunity(model, account_name)

    async def update_opportunity(
        self, opportunity_id: str, data: OpportunityUpdate
    ) -> OpportunityRead:
        key = _as_uuid(opportunity_id, "opportunity")
        with _store_errors("opportunity", opportunity_id):
            async for session in self._session_factory():
                stmt = select(OpportunityModel).where(
                    OpportunityModel.id == key,
                    OpportunityModel.deleted_at.is_(None),
                )
                model = (await session.execute(stmt)).scalar_one_or_none()
                if model is None:
                    raise NotFoundError(
                        "Opportunity not found",
                        entity="opportunity",
                        entity_id=opportunity_id,
                    )

                # Update only non-None fields
                for column, value in _column_values(
                    data.model_dump(exclude_none=True)
                ).items():
                    setattr(model, column, value)

                model.updated_at = datetime.now(timezone.utc)
                await session.commit()
                await session.refresh(model)

                account = await session.get(AccountModel, model.account_id)
                return _model_to_opportunity(model, account.name if account else None)

    async def list_opportunities(
        self, filters: OpportunityFilter | None = None
    ) -> list[OpportunityRead]:
        filters = filters or OpportunityFilter()
        with _store_errors("opportunity"):
            async for session in self._session_factory():
                stmt = select(OpportunityModel, AccountModel.name).outerjoin(
                    AccountModel, AccountModel.id == OpportunityModel.account_id
                )
                try:
                    stmt = _apply_filters(stmt, filters)
                except NotFoundError:
                    # A malformed id in the filter matches nothing.
                    return []
                stmt = stmt.order_by(OpportunityModel.created_at.desc())
                rows = (await session.execute(stmt)).all()
                return [_model_to_opportunity(model, name) for model, name in rows]
