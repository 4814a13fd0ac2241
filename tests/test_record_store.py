"""Tests for the record store layer.

Covers:
- InMemoryRecordStore contract (create/get/update/list, updated_at, filters)
- translate_error mapping of SQLAlchemy/driver errors onto the pipeline taxonomy
- PostgresRecordStore behaviour against a mocked AsyncSession
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from src.app.pipeline.errors import (
    AuthorizationDeniedError,
    ErrorKind,
    NotFoundError,
    TransportFailure,
    ValidationFailure,
    WriteConflictError,
    as_pipeline_error,
)
from src.app.pipeline.models import AccountModel, OpportunityModel
from src.app.pipeline.schemas import (
    AccountCreate,
    AccountStatus,
    AccountUpdate,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityUpdate,
    Stage,
)
from src.app.pipeline.store import InMemoryRecordStore, PostgresRecordStore, translate_error


# ── In-Memory Store ──────────────────────────────────────────────────────────


class TestInMemoryRecordStore:
    def test_fixture_is_memory_store(self, store):
        assert isinstance(store, InMemoryRecordStore)

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get_account("nope") is None
        assert await store.get_opportunity("nope") is None

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.update_account("nope", AccountUpdate(status=AccountStatus.CUSTOMER))
        with pytest.raises(NotFoundError):
            await store.update_opportunity("nope", OpportunityUpdate(stage=Stage.LIVE))

    @pytest.mark.asyncio
    async def test_create_opportunity_requires_account(self, store, owner_id):
        with pytest.raises(NotFoundError) as exc_info:
            await store.create_opportunity(
                OpportunityCreate(account_id="ghost", owner_id=owner_id, title="x"),
                stage="lead",
                probability=10,
            )
        assert exc_info.value.entity == "account"

    @pytest.mark.asyncio
    async def test_account_name_joined(self, seed):
        account, opp = await seed(account_name="Bakkerij Jansen")
        assert opp.account_name == "Bakkerij Jansen"
        assert opp.account_id == account.id

    @pytest.mark.asyncio
    async def test_partial_update_keeps_other_fields(self, store, seed):
        _, opp = await seed(stage=Stage.NEGOTIATION, value=5000, title="Keep me")

        updated = await store.update_opportunity(opp.id, OpportunityUpdate(stage=Stage.REVIEW))

        assert updated.stage is Stage.REVIEW
        assert updated.title == "Keep me"
        assert updated.value == 5000
        assert updated.probability == 60

    @pytest.mark.asyncio
    async def test_updated_at_strictly_increases(self, store, seed):
        _, opp = await seed()
        first = await store.update_opportunity(opp.id, OpportunityUpdate(stage=Stage.LEAD))
        second = await store.update_opportunity(opp.id, OpportunityUpdate(stage=Stage.LEAD))
        assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store, seed):
        _, first = await seed(title="first")
        _, second = await seed(title="second")
        listed = await store.list_opportunities()
        assert [o.id for o in listed] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_list_filters(self, store, seed):
        account, lead = await seed(stage=Stage.LEAD, value=100, title="Logo design")
        _, big = await seed(stage=Stage.NEGOTIATION, value=50000, title="ERP rollout")
        _, lost = await seed(stage=Stage.LOST, value=700, title="Intranet")

        by_stage = await store.list_opportunities(OpportunityFilter(stage=Stage.LEAD))
        assert [o.id for o in by_stage] == [lead.id]

        no_lost = await store.list_opportunities(OpportunityFilter(exclude_stages=[Stage.LOST]))
        assert lost.id not in {o.id for o in no_lost}

        expensive = await store.list_opportunities(OpportunityFilter(value_min=1000))
        assert [o.id for o in expensive] == [big.id]

        searched = await store.list_opportunities(OpportunityFilter(search="erp"))
        assert [o.id for o in searched] == [big.id]

        for_account = await store.list_opportunities(OpportunityFilter(account_id=account.id))
        assert [o.id for o in for_account] == [lead.id]

    @pytest.mark.asyncio
    async def test_deleted_hidden_unless_requested(self, store, seed):
        _, opp = await seed()
        store._opportunities[opp.id] = store._opportunities[opp.id].model_copy(
            update={"deleted_at": datetime.now(timezone.utc)}
        )

        assert await store.get_opportunity(opp.id) is None
        assert await store.list_opportunities() == []
        assert len(await store.list_opportunities(OpportunityFilter(include_deleted=True))) == 1


# ── Error Translation ────────────────────────────────────────────────────────


class _PgError(Exception):
    def __init__(self, sqlstate: str) -> None:
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


class TestTranslateError:
    def test_integrity_error_is_write_conflict(self):
        exc = IntegrityError("INSERT", {}, Exception("duplicate key"))
        error = translate_error(exc, entity="opportunity", entity_id="o1")
        assert isinstance(error, WriteConflictError)
        assert error.entity == "opportunity"
        assert error.entity_id == "o1"

    def test_insufficient_privilege_is_authorization_denied(self):
        exc = DBAPIError("UPDATE", {}, _PgError("42501"))
        error = translate_error(exc, entity="account")
        assert isinstance(error, AuthorizationDeniedError)
        assert error.kind is ErrorKind.AUTHORIZATION_DENIED

    def test_operational_error_is_transport_failure(self):
        exc = OperationalError("SELECT 1", {}, Exception("connection refused"))
        assert isinstance(translate_error(exc, entity="account"), TransportFailure)

    def test_invalidated_connection_is_transport_failure(self):
        exc = DBAPIError("SELECT 1", {}, Exception("lost"), connection_invalidated=True)
        assert isinstance(translate_error(exc, entity="account"), TransportFailure)

    def test_other_dbapi_error_is_write_conflict(self):
        exc = DBAPIError("UPDATE", {}, _PgError("40001"))
        assert isinstance(translate_error(exc, entity="opportunity"), WriteConflictError)

    def test_timeout_is_transport_failure(self):
        error = translate_error(TimeoutError("timed out"), entity="opportunity")
        assert isinstance(error, TransportFailure)

    def test_pipeline_error_passes_through_with_context(self):
        original = NotFoundError("gone")
        error = translate_error(original, entity="account", entity_id="a1")
        assert error is original
        assert error.entity == "account"
        assert error.entity_id == "a1"


class TestAsPipelineError:
    def test_classified_error_returned_as_is(self):
        original = WriteConflictError("conflict")
        assert as_pipeline_error(original) is original

    def test_unclassified_error_wrapped_as_transport_failure(self):
        cause = RuntimeError("driver blew up")
        error = as_pipeline_error(cause)
        assert isinstance(error, TransportFailure)
        assert error.__cause__ is cause
        assert "driver blew up" in error.message


# ── Postgres Store (mocked session) ──────────────────────────────────────────


def _mock_session() -> MagicMock:
    session = MagicMock()
    session.get = AsyncMock(return_value=None)
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.refresh = AsyncMock()
    return session


def _factory(session: MagicMock):
    async def session_factory():
        yield session

    return session_factory


def _opportunity_model(**overrides) -> OpportunityModel:
    fields = dict(
        id=uuid.uuid4(),
        account_id=uuid.uuid4(),
        owner_id=uuid.uuid4(),
        title="Webshop",
        stage="negotiation",
        probability=60,
        value=5000.0,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return OpportunityModel(**fields)


class TestPostgresRecordStore:
    @pytest.mark.asyncio
    async def test_get_account_malformed_id_is_none(self):
        session = _mock_session()
        store = PostgresRecordStore(session_factory=_factory(session))
        assert await store.get_account("not-a-uuid") is None
        session.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_account_missing_raises_not_found(self):
        store = PostgresRecordStore(session_factory=_factory(_mock_session()))
        with pytest.raises(NotFoundError):
            await store.update_account(
                str(uuid.uuid4()), AccountUpdate(status=AccountStatus.CUSTOMER)
            )

    @pytest.mark.asyncio
    async def test_update_account_sets_status_value(self):
        model = AccountModel(id=uuid.uuid4(), name="Acme BV", status="prospect")
        session = _mock_session()
        session.get = AsyncMock(return_value=model)
        store = PostgresRecordStore(session_factory=_factory(session))

        updated = await store.update_account(
            str(model.id), AccountUpdate(status=AccountStatus.CUSTOMER)
        )

        assert model.status == "customer"
        assert model.updated_at is not None
        assert updated.status is AccountStatus.CUSTOMER
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_opportunity_writes_stage_and_probability(self):
        model = _opportunity_model()
        session = _mock_session()
        result = MagicMock()
        result.scalar_one_or_none.return_value = model
        session.execute = AsyncMock(return_value=result)
        session.get = AsyncMock(return_value=AccountModel(id=model.account_id, name="Acme BV"))
        store = PostgresRecordStore(session_factory=_factory(session))

        updated = await store.update_opportunity(
            str(model.id), OpportunityUpdate(stage=Stage.REVIEW, probability=98)
        )

        assert model.stage == "review"
        assert model.probability == 98
        assert updated.stage is Stage.REVIEW
        assert updated.account_name == "Acme BV"

    @pytest.mark.asyncio
    async def test_connection_failure_becomes_transport_failure(self):
        session = _mock_session()
        cause = OperationalError("SELECT", {}, Exception("connection refused"))
        session.get = AsyncMock(side_effect=cause)
        store = PostgresRecordStore(session_factory=_factory(session))

        with pytest.raises(TransportFailure) as exc_info:
            await store.update_account(str(uuid.uuid4()), AccountUpdate(name="x"))

        assert exc_info.value.__cause__ is cause
        assert exc_info.value.entity == "account"

    @pytest.mark.asyncio
    async def test_commit_integrity_error_becomes_write_conflict(self):
        model = _opportunity_model()
        session = _mock_session()
        result = MagicMock()
        result.scalar_one_or_none.return_value = model
        session.execute = AsyncMock(return_value=result)
        session.commit = AsyncMock(side_effect=IntegrityError("UPDATE", {}, Exception("fk")))
        store = PostgresRecordStore(session_factory=_factory(session))

        with pytest.raises(WriteConflictError):
            await store.update_opportunity(str(model.id), OpportunityUpdate(value=10.0))

    @pytest.mark.asyncio
    async def test_malformed_owner_is_validation_failure(self):
        store = PostgresRecordStore(session_factory=_factory(_mock_session()))
        with pytest.raises(ValidationFailure):
            await store.create_account(AccountCreate(name="Acme", owner_id="bob"))

    @pytest.mark.asyncio
    async def test_list_with_malformed_account_filter_is_empty(self):
        session = _mock_session()
        store = PostgresRecordStore(session_factory=_factory(session))
        assert await store.list_opportunities(OpportunityFilter(account_id="bad")) == []
        session.execute.assert_not_awaited()
