"""Integration tests for the pipeline API endpoints.

Uses the in-memory record store behind a real PipelineService, set on
app.state, and an httpx AsyncClient over ASGITransport. Covers the stage
catalogue, opportunity CRUD, stage transitions, conversion (including the
partial-failure response), the board and stats views, error mapping, and
the infrastructure routes.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.main import create_app
from src.app.pipeline.errors import TransportFailure
from src.app.pipeline.schemas import AccountCreate, AccountStatus
from src.app.pipeline.stages import STAGE_ORDER, Stage


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(service):
    """Test client with the fixture PipelineService wired into app.state."""
    app = create_app()
    app.state.pipeline_service = service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ── Catalogue ────────────────────────────────────────────────────────────────


class TestStages:
    @pytest.mark.asyncio
    async def test_lists_stages_in_order(self, client):
        response = await client.get("/pipeline/stages")

        assert response.status_code == 200
        data = response.json()
        assert [s["stage"] for s in data] == [s.value for s in STAGE_ORDER]
        signed = next(s for s in data if s["stage"] == "quote_signed")
        assert signed["label"] == "Signed"
        assert signed["probability"] == 90


# ── Opportunities ────────────────────────────────────────────────────────────


class TestOpportunityEndpoints:
    @pytest.mark.asyncio
    async def test_create_starts_as_lead(self, client, store, owner_id):
        account = await store.create_account(AccountCreate(name="Acme BV"))

        response = await client.post(
            "/pipeline/opportunities",
            json={
                "account_id": account.id,
                "owner_id": owner_id,
                "title": "Webshop",
                "value": 8000,
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["stage"] == "lead"
        assert data["probability"] == 10
        assert data["account_name"] == "Acme BV"
        assert data["created_at"] is not None

    @pytest.mark.asyncio
    async def test_create_for_missing_account_is_404(self, client, owner_id):
        response = await client.post(
            "/pipeline/opportunities",
            json={"account_id": "ghost", "owner_id": owner_id, "title": "x"},
        )
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_list_with_filters(self, client, seed):
        _, lead = await seed(stage=Stage.LEAD, value=100, title="Logo")
        await seed(stage=Stage.NEGOTIATION, value=9000, title="ERP")

        everything = await client.get("/pipeline/opportunities")
        assert len(everything.json()) == 2

        leads = await client.get("/pipeline/opportunities", params={"stage": "lead"})
        assert [o["id"] for o in leads.json()] == [lead.id]

        big = await client.get("/pipeline/opportunities", params={"value_min": 1000})
        assert [o["title"] for o in big.json()] == ["ERP"]

    @pytest.mark.asyncio
    async def test_list_unknown_stage_filter_is_422(self, client):
        response = await client.get("/pipeline/opportunities", params={"stage": "won"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_opportunity(self, client, seed):
        _, opp = await seed(title="Webshop")

        response = await client.get(f"/pipeline/opportunities/{opp.id}")

        assert response.status_code == 200
        assert response.json()["title"] == "Webshop"

    @pytest.mark.asyncio
    async def test_get_missing_is_404_with_error_body(self, client):
        response = await client.get("/pipeline/opportunities/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "not_found"
        assert body["retryable"] is False
        assert body["message"]

    @pytest.mark.asyncio
    async def test_patch_edits_fields(self, client, seed):
        _, opp = await seed(value=1000)

        response = await client.patch(
            f"/pipeline/opportunities/{opp.id}",
            json={"value": 2500, "notes": "Follow up Friday"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["value"] == 2500
        assert data["notes"] == "Follow up Friday"
        assert data["stage"] == opp.stage.value

    @pytest.mark.asyncio
    async def test_patch_stage_is_written_without_stage_rules(self, client, store, sink, seed):
        _, opp = await seed(stage=Stage.REVIEW, probability=98)

        response = await client.patch(
            f"/pipeline/opportunities/{opp.id}", json={"stage": "live"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["stage"] == "live"
        assert data["probability"] == 98
        assert sink.sent == []
        stored = await store.get_opportunity(opp.id)
        assert (stored.stage, stored.probability) == (Stage.LIVE, 98)


# ── Stage Transitions ────────────────────────────────────────────────────────


class TestStageTransitionEndpoint:
    @pytest.mark.asyncio
    async def test_transition_sets_probability(self, client, seed):
        _, opp = await seed(stage=Stage.NEGOTIATION)

        response = await client.post(
            f"/pipeline/opportunities/{opp.id}/stage", json={"stage": "review"}
        )

        assert response.status_code == 200
        assert response.json()["stage"] == "review"
        assert response.json()["probability"] == 98

    @pytest.mark.asyncio
    async def test_transition_returns_acknowledgment(self, client, seed):
        _, opp = await seed(stage=Stage.NEGOTIATION, title="Webshop", account_name="Acme BV")

        response = await client.post(
            f"/pipeline/opportunities/{opp.id}/stage", json={"stage": "review"}
        )

        assert response.json()["message"] == "Webshop (Acme BV) moved to Review"

    @pytest.mark.asyncio
    async def test_unknown_stage_is_422(self, client, seed):
        _, opp = await seed(stage=Stage.LEAD)

        response = await client.post(
            f"/pipeline/opportunities/{opp.id}/stage", json={"stage": "closed_won"}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_failure"

    @pytest.mark.asyncio
    async def test_store_outage_is_503(self, client, store, seed):
        _, opp = await seed(stage=Stage.LEAD)
        store.update_opportunity = AsyncMock(side_effect=TransportFailure("timeout"))

        response = await client.post(
            f"/pipeline/opportunities/{opp.id}/stage", json={"stage": "live"}
        )

        assert response.status_code == 503
        assert response.json()["error"] == "transport_failure"


# ── Conversion ───────────────────────────────────────────────────────────────


class TestConversionEndpoint:
    @pytest.mark.asyncio
    async def test_convert(self, client, store, seed):
        account, opp = await seed(stage=Stage.NEGOTIATION)

        response = await client.post(f"/pipeline/opportunities/{opp.id}/convert")

        assert response.status_code == 200
        data = response.json()
        assert data["already_customer"] is False
        assert data["opportunity"]["stage"] == "quote_signed"
        assert data["opportunity"]["probability"] == 90
        assert "update_account_status" in data["completed_steps"]
        assert data["message"] == f"{account.name} is now a customer"
        assert (await store.get_account(account.id)).status is AccountStatus.CUSTOMER

    @pytest.mark.asyncio
    async def test_ineligible_stage_is_422(self, client, seed):
        _, opp = await seed(stage=Stage.LEAD)
        response = await client.post(f"/pipeline/opportunities/{opp.id}/convert")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_partial_failure_is_502_with_steps(self, client, store, seed):
        account, opp = await seed(stage=Stage.QUOTE_SENT)
        store.update_opportunity = AsyncMock(side_effect=TransportFailure("offline"))

        response = await client.post(f"/pipeline/opportunities/{opp.id}/convert")

        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "partial_sequence_failure"
        assert body["retryable"] is True
        assert body["completed_steps"] == ["update_account_status"]
        assert body["failed_step"] == "update_opportunity_stage"
        assert body["account_id"] == account.id
        assert body["opportunity_id"] == opp.id


# ── Read Views ───────────────────────────────────────────────────────────────


class TestReadViews:
    @pytest.mark.asyncio
    async def test_board_has_every_stage(self, client, seed):
        await seed(stage=Stage.NEGOTIATION, value=1000)
        await seed(stage=Stage.LOST, value=500)

        response = await client.get("/pipeline/board")

        assert response.status_code == 200
        data = response.json()
        assert list(data["stages"]) == [s.value for s in STAGE_ORDER]
        assert data["stage_counts"]["negotiation"] == 1
        assert data["stage_counts"]["lost"] == 0
        assert data["total_value"] == 1000

    @pytest.mark.asyncio
    async def test_board_include_lost(self, client, seed):
        await seed(stage=Stage.LOST, value=500)
        response = await client.get("/pipeline/board", params={"include_lost": "true"})
        assert response.json()["stage_counts"]["lost"] == 1

    @pytest.mark.asyncio
    async def test_stats(self, client, seed):
        await seed(stage=Stage.QUOTE_SENT, value=1000)
        await seed(stage=Stage.QUOTE_SIGNED, value=2000)

        response = await client.get("/pipeline/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["total_opportunities"] == 2
        assert data["total_value"] == 3000
        assert data["weighted_value"] == pytest.approx(2200)
        assert data["avg_deal_size"] == 1500
        assert data["by_stage"]["quote_sent"] == {"count": 1, "value": 1000}

    @pytest.mark.asyncio
    async def test_board_reflects_transition(self, client, seed):
        _, opp = await seed(stage=Stage.NEGOTIATION)
        await client.get("/pipeline/board")

        await client.post(f"/pipeline/opportunities/{opp.id}/stage", json={"stage": "review"})
        data = (await client.get("/pipeline/board")).json()

        assert data["stage_counts"]["negotiation"] == 0
        assert data["stage_counts"]["review"] == 1


# ── Infrastructure ───────────────────────────────────────────────────────────


class TestInfrastructure:
    @pytest.mark.asyncio
    async def test_service_missing_is_503(self):
        app = create_app()
        app.state.pipeline_service = None

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/pipeline/board")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client):
        await client.get("/pipeline/stages")
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, client):
        response = await client.get("/health")
        assert response.headers.get("X-Request-ID")
