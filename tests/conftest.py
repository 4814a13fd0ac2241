"""Shared fixtures for pipeline tests.

Provides:
- In-memory record store and an invalidation bus with a fixed origin
- Recording notification sink and user feedback doubles
- A fully wired PipelineService built from explicit settings
- ``seed`` helper creating an account + opportunity at any stage
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from src.app.config import Settings
from src.app.events.bus import InvalidationBus
from src.app.events.schemas import InvalidationEvent
from src.app.pipeline.feedback import UserFeedback
from src.app.pipeline.notifications import (
    NotificationKind,
    NotificationPayload,
    NotificationSink,
)
from src.app.pipeline.schemas import (
    AccountCreate,
    AccountRead,
    AccountStatus,
    OpportunityCreate,
    OpportunityRead,
)
from src.app.pipeline.service import PipelineService, build_pipeline_service
from src.app.pipeline.stages import Stage, probability_for
from src.app.pipeline.store.memory import InMemoryRecordStore

OWNER_ID = "7f1e9b8a-3c2d-4e5f-8a9b-0c1d2e3f4a5b"


# ── Test Doubles ─────────────────────────────────────────────────────────────


class RecordingNotificationSink(NotificationSink):
    """Keeps every notification; optionally fails on delivery."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, NotificationKind, NotificationPayload]] = []
        self.fail = fail

    async def notify(
        self,
        target_user_id: str,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> None:
        if self.fail:
            raise ConnectionError("notification service down")
        self.sent.append((target_user_id, kind, payload))

    def kinds(self) -> list[NotificationKind]:
        return [kind for _, kind, _ in self.sent]


class RecordingFeedback(UserFeedback):
    """Collects toasts and celebrations instead of rendering them."""

    def __init__(self) -> None:
        self.successes: list[tuple[str, str | None]] = []
        self.errors: list[tuple[str, str | None]] = []
        self.celebrations: list[float] = []

    def success(self, title: str, description: str | None = None) -> None:
        self.successes.append((title, description))

    def error(self, title: str, description: str | None = None) -> None:
        self.errors.append((title, description))

    def celebrate(self, seconds: float) -> None:
        self.celebrations.append(seconds)


@dataclass
class EventRecorder:
    """Wildcard bus subscriber that remembers every event."""

    events: list[InvalidationEvent] = field(default_factory=list)

    def __call__(self, event: InvalidationEvent) -> None:
        self.events.append(event)

    @property
    def topics(self) -> set[str]:
        return {t for e in self.events for t in e.topics}


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="memory://",
        ENFORCE_CONVERSION_ELIGIBILITY=True,
        PIPELINE_INCLUDE_LOST=False,
        CURRENCY="EUR",
        CELEBRATION_SECONDS=3.0,
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def bus() -> InvalidationBus:
    return InvalidationBus(origin="test-process")


@pytest.fixture
def recorder(bus: InvalidationBus) -> EventRecorder:
    rec = EventRecorder()
    bus.subscribe("*", rec)
    return rec


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def failing_sink() -> RecordingNotificationSink:
    return RecordingNotificationSink(fail=True)


@pytest.fixture
def owner_id() -> str:
    return OWNER_ID


@pytest.fixture
def feedback() -> RecordingFeedback:
    return RecordingFeedback()


@pytest.fixture
def service(store, bus, sink, feedback, settings) -> Iterator[PipelineService]:
    svc = build_pipeline_service(
        store, bus=bus, notifications=sink, feedback=feedback, settings=settings
    )
    yield svc
    svc.close()


@pytest_asyncio.fixture
async def seed(store: InMemoryRecordStore):
    """Factory creating an account and one opportunity on it."""

    async def _seed(
        *,
        stage: Stage = Stage.NEGOTIATION,
        value: float = 5000.0,
        probability: int | None = None,
        account_name: str = "Acme BV",
        account_status: AccountStatus = AccountStatus.PROSPECT,
        title: str = "Website relaunch",
        account: AccountRead | None = None,
        **extra: Any,
    ) -> tuple[AccountRead, OpportunityRead]:
        if account is None:
            account = await store.create_account(
                AccountCreate(name=account_name, status=account_status)
            )
        opp = await store.create_opportunity(
            OpportunityCreate(
                account_id=account.id,
                owner_id=OWNER_ID,
                title=title,
                value=value,
                **extra,
            ),
            stage=stage.value,
            probability=probability if probability is not None else probability_for(stage),
        )
        return account, opp

    return _seed
