"""Record store abstract base class -- the persistence contract the engines consume.

Every backend (PostgreSQL via SQLAlchemy, the in-process store used in tests
and local development) implements this ABC. Implementations translate their
own failures into the pipeline error taxonomy (NotFoundError,
WriteConflictError, AuthorizationDeniedError, TransportFailure) so the engines
never see backend-specific exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.app.pipeline.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
)


class RecordStore(ABC):
    """Abstract interface for account and opportunity persistence.

    Methods:
        create_account: Insert an account, return the persisted record.
        get_account: Fetch an account by ID (None when absent).
        update_account: Apply a partial update, return the updated record.
        create_opportunity: Insert an opportunity at the initial stage.
        get_opportunity: Fetch a non-deleted opportunity by ID (None when absent).
        update_opportunity: Apply a partial update, return the updated record.
        list_opportunities: Query opportunities, newest first.

    Every write bumps ``updated_at``. Updates to a missing record raise
    NotFoundError.
    """

    @abstractmethod
    async def create_account(self, data: AccountCreate) -> AccountRead:
        """Insert an account."""
        ...

    @abstractmethod
    async def get_account(self, account_id: str) -> AccountRead | None:
        """Fetch an account by ID."""
        ...

    @abstractmethod
    async def update_account(self, account_id: str, data: AccountUpdate) -> AccountRead:
        """Apply a partial update to an account."""
        ...

    @abstractmethod
    async def create_opportunity(
        self, data: OpportunityCreate, *, stage: str, probability: int
    ) -> OpportunityRead:
        """Insert an opportunity with the given initial stage/probability."""
        ...

    @abstractmethod
    async def get_opportunity(self, opportunity_id: str) -> OpportunityRead | None:
        """Fetch an opportunity by ID."""
        ...

    @abstractmethod
    async def update_opportunity(
        self, opportunity_id: str, data: OpportunityUpdate
    ) -> OpportunityRead:
        """Apply a partial update to an opportunity."""
        ...

    @abstractmethod
    async def list_opportunities(
        self, filters: OpportunityFilter | None = None
    ) -> list[OpportunityRead]:
        """List opportunities matching filter criteria, newest first."""
        ...
