"""Error taxonomy for pipeline operations.

Record store implementations translate their backend failures into these
classes; the engines add context (entity, step) and re-raise them unchanged
in kind. PartialSequenceFailure is raised only by the lead conversion
sequencer when an earlier step committed and a later one failed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification of a pipeline failure, independent of exception type."""

    NOT_FOUND = "not_found"
    VALIDATION_FAILURE = "validation_failure"
    WRITE_CONFLICT = "write_conflict"
    AUTHORIZATION_DENIED = "authorization_denied"
    TRANSPORT_FAILURE = "transport_failure"
    PARTIAL_SEQUENCE_FAILURE = "partial_sequence_failure"


class PipelineError(Exception):
    """Base class for every failure surfaced by the pipeline core.

    Args:
        message: Human-readable reason.
        entity: Entity type involved ("opportunity", "account", "notification").
        entity_id: Identifier of the entity involved, when known.
        step: Operation step that failed (e.g. "update_account_status").
    """

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        entity_id: str | None = None,
        step: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id
        self.step = step

    def add_context(self, **fields: Any) -> PipelineError:
        """Fill entity/entity_id/step where not already set, return self."""
        for key in ("entity", "entity_id", "step"):
            if fields.get(key) is not None and getattr(self, key) is None:
                setattr(self, key, fields[key])
        return self

    def describe(self) -> str:
        """Single-line message suitable for a user-facing notification."""
        subject = self.entity or "record"
        if self.entity_id:
            subject = f"{subject} {self.entity_id}"
        if self.step:
            return f"{self.message} ({subject}, step: {self.step})"
        return f"{self.message} ({subject})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.describe(),
            "entity": self.entity,
            "entity_id": self.entity_id,
            "step": self.step,
            "retryable": self.retryable,
        }


class NotFoundError(PipelineError):
    """Referenced opportunity or account does not exist."""

    kind = ErrorKind.NOT_FOUND


class ValidationFailure(PipelineError, ValueError):
    """Input rejected locally before any write was attempted."""

    kind = ErrorKind.VALIDATION_FAILURE


class WriteConflictError(PipelineError):
    """Store reported a constraint or concurrency violation."""

    kind = ErrorKind.WRITE_CONFLICT


class AuthorizationDeniedError(PipelineError):
    """Store policy layer refused the operation."""

    kind = ErrorKind.AUTHORIZATION_DENIED


class TransportFailure(PipelineError):
    """Connectivity problem or timeout talking to the store."""

    kind = ErrorKind.TRANSPORT_FAILURE


class PartialSequenceFailure(PipelineError):
    """A multi-step sequence committed some steps and then failed.

    Whole-sequence retry is safe because every step is idempotent, so this
    error is always marked retryable. The underlying store error is chained
    as ``__cause__``.

    Args:
        message: Human-readable reason.
        completed_steps: Steps that committed before the failure.
        failed_step: Step that raised.
        account_id: Account touched by the sequence.
        opportunity_id: Opportunity touched by the sequence.
    """

    kind = ErrorKind.PARTIAL_SEQUENCE_FAILURE
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        completed_steps: list[str],
        failed_step: str,
        account_id: str,
        opportunity_id: str,
    ) -> None:
        super().__init__(
            message,
            entity="opportunity",
            entity_id=opportunity_id,
            step=failed_step,
        )
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step
        self.account_id = account_id
        self.opportunity_id = opportunity_id

    def describe(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            completed_steps=self.completed_steps,
            failed_step=self.failed_step,
            account_id=self.account_id,
            opportunity_id=self.opportunity_id,
        )
        return data


def as_pipeline_error(exc: Exception) -> PipelineError:
    """Return ``exc`` if already classified, otherwise wrap it as a TransportFailure.

    The original exception is kept as ``__cause__`` of the wrapper.
    """
    if isinstance(exc, PipelineError):
        return exc
    error = TransportFailure(f"Unexpected record store error: {exc}")
    error.__cause__ = exc
    return error
