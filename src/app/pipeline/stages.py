"""Pipeline stage catalogue -- the one place the stage/probability table lives.

Every write path that sets a stage (drag-and-drop transitions, lead conversion,
opportunity creation) derives the probability from STAGE_PROBABILITY via
probability_for(). Do not inline the numbers anywhere else.
"""

from __future__ import annotations

from enum import Enum

from src.app.pipeline.errors import ValidationFailure


class Stage(str, Enum):
    """Discrete pipeline position of an opportunity, in pipeline order."""

    LEAD = "lead"
    QUOTE_REQUESTED = "quote_requested"
    QUOTE_SENT = "quote_sent"
    NEGOTIATION = "negotiation"
    QUOTE_SIGNED = "quote_signed"
    IN_DEVELOPMENT = "in_development"
    REVIEW = "review"
    LIVE = "live"
    MAINTENANCE = "maintenance"
    LOST = "lost"


class ClosingOutcome(str, Enum):
    """Final outcome of a deal that reached a terminal stage."""

    WON = "won"
    LOST = "lost"


STAGE_ORDER: list[Stage] = list(Stage)

STAGE_PROBABILITY: dict[Stage, int] = {
    Stage.LEAD: 10,
    Stage.QUOTE_REQUESTED: 20,
    Stage.QUOTE_SENT: 40,
    Stage.NEGOTIATION: 60,
    Stage.QUOTE_SIGNED: 90,
    Stage.IN_DEVELOPMENT: 95,
    Stage.REVIEW: 98,
    Stage.LIVE: 100,
    Stage.MAINTENANCE: 100,
    Stage.LOST: 0,
}

STAGE_LABELS: dict[Stage, str] = {
    Stage.LEAD: "Lead",
    Stage.QUOTE_REQUESTED: "Quote Requested",
    Stage.QUOTE_SENT: "Quote Sent",
    Stage.NEGOTIATION: "Negotiation",
    Stage.QUOTE_SIGNED: "Signed",
    Stage.IN_DEVELOPMENT: "In Development",
    Stage.REVIEW: "Review",
    Stage.LIVE: "Live",
    Stage.MAINTENANCE: "Maintenance",
    Stage.LOST: "Lost",
}

# Kanban columns shown on the board.
ACTIVE_STAGES: list[Stage] = [
    Stage.LEAD,
    Stage.QUOTE_REQUESTED,
    Stage.QUOTE_SENT,
    Stage.NEGOTIATION,
    Stage.QUOTE_SIGNED,
    Stage.IN_DEVELOPMENT,
    Stage.REVIEW,
    Stage.LIVE,
]

INITIAL_STAGE = Stage.LEAD

# Stages from which the UI offers "convert to customer".
CONVERSION_ELIGIBLE_STAGES: frozenset[Stage] = frozenset(
    {Stage.QUOTE_SENT, Stage.NEGOTIATION}
)
CONVERSION_STAGE = Stage.QUOTE_SIGNED

# Terminal stages that trigger a "deal closed" notification on transition.
CLOSING_STAGES: dict[Stage, ClosingOutcome] = {
    Stage.LIVE: ClosingOutcome.WON,
    Stage.LOST: ClosingOutcome.LOST,
}


def parse_stage(value: Stage | str) -> Stage:
    """Coerce a raw value into a Stage.

    Raises:
        ValidationFailure: If value is not one of the enumerated stages.
    """
    if isinstance(value, Stage):
        return value
    try:
        return Stage(value)
    except ValueError:
        raise ValidationFailure(
            f"Unknown pipeline stage: {value!r}. "
            f"Expected one of: {', '.join(s.value for s in STAGE_ORDER)}",
            entity="opportunity",
        ) from None


def probability_for(stage: Stage | str) -> int:
    """Win probability (0-100) associated with a stage."""
    return STAGE_PROBABILITY[parse_stage(stage)]


def stage_label(stage: Stage | str) -> str:
    """Human-readable label for a stage."""
    return STAGE_LABELS[parse_stage(stage)]


def closing_outcome(stage: Stage | str) -> ClosingOutcome | None:
    """Return WON/LOST for terminal stages, None otherwise."""
    return CLOSING_STAGES.get(parse_stage(stage))
