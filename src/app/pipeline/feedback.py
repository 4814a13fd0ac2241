"""User feedback surface -- toasts and the celebration animation.

The engines report outcomes through UserFeedback instead of talking to a UI
directly. A browser host renders toasts and confetti; the API host uses
LoggingFeedback, which turns them into structlog events.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog

logger = structlog.get_logger(__name__)


class UserFeedback(ABC):
    """Where user-facing acknowledgments go."""

    @abstractmethod
    def success(self, title: str, description: str | None = None) -> None:
        ...

    @abstractmethod
    def error(self, title: str, description: str | None = None) -> None:
        ...

    @abstractmethod
    def celebrate(self, seconds: float) -> None:
        """Show a time-bounded celebration. Purely cosmetic."""
        ...


class LoggingFeedback(UserFeedback):
    """Feedback for hosts without a UI: every acknowledgment becomes a log line."""

    def success(self, title: str, description: str | None = None) -> None:
        logger.info("feedback.success", title=title, description=description)

    def error(self, title: str, description: str | None = None) -> None:
        logger.warning("feedback.error", title=title, description=description)

    def celebrate(self, seconds: float) -> None:
        logger.info("feedback.celebrate", seconds=seconds)
