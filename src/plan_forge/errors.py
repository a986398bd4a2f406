from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ViabilityResult


class PlanForgeError(Exception):
    """Base class for planning workflow errors."""


class ValidationBlocking(PlanForgeError):
    """A plan carries one or more blocking viability violations."""

    def __init__(self, result: ViabilityResult) -> None:
        self.result = result
        details = "; ".join(f"{item.rule_id}: {item.message}" for item in result.blocking)
        super().__init__(f"plan has blocking viability violations: {details}")


class CollaboratorError(PlanForgeError):
    """Failure raised by an external generator or reviewer.

    ``transient`` failures may be retried; anything else ends the session.
    """

    collaborator = "collaborator"

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class GeneratorFailure(CollaboratorError):
    collaborator = "generator"


class ReviewerFailure(CollaboratorError):
    collaborator = "reviewer"


class SessionNotFound(PlanForgeError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class SessionClosed(PlanForgeError):
    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"session {session_id} is closed with status {status}")
        self.session_id = session_id
        self.status = status


class ConcurrentSessionAccess(PlanForgeError):
    """Another run holds the session, or the stored record moved underneath us."""

    def __init__(self, session_id: str, detail: str = "session is already being processed") -> None:
        super().__init__(f"{detail}: {session_id}")
        self.session_id = session_id


class StaleSessionError(ConcurrentSessionAccess):
    def __init__(self, session_id: str, expected: int, actual: int) -> None:
        super().__init__(session_id, f"revision mismatch (expected {expected}, found {actual})")
        self.expected = expected
        self.actual = actual


class InvalidTransition(PlanForgeError):
    def __init__(self, status: str, event: str) -> None:
        super().__init__(f"no transition from {status} on {event}")
        self.status = status
        self.event = event
