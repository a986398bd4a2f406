"""Session lifecycle as a closed set of events over ``SessionStatus``.

Every legal move is a row in ``SESSION_TRANSITIONS``. A (status, event)
pair missing from the table is a programming error and raises
``InvalidTransition``; terminal statuses have no rows at all.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidTransition
from .guardrails import GuardrailVerdict
from .models import SessionStatus


@dataclass(frozen=True)
class TaskReceived:
    pass


@dataclass(frozen=True)
class PlanReceived:
    pass


@dataclass(frozen=True)
class ViolationsFound:
    pass


@dataclass(frozen=True)
class ViabilityPassed:
    pass


@dataclass(frozen=True)
class HumanInputRequired:
    reason: str = ""


@dataclass(frozen=True)
class ScoreAccepted:
    pass


@dataclass(frozen=True)
class ScoreRejected:
    pass


@dataclass(frozen=True)
class CeilingExceeded:
    verdict: GuardrailVerdict


@dataclass(frozen=True)
class CeilingClear:
    pass


@dataclass(frozen=True)
class FeedbackSupplied:
    feedback: str = ""


@dataclass(frozen=True)
class CollaboratorFailed:
    detail: str = ""


@dataclass(frozen=True)
class Cancelled:
    pass


SessionEvent = (
    TaskReceived
    | PlanReceived
    | ViolationsFound
    | ViabilityPassed
    | HumanInputRequired
    | ScoreAccepted
    | ScoreRejected
    | CeilingExceeded
    | CeilingClear
    | FeedbackSupplied
    | CollaboratorFailed
    | Cancelled
)

# CeilingExceeded resolves through its verdict, see ``transition``.
SESSION_TRANSITIONS: dict[tuple[SessionStatus, type], SessionStatus | None] = {
    (SessionStatus.CREATED, TaskReceived): SessionStatus.GENERATING,
    (SessionStatus.GENERATING, PlanReceived): SessionStatus.VALIDATING,
    (SessionStatus.GENERATING, CollaboratorFailed): SessionStatus.HARD_STOPPED,
    (SessionStatus.VALIDATING, ViolationsFound): SessionStatus.REFINING,
    (SessionStatus.VALIDATING, ViabilityPassed): SessionStatus.REVIEWING,
    (SessionStatus.REVIEWING, HumanInputRequired): SessionStatus.NEEDS_INPUT,
    (SessionStatus.REVIEWING, ScoreAccepted): SessionStatus.APPROVED,
    (SessionStatus.REVIEWING, ScoreRejected): SessionStatus.REFINING,
    (SessionStatus.REVIEWING, CollaboratorFailed): SessionStatus.HARD_STOPPED,
    (SessionStatus.REFINING, CeilingExceeded): None,
    (SessionStatus.REFINING, CeilingClear): SessionStatus.GENERATING,
    (SessionStatus.NEEDS_INPUT, FeedbackSupplied): SessionStatus.GENERATING,
}

for _status in SessionStatus:
    if not _status.terminal:
        SESSION_TRANSITIONS[(_status, Cancelled)] = SessionStatus.CANCELLED


def transition(status: SessionStatus, event: SessionEvent) -> SessionStatus:
    key = (status, type(event))
    if key not in SESSION_TRANSITIONS:
        raise InvalidTransition(status.value, type(event).__name__)
    if isinstance(event, CeilingExceeded):
        target = event.verdict.terminal_status
        if target is None:
            raise InvalidTransition(status.value, f"CeilingExceeded({event.verdict.value})")
        return target
    target = SESSION_TRANSITIONS[key]
    if target is None:
        raise InvalidTransition(status.value, type(event).__name__)
    return target


def allowed_events(status: SessionStatus) -> list[str]:
    return sorted(event.__name__ for (source, event) in SESSION_TRANSITIONS if source == status)
