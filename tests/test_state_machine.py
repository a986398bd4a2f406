import pytest

from plan_forge.errors import InvalidTransition
from plan_forge.guardrails import GuardrailVerdict
from plan_forge.models import TERMINAL_STATUSES, SessionStatus
from plan_forge.state_machine import (
    SESSION_TRANSITIONS,
    Cancelled,
    CeilingClear,
    CeilingExceeded,
    CollaboratorFailed,
    FeedbackSupplied,
    HumanInputRequired,
    PlanReceived,
    ScoreAccepted,
    ScoreRejected,
    TaskReceived,
    ViabilityPassed,
    ViolationsFound,
    allowed_events,
    transition,
)


@pytest.mark.parametrize(
    ("status", "event", "expected"),
    [
        (SessionStatus.CREATED, TaskReceived(), SessionStatus.GENERATING),
        (SessionStatus.GENERATING, PlanReceived(), SessionStatus.VALIDATING),
        (SessionStatus.VALIDATING, ViolationsFound(), SessionStatus.REFINING),
        (SessionStatus.VALIDATING, ViabilityPassed(), SessionStatus.REVIEWING),
        (SessionStatus.REVIEWING, HumanInputRequired(reason="approve"), SessionStatus.NEEDS_INPUT),
        (SessionStatus.REVIEWING, ScoreAccepted(), SessionStatus.APPROVED),
        (SessionStatus.REVIEWING, ScoreRejected(), SessionStatus.REFINING),
        (SessionStatus.REFINING, CeilingExceeded(GuardrailVerdict.MAX_ITERATIONS_EXCEEDED), SessionStatus.MAX_TURNS),
        (SessionStatus.REFINING, CeilingExceeded(GuardrailVerdict.TOKEN_BUDGET_EXCEEDED), SessionStatus.HARD_STOPPED),
        (SessionStatus.REFINING, CeilingExceeded(GuardrailVerdict.TIMEOUT_EXCEEDED), SessionStatus.HARD_STOPPED),
        (SessionStatus.REFINING, CeilingClear(), SessionStatus.GENERATING),
        (SessionStatus.NEEDS_INPUT, FeedbackSupplied(feedback="use sqlite"), SessionStatus.GENERATING),
        (SessionStatus.GENERATING, CollaboratorFailed(detail="boom"), SessionStatus.HARD_STOPPED),
        (SessionStatus.REVIEWING, CollaboratorFailed(), SessionStatus.HARD_STOPPED),
        (SessionStatus.NEEDS_INPUT, Cancelled(), SessionStatus.CANCELLED),
    ],
)
def test_table_transitions(status: SessionStatus, event: object, expected: SessionStatus) -> None:
    assert transition(status, event) == expected  # type: ignore[arg-type]


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda item: item.value))
def test_terminal_statuses_have_no_transitions(status: SessionStatus) -> None:
    assert allowed_events(status) == []
    for event in (TaskReceived(), FeedbackSupplied(), Cancelled(), CeilingClear()):
        with pytest.raises(InvalidTransition):
            transition(status, event)


def test_every_open_status_can_be_cancelled() -> None:
    for status in SessionStatus:
        if not status.terminal:
            assert transition(status, Cancelled()) == SessionStatus.CANCELLED


def test_missing_pairs_are_rejected() -> None:
    with pytest.raises(InvalidTransition, match="created"):
        transition(SessionStatus.CREATED, ScoreAccepted())
    with pytest.raises(InvalidTransition):
        transition(SessionStatus.VALIDATING, FeedbackSupplied())
    with pytest.raises(InvalidTransition):
        transition(SessionStatus.REFINING, CeilingExceeded(GuardrailVerdict.CONTINUE))


def test_needs_input_is_suspend_not_terminal() -> None:
    assert SessionStatus.NEEDS_INPUT.suspended
    assert not SessionStatus.NEEDS_INPUT.terminal
    assert allowed_events(SessionStatus.NEEDS_INPUT) == ["Cancelled", "FeedbackSupplied"]


def test_table_only_targets_known_statuses() -> None:
    for (source, _event), target in SESSION_TRANSITIONS.items():
        assert not source.terminal
        assert target is None or isinstance(target, SessionStatus)
