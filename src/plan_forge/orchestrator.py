"""Session-driving loop implemented as a LangGraph ``StateGraph``.

The persisted ``Session`` is the single source of truth: every node reloads
it from the store, applies one transition from ``state_machine`` and commits
it with compare-and-swap before routing on the new status. A run therefore
resumes cleanly from whatever status a previous process left behind.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .collaborators import PlanGenerator, PlanReviewer, call_with_retry, workspace_file_exists
from .errors import (
    CollaboratorError,
    ConcurrentSessionAccess,
    GeneratorFailure,
    ReviewerFailure,
    SessionClosed,
    StaleSessionError,
)
from .guardrails import GuardrailVerdict, decide_review, evaluate_limits
from .llm import LLMPlanGenerator, LLMPlanReviewer
from .models import (
    GuardrailLimits,
    HistoryEntry,
    MandatoryInputFlag,
    Plan,
    Session,
    SessionStatus,
    StopReason,
)
from .settings import RuntimeSettings
from .state_machine import (
    Cancelled,
    CeilingClear,
    CeilingExceeded,
    CollaboratorFailed,
    FeedbackSupplied,
    HumanInputRequired,
    PlanReceived,
    ScoreAccepted,
    ScoreRejected,
    SessionEvent,
    TaskReceived,
    ViabilityPassed,
    ViolationsFound,
    transition,
)
from .state_store import FileSessionStore, SessionStore, require_session
from .utils import merge_feedback, render_human_feedback, render_review_feedback, render_viability_feedback
from .viability import ViabilityChecker

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4
_CANCEL_ATTEMPTS = 5

_NODE_FOR_STATUS = {
    SessionStatus.GENERATING: "generating",
    SessionStatus.VALIDATING: "validating",
    SessionStatus.REVIEWING: "reviewing",
    SessionStatus.REFINING: "refining",
}


class OrchestrationState(TypedDict, total=False):
    session_id: str
    clock_mark: float


@dataclass(frozen=True)
class SessionOutcome:
    """What a caller sees after a run, resume, status or cancel call."""

    session_id: str
    status: SessionStatus
    iterations: int
    plan: Plan | None = None
    score: float | None = None
    best_effort: bool = False
    input_reason: str | None = None
    input_flags: tuple[MandatoryInputFlag, ...] = ()
    stop_reason: StopReason | None = None
    error: str | None = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionOutcome":
        latest = session.latest
        best_effort = session.status in {SessionStatus.MAX_TURNS, SessionStatus.HARD_STOPPED}
        if session.status == SessionStatus.APPROVED or session.status.suspended:
            plan = latest.plan if latest is not None else None
            review = latest.review_result if latest is not None else None
        else:
            plan = session.best_plan()
            best = session.entry(session.best_iteration) if session.best_iteration is not None else latest
            review = best.review_result if best is not None else None
        return cls(
            session_id=session.id,
            status=session.status,
            iterations=session.guardrail_state.iterations,
            plan=plan,
            score=review.score if review is not None else None,
            best_effort=best_effort and plan is not None,
            input_reason=session.input_reason,
            input_flags=session.pending_flags,
            stop_reason=session.stop_reason,
            error=session.error,
        )


def _estimate_tokens(entry: HistoryEntry) -> int:
    metrics = entry.viability_result.metrics if entry.viability_result is not None else None
    if metrics is not None:
        return metrics.token_estimate
    return len(entry.plan.model_dump_json()) // _CHARS_PER_TOKEN


class Orchestrator:
    """Drives sessions from task to a terminal or suspended status."""

    def __init__(
        self,
        generator: PlanGenerator,
        reviewer: PlanReviewer,
        store: SessionStore | None = None,
        *,
        settings: RuntimeSettings | None = None,
        file_exists: Callable[[str], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.generator = generator
        self.reviewer = reviewer
        self.store: SessionStore = (
            store
            if store is not None
            else FileSessionStore(self.settings.state_store_path(self.settings.workspace_root_path))
        )
        self.checker = ViabilityChecker(
            file_exists=file_exists if file_exists is not None else workspace_file_exists(self.settings.workspace_root_path),
            max_files_per_edit=self.settings.max_files_per_edit,
            plan_token_advisory=self.settings.plan_token_advisory,
        )
        self.clock = clock
        self.sleep = sleep
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(OrchestrationState)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("generating", self._generating_node)
        graph.add_node("validating", self._validating_node)
        graph.add_node("reviewing", self._reviewing_node)
        graph.add_node("refining", self._refining_node)
        graph.add_edge(START, "dispatch")
        return graph

    # ------------------------------------------------------------------
    # Public control operations
    # ------------------------------------------------------------------

    def start(self, task: str, *, limits: GuardrailLimits | None = None) -> SessionOutcome:
        if not task.strip():
            raise ValueError("task must be non-empty")
        session = self.store.create(task, limits if limits is not None else self.settings.guardrail_limits())
        return self.run(session.id)

    def run(self, session_id: str) -> SessionOutcome:
        """Advance a session until it is terminal or waiting for a person."""
        with self.store.lock(session_id):
            session = require_session(self.store, session_id)
            self._invoke(session)
        return self.status(session_id)

    def resume(
        self,
        session_id: str,
        feedback: str,
        *,
        limits: GuardrailLimits | None = None,
        approve: bool = True,
    ) -> SessionOutcome:
        """Continue a session, merging human feedback into the next generation request.

        Answering a NEEDS_INPUT question does not consume an iteration. With
        ``approve`` the conditions that caused the pause are recorded as
        approved and will not pause the session again; without it they are
        re-evaluated against the next plan. ``limits`` replaces the stored
        ceilings, for example to retry with a higher iteration budget.
        """
        with self.store.lock(session_id):
            session = require_session(self.store, session_id)
            if session.closed:
                raise SessionClosed(session_id, session.status.value)
            if limits is not None:
                session.limits = limits
            human = render_human_feedback(feedback) if feedback.strip() else None
            if session.status.suspended:
                latest = session.latest
                review = latest.review_result if latest is not None else None
                session.pending_feedback = merge_feedback(
                    session.pending_feedback,
                    render_review_feedback(review) if review is not None else None,
                    human,
                )
                if approve:
                    session.approved_flags = tuple(
                        sorted(set(session.approved_flags) | set(session.pending_flags), key=lambda flag: flag.value)
                    )
                    logger.info(
                        "session=%s approved %s",
                        session.id,
                        ", ".join(flag.value for flag in session.pending_flags) or "nothing",
                    )
                self._move(session, FeedbackSupplied(feedback=feedback))
                session.input_reason = None
                session.pending_flags = ()
            else:
                session.pending_feedback = merge_feedback(session.pending_feedback, human)
            self.store.save(session)
            self._invoke(session)
        return self.status(session_id)

    def status(self, session_id: str) -> SessionOutcome:
        return SessionOutcome.from_session(require_session(self.store, session_id))

    def get_session(self, session_id: str) -> Session:
        return require_session(self.store, session_id)

    def cancel(self, session_id: str) -> SessionOutcome:
        """Mark a session closed. A run in flight notices at its next checkpoint."""
        for _ in range(_CANCEL_ATTEMPTS):
            session = require_session(self.store, session_id)
            if session.status.terminal:
                return SessionOutcome.from_session(session)
            self._move(session, Cancelled())
            try:
                self.store.save(session)
            except StaleSessionError:
                logger.debug("cancel raced with a running step for session=%s; retrying", session_id)
                continue
            return SessionOutcome.from_session(session)
        raise ConcurrentSessionAccess(session_id, "could not cancel a session that keeps changing")

    # ------------------------------------------------------------------
    # Graph plumbing
    # ------------------------------------------------------------------

    def _invoke(self, session: Session) -> None:
        recursion_limit = max(self.settings.recursion_limit, 5 * session.limits.max_iterations + 10)
        self.graph.invoke(
            {"session_id": session.id, "clock_mark": self.clock()},
            config={"recursion_limit": recursion_limit},
        )

    def _move(self, session: Session, event: SessionEvent) -> None:
        previous = session.status
        session.status = transition(previous, event)
        if session.status.terminal:
            session.closed = True
        logger.info("session=%s %s -> %s", session.id, previous.value, session.status.value)

    def _commit(self, session: Session, state: OrchestrationState) -> tuple[Session | None, float]:
        """Charge active time and persist. Returns ``None`` if the session was closed meanwhile."""
        now = self.clock()
        session.guardrail_state.elapsed_seconds += max(0.0, now - state.get("clock_mark", now))
        try:
            return self.store.save(session), now
        except StaleSessionError:
            current = require_session(self.store, session.id)
            if current.closed:
                logger.info("session=%s closed during step; discarding result", session.id)
                return None, now
            raise

    def _load_open(self, state: OrchestrationState) -> Session | None:
        session = require_session(self.store, state["session_id"])
        return None if session.closed else session

    def _route(self, session: Session | None, mark: float) -> Command:
        if session is None or session.closed or session.status.suspended:
            return Command(goto=END, update={"clock_mark": mark})
        return Command(goto=_NODE_FOR_STATUS.get(session.status, END), update={"clock_mark": mark})

    def _fail(self, session_id: str, state: OrchestrationState, exc: CollaboratorError) -> None:
        session = require_session(self.store, session_id)
        if session.closed:
            logger.info("session=%s closed before %s failure was recorded", session_id, exc.collaborator)
            return
        logger.error("session=%s %s failed: %s", session_id, exc.collaborator, exc)
        self._move(session, CollaboratorFailed(detail=str(exc)))
        session.stop_reason = StopReason.COLLABORATOR_FAILURE
        session.error = f"{type(exc).__name__}: {exc}"
        self._commit(session, state)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _dispatch_node(self, state: OrchestrationState) -> Command:
        session = self._load_open(state)
        if session is None:
            return Command(goto=END)
        mark = state.get("clock_mark", self.clock())
        if session.status == SessionStatus.CREATED:
            self._move(session, TaskReceived())
            session.guardrail_state.iterations = 1
            session, mark = self._commit(session, state)
        return self._route(session, mark)

    def _generating_node(self, state: OrchestrationState) -> Command:
        session = self._load_open(state)
        if session is None:
            return Command(goto=END)
        latest = session.latest
        prior_plan = latest.plan if latest is not None else None
        feedback = session.pending_feedback
        try:
            plan = call_with_retry(
                lambda: self.generator.generate_plan(session.task, prior_plan, feedback),
                failure_type=GeneratorFailure,
                retries=self.settings.collaborator_max_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                sleep=self.sleep,
            )
        except CollaboratorError as exc:
            self._fail(session.id, state, exc)
            raise

        session = self._load_open(state)
        if session is None:
            logger.info("session=%s closed during generation; discarding plan", state["session_id"])
            return Command(goto=END)
        session.history.append(
            HistoryEntry(iteration=len(session.history) + 1, plan=plan, feedback=feedback)
        )
        session.pending_feedback = None
        self._move(session, PlanReceived())
        committed, mark = self._commit(session, state)
        return self._route(committed, mark)

    def _validating_node(self, state: OrchestrationState) -> Command:
        session = self._load_open(state)
        if session is None or session.latest is None:
            return Command(goto=END)
        entry = session.latest
        result = self.checker.check(entry.plan)
        entry.viability_result = result
        session.guardrail_state.total_tokens += _estimate_tokens(entry)
        if result.passed:
            self._move(session, ViabilityPassed())
        else:
            session.pending_feedback = merge_feedback(render_viability_feedback(result))
            self._move(session, ViolationsFound())
        committed, mark = self._commit(session, state)
        return self._route(committed, mark)

    def _reviewing_node(self, state: OrchestrationState) -> Command:
        session = self._load_open(state)
        if session is None or session.latest is None:
            return Command(goto=END)
        plan = session.latest.plan
        try:
            review = call_with_retry(
                lambda: self.reviewer.review_plan(plan),
                failure_type=ReviewerFailure,
                retries=self.settings.collaborator_max_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                sleep=self.sleep,
            )
        except CollaboratorError as exc:
            self._fail(session.id, state, exc)
            raise

        session = self._load_open(state)
        if session is None or session.latest is None:
            logger.info("session=%s closed during review; discarding review", state["session_id"])
            return Command(goto=END)
        entry = session.latest
        entry.review_result = review
        session.record_review(entry)
        decision = decide_review(
            entry.plan,
            review,
            session.limits,
            iteration=session.guardrail_state.iterations,
            approved=session.approved_flags,
        )
        if decision.status == SessionStatus.NEEDS_INPUT:
            session.input_reason = decision.reason
            session.pending_flags = decision.flags
            self._move(session, HumanInputRequired(reason=decision.reason or ""))
        elif decision.status == SessionStatus.APPROVED:
            self._move(session, ScoreAccepted())
        else:
            advisories = entry.viability_result.advisory if entry.viability_result is not None else []
            session.pending_feedback = merge_feedback(
                render_review_feedback(review),
                "\n".join(
                    f"[CONSIDER] {item.rule_id}: {item.message}" for item in advisories if item.rule_id != "rule-skipped"
                ),
            )
            self._move(session, ScoreRejected())
        committed, mark = self._commit(session, state)
        return self._route(committed, mark)

    def _refining_node(self, state: OrchestrationState) -> Command:
        session = self._load_open(state)
        if session is None:
            return Command(goto=END)
        verdict = evaluate_limits(session.guardrail_state, session.limits)
        if verdict != GuardrailVerdict.CONTINUE:
            session.stop_reason = verdict.stop_reason
            if verdict.hard:
                logger.warning(
                    "session=%s hard stop: %s (tokens=%d elapsed=%.1fs)",
                    session.id,
                    verdict.value,
                    session.guardrail_state.total_tokens,
                    session.guardrail_state.elapsed_seconds,
                )
            self._move(session, CeilingExceeded(verdict=verdict))
        else:
            session.guardrail_state.iterations += 1
            self._move(session, CeilingClear())
        committed, mark = self._commit(session, state)
        return self._route(committed, mark)


def build_orchestrator(settings: RuntimeSettings, *, state_dir: Path | None = None) -> Orchestrator:
    """Wire the LLM-backed collaborators and a file store from settings."""
    root = state_dir if state_dir is not None else settings.state_store_path(settings.workspace_root_path)
    return Orchestrator(
        LLMPlanGenerator(settings),
        LLMPlanReviewer(settings),
        FileSessionStore(root),
        settings=settings,
    )

