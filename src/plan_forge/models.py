from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationBlocking


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


def _sorted_unique(values: Any) -> tuple[str, ...]:
    """Normalize a set-like field into a sorted tuple so serialization is order-stable."""
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    return tuple(sorted({str(value) for value in values}))


# ---------------------------------------------------------------------------
# Plan graph
# ---------------------------------------------------------------------------


class ActionKind(str, Enum):
    GATHER_CONTEXT = "gather_context"
    GENERATE_CODE = "generate_code"
    EDIT_CODE = "edit_code"
    GENERATE_TEST = "generate_test"
    RUN_TEST = "run_test"
    RUN_COMMAND = "run_command"
    HUMAN_CHECKPOINT = "human_checkpoint"


# Kinds that create or mutate content and therefore need a goal.
GOAL_REQUIRED_ACTIONS = frozenset({ActionKind.GENERATE_CODE, ActionKind.EDIT_CODE, ActionKind.GENERATE_TEST})
FILE_TOUCHING_ACTIONS = frozenset({ActionKind.GENERATE_CODE, ActionKind.EDIT_CODE, ActionKind.GENERATE_TEST})
COMMAND_ACTIONS = frozenset({ActionKind.RUN_COMMAND, ActionKind.RUN_TEST})


class Instruction(BaseModel):
    """A node of the plan's dependency graph."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    action: ActionKind
    description: str = ""
    depends_on: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()
    consumes: tuple[str, ...] = ()
    file_refs: tuple[str, ...] = ()
    creates: tuple[str, ...] = Field(
        default=(),
        description="Subset of file_refs this instruction brings into existence",
    )
    params: dict[str, Any] = Field(default_factory=dict)
    testable: bool = False
    estimated_tokens: int | None = Field(default=None, ge=0)

    @field_validator("depends_on", "produces", "consumes", "file_refs", "creates", mode="before")
    @classmethod
    def _normalize_sets(cls, value: Any) -> tuple[str, ...]:
        return _sorted_unique(value)

    @property
    def goal(self) -> str:
        value = self.params.get("goal")
        return value.strip() if isinstance(value, str) else ""

    @property
    def command(self) -> str:
        value = self.params.get("command")
        return value.strip() if isinstance(value, str) else ""


class Phase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    instructions: tuple[Instruction, ...] = ()


class Risk(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    mitigation: str = ""


class Plan(BaseModel):
    """Output of one generation attempt. Refinements produce new values."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str
    phases: tuple[Phase, ...] = ()
    risks: tuple[Risk, ...] = ()

    def instructions(self) -> list[Instruction]:
        """Flattened instruction arena in declaration order."""
        return [instruction for phase in self.phases for instruction in phase.instructions]

    def instruction_index(self) -> dict[str, int]:
        """Map instruction id to arena position. The first occurrence wins on duplicates."""
        index: dict[str, int] = {}
        for position, instruction in enumerate(self.instructions()):
            index.setdefault(instruction.id, position)
        return index


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


class MandatoryInputFlag(str, Enum):
    SECURITY_SENSITIVE = "security_sensitive"
    SENSITIVE_FILES = "sensitive_files"
    BREAKING_API_CHANGE = "breaking_api_change"
    DATA_DELETION = "data_deletion"
    AMBIGUOUS_REQUIREMENTS = "ambiguous_requirements"
    ARCHITECTURE_DECISION = "architecture_decision"
    LOW_SCORE = "low_score"
    ITERATION_SOFT_LIMIT = "iteration_soft_limit"


# Conditions the reviewer may assert. The rest are derived by the guardrails.
REVIEWER_FLAGS = (
    MandatoryInputFlag.SECURITY_SENSITIVE,
    MandatoryInputFlag.SENSITIVE_FILES,
    MandatoryInputFlag.BREAKING_API_CHANGE,
    MandatoryInputFlag.DATA_DELETION,
    MandatoryInputFlag.AMBIGUOUS_REQUIREMENTS,
    MandatoryInputFlag.ARCHITECTURE_DECISION,
)


def _sorted_flags(value: Any) -> tuple[MandatoryInputFlag, ...]:
    if not value:
        return ()
    flags = {MandatoryInputFlag(item) for item in value}
    return tuple(sorted(flags, key=lambda flag: flag.value))


class ReviewResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = Field(..., ge=0.0, le=1.0)
    mandatory_input_flags: tuple[MandatoryInputFlag, ...] = ()
    feedback: str = ""
    gaps: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()
    input_reason: str | None = None

    @field_validator("mandatory_input_flags", mode="before")
    @classmethod
    def _normalize_flags(cls, value: Any) -> tuple[MandatoryInputFlag, ...]:
        return _sorted_flags(value)


# ---------------------------------------------------------------------------
# Viability
# ---------------------------------------------------------------------------


class ViabilitySeverity(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


class ViabilityViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    severity: ViabilitySeverity
    instruction_ids: tuple[str, ...] = ()
    message: str

    @property
    def blocking(self) -> bool:
        return self.severity == ViabilitySeverity.BLOCKING


class PlanMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_count: int = 0
    edge_count: int = 0
    root_count: int = 0
    leaf_count: int = 0
    depth: int = 0
    width: int = 0
    parallelization_ratio: float = 0.0
    token_estimate: int = 0


class ViabilityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    violations: tuple[ViabilityViolation, ...] = ()
    skipped_rules: tuple[str, ...] = ()
    metrics: PlanMetrics | None = None

    @property
    def passed(self) -> bool:
        return not any(violation.blocking for violation in self.violations)

    @property
    def blocking(self) -> list[ViabilityViolation]:
        return [violation for violation in self.violations if violation.blocking]

    @property
    def advisory(self) -> list[ViabilityViolation]:
        return [violation for violation in self.violations if not violation.blocking]

    def raise_for_blocking(self) -> None:
        if not self.passed:
            raise ValidationBlocking(self)


# ---------------------------------------------------------------------------
# Guardrails and sessions
# ---------------------------------------------------------------------------


class GuardrailLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=10, ge=1)
    max_total_tokens: int = Field(default=500_000, ge=1)
    max_duration_seconds: float = Field(default=600.0, gt=0)
    score_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    low_score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    iteration_soft_limit: int = Field(default=7, ge=1)


class GuardrailState(BaseModel):
    iterations: int = 0
    total_tokens: int = 0
    elapsed_seconds: float = 0.0


class SessionStatus(str, Enum):
    CREATED = "created"
    GENERATING = "generating"
    VALIDATING = "validating"
    REVIEWING = "reviewing"
    REFINING = "refining"
    APPROVED = "approved"
    NEEDS_INPUT = "needs_input"
    MAX_TURNS = "max_turns"
    HARD_STOPPED = "hard_stopped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def suspended(self) -> bool:
        return self == SessionStatus.NEEDS_INPUT


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.APPROVED,
        SessionStatus.MAX_TURNS,
        SessionStatus.HARD_STOPPED,
        SessionStatus.CANCELLED,
    }
)


class StopReason(str, Enum):
    TOKEN_BUDGET = "token_budget"
    TIMEOUT = "timeout"
    COLLABORATOR_FAILURE = "collaborator_failure"


class HistoryEntry(BaseModel):
    iteration: int
    plan: Plan
    viability_result: ViabilityResult | None = None
    review_result: ReviewResult | None = None
    feedback: str | None = None
    timestamp: str = Field(default_factory=_utc_now)


class Session(BaseModel):
    """Persisted record of one task's planning attempts."""

    id: str
    task: str
    status: SessionStatus = SessionStatus.CREATED
    history: list[HistoryEntry] = Field(default_factory=list)
    guardrail_state: GuardrailState = Field(default_factory=GuardrailState)
    limits: GuardrailLimits = Field(default_factory=GuardrailLimits)
    pending_feedback: str | None = None
    input_reason: str | None = None
    # Conditions behind the current pause, and those a person has already approved.
    pending_flags: tuple[MandatoryInputFlag, ...] = ()
    approved_flags: tuple[MandatoryInputFlag, ...] = ()
    stop_reason: StopReason | None = None
    error: str | None = None
    best_iteration: int | None = None
    closed: bool = False
    revision: int = 0
    created_at: str = Field(default_factory=_utc_now)
    updated_at: str = Field(default_factory=_utc_now)

    @field_validator("pending_flags", "approved_flags", mode="before")
    @classmethod
    def _normalize_flags(cls, value: Any) -> tuple[MandatoryInputFlag, ...]:
        return _sorted_flags(value)

    @property
    def latest(self) -> HistoryEntry | None:
        return self.history[-1] if self.history else None

    def entry(self, iteration: int) -> HistoryEntry:
        for item in self.history:
            if item.iteration == iteration:
                return item
        raise KeyError(f"session {self.id} has no iteration {iteration}")

    def best_plan(self) -> Plan | None:
        """Highest-scoring reviewed plan, falling back to the latest plan."""
        if self.best_iteration is not None:
            return self.entry(self.best_iteration).plan
        latest = self.latest
        return latest.plan if latest is not None else None

    def record_review(self, entry: HistoryEntry) -> None:
        if entry.review_result is None:
            return
        if self.best_iteration is None:
            self.best_iteration = entry.iteration
            return
        best_review = self.entry(self.best_iteration).review_result
        if best_review is None or entry.review_result.score > best_review.score:
            self.best_iteration = entry.iteration
