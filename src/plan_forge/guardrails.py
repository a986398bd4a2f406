from __future__ import annotations

import fnmatch
import re
from collections.abc import Collection
from dataclasses import dataclass
from enum import Enum

from .models import (
    COMMAND_ACTIONS,
    GuardrailLimits,
    GuardrailState,
    Instruction,
    MandatoryInputFlag,
    Plan,
    ReviewResult,
    SessionStatus,
    StopReason,
)

SENSITIVE_FILE_PATTERNS: tuple[str, ...] = (
    "*.env",
    "*.env.*",
    "*secret*",
    "*credential*",
    "*.pem",
    "*.key",
    "secrets/*",
    "*/secrets/*",
)

SECURITY_KEYWORDS: tuple[str, ...] = (
    "credential",
    "auth",
    "encrypt",
    "secret",
    "token",
    "password",
    "api_key",
    "private_key",
    "certificate",
)

# A breaking change needs a verb and a public surface in the same text.
API_CHANGE_VERBS: tuple[str, ...] = ("modify", "change", "update", "refactor", "rename", "remove")
PUBLIC_API_MARKERS: tuple[str, ...] = (
    "public api",
    "signature",
    "endpoint",
    "__all__",
    "__init__.py",
    "cli flag",
)

DATA_DELETION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bDROP\s+TABLE\b",
        r"\bDELETE\s+FROM\b",
        r"\bTRUNCATE\b",
        r"\brm\s+-(?:rf|fr)\b",
        r"\bshutil\.rmtree\b",
    )
)


class GuardrailVerdict(str, Enum):
    CONTINUE = "continue"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    TOKEN_BUDGET_EXCEEDED = "token_budget_exceeded"
    TIMEOUT_EXCEEDED = "timeout_exceeded"

    @property
    def hard(self) -> bool:
        return self in {GuardrailVerdict.TOKEN_BUDGET_EXCEEDED, GuardrailVerdict.TIMEOUT_EXCEEDED}

    @property
    def terminal_status(self) -> SessionStatus | None:
        if self == GuardrailVerdict.CONTINUE:
            return None
        return SessionStatus.HARD_STOPPED if self.hard else SessionStatus.MAX_TURNS

    @property
    def stop_reason(self) -> StopReason | None:
        if self == GuardrailVerdict.TOKEN_BUDGET_EXCEEDED:
            return StopReason.TOKEN_BUDGET
        if self == GuardrailVerdict.TIMEOUT_EXCEEDED:
            return StopReason.TIMEOUT
        return None


def evaluate_limits(state: GuardrailState, limits: GuardrailLimits) -> GuardrailVerdict:
    """Compare counters against ceilings.

    Resource ceilings are checked before the iteration ceiling so a runaway
    session is reported as a hard stop even when it also ran out of turns.
    """
    if state.total_tokens > limits.max_total_tokens:
        return GuardrailVerdict.TOKEN_BUDGET_EXCEEDED
    if state.elapsed_seconds >= limits.max_duration_seconds:
        return GuardrailVerdict.TIMEOUT_EXCEEDED
    if state.iterations >= limits.max_iterations:
        return GuardrailVerdict.MAX_ITERATIONS_EXCEEDED
    return GuardrailVerdict.CONTINUE


def is_sensitive_path(path: str) -> bool:
    normalized = path.replace("\\", "/").lower()
    return any(fnmatch.fnmatchcase(normalized, pattern) for pattern in SENSITIVE_FILE_PATTERNS)


def _instruction_text(instruction: Instruction) -> list[str]:
    texts = [instruction.description]
    texts.extend(value for value in instruction.params.values() if isinstance(value, str))
    texts.extend(instruction.file_refs)
    texts.extend(instruction.creates)
    return [text.lower() for text in texts if text]


def _plan_text(plan: Plan) -> list[str]:
    texts = [plan.title.lower()]
    for phase in plan.phases:
        texts.append(phase.name.lower())
        for instruction in phase.instructions:
            texts.extend(_instruction_text(instruction))
    for risk in plan.risks:
        texts.extend(text.lower() for text in (risk.description, risk.mitigation) if text)
    return texts


def _mentions_breaking_change(text: str) -> bool:
    return any(verb in text for verb in API_CHANGE_VERBS) and any(
        surface in text for surface in PUBLIC_API_MARKERS
    )


def scan_plan_flags(plan: Plan) -> frozenset[MandatoryInputFlag]:
    """Mandatory-approval conditions detectable from the plan itself."""
    flags: set[MandatoryInputFlag] = set()
    texts = _plan_text(plan)
    if any(keyword in text for text in texts for keyword in SECURITY_KEYWORDS):
        flags.add(MandatoryInputFlag.SECURITY_SENSITIVE)
    if any(_mentions_breaking_change(text) for text in texts):
        flags.add(MandatoryInputFlag.BREAKING_API_CHANGE)
    for instruction in plan.instructions():
        paths = set(instruction.file_refs) | set(instruction.creates)
        if any(is_sensitive_path(path) for path in paths):
            flags.add(MandatoryInputFlag.SENSITIVE_FILES)
        if instruction.action in COMMAND_ACTIONS and instruction.command:
            if any(pattern.search(instruction.command) for pattern in DATA_DELETION_PATTERNS):
                flags.add(MandatoryInputFlag.DATA_DELETION)
    return frozenset(flags)


def scan_review_flags(review: ReviewResult, limits: GuardrailLimits, iteration: int) -> frozenset[MandatoryInputFlag]:
    """Escalations driven by the loop rather than the plan.

    Neither applies once the iteration ceiling is reached; the ceiling ends
    the session instead.
    """
    if iteration >= limits.max_iterations:
        return frozenset()
    flags: set[MandatoryInputFlag] = set()
    if review.score < limits.low_score_threshold:
        flags.add(MandatoryInputFlag.LOW_SCORE)
    if iteration >= limits.iteration_soft_limit:
        flags.add(MandatoryInputFlag.ITERATION_SOFT_LIMIT)
    return frozenset(flags)


def required_input_flags(
    plan: Plan,
    review: ReviewResult,
    limits: GuardrailLimits | None = None,
    *,
    iteration: int = 1,
    approved: Collection[MandatoryInputFlag] = (),
) -> tuple[MandatoryInputFlag, ...]:
    """Conditions that still need a person, excluding those already approved."""
    flags = set(review.mandatory_input_flags) | scan_plan_flags(plan)
    if limits is not None:
        flags |= scan_review_flags(review, limits, iteration)
    flags -= set(approved)
    return tuple(sorted(flags, key=lambda flag: flag.value))


@dataclass(frozen=True)
class ReviewDecision:
    status: SessionStatus
    flags: tuple[MandatoryInputFlag, ...] = ()
    reason: str | None = None


def _describe(flag: MandatoryInputFlag, review: ReviewResult, limits: GuardrailLimits, iteration: int) -> str:
    if flag == MandatoryInputFlag.LOW_SCORE:
        return f"{flag.value} ({review.score:.2f} < {limits.low_score_threshold:.2f})"
    if flag == MandatoryInputFlag.ITERATION_SOFT_LIMIT:
        return f"{flag.value} (iteration {iteration} of soft limit {limits.iteration_soft_limit})"
    return flag.value


def decide_review(
    plan: Plan,
    review: ReviewResult,
    limits: GuardrailLimits,
    *,
    iteration: int = 1,
    approved: Collection[MandatoryInputFlag] = (),
) -> ReviewDecision:
    """Choose the post-review status.

    Any mandatory-approval flag not yet approved by a person forces
    NEEDS_INPUT, whatever the score.
    """
    flags = required_input_flags(plan, review, limits, iteration=iteration, approved=approved)
    if flags:
        if review.input_reason and set(flags) & set(review.mandatory_input_flags):
            reason = review.input_reason
        else:
            reason = "human approval required: " + ", ".join(
                _describe(flag, review, limits, iteration) for flag in flags
            )
        return ReviewDecision(status=SessionStatus.NEEDS_INPUT, flags=flags, reason=reason)
    if review.score >= limits.score_threshold:
        return ReviewDecision(status=SessionStatus.APPROVED)
    return ReviewDecision(status=SessionStatus.REFINING)
