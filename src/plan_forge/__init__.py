from importlib.metadata import version

from .canonical import to_canonical_json
from .collaborators import PlanGenerator, PlanReviewer, workspace_file_exists
from .errors import (
    CollaboratorError,
    ConcurrentSessionAccess,
    GeneratorFailure,
    InvalidTransition,
    PlanForgeError,
    ReviewerFailure,
    SessionClosed,
    SessionNotFound,
    StaleSessionError,
    ValidationBlocking,
)
from .graph import TopologicalOrder, ancestors, find_cycle, topological_layers, topological_order
from .guardrails import (
    GuardrailVerdict,
    decide_review,
    evaluate_limits,
    required_input_flags,
    scan_plan_flags,
    scan_review_flags,
)
from .models import (
    ActionKind,
    GuardrailLimits,
    GuardrailState,
    HistoryEntry,
    Instruction,
    MandatoryInputFlag,
    Phase,
    Plan,
    PlanMetrics,
    ReviewResult,
    Risk,
    Session,
    SessionStatus,
    StopReason,
    ViabilityResult,
    ViabilitySeverity,
    ViabilityViolation,
)
from .orchestrator import Orchestrator, SessionOutcome
from .settings import RuntimeSettings
from .state_store import FileSessionStore, InMemorySessionStore, SessionStore
from .viability import ViabilityChecker


def get_version() -> str:
    try:
        return version("plan-forge")
    except Exception:
        return "0.0.0"


__all__ = [
    "ActionKind",
    "CollaboratorError",
    "ConcurrentSessionAccess",
    "FileSessionStore",
    "GeneratorFailure",
    "GuardrailLimits",
    "GuardrailState",
    "GuardrailVerdict",
    "HistoryEntry",
    "InMemorySessionStore",
    "Instruction",
    "InvalidTransition",
    "MandatoryInputFlag",
    "Orchestrator",
    "Phase",
    "Plan",
    "PlanForgeError",
    "PlanGenerator",
    "PlanMetrics",
    "PlanReviewer",
    "ReviewResult",
    "ReviewerFailure",
    "Risk",
    "RuntimeSettings",
    "Session",
    "SessionClosed",
    "SessionNotFound",
    "SessionOutcome",
    "SessionStatus",
    "SessionStore",
    "StaleSessionError",
    "StopReason",
    "TopologicalOrder",
    "ValidationBlocking",
    "ViabilityChecker",
    "ViabilityResult",
    "ViabilitySeverity",
    "ViabilityViolation",
    "ancestors",
    "decide_review",
    "evaluate_limits",
    "find_cycle",
    "get_version",
    "required_input_flags",
    "scan_plan_flags",
    "scan_review_flags",
    "to_canonical_json",
    "topological_layers",
    "topological_order",
    "workspace_file_exists",
]
