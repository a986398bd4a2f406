from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import GuardrailLimits


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_iterations: int = 10
    max_total_tokens: int = 500_000
    execution_timeout_secs: float = 600.0
    score_threshold: float = 0.8
    low_score_threshold: float = 0.5
    iteration_soft_limit: int = 7
    collaborator_max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    state_store_root: str = ".plan-forge"
    workspace_root: str = ""
    planner_model: str = "gpt-4o"
    reviewer_model: str = "gpt-4o-mini"
    max_files_per_edit: int = 3
    plan_token_advisory: int = 60_000
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_iterations=_get_env_int("PLAN_FORGE_MAX_ITERATIONS", default=10, minimum=1, maximum=1_000),
            max_total_tokens=_get_env_int("PLAN_FORGE_MAX_TOTAL_TOKENS", default=500_000, minimum=1),
            execution_timeout_secs=_get_env_float("PLAN_FORGE_EXECUTION_TIMEOUT_SECS", default=600.0, minimum=1.0),
            score_threshold=_get_env_float("PLAN_FORGE_THRESHOLD", default=0.8, minimum=0.0, maximum=1.0),
            low_score_threshold=_get_env_float(
                "PLAN_FORGE_LOW_SCORE_THRESHOLD", default=0.5, minimum=0.0, maximum=1.0
            ),
            iteration_soft_limit=_get_env_int("PLAN_FORGE_ITERATION_SOFT_LIMIT", default=7, minimum=1, maximum=1_000),
            collaborator_max_retries=_get_env_int("PLAN_FORGE_COLLABORATOR_RETRIES", default=2, minimum=0, maximum=10),
            retry_backoff_seconds=_get_env_float("PLAN_FORGE_RETRY_BACKOFF_SECS", default=0.5, minimum=0.0, maximum=60.0),
            state_store_root=os.getenv("PLAN_FORGE_STATE_DIR", ".plan-forge"),
            workspace_root=os.getenv("PLAN_FORGE_WORKSPACE_ROOT", ""),
            planner_model=os.getenv("PLAN_FORGE_PLANNER_MODEL", "gpt-4o"),
            reviewer_model=os.getenv("PLAN_FORGE_REVIEWER_MODEL", "gpt-4o-mini"),
            max_files_per_edit=_get_env_int("PLAN_FORGE_MAX_FILES_PER_EDIT", default=3, minimum=1, maximum=100),
            plan_token_advisory=_get_env_int("PLAN_FORGE_PLAN_TOKEN_ADVISORY", default=60_000, minimum=1),
            recursion_limit=_get_env_int("PLAN_FORGE_RECURSION_LIMIT", default=1_000, minimum=100),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        planner_model = self.planner_model.strip()
        if not planner_model:
            raise ValueError("PLAN_FORGE_PLANNER_MODEL must be non-empty")
        reviewer_model = self.reviewer_model.strip()
        if not reviewer_model:
            raise ValueError("PLAN_FORGE_REVIEWER_MODEL must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("PLAN_FORGE_STATE_DIR must be non-empty")
        if not 0.0 <= self.score_threshold <= 1.0:
            raise ValueError(f"PLAN_FORGE_THRESHOLD must be within [0, 1], got: {self.score_threshold}")
        if not 0.0 <= self.low_score_threshold <= 1.0:
            raise ValueError(
                f"PLAN_FORGE_LOW_SCORE_THRESHOLD must be within [0, 1], got: {self.low_score_threshold}"
            )
        if self.iteration_soft_limit < 1:
            raise ValueError(f"PLAN_FORGE_ITERATION_SOFT_LIMIT must be >= 1, got: {self.iteration_soft_limit}")
        if self.recursion_limit > 100_000:
            raise ValueError(f"PLAN_FORGE_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")
        # Each iteration walks at most four graph nodes.
        if self.recursion_limit < 4 * self.max_iterations + 8:
            raise ValueError(
                "PLAN_FORGE_RECURSION_LIMIT is too small for PLAN_FORGE_MAX_ITERATIONS="
                f"{self.max_iterations}, got: {self.recursion_limit}"
            )
        return RuntimeSettings(
            max_iterations=self.max_iterations,
            max_total_tokens=self.max_total_tokens,
            execution_timeout_secs=self.execution_timeout_secs,
            score_threshold=self.score_threshold,
            low_score_threshold=self.low_score_threshold,
            iteration_soft_limit=self.iteration_soft_limit,
            collaborator_max_retries=self.collaborator_max_retries,
            retry_backoff_seconds=self.retry_backoff_seconds,
            state_store_root=self.state_store_root,
            workspace_root=self.workspace_root,
            planner_model=planner_model,
            reviewer_model=reviewer_model,
            max_files_per_edit=self.max_files_per_edit,
            plan_token_advisory=self.plan_token_advisory,
            recursion_limit=self.recursion_limit,
        )

    def guardrail_limits(self) -> GuardrailLimits:
        return GuardrailLimits(
            max_iterations=self.max_iterations,
            max_total_tokens=self.max_total_tokens,
            max_duration_seconds=self.execution_timeout_secs,
            score_threshold=self.score_threshold,
            low_score_threshold=self.low_score_threshold,
            iteration_soft_limit=self.iteration_soft_limit,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1e9) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed or parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
