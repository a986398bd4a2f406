from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

import openai
from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .canonical import to_canonical_json
from .errors import CollaboratorError, GeneratorFailure, ReviewerFailure
from .models import REVIEWER_FLAGS, ActionKind, Plan, ReviewResult
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120

# Retries happen in the orchestrator, so the client itself makes one attempt.
_CLIENT_MAX_RETRIES: int = 0

_TRANSIENT_OPENAI_ERRORS: tuple[type[Exception], ...] = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


class StructuredOutputError(RuntimeError):
    """The model answered, but not in the declared schema."""


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response.

    Calls the underlying runnable and normalizes the raw output into the
    declared Pydantic schema, handling both direct schema instances and
    ``include_raw=True`` envelope shapes.
    """

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> ModelT:
        """Invoke the model and return a validated schema instance.

        Args:
            prompt: The prompt to send to the model.

        Returns:
            An instance of the declared schema type.

        Raises:
            StructuredOutputError: If the model returns unparseable or invalid output.
        """
        raw_output = self.runnable.invoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from the environment or ``.env`` and return it.

    A ``.env`` file at ``repo_root`` (or cwd if not specified) is loaded
    first; variables already set in the environment take precedence.

    Args:
        repo_root: Optional workspace root to search for a ``.env`` file.

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for LLM-backed planning")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _CLIENT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client with a validated API key.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o', 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Client-level retries. Defaults to zero because
            ``call_with_retry`` owns the retry budget.
        repo_root: Optional workspace root for ``.env`` resolution.

    Returns:
        Configured ChatOpenAI instance.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=max_retries)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw structured output into a validated ``schema`` instance.

    Handles three input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict

    Args:
        raw_output: The raw output from the structured runnable.
        schema: The target Pydantic model class.

    Returns:
        A validated instance of ``schema``.

    Raises:
        StructuredOutputError: If the output cannot be parsed or validated.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise StructuredOutputError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            ) from parsing_error
        payload = payload.get("parsed")
        if payload is None:
            raise StructuredOutputError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise StructuredOutputError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise StructuredOutputError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = False,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build a StructuredOutputAdapter bound to ``schema``.

    Uses ``ChatOpenAI.with_structured_output`` with ``include_raw=True`` so
    parsing failures come back as data and can be retried as transient.

    Args:
        model_name: OpenAI model identifier.
        schema: Pydantic model class for structured output.
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        method: Structured output method ('function_calling', 'json_mode', 'json_schema').
        strict: Enable strict schema enforcement (not valid for json_mode).
        repo_root: Optional workspace root for ``.env`` resolution.

    Returns:
        StructuredOutputAdapter configured to return validated schema instances.

    Raises:
        ValueError: If strict=True with method='json_mode'.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")
    model = get_chat_model(model_name=model_name, temperature=temperature, timeout=timeout, repo_root=repo_root)
    runnable = model.with_structured_output(
        schema,
        method=method,
        include_raw=True,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def _invoke(
    adapter: StructuredOutputAdapter[ModelT],
    prompt: str,
    failure_type: type[CollaboratorError],
) -> ModelT:
    """Run one model call and translate failures into the collaborator taxonomy."""
    try:
        return adapter.invoke(prompt)
    except _TRANSIENT_OPENAI_ERRORS as exc:
        raise failure_type(f"{type(exc).__name__}: {exc}", transient=True) from exc
    except StructuredOutputError as exc:
        # A malformed answer is worth asking again.
        raise failure_type(str(exc), transient=True) from exc
    except openai.OpenAIError as exc:
        raise failure_type(f"{type(exc).__name__}: {exc}") from exc


_ACTION_RULES = "\n".join(
    [
        f"- {ActionKind.GATHER_CONTEXT.value}: read code or docs; declare the variables it produces.",
        f"- {ActionKind.GENERATE_CODE.value}: params.goal and at least one file_refs entry; list new files in creates.",
        f"- {ActionKind.EDIT_CODE.value}: params.goal and at most a few file_refs; files must already exist or be created upstream.",
        f"- {ActionKind.GENERATE_TEST.value}: params.goal and the test file in file_refs/creates.",
        f"- {ActionKind.RUN_TEST.value}: params.command.",
        f"- {ActionKind.RUN_COMMAND.value}: params.command.",
        f"- {ActionKind.HUMAN_CHECKPOINT.value}: a description of what a person must confirm.",
    ]
)


def build_generation_prompt(task: str, prior_plan: Plan | None, feedback: str | None) -> str:
    sections = [
        "You are a software planning agent. Produce an execution plan as phases of instructions.",
        "Instruction ids are unique across the whole plan. depends_on lists ids that must finish first "
        "and must not form a cycle. Every consumed variable must be produced by an instruction this one "
        "depends on, directly or transitively. Write a failing test before editing code and run tests after.",
        "Action kinds:\n" + _ACTION_RULES,
        f"Task:\n{task.strip()}",
    ]
    if prior_plan is not None:
        sections.append("Previous plan (canonical JSON):\n" + to_canonical_json(prior_plan))
    if feedback:
        sections.append("Feedback to address in this revision:\n" + feedback)
    return "\n\n".join(sections)


def build_review_prompt(plan: Plan) -> str:
    flags = ", ".join(flag.value for flag in REVIEWER_FLAGS)
    return "\n\n".join(
        [
            "You are reviewing an execution plan that already passed structural checks.",
            "Score it from 0.0 to 1.0 for completeness, correctness and testability. List concrete gaps "
            "and open questions. Set mandatory_input_flags only when a person must approve before work "
            f"starts; allowed values: {flags}. Explain any flag in input_reason.",
            "Plan (canonical JSON):\n" + to_canonical_json(plan),
        ]
    )


class LLMPlanGenerator:
    def __init__(self, settings: RuntimeSettings, adapter: StructuredOutputAdapter[Plan] | None = None) -> None:
        self.adapter = adapter or get_structured_chat_model(
            model_name=settings.planner_model,
            schema=Plan,
            temperature=0.2,
            repo_root=settings.workspace_root_path,
        )

    def generate_plan(self, task: str, prior_plan: Plan | None, feedback: str | None) -> Plan:
        logger.debug("generating plan revision=%s", prior_plan is not None)
        return _invoke(self.adapter, build_generation_prompt(task, prior_plan, feedback), GeneratorFailure)


class LLMPlanReviewer:
    def __init__(
        self,
        settings: RuntimeSettings,
        adapter: StructuredOutputAdapter[ReviewResult] | None = None,
    ) -> None:
        self.adapter = adapter or get_structured_chat_model(
            model_name=settings.reviewer_model,
            schema=ReviewResult,
            repo_root=settings.workspace_root_path,
        )

    def review_plan(self, plan: Plan) -> ReviewResult:
        return _invoke(self.adapter, build_review_prompt(plan), ReviewerFailure)
