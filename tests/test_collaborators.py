from pathlib import Path
from typing import Any

import httpx
import openai
import pytest

from conftest import sound_plan
from plan_forge.collaborators import call_with_retry, workspace_file_exists
from plan_forge.errors import GeneratorFailure, ReviewerFailure
from plan_forge.llm import (
    LLMPlanGenerator,
    LLMPlanReviewer,
    StructuredOutputAdapter,
    StructuredOutputError,
    build_generation_prompt,
    build_review_prompt,
    normalize_structured_output,
)
from plan_forge.models import Plan, ReviewResult
from plan_forge.settings import RuntimeSettings


class ScriptedRunnable:
    def __init__(self, *outputs: Any) -> None:
        self.outputs = list(outputs)
        self.prompts: list[str] = []

    def invoke(self, input: Any) -> Any:  # noqa: A002 - mirrors the runnable protocol
        self.prompts.append(input)
        item = self.outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _timeout() -> openai.APITimeoutError:
    return openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


def test_workspace_file_exists(workspace: Path) -> None:
    file_exists = workspace_file_exists(workspace)
    assert file_exists("src/app.py")
    assert not file_exists("src/missing.py")
    assert not file_exists("../outside.txt")


def test_call_with_retry_counts_attempts() -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise GeneratorFailure("busy", transient=True)
        return "ok"

    result = call_with_retry(flaky, failure_type=GeneratorFailure, retries=2, backoff_seconds=0.25, sleep=sleeps.append)
    assert result == "ok"
    assert sleeps == [0.25, 0.5]


def test_call_with_retry_gives_up_after_budget() -> None:
    calls: list[int] = []

    def always_busy() -> None:
        calls.append(1)
        raise ReviewerFailure("busy", transient=True)

    with pytest.raises(ReviewerFailure):
        call_with_retry(always_busy, failure_type=ReviewerFailure, retries=0, backoff_seconds=0.1, sleep=lambda _: None)
    assert len(calls) == 1


def test_normalize_structured_output_shapes() -> None:
    plan = sound_plan()
    assert normalize_structured_output(raw_output=plan, schema=Plan) is plan
    assert normalize_structured_output(raw_output=plan.model_dump(mode="json"), schema=Plan) == plan
    envelope = {"raw": None, "parsed": {"score": 0.5}, "parsing_error": None}
    assert normalize_structured_output(raw_output=envelope, schema=ReviewResult).score == 0.5

    with pytest.raises(StructuredOutputError):
        normalize_structured_output(raw_output={"raw": None, "parsed": None, "parsing_error": ValueError("x")}, schema=Plan)
    with pytest.raises(StructuredOutputError):
        normalize_structured_output(raw_output={"score": 7}, schema=ReviewResult)
    with pytest.raises(StructuredOutputError):
        normalize_structured_output(raw_output="text", schema=Plan)


def test_llm_generator_maps_errors_to_failure_kinds() -> None:
    runnable = ScriptedRunnable(_timeout(), {"title": "bad", "phases": "nope"}, sound_plan())
    generator = LLMPlanGenerator(RuntimeSettings(), adapter=StructuredOutputAdapter(schema=Plan, runnable=runnable))

    with pytest.raises(GeneratorFailure) as timeout:
        generator.generate_plan("task", None, None)
    assert timeout.value.transient

    with pytest.raises(GeneratorFailure) as malformed:
        generator.generate_plan("task", None, None)
    assert malformed.value.transient

    assert generator.generate_plan("task", sound_plan(), "[MUST FIX] cycle") == sound_plan()
    assert "[MUST FIX] cycle" in runnable.prompts[-1]
    assert "Previous plan" in runnable.prompts[-1]


def test_llm_reviewer_fatal_api_error() -> None:
    response = httpx.Response(400, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    error = openai.BadRequestError("bad request", response=response, body=None)
    reviewer = LLMPlanReviewer(
        RuntimeSettings(), adapter=StructuredOutputAdapter(schema=ReviewResult, runnable=ScriptedRunnable(error))
    )
    with pytest.raises(ReviewerFailure) as excinfo:
        reviewer.review_plan(sound_plan())
    assert not excinfo.value.transient


def test_prompts_are_deterministic() -> None:
    assert build_generation_prompt("task", sound_plan(), None) == build_generation_prompt("task", sound_plan(), None)
    prompt = build_review_prompt(sound_plan())
    assert "security_sensitive" in prompt
    assert '"title":"add greeting"' in prompt
    assert "iteration_soft_limit" not in prompt
