from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import pytest

from plan_forge.errors import GeneratorFailure, ReviewerFailure
from plan_forge.models import Instruction, Phase, Plan, ReviewResult, Risk
from plan_forge.orchestrator import Orchestrator
from plan_forge.settings import RuntimeSettings
from plan_forge.state_store import InMemorySessionStore


def make_plan(*instructions: dict[str, Any], title: str = "plan", risks: Iterable[str] = ("rollback",)) -> Plan:
    return Plan(
        title=title,
        phases=(Phase(name="main", instructions=tuple(Instruction(**item) for item in instructions)),),
        risks=tuple(Risk(description=item, mitigation="revert") for item in risks),
    )


def sound_plan(title: str = "add greeting") -> Plan:
    """A plan with grounded files, sound dataflow and red/green ordering."""
    return make_plan(
        {"id": "ctx", "action": "gather_context", "produces": ["layout"], "file_refs": ["src/app.py"], "estimated_tokens": 800},
        {
            "id": "test",
            "action": "generate_test",
            "depends_on": ["ctx"],
            "consumes": ["layout"],
            "file_refs": ["tests/test_app.py"],
            "creates": ["tests/test_app.py"],
            "params": {"goal": "failing test for greeting"},
            "estimated_tokens": 900,
        },
        {
            "id": "edit",
            "action": "edit_code",
            "depends_on": ["test"],
            "file_refs": ["src/app.py"],
            "params": {"goal": "add greeting"},
            "estimated_tokens": 1200,
        },
        {"id": "verify", "action": "run_test", "depends_on": ["edit"], "params": {"command": "pytest -q"}, "testable": True},
        title=title,
    )


def broken_plan() -> Plan:
    return make_plan({"id": "x", "action": "gather_context", "depends_on": ["y"]})


class FakeGenerator:
    """Returns scripted plans; list items that are exceptions are raised instead."""

    def __init__(self, outputs: Iterable[Plan | Exception] | None = None, *, default: Plan | None = None) -> None:
        self.outputs = list(outputs or [])
        self.default = default if default is not None else sound_plan()
        self.calls: list[tuple[str, Plan | None, str | None]] = []
        self.on_call: Callable[[], None] | None = None

    def generate_plan(self, task: str, prior_plan: Plan | None, feedback: str | None) -> Plan:
        self.calls.append((task, prior_plan, feedback))
        if self.on_call is not None:
            self.on_call()
        item = self.outputs.pop(0) if self.outputs else self.default
        if isinstance(item, Exception):
            raise item
        return item


class FakeReviewer:
    def __init__(self, outputs: Iterable[ReviewResult | Exception] | None = None, *, default_score: float = 0.9) -> None:
        self.outputs = list(outputs or [])
        self.default = ReviewResult(score=default_score, feedback="looks fine")
        self.calls: list[Plan] = []

    def review_plan(self, plan: Plan) -> ReviewResult:
        self.calls.append(plan)
        item = self.outputs.pop(0) if self.outputs else self.default
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self, start: float = 0.0, step: float = 0.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now += seconds


def transient_generator_error() -> GeneratorFailure:
    return GeneratorFailure("rate limited", transient=True)


def transient_reviewer_error() -> ReviewerFailure:
    return ReviewerFailure("timeout", transient=True)


GROUNDED_FILES = frozenset({"src/app.py", "README.md"})


@pytest.fixture
def file_exists() -> Callable[[str], bool]:
    return lambda path: path in GROUNDED_FILES


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(max_iterations=5, collaborator_max_retries=2, retry_backoff_seconds=0.5)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_orchestrator(
    store: InMemorySessionStore,
    settings: RuntimeSettings,
    file_exists: Callable[[str], bool],
    clock: FakeClock,
    sleeps: list[float],
) -> Callable[..., Orchestrator]:
    def factory(generator: FakeGenerator, reviewer: FakeReviewer, **overrides: Any) -> Orchestrator:
        return Orchestrator(
            generator,
            reviewer,
            overrides.get("store", store),
            settings=overrides.get("settings", settings),
            file_exists=file_exists,
            clock=clock,
            sleep=sleeps.append,
        )

    return factory


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    return tmp_path
