"""Entry point for `python -m plan_forge` and the `plan-forge` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from plan_forge.canonical import to_canonical_json
from plan_forge.collaborators import workspace_file_exists
from plan_forge.errors import PlanForgeError, ValidationBlocking
from plan_forge.models import GuardrailLimits, Plan
from plan_forge.orchestrator import Orchestrator, SessionOutcome, build_orchestrator
from plan_forge.settings import RuntimeSettings
from plan_forge.viability import ViabilityChecker


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="plan-forge", description="Iterative plan generation with guardrails")
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Working tree used for file grounding and the default state directory (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Start a new planning session")
    source = run.add_mutually_exclusive_group(required=True)
    source.add_argument("--task", default=None, help="Inline task description")
    source.add_argument("--task-file", type=Path, default=None, help="Path to a task description file")
    run.add_argument("--max-iterations", type=int, default=None, help="Override PLAN_FORGE_MAX_ITERATIONS")

    resume = commands.add_parser("resume", help="Answer a paused session and continue it")
    resume.add_argument("session_id")
    resume.add_argument("--feedback", required=True, help="Human answer merged into the next generation request")
    resume.add_argument("--max-iterations", type=int, default=None, help="Raise the session's iteration ceiling")
    resume.add_argument(
        "--reject",
        action="store_true",
        help="Answer without approving the conditions that paused the session",
    )

    status = commands.add_parser("status", help="Show a session's outcome")
    status.add_argument("session_id")

    cancel = commands.add_parser("cancel", help="Cancel a session")
    cancel.add_argument("session_id")

    validate = commands.add_parser("validate", help="Run viability checks on a plan JSON file")
    validate.add_argument("plan_file", type=Path)
    return parser.parse_args(argv)


def load_task(*, task: str | None, task_file: Path | None) -> str:
    if task is not None:
        trimmed = task.strip()
        if not trimmed:
            raise ValueError("task must be non-empty")
        return trimmed
    if task_file is None:
        raise ValueError("either task or task_file is required")
    if not task_file.is_file():
        raise FileNotFoundError(f"Task file does not exist: {task_file}")
    return task_file.read_text(encoding="utf-8")


def _limits(base: GuardrailLimits, max_iterations: int | None) -> GuardrailLimits | None:
    if max_iterations is None:
        return None
    return GuardrailLimits.model_validate({**base.model_dump(), "max_iterations": max_iterations})


def print_outcome(outcome: SessionOutcome) -> None:
    print(f"session={outcome.session_id}")
    print(f"status={outcome.status.value}")
    print(f"iterations={outcome.iterations}")
    if outcome.score is not None:
        print(f"score={outcome.score:.2f}")
    if outcome.best_effort:
        print("best_effort=true")
    if outcome.input_reason:
        print(f"input_reason={outcome.input_reason}")
    if outcome.input_flags:
        print("input_flags=" + ",".join(flag.value for flag in outcome.input_flags))
    if outcome.stop_reason is not None:
        print(f"stop_reason={outcome.stop_reason.value}")
    if outcome.error:
        print(f"error={outcome.error}")
    if outcome.plan is not None:
        print("plan:")
        print(json.dumps(json.loads(to_canonical_json(outcome.plan)), indent=2))


def validate_plan_file(path: Path, settings: RuntimeSettings) -> int:
    plan = Plan.model_validate_json(path.read_text(encoding="utf-8"))
    checker = ViabilityChecker(
        file_exists=workspace_file_exists(settings.workspace_root_path),
        max_files_per_edit=settings.max_files_per_edit,
        plan_token_advisory=settings.plan_token_advisory,
    )
    result = checker.check(plan)
    print(json.dumps(json.loads(to_canonical_json(result)), indent=2))
    try:
        result.raise_for_blocking()
    except ValidationBlocking as exc:
        logging.error("%s", exc)
        return 1
    return 0


def main(argv: list[str] | None = None, *, orchestrator: Orchestrator | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Set workspace root before constructing any settings objects.
    if args.workspace_root is not None:
        os.environ["PLAN_FORGE_WORKSPACE_ROOT"] = str(args.workspace_root.resolve())

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "validate":
        try:
            return validate_plan_file(args.plan_file, settings)
        except (OSError, ValidationError) as exc:
            logging.error("Unable to read plan %s: %s", args.plan_file, exc)
            return 2

    try:
        if orchestrator is None:
            orchestrator = build_orchestrator(settings)
        if args.command == "run":
            task = load_task(task=args.task, task_file=args.task_file)
            outcome = orchestrator.start(task, limits=_limits(settings.guardrail_limits(), args.max_iterations))
        elif args.command == "resume":
            limits = None
            if args.max_iterations is not None:
                limits = _limits(orchestrator.get_session(args.session_id).limits, args.max_iterations)
            outcome = orchestrator.resume(args.session_id, args.feedback, limits=limits, approve=not args.reject)
        elif args.command == "status":
            outcome = orchestrator.status(args.session_id)
        else:
            outcome = orchestrator.cancel(args.session_id)
    except (OSError, ValueError, RuntimeError, PlanForgeError) as exc:
        logging.error("%s failed: %s: %s", args.command, type(exc).__name__, exc)
        return 1

    print_outcome(outcome)
    if args.command in {"status", "cancel"}:
        return 0
    return 0 if outcome.status.value in {"approved", "needs_input"} else 1


if __name__ == "__main__":
    raise SystemExit(main())
