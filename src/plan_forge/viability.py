"""Deterministic structural checks for generated plans.

Checks run before the quality reviewer is consulted. Every rule reports all of
its findings; rules only skip when a precondition fails (dataflow, ordering
and metrics need an acyclic graph), and a skipped rule is reported as such.
Violations come back in a fixed evaluation order so repeated runs over the
same plan serialize identically.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .graph import TopologicalOrder, ancestors, topological_layers, topological_order
from .models import (
    COMMAND_ACTIONS,
    FILE_TOUCHING_ACTIONS,
    GOAL_REQUIRED_ACTIONS,
    ActionKind,
    Instruction,
    Plan,
    PlanMetrics,
    ViabilityResult,
    ViabilitySeverity,
    ViabilityViolation,
)

logger = logging.getLogger(__name__)

FileExists = Callable[[str], bool]

RULE_EMPTY_PLAN = "empty-plan"
RULE_DUPLICATE_ID = "duplicate-id"
RULE_DANGLING_DEPENDENCY = "dangling-dependency"
RULE_CYCLE = "cycle"
RULE_MISSING_GOAL = "missing-goal"
RULE_MISSING_FILE_REFS = "missing-file-refs"
RULE_MISSING_COMMAND = "missing-command"
RULE_EDIT_FANOUT = "edit-fanout"
RULE_UNDEFINED_VARIABLE = "undefined-variable"
RULE_CONTEXT_ORDER = "context-order"
RULE_UNUSED_CONTEXT = "unused-context"
RULE_MISSING_VERIFICATION = "missing-verification"
RULE_TEST_ORDER = "test-order"
RULE_UNGROUNDED_FILE = "ungrounded-file"
RULE_TOKEN_ESTIMATE_MISSING = "token-estimate-missing"
RULE_TOKEN_BUDGET = "token-budget"
RULE_NO_RISKS = "no-risks"
RULE_RISK_FORMAT = "risk-format"
RULE_SKIPPED = "rule-skipped"

_BASE_TOKENS = {
    ActionKind.GATHER_CONTEXT: 1_500,
    ActionKind.GENERATE_CODE: 2_500,
    ActionKind.EDIT_CODE: 2_000,
    ActionKind.GENERATE_TEST: 1_500,
    ActionKind.RUN_TEST: 300,
    ActionKind.RUN_COMMAND: 300,
    ActionKind.HUMAN_CHECKPOINT: 100,
}
_TOKENS_PER_FILE = 250
_CHARS_PER_TOKEN = 4
_CONTEXT_HEAVY_ACTIONS = frozenset(
    {ActionKind.GATHER_CONTEXT, ActionKind.GENERATE_CODE, ActionKind.EDIT_CODE, ActionKind.GENERATE_TEST}
)


def estimate_instruction_tokens(instruction: Instruction) -> int:
    """Size heuristic for one instruction; an explicit estimate wins."""
    if instruction.estimated_tokens is not None:
        return instruction.estimated_tokens
    text = f"{instruction.description} {instruction.goal}".strip()
    return (
        _BASE_TOKENS[instruction.action]
        + _TOKENS_PER_FILE * len(set(instruction.file_refs) | set(instruction.creates))
        + len(text) // _CHARS_PER_TOKEN
    )


def _violation(
    rule_id: str,
    severity: ViabilitySeverity,
    message: str,
    *instruction_ids: str,
) -> ViabilityViolation:
    return ViabilityViolation(
        rule_id=rule_id,
        severity=severity,
        instruction_ids=instruction_ids,
        message=message,
    )


def _blocking(rule_id: str, message: str, *instruction_ids: str) -> ViabilityViolation:
    return _violation(rule_id, ViabilitySeverity.BLOCKING, message, *instruction_ids)


def _advisory(rule_id: str, message: str, *instruction_ids: str) -> ViabilityViolation:
    return _violation(rule_id, ViabilitySeverity.ADVISORY, message, *instruction_ids)


@dataclass(frozen=True)
class ViabilityChecker:
    """Runs the fixed rule battery against a plan.

    ``file_exists`` is the grounding oracle supplied by the caller; without
    it the grounding rule is reported as skipped.
    """

    file_exists: FileExists | None = None
    max_files_per_edit: int = 3
    plan_token_advisory: int = 60_000
    max_risk_length: int = 2_000

    def check(self, plan: Plan) -> ViabilityResult:
        instructions = plan.instructions()
        if not instructions:
            return ViabilityResult(
                violations=(
                    _blocking(RULE_EMPTY_PLAN, "Plan has no instructions; nothing can be executed"),
                ),
                skipped_rules=("structure", "dataflow", "ordering", "verification", "grounding", "metrics"),
            )

        violations: list[ViabilityViolation] = []
        skipped: list[str] = []

        violations.extend(self.check_duplicate_ids(instructions))
        violations.extend(self.check_dangling_dependencies(plan))
        order = topological_order(plan)
        if not order.acyclic:
            members = tuple(sorted(set(order.cycle)))
            violations.append(
                _blocking(
                    RULE_CYCLE,
                    "Circular dependency detected: " + " -> ".join(order.cycle + order.cycle[:1]),
                    *members,
                )
            )
        violations.extend(self.check_parameters(instructions))

        closure = ancestors(plan)
        if order.acyclic:
            violations.extend(self.check_dataflow(instructions, closure))
            violations.extend(self.check_context_order(instructions, closure))
        else:
            skipped.extend(["dataflow", "ordering"])

        violations.extend(self.check_verification(instructions, closure))

        if self.file_exists is not None:
            violations.extend(self.check_grounding(instructions, closure, self.file_exists))
        else:
            skipped.append("grounding")

        metrics: PlanMetrics | None = None
        if order.acyclic:
            metrics = self.compute_metrics(plan, order)
            violations.extend(self.check_token_estimates(instructions, metrics))
        else:
            skipped.append("metrics")

        violations.extend(self.check_risks(plan))

        for group in skipped:
            reason = "no file-existence lookup was provided" if group == "grounding" else "the dependency graph is cyclic"
            violations.append(_advisory(RULE_SKIPPED, f"{group} checks skipped because {reason}"))

        result = ViabilityResult(violations=tuple(violations), skipped_rules=tuple(skipped), metrics=metrics)
        logger.debug(
            "viability plan=%r blocking=%d advisory=%d skipped=%s",
            plan.title,
            len(result.blocking),
            len(result.advisory),
            ",".join(skipped) or "-",
        )
        return result

    # ------------------------------------------------------------------
    # Graph integrity
    # ------------------------------------------------------------------

    def check_duplicate_ids(self, instructions: list[Instruction]) -> list[ViabilityViolation]:
        seen: set[str] = set()
        reported: set[str] = set()
        violations: list[ViabilityViolation] = []
        for instruction in instructions:
            if instruction.id in seen and instruction.id not in reported:
                reported.add(instruction.id)
                violations.append(
                    _blocking(RULE_DUPLICATE_ID, f"Instruction id '{instruction.id}' is used more than once", instruction.id)
                )
            seen.add(instruction.id)
        return violations

    def check_dangling_dependencies(self, plan: Plan) -> list[ViabilityViolation]:
        known = plan.instruction_index()
        violations: list[ViabilityViolation] = []
        for instruction in plan.instructions():
            for dep in instruction.depends_on:
                if dep not in known:
                    violations.append(
                        _blocking(
                            RULE_DANGLING_DEPENDENCY,
                            f"Instruction '{instruction.id}' depends on non-existent instruction '{dep}'",
                            instruction.id,
                        )
                    )
        return violations

    # ------------------------------------------------------------------
    # Parameter completeness
    # ------------------------------------------------------------------

    def check_parameters(self, instructions: list[Instruction]) -> list[ViabilityViolation]:
        violations: list[ViabilityViolation] = []
        for instruction in instructions:
            kind = instruction.action.value
            if instruction.action in GOAL_REQUIRED_ACTIONS and not instruction.goal:
                violations.append(
                    _blocking(RULE_MISSING_GOAL, f"{kind} instruction '{instruction.id}' needs a non-empty goal", instruction.id)
                )
            if instruction.action in FILE_TOUCHING_ACTIONS and not (instruction.file_refs or instruction.creates):
                violations.append(
                    _blocking(
                        RULE_MISSING_FILE_REFS,
                        f"{kind} instruction '{instruction.id}' must reference at least one file",
                        instruction.id,
                    )
                )
            if instruction.action in COMMAND_ACTIONS and not instruction.command:
                violations.append(
                    _blocking(RULE_MISSING_COMMAND, f"{kind} instruction '{instruction.id}' needs a command", instruction.id)
                )
            if instruction.action == ActionKind.EDIT_CODE and len(instruction.file_refs) > self.max_files_per_edit:
                violations.append(
                    _advisory(
                        RULE_EDIT_FANOUT,
                        f"edit_code instruction '{instruction.id}' touches {len(instruction.file_refs)} files "
                        f"(max {self.max_files_per_edit}); consider splitting it",
                        instruction.id,
                    )
                )
        return violations

    # ------------------------------------------------------------------
    # Dataflow and ordering (acyclic graphs only)
    # ------------------------------------------------------------------

    def check_dataflow(
        self,
        instructions: list[Instruction],
        closure: dict[str, frozenset[str]],
    ) -> list[ViabilityViolation]:
        by_id = {instruction.id: instruction for instruction in reversed(instructions)}
        violations: list[ViabilityViolation] = []
        for instruction in instructions:
            upstream = closure.get(instruction.id, frozenset())
            for variable in instruction.consumes:
                if not any(variable in by_id[dep].produces for dep in upstream):
                    violations.append(
                        _blocking(
                            RULE_UNDEFINED_VARIABLE,
                            f"Instruction '{instruction.id}' consumes '{variable}' but no instruction it depends on produces it",
                            instruction.id,
                        )
                    )
        return violations

    def check_context_order(
        self,
        instructions: list[Instruction],
        closure: dict[str, frozenset[str]],
    ) -> list[ViabilityViolation]:
        depended_on = {dep for instruction in instructions for dep in instruction.depends_on}
        violations: list[ViabilityViolation] = []
        for context in instructions:
            if context.action != ActionKind.GATHER_CONTEXT:
                continue
            used = context.id in depended_on
            for consumer in instructions:
                if consumer.id == context.id:
                    continue
                shared = sorted(set(context.produces) & set(consumer.consumes))
                if not shared:
                    continue
                used = True
                if context.id not in closure.get(consumer.id, frozenset()):
                    violations.append(
                        _advisory(
                            RULE_CONTEXT_ORDER,
                            f"Context instruction '{context.id}' produces {', '.join(shared)} for "
                            f"'{consumer.id}' but is not ordered before it",
                            context.id,
                            consumer.id,
                        )
                    )
            if not used:
                violations.append(
                    _advisory(
                        RULE_UNUSED_CONTEXT,
                        f"Context instruction '{context.id}' is not used by any later instruction",
                        context.id,
                    )
                )
        return violations

    def check_verification(
        self,
        instructions: list[Instruction],
        closure: dict[str, frozenset[str]],
    ) -> list[ViabilityViolation]:
        test_runs = [item for item in instructions if item.action == ActionKind.RUN_TEST]
        violations: list[ViabilityViolation] = []
        for instruction in instructions:
            if instruction.action not in {ActionKind.EDIT_CODE, ActionKind.GENERATE_CODE}:
                continue
            verified = any(instruction.id in closure.get(run.id, frozenset()) for run in test_runs)
            if not verified:
                violations.append(
                    _advisory(
                        RULE_MISSING_VERIFICATION,
                        f"Code change '{instruction.id}' is not followed by a run_test instruction",
                        instruction.id,
                    )
                )
                continue
            if instruction.action != ActionKind.EDIT_CODE:
                continue
            upstream = closure.get(instruction.id, frozenset())
            by_id = {item.id: item for item in instructions}
            if not any(by_id[dep].action == ActionKind.GENERATE_TEST for dep in upstream if dep in by_id):
                violations.append(
                    _advisory(
                        RULE_TEST_ORDER,
                        f"edit_code '{instruction.id}' has tests after it but none generated before it",
                        instruction.id,
                    )
                )
        return violations

    # ------------------------------------------------------------------
    # Grounding
    # ------------------------------------------------------------------

    def check_grounding(
        self,
        instructions: list[Instruction],
        closure: dict[str, frozenset[str]],
        file_exists: FileExists,
    ) -> list[ViabilityViolation]:
        creators: dict[str, set[str]] = {}
        for instruction in instructions:
            for path in instruction.creates:
                creators.setdefault(path, set()).add(instruction.id)

        violations: list[ViabilityViolation] = []
        for instruction in instructions:
            upstream = closure.get(instruction.id, frozenset())
            for path in instruction.file_refs:
                if path in instruction.creates or creators.get(path, set()) & upstream:
                    continue
                if not file_exists(path):
                    violations.append(
                        _blocking(
                            RULE_UNGROUNDED_FILE,
                            f"Instruction '{instruction.id}' references non-existent file '{path}' "
                            "without creating it",
                            instruction.id,
                        )
                    )
        return violations

    # ------------------------------------------------------------------
    # Complexity metrics
    # ------------------------------------------------------------------

    def compute_metrics(self, plan: Plan, order: TopologicalOrder | None = None) -> PlanMetrics:
        instructions = plan.instructions()
        layers = topological_layers(plan, order)
        known = plan.instruction_index()
        depended_on = {dep for item in instructions for dep in item.depends_on if dep in known}
        depth = len(layers)
        width = max((len(layer) for layer in layers), default=0)
        return PlanMetrics(
            node_count=len(known),
            edge_count=sum(1 for item in instructions for dep in item.depends_on if dep in known),
            root_count=sum(1 for item in instructions if not any(dep in known for dep in item.depends_on)),
            leaf_count=sum(1 for node in known if node not in depended_on),
            depth=depth,
            width=width,
            parallelization_ratio=round(width / depth, 4) if depth else 0.0,
            token_estimate=sum(estimate_instruction_tokens(item) for item in instructions),
        )

    def check_token_estimates(self, instructions: list[Instruction], metrics: PlanMetrics) -> list[ViabilityViolation]:
        violations = [
            _advisory(
                RULE_TOKEN_ESTIMATE_MISSING,
                f"Instruction '{item.id}' ({item.action.value}) has no estimated_tokens",
                item.id,
            )
            for item in instructions
            if item.action in _CONTEXT_HEAVY_ACTIONS and item.estimated_tokens is None
        ]
        if metrics.token_estimate > self.plan_token_advisory:
            violations.append(
                _advisory(
                    RULE_TOKEN_BUDGET,
                    f"Plan token estimate {metrics.token_estimate} exceeds advisory budget {self.plan_token_advisory}",
                )
            )
        return violations

    def check_risks(self, plan: Plan) -> list[ViabilityViolation]:
        if not plan.risks:
            return [_advisory(RULE_NO_RISKS, "Plan does not identify any risks")]
        violations: list[ViabilityViolation] = []
        for position, risk in enumerate(plan.risks):
            if not risk.description.strip():
                violations.append(_advisory(RULE_RISK_FORMAT, f"risks[{position}] has an empty description"))
            elif len(risk.description) + len(risk.mitigation) > self.max_risk_length:
                violations.append(
                    _advisory(RULE_RISK_FORMAT, f"risks[{position}] exceeds {self.max_risk_length} characters")
                )
        return violations
