"""Dependency-graph operations over a plan's flattened instruction arena.

Edges point from an instruction to the ids it depends on. Ids that do not
resolve to an instruction are ignored here; dangling references are reported
by the viability checker.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .models import Instruction, Plan

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass(frozen=True)
class TopologicalOrder:
    """Either a dependency-respecting order or the members of a cycle."""

    order: tuple[str, ...] = ()
    cycle: tuple[str, ...] = ()

    @property
    def acyclic(self) -> bool:
        return not self.cycle


def _adjacency(instructions: Iterable[Instruction]) -> dict[str, tuple[str, ...]]:
    adjacency: dict[str, tuple[str, ...]] = {}
    for instruction in instructions:
        adjacency.setdefault(instruction.id, instruction.depends_on)
    return {node: tuple(dep for dep in deps if dep in adjacency) for node, deps in adjacency.items()}


def _order(adjacency: Mapping[str, tuple[str, ...]]) -> TopologicalOrder:
    # Iterative three-colour DFS; the explicit stack keeps deep chains off the call stack.
    colour = {node: _UNVISITED for node in adjacency}
    order: list[str] = []
    for root in adjacency:
        if colour[root] != _UNVISITED:
            continue
        path: list[str] = [root]
        stack = [(root, iter(adjacency[root]))]
        colour[root] = _IN_PROGRESS
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if colour[dep] == _IN_PROGRESS:
                    return TopologicalOrder(cycle=tuple(path[path.index(dep):]))
                if colour[dep] == _UNVISITED:
                    colour[dep] = _IN_PROGRESS
                    path.append(dep)
                    stack.append((dep, iter(adjacency[dep])))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                path.pop()
                colour[node] = _DONE
                order.append(node)
    return TopologicalOrder(order=tuple(order))


def topological_order(plan: Plan) -> TopologicalOrder:
    """Order instruction ids so every instruction follows its dependencies.

    When the graph is cyclic the result carries the ids on the first cycle
    found, in dependency order, instead of an ordering.
    """
    return _order(_adjacency(plan.instructions()))


def find_cycle(plan: Plan) -> tuple[str, ...]:
    return topological_order(plan).cycle


def ancestors(plan: Plan) -> dict[str, frozenset[str]]:
    """Transitive dependency set for every instruction. Safe on cyclic graphs."""
    adjacency = _adjacency(plan.instructions())
    closure: dict[str, frozenset[str]] = {}
    for node in adjacency:
        seen: set[str] = set()
        frontier = list(adjacency[node])
        while frontier:
            dep = frontier.pop()
            if dep in seen:
                continue
            seen.add(dep)
            frontier.extend(adjacency[dep])
        closure[node] = frozenset(seen)
    return closure


def topological_layers(plan: Plan, order: TopologicalOrder | None = None) -> list[list[str]]:
    """Group ids by layer: layer 0 has no dependencies, layer N = 1 + max(dependency layer)."""
    order = order if order is not None else topological_order(plan)
    if not order.acyclic:
        raise ValueError(f"plan dependency graph contains a cycle: {' -> '.join(order.cycle)}")
    adjacency = _adjacency(plan.instructions())
    level: dict[str, int] = {}
    for node in order.order:
        level[node] = max((level[dep] + 1 for dep in adjacency[node]), default=0)
    layers: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for node in order.order:
        layers[level[node]].append(node)
    return layers
