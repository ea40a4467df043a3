"""Dependency ordering for data variables linked through passed variables."""

from __future__ import annotations

from collections.abc import Mapping

from .errors import DependencyCycleError, ValidationError
from .schemas import DataSpec


def build_dependencies(specs: Mapping[str, DataSpec]) -> dict[str, list[str]]:
    """Map each variable name to the names it reads results from.

    Raises:
        ValidationError: If a passed variable names an undeclared source.
    """
    dependencies: dict[str, list[str]] = {}
    for name, spec in specs.items():
        sources = spec.dependencies()
        for source in sources:
            if source not in specs:
                raise ValidationError(
                    f"Data variable '{name}' depends on undeclared variable '{source}'"
                )
        dependencies[name] = sources
    return dependencies


def find_cycle(dependencies: Mapping[str, list[str]]) -> list[str] | None:
    """Return the first cycle found as a closed chain (``[a, b, a]``), or None."""
    visiting: set[str] = set()
    done: set[str] = set()
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        stack.append(node)
        for dependency in dependencies.get(node, []):
            if dependency in visiting:
                start = stack.index(dependency)
                return stack[start:] + [dependency]
            if dependency not in done:
                cycle = visit(dependency)
                if cycle is not None:
                    return cycle
        visiting.discard(node)
        done.add(node)
        stack.pop()
        return None

    for node in dependencies:
        if node not in done:
            cycle = visit(node)
            if cycle is not None:
                return cycle
    return None


def resolve_order(specs: Mapping[str, DataSpec]) -> list[str]:
    """Order variable names so every dependency precedes its dependents.

    Kahn's algorithm; among ready nodes the declaration order wins, so the
    result is stable across runs.

    Raises:
        ValidationError: On references to undeclared variables.
        DependencyCycleError: If the graph has a cycle.
    """
    dependencies = build_dependencies(specs)
    cycle = find_cycle(dependencies)
    if cycle is not None:
        raise DependencyCycleError(cycle)

    declared = list(specs)
    position = {name: index for index, name in enumerate(declared)}
    indegree = {name: len(dependencies[name]) for name in declared}
    dependents: dict[str, list[str]] = {name: [] for name in declared}
    for name in declared:
        for source in dependencies[name]:
            dependents[source].append(name)

    ready = [name for name in declared if indegree[name] == 0]
    order: list[str] = []
    while ready:
        ready.sort(key=position.__getitem__)
        node = ready.pop(0)
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                ready.append(dependent)

    if len(order) != len(declared):
        remaining = [name for name in declared if name not in order]
        raise DependencyCycleError(remaining + remaining[:1])
    return order
