"""Component dependency graph and deterministic build ordering."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Iterator
from dataclasses import replace

from omnibuild.errors import (
    CyclicDependencyError,
    DuplicateComponentError,
    UnknownComponentError,
    UnknownDependencyError,
)
from omnibuild.models import Component


class DependencyGraph:
    """Named components plus the derived dependency -> dependents adjacency.

    Dependency names are not checked on insertion so definitions can be added
    in any order; :meth:`validate` checks them and runs before every order
    computation.
    """

    def __init__(self, components: Iterable[Component] = ()) -> None:
        self._components: dict[str, Component] = {}
        for component in components:
            self.add_component(component)

    def add_component(self, component: Component) -> None:
        if component.name in self._components:
            raise DuplicateComponentError(component.name)
        self._components[component.name] = component

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def __len__(self) -> int:
        return len(self._components)

    def __iter__(self) -> Iterator[Component]:
        return iter(self._components[name] for name in sorted(self._components))

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._components))

    def get(self, name: str) -> Component:
        try:
            return self._components[name]
        except KeyError:
            raise UnknownComponentError(name) from None

    def dependents(self, name: str) -> tuple[str, ...]:
        """Components that list ``name`` as a direct dependency, sorted."""
        self.get(name)
        return tuple(
            sorted(
                other.name
                for other in self._components.values()
                if name in other.dependencies
            )
        )

    def validate(self) -> None:
        for name in sorted(self._components):
            for dependency in self._components[name].dependencies:
                if dependency not in self._components:
                    raise UnknownDependencyError(name, dependency)

    def for_platform(self, platform: str) -> DependencyGraph:
        """Copy of the graph restricted to components applicable on ``platform``.

        Edges pointing at inapplicable components are dropped; edges to names
        the graph does not know at all are kept so validation still reports them.
        """
        kept = {name for name, c in self._components.items() if c.applies_to(platform)}
        dropped = set(self._components) - kept
        restricted = DependencyGraph()
        for name in sorted(kept):
            component = self._components[name]
            dependencies = tuple(dep for dep in component.dependencies if dep not in dropped)
            if dependencies != component.dependencies:
                component = replace(component, dependencies=dependencies)
            restricted.add_component(component)
        return restricted

    def transitive_dependencies(self, name: str) -> frozenset[str]:
        return frozenset(self._closure((name,))) - {name}

    def transitive_dependents(self, names: Iterable[str]) -> frozenset[str]:
        """Every component that depends on any of ``names``, directly or not."""
        seeds = set(names)
        reverse: dict[str, set[str]] = {}
        for component in self._components.values():
            for dependency in component.dependencies:
                reverse.setdefault(dependency, set()).add(component.name)
        found: set[str] = set()
        stack = sorted(seeds)
        while stack:
            current = stack.pop()
            for dependent in reverse.get(current, ()):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return frozenset(found - seeds)

    def resolve_order(self, roots: Iterable[str]) -> tuple[str, ...]:
        """Topological order of the transitive closure of ``roots``.

        Kahn's algorithm with a min-heap so independent components always come
        out in ascending name order.
        """
        root_names = sorted(set(roots))
        for root in root_names:
            if root not in self._components:
                raise UnknownComponentError(root)
        self.validate()

        closure = self._closure(root_names)
        remaining = {name: len(self._components[name].dependencies) for name in closure}
        dependents: dict[str, list[str]] = {name: [] for name in closure}
        for name in closure:
            for dependency in self._components[name].dependencies:
                dependents[dependency].append(name)

        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(closure):
            unresolved = sorted(name for name, count in remaining.items() if count > 0)
            raise CyclicDependencyError(self._find_cycle(unresolved))
        return tuple(order)

    def _closure(self, roots: Iterable[str]) -> set[str]:
        seen: set[str] = set()
        stack = list(roots)
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.add(name)
            stack.extend(self._components[name].dependencies)
        return seen

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        # Every unresolved node either sits on a cycle or depends on one, so
        # walking dependencies from the smallest candidate must revisit a node.
        allowed = set(candidates)
        path: list[str] = []
        position: dict[str, int] = {}
        current = candidates[0]
        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = min(dep for dep in self._components[current].dependencies if dep in allowed)
        return [*path[position[current]:], current]

