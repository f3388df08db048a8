"""Dependency graph over plugin descriptors.

Edges point from a plugin to the plugins it depends on. The graph answers
three questions for the manager: which plugins can never be satisfied
(missing dependency, version mismatch, cycle membership, or depending on one
of those), in which order the rest must be loaded, and who depends on whom.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from plugkeep.plugins.manifest import PluginDescriptor

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Resolves plugin dependencies."""

    def __init__(self, descriptors: Iterable[PluginDescriptor] = ()):
        self._descriptors: dict[str, PluginDescriptor] = {}
        for descriptor in descriptors:
            self.add(descriptor)

    def add(self, descriptor: PluginDescriptor) -> None:
        """Register (or replace) a plugin node."""
        self._descriptors[descriptor.name] = descriptor

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    @property
    def names(self) -> list[str]:
        return sorted(self._descriptors)

    def dependencies(self, name: str) -> list[str]:
        descriptor = self._descriptors.get(name)
        return descriptor.dependency_names if descriptor else []

    def dependents(self, name: str) -> list[str]:
        """Plugins that declare a direct dependency on ``name``."""
        return sorted(
            other
            for other, descriptor in self._descriptors.items()
            if name in descriptor.dependency_names
        )

    def transitive_dependents(self, name: str) -> list[str]:
        """Every plugin that depends on ``name`` directly or indirectly."""
        seen: set[str] = set()
        stack = [name]
        while stack:
            for dependent in self.dependents(stack.pop()):
                if dependent not in seen:
                    seen.add(dependent)
                    stack.append(dependent)
        seen.discard(name)
        return sorted(seen)

    def cycles(self) -> list[list[str]]:
        """Find every dependency cycle.

        Returns:
            Strongly connected components with more than one member, plus
            self-dependencies, each sorted by name
        """
        index: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        components: list[list[str]] = []
        counter = 0

        def strongconnect(node: str) -> None:
            nonlocal counter
            index[node] = lowlink[node] = counter
            counter += 1
            stack.append(node)
            on_stack.add(node)

            for dep in self.dependencies(node):
                if dep not in self._descriptors:
                    continue
                if dep not in index:
                    strongconnect(dep)
                    lowlink[node] = min(lowlink[node], lowlink[dep])
                elif dep in on_stack:
                    lowlink[node] = min(lowlink[node], index[dep])

            if lowlink[node] == index[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in self.dependencies(node):
                    components.append(sorted(component))

        for name in self.names:
            if name not in index:
                strongconnect(name)
        return sorted(components)

    def direct_problems(self, name: str) -> list[str]:
        """Missing dependencies and version mismatches of one plugin."""
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            return [f"Unknown plugin '{name}'"]

        problems = []
        for dep in descriptor.dependencies:
            target = self._descriptors.get(dep.name)
            if target is None:
                problems.append(f"Missing dependency '{dep.name}'")
            elif not dep.accepts(target.version):
                problems.append(
                    f"Dependency '{dep.name}' version {target.version} "
                    f"does not satisfy '{dep.version_range}'"
                )
        return problems

    def problems(self) -> dict[str, str]:
        """Plugins that can never have their dependencies satisfied.

        Problems propagate: a plugin depending on an unsatisfiable plugin is
        unsatisfiable too.

        Returns:
            Reason by plugin name
        """
        reasons: dict[str, str] = {}
        for name in self.names:
            direct = self.direct_problems(name)
            if direct:
                reasons[name] = "; ".join(direct)
        for component in self.cycles():
            chain = " -> ".join(component + [component[0]])
            for member in component:
                reasons.setdefault(member, f"Circular dependency: {chain}")

        changed = True
        while changed:
            changed = False
            for name in self.names:
                if name in reasons:
                    continue
                for dep in self.dependencies(name):
                    if dep in reasons:
                        reasons[name] = f"Depends on unsatisfiable plugin '{dep}'"
                        changed = True
                        break
        return reasons

    def levels(self, names: Iterable[str] | None = None) -> list[list[str]]:
        """Group plugins into load levels.

        Every plugin's dependencies sit in earlier levels. Plugins with
        problems, and plugins outside ``names``, are left out.

        Returns:
            Levels in load order, each sorted by name
        """
        problems = self.problems()
        wanted = set(self.names if names is None else names) & set(self._descriptors)
        pending = {n for n in wanted if n not in problems}

        levels: list[list[str]] = []
        placed: set[str] = set()
        while pending:
            ready = sorted(
                n
                for n in pending
                if all(d in placed or d not in pending for d in self.dependencies(n))
            )
            if not ready:
                # Only reachable if problems() missed a cycle
                logger.warning("Unresolvable plugins left out of load order: %s", sorted(pending))
                break
            levels.append(ready)
            placed.update(ready)
            pending.difference_update(ready)
        return levels

    def load_order(self, names: Iterable[str] | None = None) -> list[str]:
        """Flattened :meth:`levels`."""
        return [name for level in self.levels(names) for name in level]
