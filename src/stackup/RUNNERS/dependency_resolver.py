"""
Dependency resolution for services to determine startup and shutdown order.
"""
import heapq
from typing import List, Dict, Set
from ..errors import CyclicDependency, UnknownReference
from ..MODELS.orchestration_config import OrchestrationConfig


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.

    Ties between services that are ready at the same time are broken by name,
    so the same descriptor always yields the same order.
    """

    def _graph(self, config: OrchestrationConfig) -> Dict[str, Set[str]]:
        """
        Builds the dependency map, rejecting references to undefined services.

        :param config: The orchestration configuration.
        :return: Service name -> names it depends on.
        """
        dependencies = {}
        for name, svc in config.services.items():
            for dep in svc.depends_on:
                if dep not in config.services:
                    raise UnknownReference(name, "service", dep)
            dependencies[name] = set(svc.depends_on)
        return dependencies

    def resolve_order(self, config: OrchestrationConfig) -> List[str]:
        """
        Determines the correct order to start services using topological sort.

        :param config: The orchestration configuration.
        :return: Service names in the order they should be started.
        :raises CyclicDependency: If a circular dependency is detected.
        """
        dependencies = self._graph(config)
        dependents: Dict[str, Set[str]] = {name: set() for name in dependencies}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(name)

        in_degree = {name: len(deps) for name, deps in dependencies.items()}
        ready = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        ordered = []
        while ready:
            name = heapq.heappop(ready)
            ordered.append(name)
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(ordered) != len(dependencies):
            remaining = {name for name in dependencies if name not in ordered}
            raise CyclicDependency(self._cycle_members(remaining, dependents))
        return ordered

    def _cycle_members(self, remaining: Set[str], dependents: Dict[str, Set[str]]) -> Set[str]:
        """
        Narrows the unresolved services down to those sitting on a cycle.

        Services that merely depend on a cycle are peeled off: every cycle
        member has a dependent inside the unresolved set, they do not.
        """
        members = set(remaining)
        changed = True
        while changed:
            changed = False
            for name in list(members):
                if not dependents[name] & members:
                    members.discard(name)
                    changed = True
        return members or remaining

    def resolve_levels(self, config: OrchestrationConfig) -> List[List[str]]:
        """
        Groups services into start levels. Services within a level do not depend
        on each other and may be started concurrently.

        :param config: The orchestration configuration.
        :return: Levels of service names, each sorted by name.
        """
        order = self.resolve_order(config)
        level: Dict[str, int] = {}
        for name in order:
            deps = config.services[name].depends_on
            level[name] = max((level[dep] + 1 for dep in deps), default=0)

        levels: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for name in order:
            levels[level[name]].append(name)
        return [sorted(names) for names in levels]

    def shutdown_order(self, config: OrchestrationConfig) -> List[str]:
        """
        Determines the order to stop services: dependents before their dependencies.
        """
        return list(reversed(self.resolve_order(config)))

    def dependents_of(self, config: OrchestrationConfig, name: str) -> Set[str]:
        """
        Finds every service that directly or transitively depends on a service.

        :param config: The orchestration configuration.
        :param name: The service whose dependents are wanted.
        :return: Names of the dependent services, excluding ``name`` itself.
        """
        dependencies = self._graph(config)
        found: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for candidate, deps in dependencies.items():
                if current in deps and candidate not in found:
                    found.add(candidate)
                    frontier.append(candidate)
        found.discard(name)
        return found
