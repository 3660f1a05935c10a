"""
Dependency resolution between Features.

Ordering is topological, with ties broken by priority (lower runs
first, default 2) and then creation time. A dependency on an id that
does not exist is never satisfied.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Protocol

from forgeline.state import FeatureStatus


DEFAULT_PRIORITY = 2


class _HasDeps(Protocol):
    id: str
    status: FeatureStatus
    dependencies: list[str]
    priority: int
    created_at: str


@dataclass
class DependencyResolution:
    ordered: list = field(default_factory=list)
    circular: list[list[str]] = field(default_factory=list)
    missing: dict[str, list[str]] = field(default_factory=dict)
    blocked: dict[str, list[str]] = field(default_factory=dict)


def sort_key(feature: _HasDeps) -> tuple:
    priority = feature.priority if feature.priority is not None else DEFAULT_PRIORITY
    return (priority, feature.created_at or "", feature.id)


def are_dependencies_satisfied(feature: _HasDeps, by_id: Mapping[str, _HasDeps]) -> bool:
    return not get_blocking_dependencies(feature, by_id)


def get_blocking_dependencies(feature: _HasDeps, by_id: Mapping[str, _HasDeps]) -> list[str]:
    """Ids of dependencies that are missing or not yet verified."""
    blocking = []
    for dep_id in feature.dependencies or []:
        dep = by_id.get(dep_id)
        if dep is None or FeatureStatus(dep.status) != FeatureStatus.VERIFIED:
            blocking.append(dep_id)
    return blocking


def resolve_dependencies(features: Iterable[_HasDeps]) -> DependencyResolution:
    """Kahn's algorithm with a priority heap; cycles are appended last."""
    features = list(features)
    by_id = {f.id: f for f in features}
    result = DependencyResolution()

    indegree: dict[str, int] = {f.id: 0 for f in features}
    dependents: dict[str, list[str]] = {f.id: [] for f in features}

    for f in features:
        missing = [d for d in f.dependencies or [] if d not in by_id]
        if missing:
            result.missing[f.id] = missing
        for dep_id in f.dependencies or []:
            if dep_id in by_id:
                indegree[f.id] += 1
                dependents[dep_id].append(f.id)

        blocking = get_blocking_dependencies(f, by_id)
        if blocking:
            result.blocked[f.id] = blocking

    heap = [(sort_key(by_id[fid]), fid) for fid, deg in indegree.items() if deg == 0]
    heapq.heapify(heap)
    while heap:
        _, fid = heapq.heappop(heap)
        result.ordered.append(by_id[fid])
        for child in dependents[fid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(heap, (sort_key(by_id[child]), child))

    remaining = {fid for fid, deg in indegree.items() if deg > 0}
    if remaining:
        result.circular = _find_cycles(remaining, by_id)
        result.ordered.extend(sorted((by_id[fid] for fid in remaining), key=sort_key))

    return result


def would_create_cycle(
    feature_id: str,
    new_dependencies: Iterable[str],
    by_id: Mapping[str, _HasDeps],
) -> bool:
    """True if feature_id becomes reachable from its own new dependencies."""
    stack = list(new_dependencies)
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current == feature_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        node = by_id.get(current)
        if node is not None:
            stack.extend(node.dependencies or [])
    return False


def _find_cycles(nodes: set[str], by_id: Mapping[str, _HasDeps]) -> list[list[str]]:
    """Strongly connected components (Tarjan) restricted to `nodes`."""
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []
    counter = 0

    def visit(v: str) -> None:
        nonlocal counter
        index_of[v] = lowlink[v] = counter
        counter += 1
        stack.append(v)
        on_stack.add(v)
        for w in by_id[v].dependencies or []:
            if w not in nodes:
                continue
            if w not in index_of:
                visit(w)
                lowlink[v] = min(lowlink[v], lowlink[w])
            elif w in on_stack:
                lowlink[v] = min(lowlink[v], index_of[w])
        if lowlink[v] == index_of[v]:
            component = []
            while True:
                w = stack.pop()
                on_stack.discard(w)
                component.append(w)
                if w == v:
                    break
            if len(component) > 1 or v in (by_id[v].dependencies or []):
                cycles.append(sorted(component))

    for node in sorted(nodes):
        if node not in index_of:
            visit(node)

    return cycles
