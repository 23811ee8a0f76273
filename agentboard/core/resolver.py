"""Dependency resolution over a feature set.

Pure functions, no I/O. Deterministic for identical input.

ORDERING:
    Kahn's algorithm over the dependency graph (edge = dependency -> dependent).
    Among zero in-degree nodes the lowest priority value runs first, ties
    broken by original list position.

CYCLES:
    Never raised. Nodes left with positive in-degree are either in a cycle or
    downstream of one. Only true cycle members (strongly connected components
    of size > 1, plus self-loops) are reported in cyclic_feature_ids. All
    leftover nodes are still appended to ordered_features so nothing is
    silently dropped.

MISSING DEPENDENCIES:
    A dependency id absent from the set counts as satisfied. This tolerates
    stale references but can mask typos, so resolve_order() reports them
    separately in missing_dependencies.
"""

from __future__ import annotations

import heapq
from collections.abc import Sequence
from dataclasses import dataclass, field

import networkx as nx

from agentboard.core.models import SATISFIED_STATUSES, Feature, FeatureStatus


@dataclass
class ResolutionResult:
    """Output of resolve_order()."""

    ordered_features: list[Feature]
    has_cycle: bool = False
    cyclic_feature_ids: list[str] = field(default_factory=list)
    # feature id -> dependency ids not present in the set
    missing_dependencies: dict[str, list[str]] = field(default_factory=dict)
    # feature id -> present dependency ids that are not yet satisfied
    blocked_features: dict[str, list[str]] = field(default_factory=dict)

    @property
    def ordered_ids(self) -> list[str]:
        return [f.id for f in self.ordered_features]


def _index(features: Sequence[Feature]) -> dict[str, Feature]:
    # First occurrence wins; ids are expected to be unique
    by_id: dict[str, Feature] = {}
    for feature in features:
        by_id.setdefault(feature.id, feature)
    return by_id


def build_graph(features: Sequence[Feature]) -> nx.DiGraph:
    """Dependency graph with edges dependency -> dependent.

    Dependencies that reference ids outside the set are not added.
    """
    by_id = _index(features)
    graph = nx.DiGraph()
    graph.add_nodes_from(by_id)
    for feature in by_id.values():
        for dep_id in feature.dependencies:
            if dep_id in by_id:
                graph.add_edge(dep_id, feature.id)
    return graph


def find_cycle_members(graph: nx.DiGraph, candidates: set[str] | None = None) -> set[str]:
    """Return ids that sit on at least one cycle.

    Args:
        graph: Dependency graph
        candidates: Restrict the search to this node subset (optional)
    """
    subgraph = graph.subgraph(candidates) if candidates is not None else graph
    members: set[str] = set()
    for component in nx.strongly_connected_components(subgraph):
        if len(component) > 1:
            members.update(component)
        else:
            (node,) = component
            if subgraph.has_edge(node, node):
                members.add(node)
    return members


def cycle_members_through(feature_id: str, features: Sequence[Feature]) -> list[str]:
    """Ids on a dependency cycle through feature_id, in board order.

    Empty when the feature is not on a cycle (or not in the set).
    """
    graph = build_graph(features)
    if feature_id not in graph:
        return []
    component = next(c for c in nx.strongly_connected_components(graph) if feature_id in c)
    if len(component) == 1 and not graph.has_edge(feature_id, feature_id):
        return []
    return [fid for fid in graph if fid in component]


def resolve_order(features: Sequence[Feature]) -> ResolutionResult:
    """Order features so dependencies come before dependents.

    Args:
        features: Feature set in board order (position breaks priority ties)

    Returns:
        ResolutionResult containing every input feature exactly once
    """
    by_id = _index(features)
    position = {fid: i for i, fid in enumerate(by_id)}

    in_degree: dict[str, int] = {fid: 0 for fid in by_id}
    dependents: dict[str, list[str]] = {fid: [] for fid in by_id}
    missing: dict[str, list[str]] = {}
    blocked: dict[str, list[str]] = {}

    for fid, feature in by_id.items():
        for dep_id in feature.dependencies:
            if dep_id not in by_id:
                missing.setdefault(fid, []).append(dep_id)
                continue
            in_degree[fid] += 1
            dependents[dep_id].append(fid)
            if by_id[dep_id].status not in SATISFIED_STATUSES:
                blocked.setdefault(fid, []).append(dep_id)

    heap: list[tuple[int, int, str]] = [
        (by_id[fid].priority, position[fid], fid) for fid, deg in in_degree.items() if deg == 0
    ]
    heapq.heapify(heap)

    ordered: list[Feature] = []
    while heap:
        _, _, fid = heapq.heappop(heap)
        ordered.append(by_id[fid])
        for dependent in dependents[fid]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(heap, (by_id[dependent].priority, position[dependent], dependent))

    leftover = [fid for fid in by_id if in_degree[fid] > 0]
    if not leftover:
        return ResolutionResult(
            ordered_features=ordered,
            missing_dependencies=missing,
            blocked_features=blocked,
        )

    members = find_cycle_members(build_graph(features), set(leftover))
    ordered.extend(by_id[fid] for fid in leftover)
    return ResolutionResult(
        ordered_features=ordered,
        has_cycle=True,
        cyclic_feature_ids=[fid for fid in leftover if fid in members],
        missing_dependencies=missing,
        blocked_features=blocked,
    )


def is_satisfied(feature: Feature, all_features: Sequence[Feature]) -> bool:
    """True if no dependency present in all_features is still unsatisfied.

    Missing dependency ids count as satisfied.
    """
    return not blocking_dependencies(feature, all_features)


def blocking_dependencies(feature: Feature, all_features: Sequence[Feature]) -> list[str]:
    """Dependency ids present in all_features whose status is not satisfied."""
    by_id = _index(all_features)
    return [
        dep_id
        for dep_id in feature.dependencies
        if dep_id in by_id and by_id[dep_id].status not in SATISFIED_STATUSES
    ]


def missing_dependencies(features: Sequence[Feature]) -> dict[str, list[str]]:
    """Map of feature id -> dependency ids that reference nothing in the set."""
    by_id = _index(features)
    result: dict[str, list[str]] = {}
    for fid, feature in by_id.items():
        absent = [d for d in feature.dependencies if d not in by_id]
        if absent:
            result[fid] = absent
    return result


def ready_features(features: Sequence[Feature]) -> list[Feature]:
    """Backlog features whose dependencies are satisfied, in resolved order.

    Features on a cycle are never ready.
    """
    resolution = resolve_order(features)
    cyclic = set(resolution.cyclic_feature_ids)
    return [
        f
        for f in resolution.ordered_features
        if f.status == FeatureStatus.BACKLOG
        and f.id not in cyclic
        and is_satisfied(f, features)
    ]
