"""Dependency graph construction and layering."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from pipeline_orchestrator.orchestrator.errors import (
    ConfigError,
    CyclicDependencyError,
    UnknownDependencyError,
)


class DependencyNode(Protocol):
    @property
    def node_id(self) -> str: ...

    @property
    def needs(self) -> tuple[str, ...]: ...


def build_adjacency(nodes: Sequence[DependencyNode]) -> dict[str, list[str]]:
    """Map every node id to the ids it needs, in declaration order.

    Raises:
        ConfigError: on duplicate ids.
        UnknownDependencyError: when a `needs` entry names no node.
    """

    ids = [n.node_id for n in nodes]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigError(f"Duplicate job ids found: {dupes}")

    known = set(ids)
    adjacency: dict[str, list[str]] = {}
    for node in nodes:
        deps: list[str] = []
        for dep in node.needs:
            if dep not in known:
                raise UnknownDependencyError(node.node_id, dep, ids)
            if dep not in deps:
                deps.append(dep)
        adjacency[node.node_id] = deps
    return adjacency


def find_cycle(adjacency: dict[str, list[str]]) -> list[str] | None:
    """Depth-first search with an explicit recursion stack.

    Returns the cycle as a closed path (first id repeated at the end), or None.
    """

    visited: set[str] = set()
    on_stack: set[str] = set()

    for start in adjacency:
        if start in visited:
            continue
        # (node, iterator position) frames keep this iterative for deep graphs.
        path: list[str] = [start]
        frames: list[tuple[str, int]] = [(start, 0)]
        on_stack.add(start)
        visited.add(start)
        while frames:
            node, idx = frames[-1]
            deps = adjacency[node]
            if idx >= len(deps):
                frames.pop()
                path.pop()
                on_stack.discard(node)
                continue
            frames[-1] = (node, idx + 1)
            dep = deps[idx]
            if dep in on_stack:
                return path[path.index(dep) :] + [dep]
            if dep in visited:
                continue
            visited.add(dep)
            on_stack.add(dep)
            path.append(dep)
            frames.append((dep, 0))
    return None


def build(nodes: Sequence[DependencyNode]) -> list[list[str]]:
    """Order nodes into layers.

    Every node in layer N depends only on nodes in layers < N, so the nodes of
    one layer may run concurrently. Within a layer, declaration order is kept.

    Raises:
        UnknownDependencyError: a `needs` entry names no node.
        CyclicDependencyError: the graph has a cycle; no partial ordering is returned.
    """

    adjacency = build_adjacency(nodes)
    cycle = find_cycle(adjacency)
    if cycle is not None:
        raise CyclicDependencyError(cycle)

    order = {node_id: i for i, node_id in enumerate(adjacency)}
    remaining = {node_id: len(deps) for node_id, deps in adjacency.items()}
    dependents: dict[str, list[str]] = {node_id: [] for node_id in adjacency}
    for node_id, deps in adjacency.items():
        for dep in deps:
            dependents[dep].append(node_id)

    layers: list[list[str]] = []
    current = [node_id for node_id, count in remaining.items() if count == 0]
    while current:
        layers.append(current)
        ready: list[str] = []
        for node_id in current:
            for child in dependents[node_id]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)
        current = sorted(ready, key=order.__getitem__)
    return layers
