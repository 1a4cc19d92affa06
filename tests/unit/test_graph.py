from __future__ import annotations

from dataclasses import dataclass

import pytest

from pipeline_orchestrator.orchestrator.errors import (
    ConfigError,
    CyclicDependencyError,
    UnknownDependencyError,
)
from pipeline_orchestrator.orchestrator.workflow import graph

from conftest import make_job


@dataclass(frozen=True)
class Node:
    node_id: str
    needs: tuple[str, ...] = ()


def _assert_topological(layers: list[list[str]], nodes: list[Node]) -> None:
    position = {node_id: i for i, layer in enumerate(layers) for node_id in layer}
    assert sorted(position) == sorted(n.node_id for n in nodes)
    for node in nodes:
        for dep in node.needs:
            assert position[dep] < position[node.node_id]


def test_layers_group_independent_jobs() -> None:
    nodes = [
        Node("build"),
        Node("lint"),
        Node("test", ("build",)),
        Node("docs", ("build",)),
        Node("deploy", ("test", "lint", "docs")),
    ]

    layers = graph.build(nodes)

    assert layers == [["build", "lint"], ["test", "docs"], ["deploy"]]
    _assert_topological(layers, nodes)


def test_diamond_and_long_chain_are_topological() -> None:
    nodes = [Node(f"n{i}", (f"n{i - 1}",) if i else ()) for i in range(50)]
    nodes.append(Node("side", ("n3",)))
    nodes.append(Node("join", ("n49", "side")))

    layers = graph.build(nodes)

    assert len(layers) == 51
    _assert_topological(layers, nodes)


def test_accepts_job_specs() -> None:
    jobs = [make_job("build"), make_job("test", needs=("build",))]

    assert graph.build(jobs) == [["build"], ["test"]]


def test_two_node_cycle_is_reported() -> None:
    with pytest.raises(CyclicDependencyError) as info:
        graph.build([Node("a", ("b",)), Node("b", ("a",))])

    assert info.value.cycle == ["a", "b", "a"]


def test_cycle_behind_acyclic_prefix_is_found() -> None:
    nodes = [
        Node("root"),
        Node("x", ("root", "z")),
        Node("y", ("x",)),
        Node("z", ("y",)),
    ]

    with pytest.raises(CyclicDependencyError) as info:
        graph.build(nodes)

    cycle = info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"x", "y", "z"}


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CyclicDependencyError):
        graph.build([Node("a", ("a",))])


def test_unknown_dependency_fails_fast() -> None:
    with pytest.raises(UnknownDependencyError) as info:
        graph.build([Node("test", ("build",))])

    assert info.value.job == "test"
    assert info.value.dependency == "build"
    assert isinstance(info.value, ConfigError)


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(ConfigError):
        graph.build([Node("a"), Node("a")])


def test_find_cycle_returns_none_for_dag() -> None:
    assert graph.find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None
