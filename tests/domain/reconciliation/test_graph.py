from __future__ import annotations

import pytest

from converge.domain.errors import ConfigError, CycleError
from converge.domain.reconciliation import DependencyGraph, build_dependency_graph
from tests.helpers.declarations import addr, declare, ref


def test_edges_follow_references_and_depends_on() -> None:
    graph = build_dependency_graph(
        [
            declare("server.web", name="web", network_id=ref("network.main.id")),
            declare("network.main", name="main"),
            declare("network.backup", name="backup"),
            declare("server.batch", name="batch", depends_on=("network.backup",)),
        ]
    )

    assert graph.dependencies_of(addr("server.web")) == (addr("network.main"),)
    assert graph.dependencies_of(addr("server.batch")) == (addr("network.backup"),)
    order = graph.topological_order()
    assert order.index(addr("network.main")) < order.index(addr("server.web"))
    assert order.index(addr("network.backup")) < order.index(addr("server.batch"))


def test_depends_on_an_expanded_resource_means_every_instance() -> None:
    graph = build_dependency_graph(
        [
            declare("network.zone[0]", name="z0"),
            declare("network.zone[1]", name="z1"),
            declare("server.web", name="web", depends_on=("network.zone",)),
        ]
    )

    assert graph.dependencies_of(addr("server.web")) == (
        addr("network.zone[0]"),
        addr("network.zone[1]"),
    )


def test_cycle_is_reported_with_its_full_path() -> None:
    declarations = [
        declare("network.a", name="a", peer=ref("network.c.id")),
        declare("network.b", name="b", peer=ref("network.a.id")),
        declare("network.c", name="c", peer=ref("network.b.id")),
    ]

    with pytest.raises(CycleError) as exc:
        build_dependency_graph(declarations).validate()

    path = exc.value.path
    assert path[0] == path[-1]
    assert set(path) == {addr("network.a"), addr("network.b"), addr("network.c")}
    assert len(path) == 4
    assert "->" in str(exc.value)


def test_duplicate_addresses_are_rejected() -> None:
    with pytest.raises(ConfigError, match="Duplicate resource address: network.main"):
        build_dependency_graph(
            [declare("network.main", name="a"), declare("network.main", name="b")]
        )


def test_reference_to_undeclared_resource_is_rejected() -> None:
    with pytest.raises(ConfigError, match="undeclared resource network.ghost"):
        build_dependency_graph(
            [declare("server.web", name="web", network_id=ref("network.ghost.id"))]
        )


def test_reference_must_name_a_single_instance() -> None:
    with pytest.raises(ConfigError, match="single instance"):
        build_dependency_graph(
            [
                declare("network.zone[0]", name="z0"),
                declare("server.web", name="web", network_id=ref("network.zone.id")),
            ]
        )


def test_topological_order_is_deterministic() -> None:
    graph: DependencyGraph[str] = DependencyGraph(sort_key=str)
    for dependency, dependent in [("b", "d"), ("a", "d"), ("c", "a")]:
        graph.add_edge(dependency, dependent)
    graph.add_node("e")

    assert graph.topological_order() == ["b", "c", "a", "d", "e"]
    assert graph.transitive_dependencies("d") == ("a", "b", "c")
    assert graph.reversed().topological_order()[0] == "d"
