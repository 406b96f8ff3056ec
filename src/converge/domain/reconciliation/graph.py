"""Dependency graphs over resource addresses and execution steps.

Edges always point from a dependency to its dependent, so a topological order
is an order in which things can be created. The destroy order is the
topological order of :meth:`DependencyGraph.reversed`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any

from converge.domain.errors import ConfigError, CycleError

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable, Iterable, Iterator

    from converge.domain.model import ResourceAddress, ResourceDeclaration


class _Color(IntEnum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


def _address_sort_key(node: object) -> Any:
    sort_key = getattr(node, "sort_key", None)
    return sort_key() if callable(sort_key) else str(node)


@dataclass(slots=True)
class DependencyGraph[TNode: Hashable]:
    """Mutable directed graph with deterministic iteration order."""

    sort_key: Callable[[TNode], Any] = field(default=_address_sort_key, repr=False)
    _dependencies: dict[TNode, set[TNode]] = field(default_factory=dict, repr=False)
    _dependents: dict[TNode, set[TNode]] = field(default_factory=dict, repr=False)

    def add_node(self, node: TNode) -> None:
        self._dependencies.setdefault(node, set())
        self._dependents.setdefault(node, set())

    def add_edge(self, dependency: TNode, dependent: TNode) -> None:
        self.add_node(dependency)
        self.add_node(dependent)
        self._dependencies[dependent].add(dependency)
        self._dependents[dependency].add(dependent)

    def __contains__(self, node: object) -> bool:
        return node in self._dependencies

    def __len__(self) -> int:
        return len(self._dependencies)

    def __iter__(self) -> Iterator[TNode]:
        return iter(self.nodes)

    @property
    def nodes(self) -> tuple[TNode, ...]:
        return tuple(sorted(self._dependencies, key=self.sort_key))

    @property
    def edges(self) -> tuple[tuple[TNode, TNode], ...]:
        return tuple(
            (dependency, dependent)
            for dependency in self.nodes
            for dependent in self._sorted(self._dependents[dependency])
        )

    def dependencies_of(self, node: TNode) -> tuple[TNode, ...]:
        return self._sorted(self._dependencies.get(node, ()))

    def dependents_of(self, node: TNode) -> tuple[TNode, ...]:
        return self._sorted(self._dependents.get(node, ()))

    def transitive_dependents(self, node: TNode) -> tuple[TNode, ...]:
        return self._walk(node, self._dependents)

    def transitive_dependencies(self, node: TNode) -> tuple[TNode, ...]:
        return self._walk(node, self._dependencies)

    def reversed(self) -> DependencyGraph[TNode]:
        graph = type(self)(sort_key=self.sort_key)
        for node in self._dependencies:
            graph.add_node(node)
        for dependency, dependent in self.edges:
            graph.add_edge(dependent, dependency)
        return graph

    def find_cycle(self) -> list[TNode] | None:
        """Return one cycle as a closed path (first node repeated last), if any."""

        color = dict.fromkeys(self._dependencies, _Color.WHITE)
        for start in self.nodes:
            if color[start] is not _Color.WHITE:
                continue
            color[start] = _Color.GRAY
            path = [start]
            stack = [iter(self.dependents_of(start))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    color[path.pop()] = _Color.BLACK
                    stack.pop()
                    continue
                if color[child] is _Color.GRAY:
                    return [*path[path.index(child) :], child]
                if color[child] is _Color.WHITE:
                    color[child] = _Color.GRAY
                    path.append(child)
                    stack.append(iter(self.dependents_of(child)))
        return None

    def validate(self) -> None:
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleError(cycle)

    def topological_order(self) -> list[TNode]:
        """Kahn's algorithm; ties are broken by ``sort_key``."""

        self.validate()
        remaining = {node: len(deps) for node, deps in self._dependencies.items()}
        ready = sorted((node for node, count in remaining.items() if count == 0), key=self.sort_key)
        order: list[TNode] = []
        while ready:
            node = ready.pop(0)
            order.append(node)
            released: list[TNode] = []
            for dependent in self._dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    released.append(dependent)
            if released:
                ready = sorted([*ready, *released], key=self.sort_key)
        return order

    def _sorted(self, nodes: Iterable[TNode]) -> tuple[TNode, ...]:
        return tuple(sorted(nodes, key=self.sort_key))

    def _walk(self, start: TNode, adjacency: dict[TNode, set[TNode]]) -> tuple[TNode, ...]:
        seen: set[TNode] = set()
        pending = list(adjacency.get(start, ()))
        while pending:
            node = pending.pop()
            if node in seen:
                continue
            seen.add(node)
            pending.extend(adjacency.get(node, ()))
        seen.discard(start)
        return self._sorted(seen)


type AddressGraph = DependencyGraph[ResourceAddress]


def build_dependency_graph(declarations: Iterable[ResourceDeclaration]) -> AddressGraph:
    """Build the declaration DAG from references and ``depends_on``.

    Edges are tracked per expanded instance. A ``depends_on`` entry naming an
    expanded resource without instance key depends on all of its instances;
    an attribute reference must always name a single instance.
    """

    by_address: dict[ResourceAddress, ResourceDeclaration] = {}
    duplicates: list[ResourceAddress] = []
    for declaration in declarations:
        if declaration.address in by_address:
            duplicates.append(declaration.address)
            continue
        by_address[declaration.address] = declaration
    if duplicates:
        rendered = ", ".join(str(address) for address in duplicates)
        raise ConfigError(f"Duplicate resource address: {rendered}", addresses=duplicates)

    instances_by_resource: dict[ResourceAddress, list[ResourceAddress]] = {}
    for address in by_address:
        if address.is_expanded:
            instances_by_resource.setdefault(address.resource, []).append(address)

    graph: AddressGraph = DependencyGraph()
    for address, declaration in by_address.items():
        graph.add_node(address)
        for reference in declaration.references():
            target = reference.address
            if target not in by_address:
                if target in instances_by_resource:
                    raise ConfigError(
                        f"{address}: reference {reference} must name a single instance "
                        f"of the expanded resource {target}",
                        addresses=[address],
                    )
                raise ConfigError(
                    f"{address}: reference to undeclared resource {target}",
                    addresses=[address],
                )
            graph.add_edge(target, address)
        for target in declaration.depends_on:
            if target in by_address:
                graph.add_edge(target, address)
            elif target in instances_by_resource:
                for instance in instances_by_resource[target]:
                    graph.add_edge(instance, address)
            else:
                raise ConfigError(
                    f"{address}: depends_on names undeclared resource {target}",
                    addresses=[address],
                )

    graph.validate()
    return graph
