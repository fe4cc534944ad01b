from __future__ import annotations

import heapq
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from stackfold.errors import CycleError, InvalidDescriptor
from stackfold.logger import logger
from stackfold.resource.model import (
    KindRegistry,
    ResourceDescriptor,
    ResourceId,
    validate,
)


class Graph:
    """
    An immutable dependency graph of resource descriptors.

    An edge `a -> b` means `b` must be applied before `a` starts. `order` is a
    topological order where ties are broken by ascending (kind, name).
    """

    def __init__(
        self,
        nodes: Dict[ResourceId, ResourceDescriptor],
        edges: Dict[ResourceId, Tuple[ResourceId, ...]],
        order: Tuple[ResourceId, ...],
    ) -> None:
        self._nodes = MappingProxyType(dict(nodes))
        self._edges = MappingProxyType(dict(edges))
        self._order = order

    @property
    def nodes(self) -> Mapping[ResourceId, ResourceDescriptor]:
        return self._nodes

    @property
    def order(self) -> Tuple[ResourceId, ...]:
        return self._order

    def __contains__(self, rid: object) -> bool:
        return rid in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def dependencies(self, rid: ResourceId) -> Tuple[ResourceId, ...]:
        return self._edges[rid]


def _find_cycle(
    nodes: Iterable[ResourceId], edges: Mapping[ResourceId, Iterable[ResourceId]]
) -> Optional[List[ResourceId]]:
    """
    Depth-first search with recursion stack marking. Returns the first cycle found as
    a path whose first and last element are the same node.
    """
    visited: Set[ResourceId] = set()
    on_stack: Set[ResourceId] = set()
    stack: List[ResourceId] = []

    def visit(rid: ResourceId) -> Optional[List[ResourceId]]:
        visited.add(rid)
        on_stack.add(rid)
        stack.append(rid)
        for dep in sorted(edges[rid]):
            if dep in on_stack:
                return stack[stack.index(dep) :] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        on_stack.discard(rid)
        stack.pop()
        return None

    for rid in sorted(nodes):
        if rid not in visited:
            cycle = visit(rid)
            if cycle:
                return cycle
    return None


def topological_order(
    nodes: Iterable[ResourceId], edges: Mapping[ResourceId, Iterable[ResourceId]]
) -> Tuple[ResourceId, ...]:
    """
    Kahn's algorithm. Among the nodes whose dependencies are all met, the smallest
    (kind, name) comes first.
    """
    remaining = {rid: len(set(edges[rid])) for rid in nodes}
    dependents: Dict[ResourceId, List[ResourceId]] = {rid: [] for rid in remaining}
    for rid in remaining:
        for dep in set(edges[rid]):
            dependents[dep].append(rid)

    ready = [rid for rid, n in remaining.items() if n == 0]
    heapq.heapify(ready)
    order: List[ResourceId] = []
    while ready:
        rid = heapq.heappop(ready)
        order.append(rid)
        for dependent in dependents[rid]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(remaining):
        cycle = _find_cycle(remaining, edges)
        raise CycleError(cycle or sorted(set(remaining) - set(order)))
    return tuple(order)


def build(
    descriptors: Iterable[ResourceDescriptor], kinds: Optional[KindRegistry] = None
) -> Graph:
    """
    Builds the dependency graph of a set of descriptors.

    Edges come from output references, `depends_on`, and the `before`/`after` ordering
    hints. A node that is only tied to others through hints is kept like any other.

    Args:
        descriptors (Iterable[ResourceDescriptor]): The desired resources.
        kinds (KindRegistry, optional): When given, every descriptor is validated against it.

    Returns:
        Graph: The dependency graph.

    Raises:
        InvalidDescriptor: If a descriptor is duplicated, invalid, or refers to an undeclared resource.
        CycleError: If the dependencies do not form a DAG.
    """
    nodes: Dict[ResourceId, ResourceDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.id in nodes:
            raise InvalidDescriptor(descriptor.id, "duplicate resource")
        nodes[descriptor.id] = descriptor

    edge_sets: Dict[ResourceId, Set[ResourceId]] = {rid: set() for rid in nodes}
    for rid, descriptor in nodes.items():
        if kinds is not None:
            validate(descriptor, nodes, kinds)

        for dep in descriptor.dependencies():
            if dep not in nodes:
                raise InvalidDescriptor(rid, f"depends on undeclared {dep}")
            edge_sets[rid].add(dep)

        for later in descriptor.before:
            if later not in nodes:
                raise InvalidDescriptor(rid, f"before refers to undeclared {later}")
            edge_sets[later].add(rid)

    cycle = _find_cycle(nodes, edge_sets)
    if cycle:
        raise CycleError(cycle)

    edges = {rid: tuple(sorted(deps)) for rid, deps in edge_sets.items()}
    order = topological_order(nodes, edges)
    logger.debug(f"Built dependency graph with {len(nodes)} resource(s)")
    return Graph(nodes, edges, order)
