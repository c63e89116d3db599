"""Cross-table field dependency graph with cycle detection."""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable

from fieldflow.engine.errors import DependencyCycleError
from fieldflow.engine.fields import (
    BaseField,
    FieldDefinition,
    FieldNode,
    FormulaField,
    LinkField,
    LookupField,
    RollupField,
    node_of,
)

logger = logging.getLogger(__name__)

SAME_RECORD = "same_record"
CROSS_RECORD = "cross_record"


@dataclass(frozen=True)
class DependencyEdge:
    """``target`` depends on ``source``.

    For cross-record edges ``link_field_id`` names the link field on the
    target's table whose values map source records to target records.
    """

    source: FieldNode
    target: FieldNode
    kind: str = SAME_RECORD
    link_field_id: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "from_table_id": self.source.table_id,
            "from_field_id": self.source.field_id,
            "to_table_id": self.target.table_id,
            "to_field_id": self.target.field_id,
            "kind": self.kind,
            "link_field_id": self.link_field_id,
        }


@dataclass
class FieldDependencyGraph:
    base_id: str
    version: int = 0
    definitions: dict[FieldNode, FieldDefinition] = field(default_factory=dict)
    forward: dict[FieldNode, set[FieldNode]] = field(default_factory=lambda: defaultdict(set))
    reverse: dict[FieldNode, set[FieldNode]] = field(default_factory=lambda: defaultdict(set))
    edges: dict[tuple[FieldNode, FieldNode, str], DependencyEdge] = field(default_factory=dict)
    unresolved: list[dict[str, str]] = field(default_factory=list)

    def add_edge(self, edge: DependencyEdge) -> None:
        # a self-linked lookup can depend on its link both ways
        self.edges[(edge.source, edge.target, edge.kind)] = edge
        self.forward[edge.source].add(edge.target)
        self.reverse[edge.target].add(edge.source)

    def definition(self, node: FieldNode) -> FieldDefinition | None:
        return self.definitions.get(node)

    def table_fields(self, table_id: str) -> list[FieldNode]:
        return sorted(node for node in self.definitions if node.table_id == table_id)

    def has_table(self, table_id: str) -> bool:
        return any(node.table_id == table_id for node in self.definitions)

    def dependents(self, node: FieldNode) -> list[FieldNode]:
        return sorted(self.forward.get(node, ()))

    def dependencies(self, node: FieldNode) -> list[FieldNode]:
        return sorted(self.reverse.get(node, ()))

    def edges_between(self, source: FieldNode, target: FieldNode) -> list[DependencyEdge]:
        found = [self.edges.get((source, target, kind)) for kind in (SAME_RECORD, CROSS_RECORD)]
        return [edge for edge in found if edge is not None]

    def edge(self, source: FieldNode, target: FieldNode, kind: str | None = None) -> DependencyEdge | None:
        """The edge between two fields, preferring cross-record when ``kind`` is not given."""

        candidates = self.edges_between(source, target)
        if kind is not None:
            candidates = [edge for edge in candidates if edge.kind == kind]
        return candidates[-1] if candidates else None

    def downstream(self, start: Iterable[FieldNode]) -> list[FieldNode]:
        """Breadth-first closure of everything that depends on ``start``."""

        seen: set[FieldNode] = set()
        order: list[FieldNode] = []
        queue = deque(sorted(set(start)))
        while queue:
            node = queue.popleft()
            for dependent in self.dependents(node):
                if dependent in seen:
                    continue
                seen.add(dependent)
                order.append(dependent)
                queue.append(dependent)
        return order

    def topological_levels(self, nodes: Iterable[FieldNode]) -> dict[FieldNode, int]:
        """Longest-path level of each node within the induced subgraph."""

        subset = set(nodes)
        indegree = {node: 0 for node in subset}
        for node in subset:
            for dependency in self.reverse.get(node, ()):
                if dependency in subset:
                    indegree[node] += 1
        levels = {node: 0 for node in subset}
        ready = deque(sorted(node for node, degree in indegree.items() if degree == 0))
        visited = 0
        while ready:
            node = ready.popleft()
            visited += 1
            for dependent in sorted(self.forward.get(node, ())):
                if dependent not in subset:
                    continue
                levels[dependent] = max(levels[dependent], levels[node] + 1)
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    ready.append(dependent)
        if visited != len(subset):
            cycle = find_cycle(self.forward, subset)
            raise DependencyCycleError(cycle or sorted(subset))
        return levels

    def depth(self) -> int:
        if not self.definitions:
            return 0
        return max(self.topological_levels(self.definitions).values()) + 1

    def touched_edges(self, nodes: Iterable[FieldNode]) -> list[DependencyEdge]:
        subset = set(nodes)
        return [
            edge
            for key, edge in sorted(self.edges.items())
            if key[1] in subset
        ]


def find_cycle(
    forward: dict[FieldNode, set[FieldNode]], nodes: Iterable[FieldNode] | None = None
) -> list[FieldNode]:
    """Return one cycle as a closed path, or an empty list.

    Iterative three-colour DFS so deep bases cannot exhaust the interpreter
    recursion limit.
    """

    white, grey, black = 0, 1, 2
    candidates = sorted(set(nodes) if nodes is not None else set(forward))
    colour: dict[FieldNode, int] = defaultdict(int)
    parent: dict[FieldNode, FieldNode] = {}
    for root in candidates:
        if colour[root] != white:
            continue
        colour[root] = grey
        stack: list[tuple[FieldNode, list[FieldNode]]] = [(root, sorted(forward.get(root, ())))]
        while stack:
            node, pending = stack[-1]
            if not pending:
                colour[node] = black
                stack.pop()
                continue
            child = pending.pop(0)
            if colour[child] == grey:
                cycle = [child, node]
                cursor = node
                while cursor != child:
                    cursor = parent[cursor]
                    cycle.append(cursor)
                cycle.reverse()
                return cycle
            if colour[child] == white:
                colour[child] = grey
                parent[child] = node
                stack.append((child, sorted(forward.get(child, ()))))
    return []


def _edges_for(definition: FieldDefinition, by_node: dict[FieldNode, FieldDefinition]) -> list:
    target = node_of(definition)
    if isinstance(definition, (BaseField, LinkField)):
        return []
    if isinstance(definition, FormulaField):
        return [
            DependencyEdge(source=FieldNode(definition.table_id, ref), target=target)
            for ref in definition.references()
        ]
    if isinstance(definition, (LookupField, RollupField)):
        link_node = FieldNode(definition.table_id, definition.link_field_id)
        link = by_node.get(link_node)
        edges = [DependencyEdge(source=link_node, target=target)]
        if isinstance(link, LinkField):
            edges.append(
                DependencyEdge(
                    source=FieldNode(link.foreign_table_id, definition.target_field_id),
                    target=target,
                    kind=CROSS_RECORD,
                    link_field_id=definition.link_field_id,
                )
            )
        return edges
    raise TypeError(f"unhandled definition kind: {type(definition).__name__}")


def build_dependency_graph(
    base_id: str, fields: Iterable[FieldDefinition], version: int = 0
) -> FieldDependencyGraph:
    """Build and validate the dependency graph for one base.

    Raises DependencyCycleError when the definitions contain a cycle.
    """

    graph = FieldDependencyGraph(base_id=base_id, version=version)
    for definition in fields:
        graph.definitions[node_of(definition)] = definition

    for definition in sorted(graph.definitions.values(), key=node_of):
        for edge in _edges_for(definition, graph.definitions):
            if edge.source not in graph.definitions:
                graph.unresolved.append(
                    {
                        "field": str(edge.target),
                        "missing": str(edge.source),
                    }
                )
                continue
            if isinstance(definition, (LookupField, RollupField)) and edge.kind == SAME_RECORD:
                if not isinstance(graph.definitions[edge.source], LinkField):
                    graph.unresolved.append(
                        {"field": str(edge.target), "missing": f"link:{edge.source}"}
                    )
                    continue
            graph.add_edge(edge)

    cycle = find_cycle(graph.forward)
    if cycle:
        raise DependencyCycleError([tuple(node) for node in cycle])
    if graph.unresolved:
        logger.warning(
            "dependency graph has unresolved references",
            extra={"base_id": base_id, "unresolved": graph.unresolved},
        )
    return graph
