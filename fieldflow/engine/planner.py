"""Turn a change event into an ordered, fingerprinted execution plan."""

from __future__ import annotations

import logging
from typing import Protocol

from fieldflow.engine.errors import FatalPlanError
from fieldflow.engine.fields import FieldNode, is_computed
from fieldflow.engine.graph import CROSS_RECORD, FieldDependencyGraph
from fieldflow.models.contracts import (
    ALL_RECORDS,
    FIELD_CHANGE_TYPES,
    ChangeSeed,
    ExecutionPlanV1,
    PlanStepV1,
)
from fieldflow.store.records import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_PLAN_MAX_RECORDS = 10_000


class GraphSource(Protocol):
    def load_graph(self, base_id: str) -> FieldDependencyGraph:
        ...


def _merge(record_sets: dict[FieldNode, set[str] | None], node: FieldNode, incoming: set[str] | None) -> None:
    if node not in record_sets:
        record_sets[node] = None if incoming is None else set(incoming)
        return
    current = record_sets[node]
    if current is None or incoming is None:
        record_sets[node] = None
        return
    current.update(incoming)


class ChangePlanner:
    def __init__(
        self,
        graphs: GraphSource,
        records: RecordStore,
        *,
        plan_max_records: int = DEFAULT_PLAN_MAX_RECORDS,
    ) -> None:
        self.graphs = graphs
        self.records = records
        self.plan_max_records = plan_max_records

    def _start_nodes(
        self, seed: ChangeSeed, graph: FieldDependencyGraph, table_id: str
    ) -> list[FieldNode]:
        table_fields = graph.table_fields(table_id)
        if seed.change_type in FIELD_CHANGE_TYPES:
            nodes = [FieldNode(table_id, field_id) for field_id in seed.changed_field_ids]
            missing = [node for node in nodes if node not in graph.definitions]
            if missing and table_id == seed.seed_table_id:
                raise FatalPlanError(
                    f"changed field not found: {', '.join(str(node) for node in missing)}",
                    reason_code="changed_field_missing",
                )
            return [node for node in nodes if node in graph.definitions]
        if seed.change_type == "recordUpdate" and seed.changed_field_ids:
            wanted = set(seed.changed_field_ids)
            return [node for node in table_fields if node.field_id in wanted]
        return table_fields

    def plan(self, seed: ChangeSeed, graph: FieldDependencyGraph | None = None) -> ExecutionPlanV1:
        graph = graph if graph is not None else self.graphs.load_graph(seed.base_id)
        if not graph.has_table(seed.seed_table_id):
            raise FatalPlanError(
                f"seed table {seed.seed_table_id} has no fields in base {seed.base_id}",
                reason_code="seed_table_missing",
            )

        groups = seed.seed_groups()
        record_sets: dict[FieldNode, set[str] | None] = {}
        for table_id, record_ids in groups.items():
            incoming = None if ALL_RECORDS in record_ids else set(record_ids)
            for node in self._start_nodes(seed, graph, table_id):
                _merge(record_sets, node, incoming)

        impacted = set(record_sets) | set(graph.downstream(list(record_sets)))
        levels = graph.topological_levels(impacted)
        ordered = sorted(impacted, key=lambda node: (levels[node], node.table_id, node.field_id))

        coarse = False
        for node in ordered:
            for dependency in graph.dependencies(node):
                if dependency not in record_sets:
                    continue
                source = record_sets[dependency]
                for edge in graph.edges_between(dependency, node):
                    if edge.kind == CROSS_RECORD and source is not None:
                        fanned: set[str] | None = set(
                            self.records.find_linking_records(node.table_id, edge.link_field_id, source)
                        )
                    else:
                        fanned = source
                    _merge(record_sets, node, fanned)
            current = record_sets.get(node)
            if current is not None and len(current) > self.plan_max_records:
                logger.info(
                    "plan step downgraded to all records",
                    extra={"field": str(node), "records": len(current), "limit": self.plan_max_records},
                )
                record_sets[node] = None
                coarse = True

        deleted = set(groups[seed.seed_table_id]) if seed.change_type == "recordDelete" else set()
        steps: list[PlanStepV1] = []
        estimated_rows = 0
        for node in ordered:
            definition = graph.definition(node)
            if definition is None or not is_computed(definition):
                continue
            record_set = record_sets.get(node, set())
            if record_set is None:
                steps.append(
                    PlanStepV1(
                        table_id=node.table_id,
                        field_id=node.field_id,
                        level=levels[node],
                        kind=definition.kind,
                        all_records=True,
                    )
                )
                estimated_rows += self.records.count_records(node.table_id)
                continue
            if node.table_id == seed.seed_table_id:
                record_set = record_set - deleted
            if not record_set:
                continue
            steps.append(
                PlanStepV1(
                    table_id=node.table_id,
                    field_id=node.field_id,
                    level=levels[node],
                    kind=definition.kind,
                    record_ids=sorted(record_set),
                )
            )
            estimated_rows += len(record_set)

        step_nodes = [FieldNode(step.table_id, step.field_id) for step in steps]
        return ExecutionPlanV1(
            base_id=seed.base_id,
            seed_table_id=seed.seed_table_id,
            change_type=seed.change_type,
            seed_record_ids=seed.normalized_record_ids(),
            extra_seeds={table_id: ids for table_id, ids in groups.items() if table_id != seed.seed_table_id},
            all_records=ALL_RECORDS in groups[seed.seed_table_id],
            changed_field_ids=sorted(set(seed.changed_field_ids)),
            graph_version=graph.version,
            plan_hash=seed.plan_hash(graph.version),
            steps=steps,
            edges=[edge.to_dict() for edge in graph.touched_edges(step_nodes)],
            coarse=coarse,
            estimated_rows=estimated_rows,
        )
