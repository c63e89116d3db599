"""Walk an execution plan step by step and write recomputed values."""

from __future__ import annotations

import logging
from typing import Any

from fieldflow.engine.errors import FatalPlanError
from fieldflow.engine.evaluator import FieldEvaluator
from fieldflow.engine.fields import (
    FieldDefinition,
    FieldNode,
    FormulaField,
    LinkField,
    LookupField,
    RollupField,
    is_computed,
)
from fieldflow.engine.graph import CROSS_RECORD, DependencyEdge, FieldDependencyGraph
from fieldflow.models.contracts import ExecutionPlanV1, PlanStepV1
from fieldflow.store.records import RecordStore, chunked

logger = logging.getLogger(__name__)


def _link_targets(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    return [str(value)]


class PlanExecutor:
    def __init__(self, records: RecordStore, evaluator: FieldEvaluator) -> None:
        self.records = records
        self.evaluator = evaluator

    def _resolve(self, step: PlanStepV1, graph: FieldDependencyGraph) -> FieldDefinition:
        node = FieldNode(step.table_id, step.field_id)
        definition = graph.definition(node)
        if definition is None:
            raise FatalPlanError(
                f"plan step references missing field {node}",
                reason_code="plan_references_missing_field",
            )
        if not is_computed(definition):
            raise FatalPlanError(
                f"plan step {node} is not a computed field", reason_code="not_computed_field"
            )
        if isinstance(definition, FormulaField):
            for field_id in definition.references():
                if FieldNode(definition.table_id, field_id) not in graph.definitions:
                    raise FatalPlanError(
                        f"{node} references missing field {definition.table_id}.{field_id}",
                        reason_code="dangling_reference",
                    )
        if isinstance(definition, (LookupField, RollupField)):
            link = graph.definition(FieldNode(definition.table_id, definition.link_field_id))
            if not isinstance(link, LinkField):
                raise FatalPlanError(
                    f"{node} uses missing link field {definition.link_field_id}",
                    reason_code="dangling_reference",
                )
            if FieldNode(link.foreign_table_id, definition.target_field_id) not in graph.definitions:
                raise FatalPlanError(
                    f"{node} looks up missing field {link.foreign_table_id}.{definition.target_field_id}",
                    reason_code="dangling_reference",
                )
        return definition

    def _linked_records(
        self,
        definition: FieldDefinition,
        graph: FieldDependencyGraph,
        records: dict[str, dict[str, Any]],
    ) -> dict[str, list[dict[str, Any]]]:
        if not isinstance(definition, (LookupField, RollupField)):
            return {}
        link = graph.definition(FieldNode(definition.table_id, definition.link_field_id))
        if not isinstance(link, LinkField):
            return {}
        targets = {
            record_id: _link_targets(fields.get(definition.link_field_id))
            for record_id, fields in records.items()
        }
        wanted = {target for ids in targets.values() for target in ids}
        foreign = self.records.get_records(link.foreign_table_id, wanted)
        return {
            record_id: [foreign[target] for target in ids if target in foreign]
            for record_id, ids in targets.items()
        }

    def _evaluate_records(
        self,
        step: PlanStepV1,
        definition: FieldDefinition,
        graph: FieldDependencyGraph,
        record_ids: list[str],
        changed: list[str],
    ) -> int:
        records = self.records.get_records(step.table_id, record_ids)
        linked = self._linked_records(definition, graph, records)
        for record_id in sorted(records):
            fields = records[record_id]
            value = self.evaluator.evaluate(definition, fields, linked.get(record_id, []))
            if fields.get(step.field_id) == value and (step.field_id in fields or value is None):
                continue
            self.records.write_values(step.table_id, record_id, {step.field_id: value})
            changed.append(record_id)
        return len(records)

    def execute_step(self, step: PlanStepV1, graph: FieldDependencyGraph) -> dict[str, Any]:
        definition = self._resolve(step, graph)
        if step.all_records:
            pages = self.records.iter_record_id_pages(step.table_id)
        else:
            pages = chunked(sorted(set(step.record_ids)))
        changed: list[str] = []
        evaluated = 0
        requested = 0
        for page in pages:
            requested += len(page)
            evaluated += self._evaluate_records(step, definition, graph, page, changed)
        return {
            "table_id": step.table_id,
            "field_id": step.field_id,
            "level": step.level,
            "evaluated": evaluated,
            "skipped_missing": requested - evaluated,
            "changed_record_ids": changed,
        }

    def execute(self, plan: ExecutionPlanV1, graph: FieldDependencyGraph) -> list[dict[str, Any]]:
        """Run every step in plan order; only values that differ are written."""

        results = []
        for step in plan.steps:
            result = self.execute_step(step, graph)
            logger.debug(
                "plan step executed",
                extra={
                    "plan_hash": plan.plan_hash,
                    "field": f"{step.table_id}.{step.field_id}",
                    "changed": len(result["changed_record_ids"]),
                },
            )
            results.append(result)
        return results

    def _sources_behind(
        self,
        edge: DependencyEdge,
        changed: list[str],
        covered: set[str],
    ) -> set[str]:
        """Changed source records reaching a dependent record the step does not cover."""

        table_id = edge.target.table_id
        linking = self.records.find_linking_records(table_id, edge.link_field_id, changed)
        missed = [record_id for record_id in linking if record_id not in covered]
        if not missed:
            return set()
        wanted = set(changed)
        return {
            target
            for fields in self.records.get_records(table_id, missed).values()
            for target in _link_targets(fields.get(edge.link_field_id))
            if target in wanted
        }

    def uncovered_changes(
        self,
        plan: ExecutionPlanV1,
        graph: FieldDependencyGraph,
        results: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Changed records whose dependents the plan did not recompute.

        Returns ``{"seeds": {table_id: [record_id, ...]}, "changed_field_ids": [...]}``;
        both are empty when the plan covered everything.
        """

        seeds: dict[str, set[str]] = {}
        field_ids: set[str] = set()
        for result in results:
            changed = result["changed_record_ids"]
            if not changed:
                continue
            source = FieldNode(result["table_id"], result["field_id"])
            for dependent in graph.dependents(source):
                definition = graph.definition(dependent)
                if definition is None or not is_computed(definition):
                    continue
                step = plan.step_for(dependent.table_id, dependent.field_id)
                if step is not None and step.all_records:
                    continue
                covered = set(step.record_ids) if step is not None else set()
                missed: set[str] = set()
                for edge in graph.edges_between(source, dependent):
                    if edge.kind == CROSS_RECORD:
                        missed.update(self._sources_behind(edge, changed, covered))
                    else:
                        missed.update(record_id for record_id in changed if record_id not in covered)
                if missed:
                    seeds.setdefault(source.table_id, set()).update(missed)
                    field_ids.add(source.field_id)
        return {
            "seeds": {table_id: sorted(ids) for table_id, ids in sorted(seeds.items())},
            "changed_field_ids": sorted(field_ids),
        }
