"""Explain what a change would recompute and how expensive it is."""

from __future__ import annotations

import math
import time
from typing import Any

from fieldflow.engine.errors import NotFoundError
from fieldflow.engine.executor import PlanExecutor
from fieldflow.engine.fields import FieldNode, LinkField, LookupField, RollupField
from fieldflow.engine.graph import CROSS_RECORD, FieldDependencyGraph
from fieldflow.engine.planner import ChangePlanner, GraphSource
from fieldflow.models.contracts import ChangeSeed, ExecutionPlanV1, ExplainOptions
from fieldflow.outbox.worker import load_stored_plan, plan_is_current, seed_from_task
from fieldflow.store.db import PropagationDB
from fieldflow.store.records import SQLiteRecordStore

COMPLEXITY_LEVELS = (
    (5.0, "trivial"),
    (15.0, "low"),
    (30.0, "medium"),
    (50.0, "high"),
)

FACTOR_WEIGHTS = {
    "impacted_field_count": 1.0,
    "link_fanout_multiplier": 3.0,
    "graph_depth": 2.0,
    "estimated_row_count": 5.0,
}


def complexity_level(score: float) -> str:
    for ceiling, level in COMPLEXITY_LEVELS:
        if score < ceiling:
            return level
    return "very_high"


def assess_complexity(
    plan: ExecutionPlanV1, graph: FieldDependencyGraph, seed_count: int
) -> dict[str, Any]:
    impacted = len(plan.steps)
    depth = max((step.level for step in plan.steps), default=-1) + 1
    fanout = plan.estimated_rows / max(seed_count, 1) if plan.steps else 0.0
    cross_edges = sum(1 for edge in plan.edges if edge["kind"] == CROSS_RECORD)

    raw = {
        "impacted_field_count": float(impacted),
        "link_fanout_multiplier": math.log2(1 + fanout) if cross_edges else 0.0,
        "graph_depth": float(depth),
        "estimated_row_count": math.log10(1 + plan.estimated_rows),
    }
    values = {
        "impacted_field_count": impacted,
        "link_fanout_multiplier": round(fanout, 2),
        "graph_depth": depth,
        "estimated_row_count": plan.estimated_rows,
    }
    factors = [
        {
            "name": name,
            "value": values[name],
            "weight": FACTOR_WEIGHTS[name],
            "score": round(raw[name] * FACTOR_WEIGHTS[name], 2),
        }
        for name in FACTOR_WEIGHTS
    ]
    score = round(sum(factor["score"] for factor in factors), 2)

    recommendations: list[str] = []
    if plan.coarse:
        recommendations.append(
            "Some steps were downgraded to all records; narrow the change or raise "
            "FIELDFLOW_PLAN_MAX_RECORDS."
        )
    if plan.estimated_rows > 10_000:
        recommendations.append("Large recompute; expect a long-running task.")
    if depth >= 5:
        recommendations.append("Deep dependency chain; consider flattening intermediate formulas.")
    if cross_edges and fanout > 100:
        recommendations.append("High link fan-out; consider fewer lookups or rollups over this link.")
    if graph.unresolved:
        recommendations.append("Fix unresolved field references before they dead-letter tasks.")
    return {
        "score": score,
        "level": complexity_level(score),
        "factors": factors,
        "recommendations": recommendations,
    }


class ExplainService:
    """Read-only rendering of plans, SQL, lock footprint and complexity."""

    def __init__(
        self,
        db: PropagationDB,
        graphs: GraphSource,
        planner: ChangePlanner,
        executor: PlanExecutor,
        records: SQLiteRecordStore,
    ) -> None:
        self.db = db
        self.graphs = graphs
        self.planner = planner
        self.executor = executor
        self.records = records

    def explain_seed(
        self, seed: ChangeSeed, options: ExplainOptions | dict[str, Any] | None = None
    ) -> dict[str, Any]:
        started = time.perf_counter()
        graph = self.graphs.load_graph(seed.base_id)
        plan = self.planner.plan(seed, graph)
        planned = time.perf_counter()
        return self._render(seed, plan, graph, self._options(options), started, planned, {})

    def explain_task(
        self, task_id: str, options: ExplainOptions | dict[str, Any] | None = None
    ) -> dict[str, Any]:
        started = time.perf_counter()
        task = self.db.get_task(task_id)
        if task is None:
            raise NotFoundError(f"task_not_found:{task_id}")
        seed = seed_from_task(task, self.db.get_task_seeds(task_id))
        graph = self.graphs.load_graph(task["base_id"])
        plan = load_stored_plan(task)
        stored = plan is not None and plan_is_current(plan, seed, graph)
        if plan is None or not stored:
            plan = self.planner.plan(seed, graph)
        planned = time.perf_counter()
        command = {
            "task_id": task_id,
            "status": task["status"],
            "attempts": task["attempts"],
            "max_attempts": task["max_attempts"],
            "stage_depth": task["stage_depth"],
            "plan_source": "stored" if stored else "rebuilt",
        }
        return self._render(seed, plan, graph, self._options(options), started, planned, command)

    def _options(self, options: ExplainOptions | dict[str, Any] | None) -> ExplainOptions:
        if isinstance(options, ExplainOptions):
            return options
        return ExplainOptions.model_validate(options or {})

    def _render(
        self,
        seed: ChangeSeed,
        plan: ExecutionPlanV1,
        graph: FieldDependencyGraph,
        options: ExplainOptions,
        started: float,
        planned: float,
        command_extra: dict[str, Any],
    ) -> dict[str, Any]:
        seed_count = sum(len(ids) for ids in seed.seed_groups().values())
        command = {
            "base_id": plan.base_id,
            "seed_table_id": plan.seed_table_id,
            "change_type": plan.change_type,
            "seed_record_count": seed_count,
            "all_records": plan.all_records,
            "changed_field_ids": plan.changed_field_ids,
            "plan_hash": plan.plan_hash,
            "graph_version": plan.graph_version,
            **command_extra,
        }
        result: dict[str, Any] = {
            "command": command,
            "plan": {
                "steps": [step.model_dump() for step in plan.steps],
                "coarse": plan.coarse,
                "estimated_rows": plan.estimated_rows,
            },
            "complexity": assess_complexity(plan, graph, seed_count),
        }
        if options.include_graph:
            result["dependency_graph"] = {
                "edges": plan.edges,
                "unresolved": list(graph.unresolved),
                "depth": graph.depth(),
                "version": graph.version,
            }
        if options.include_sql:
            result["sql"] = [
                {
                    "table_id": step.table_id,
                    "field_id": step.field_id,
                    "statements": self.records.describe_step_statements(
                        step.table_id, step.field_id, self._link_field(graph, step.table_id, step.field_id)
                    ),
                }
                for step in plan.steps
            ]
        if options.include_locks:
            result["locks"] = self._lock_footprint(plan, graph)

        analyzed = planned
        if options.analyze:
            with self.db.rollback_only():
                step_results = self.executor.execute(plan, graph)
            analyzed = time.perf_counter()
            result["analysis"] = [
                {
                    "table_id": item["table_id"],
                    "field_id": item["field_id"],
                    "evaluated": item["evaluated"],
                    "changed": len(item["changed_record_ids"]),
                }
                for item in step_results
            ]
        finished = time.perf_counter()
        result["timing"] = {
            "planning_ms": round((planned - started) * 1000, 3),
            "analyze_ms": round((analyzed - planned) * 1000, 3) if options.analyze else None,
            "total_ms": round((finished - started) * 1000, 3),
        }
        return result

    def _link_field(self, graph: FieldDependencyGraph, table_id: str, field_id: str) -> str:
        definition = graph.definition(FieldNode(table_id, field_id))
        if isinstance(definition, (LookupField, RollupField)):
            return definition.link_field_id
        return ""

    def _lock_footprint(self, plan: ExecutionPlanV1, graph: FieldDependencyGraph) -> dict[str, Any]:
        writes: dict[str, dict[str, Any]] = {}
        reads: set[str] = set()
        for step in plan.steps:
            entry = writes.setdefault(
                step.table_id, {"table_id": step.table_id, "fields": [], "records": 0, "all_records": False}
            )
            entry["fields"].append(step.field_id)
            if step.all_records:
                entry["all_records"] = True
            else:
                entry["records"] += len(step.record_ids)
            definition = graph.definition(FieldNode(step.table_id, step.field_id))
            if isinstance(definition, (LookupField, RollupField)):
                link = graph.definition(FieldNode(step.table_id, definition.link_field_id))
                if isinstance(link, LinkField):
                    reads.add(link.foreign_table_id)
        return {
            "database": "BEGIN IMMEDIATE (single writer for the duration of the task)",
            "outbox_row": "outbox_tasks row held via locked_by/locked_at lease",
            "writes": sorted(writes.values(), key=lambda item: item["table_id"]),
            "reads": sorted(reads),
        }
