"""Application facade wiring storage, planning, the outbox and operator actions."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from fieldflow.engine.evaluator import BasicFieldEvaluator, FieldEvaluator
from fieldflow.engine.executor import PlanExecutor
from fieldflow.engine.fields import FieldDefinition, FieldNode, is_computed, node_of
from fieldflow.engine.planner import ChangePlanner
from fieldflow.explain.assessor import ExplainService
from fieldflow.models.contracts import ChangeSeed, ExplainOptions
from fieldflow.outbox.dead_letter import DeadLetterService
from fieldflow.outbox.enqueuer import OutboxEnqueuer
from fieldflow.outbox.events import EventSink, build_event_sink_from_env
from fieldflow.outbox.operator import Dispatcher, OperatorService, thread_dispatcher
from fieldflow.outbox.worker import ComputedUpdateWorker, WorkerLoop, default_worker_id
from fieldflow.shared.settings import PropagationSettings
from fieldflow.store.db import PropagationDB
from fieldflow.store.records import SQLiteRecordStore
from fieldflow.store.schema import SchemaRegistry
from fieldflow.store.schema_file import load_schema_file

logger = logging.getLogger(__name__)


class FieldflowApp:
    """Thin callable facade over the propagation engine.

    Record and field mutations are written together with their outbox task in
    one transaction; recomputation happens later in ``run_worker_once`` or a
    ``WorkerLoop``.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        settings: PropagationSettings | None = None,
        events: EventSink | None = None,
        evaluator: FieldEvaluator | None = None,
        dispatcher: Dispatcher | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings or PropagationSettings.from_env()
        self.db = PropagationDB(db_path)
        self.schema = SchemaRegistry(self.db)
        self.records = SQLiteRecordStore(self.db)
        self.planner = ChangePlanner(
            self.schema, self.records, plan_max_records=self.settings.plan_max_records
        )
        self.executor = PlanExecutor(self.records, evaluator or BasicFieldEvaluator())
        self.events = events or build_event_sink_from_env(self.db)
        self.enqueuer = OutboxEnqueuer(self.db, self.schema, max_attempts=self.settings.max_attempts)
        self.worker = ComputedUpdateWorker(
            self.db,
            self.schema,
            self.planner,
            self.executor,
            self.enqueuer,
            self.events,
            lease_seconds=self.settings.lease_seconds,
            backoff_base_seconds=self.settings.backoff_base_seconds,
            backoff_max_seconds=self.settings.backoff_max_seconds,
            backoff_jitter=self.settings.backoff_jitter,
            max_stage_depth=self.settings.max_stage_depth,
        )
        self.worker_id = worker_id or default_worker_id()
        self.dead_letters = DeadLetterService(self.db)
        self.operator = OperatorService(
            self.db,
            self.dead_letters,
            self.events,
            dispatcher=dispatcher or thread_dispatcher(self._dispatch_run),
        )
        self.explainer = ExplainService(
            self.db, self.schema, self.planner, self.executor, self.records
        )

    # schema

    def save_field(self, base_id: str, definition: FieldDefinition) -> dict[str, Any]:
        """Persist a field; computed or converted fields schedule a full-table recompute."""

        with self.db.transaction():
            result = self.schema.save_field(base_id, definition)
            change_type = ""
            if result["created"] and is_computed(definition):
                change_type = "fieldCreate"
            elif result["converted"]:
                change_type = "fieldConvert"
            if change_type:
                result["task"] = self.enqueuer.enqueue(
                    ChangeSeed(
                        base_id=base_id,
                        seed_table_id=definition.table_id,
                        change_type=change_type,
                        all_records=True,
                        changed_field_ids=[definition.field_id],
                    )
                )
        return result

    def delete_field(self, base_id: str, table_id: str, field_id: str) -> dict[str, Any]:
        """Remove a field and schedule a recompute of the computed fields that used it.

        Those fields now hold dangling references, so their tasks dead-letter
        with ``dangling_reference`` instead of leaving stale values behind.
        """

        with self.db.transaction():
            graph = self.schema.load_graph(base_id)
            dependents: dict[str, list[str]] = {}
            for node in graph.dependents(FieldNode(table_id, field_id)):
                definition = graph.definition(node)
                if definition is not None and is_computed(definition):
                    dependents.setdefault(node.table_id, []).append(node.field_id)
            deleted = self.schema.delete_field(base_id, table_id, field_id)
            tasks: list[dict[str, Any]] = []
            if deleted:
                for dependent_table_id, field_ids in sorted(dependents.items()):
                    tasks.append(
                        self.enqueuer.enqueue(
                            ChangeSeed(
                                base_id=base_id,
                                seed_table_id=dependent_table_id,
                                change_type="fieldConvert",
                                all_records=True,
                                changed_field_ids=field_ids,
                            )
                        )
                    )
                self.db.append_audit_event(
                    "field_deleted",
                    {
                        "base_id": base_id,
                        "field": f"{table_id}.{field_id}",
                        "dependents": {key: sorted(ids) for key, ids in sorted(dependents.items())},
                        "task_ids": [task["task_id"] for task in tasks],
                    },
                )
        return {"deleted": deleted, "tasks": tasks}

    def apply_schema_file(self, path: Path) -> dict[str, Any]:
        base_id, definitions = load_schema_file(path)
        saved = [self.save_field(base_id, definition) for definition in definitions]
        logger.info("schema file applied", extra={"base_id": base_id, "fields": len(saved)})
        return {"base_id": base_id, "fields": saved}

    # write path

    def create_record(
        self, base_id: str, table_id: str, record_id: str, fields: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        with self.db.transaction():
            record = self.records.insert_record(table_id, record_id, fields)
            task = self.enqueuer.enqueue(
                ChangeSeed(
                    base_id=base_id,
                    seed_table_id=table_id,
                    change_type="recordCreate",
                    record_ids=[record_id],
                )
            )
        return {"record": record, "task": task}

    def update_record(
        self, base_id: str, table_id: str, record_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        with self.db.transaction():
            record = self.records.update_record(table_id, record_id, fields)
            task = self.enqueuer.enqueue(
                ChangeSeed(
                    base_id=base_id,
                    seed_table_id=table_id,
                    change_type="recordUpdate",
                    record_ids=[record_id],
                    changed_field_ids=sorted(fields),
                )
            )
        return {"record": record, "task": task}

    def delete_record(self, base_id: str, table_id: str, record_id: str) -> dict[str, Any]:
        with self.db.transaction():
            deleted = self.records.delete_record(table_id, record_id)
            task = None
            if deleted:
                task = self.enqueuer.enqueue(
                    ChangeSeed(
                        base_id=base_id,
                        seed_table_id=table_id,
                        change_type="recordDelete",
                        record_ids=[record_id],
                    )
                )
        return {"deleted": deleted, "task": task}

    def record_changed(self, seed: ChangeSeed, *, now: datetime | None = None) -> dict[str, Any]:
        return self.enqueuer.enqueue(seed, now=now)

    # worker

    def run_worker_once(self, limit: int | None = None, now: datetime | None = None) -> dict[str, Any]:
        return self.worker.run_once(
            self.worker_id, limit or self.settings.worker_batch_limit, now=now
        )

    def drain(self, max_rounds: int = 100, now: datetime | None = None) -> dict[str, int]:
        """Run the worker until no due task is left (or ``max_rounds`` is hit)."""

        totals = {"rounds": 0, "claimed": 0, "completed": 0, "retried": 0, "dead_lettered": 0}
        for _ in range(max_rounds):
            summary = self.run_worker_once(now=now)
            totals["rounds"] += 1
            for key in ("claimed", "completed", "retried", "dead_lettered"):
                totals[key] += int(summary[key])
            if summary["claimed"] == 0:
                break
        return totals

    def worker_loop(self) -> WorkerLoop:
        return WorkerLoop(
            self.worker,
            worker_id=self.worker_id,
            limit=self.settings.worker_batch_limit,
            poll_seconds=self.settings.worker_poll_seconds,
        )

    def _dispatch_run(self) -> None:
        try:
            self.run_worker_once()
        except Exception:
            logger.exception("dispatched worker run failed", extra={"worker_id": self.worker_id})

    # read side

    def explain_seed(
        self, seed: ChangeSeed, options: ExplainOptions | dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return self.explainer.explain_seed(seed, options)

    def explain_task(
        self, task_id: str, options: ExplainOptions | dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return self.explainer.explain_task(task_id, options)

    def field_graph(self, base_id: str) -> dict[str, Any]:
        graph = self.schema.load_graph(base_id)
        return {
            "base_id": base_id,
            "version": graph.version,
            "fields": [str(node_of(definition)) for definition in graph.definitions.values()],
            "edges": [edge.to_dict() for _, edge in sorted(graph.edges.items())],
            "unresolved": graph.unresolved,
            "depth": graph.depth(),
        }

    def list_audit_events(
        self, event_type: str | None = None, task_id: str | None = None
    ) -> list[dict[str, Any]]:
        return self.db.list_audit_events(event_type=event_type, task_id=task_id)
