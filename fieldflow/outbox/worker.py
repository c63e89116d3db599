"""Claim, execute, retry and dead-letter outbox tasks."""

from __future__ import annotations

import logging
import os
import random
import socket
import threading
import traceback
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError

from fieldflow.engine.errors import (
    FatalPlanError,
    FieldflowError,
    TransientPropagationError,
    describe_error,
    is_fatal,
)
from fieldflow.engine.executor import PlanExecutor
from fieldflow.engine.graph import FieldDependencyGraph
from fieldflow.engine.planner import ChangePlanner, GraphSource
from fieldflow.models.contracts import ALL_RECORDS, ChangeSeed, ExecutionPlanV1
from fieldflow.outbox.enqueuer import OutboxEnqueuer
from fieldflow.outbox.events import TASK_COMPLETED, TASK_FAILED, TASK_PROCESSING, EventSink
from fieldflow.store.db import PropagationDB, lease_cutoff, to_iso, utc_now

logger = logging.getLogger(__name__)

MAX_BACKOFF_EXPONENT = 32


class LeaseLostError(FieldflowError):
    """The task was reclaimed by another worker before this one finished."""

    reason_code = "lease_lost"


def compute_backoff(
    attempts: int,
    *,
    base_seconds: float = 5.0,
    max_seconds: float = 300.0,
    jitter_ratio: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempts`` (1-based).

    ``min(base * 2**(attempts-1), max)`` scaled by a factor drawn uniformly from
    ``[1 - jitter_ratio, 1 + jitter_ratio]``.
    """

    exponent = min(max(int(attempts), 1) - 1, MAX_BACKOFF_EXPONENT)
    delay = min(base_seconds * (2**exponent), max_seconds)
    if jitter_ratio:
        delay *= 1 + jitter_ratio * (2 * rand() - 1)
    return max(delay, 0.0)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def seed_from_task(task: dict[str, Any], seeds: dict[str, list[str]]) -> ChangeSeed:
    seed_ids = seeds.get(task["seed_table_id"], [])
    return ChangeSeed(
        base_id=task["base_id"],
        seed_table_id=task["seed_table_id"],
        change_type=task["change_type"],
        record_ids=[record_id for record_id in seed_ids if record_id != ALL_RECORDS],
        all_records=ALL_RECORDS in seed_ids,
        changed_field_ids=task["changed_field_ids"],
        extra_seeds={
            table_id: record_ids
            for table_id, record_ids in seeds.items()
            if table_id != task["seed_table_id"]
        },
    )


def load_stored_plan(task: dict[str, Any]) -> ExecutionPlanV1 | None:
    if task.get("plan") is None:
        return None
    try:
        return ExecutionPlanV1.model_validate(task["plan"])
    except ValidationError as exc:
        raise FatalPlanError(
            f"stored plan for task {task['id']} is malformed: {exc.error_count()} error(s)",
            reason_code="malformed_plan",
        ) from exc


def plan_is_current(plan: ExecutionPlanV1, seed: ChangeSeed, graph: FieldDependencyGraph) -> bool:
    groups = seed.seed_groups()
    return (
        plan.graph_version == graph.version
        and plan.base_id == seed.base_id
        and plan.change_type == seed.change_type
        and plan.seed_record_ids == seed.normalized_record_ids()
        and plan.extra_seeds
        == {table_id: ids for table_id, ids in groups.items() if table_id != seed.seed_table_id}
        and plan.changed_field_ids == sorted(set(seed.changed_field_ids))
    )


class ComputedUpdateWorker:
    def __init__(
        self,
        db: PropagationDB,
        graphs: GraphSource,
        planner: ChangePlanner,
        executor: PlanExecutor,
        enqueuer: OutboxEnqueuer,
        events: EventSink,
        *,
        lease_seconds: float = 120,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        backoff_jitter: float = 0.2,
        max_stage_depth: int = 50,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.db = db
        self.graphs = graphs
        self.planner = planner
        self.executor = executor
        self.enqueuer = enqueuer
        self.events = events
        self.lease_seconds = lease_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.backoff_jitter = backoff_jitter
        self.max_stage_depth = max_stage_depth
        self.rand = rand

    def run_once(
        self,
        worker_id: str,
        limit: int = 10,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Claim up to ``limit`` due tasks and drive each to a terminal transition."""

        now = now or utc_now()
        now_iso = to_iso(now)
        summary: dict[str, Any] = {
            "worker_id": worker_id,
            "claimed": 0,
            "completed": 0,
            "retried": 0,
            "dead_lettered": 0,
            "lost": 0,
            "follow_ups": 0,
        }
        cutoff = lease_cutoff(now, self.lease_seconds)
        for task_id in self.db.list_claim_candidates(now=now_iso, lease_cutoff=cutoff, limit=limit):
            task = self.db.claim_task(task_id, worker_id=worker_id, now=now_iso, lease_cutoff=cutoff)
            if task is None:
                continue
            summary["claimed"] += 1
            outcome, follow_ups = self._process(task, worker_id, now)
            summary[outcome] += 1
            summary["follow_ups"] += follow_ups
        return summary

    def _process(self, task: dict[str, Any], worker_id: str, now: datetime) -> tuple[str, int]:
        self.events.emit(
            TASK_PROCESSING,
            {
                "task_id": task["id"],
                "worker_id": worker_id,
                "attempts": task["attempts"],
                "reclaimed": task["reclaimed"],
            },
        )
        if task["reclaimed"] and task["attempts"] >= task["max_attempts"]:
            exc = TransientPropagationError(
                f"lease expired {task['attempts']} time(s) for task {task['id']}",
                reason_code="lease_expired",
            )
            return self._dead_letter(
                task,
                worker_id,
                now,
                exc,
                attempts=task["attempts"],
                reason="lease_expired",
            ), 0
        try:
            follow_ups = self._execute(task, worker_id, now)
        except LeaseLostError:
            logger.warning("task lease lost", extra={"task_id": task["id"], "worker_id": worker_id})
            return "lost", 0
        except Exception as exc:
            return self._handle_failure(task, worker_id, now, exc), 0
        self.events.emit(
            TASK_COMPLETED,
            {"task_id": task["id"], "worker_id": worker_id, "follow_ups": follow_ups},
        )
        return "completed", follow_ups

    def _execute(self, task: dict[str, Any], worker_id: str, now: datetime) -> int:
        seed = seed_from_task(task, self.db.get_task_seeds(task["id"]))
        graph = self.graphs.load_graph(task["base_id"])
        plan = load_stored_plan(task)
        if plan is None or not plan_is_current(plan, seed, graph):
            plan = self.planner.plan(seed, graph)
            self.db.store_task_plan(
                task["id"],
                worker_id=worker_id,
                plan=plan.model_dump(),
                plan_hash=plan.plan_hash,
                graph_version=plan.graph_version,
                now=to_iso(now),
            )

        follow_ups = 0
        with self.db.transaction():
            results = self.executor.execute(plan, graph)
            uncovered = self.executor.uncovered_changes(plan, graph, results)
            if not self.db.complete_task(task["id"], worker_id=worker_id):
                raise LeaseLostError(f"task {task['id']} is no longer held by {worker_id}")
            if uncovered["seeds"]:
                follow_ups = self._enqueue_follow_up(task, uncovered, now)
        logger.info(
            "task completed",
            extra={
                "task_id": task["id"],
                "plan_hash": plan.plan_hash,
                "steps": len(plan.steps),
                "changed": sum(len(result["changed_record_ids"]) for result in results),
            },
        )
        return follow_ups

    def _enqueue_follow_up(self, task: dict[str, Any], uncovered: dict[str, Any], now: datetime) -> int:
        stage_depth = task["stage_depth"] + 1
        if stage_depth > self.max_stage_depth:
            logger.warning(
                "follow-up stage depth exceeded",
                extra={"task_id": task["id"], "stage_depth": stage_depth},
            )
            self.db.append_audit_event(
                "follow_up_depth_exceeded",
                {"task_id": task["id"], "stage_depth": stage_depth, "seeds": uncovered["seeds"]},
            )
            return 0
        tables = list(uncovered["seeds"])
        seed = ChangeSeed(
            base_id=task["base_id"],
            seed_table_id=tables[0],
            change_type="recordUpdate",
            record_ids=uncovered["seeds"][tables[0]],
            changed_field_ids=uncovered["changed_field_ids"],
            extra_seeds={table_id: uncovered["seeds"][table_id] for table_id in tables[1:]},
        )
        self.enqueuer.enqueue(seed, now=now, stage_depth=stage_depth)
        return 1

    def _handle_failure(
        self, task: dict[str, Any], worker_id: str, now: datetime, exc: Exception
    ) -> str:
        attempts = task["attempts"] + 1
        if is_fatal(exc):
            return self._dead_letter(task, worker_id, now, exc, attempts=attempts, reason="fatal_plan_error")
        if attempts >= task["max_attempts"]:
            return self._dead_letter(
                task, worker_id, now, exc, attempts=attempts, reason="retry_budget_exhausted"
            )
        delay = compute_backoff(
            attempts,
            base_seconds=self.backoff_base_seconds,
            max_seconds=self.backoff_max_seconds,
            jitter_ratio=self.backoff_jitter,
            rand=self.rand,
        )
        last_error = describe_error(exc)
        next_run_at = to_iso(now + timedelta(seconds=delay))
        if not self.db.reschedule_task(
            task["id"],
            worker_id=worker_id,
            attempts=attempts,
            last_error=last_error,
            next_run_at=next_run_at,
            now=to_iso(now),
        ):
            return "lost"
        logger.warning(
            "task failed, retry scheduled",
            extra={"task_id": task["id"], "attempts": attempts, "next_run_at": next_run_at, "error": last_error},
        )
        self.events.emit(
            TASK_FAILED,
            {
                "task_id": task["id"],
                "worker_id": worker_id,
                "attempts": attempts,
                "last_error": last_error,
                "retrying": True,
                "next_run_at": next_run_at,
            },
        )
        return "retried"

    def _dead_letter(
        self,
        task: dict[str, Any],
        worker_id: str,
        now: datetime,
        exc: BaseException,
        *,
        attempts: int,
        reason: str,
    ) -> str:
        last_error = describe_error(exc)
        trace_data = {
            "reason": reason,
            "reason_code": getattr(exc, "reason_code", ""),
            "error_type": type(exc).__name__,
            "message": str(exc),
            "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            "worker_id": worker_id,
            "graph_version": task["graph_version"],
            "stage_depth": task["stage_depth"],
        }
        entry = self.db.dead_letter_task(
            task["id"],
            worker_id=worker_id,
            attempts=attempts,
            last_error=last_error,
            trace_data=trace_data,
            now=to_iso(now),
        )
        if entry is None:
            return "lost"
        logger.error(
            "task dead-lettered",
            extra={"task_id": task["id"], "reason": reason, "attempts": attempts, "error": last_error},
        )
        self.events.emit(
            TASK_FAILED,
            {
                "task_id": task["id"],
                "worker_id": worker_id,
                "attempts": attempts,
                "last_error": last_error,
                "retrying": False,
                "reason": reason,
            },
        )
        return "dead_lettered"


class WorkerLoop:
    """Poll ``run_once`` until stopped; sleeps only when nothing was claimed."""

    def __init__(
        self,
        worker: ComputedUpdateWorker,
        *,
        worker_id: str | None = None,
        limit: int = 10,
        poll_seconds: float = 2.0,
    ) -> None:
        self.worker = worker
        self.worker_id = worker_id or default_worker_id()
        self.limit = limit
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self, max_iterations: int | None = None) -> dict[str, int]:
        totals = {"iterations": 0, "claimed": 0, "completed": 0, "retried": 0, "dead_lettered": 0}
        while not self._stop.is_set():
            if max_iterations is not None and totals["iterations"] >= max_iterations:
                break
            totals["iterations"] += 1
            try:
                summary = self.worker.run_once(self.worker_id, self.limit)
            except Exception:
                logger.exception("worker iteration failed", extra={"worker_id": self.worker_id})
                self._stop.wait(self.poll_seconds)
                continue
            for key in ("claimed", "completed", "retried", "dead_lettered"):
                totals[key] += int(summary[key])
            if summary["claimed"] == 0:
                self._stop.wait(self.poll_seconds)
        return totals
