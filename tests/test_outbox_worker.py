import json
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from fieldflow.app import FieldflowApp
from fieldflow.engine.errors import TransientPropagationError
from fieldflow.engine.evaluator import BasicFieldEvaluator
from fieldflow.engine.fields import BaseField, FormulaField, LinkField, RollupField
from fieldflow.models.contracts import ChangeSeed
from fieldflow.outbox.events import InMemoryEventSink
from fieldflow.outbox.worker import compute_backoff
from fieldflow.shared.settings import PropagationSettings
from fieldflow.store.db import PropagationDB, lease_cutoff, to_iso, utc_now

BASE = "bse1"
ITEMS = "tblItems"
ORDERS = "tblOrders"


class FlakyEvaluator(BasicFieldEvaluator):
    def __init__(self) -> None:
        self.failing = False

    def evaluate(self, definition, record, linked):
        if self.failing:
            raise TransientPropagationError("storage unavailable")
        return super().evaluate(definition, record, linked)


def _bare_app(db_path: str = ":memory:", evaluator=None, **overrides) -> FieldflowApp:
    settings = PropagationSettings(
        data_dir=Path("."), sqlite_path=Path(db_path), backoff_jitter=0.0, **overrides
    )
    return FieldflowApp(
        db_path=db_path,
        settings=settings,
        events=InMemoryEventSink(),
        evaluator=evaluator,
        dispatcher=lambda: None,
        worker_id="worker-a",
    )


def _app(db_path: str = ":memory:", evaluator=None, **overrides) -> FieldflowApp:
    app = _bare_app(db_path, evaluator, **overrides)
    app.save_field(BASE, BaseField(ITEMS, "amount"))
    app.save_field(BASE, FormulaField(ITEMS, "doubled", "{amount} * 2"))
    app.save_field(BASE, LinkField(ORDERS, "items", ITEMS))
    app.save_field(BASE, RollupField(ORDERS, "total", "items", "doubled", "sum"))
    app.create_record(BASE, ITEMS, "r1", {"amount": 1})
    app.create_record(BASE, ITEMS, "r2", {"amount": 5})
    app.create_record(BASE, ORDERS, "o1", {"items": ["r1", "r2"]})
    app.create_record(BASE, ORDERS, "o2", {"items": ["r2"]})
    app.create_record(BASE, ORDERS, "o3", {"items": ["r1"]})
    app.drain()
    return app


def _value(app: FieldflowApp, table_id: str, record_id: str, field_id: str) -> Any:
    return app.records.get_record(table_id, record_id)["fields"].get(field_id)


def _update_seed(*record_ids: str) -> ChangeSeed:
    return ChangeSeed(
        base_id=BASE,
        seed_table_id=ITEMS,
        change_type="recordUpdate",
        record_ids=list(record_ids),
        changed_field_ids=["amount"],
    )


def test_initial_drain_computes_every_field() -> None:
    app = _app()

    assert _value(app, ITEMS, "r1", "doubled") == 2
    assert _value(app, ITEMS, "r2", "doubled") == 10
    assert _value(app, ORDERS, "o1", "total") == 12
    assert _value(app, ORDERS, "o2", "total") == 10
    assert _value(app, ORDERS, "o3", "total") == 2
    assert app.db.list_tasks() == []


def test_record_update_propagates_across_links() -> None:
    app = _app()
    events = app.events

    result = app.update_record(BASE, ITEMS, "r1", {"amount": 4})
    assert result["task"]["merged"] is False
    summary = app.run_worker_once()

    assert summary["claimed"] == 1
    assert summary["completed"] == 1
    assert _value(app, ITEMS, "r1", "doubled") == 8
    assert _value(app, ORDERS, "o1", "total") == 18
    assert _value(app, ORDERS, "o3", "total") == 8
    assert _value(app, ORDERS, "o2", "total") == 10
    assert app.db.list_tasks() == []
    completed = events.of_type("taskCompleted")
    assert completed[-1]["task_id"] == result["task"]["task_id"]


def test_duplicate_updates_coalesce_into_one_task() -> None:
    app = _app()

    first = app.update_record(BASE, ITEMS, "r1", {"amount": 3})
    second = app.update_record(BASE, ITEMS, "r1", {"amount": 4})

    assert second["task"]["merged"] is True
    assert second["task"]["task_id"] == first["task"]["task_id"]
    tasks = app.db.list_tasks()
    assert len(tasks) == 1
    assert tasks[0]["seed_count"] == 1
    assert app.list_audit_events(event_type="outbox_task_merged")[0]["payload"]["seeds_added"] == 0

    app.drain()
    assert _value(app, ORDERS, "o1", "total") == 18


def test_merge_skips_tasks_a_worker_already_holds() -> None:
    app = _app()
    now = utc_now()
    first = app.record_changed(_update_seed("r1"), now=now)
    claimed = app.db.claim_task(
        first["task_id"], worker_id="worker-b", now=to_iso(now), lease_cutoff=lease_cutoff(now, 120)
    )
    assert claimed is not None

    second = app.record_changed(_update_seed("r1"), now=now)

    assert second["merged"] is False
    assert second["task_id"] != first["task_id"]


def test_transient_failures_back_off_then_dead_letter() -> None:
    evaluator = FlakyEvaluator()
    app = _app(evaluator=evaluator, max_attempts=3)
    evaluator.failing = True
    task_id = app.update_record(BASE, ITEMS, "r1", {"amount": 4})["task"]["task_id"]
    t0 = utc_now()

    first = app.run_worker_once(now=t0 + timedelta(seconds=1))
    assert first["retried"] == 1
    task = app.db.get_task(task_id)
    assert task["status"] == "pending"
    assert task["attempts"] == 1
    assert task["last_error"].startswith("transient_failure:")
    assert task["next_run_at"] == to_iso(t0 + timedelta(seconds=6))
    assert app.run_worker_once(now=t0 + timedelta(seconds=2))["claimed"] == 0

    assert app.run_worker_once(now=t0 + timedelta(seconds=1000))["retried"] == 1
    assert app.db.get_task(task_id)["attempts"] == 2
    last = app.run_worker_once(now=t0 + timedelta(seconds=2000))
    assert last["dead_lettered"] == 1

    assert app.db.get_task(task_id) is None
    entry = app.dead_letters.get(task_id)
    assert entry["attempts"] == 3
    assert entry["status"] == "failed"
    assert entry["last_error"].startswith("transient_failure:")
    assert entry["seed_record_ids"] == {ITEMS: ["r1"]}
    assert entry["trace_data"]["reason"] == "retry_budget_exhausted"
    assert entry["trace_data"]["error_type"] == "TransientPropagationError"
    assert "storage unavailable" in entry["trace_data"]["traceback"]
    failed = app.events.of_type("taskFailed")
    assert [payload["retrying"] for payload in failed] == [True, True, False]

    evaluator.failing = False
    retried = app.operator.retry_dead_letter(task_id)
    assert retried["id"] != task_id
    assert retried["attempts"] == 0
    assert app.dead_letters.get(task_id) is None
    app.drain()
    assert _value(app, ORDERS, "o1", "total") == 18


def test_fatal_formula_error_dead_letters_without_retry() -> None:
    app = _app()
    app.schema.save_field(BASE, FormulaField(ITEMS, "broken", "{amount} +* 2"))
    task_id = app.update_record(BASE, ITEMS, "r1", {"amount": 4})["task"]["task_id"]

    summary = app.run_worker_once()

    assert summary["dead_lettered"] == 1
    entry = app.dead_letters.get(task_id)
    assert entry["attempts"] == 1
    assert entry["last_error"].startswith("formula_error:")
    assert entry["trace_data"]["reason"] == "fatal_plan_error"
    assert _value(app, ITEMS, "r1", "doubled") == 2


def test_expired_lease_is_reclaimed_with_an_extra_attempt() -> None:
    app = _app()
    t0 = utc_now()
    task_id = app.record_changed(_update_seed("r1"), now=t0)["task_id"]
    assert app.db.claim_task(task_id, worker_id="dead-worker", now=to_iso(t0), lease_cutoff=lease_cutoff(t0, 120))

    assert app.run_worker_once(now=t0 + timedelta(seconds=60))["claimed"] == 0
    summary = app.run_worker_once(now=t0 + timedelta(seconds=121))

    assert summary["claimed"] == 1
    assert summary["completed"] == 1
    processing = app.events.of_type("taskProcessing")[-1]
    assert processing["task_id"] == task_id
    assert processing["reclaimed"] is True
    assert processing["attempts"] == 1
    assert app.db.complete_task(task_id, worker_id="dead-worker") is False


def test_claim_exactly_at_lease_age_is_not_reclaimed() -> None:
    app = _app()
    t0 = utc_now()
    task_id = app.record_changed(_update_seed("r1"), now=t0)["task_id"]
    app.db.claim_task(task_id, worker_id="slow-worker", now=to_iso(t0), lease_cutoff=lease_cutoff(t0, 120))
    boundary = t0 + timedelta(seconds=120)
    past = boundary + timedelta(microseconds=1)

    assert app.db.claim_task(
        task_id, worker_id="fresh-worker", now=to_iso(boundary), lease_cutoff=lease_cutoff(boundary, 120)
    ) is None
    assert app.run_worker_once(now=boundary)["claimed"] == 0
    reclaimed = app.db.claim_task(
        task_id, worker_id="fresh-worker", now=to_iso(past), lease_cutoff=lease_cutoff(past, 120)
    )
    assert reclaimed is not None
    assert reclaimed["locked_by"] == "fresh-worker"


def test_reclaim_past_attempt_budget_dead_letters() -> None:
    app = _app(max_attempts=1)
    t0 = utc_now()
    task_id = app.record_changed(_update_seed("r1"), now=t0)["task_id"]
    app.db.claim_task(task_id, worker_id="dead-worker", now=to_iso(t0), lease_cutoff=lease_cutoff(t0, 120))

    summary = app.run_worker_once(now=t0 + timedelta(seconds=121))

    assert summary["dead_lettered"] == 1
    entry = app.dead_letters.get(task_id)
    assert entry["trace_data"]["reason"] == "lease_expired"
    assert entry["last_error"].startswith("lease_expired:")


def test_stale_worker_cannot_complete_after_reclaim() -> None:
    app = _app()
    t0 = utc_now()
    task_id = app.record_changed(_update_seed("r1"), now=t0)["task_id"]
    app.db.claim_task(task_id, worker_id="slow-worker", now=to_iso(t0), lease_cutoff=lease_cutoff(t0, 120))
    later = t0 + timedelta(seconds=121)
    reclaimed = app.db.claim_task(
        task_id, worker_id="fresh-worker", now=to_iso(later), lease_cutoff=lease_cutoff(later, 120)
    )

    assert reclaimed is not None
    assert reclaimed["locked_by"] == "fresh-worker"
    assert app.db.complete_task(task_id, worker_id="slow-worker") is False
    assert app.db.complete_task(task_id, worker_id="fresh-worker") is True


def test_concurrent_claims_never_hand_out_a_task_twice(tmp_path: Path) -> None:
    db_path = tmp_path / "claims.sqlite"
    setup = PropagationDB(db_path)
    now = utc_now()
    for index in range(20):
        setup.insert_task(
            base_id=BASE,
            seed_table_id=ITEMS,
            change_type="recordUpdate",
            changed_field_ids=["amount"],
            plan_hash=f"hash-{index}",
            graph_version=1,
            seeds={ITEMS: [f"r{index}"]},
            max_attempts=8,
            now=to_iso(now),
        )
    task_ids = [task["id"] for task in setup.list_tasks(limit=100)]
    barrier = threading.Barrier(6)
    claimed: list[str] = []
    lock = threading.Lock()

    connections = [PropagationDB(db_path) for _ in range(6)]

    def claim_all(worker_index: int) -> None:
        db = connections[worker_index]
        barrier.wait()
        for task_id in task_ids:
            task = db.claim_task(
                task_id,
                worker_id=f"worker-{worker_index}",
                now=to_iso(now),
                lease_cutoff=lease_cutoff(now, 120),
            )
            if task is not None:
                with lock:
                    claimed.append(task_id)

    threads = [threading.Thread(target=claim_all, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    for db in connections:
        db.close()

    assert len(claimed) == 20
    assert len(set(claimed)) == 20


def test_uncovered_changes_enqueue_a_follow_up_task() -> None:
    app = _app()
    app.records.update_record(ITEMS, "r1", {"amount": 4})
    task_id = app.record_changed(_update_seed("r1"))["task_id"]
    plan = app.planner.plan(_update_seed("r1"))
    app.records.insert_record(ORDERS, "o4", {"items": ["r1"]})
    with app.db.transaction():
        app.db.conn.execute(
            "UPDATE outbox_tasks SET plan_json = ? WHERE id = ?",
            (json.dumps(plan.model_dump()), task_id),
        )

    summary = app.run_worker_once()

    assert summary["completed"] == 1
    assert summary["follow_ups"] == 1
    follow_up = app.db.list_tasks()[0]
    assert follow_up["stage_depth"] == 1
    assert follow_up["changed_field_ids"] == ["doubled"]
    assert _value(app, ORDERS, "o4", "total") is None

    app.drain()
    assert _value(app, ORDERS, "o4", "total") == 8


def test_follow_up_depth_limit_is_audited_instead_of_enqueued() -> None:
    app = _app(max_stage_depth=0)
    app.records.update_record(ITEMS, "r1", {"amount": 4})
    task_id = app.record_changed(_update_seed("r1"))["task_id"]
    plan = app.planner.plan(_update_seed("r1"))
    app.records.insert_record(ORDERS, "o4", {"items": ["r1"]})
    with app.db.transaction():
        app.db.conn.execute(
            "UPDATE outbox_tasks SET plan_json = ? WHERE id = ?",
            (json.dumps(plan.model_dump()), task_id),
        )

    summary = app.run_worker_once()

    assert summary["follow_ups"] == 0
    assert app.db.list_tasks() == []
    exceeded = app.list_audit_events(event_type="follow_up_depth_exceeded")
    assert exceeded[0]["payload"]["task_id"] == task_id
    assert exceeded[0]["payload"]["seeds"] == {ITEMS: ["r1"]}


def test_re_executing_a_plan_writes_nothing() -> None:
    app = _app()
    graph = app.schema.load_graph(BASE)
    plan = app.planner.plan(_update_seed("r1", "r2"), graph)

    results = app.executor.execute(plan, graph)

    assert all(result["changed_record_ids"] == [] for result in results)
    assert [result["evaluated"] for result in results] == [2, 3]


def test_record_delete_recomputes_rollups_without_the_record() -> None:
    app = _app()

    result = app.delete_record(BASE, ITEMS, "r2")
    app.drain()

    assert result["deleted"] is True
    assert _value(app, ORDERS, "o1", "total") == 2
    assert _value(app, ORDERS, "o2", "total") == 0
    assert app.delete_record(BASE, ITEMS, "r2") == {"deleted": False, "task": None}


def test_field_convert_recomputes_the_field_and_its_dependents() -> None:
    app = _app()

    saved = app.save_field(BASE, FormulaField(ITEMS, "doubled", "{amount} * 3"))
    app.drain()

    assert saved["converted"] is True
    assert saved["task"]["merged"] is False
    assert _value(app, ITEMS, "r1", "doubled") == 3
    assert _value(app, ITEMS, "r2", "doubled") == 15
    assert _value(app, ORDERS, "o1", "total") == 18
    assert _value(app, ORDERS, "o3", "total") == 3


def test_deleting_a_field_schedules_its_dependents() -> None:
    app = _app()

    result = app.delete_field(BASE, ITEMS, "amount")
    summary = app.drain()

    assert result["deleted"] is True
    task_id = result["tasks"][0]["task_id"]
    assert summary["dead_lettered"] == 1
    entry = app.dead_letters.get(task_id)
    assert entry["last_error"].startswith("dangling_reference:")
    audit = app.list_audit_events(event_type="field_deleted")
    assert audit[0]["payload"]["dependents"] == {ITEMS: ["doubled"]}
    assert audit[0]["payload"]["task_ids"] == [task_id]


def test_deleting_a_leaf_field_enqueues_nothing() -> None:
    app = _app()

    assert app.delete_field(BASE, ORDERS, "total") == {"deleted": True, "tasks": []}
    assert app.delete_field(BASE, ORDERS, "total") == {"deleted": False, "tasks": []}
    assert app.db.list_tasks() == []


def test_relinking_a_self_linked_record_recomputes_its_own_rollup() -> None:
    app = _bare_app()
    app.save_field(BASE, LinkField("tblTasks", "parent", "tblTasks"))
    app.save_field(BASE, RollupField("tblTasks", "n", "parent", "parent", "counta"))
    app.create_record(BASE, "tblTasks", "r1", {"parent": []})
    app.create_record(BASE, "tblTasks", "r2", {"parent": ["r1"]})
    app.create_record(BASE, "tblTasks", "r3", {"parent": ["r1"]})
    app.drain()
    assert _value(app, "tblTasks", "r3", "n") == 0

    app.update_record(BASE, "tblTasks", "r3", {"parent": ["r2"]})
    app.drain()

    assert _value(app, "tblTasks", "r3", "n") == 1
    assert _value(app, "tblTasks", "r2", "n") == 0


def _count_linking_lookups(app: FieldflowApp, monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    calls: list[list[str]] = []
    original = app.records.find_linking_records

    def counting(table_id, link_field_id, record_ids):
        calls.append(sorted(record_ids))
        return original(table_id, link_field_id, record_ids)

    monkeypatch.setattr(app.records, "find_linking_records", counting)
    return calls


def test_coarse_task_skips_linking_lookups(monkeypatch: pytest.MonkeyPatch) -> None:
    app = _app()
    for index in range(200):
        app.records.insert_record(ITEMS, f"x{index:03d}", {"amount": index})
    calls = _count_linking_lookups(app, monkeypatch)

    app.save_field(BASE, FormulaField(ITEMS, "doubled", "{amount} * 3"))
    summary = app.drain()

    assert summary["completed"] == 1
    assert calls == []
    assert _value(app, ITEMS, "x199", "doubled") == 597
    assert _value(app, ORDERS, "o1", "total") == 18


def test_follow_up_detection_batches_changed_records(monkeypatch: pytest.MonkeyPatch) -> None:
    app = _app()
    app.records.update_record(ITEMS, "r1", {"amount": 2})
    app.records.update_record(ITEMS, "r2", {"amount": 3})
    app.record_changed(_update_seed("r1", "r2"))
    calls = _count_linking_lookups(app, monkeypatch)

    summary = app.drain()

    assert summary["completed"] == 1
    assert calls == [["r1", "r2"], ["r1", "r2"]]
    assert app.db.list_tasks() == []
    assert _value(app, ORDERS, "o1", "total") == 10


def test_all_records_step_reads_in_pages(monkeypatch: pytest.MonkeyPatch) -> None:
    app = _app()
    for index in range(1200):
        app.records.insert_record(ITEMS, f"x{index:04d}", {"amount": 1})
    batch_sizes: list[int] = []
    original = app.records.get_records

    def recording(table_id, record_ids):
        record_ids = list(record_ids)
        if table_id == ITEMS:
            batch_sizes.append(len(record_ids))
        return original(table_id, record_ids)

    monkeypatch.setattr(app.records, "get_records", recording)
    graph = app.schema.load_graph(BASE)
    plan = app.planner.plan(
        ChangeSeed(
            base_id=BASE,
            seed_table_id=ITEMS,
            change_type="fieldConvert",
            all_records=True,
            changed_field_ids=["doubled"],
        ),
        graph,
    )

    result = app.executor.execute_step(plan.steps[0], graph)

    assert plan.steps[0].all_records is True
    assert result["evaluated"] == 1202
    assert len(result["changed_record_ids"]) == 1200
    assert max(batch_sizes) <= 500
    assert len(batch_sizes) == 3


def test_graph_version_change_replans_stored_plan() -> None:
    app = _app()
    task_id = app.record_changed(_update_seed("r1"))["task_id"]
    stale = app.planner.plan(_update_seed("r1"))
    with app.db.transaction():
        app.db.conn.execute(
            "UPDATE outbox_tasks SET plan_json = ? WHERE id = ?",
            (json.dumps(stale.model_dump()), task_id),
        )
    app.schema.save_field(BASE, FormulaField(ITEMS, "tripled", "{amount} * 3"))

    app.run_worker_once()

    assert _value(app, ITEMS, "r1", "tripled") == 3


@pytest.mark.parametrize(
    ("attempts", "expected"),
    [(1, 5.0), (2, 10.0), (3, 20.0), (7, 300.0), (100, 300.0)],
)
def test_backoff_doubles_and_caps(attempts: int, expected: float) -> None:
    assert compute_backoff(attempts, base_seconds=5, max_seconds=300) == expected


def test_backoff_jitter_stays_within_ratio() -> None:
    assert compute_backoff(2, base_seconds=5, max_seconds=300, jitter_ratio=0.2, rand=lambda: 0.0) == pytest.approx(8.0)
    assert compute_backoff(2, base_seconds=5, max_seconds=300, jitter_ratio=0.2, rand=lambda: 1.0) == pytest.approx(12.0)


def test_worker_loop_stops_after_max_iterations() -> None:
    app = _app()
    app.update_record(BASE, ITEMS, "r1", {"amount": 2})
    loop = app.worker_loop()
    loop.poll_seconds = 0

    totals = loop.run(max_iterations=2)

    assert totals["iterations"] == 2
    assert totals["completed"] == 1
    assert _value(app, ORDERS, "o1", "total") == 14
