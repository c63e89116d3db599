import json
from pathlib import Path

import pytest

from fieldflow.app import FieldflowApp
from fieldflow.engine.errors import NotFoundError
from fieldflow.engine.fields import BaseField, FormulaField, LinkField, RollupField
from fieldflow.explain.assessor import assess_complexity, complexity_level
from fieldflow.models.contracts import ChangeSeed, ExplainOptions
from fieldflow.outbox.events import InMemoryEventSink
from fieldflow.shared.settings import PropagationSettings

BASE = "bse1"
ITEMS = "tblItems"
ORDERS = "tblOrders"


def _app() -> FieldflowApp:
    settings = PropagationSettings(data_dir=Path("."), sqlite_path=Path(":memory:"), backoff_jitter=0.0)
    app = FieldflowApp(settings=settings, events=InMemoryEventSink(), dispatcher=lambda: None)
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


def _seed() -> ChangeSeed:
    return ChangeSeed(
        base_id=BASE,
        seed_table_id=ITEMS,
        change_type="recordUpdate",
        record_ids=["r1"],
        changed_field_ids=["amount"],
    )


def test_explain_without_analyze_renders_every_section() -> None:
    app = _app()
    before = app.records.get_record(ORDERS, "o1")

    result = app.explain_seed(_seed())

    assert set(result) == {"command", "plan", "complexity", "dependency_graph", "sql", "locks", "timing"}
    assert result["command"]["seed_record_count"] == 1
    assert result["command"]["plan_hash"] == _seed().plan_hash(app.schema.graph_version(BASE))
    assert [step["field_id"] for step in result["plan"]["steps"]] == ["doubled", "total"]
    assert result["complexity"]["level"] in {"trivial", "low", "medium", "high", "very_high"}
    assert [factor["name"] for factor in result["complexity"]["factors"]] == [
        "impacted_field_count",
        "link_fanout_multiplier",
        "graph_depth",
        "estimated_row_count",
    ]
    assert result["locks"]["reads"] == [ITEMS]
    assert [entry["table_id"] for entry in result["locks"]["writes"]] == [ITEMS, ORDERS]
    assert any("json_set" in statement for statement in result["sql"][1]["statements"])
    assert result["timing"]["analyze_ms"] is None
    assert app.records.get_record(ORDERS, "o1") == before
    json.dumps(result)


def test_explain_analyze_reports_changes_but_rolls_them_back() -> None:
    app = _app()
    app.records.write_values(ITEMS, "r1", {"amount": 4})
    before_item = app.records.get_record(ITEMS, "r1")
    before_order = app.records.get_record(ORDERS, "o1")

    result = app.explain_seed(_seed(), {"analyze": True})

    assert result["analysis"] == [
        {"table_id": ITEMS, "field_id": "doubled", "evaluated": 1, "changed": 1},
        {"table_id": ORDERS, "field_id": "total", "evaluated": 2, "changed": 2},
    ]
    assert result["timing"]["analyze_ms"] >= 0
    assert app.records.get_record(ITEMS, "r1") == before_item
    assert app.records.get_record(ORDERS, "o1") == before_order
    assert before_item["fields"]["doubled"] == 2


def test_explain_options_toggle_sections() -> None:
    app = _app()

    result = app.explain_seed(
        _seed(), ExplainOptions(includeSql=False, includeGraph=False, includeLocks=False)
    )

    assert "sql" not in result
    assert "dependency_graph" not in result
    assert "locks" not in result
    assert "analysis" not in result


def test_explain_options_accept_snake_case_names() -> None:
    options = ExplainOptions.model_validate({"include_sql": False, "analyze": True})

    assert options.include_sql is False
    assert options.include_graph is True
    assert options.analyze is True


def test_explain_task_rebuilds_plan_for_queued_task() -> None:
    app = _app()
    task_id = app.record_changed(_seed())["task_id"]

    result = app.explain_task(task_id)

    assert result["command"]["task_id"] == task_id
    assert result["command"]["status"] == "pending"
    assert result["command"]["plan_source"] == "rebuilt"
    assert result["command"]["attempts"] == 0
    assert app.db.get_task(task_id)["plan"] is None


def test_explain_task_unknown_id_raises_not_found() -> None:
    app = _app()

    with pytest.raises(NotFoundError, match="task_not_found:cuo-missing"):
        app.explain_task("cuo-missing")


def test_complexity_grows_with_fan_out() -> None:
    app = _app()
    graph = app.schema.load_graph(BASE)
    narrow = app.planner.plan(
        ChangeSeed(
            base_id=BASE,
            seed_table_id=ORDERS,
            change_type="recordUpdate",
            record_ids=["o2"],
            changed_field_ids=["items"],
        ),
        graph,
    )
    wide = app.planner.plan(
        ChangeSeed(
            base_id=BASE,
            seed_table_id=ITEMS,
            change_type="fieldConvert",
            changed_field_ids=["doubled"],
        ),
        graph,
    )

    narrow_score = assess_complexity(narrow, graph, seed_count=1)
    wide_score = assess_complexity(wide, graph, seed_count=1)

    assert narrow_score["score"] < wide_score["score"]
    assert narrow_score["recommendations"] == []


@pytest.mark.parametrize(
    ("score", "level"),
    [
        (0, "trivial"),
        (4.99, "trivial"),
        (5, "low"),
        (14.9, "low"),
        (15, "medium"),
        (30, "high"),
        (50, "very_high"),
    ],
)
def test_complexity_level_thresholds(score: float, level: str) -> None:
    assert complexity_level(score) == level
