from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ALL_RECORDS = "*"

CHANGE_TYPES = ("recordCreate", "recordUpdate", "recordDelete", "fieldCreate", "fieldConvert")
FIELD_CHANGE_TYPES = ("fieldCreate", "fieldConvert")


class ChangeSeed(BaseModel):
    """A single change event: what changed, where, and for which records."""

    model_config = ConfigDict(extra="forbid")

    base_id: str = Field(min_length=1)
    seed_table_id: str = Field(min_length=1)
    change_type: str = Field(pattern="^(recordCreate|recordUpdate|recordDelete|fieldCreate|fieldConvert)$")
    record_ids: list[str] = Field(default_factory=list)
    all_records: bool = False
    changed_field_ids: list[str] = Field(default_factory=list)
    extra_seeds: dict[str, list[str]] = Field(default_factory=dict)

    def normalized_record_ids(self) -> list[str]:
        if self.all_records or self.change_type in FIELD_CHANGE_TYPES:
            return [ALL_RECORDS]
        return sorted({record_id for record_id in self.record_ids if record_id})

    def seed_groups(self) -> dict[str, list[str]]:
        """Seed record ids grouped by table, seed table first."""

        groups = {self.seed_table_id: self.normalized_record_ids()}
        for table_id, record_ids in sorted(self.extra_seeds.items()):
            if table_id == self.seed_table_id:
                continue
            groups[table_id] = sorted(set(record_ids))
        return groups

    def hash_record_ids(self) -> list[str]:
        record_ids = list(self.normalized_record_ids())
        for table_id, extra_ids in self.seed_groups().items():
            if table_id != self.seed_table_id:
                record_ids.extend(f"{table_id}/{record_id}" for record_id in extra_ids)
        return sorted(record_ids)

    def plan_hash(self, graph_version: int) -> str:
        return compute_plan_hash(
            base_id=self.base_id,
            change_type=self.change_type,
            seed_record_ids=self.hash_record_ids(),
            graph_version=graph_version,
        )


class PlanStepV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table_id: str = Field(min_length=1)
    field_id: str = Field(min_length=1)
    level: int = Field(ge=0)
    kind: str = ""
    record_ids: list[str] = Field(default_factory=list)
    all_records: bool = False


class ExecutionPlanV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: str = "execution_plan/v1"
    base_id: str = Field(min_length=1)
    seed_table_id: str = Field(min_length=1)
    change_type: str = Field(min_length=1)
    seed_record_ids: list[str] = Field(default_factory=list)
    extra_seeds: dict[str, list[str]] = Field(default_factory=dict)
    all_records: bool = False
    changed_field_ids: list[str] = Field(default_factory=list)
    graph_version: int = Field(ge=0)
    plan_hash: str = Field(min_length=1)
    steps: list[PlanStepV1] = Field(default_factory=list)
    edges: list[dict[str, str]] = Field(default_factory=list)
    coarse: bool = False
    estimated_rows: int = 0

    def step_for(self, table_id: str, field_id: str) -> PlanStepV1 | None:
        for step in self.steps:
            if step.table_id == table_id and step.field_id == field_id:
                return step
        return None

    def covers(self, table_id: str, field_id: str, record_id: str) -> bool:
        step = self.step_for(table_id, field_id)
        if step is None:
            return False
        return step.all_records or record_id in step.record_ids


class ExplainOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    analyze: bool = False
    include_sql: bool = Field(default=True, alias="includeSql")
    include_graph: bool = Field(default=True, alias="includeGraph")
    include_locks: bool = Field(default=True, alias="includeLocks")


class OutboxTaskV1(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: str = "outbox_task/v1"
    id: str = Field(min_length=1)
    base_id: str
    seed_table_id: str
    status: str = "pending"
    change_type: str
    changed_field_ids: list[str] = Field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 8
    last_error: str = ""
    plan_hash: str = ""
    graph_version: int = 0
    stage_depth: int = 0
    run_id: str = ""
    created_at: str = ""
    updated_at: str = ""
    next_run_at: str = ""
    locked_at: str = ""
    locked_by: str = ""
    seed_count: int = 0


class DeadLetterEntryV1(OutboxTaskV1):
    schema_version: str = "dead_letter/v1"
    failed_at: str = ""
    seed_record_ids: dict[str, list[str]] = Field(default_factory=dict)
    trace_data: dict[str, Any] = Field(default_factory=dict)


def compute_plan_hash(
    *,
    base_id: str,
    change_type: str,
    seed_record_ids: list[str],
    graph_version: int,
) -> str:
    canonical = {
        "base_id": base_id,
        "change_type": change_type,
        "seed_record_ids": sorted(set(seed_record_ids)),
        "graph_version": int(graph_version),
    }
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
