"""Durable, coalescing outbox enqueue for change events."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

from fieldflow.models.contracts import ChangeSeed
from fieldflow.store.db import PropagationDB, to_iso, utc_now

logger = logging.getLogger(__name__)


class GraphVersionSource(Protocol):
    def graph_version(self, base_id: str) -> int:
        ...


class OutboxEnqueuer:
    def __init__(
        self,
        db: PropagationDB,
        versions: GraphVersionSource,
        *,
        max_attempts: int = 8,
    ) -> None:
        self.db = db
        self.versions = versions
        self.max_attempts = max_attempts

    def enqueue(
        self,
        seed: ChangeSeed,
        *,
        now: datetime | None = None,
        stage_depth: int = 0,
    ) -> dict[str, Any]:
        """Insert a pending task, or fold the seed into an identical pending one.

        Only tasks that are pending and unlocked are merge targets, so a seed is
        never attached to work a worker has already started.
        """

        now_iso = to_iso(now or utc_now())
        seeds = seed.seed_groups()
        with self.db.transaction():
            graph_version = self.versions.graph_version(seed.base_id)
            plan_hash = seed.plan_hash(graph_version)
            existing = self.db.find_mergeable_task(
                base_id=seed.base_id,
                seed_table_id=seed.seed_table_id,
                change_type=seed.change_type,
                plan_hash=plan_hash,
            )
            if existing is not None:
                merged_fields = sorted(set(existing["changed_field_ids"]) | set(seed.changed_field_ids))
                added = self.db.add_task_seeds(existing["id"], seeds)
                self.db.merge_into_task(
                    existing["id"],
                    changed_field_ids=merged_fields,
                    now=now_iso,
                    reset_plan=merged_fields != sorted(existing["changed_field_ids"]) or added > 0,
                )
                self.db.append_audit_event(
                    "outbox_task_merged",
                    {"task_id": existing["id"], "plan_hash": plan_hash, "seeds_added": added},
                )
                result = {"task_id": existing["id"], "merged": True, "plan_hash": plan_hash}
            else:
                task_id = self.db.insert_task(
                    base_id=seed.base_id,
                    seed_table_id=seed.seed_table_id,
                    change_type=seed.change_type,
                    changed_field_ids=seed.changed_field_ids,
                    plan_hash=plan_hash,
                    graph_version=graph_version,
                    seeds=seeds,
                    max_attempts=self.max_attempts,
                    now=now_iso,
                    stage_depth=stage_depth,
                )
                self.db.append_audit_event(
                    "outbox_task_enqueued",
                    {
                        "task_id": task_id,
                        "plan_hash": plan_hash,
                        "change_type": seed.change_type,
                        "stage_depth": stage_depth,
                    },
                )
                result = {"task_id": task_id, "merged": False, "plan_hash": plan_hash}
        logger.info("outbox enqueue", extra=result)
        return result
