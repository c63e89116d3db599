"""Dead-letter inspection, acknowledgement and explicit retry."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fieldflow.models.contracts import DeadLetterEntryV1
from fieldflow.store.db import PropagationDB, to_iso, utc_now

logger = logging.getLogger(__name__)


class DeadLetterService:
    def __init__(self, db: PropagationDB) -> None:
        self.db = db

    def list(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return [
            DeadLetterEntryV1.model_validate(entry).model_dump()
            for entry in self.db.list_dead_letters(limit=limit, offset=offset)
        ]

    def get(self, dead_letter_id: str) -> dict[str, Any] | None:
        entry = self.db.get_dead_letter(dead_letter_id)
        if entry is None:
            return None
        return DeadLetterEntryV1.model_validate(entry).model_dump()

    def delete(self, dead_letter_id: str) -> bool:
        deleted = self.db.delete_dead_letter(dead_letter_id)
        if deleted:
            self.db.append_audit_event("dead_letter_deleted", {"task_id": dead_letter_id})
        return deleted

    def retry(self, dead_letter_id: str, *, now: datetime | None = None) -> dict[str, Any] | None:
        """Requeue a dead letter under a new task id with a fresh attempt budget."""

        with self.db.transaction():
            task_id = self.db.requeue_dead_letter(dead_letter_id, now=to_iso(now or utc_now()))
            if task_id is None:
                return None
            self.db.append_audit_event(
                "dead_letter_retried",
                {"task_id": task_id, "dead_letter_id": dead_letter_id},
            )
        logger.info("dead letter requeued", extra={"task_id": task_id, "dead_letter_id": dead_letter_id})
        return self.db.get_task(task_id)
