"""Operator-facing queue and dead-letter actions."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable

from fieldflow.engine.errors import NotFoundError
from fieldflow.models.contracts import OutboxTaskV1
from fieldflow.outbox.dead_letter import DeadLetterService
from fieldflow.outbox.events import TASK_CANCELLED, EventSink
from fieldflow.store.db import PropagationDB, to_iso, utc_now

logger = logging.getLogger(__name__)

Dispatcher = Callable[[], None]


def thread_dispatcher(target: Callable[[], Any]) -> Dispatcher:
    """Run ``target`` on a daemon thread without waiting for it."""

    def dispatch() -> None:
        threading.Thread(target=target, name="fieldflow-dispatch", daemon=True).start()

    return dispatch


class OperatorService:
    def __init__(
        self,
        db: PropagationDB,
        dead_letters: DeadLetterService,
        events: EventSink,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.db = db
        self.dead_letters = dead_letters
        self.events = events
        self.dispatcher = dispatcher

    def list_outbox_tasks(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return [
            OutboxTaskV1.model_validate(task).model_dump()
            for task in self.db.list_tasks(limit=limit, offset=offset)
        ]

    def list_dead_letters(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return self.dead_letters.list(limit=limit, offset=offset)

    def delete_dead_letter(self, dead_letter_id: str) -> dict[str, Any]:
        if not self.dead_letters.delete(dead_letter_id):
            raise NotFoundError(f"dead_letter_not_found:{dead_letter_id}")
        return {"id": dead_letter_id, "deleted": True}

    def retry_dead_letter(self, dead_letter_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        task = self.dead_letters.retry(dead_letter_id, now=now)
        if task is None:
            raise NotFoundError(f"dead_letter_not_found:{dead_letter_id}")
        self._dispatch()
        return OutboxTaskV1.model_validate(task).model_dump()

    def retry_now(self, task_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Make a pending or processing task due immediately and nudge a worker."""

        with self.db.transaction():
            before = self.db.reset_task_schedule(task_id, now=to_iso(now or utc_now()))
            if before is None:
                raise NotFoundError(f"task_not_found:{task_id}")
            self.db.append_audit_event(
                "outbox_task_retry_now",
                {"task_id": task_id, "previous_status": before["status"]},
            )
        cancelled = before["status"] == "processing"
        if cancelled:
            self.events.emit(
                TASK_CANCELLED,
                {"task_id": task_id, "worker_id": before["locked_by"], "reason": "retry_now"},
            )
        logger.info("task retry requested", extra={"task_id": task_id, "cancelled": cancelled})
        task = self.db.get_task(task_id)
        self._dispatch()
        return {
            "task": OutboxTaskV1.model_validate(task).model_dump() if task else None,
            "cancelled": cancelled,
        }

    def _dispatch(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher()
