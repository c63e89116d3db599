"""Task lifecycle signals."""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from typing import Any, Mapping, Protocol

import requests

from fieldflow.store.db import PropagationDB

logger = logging.getLogger(__name__)

TASK_PROCESSING = "taskProcessing"
TASK_COMPLETED = "taskCompleted"
TASK_CANCELLED = "taskCancelled"
TASK_FAILED = "taskFailed"

TASK_SIGNALS = (TASK_PROCESSING, TASK_COMPLETED, TASK_CANCELLED, TASK_FAILED)

MAX_RETAINED_FAILURES = 100


class EventSink(Protocol):
    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        ...


class InMemoryEventSink:
    """Collects emitted signals in order; used by tests and embedded callers."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event_type, dict(payload)))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        with self._lock:
            return [payload for kind, payload in self.events if kind == event_type]


class AuditEventSink:
    """Persist signals to the audit_events table so operators can replay them."""

    def __init__(self, db: PropagationDB) -> None:
        self.db = db

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type not in TASK_SIGNALS:
            raise ValueError(f"unknown_task_signal:{event_type}")
        self.db.append_audit_event(event_type, payload)
        logger.info(event_type, extra={"task_id": payload.get("task_id", "")})


class WebhookEventSink:
    """POST each signal as JSON to an external endpoint.

    Delivery is best effort: transport failures are logged and counted, and the
    most recent ones are kept in ``failures`` rather than interrupting task
    processing.
    """

    def __init__(
        self,
        url: str,
        session: requests.Session | None = None,
        timeout_s: float = 10,
        max_failures: int = MAX_RETAINED_FAILURES,
    ) -> None:
        self.url = url
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.failures: deque[dict[str, Any]] = deque(maxlen=max_failures)
        self.failure_count = 0

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            response = self.session.request(
                method="POST",
                url=self.url,
                json={"event_type": event_type, "payload": payload},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning(
                "event webhook delivery failed",
                extra={"event_type": event_type, "task_id": payload.get("task_id", "")},
                exc_info=True,
            )
            self.failure_count += 1
            self.failures.append({"event_type": event_type, "payload": payload, "error": str(exc)})


class CompositeEventSink:
    def __init__(self, sinks: list[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        for sink in self.sinks:
            sink.emit(event_type, payload)


def build_event_sink_from_env(db: PropagationDB, env: Mapping[str, str] | None = None) -> EventSink:
    source = os.environ if env is None else env
    audit = AuditEventSink(db)
    url = str(source.get("FIELDFLOW_EVENT_WEBHOOK_URL", "")).strip()
    if not url:
        return audit
    return CompositeEventSink([audit, WebhookEventSink(url)])
