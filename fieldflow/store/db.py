"""SQLite persistence for the computed-field outbox, dead letters, and audit events."""

from __future__ import annotations

import json
import secrets
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

TASK_ID_PREFIX = "cuo"
SEED_ID_PREFIX = "cus"
RUN_ID_PREFIX = "run"

TASK_COLUMNS = (
    "id, base_id, seed_table_id, status, change_type, changed_field_ids_json, attempts, "
    "max_attempts, last_error, plan_hash, plan_json, graph_version, stage_depth, run_id, "
    "created_at, updated_at, next_run_at, locked_at, locked_by"
)


def new_id(prefix: str) -> str:
    return f"{prefix}{secrets.token_hex(8)}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_iso(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class PropagationDB:
    """Small SQLite wrapper for records, field schema, outbox tasks, dead letters, and audit events.

    The connection runs in autocommit mode; every multi-statement write goes through
    ``transaction()`` so that one instance can be shared by the worker loop and the
    operator dispatch thread.
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        """Apply local-first SQLite settings for durability and concurrent workers."""

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS records (
                table_id TEXT NOT NULL,
                record_id TEXT NOT NULL,
                fields_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(table_id, record_id)
            );

            CREATE TABLE IF NOT EXISTS field_definitions (
                base_id TEXT NOT NULL,
                table_id TEXT NOT NULL,
                field_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                options_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(base_id, table_id, field_id)
            );

            CREATE TABLE IF NOT EXISTS graph_versions (
                base_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS outbox_tasks (
                id TEXT PRIMARY KEY,
                base_id TEXT NOT NULL,
                seed_table_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                change_type TEXT NOT NULL,
                changed_field_ids_json TEXT NOT NULL DEFAULT '[]',
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 8,
                last_error TEXT,
                plan_hash TEXT NOT NULL,
                plan_json TEXT,
                graph_version INTEGER NOT NULL DEFAULT 0,
                stage_depth INTEGER NOT NULL DEFAULT 0,
                run_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                next_run_at TEXT NOT NULL,
                locked_at TEXT,
                locked_by TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_outbox_tasks_claim
                ON outbox_tasks(status, next_run_at);
            CREATE INDEX IF NOT EXISTS idx_outbox_tasks_merge
                ON outbox_tasks(base_id, seed_table_id, change_type, plan_hash, status);

            CREATE TABLE IF NOT EXISTS outbox_task_seeds (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                table_id TEXT NOT NULL,
                record_id TEXT NOT NULL,
                UNIQUE(task_id, table_id, record_id),
                FOREIGN KEY(task_id) REFERENCES outbox_tasks(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS dead_letters (
                id TEXT PRIMARY KEY,
                base_id TEXT NOT NULL,
                seed_table_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'failed',
                change_type TEXT NOT NULL,
                changed_field_ids_json TEXT NOT NULL DEFAULT '[]',
                attempts INTEGER NOT NULL,
                max_attempts INTEGER NOT NULL,
                last_error TEXT,
                plan_hash TEXT NOT NULL,
                plan_json TEXT,
                graph_version INTEGER NOT NULL DEFAULT 0,
                stage_depth INTEGER NOT NULL DEFAULT 0,
                run_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                next_run_at TEXT NOT NULL,
                locked_at TEXT,
                locked_by TEXT,
                failed_at TEXT NOT NULL,
                seed_record_ids_json TEXT NOT NULL DEFAULT '{}',
                trace_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
            """
        )

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE at the outermost level, a savepoint when nested."""

        with self._lock:
            savepoint = f"sp_{self._depth}"
            if self._depth == 0:
                self.conn.execute("BEGIN IMMEDIATE")
            else:
                self.conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.execute("ROLLBACK")
                else:
                    self.conn.execute(f"ROLLBACK TO {savepoint}")
                    self.conn.execute(f"RELEASE {savepoint}")
                raise
            self._depth -= 1
            if self._depth == 0:
                self.conn.execute("COMMIT")
            else:
                self.conn.execute(f"RELEASE {savepoint}")

    @contextmanager
    def rollback_only(self) -> Iterator[sqlite3.Connection]:
        """Savepoint whose writes are always discarded."""

        with self._lock:
            savepoint = f"sp_{self._depth}"
            self.conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
                self.conn.execute(f"ROLLBACK TO {savepoint}")
                self.conn.execute(f"RELEASE {savepoint}")

    def fetchall(self, sql: str, args: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, args).fetchall()

    def fetchone(self, sql: str, args: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, args).fetchone()

    def _task_dict(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {
            "id": str(row["id"]),
            "base_id": str(row["base_id"]),
            "seed_table_id": str(row["seed_table_id"]),
            "status": str(row["status"]),
            "change_type": str(row["change_type"]),
            "changed_field_ids": json.loads(row["changed_field_ids_json"] or "[]"),
            "attempts": int(row["attempts"]),
            "max_attempts": int(row["max_attempts"]),
            "last_error": str(row["last_error"] or ""),
            "plan_hash": str(row["plan_hash"]),
            "plan": json.loads(row["plan_json"]) if row["plan_json"] else None,
            "graph_version": int(row["graph_version"]),
            "stage_depth": int(row["stage_depth"]),
            "run_id": str(row["run_id"]),
            "created_at": str(row["created_at"]),
            "updated_at": str(row["updated_at"]),
            "next_run_at": str(row["next_run_at"]),
            "locked_at": str(row["locked_at"] or ""),
            "locked_by": str(row["locked_by"] or ""),
        }
        if "seed_count" in row.keys():
            task["seed_count"] = int(row["seed_count"])
        return task

    # outbox tasks

    def insert_task(
        self,
        *,
        base_id: str,
        seed_table_id: str,
        change_type: str,
        changed_field_ids: list[str],
        plan_hash: str,
        graph_version: int,
        seeds: dict[str, list[str]],
        max_attempts: int,
        now: str,
        stage_depth: int = 0,
        plan: dict[str, Any] | None = None,
        task_id: str | None = None,
        run_id: str | None = None,
    ) -> str:
        task_id = task_id or new_id(TASK_ID_PREFIX)
        with self.transaction():
            self.conn.execute(
                f"""
                INSERT INTO outbox_tasks ({TASK_COLUMNS})
                VALUES (?, ?, ?, 'pending', ?, ?, 0, ?, NULL, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL)
                """,
                (
                    task_id,
                    base_id,
                    seed_table_id,
                    change_type,
                    json.dumps(sorted(set(changed_field_ids))),
                    int(max_attempts),
                    plan_hash,
                    json.dumps(plan, sort_keys=True) if plan is not None else None,
                    int(graph_version),
                    int(stage_depth),
                    run_id or new_id(RUN_ID_PREFIX),
                    now,
                    now,
                    now,
                ),
            )
            self.add_task_seeds(task_id, seeds)
        return task_id

    def add_task_seeds(self, task_id: str, seeds: dict[str, list[str]]) -> int:
        added = 0
        with self.transaction():
            for table_id, record_ids in seeds.items():
                for record_id in record_ids:
                    cur = self.conn.execute(
                        """
                        INSERT OR IGNORE INTO outbox_task_seeds (id, task_id, table_id, record_id)
                        VALUES (?, ?, ?, ?)
                        """,
                        (new_id(SEED_ID_PREFIX), task_id, table_id, record_id),
                    )
                    added += int(cur.rowcount or 0)
        return added

    def find_mergeable_task(
        self, *, base_id: str, seed_table_id: str, change_type: str, plan_hash: str
    ) -> dict[str, Any] | None:
        row = self.fetchone(
            f"""
            SELECT {TASK_COLUMNS} FROM outbox_tasks
            WHERE base_id = ? AND seed_table_id = ? AND change_type = ? AND plan_hash = ?
              AND status = 'pending' AND locked_by IS NULL
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (base_id, seed_table_id, change_type, plan_hash),
        )
        return self._task_dict(row) if row is not None else None

    def merge_into_task(
        self,
        task_id: str,
        *,
        changed_field_ids: list[str],
        now: str,
        reset_plan: bool,
    ) -> bool:
        plan_clause = ", plan_json = NULL" if reset_plan else ""
        with self.transaction():
            cur = self.conn.execute(
                f"""
                UPDATE outbox_tasks
                SET changed_field_ids_json = ?, next_run_at = ?, updated_at = ?{plan_clause}
                WHERE id = ? AND status = 'pending' AND locked_by IS NULL
                """,
                (json.dumps(sorted(set(changed_field_ids))), now, now, task_id),
            )
        return int(cur.rowcount or 0) > 0

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        row = self.fetchone(
            f"SELECT {TASK_COLUMNS} FROM outbox_tasks WHERE id = ?",
            (task_id,),
        )
        return self._task_dict(row) if row is not None else None

    def get_task_seeds(self, task_id: str) -> dict[str, list[str]]:
        rows = self.fetchall(
            """
            SELECT table_id, record_id FROM outbox_task_seeds
            WHERE task_id = ?
            ORDER BY table_id ASC, record_id ASC
            """,
            (task_id,),
        )
        groups: dict[str, list[str]] = {}
        for row in rows:
            groups.setdefault(str(row["table_id"]), []).append(str(row["record_id"]))
        return groups

    def list_tasks(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        rows = self.fetchall(
            f"""
            SELECT {TASK_COLUMNS},
                   (SELECT COUNT(*) FROM outbox_task_seeds s WHERE s.task_id = outbox_tasks.id)
                       AS seed_count
            FROM outbox_tasks
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (int(limit), int(offset)),
        )
        return [self._task_dict(row) for row in rows]

    def list_claim_candidates(self, *, now: str, lease_cutoff: str, limit: int) -> list[str]:
        rows = self.fetchall(
            """
            SELECT id FROM outbox_tasks
            WHERE (status = 'pending' AND next_run_at <= ?)
               OR (status = 'processing' AND locked_at < ?)
            ORDER BY next_run_at ASC, created_at ASC, id ASC
            LIMIT ?
            """,
            (now, lease_cutoff, int(limit)),
        )
        return [str(row["id"]) for row in rows]

    def claim_task(
        self, task_id: str, *, worker_id: str, now: str, lease_cutoff: str
    ) -> dict[str, Any] | None:
        """Conditionally claim one task; the row count decides the winner.

        Reclaiming a task whose lease expired counts as an attempt.
        """

        with self.transaction():
            before = self.conn.execute(
                "SELECT status FROM outbox_tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if before is None:
                return None
            cur = self.conn.execute(
                """
                UPDATE outbox_tasks
                SET status = 'processing',
                    locked_by = ?,
                    locked_at = ?,
                    updated_at = ?,
                    attempts = CASE WHEN status = 'processing' THEN attempts + 1 ELSE attempts END
                WHERE id = ?
                  AND (
                    (status = 'pending' AND next_run_at <= ?)
                    OR (status = 'processing' AND locked_at < ?)
                  )
                """,
                (worker_id, now, now, task_id, now, lease_cutoff),
            )
            if int(cur.rowcount or 0) == 0:
                return None
            row = self.conn.execute(
                f"SELECT {TASK_COLUMNS} FROM outbox_tasks WHERE id = ?", (task_id,)
            ).fetchone()
        task = self._task_dict(row)
        task["reclaimed"] = str(before["status"]) == "processing"
        return task

    def store_task_plan(
        self,
        task_id: str,
        *,
        worker_id: str,
        plan: dict[str, Any],
        plan_hash: str,
        graph_version: int,
        now: str,
    ) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                UPDATE outbox_tasks
                SET plan_json = ?, plan_hash = ?, graph_version = ?, updated_at = ?
                WHERE id = ? AND locked_by = ? AND status = 'processing'
                """,
                (json.dumps(plan, sort_keys=True), plan_hash, int(graph_version), now, task_id, worker_id),
            )
        return int(cur.rowcount or 0) > 0

    def complete_task(self, task_id: str, *, worker_id: str) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                "DELETE FROM outbox_tasks WHERE id = ? AND locked_by = ? AND status = 'processing'",
                (task_id, worker_id),
            )
        return int(cur.rowcount or 0) > 0

    def reschedule_task(
        self,
        task_id: str,
        *,
        worker_id: str,
        attempts: int,
        last_error: str,
        next_run_at: str,
        now: str,
    ) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                UPDATE outbox_tasks
                SET status = 'pending', attempts = ?, last_error = ?, next_run_at = ?,
                    locked_by = NULL, locked_at = NULL, updated_at = ?
                WHERE id = ? AND locked_by = ? AND status = 'processing'
                """,
                (int(attempts), last_error, next_run_at, now, task_id, worker_id),
            )
        return int(cur.rowcount or 0) > 0

    def reset_task_schedule(self, task_id: str, *, now: str) -> dict[str, Any] | None:
        """Operator override: make a pending or processing task runnable now.

        Returns the task as it was before the reset, or None when no such
        runnable task exists.
        """

        with self.transaction():
            row = self.conn.execute(
                f"SELECT {TASK_COLUMNS} FROM outbox_tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if row is None or str(row["status"]) not in {"pending", "processing"}:
                return None
            self.conn.execute(
                """
                UPDATE outbox_tasks
                SET status = 'pending', next_run_at = ?, locked_by = NULL, locked_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (now, now, task_id),
            )
        return self._task_dict(row)

    # dead letters

    def dead_letter_task(
        self,
        task_id: str,
        *,
        worker_id: str | None,
        attempts: int,
        last_error: str,
        trace_data: dict[str, Any],
        now: str,
    ) -> dict[str, Any] | None:
        """Move a task and its seed snapshot into dead_letters in one transaction."""

        with self.transaction():
            if worker_id is None:
                row = self.conn.execute(
                    f"SELECT {TASK_COLUMNS} FROM outbox_tasks WHERE id = ?", (task_id,)
                ).fetchone()
            else:
                row = self.conn.execute(
                    f"""
                    SELECT {TASK_COLUMNS} FROM outbox_tasks
                    WHERE id = ? AND locked_by = ? AND status = 'processing'
                    """,
                    (task_id, worker_id),
                ).fetchone()
            if row is None:
                return None
            seeds = self.get_task_seeds(task_id)
            self.conn.execute(
                """
                INSERT INTO dead_letters (
                    id, base_id, seed_table_id, status, change_type, changed_field_ids_json,
                    attempts, max_attempts, last_error, plan_hash, plan_json, graph_version,
                    stage_depth, run_id, created_at, updated_at, next_run_at, locked_at,
                    locked_by, failed_at, seed_record_ids_json, trace_json
                ) VALUES (?, ?, ?, 'failed', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row["id"],
                    row["base_id"],
                    row["seed_table_id"],
                    row["change_type"],
                    row["changed_field_ids_json"],
                    int(attempts),
                    row["max_attempts"],
                    last_error,
                    row["plan_hash"],
                    row["plan_json"],
                    row["graph_version"],
                    row["stage_depth"],
                    row["run_id"],
                    row["created_at"],
                    now,
                    row["next_run_at"],
                    row["locked_at"],
                    row["locked_by"],
                    now,
                    json.dumps(seeds, sort_keys=True),
                    json.dumps(trace_data, sort_keys=True, default=str),
                ),
            )
            self.conn.execute("DELETE FROM outbox_tasks WHERE id = ?", (task_id,))
        return self.get_dead_letter(task_id)

    def _dead_letter_dict(self, row: sqlite3.Row) -> dict[str, Any]:
        entry = self._task_dict(row)
        seeds = json.loads(row["seed_record_ids_json"] or "{}")
        entry.update(
            {
                "failed_at": str(row["failed_at"]),
                "seed_record_ids": seeds,
                "seed_count": sum(len(record_ids) for record_ids in seeds.values()),
                "trace_data": json.loads(row["trace_json"] or "{}"),
            }
        )
        return entry

    def get_dead_letter(self, dead_letter_id: str) -> dict[str, Any] | None:
        row = self.fetchone(
            f"""
            SELECT {TASK_COLUMNS}, failed_at, seed_record_ids_json, trace_json
            FROM dead_letters WHERE id = ?
            """,
            (dead_letter_id,),
        )
        return self._dead_letter_dict(row) if row is not None else None

    def list_dead_letters(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        rows = self.fetchall(
            f"""
            SELECT {TASK_COLUMNS}, failed_at, seed_record_ids_json, trace_json
            FROM dead_letters
            ORDER BY failed_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (int(limit), int(offset)),
        )
        return [self._dead_letter_dict(row) for row in rows]

    def delete_dead_letter(self, dead_letter_id: str) -> bool:
        with self.transaction():
            cur = self.conn.execute("DELETE FROM dead_letters WHERE id = ?", (dead_letter_id,))
        return int(cur.rowcount or 0) > 0

    def requeue_dead_letter(self, dead_letter_id: str, *, now: str) -> str | None:
        """Re-enter a dead letter into the outbox under a fresh task id."""

        with self.transaction():
            entry = self.get_dead_letter(dead_letter_id)
            if entry is None:
                return None
            task_id = self.insert_task(
                base_id=entry["base_id"],
                seed_table_id=entry["seed_table_id"],
                change_type=entry["change_type"],
                changed_field_ids=entry["changed_field_ids"],
                plan_hash=entry["plan_hash"],
                graph_version=entry["graph_version"],
                seeds=entry["seed_record_ids"],
                max_attempts=entry["max_attempts"],
                now=now,
                stage_depth=entry["stage_depth"],
                plan=None,
            )
            self.conn.execute("DELETE FROM dead_letters WHERE id = ?", (dead_letter_id,))
        return task_id

    # audit

    def append_audit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        with self.transaction():
            self.conn.execute(
                "INSERT INTO audit_events (event_type, event_json) VALUES (?, ?)",
                (event_type, json.dumps(payload, sort_keys=True, default=str)),
            )

    def list_audit_events(
        self,
        event_type: str | None = None,
        task_id: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        args: list[Any] = []
        if event_type:
            clauses.append("event_type = ?")
            args.append(event_type)
        if task_id:
            clauses.append("json_extract(event_json, '$.task_id') = ?")
            args.append(task_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.fetchall(
            f"SELECT id, event_type, event_json, created_at FROM audit_events {where} ORDER BY id ASC",
            args,
        )
        return [
            {
                "id": int(row["id"]),
                "event_type": row["event_type"],
                "payload": json.loads(row["event_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]


def lease_cutoff(now: datetime, lease_seconds: float) -> str:
    return to_iso(now - timedelta(seconds=lease_seconds))
