"""Record read/write access.

``RecordStore`` is the contract the planner and executor consume;
``SQLiteRecordStore`` keeps each record's cell values as one JSON document
per row so that link fan-out can be answered with ``json_each``.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Protocol

from fieldflow.store.db import PropagationDB, to_iso, utc_now

IN_CHUNK_SIZE = 500


class RecordStore(Protocol):
    def get_records(self, table_id: str, record_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        ...

    def list_record_ids(self, table_id: str) -> list[str]:
        ...

    def iter_record_id_pages(self, table_id: str, page_size: int = IN_CHUNK_SIZE) -> Iterable[list[str]]:
        ...

    def count_records(self, table_id: str) -> int:
        ...

    def write_values(self, table_id: str, record_id: str, values: dict[str, Any]) -> bool:
        ...

    def find_linking_records(
        self, table_id: str, link_field_id: str, record_ids: Iterable[str]
    ) -> list[str]:
        ...


def chunked(values: list[str], size: int = IN_CHUNK_SIZE) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _json_path(field_id: str) -> str:
    return f'$."{field_id}"'


class SQLiteRecordStore:
    def __init__(self, db: PropagationDB) -> None:
        self.db = db

    def insert_record(
        self, table_id: str, record_id: str, fields: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self.db.transaction():
            self.db.conn.execute(
                """
                INSERT INTO records (table_id, record_id, fields_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (table_id, record_id, json.dumps(fields or {}, sort_keys=True), now, now),
            )
        return self.get_record(table_id, record_id) or {}

    def update_record(self, table_id: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        if not self.write_values(table_id, record_id, fields):
            raise LookupError(f"record_not_found:{table_id}/{record_id}")
        return self.get_record(table_id, record_id) or {}

    def delete_record(self, table_id: str, record_id: str) -> bool:
        with self.db.transaction():
            cur = self.db.conn.execute(
                "DELETE FROM records WHERE table_id = ? AND record_id = ?",
                (table_id, record_id),
            )
        return int(cur.rowcount or 0) > 0

    def get_record(self, table_id: str, record_id: str) -> dict[str, Any] | None:
        row = self.db.fetchone(
            """
            SELECT record_id, fields_json, created_at, updated_at FROM records
            WHERE table_id = ? AND record_id = ?
            """,
            (table_id, record_id),
        )
        if row is None:
            return None
        return {
            "record_id": str(row["record_id"]),
            "fields": json.loads(row["fields_json"]),
            "created_at": str(row["created_at"]),
            "updated_at": str(row["updated_at"]),
        }

    def get_records(self, table_id: str, record_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        wanted = sorted(set(record_ids))
        found: dict[str, dict[str, Any]] = {}
        for chunk in chunked(wanted):
            placeholders = ", ".join("?" for _ in chunk)
            rows = self.db.fetchall(
                f"""
                SELECT record_id, fields_json FROM records
                WHERE table_id = ? AND record_id IN ({placeholders})
                """,
                [table_id, *chunk],
            )
            for row in rows:
                found[str(row["record_id"])] = json.loads(row["fields_json"])
        return found

    def list_record_ids(self, table_id: str) -> list[str]:
        rows = self.db.fetchall(
            "SELECT record_id FROM records WHERE table_id = ? ORDER BY record_id ASC",
            (table_id,),
        )
        return [str(row["record_id"]) for row in rows]

    def iter_record_id_pages(self, table_id: str, page_size: int = IN_CHUNK_SIZE) -> Iterable[list[str]]:
        """Yield every record id of ``table_id`` in ordered pages of at most ``page_size``."""

        after = ""
        while True:
            rows = self.db.fetchall(
                """
                SELECT record_id FROM records
                WHERE table_id = ? AND record_id > ?
                ORDER BY record_id ASC
                LIMIT ?
                """,
                (table_id, after, int(page_size)),
            )
            page = [str(row["record_id"]) for row in rows]
            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            after = page[-1]

    def count_records(self, table_id: str) -> int:
        row = self.db.fetchone("SELECT COUNT(*) AS n FROM records WHERE table_id = ?", (table_id,))
        return int(row["n"]) if row is not None else 0

    def write_values(self, table_id: str, record_id: str, values: dict[str, Any]) -> bool:
        if not values:
            return self.get_record(table_id, record_id) is not None
        assignments: list[str] = []
        args: list[Any] = []
        for field_id, value in sorted(values.items()):
            assignments.append("?, json(?)")
            args.extend([_json_path(field_id), json.dumps(value)])
        with self.db.transaction():
            cur = self.db.conn.execute(
                f"""
                UPDATE records
                SET fields_json = json_set(fields_json, {", ".join(assignments)}), updated_at = ?
                WHERE table_id = ? AND record_id = ?
                """,
                [*args, to_iso(utc_now()), table_id, record_id],
            )
        return int(cur.rowcount or 0) > 0

    def find_linking_records(
        self, table_id: str, link_field_id: str, record_ids: Iterable[str]
    ) -> list[str]:
        """Records of ``table_id`` whose link field points at any of ``record_ids``."""

        targets = sorted(set(record_ids))
        linked: set[str] = set()
        for chunk in chunked(targets):
            placeholders = ", ".join("?" for _ in chunk)
            rows = self.db.fetchall(
                f"""
                SELECT DISTINCT r.record_id
                FROM records AS r, json_each(r.fields_json, ?) AS link
                WHERE r.table_id = ? AND link.value IN ({placeholders})
                """,
                [_json_path(link_field_id), table_id, *chunk],
            )
            linked.update(str(row["record_id"]) for row in rows)
        return sorted(linked)

    def describe_step_statements(
        self, table_id: str, field_id: str, link_field_id: str = ""
    ) -> list[str]:
        """SQL the executor issues for one plan step, for explain output."""

        statements = [
            "SELECT record_id, fields_json FROM records "
            f"WHERE table_id = '{table_id}' AND record_id IN (...)",
        ]
        if link_field_id:
            statements.append(
                "SELECT record_id, fields_json FROM records "
                f"WHERE table_id = <foreign table of {link_field_id}> AND record_id IN (...)"
            )
        statements.append(
            "UPDATE records SET fields_json = json_set(fields_json, "
            f"'{_json_path(field_id)}', json(?)), updated_at = ? "
            f"WHERE table_id = '{table_id}' AND record_id = ?"
        )
        return statements
