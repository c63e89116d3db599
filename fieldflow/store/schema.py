"""Persisted field definitions and the per-base graph version."""

from __future__ import annotations

import json
import logging
from typing import Any

from fieldflow.engine.fields import FieldDefinition, field_from_options, node_of
from fieldflow.engine.graph import FieldDependencyGraph, build_dependency_graph
from fieldflow.store.db import PropagationDB, to_iso, utc_now

logger = logging.getLogger(__name__)


class SchemaRegistry:
    def __init__(self, db: PropagationDB) -> None:
        self.db = db

    def graph_version(self, base_id: str) -> int:
        row = self.db.fetchone("SELECT version FROM graph_versions WHERE base_id = ?", (base_id,))
        return int(row["version"]) if row is not None else 0

    def list_fields(self, base_id: str) -> list[FieldDefinition]:
        rows = self.db.fetchall(
            """
            SELECT table_id, field_id, kind, options_json FROM field_definitions
            WHERE base_id = ?
            ORDER BY table_id ASC, field_id ASC
            """,
            (base_id,),
        )
        return [
            field_from_options(
                str(row["kind"]),
                str(row["table_id"]),
                str(row["field_id"]),
                json.loads(row["options_json"] or "{}"),
            )
            for row in rows
        ]

    def get_field(self, base_id: str, table_id: str, field_id: str) -> FieldDefinition | None:
        for definition in self.list_fields(base_id):
            if definition.table_id == table_id and definition.field_id == field_id:
                return definition
        return None

    def load_graph(self, base_id: str) -> FieldDependencyGraph:
        with self.db.transaction():
            version = self.graph_version(base_id)
            fields = self.list_fields(base_id)
        return build_dependency_graph(base_id, fields, version=version)

    def save_field(self, base_id: str, definition: FieldDefinition) -> dict[str, Any]:
        """Create or replace a field definition.

        The candidate schema is validated first; a definition that would close a
        dependency cycle raises DependencyCycleError and nothing is persisted.
        """

        with self.db.transaction():
            existing = {node_of(item): item for item in self.list_fields(base_id)}
            previous = existing.get(node_of(definition))
            existing[node_of(definition)] = definition
            build_dependency_graph(base_id, existing.values())

            now = to_iso(utc_now())
            self.db.conn.execute(
                """
                INSERT INTO field_definitions
                    (base_id, table_id, field_id, kind, options_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(base_id, table_id, field_id) DO UPDATE SET
                    kind = excluded.kind,
                    options_json = excluded.options_json,
                    updated_at = excluded.updated_at
                """,
                (
                    base_id,
                    definition.table_id,
                    definition.field_id,
                    definition.kind,
                    json.dumps(definition.options(), sort_keys=True),
                    now,
                    now,
                ),
            )
            version = self._bump_version(base_id, now)
        logger.info(
            "field saved",
            extra={"base_id": base_id, "field": str(node_of(definition)), "graph_version": version},
        )
        return {
            "table_id": definition.table_id,
            "field_id": definition.field_id,
            "kind": definition.kind,
            "created": previous is None,
            "converted": previous is not None and previous != definition,
            "graph_version": version,
        }

    def delete_field(self, base_id: str, table_id: str, field_id: str) -> bool:
        with self.db.transaction():
            cur = self.db.conn.execute(
                "DELETE FROM field_definitions WHERE base_id = ? AND table_id = ? AND field_id = ?",
                (base_id, table_id, field_id),
            )
            deleted = int(cur.rowcount or 0) > 0
            if deleted:
                self._bump_version(base_id, to_iso(utc_now()))
        return deleted

    def _bump_version(self, base_id: str, now: str) -> int:
        self.db.conn.execute(
            """
            INSERT INTO graph_versions (base_id, version, updated_at) VALUES (?, 1, ?)
            ON CONFLICT(base_id) DO UPDATE SET
                version = graph_versions.version + 1,
                updated_at = excluded.updated_at
            """,
            (base_id, now),
        )
        return self.graph_version(base_id)
