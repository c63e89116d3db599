"""Load base schemas (field definitions per table) from YAML or JSON files."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from fieldflow.engine.errors import FatalPlanError
from fieldflow.engine.fields import FieldDefinition, field_from_options


def parse_schema_document(document: Any) -> tuple[str, list[FieldDefinition]]:
    if not isinstance(document, dict):
        raise ValueError("invalid_schema_file: top level must be a mapping")
    base_id = str(document.get("base_id", "")).strip()
    if not base_id:
        raise ValueError("invalid_schema_file: base_id is required")
    tables = document.get("tables")
    if not isinstance(tables, dict) or not tables:
        raise ValueError("invalid_schema_file: tables must be a non-empty mapping")

    definitions: list[FieldDefinition] = []
    for table_id, table in tables.items():
        fields = table.get("fields") if isinstance(table, dict) else None
        if not isinstance(fields, list):
            raise ValueError(f"invalid_schema_file: tables.{table_id}.fields must be a list")
        for raw in fields:
            if not isinstance(raw, dict) or not raw.get("id"):
                raise ValueError(f"invalid_schema_file: field in {table_id} needs an id")
            options = {key: value for key, value in raw.items() if key not in {"id", "kind"}}
            try:
                definitions.append(
                    field_from_options(
                        str(raw.get("kind", "base")), str(table_id), str(raw["id"]), options
                    )
                )
            except FatalPlanError as exc:
                raise ValueError(f"invalid_schema_file: {exc}") from exc
    return base_id, definitions


def load_schema_file(path: Path) -> tuple[str, list[FieldDefinition]]:
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found: {path}")
    return parse_schema_document(yaml.safe_load(path.read_text()))
