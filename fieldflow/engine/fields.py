"""Field kinds as a closed tagged variant.

Every kind knows which fields it reads (``references``) so the graph builder
and the evaluator dispatch over the same closed set of types.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, NamedTuple, Union

from fieldflow.engine.errors import FatalPlanError

FIELD_REFERENCE_RE = re.compile(r"\{([A-Za-z0-9_]+)\}")

ROLLUP_FUNCTIONS = (
    "sum",
    "count",
    "counta",
    "average",
    "max",
    "min",
    "concatenate",
    "array_unique",
)


class FieldNode(NamedTuple):
    table_id: str
    field_id: str

    def __str__(self) -> str:
        return f"{self.table_id}.{self.field_id}"


@dataclass(frozen=True)
class BaseField:
    table_id: str
    field_id: str
    kind = "base"

    def options(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class LinkField:
    table_id: str
    field_id: str
    foreign_table_id: str
    kind = "link"

    def options(self) -> dict[str, Any]:
        return {"foreign_table_id": self.foreign_table_id}


@dataclass(frozen=True)
class FormulaField:
    table_id: str
    field_id: str
    expression: str
    kind = "formula"

    def references(self) -> list[str]:
        seen: list[str] = []
        for field_id in FIELD_REFERENCE_RE.findall(self.expression):
            if field_id not in seen:
                seen.append(field_id)
        return seen

    def options(self) -> dict[str, Any]:
        return {"expression": self.expression}


@dataclass(frozen=True)
class LookupField:
    table_id: str
    field_id: str
    link_field_id: str
    target_field_id: str
    kind = "lookup"

    def options(self) -> dict[str, Any]:
        return {"link_field_id": self.link_field_id, "target_field_id": self.target_field_id}


@dataclass(frozen=True)
class RollupField:
    table_id: str
    field_id: str
    link_field_id: str
    target_field_id: str
    function: str = "sum"
    kind = "rollup"

    def __post_init__(self) -> None:
        if self.function not in ROLLUP_FUNCTIONS:
            raise ValueError(f"unknown_rollup_function:{self.function}")

    def options(self) -> dict[str, Any]:
        return {
            "link_field_id": self.link_field_id,
            "target_field_id": self.target_field_id,
            "function": self.function,
        }


FieldDefinition = Union[BaseField, LinkField, FormulaField, LookupField, RollupField]

COMPUTED_KINDS = {"formula", "lookup", "rollup"}


def node_of(field: FieldDefinition) -> FieldNode:
    return FieldNode(field.table_id, field.field_id)


def is_computed(field: FieldDefinition) -> bool:
    return field.kind in COMPUTED_KINDS


def field_from_options(
    kind: str, table_id: str, field_id: str, options: dict[str, Any]
) -> FieldDefinition:
    """Rebuild a field definition from its persisted ``kind`` and options."""

    try:
        if kind == "base":
            return BaseField(table_id=table_id, field_id=field_id)
        if kind == "link":
            return LinkField(
                table_id=table_id,
                field_id=field_id,
                foreign_table_id=str(options["foreign_table_id"]),
            )
        if kind == "formula":
            return FormulaField(
                table_id=table_id, field_id=field_id, expression=str(options["expression"])
            )
        if kind == "lookup":
            return LookupField(
                table_id=table_id,
                field_id=field_id,
                link_field_id=str(options["link_field_id"]),
                target_field_id=str(options["target_field_id"]),
            )
        if kind == "rollup":
            return RollupField(
                table_id=table_id,
                field_id=field_id,
                link_field_id=str(options["link_field_id"]),
                target_field_id=str(options["target_field_id"]),
                function=str(options.get("function", "sum")),
            )
    except (KeyError, ValueError) as exc:
        raise FatalPlanError(
            f"malformed field definition {table_id}.{field_id}: {exc}",
            reason_code="malformed_field_definition",
        ) from exc
    raise FatalPlanError(
        f"unknown field kind {kind!r} for {table_id}.{field_id}",
        reason_code="unknown_field_kind",
    )
