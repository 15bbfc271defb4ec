"""Typed normalization of caller-declared insight categories.

Each category declares fields with a type tag. Model output for a category is
copied through only when every present declared field type-checks; a single
bad field drops the whole category. Missing fields are omitted, never filled.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from insight_orchestrator.evaluation_plane.criteria import RuleDefinitionError
from insight_orchestrator.synthesis_plane.providers.base import JSONValue

_logger = structlog.get_logger(__name__)


class InsightFieldType(enum.Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ENUM = "enum"
    TAGS = "tags"
    TEXT = "text"


@dataclass(frozen=True, slots=True)
class InsightField:
    id: str
    type: InsightFieldType
    options: tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        if self.type is InsightFieldType.ENUM and not self.options:
            raise RuleDefinitionError(f"enum field {self.id!r} requires options")

    @classmethod
    def parse(cls, field_id: str, declaration: object) -> InsightField:
        """Accept ``"number"``, ``"enum:low|high"`` or ``{"type": ..., "options": [...]}``."""

        if isinstance(declaration, str):
            type_token, _, rest = declaration.partition(":")
            options = tuple(item.strip() for item in rest.split("|") if item.strip())
            return cls(id=field_id, type=_parse_type(field_id, type_token), options=options)
        if isinstance(declaration, Mapping):
            raw_options = declaration.get("options", declaration.get("values", ()))
            if isinstance(raw_options, str) or not isinstance(raw_options, Sequence):
                raise RuleDefinitionError(f"field {field_id!r} options must be a list")
            return cls(
                id=field_id,
                type=_parse_type(field_id, declaration.get("type")),
                options=tuple(str(item) for item in raw_options),
                description=str(declaration.get("description") or ""),
            )
        raise RuleDefinitionError(f"field {field_id!r} declaration must be a string or mapping")

    def describe(self) -> str:
        if self.type is InsightFieldType.ENUM:
            return f"enum: one of {', '.join(self.options)}"
        if self.type is InsightFieldType.TAGS:
            return "tags: array of short strings"
        return self.type.value


@dataclass(frozen=True, slots=True)
class InsightCategory:
    id: str
    name: str
    fields: tuple[InsightField, ...]
    description: str = ""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> InsightCategory:
        category_id = raw.get("id")
        if not isinstance(category_id, str) or not category_id.strip():
            raise RuleDefinitionError("insight category requires a string 'id'")
        structure = raw.get("outputStructure", raw.get("output_structure", raw.get("fields")))
        if not isinstance(structure, Mapping) or not structure:
            raise RuleDefinitionError(f"insight category {category_id!r} declares no fields")
        return cls(
            id=category_id.strip(),
            name=str(raw.get("name") or category_id),
            description=str(raw.get("description") or ""),
            fields=tuple(
                InsightField.parse(str(field_id), declaration)
                for field_id, declaration in structure.items()
            ),
        )


@dataclass(frozen=True, slots=True)
class InsightValue:
    """A field value tagged with the declared type it satisfied."""

    type: InsightFieldType
    value: JSONValue


InsightMap = dict[str, dict[str, InsightValue]]


@dataclass(frozen=True, slots=True)
class InsightNormalization:
    insights: Mapping[str, Mapping[str, InsightValue]]
    dropped: tuple[str, ...] = ()

    def to_plain(self) -> dict[str, dict[str, JSONValue]]:
        return {
            category: {field: tagged.value for field, tagged in fields.items()}
            for category, fields in self.insights.items()
        }


def check_field(field: InsightField, value: object) -> InsightValue | None:
    """Return the tagged value when ``value`` satisfies ``field``, else ``None``."""

    kind = field.type
    if kind in (InsightFieldType.STRING, InsightFieldType.TEXT):
        if isinstance(value, str):
            return InsightValue(kind, value.strip())
        return None
    if kind is InsightFieldType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value):
            return None
        return InsightValue(kind, value)
    if kind is InsightFieldType.BOOLEAN:
        return InsightValue(kind, value) if isinstance(value, bool) else None
    if kind is InsightFieldType.ENUM:
        if not isinstance(value, str):
            return None
        wanted = value.strip().casefold()
        for option in field.options:
            if option.casefold() == wanted:
                return InsightValue(kind, option)
        return None
    if kind is InsightFieldType.TAGS:
        if isinstance(value, str) or not isinstance(value, Sequence):
            return None
        if not all(isinstance(item, str) for item in value):
            return None
        return InsightValue(kind, [item.strip() for item in value if item.strip()])
    return None


def normalize_insights(
    raw: object,
    categories: Iterable[InsightCategory],
    *,
    logger: Any | None = None,
) -> InsightNormalization:
    log = logger if logger is not None else _logger
    if not isinstance(raw, Mapping):
        return InsightNormalization(insights={})

    accepted: InsightMap = {}
    dropped: list[str] = []
    for category in categories:
        payload = raw.get(category.id)
        if not isinstance(payload, Mapping):
            continue

        values: dict[str, InsightValue] = {}
        failed_field: str | None = None
        for field in category.fields:
            if payload.get(field.id) is None:
                continue
            checked = check_field(field, payload[field.id])
            if checked is None:
                failed_field = field.id
                break
            values[field.id] = checked

        if failed_field is not None:
            dropped.append(category.id)
            log.warning(
                "insight_category_dropped",
                category=category.id,
                field=failed_field,
                expected=field_type_name(category, failed_field),
            )
            continue
        if values:
            accepted[category.id] = values

    return InsightNormalization(insights=accepted, dropped=tuple(dropped))


def field_type_name(category: InsightCategory, field_id: str) -> str:
    for field in category.fields:
        if field.id == field_id:
            return field.type.value
    return "unknown"


def _parse_type(field_id: str, token: object) -> InsightFieldType:
    if isinstance(token, str):
        normalized = token.strip().lower()
        aliases = {"str": "string", "int": "number", "float": "number", "bool": "boolean"}
        normalized = aliases.get(normalized, normalized)
        for member in InsightFieldType:
            if member.value == normalized:
                return member
    raise RuleDefinitionError(f"field {field_id!r} has unsupported type {token!r}")


__all__ = [
    "InsightCategory",
    "InsightField",
    "InsightFieldType",
    "InsightNormalization",
    "InsightValue",
    "check_field",
    "normalize_insights",
]
