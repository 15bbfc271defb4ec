"""
insight-orchestrator — best-effort JSON recovery from completion text

File: src/insight_orchestrator/synthesis_plane/json_recovery.py

Purpose
- Recover exactly one JSON value from text that may carry prose, code fences,
  trailing commas or comments around it.

Functional requirements
- Valid JSON input parses unchanged.
- Schema-constrained completions skip the heuristics and parse directly.
- Failures raise JsonExtractError with a bounded excerpt of the input.
"""

from __future__ import annotations

import json
import re
from typing import Final

from insight_orchestrator.synthesis_plane.providers.base import (
    JsonExtractError,
    JSONValue,
    SchemaMismatchError,
)

EXCERPT_LIMIT: Final[int] = 200

_FENCE_OPEN_RE: Final[re.Pattern[str]] = re.compile(r"```(?:json)?[ \t]*", re.IGNORECASE)
_FENCE_CLOSE_RE: Final[re.Pattern[str]] = re.compile(r"```")
_OUTER_SPAN_RE: Final[re.Pattern[str]] = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")
_TRAILING_COMMA_RE: Final[re.Pattern[str]] = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE: Final[re.Pattern[str]] = re.compile(r"//.*$", re.MULTILINE)
_BLOCK_COMMENT_RE: Final[re.Pattern[str]] = re.compile(r"/\*[\s\S]*?\*/")


def extract_json(text: str) -> JSONValue:
    """Parse ``text`` as JSON, applying cleanup passes until one parses."""

    if not isinstance(text, str):
        raise TypeError("extract_json expects a string")

    last_error: json.JSONDecodeError | None = None
    for candidate in _candidates(text):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc

    detail = "Failed to parse JSON from completion"
    if last_error is not None:
        detail = f"{detail}: {last_error.msg}"
    raise JsonExtractError(detail, excerpt=excerpt(text))


def parse_completion_json(text: str, *, schema_mode: bool) -> JSONValue:
    """Parse completion output according to the request's output mode."""

    if not schema_mode:
        return extract_json(text)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise JsonExtractError(
            f"Schema-constrained response is not valid JSON: {exc.msg}",
            excerpt=excerpt(text),
        ) from exc


def require_object(
    value: JSONValue,
    required_keys: tuple[str, ...] = (),
    *,
    context: str,
) -> dict[str, JSONValue]:
    """Return ``value`` as an object, raising SchemaMismatchError on missing keys."""

    if not isinstance(value, dict):
        raise SchemaMismatchError(f"{context}: expected a JSON object, got {_json_type(value)}")
    missing = [key for key in required_keys if key not in value]
    if missing:
        raise SchemaMismatchError(f"{context}: missing required keys {', '.join(missing)}")
    return value


def excerpt(text: str, *, limit: int = EXCERPT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _candidates(text: str) -> list[str]:
    # Each pass builds on the previous one; direct parse always comes first.
    stages: list[str] = [text]

    cleaned = text.strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned).strip()
    stages.append(cleaned)

    match = _OUTER_SPAN_RE.search(cleaned)
    if match is not None:
        cleaned = match.group(1)
        stages.append(cleaned)

    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    stages.append(cleaned)

    # Comment stripping can damage string values holding "//", so it runs last.
    cleaned = _BLOCK_COMMENT_RE.sub("", _LINE_COMMENT_RE.sub("", cleaned))
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    stages.append(cleaned)

    unique: list[str] = []
    for stage in stages:
        if stage and stage not in unique:
            unique.append(stage)
    return unique


def _json_type(value: JSONValue) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


__all__ = [
    "EXCERPT_LIMIT",
    "excerpt",
    "extract_json",
    "parse_completion_json",
    "require_object",
]
