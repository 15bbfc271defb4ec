"""
insight-orchestrator — placeholder audit for generated mock payloads

File: src/insight_orchestrator/quality/placeholder_audit.py

Purpose
- Detect generated payloads that are empty or still carry placeholder text, so
  they are rejected before entering a workflow's consistency context.

Functional requirements
- Findings are deterministic: ordered by JSON path, then marker.
- Matching is case-insensitive and covers object keys as well as string values.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

PLACEHOLDER_MARKERS: Final[tuple[str, ...]] = ("mock response", "placeholder")


@dataclass(frozen=True, slots=True, order=True)
class PlaceholderFinding:
    """One placeholder marker located inside a payload."""

    path: str
    marker: str
    snippet: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "marker": self.marker, "snippet": self.snippet}


def find_placeholder_markers(
    payload: object,
    *,
    markers: Sequence[str] = PLACEHOLDER_MARKERS,
) -> tuple[PlaceholderFinding, ...]:
    """Return every marker occurrence in ``payload`` keys and string values."""

    lowered = tuple(marker.lower() for marker in markers if marker.strip())
    findings: list[PlaceholderFinding] = []
    _walk(payload, "$", lowered, findings)
    return tuple(sorted(set(findings)))


def is_empty_payload(payload: object) -> bool:
    if payload is None:
        return True
    if isinstance(payload, str):
        return not payload.strip()
    if isinstance(payload, (Mapping, list, tuple)):
        return len(payload) == 0
    return False


def rejection_reason(
    payload: object,
    *,
    markers: Sequence[str] = PLACEHOLDER_MARKERS,
) -> str | None:
    """Return why ``payload`` is unusable as a mock, or ``None`` when it is acceptable."""

    if is_empty_payload(payload):
        return f"empty payload ({_render(payload)})"
    findings = find_placeholder_markers(payload, markers=markers)
    if findings:
        first = findings[0]
        return f"placeholder marker '{first.marker}' at {first.path}"
    return None


def is_placeholder_payload(
    payload: object,
    *,
    markers: Sequence[str] = PLACEHOLDER_MARKERS,
) -> bool:
    return rejection_reason(payload, markers=markers) is not None


def _walk(
    value: object,
    path: str,
    markers: tuple[str, ...],
    findings: list[PlaceholderFinding],
) -> None:
    if isinstance(value, str):
        _scan_text(value, path, markers, findings)
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            key_text = str(key)
            child = f"{path}.{key_text}"
            _scan_text(key_text, child, markers, findings)
            _walk(item, child, markers, findings)
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _walk(item, f"{path}[{index}]", markers, findings)


def _scan_text(
    text: str,
    path: str,
    markers: tuple[str, ...],
    findings: list[PlaceholderFinding],
) -> None:
    lowered = text.lower()
    for marker in markers:
        position = lowered.find(marker)
        if position >= 0:
            start = max(0, position - 20)
            snippet = text[start : position + len(marker) + 20]
            findings.append(PlaceholderFinding(path=path, marker=marker, snippet=snippet))


def _render(payload: object) -> str:
    try:
        return json.dumps(payload, sort_keys=True)
    except (TypeError, ValueError):
        return repr(payload)


__all__ = [
    "PLACEHOLDER_MARKERS",
    "PlaceholderFinding",
    "find_placeholder_markers",
    "is_empty_payload",
    "is_placeholder_payload",
    "rejection_reason",
]
