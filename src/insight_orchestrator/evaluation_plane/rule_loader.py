"""
insight-orchestrator — rule bundle loading

File: src/insight_orchestrator/evaluation_plane/rule_loader.py

Purpose
- Load an ordered criterion set and insight category declarations from a YAML
  or JSON bundle file: ``{criteria: [...], insight_categories: [...]}``.

Functional requirements
- YAML is parsed with ``yaml.safe_load`` only.
- Criterion ids must be unique within a bundle.
- Every problem is reported as RuleBundleError naming the file and entry.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from insight_orchestrator.evaluation_plane.criteria import (
    EvaluationCriterion,
    RuleDefinitionError,
)
from insight_orchestrator.evaluation_plane.insights import InsightCategory

_YAML_SUFFIXES = frozenset({".yaml", ".yml"})


class RuleBundleError(ValueError):
    """Raised when a rule bundle cannot be read or interpreted."""


@dataclass(frozen=True, slots=True)
class RuleBundle:
    criteria: tuple[EvaluationCriterion, ...]
    insight_categories: tuple[InsightCategory, ...] = ()
    source: str = "<memory>"


def load_rule_bundle(path: str | Path) -> RuleBundle:
    bundle_path = Path(path)
    try:
        text = bundle_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RuleBundleError(f"unable to read rule bundle {bundle_path}: {exc}") from exc
    return parse_rule_bundle(text, source=str(bundle_path), as_yaml=_is_yaml(bundle_path))


def parse_rule_bundle(text: str, *, source: str = "<memory>", as_yaml: bool = True) -> RuleBundle:
    try:
        # JSON is a YAML subset, but JSON bundles get JSON error messages.
        document = yaml.safe_load(text) if as_yaml else json.loads(text)
    except yaml.YAMLError as exc:
        raise RuleBundleError(f"{source}: invalid YAML: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise RuleBundleError(f"{source}: invalid JSON: {exc.msg} (line {exc.lineno})") from exc
    return rule_bundle_from_document(document, source=source)


def rule_bundle_from_document(document: object, *, source: str = "<memory>") -> RuleBundle:
    if isinstance(document, list):
        document = {"criteria": document}
    if not isinstance(document, Mapping):
        raise RuleBundleError(f"{source}: bundle root must be a mapping or a criteria list")

    raw_criteria = document.get("criteria", document.get("evaluationCriteria"))
    if not isinstance(raw_criteria, list) or not raw_criteria:
        raise RuleBundleError(f"{source}: bundle must declare a non-empty 'criteria' list")

    criteria: list[EvaluationCriterion] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_criteria):
        if not isinstance(raw, Mapping):
            raise RuleBundleError(f"{source}: criteria[{index}] must be a mapping")
        try:
            criterion = EvaluationCriterion.from_mapping(raw)
        except (RuleDefinitionError, TypeError) as exc:
            raise RuleBundleError(f"{source}: criteria[{index}]: {exc}") from exc
        if criterion.key in seen:
            raise RuleBundleError(f"{source}: duplicate criterion id {criterion.id!r}")
        seen.add(criterion.key)
        criteria.append(criterion)

    raw_categories = document.get("insight_categories", document.get("insightCategories")) or []
    if not isinstance(raw_categories, list):
        raise RuleBundleError(f"{source}: 'insight_categories' must be a list")
    categories: list[InsightCategory] = []
    for index, raw in enumerate(raw_categories):
        if not isinstance(raw, Mapping):
            raise RuleBundleError(f"{source}: insight_categories[{index}] must be a mapping")
        try:
            categories.append(InsightCategory.from_mapping(raw))
        except RuleDefinitionError as exc:
            raise RuleBundleError(f"{source}: insight_categories[{index}]: {exc}") from exc

    return RuleBundle(criteria=tuple(criteria), insight_categories=tuple(categories), source=source)


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in _YAML_SUFFIXES


__all__ = [
    "RuleBundle",
    "RuleBundleError",
    "load_rule_bundle",
    "parse_rule_bundle",
    "rule_bundle_from_document",
]
