"""Unit tests for YAML/JSON rule bundle loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from insight_orchestrator.evaluation_plane.criteria import CriterionKind
from insight_orchestrator.evaluation_plane.rule_loader import (
    RuleBundleError,
    load_rule_bundle,
    parse_rule_bundle,
    rule_bundle_from_document,
)


_YAML_BUNDLE = """\
criteria:
  - id: 1
    type: Must Do
    name: Greeting
    definition: Agent greets the caller by name.
    evaluationCriteria: Greeting appears in the first two turns.
    scoringStandard: {passed: 10, failed: 0}
  - id: 2
    type: Must Not Do
    name: Interrupting
    scoringStandard: {passed: 5, failed: 0, partial: 2}
    examples: ["Talking over the customer"]
insight_categories:
  - id: resolution
    outputStructure:
      resolved: boolean
      nextStep: text
"""


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def _criterion(criterion_id: object, name: str) -> dict[str, object]:
    return {
        "id": criterion_id,
        "name": name,
        "type": "Must Do",
        "scoring": {"passed": 1, "failed": 0},
    }


def test_yaml_bundle_loads_in_declared_order(tmp_path: Path) -> None:
    bundle = load_rule_bundle(_write(tmp_path / "rules.yaml", _YAML_BUNDLE))

    assert [criterion.name for criterion in bundle.criteria] == ["Greeting", "Interrupting"]
    assert bundle.criteria[1].kind is CriterionKind.MUST_NOT_DO
    assert bundle.criteria[1].scoring.partial == 2
    assert [category.id for category in bundle.insight_categories] == ["resolution"]
    assert bundle.source.endswith("rules.yaml")


def test_json_bundle_may_be_a_bare_criteria_list(tmp_path: Path) -> None:
    document = [_criterion("c1", "Close")]

    bundle = load_rule_bundle(_write(tmp_path / "rules.json", json.dumps(document)))

    assert bundle.criteria[0].id == "c1"
    assert bundle.insight_categories == ()


def test_invalid_json_reports_line(tmp_path: Path) -> None:
    path = _write(tmp_path / "rules.json", '{\n  "criteria": [,]\n}')

    with pytest.raises(RuleBundleError, match=r"invalid JSON: .* \(line 2\)"):
        load_rule_bundle(path)


def test_invalid_yaml_is_reported() -> None:
    with pytest.raises(RuleBundleError, match="invalid YAML"):
        parse_rule_bundle("criteria: [unclosed", source="inline.yaml")


def test_missing_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(RuleBundleError, match="unable to read rule bundle"):
        load_rule_bundle(tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ("just text", "bundle root must be a mapping"),
        ({"criteria": []}, "non-empty 'criteria' list"),
        ({"criteria": ["x"]}, r"criteria\[0\] must be a mapping"),
        ({"criteria": [{"id": 1, "name": "n", "type": "Must Do"}]}, r"criteria\[0\]: "),
        (
            {"criteria": [_criterion(1, "a"), _criterion("1", "b")]},
            "duplicate criterion id '1'",
        ),
        (
            {"criteria": [_criterion(1, "a")], "insight_categories": {"id": "x"}},
            "'insight_categories' must be a list",
        ),
        (
            {"criteria": [_criterion(1, "a")], "insightCategories": [{"id": "x"}]},
            r"insight_categories\[0\]: ",
        ),
    ],
)
def test_malformed_bundles_are_rejected(document: object, message: str) -> None:
    with pytest.raises(RuleBundleError, match=message):
        rule_bundle_from_document(document, source="bundle")
