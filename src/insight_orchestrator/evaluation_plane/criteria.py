"""
insight-orchestrator — evaluation criterion and result models

File: src/insight_orchestrator/evaluation_plane/criteria.py

Purpose
- Typed, read-only rule definitions and per-criterion results.

Functional requirements
- Rule mappings are accepted in camelCase or snake_case.
- Pass outcomes are normalized to passed / failed / partial; anything else is
  reported as uninterpretable rather than guessed.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final, TypeAlias

from insight_orchestrator.synthesis_plane.providers.base import JSONValue

Score: TypeAlias = int | float
CriterionId: TypeAlias = int | str

_PASSED_TOKENS: Final[frozenset[str]] = frozenset({"true", "pass", "passed", "yes", "met"})
_FAILED_TOKENS: Final[frozenset[str]] = frozenset({"false", "fail", "failed", "no", "not met"})
_PARTIAL_TOKENS: Final[frozenset[str]] = frozenset(
    {"partial", "partially", "partially met", "partial pass"}
)


class RuleDefinitionError(ValueError):
    """Raised when a criterion or insight declaration is malformed."""


class CriterionKind(enum.Enum):
    MUST_DO = "Must Do"
    MUST_NOT_DO = "Must Not Do"

    @classmethod
    def parse(cls, value: object) -> CriterionKind:
        if isinstance(value, CriterionKind):
            return value
        if isinstance(value, str):
            token = "".join(ch for ch in value.lower() if ch.isalpha())
            if token == "mustdo":
                return cls.MUST_DO
            if token == "mustnotdo":
                return cls.MUST_NOT_DO
        raise RuleDefinitionError(f"criterion type must be 'Must Do' or 'Must Not Do': {value!r}")


class PassOutcome(enum.Enum):
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"

    @classmethod
    def parse(cls, value: object) -> PassOutcome | None:
        """Interpret a model-reported ``passed`` value, or ``None`` if it cannot be read."""

        if isinstance(value, bool):
            return cls.PASSED if value else cls.FAILED
        if isinstance(value, str):
            token = " ".join(value.strip().lower().split())
            if token in _PASSED_TOKENS:
                return cls.PASSED
            if token in _FAILED_TOKENS:
                return cls.FAILED
            if token in _PARTIAL_TOKENS:
                return cls.PARTIAL
        return None

    def to_json(self) -> JSONValue:
        if self is PassOutcome.PARTIAL:
            return "partial"
        return self is PassOutcome.PASSED


class MatchKind(enum.Enum):
    """How a model result was tied to a criterion."""

    ID = "id"
    NAME = "name"
    POSITION = "position"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class ScoringStandard:
    passed: Score
    failed: Score
    partial: Score | None = None

    def __post_init__(self) -> None:
        for name in ("passed", "failed", "partial"):
            value = getattr(self, name)
            if value is None and name == "partial":
                continue
            if not _is_number(value):
                raise RuleDefinitionError(f"scoring.{name} must be a finite number")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ScoringStandard:
        return cls(
            passed=raw.get("passed"),  # type: ignore[arg-type]
            failed=raw.get("failed"),  # type: ignore[arg-type]
            partial=raw.get("partial"),  # type: ignore[arg-type]
        )

    def score_for(self, outcome: PassOutcome) -> Score:
        if outcome is PassOutcome.PASSED:
            return self.passed
        if outcome is PassOutcome.PARTIAL and self.partial is not None:
            return self.partial
        # Partial credit without a declared partial score earns the failed value.
        return self.failed

    def allowed_scores(self) -> tuple[Score, ...]:
        if self.partial is None:
            return (self.passed, self.failed)
        return (self.passed, self.failed, self.partial)

    def describe(self) -> str:
        text = f"{_fmt(self.passed)} points if passed, {_fmt(self.failed)} if failed"
        if self.partial:
            text += f", {_fmt(self.partial)} if partially met"
        return text

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"passed": self.passed, "failed": self.failed}
        if self.partial is not None:
            payload["partial"] = self.partial
        return payload


@dataclass(frozen=True, slots=True)
class EvaluationCriterion:
    """One scored rule. Read-only for the duration of an evaluation pass."""

    id: CriterionId
    kind: CriterionKind
    name: str
    definition: str
    evaluation_guidance: str
    scoring: ScoringStandard
    examples: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if criterion_key(self.id) is None:
            raise RuleDefinitionError(f"criterion id must be an integer or string: {self.id!r}")
        if not isinstance(self.name, str) or not self.name.strip():
            raise RuleDefinitionError(f"criterion {self.id!r} requires a name")
        object.__setattr__(self, "examples", tuple(str(item) for item in self.examples))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> EvaluationCriterion:
        scoring_raw = _first(raw, "scoringStandard", "scoring_standard", "scoring")
        if not isinstance(scoring_raw, Mapping):
            raise RuleDefinitionError(f"criterion {raw.get('id')!r} requires a scoring mapping")
        examples = raw.get("examples") or ()
        if isinstance(examples, str) or not isinstance(examples, Sequence):
            raise RuleDefinitionError(f"criterion {raw.get('id')!r} examples must be a list")
        return cls(
            id=raw.get("id"),  # type: ignore[arg-type]
            kind=CriterionKind.parse(_first(raw, "type", "kind")),
            name=str(raw.get("name") or ""),
            definition=str(raw.get("definition") or ""),
            evaluation_guidance=str(
                _first(raw, "evaluationCriteria", "evaluation_criteria", "evaluation_guidance")
                or ""
            ),
            scoring=ScoringStandard.from_mapping(scoring_raw),
            examples=tuple(str(item) for item in examples),
        )

    @property
    def key(self) -> str:
        key = criterion_key(self.id)
        assert key is not None
        return key

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "type": self.kind.value,
            "name": self.name,
            "definition": self.definition,
            "evaluation_guidance": self.evaluation_guidance,
            "scoring": self.scoring.to_dict(),
            "examples": list(self.examples),
        }


@dataclass(frozen=True, slots=True)
class CriterionResult:
    """One model result after score enforcement."""

    criterion_id: CriterionId | None
    model_proposed_score: JSONValue
    enforced_score: Score | None
    passed: PassOutcome | None
    evidence: str
    reasoning: str
    matched_by: MatchKind

    @property
    def scored(self) -> bool:
        return self.enforced_score is not None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "criterion_id": self.criterion_id,
            "model_proposed_score": self.model_proposed_score,
            "enforced_score": self.enforced_score,
            "passed": None if self.passed is None else self.passed.to_json(),
            "evidence": self.evidence,
            "reasoning": self.reasoning,
            "matched_by": self.matched_by.value,
        }


def criterion_key(value: object) -> str | None:
    """Comparable form of a criterion id (``1``, ``1.0`` and ``"1"`` collapse)."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def name_key(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = " ".join(value.split()).casefold()
    return normalized or None


def _is_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _fmt(value: Score) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _first(raw: Mapping[str, object], *keys: str) -> object | None:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


__all__ = [
    "CriterionId",
    "CriterionKind",
    "CriterionResult",
    "EvaluationCriterion",
    "MatchKind",
    "PassOutcome",
    "RuleDefinitionError",
    "Score",
    "ScoringStandard",
    "criterion_key",
    "name_key",
]
