"""
insight-orchestrator — rule-enforced evaluation scoring

File: src/insight_orchestrator/evaluation_plane/scoring.py

Purpose
- Evaluate a call transcript against an ordered criterion set and replace
  every model-proposed score with the value the rule defines.

What should be included in this file
- Result-to-criterion matching (id, then name, then position).
- Totals and percentage aggregation.
- Evaluation prompt assembly and the async engine (single call and batch).

Functional requirements
- Enforced scores are always drawn from the matched criterion's scoring.
- Positional matching is consulted only after id and name matching both fail.
- Unmatched results pass through unscored with a logged warning.
- Evaluation failures propagate; a score is never defaulted.
"""

from __future__ import annotations

import asyncio
import json
import math
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Final

import structlog

from insight_orchestrator.evaluation_plane.criteria import (
    CriterionResult,
    EvaluationCriterion,
    MatchKind,
    PassOutcome,
    Score,
    criterion_key,
    name_key,
)
from insight_orchestrator.evaluation_plane.insights import (
    InsightCategory,
    InsightNormalization,
    normalize_insights,
)
from insight_orchestrator.synthesis_plane.json_recovery import require_object
from insight_orchestrator.synthesis_plane.providers.base import (
    AuthError,
    CompletionRequest,
    JSONValue,
    OutputMode,
    SchemaMismatchError,
    SleepFn,
    UnscorableResultError,
)
from insight_orchestrator.synthesis_plane.providers.completion import Completer
from insight_orchestrator.synthesis_plane.retry import RetryPolicy, complete_json

EVALUATOR_SYSTEM_PROMPT: Final[str] = (
    "You are an expert call center quality assurance evaluator. You must return valid JSON only."
)
DEFAULT_OVERALL_FEEDBACK: Final[str] = "Evaluation completed."

_logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ScoreTotals:
    total: Score
    max_score: Score
    percentage: int


@dataclass(frozen=True, slots=True)
class EnforcementOutcome:
    results: tuple[CriterionResult, ...]
    warnings: tuple[UnscorableResultError, ...] = ()


def enforce_scores(
    raw_results: Sequence[object],
    criteria: Sequence[EvaluationCriterion],
    *,
    logger: Any | None = None,
) -> EnforcementOutcome:
    """Tie each model result to a criterion and assign the rule-defined score."""

    log = logger if logger is not None else _logger
    by_id = {criterion.key: criterion for criterion in criteria}
    by_name: dict[str, EvaluationCriterion] = {}
    for criterion in criteria:
        key = name_key(criterion.name)
        if key is not None:
            by_name.setdefault(key, criterion)

    entries: list[Mapping[str, object]] = [
        raw if isinstance(raw, Mapping) else {} for raw in raw_results
    ]
    matches = _assign_criteria(entries, criteria, by_id, by_name)
    results: list[CriterionResult] = []
    warnings: list[UnscorableResultError] = []

    for index, (entry, (criterion, matched_by)) in enumerate(zip(entries, matches, strict=True)):
        outcome = PassOutcome.parse(entry.get("passed"))
        proposed = _json_or_none(entry.get("score"))
        evidence = _text(entry.get("evidence"))
        reasoning = _text(entry.get("reasoning"))

        if criterion is None or outcome is None:
            if criterion is None:
                detail = (
                    f"result {index + 1} matches no criterion "
                    f"(criterionId={entry.get('criterionId')!r})"
                )
            else:
                detail = (
                    f"result {index + 1} for criterion {criterion.id!r} has an "
                    f"uninterpretable passed value {entry.get('passed')!r}"
                )
            warning = UnscorableResultError(detail, result_index=index)
            warnings.append(warning)
            log.warning("unscorable_result", result_index=index, detail=warning.detail)
            results.append(
                CriterionResult(
                    criterion_id=(
                        _raw_id(entry.get("criterionId")) if criterion is None else criterion.id
                    ),
                    model_proposed_score=proposed,
                    enforced_score=None,
                    passed=outcome,
                    evidence=evidence,
                    reasoning=reasoning,
                    matched_by=matched_by,
                )
            )
            continue

        enforced = criterion.scoring.score_for(outcome)
        if proposed != enforced:
            log.debug(
                "score_overridden",
                criterion_id=criterion.id,
                proposed=proposed,
                enforced=enforced,
            )
        results.append(
            CriterionResult(
                criterion_id=criterion.id,
                model_proposed_score=proposed,
                enforced_score=enforced,
                passed=outcome,
                evidence=evidence,
                reasoning=reasoning,
                matched_by=matched_by,
            )
        )

    return EnforcementOutcome(results=tuple(results), warnings=tuple(warnings))


def compute_totals(
    results: Iterable[CriterionResult],
    criteria: Sequence[EvaluationCriterion],
) -> ScoreTotals:
    total: Score = sum(r.enforced_score for r in results if r.enforced_score is not None)
    max_score: Score = sum(criterion.scoring.passed for criterion in criteria)
    return ScoreTotals(total=total, max_score=max_score, percentage=percentage_of(total, max_score))


def percentage_of(total: Score, max_score: Score) -> int:
    """``round(100 * total / max_score)`` with halves rounded up; 0 when nothing is scorable."""
    if max_score == 0:
        return 0
    return math.floor(100 * total / max_score + 0.5)


def _assign_criteria(
    entries: Sequence[Mapping[str, object]],
    criteria: Sequence[EvaluationCriterion],
    by_id: Mapping[str, EvaluationCriterion],
    by_name: Mapping[str, EvaluationCriterion],
) -> list[tuple[EvaluationCriterion | None, MatchKind]]:
    """
    Resolve every result by id, then every leftover by name, then by position.

    Each pass sees all results before the next one starts, so a positional
    guess can never take a criterion that a later result names explicitly.
    A criterion is claimed by at most one result.
    """

    assigned: list[tuple[EvaluationCriterion | None, MatchKind]] = [
        (None, MatchKind.NONE) for _ in entries
    ]
    claimed: set[str] = set()

    def claim(index: int, criterion: EvaluationCriterion | None, kind: MatchKind) -> None:
        if criterion is None or criterion.key in claimed:
            return
        assigned[index] = (criterion, kind)
        claimed.add(criterion.key)

    for index, entry in enumerate(entries):
        id_key = criterion_key(entry.get("criterionId", entry.get("criterion_id")))
        if id_key is not None:
            claim(index, by_id.get(id_key), MatchKind.ID)

    for index, entry in enumerate(entries):
        result_name = name_key(entry.get("criterionName", entry.get("name")))
        if assigned[index][0] is None and result_name is not None:
            claim(index, by_name.get(result_name), MatchKind.NAME)

    # Positional fallback for generators that renumber or drop ids.
    for index in range(min(len(entries), len(criteria))):
        if assigned[index][0] is None:
            claim(index, criteria[index], MatchKind.POSITION)

    return assigned


def _raw_id(value: object) -> int | str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, str)):
        return value
    return None


def _json_or_none(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return None


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def build_evaluation_prompt(
    transcript: str,
    criteria: Sequence[EvaluationCriterion],
    metadata: Mapping[str, object] | None = None,
    insight_categories: Sequence[InsightCategory] = (),
) -> str:
    criteria_text = "\n\n".join(
        f"{c.id}. {c.name} [{c.kind.value}]\n"
        f"   Definition: {c.definition}\n"
        f"   Evaluation: {c.evaluation_guidance}\n"
        f"   Scoring: {c.scoring.describe()}\n"
        f"   Examples: {' | '.join(c.examples)}"
        for c in criteria
    )
    metadata_text = "\n".join(
        f"- {_humanize(key)}: {value}" for key, value in (metadata or {}).items()
    )

    sections = [
        "You are an expert call center quality assurance evaluator. Analyze the following "
        f"call transcript and evaluate it against the {len(criteria)} quality criteria below.",
        f"CALL METADATA:\n{metadata_text or '- (none provided)'}",
        f"TRANSCRIPT:\n{transcript}",
        f"EVALUATION CRITERIA:\n{criteria_text}",
        "For each criterion, provide:\n"
        "1. criterionId (the criterion id shown above)\n"
        "2. score (one of the point values in its scoring standard)\n"
        '3. passed (true, false, or "partial" when partially met)\n'
        '4. evidence (exact quote from transcript if found, or "Not found" if missing)\n'
        "5. reasoning (brief explanation of why this score was given)",
        "Also provide an overallFeedback string (2-3 sentences) highlighting key strengths "
        "and areas for improvement.",
    ]

    if insight_categories:
        lines = []
        for category in insight_categories:
            fields = "; ".join(f"{f.id} ({f.describe()})" for f in category.fields)
            lines.append(
                f"- {category.id}: {category.name}. {category.description} Fields: {fields}"
            )
        sections.append(
            "Also provide an insights object keyed by category id, each holding the "
            "declared fields with values of the declared type:\n" + "\n".join(lines)
        )

    shape: dict[str, JSONValue] = {
        "results": [
            {
                "criterionId": 1,
                "score": 10,
                "passed": True,
                "evidence": "exact quote from transcript or description",
                "reasoning": "brief explanation",
            }
        ],
        "overallFeedback": "2-3 sentence summary",
    }
    if insight_categories:
        shape["insights"] = {category.id: {} for category in insight_categories}
    sections.append(
        "Return your evaluation as a valid JSON object with this exact structure:\n"
        + json.dumps(shape, indent=2)
    )
    sections.append(
        "Be thorough, fair, and specific in your evaluation. Quote exact phrases when possible."
    )
    return "\n\n".join(sections)


def _humanize(key: str) -> str:
    spaced = "".join(f" {ch}" if ch.isupper() else ch for ch in str(key)).replace("_", " ")
    return " ".join(word.capitalize() for word in spaced.split())


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EvaluationReport:
    call_id: str
    evaluated_at: str
    total_score: Score
    max_score: Score
    percentage: int
    results: tuple[CriterionResult, ...]
    overall_feedback: str
    insights: InsightNormalization = field(
        default_factory=lambda: InsightNormalization(insights={})
    )
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "call_id": self.call_id,
            "evaluated_at": self.evaluated_at,
            "total_score": self.total_score,
            "max_score": self.max_score,
            "percentage": self.percentage,
            "results": [result.to_dict() for result in self.results],
            "overall_feedback": self.overall_feedback,
            "insights": self.insights.to_plain(),
            "dropped_insight_categories": list(self.insights.dropped),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class EvaluationInput:
    call_id: str
    transcript: str
    metadata: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BatchEvaluation:
    reports: tuple[EvaluationReport, ...]
    failures: tuple[tuple[str, BaseException], ...] = ()


def score_results(
    payload: Mapping[str, object],
    criteria: Sequence[EvaluationCriterion],
    *,
    call_id: str,
    evaluated_at: str,
    insight_categories: Sequence[InsightCategory] = (),
    logger: Any | None = None,
) -> EvaluationReport:
    """Build a report from an already-parsed model payload (no network)."""

    raw_results = payload.get("results")
    if not isinstance(raw_results, list):
        raise SchemaMismatchError("Invalid response format from AI - missing results array")
    outcome = enforce_scores(raw_results, criteria, logger=logger)
    totals = compute_totals(outcome.results, criteria)
    feedback = payload.get("overallFeedback")
    return EvaluationReport(
        call_id=call_id,
        evaluated_at=evaluated_at,
        total_score=totals.total,
        max_score=totals.max_score,
        percentage=totals.percentage,
        results=outcome.results,
        overall_feedback=feedback.strip()
        if isinstance(feedback, str) and feedback.strip()
        else DEFAULT_OVERALL_FEEDBACK,
        insights=normalize_insights(payload.get("insights"), insight_categories, logger=logger),
        warnings=tuple(warning.detail for warning in outcome.warnings),
    )


class ScoringEnforcementEngine:
    """Async evaluator: one completion per call, scores enforced from the rules."""

    def __init__(
        self,
        completer: Completer,
        *,
        policy: RetryPolicy | None = None,
        insight_categories: Sequence[InsightCategory] = (),
        reasoning_effort: str | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._completer = completer
        self._policy = policy or RetryPolicy()
        self._insight_categories = tuple(insight_categories)
        self._reasoning_effort = reasoning_effort
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger if logger is not None else _logger

    async def evaluate(
        self,
        *,
        call_id: str,
        transcript: str,
        criteria: Sequence[EvaluationCriterion],
        metadata: Mapping[str, object] | None = None,
    ) -> EvaluationReport:
        if not transcript or not transcript.strip():
            raise ValueError("Transcript is empty or invalid")
        if not criteria:
            raise ValueError("at least one evaluation criterion is required")

        request = CompletionRequest.from_prompts(
            system=EVALUATOR_SYSTEM_PROMPT,
            user=build_evaluation_prompt(
                transcript, criteria, metadata, self._insight_categories
            ),
            output_mode=OutputMode.JSON_FREEFORM,
            reasoning_effort=self._reasoning_effort,
        )
        parsed = await complete_json(
            self._completer,
            request,
            self._policy,
            validate=_validate_evaluation_payload,
            sleep=self._sleep,
            label="Evaluation",
            logger=self._logger,
        )

        report = score_results(
            parsed.value,
            criteria,
            call_id=call_id,
            evaluated_at=self._clock().isoformat(),
            insight_categories=self._insight_categories,
            logger=self._logger,
        )
        if len(parsed.value["results"]) != len(criteria):
            self._logger.warning(
                "evaluation_result_count_mismatch",
                call_id=call_id,
                expected=len(criteria),
                received=len(parsed.value["results"]),
            )
        self._logger.info(
            "evaluation_completed",
            call_id=call_id,
            total_score=report.total_score,
            max_score=report.max_score,
            percentage=report.percentage,
            unscorable=len(report.warnings),
        )
        return report

    async def evaluate_batch(
        self,
        calls: Iterable[EvaluationInput],
        criteria: Sequence[EvaluationCriterion],
    ) -> BatchEvaluation:
        """Evaluate calls one after another; a failed call is recorded, not fatal."""

        reports: list[EvaluationReport] = []
        failures: list[tuple[str, BaseException]] = []
        for call in calls:
            try:
                reports.append(
                    await self.evaluate(
                        call_id=call.call_id,
                        transcript=call.transcript,
                        criteria=criteria,
                        metadata=call.metadata,
                    )
                )
            except AuthError:
                raise
            except Exception as exc:  # noqa: BLE001 - batch keeps going past one bad call.
                failures.append((call.call_id, exc))
                self._logger.warning("evaluation_failed", call_id=call.call_id, error=str(exc))
        return BatchEvaluation(reports=tuple(reports), failures=tuple(failures))


def _validate_evaluation_payload(value: JSONValue) -> dict[str, JSONValue]:
    payload = require_object(value, ("results",), context="evaluation response")
    results = payload["results"]
    if not isinstance(results, list):
        raise SchemaMismatchError("Invalid response format from AI - missing results array")
    for index, item in enumerate(results):
        if not isinstance(item, dict):
            raise SchemaMismatchError(f"evaluation result {index + 1} is not an object")
    return payload


__all__ = [
    "BatchEvaluation",
    "DEFAULT_OVERALL_FEEDBACK",
    "EVALUATOR_SYSTEM_PROMPT",
    "EnforcementOutcome",
    "EvaluationInput",
    "EvaluationReport",
    "ScoreTotals",
    "ScoringEnforcementEngine",
    "build_evaluation_prompt",
    "compute_totals",
    "enforce_scores",
    "percentage_of",
    "score_results",
]
