"""
insight-orchestrator — unit tests for rule-enforced evaluation scoring

File: tests/unit/evaluation_plane/test_scoring.py

Purpose
- Validate that enforced scores always come from the matched rule, that the
  matching order is id, then name, then position, and that totals aggregate
  enforced scores only.

What this test file should cover
- Enforced score membership and total/percentage arithmetic (property tests).
- Positional fallback reachable only after id and name matching fail.
- Engine request shape, empty transcripts and batch failure isolation.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from insight_orchestrator.evaluation_plane.criteria import (
    CriterionKind,
    EvaluationCriterion,
    MatchKind,
    PassOutcome,
    ScoringStandard,
)
from insight_orchestrator.evaluation_plane.insights import InsightCategory
from insight_orchestrator.evaluation_plane.scoring import (
    DEFAULT_OVERALL_FEEDBACK,
    EvaluationInput,
    ScoringEnforcementEngine,
    build_evaluation_prompt,
    compute_totals,
    enforce_scores,
    percentage_of,
    score_results,
)
from insight_orchestrator.synthesis_plane.providers.base import (
    AuthError,
    CompletionRequest,
    CompletionResult,
    OutputMode,
    RetryExhaustedError,
    SchemaMismatchError,
)
from insight_orchestrator.synthesis_plane.retry import RetryPolicy

_FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@dataclass(slots=True)
class _SleepRecorder:
    calls: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@dataclass(slots=True)
class _ScriptedCompleter:
    outcomes: deque[str | Exception]
    requests: list[CompletionRequest] = field(default_factory=list)

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        if not self.outcomes:
            raise RuntimeError("scripted completer exhausted")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return CompletionResult(raw_text=outcome)


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, object]]] = []

    def _record(self, level: str, event: str, fields: dict[str, object]) -> None:
        self.events.append((level, event, fields))

    def debug(self, event: str, **fields: object) -> None:
        self._record("debug", event, fields)

    def info(self, event: str, **fields: object) -> None:
        self._record("info", event, fields)

    def warning(self, event: str, **fields: object) -> None:
        self._record("warning", event, fields)

    def names(self, level: str) -> list[str]:
        return [event for lvl, event, _ in self.events if lvl == level]


def _criterion(
    criterion_id: int | str,
    name: str,
    *,
    passed: int = 10,
    failed: int = 0,
    partial: int | None = None,
) -> EvaluationCriterion:
    return EvaluationCriterion(
        id=criterion_id,
        kind=CriterionKind.MUST_DO,
        name=name,
        definition=f"{name} definition",
        evaluation_guidance=f"{name} guidance",
        scoring=ScoringStandard(passed=passed, failed=failed, partial=partial),
        examples=(f"{name} example",),
    )


def _engine(
    outcomes: list[str | Exception],
    *,
    max_attempts: int = 1,
    insight_categories: tuple[InsightCategory, ...] = (),
) -> tuple[ScoringEnforcementEngine, _ScriptedCompleter, _RecordingLogger]:
    completer = _ScriptedCompleter(outcomes=deque(outcomes))
    logger = _RecordingLogger()
    engine = ScoringEnforcementEngine(
        completer,
        policy=RetryPolicy(max_attempts=max_attempts, backoff_ms=0),
        insight_categories=insight_categories,
        sleep=_SleepRecorder(),
        clock=lambda: _FIXED_NOW,
        logger=logger,
    )
    return engine, completer, logger


def test_model_proposed_score_is_replaced_by_rule_score() -> None:
    criteria = [_criterion(1, "Greeting", passed=10, failed=0)]

    outcome = enforce_scores([{"criterionId": 1, "passed": True, "score": 3}], criteria)

    (result,) = outcome.results
    assert result.enforced_score == 10
    assert result.model_proposed_score == 3
    assert result.matched_by is MatchKind.ID
    assert compute_totals(outcome.results, criteria).total == 10


def test_matching_prefers_id_then_name() -> None:
    criteria = [_criterion(1, "Greeting"), _criterion(2, "Verify identity", partial=5)]
    raw = [
        {"criterionName": " verify  IDENTITY", "passed": "partial", "score": 9},
        {"criterionId": "1", "passed": False, "score": 10},
    ]

    outcome = enforce_scores(raw, criteria)

    first, second = outcome.results
    assert (first.criterion_id, first.matched_by, first.enforced_score) == (2, MatchKind.NAME, 5)
    assert (second.criterion_id, second.matched_by, second.enforced_score) == (1, MatchKind.ID, 0)
    assert outcome.warnings == ()


def test_positional_fallback_only_after_id_and_name_fail() -> None:
    criteria = [_criterion(1, "Greeting"), _criterion(2, "Closing")]

    renumbered = enforce_scores(
        [{"criterionId": 101, "passed": True}, {"criterionId": 102, "passed": False}], criteria
    )
    by_id = enforce_scores(
        [{"criterionId": 2, "passed": True}, {"criterionId": 1, "passed": True}], criteria
    )

    assert [r.matched_by for r in renumbered.results] == [MatchKind.POSITION, MatchKind.POSITION]
    assert [r.criterion_id for r in renumbered.results] == [1, 2]
    # Ids that resolve are never overridden by position.
    assert [r.matched_by for r in by_id.results] == [MatchKind.ID, MatchKind.ID]
    assert [r.criterion_id for r in by_id.results] == [2, 1]


def test_positional_fallback_never_reuses_a_claimed_criterion() -> None:
    criteria = [_criterion(1, "Greeting"), _criterion(2, "Closing")]
    logger = _RecordingLogger()

    outcome = enforce_scores(
        [{"criterionId": 2, "passed": True}, {"criterionId": 99, "passed": True, "score": 4}],
        criteria,
        logger=logger,
    )

    unmatched = outcome.results[1]
    assert unmatched.matched_by is MatchKind.NONE
    assert unmatched.enforced_score is None
    assert unmatched.criterion_id == 99
    assert unmatched.model_proposed_score == 4
    assert outcome.warnings[0].result_index == 1
    assert logger.names("warning") == ["unscorable_result"]
    assert compute_totals(outcome.results, criteria).total == 10


def test_later_id_match_wins_over_earlier_positional_guess() -> None:
    criteria = [
        _criterion(1, "Greeting", passed=10),
        _criterion(2, "Verification", passed=20),
        _criterion(3, "Closing", passed=30),
    ]

    outcome = enforce_scores(
        [
            {"criterionId": 3, "passed": True},
            {"passed": False},
            {"criterionId": 2, "passed": True},
        ],
        criteria,
    )

    first, second, third = outcome.results
    assert (first.criterion_id, first.matched_by, first.enforced_score) == (3, MatchKind.ID, 30)
    assert (third.criterion_id, third.matched_by, third.enforced_score) == (2, MatchKind.ID, 20)
    # Position 2 belongs to criterion 2, which the third result names by id.
    assert (second.matched_by, second.enforced_score) == (MatchKind.NONE, None)
    assert [warning.result_index for warning in outcome.warnings] == [1]
    assert compute_totals(outcome.results, criteria).total == 50


def test_name_matches_resolve_before_positional_fallback() -> None:
    criteria = [_criterion(1, "Greeting"), _criterion(2, "Closing", passed=5)]

    outcome = enforce_scores(
        [{"criterionId": 77, "passed": True}, {"criterionName": "greeting", "passed": True}],
        criteria,
    )

    first, second = outcome.results
    assert (second.criterion_id, second.matched_by) == (1, MatchKind.NAME)
    assert (first.criterion_id, first.matched_by) == (77, MatchKind.NONE)
    assert compute_totals(outcome.results, criteria).total == 10


def test_uninterpretable_pass_value_is_unscored() -> None:
    criteria = [_criterion(1, "Greeting")]

    outcome = enforce_scores([{"criterionId": 1, "passed": "maybe", "score": 10}], criteria)

    assert outcome.results[0].enforced_score is None
    assert "uninterpretable passed value 'maybe'" in outcome.warnings[0].detail


@pytest.mark.parametrize(
    ("total", "max_score", "expected"),
    [(0, 0, 0), (10, 20, 50), (1, 8, 13), (1, 3, 33), (2, 3, 67), (-5, 10, -50)],
)
def test_percentage_rounds_half_up(total: int, max_score: int, expected: int) -> None:
    assert percentage_of(total, max_score) == expected


_SCORING = st.builds(
    ScoringStandard,
    passed=st.integers(min_value=1, max_value=20),
    failed=st.integers(min_value=-5, max_value=0),
    partial=st.none() | st.integers(min_value=0, max_value=10),
)
_RAW_RESULT = st.fixed_dictionaries(
    {
        "criterionId": st.none() | st.integers(min_value=0, max_value=8) | st.text(max_size=3),
        "passed": st.sampled_from([True, False, "partial", "passed", "maybe", None]),
        "score": st.none() | st.integers(min_value=-100, max_value=100) | st.floats(),
    },
    optional={"criterionName": st.sampled_from(["c1", "C2", "unknown"])},
)


@settings(max_examples=150, derandomize=True, deadline=None)
@given(
    scorings=st.lists(_SCORING, min_size=1, max_size=5),
    raw_results=st.lists(_RAW_RESULT | st.integers(), max_size=8),
)
def test_enforced_scores_come_from_rules_and_totals_aggregate_them(
    scorings: list[ScoringStandard], raw_results: list[object]
) -> None:
    criteria = [
        EvaluationCriterion(
            id=index + 1,
            kind=CriterionKind.MUST_DO,
            name=f"c{index + 1}",
            definition="",
            evaluation_guidance="",
            scoring=scoring,
        )
        for index, scoring in enumerate(scorings)
    ]
    by_id = {criterion.id: criterion for criterion in criteria}

    outcome = enforce_scores(raw_results, criteria)
    totals = compute_totals(outcome.results, criteria)

    assert len(outcome.results) == len(raw_results)
    enforced = []
    for result in outcome.results:
        if result.enforced_score is None:
            continue
        assert result.enforced_score in by_id[result.criterion_id].scoring.allowed_scores()
        enforced.append(result.enforced_score)
    assert totals.total == sum(enforced)
    assert totals.max_score == sum(scoring.passed for scoring in scorings)
    assert totals.percentage == percentage_of(totals.total, totals.max_score)
    scored_ids = [r.criterion_id for r in outcome.results if r.scored]
    assert len(scored_ids) == len(set(scored_ids))


def test_score_results_requires_results_array() -> None:
    with pytest.raises(SchemaMismatchError, match="missing results array"):
        score_results({"results": {}}, [_criterion(1, "x")], call_id="c", evaluated_at="t")


def test_score_results_defaults_feedback() -> None:
    report = score_results(
        {"results": [], "overallFeedback": "   "},
        [_criterion(1, "x")],
        call_id="c",
        evaluated_at="t",
    )

    assert report.overall_feedback == DEFAULT_OVERALL_FEEDBACK
    assert (report.total_score, report.max_score, report.percentage) == (0, 10, 0)


def test_prompt_lists_criteria_metadata_and_insight_shape() -> None:
    category = InsightCategory.from_mapping(
        {"id": "sentiment", "name": "Customer mood", "outputStructure": {"mood": "string"}}
    )

    prompt = build_evaluation_prompt(
        "Agent: Hello",
        [_criterion(1, "Greeting", partial=5)],
        {"agentName": "Dana", "queue_id": "Q7"},
        [category],
    )

    assert "1. Greeting [Must Do]" in prompt
    assert "Scoring: 10 points if passed, 0 if failed, 5 if partially met" in prompt
    assert "- Agent Name: Dana" in prompt
    assert "- Queue Id: Q7" in prompt
    assert "TRANSCRIPT:\nAgent: Hello" in prompt
    assert "- sentiment: Customer mood." in prompt
    assert '"insights": {' in prompt


@pytest.mark.unit
async def test_engine_evaluates_with_freeform_json_and_enforces_scores() -> None:
    criteria = [_criterion(1, "Greeting"), _criterion(2, "Closing", passed=5)]
    category = InsightCategory.from_mapping(
        {"id": "call", "outputStructure": {"resolved": "boolean"}}
    )
    payload = {
        "results": [
            {"criterionId": 1, "passed": True, "score": 1, "evidence": " Hi there "},
            {"criterionId": 2, "passed": False, "score": 5},
        ],
        "overallFeedback": "Good opening.",
        "insights": {"call": {"resolved": True}},
    }
    engine, completer, logger = _engine(
        [f"```json\n{json.dumps(payload)}\n```"], insight_categories=(category,)
    )

    report = await engine.evaluate(
        call_id="call-7", transcript="Agent: Hi there", criteria=criteria
    )

    (request,) = completer.requests
    assert request.output_mode is OutputMode.JSON_FREEFORM
    assert report.evaluated_at == _FIXED_NOW.isoformat()
    assert (report.total_score, report.max_score, report.percentage) == (10, 15, 67)
    assert report.results[0].evidence == "Hi there"
    assert report.results[0].passed is PassOutcome.PASSED
    assert report.insights.to_plain() == {"call": {"resolved": True}}
    assert report.to_dict()["overall_feedback"] == "Good opening."
    assert "evaluation_completed" in logger.names("info")


@pytest.mark.unit
async def test_engine_logs_result_count_mismatch() -> None:
    criteria = [_criterion(1, "Greeting"), _criterion(2, "Closing")]
    engine, _, logger = _engine([json.dumps({"results": [{"criterionId": 1, "passed": True}]})])

    report = await engine.evaluate(call_id="c", transcript="t", criteria=criteria)

    assert report.percentage == 50
    assert "evaluation_result_count_mismatch" in logger.names("warning")


@pytest.mark.unit
@pytest.mark.parametrize("transcript", ["", "   \n"])
async def test_empty_transcript_is_rejected_before_any_call(transcript: str) -> None:
    engine, completer, _ = _engine([])

    with pytest.raises(ValueError, match="Transcript is empty"):
        await engine.evaluate(call_id="c", transcript=transcript, criteria=[_criterion(1, "x")])

    assert completer.requests == []


@pytest.mark.unit
async def test_malformed_evaluation_payload_exhausts_retries() -> None:
    engine, completer, _ = _engine(
        [json.dumps({"results": "none"}), json.dumps({"results": [1]})], max_attempts=2
    )

    with pytest.raises(RetryExhaustedError, match="Evaluation failed after 2 attempts"):
        await engine.evaluate(call_id="c", transcript="t", criteria=[_criterion(1, "x")])

    assert len(completer.requests) == 2


@pytest.mark.unit
async def test_batch_records_failures_and_keeps_going() -> None:
    criteria = [_criterion(1, "Greeting")]
    ok = json.dumps({"results": [{"criterionId": 1, "passed": True}]})
    engine, _, _ = _engine([ok, "not json", ok])

    batch = await engine.evaluate_batch(
        [
            EvaluationInput(call_id="a", transcript="t"),
            EvaluationInput(call_id="b", transcript="t"),
            EvaluationInput(call_id="c", transcript="t"),
        ],
        criteria,
    )

    assert [report.call_id for report in batch.reports] == ["a", "c"]
    assert [call_id for call_id, _ in batch.failures] == ["b"]
    assert isinstance(batch.failures[0][1], RetryExhaustedError)


@pytest.mark.unit
async def test_batch_stops_on_auth_failure() -> None:
    engine, completer, _ = _engine([AuthError("bad key", http_status=401)])

    with pytest.raises(AuthError):
        await engine.evaluate_batch(
            [
                EvaluationInput(call_id="a", transcript="t"),
                EvaluationInput(call_id="b", transcript="t"),
            ],
            [_criterion(1, "x")],
        )

    assert len(completer.requests) == 1
