"""
insight-orchestrator — evaluation plane

File: src/insight_orchestrator/evaluation_plane/__init__.py

Purpose
- Rubric scoring with enforced criterion points, insight extraction and
  sentiment timelines for call transcripts.

Functional requirements
- Reported scores must come from the rubric, never from the model's numbers.
"""

from insight_orchestrator.evaluation_plane.criteria import (
    CriterionKind,
    CriterionResult,
    EvaluationCriterion,
    MatchKind,
    PassOutcome,
    RuleDefinitionError,
    ScoringStandard,
)
from insight_orchestrator.evaluation_plane.criteria_cache import CriteriaCache
from insight_orchestrator.evaluation_plane.insights import (
    InsightCategory,
    InsightField,
    normalize_insights,
)
from insight_orchestrator.evaluation_plane.rule_loader import (
    RuleBundle,
    RuleBundleError,
    load_rule_bundle,
)
from insight_orchestrator.evaluation_plane.scoring import (
    BatchEvaluation,
    EvaluationReport,
    ScoringEnforcementEngine,
    enforce_scores,
    score_results,
)
from insight_orchestrator.evaluation_plane.sentiment import (
    SentimentAnalyzer,
    SentimentLabel,
    SentimentSegment,
    SentimentTimeline,
    TranscriptPhrase,
    stitch_segments,
)

__all__ = [
    "BatchEvaluation",
    "CriteriaCache",
    "CriterionKind",
    "CriterionResult",
    "EvaluationCriterion",
    "EvaluationReport",
    "InsightCategory",
    "InsightField",
    "MatchKind",
    "PassOutcome",
    "RuleBundle",
    "RuleBundleError",
    "RuleDefinitionError",
    "ScoringEnforcementEngine",
    "ScoringStandard",
    "SentimentAnalyzer",
    "SentimentLabel",
    "SentimentSegment",
    "SentimentTimeline",
    "TranscriptPhrase",
    "enforce_scores",
    "load_rule_bundle",
    "normalize_insights",
    "score_results",
    "stitch_segments",
]
