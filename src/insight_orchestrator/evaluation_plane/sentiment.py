"""
insight-orchestrator — sentiment timeline stitching and overall sentiment

File: src/insight_orchestrator/evaluation_plane/sentiment.py

Purpose
- Turn untrusted model sentiment spans into an ordered, clamped segment list.
- Classify a whole call's sentiment with a conservative neutral fallback.

Functional requirements
- Segments satisfy ``0 <= start_ms < end_ms <= total_duration_ms`` and are
  sorted by start. Overlaps are kept as reported.
- Labels collapse to positive / neutral / negative by substring.
- Overall sentiment degrades to neutral on failure; auth problems still raise.
"""

from __future__ import annotations

import asyncio
import enum
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

import structlog

from insight_orchestrator.synthesis_plane.json_recovery import require_object
from insight_orchestrator.synthesis_plane.providers.base import (
    AuthError,
    CompletionRequest,
    JSONValue,
    OrchestrationError,
    OutputMode,
    SchemaMismatchError,
    SleepFn,
)
from insight_orchestrator.synthesis_plane.providers.completion import Completer
from insight_orchestrator.synthesis_plane.retry import RetryPolicy, complete_json, complete_text

DEGENERATE_SPAN_FALLBACK_MS: Final[int] = 1000
MAX_PROMPT_PHRASES: Final[int] = 200
MAX_SEGMENTS: Final[int] = 12

EMPTY_CONVERSATION_SUMMARY: Final[str] = "No conversation available for sentiment analysis."
DEFAULT_SUMMARY: Final[str] = "Sentiment analysis completed."

TIMELINE_SYSTEM_PROMPT: Final[str] = (
    "You are an experienced contact-center sentiment analyst. Return valid JSON only using "
    "the specified schema and sentiment labels."
)
OVERALL_SYSTEM_PROMPT: Final[str] = (
    "You are an expert call center sentiment analyst. Return only the sentiment label."
)

_logger = structlog.get_logger(__name__)


class SentimentLabel(enum.Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


def normalize_sentiment_label(value: object) -> SentimentLabel:
    text = value.lower() if isinstance(value, str) else ""
    if "neg" in text:
        return SentimentLabel.NEGATIVE
    if "pos" in text:
        return SentimentLabel.POSITIVE
    return SentimentLabel.NEUTRAL


@dataclass(frozen=True, slots=True)
class TranscriptPhrase:
    """One recognized phrase of a call transcript."""

    text: str
    offset_ms: float = 0
    duration_ms: float = 0
    speaker: int | None = None
    channel: int | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> TranscriptPhrase:
        text = raw.get("text") or raw.get("lexical") or ""
        return cls(
            text=str(text),
            offset_ms=_number(raw.get("offsetMilliseconds", raw.get("offset_ms"))) or 0,
            duration_ms=_number(raw.get("durationMilliseconds", raw.get("duration_ms"))) or 0,
            speaker=_int_or_none(raw.get("speaker")),
            channel=_int_or_none(raw.get("channel")),
        )

    @property
    def end_ms(self) -> float:
        return self.offset_ms + self.duration_ms


@dataclass(frozen=True, slots=True)
class SentimentSegment:
    start_ms: int
    end_ms: int
    sentiment: SentimentLabel
    confidence: float | None = None
    intensity: int | None = None
    speaker: int | float | None = None
    summary: str | None = None
    rationale: str | None = None

    def __post_init__(self) -> None:
        if self.start_ms < 0:
            raise ValueError("SentimentSegment.start_ms must be >= 0")
        if self.end_ms <= self.start_ms:
            raise ValueError("SentimentSegment.end_ms must be > start_ms")

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "sentiment": self.sentiment.value,
        }
        for key in ("confidence", "intensity", "speaker", "summary", "rationale"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True, slots=True)
class SentimentTimeline:
    segments: tuple[SentimentSegment, ...]
    summary: str


def conversation_end_ms(phrases: Iterable[TranscriptPhrase]) -> int:
    return max((_round_half_up(phrase.end_ms) for phrase in phrases), default=0)


def stitch_segments(
    spans: Iterable[object],
    total_duration_ms: int | float | None,
    *,
    logger: Any | None = None,
) -> tuple[SentimentSegment, ...]:
    """
    Validate raw spans into segments sorted by start.

    ``total_duration_ms`` of ``None`` or ``0`` disables end clamping. A span
    starting at or beyond the total duration has no valid window left after
    clamping and is dropped with a warning.
    """

    log = logger if logger is not None else _logger
    limit = _round_half_up(total_duration_ms) if total_duration_ms else 0

    segments: list[SentimentSegment] = []
    for index, raw in enumerate(spans):
        if not isinstance(raw, Mapping):
            log.warning("sentiment_span_dropped", index=index, reason="not an object")
            continue

        raw_start = _number(raw.get("startMilliseconds", raw.get("start")))
        raw_start = 0 if raw_start is None else raw_start
        raw_end = _number(raw.get("endMilliseconds", raw.get("end")))
        raw_end = raw_start if raw_end is None else raw_end

        start_ms = max(0, _round_half_up(raw_start))
        end_ms = max(start_ms, _round_half_up(raw_end))
        if end_ms <= start_ms:
            end_ms = start_ms + DEGENERATE_SPAN_FALLBACK_MS
        if limit > 0:
            end_ms = min(end_ms, limit)
        if end_ms <= start_ms:
            log.warning(
                "sentiment_span_dropped",
                index=index,
                reason="starts at or after the end of the conversation",
                start_ms=start_ms,
                total_duration_ms=limit,
            )
            continue

        segments.append(
            SentimentSegment(
                start_ms=start_ms,
                end_ms=end_ms,
                sentiment=normalize_sentiment_label(raw.get("sentiment") or "neutral"),
                confidence=_clamped_confidence(raw.get("confidence")),
                intensity=_clamped_intensity(raw.get("intensity")),
                speaker=_number(raw.get("speaker")),
                summary=_optional_text(raw.get("summary")),
                rationale=_optional_text(raw.get("rationale")),
            )
        )

    segments.sort(key=lambda segment: segment.start_ms)
    return tuple(segments)


def format_timestamp(ms: float) -> str:
    """``mm:ss.cc`` rendering used in timeline prompts."""
    safe_ms = max(0, _round_half_up(ms))
    total_seconds = safe_ms // 1000
    centiseconds = (safe_ms % 1000) // 10
    return f"{total_seconds // 60:02d}:{total_seconds % 60:02d}.{centiseconds:02d}"


def build_sentiment_prompt(
    phrases: Sequence[TranscriptPhrase],
    locale: str,
    *,
    max_phrases: int = MAX_PROMPT_PHRASES,
    max_segments: int = MAX_SEGMENTS,
) -> str:
    if not phrases:
        return "No conversation available."

    shown = phrases[:max_phrases]
    lines = []
    for index, phrase in enumerate(shown, start=1):
        speaker = f"speaker {phrase.speaker}" if phrase.speaker is not None else "unknown speaker"
        channel = f"channel {phrase.channel}" if phrase.channel is not None else "mono"
        window = f"{format_timestamp(phrase.offset_ms)} - {format_timestamp(phrase.end_ms)}"
        lines.append(f"{index}. [{window} | {speaker} | {channel}] {phrase.text}")
    omitted = len(phrases) - len(shown)
    if omitted > 0:
        lines.append(f"...{omitted} additional lines omitted for brevity.")

    labels = ", ".join(label.value for label in SentimentLabel)
    timeline = "\n".join(lines)
    return (
        "You are a senior contact-center sentiment analyst. Given the conversation below "
        f"(language {locale}), identify contiguous segments where sentiment is consistent. "
        f"Use only the following discrete labels: {labels}. Keep the number of segments "
        f"reasonable (no more than {max_segments}).\n\n"
        "Return strict JSON with the shape:\n"
        "{\n"
        '  "summary": "short overview highlighting key mood shifts",\n'
        '  "segments": [\n'
        "    {\n"
        '      "startMilliseconds": number,\n'
        '      "endMilliseconds": number,\n'
        '      "speaker": number | null,\n'
        '      "sentiment": "positive" | "neutral" | "negative",\n'
        '      "confidence": number (0-1),\n'
        '      "intensity": integer (1-10),\n'
        '      "summary": "one sentence",\n'
        '      "rationale": "brief explanation"\n'
        "    }\n"
        "  ]\n"
        "}\n"
        "- start/end are inclusive-exclusive millisecond offsets.\n"
        "- Merge consecutive sentences with similar mood.\n"
        "- Do not overlap segments.\n"
        '- If unsure, use "neutral" with low confidence.\n\n'
        f"Conversation timeline:\n{timeline}\n\n"
        "Analyze carefully and ensure the returned JSON is valid."
    )


def build_overall_prompt(transcript: str, metadata: Mapping[str, object] | None = None) -> str:
    metadata_lines = "\n".join(f"- {key}: {value}" for key, value in (metadata or {}).items())
    return (
        "You are an expert call center sentiment analyst. Analyze the overall sentiment of "
        "this entire call conversation.\n\n"
        f"CALL METADATA:\n{metadata_lines or '- (none provided)'}\n\n"
        f"TRANSCRIPT:\n{transcript}\n\n"
        "Based on the complete conversation, classify the OVERALL sentiment of this call as "
        "one of:\n"
        "- positive: The call went well, customer was satisfied, issues resolved positively\n"
        "- neutral: The call was routine, professional, no strong emotions\n"
        "- negative: The call was tense, customer was unhappy, unresolved complaints\n\n"
        "Return ONLY a single word: positive, neutral, or negative"
    )


class SentimentAnalyzer:
    """Timeline and overall sentiment over one completer."""

    def __init__(
        self,
        completer: Completer,
        *,
        timeline_policy: RetryPolicy | None = None,
        overall_policy: RetryPolicy | None = None,
        max_phrases: int = MAX_PROMPT_PHRASES,
        max_segments: int = MAX_SEGMENTS,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._completer = completer
        self._timeline_policy = timeline_policy or RetryPolicy(max_attempts=3)
        self._overall_policy = overall_policy or RetryPolicy(max_attempts=2)
        self._max_phrases = max_phrases
        self._max_segments = max_segments
        self._sleep = sleep
        self._logger = logger if logger is not None else _logger

    async def analyze_timeline(
        self,
        call_id: str,
        phrases: Sequence[TranscriptPhrase],
        locale: str = "en-US",
    ) -> SentimentTimeline:
        if not phrases:
            return SentimentTimeline(segments=(), summary=EMPTY_CONVERSATION_SUMMARY)

        request = CompletionRequest.from_prompts(
            system=TIMELINE_SYSTEM_PROMPT,
            user=build_sentiment_prompt(
                phrases,
                locale,
                max_phrases=self._max_phrases,
                max_segments=self._max_segments,
            ),
            output_mode=OutputMode.JSON_FREEFORM,
        )
        parsed = await complete_json(
            self._completer,
            request,
            self._timeline_policy,
            validate=_validate_timeline_payload,
            sleep=self._sleep,
            label="Sentiment timeline",
            logger=self._logger,
        )

        payload = parsed.value
        raw_segments = payload.get("segments")
        segments = stitch_segments(
            raw_segments if isinstance(raw_segments, list) else (),
            conversation_end_ms(phrases),
            logger=self._logger,
        )
        summary = payload.get("summary")
        self._logger.info("sentiment_timeline_completed", call_id=call_id, segments=len(segments))
        return SentimentTimeline(
            segments=segments,
            summary=summary.strip()
            if isinstance(summary, str) and summary.strip()
            else DEFAULT_SUMMARY,
        )

    async def analyze_overall(
        self,
        call_id: str,
        transcript: str,
        metadata: Mapping[str, object] | None = None,
    ) -> SentimentLabel:
        if not transcript or not transcript.strip():
            return SentimentLabel.NEUTRAL

        request = CompletionRequest.from_prompts(
            system=OVERALL_SYSTEM_PROMPT,
            user=build_overall_prompt(transcript, metadata),
            output_mode=OutputMode.PLAIN,
        )
        try:
            text = await complete_text(
                self._completer,
                request,
                self._overall_policy,
                sleep=self._sleep,
                label="Overall sentiment",
                logger=self._logger,
            )
        except AuthError:
            raise
        except OrchestrationError as exc:
            self._logger.warning("overall_sentiment_defaulted", call_id=call_id, error=str(exc))
            return SentimentLabel.NEUTRAL
        return normalize_sentiment_label(text)


def _validate_timeline_payload(value: JSONValue) -> dict[str, JSONValue]:
    payload = require_object(value, context="sentiment response")
    segments = payload.get("segments")
    if segments is not None and not isinstance(segments, list):
        raise SchemaMismatchError("sentiment response 'segments' must be an array")
    return payload


def _number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def _int_or_none(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _clamped_confidence(value: object) -> float | None:
    number = _number(value)
    if number is None:
        return None
    return min(max(float(number), 0.0), 1.0)


def _clamped_intensity(value: object) -> int | None:
    number = _number(value)
    if number is None:
        return None
    return min(max(_round_half_up(number), 1), 10)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _optional_text(value: object) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


__all__ = [
    "DEFAULT_SUMMARY",
    "EMPTY_CONVERSATION_SUMMARY",
    "SentimentAnalyzer",
    "SentimentLabel",
    "SentimentSegment",
    "SentimentTimeline",
    "TranscriptPhrase",
    "build_overall_prompt",
    "build_sentiment_prompt",
    "conversation_end_ms",
    "format_timestamp",
    "normalize_sentiment_label",
    "stitch_segments",
]
