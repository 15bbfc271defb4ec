"""
insight-orchestrator — retry/validate loop around single completion attempts

File: src/insight_orchestrator/synthesis_plane/retry.py

Purpose
- Retry a completion attempt plus its accept/parse step under a bounded policy.

What should be included in this file
- RetryPolicy and the immutable RetryState threaded through the attempt loop.
- ``attempt_with_retry`` (generic) and ``complete_json`` / ``complete_text``
  (invoker + retry + JSON recovery composed).

Functional requirements
- Linear backoff: ``backoff_ms * attempt`` between attempts, none after the last.
- AuthError short-circuits without consuming the remaining budget.
- Exhaustion raises one RetryExhaustedError chained to the last failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Final, TypeVar

import structlog

from insight_orchestrator.synthesis_plane.json_recovery import parse_completion_json
from insight_orchestrator.synthesis_plane.providers.base import (
    CompletionRequest,
    CompletionResult,
    JSONValue,
    ParsedPayload,
    RetryExhaustedError,
    SleepFn,
    is_retryable_error,
)
from insight_orchestrator.synthesis_plane.providers.completion import Completer

DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BACKOFF_MS: Final[int] = 1000
MAX_ATTEMPTS_CEILING: Final[int] = 10

_RawT = TypeVar("_RawT")
_T = TypeVar("_T")

_logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt budget and linear backoff step."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_ms: int = DEFAULT_BACKOFF_MS

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise TypeError("RetryPolicy.max_attempts must be an integer")
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_CEILING:
            raise ValueError(f"RetryPolicy.max_attempts must be in 1..{MAX_ATTEMPTS_CEILING}")
        if isinstance(self.backoff_ms, bool) or not isinstance(self.backoff_ms, int):
            raise TypeError("RetryPolicy.backoff_ms must be an integer")
        if self.backoff_ms < 0:
            raise ValueError("RetryPolicy.backoff_ms must be >= 0")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> RetryPolicy:
        """Build from a validated ``retry`` (or ``mocks``) config section."""

        max_attempts = section.get("max_attempts", section.get("max_attempts_per_tool"))
        backoff_ms = section.get("backoff_ms", DEFAULT_BACKOFF_MS)
        if max_attempts is None:
            max_attempts = DEFAULT_MAX_ATTEMPTS
        if not isinstance(max_attempts, int) or not isinstance(backoff_ms, int):
            raise TypeError("retry settings must be integers")
        return cls(max_attempts=max_attempts, backoff_ms=backoff_ms)

    def delay_seconds(self, attempt: int) -> float:
        return self.backoff_ms * attempt / 1000.0


@dataclass(frozen=True, slots=True)
class RetryState:
    """Progress of one retry loop: attempts made so far and the latest failure."""

    attempt: int = 0
    last_error: BaseException | None = None

    def record_failure(self, error: BaseException) -> RetryState:
        return RetryState(attempt=self.attempt + 1, last_error=error)

    def exhausted(self, policy: RetryPolicy) -> bool:
        return self.attempt >= policy.max_attempts


async def attempt_with_retry(
    perform: Callable[[], Awaitable[_RawT]],
    accept: Callable[[_RawT], _T],
    policy: RetryPolicy,
    *,
    sleep: SleepFn = asyncio.sleep,
    label: str = "LLM call",
    logger: Any | None = None,
) -> _T:
    """Run ``perform`` then ``accept`` until one pass succeeds or the budget is spent."""

    log = logger if logger is not None else _logger
    state = RetryState()
    while not state.exhausted(policy):
        try:
            raw = await perform()
            return accept(raw)
        except Exception as exc:  # noqa: BLE001 - every failure kind feeds the same policy.
            if not is_retryable_error(exc):
                raise
            state = state.record_failure(exc)

        if state.exhausted(policy):
            break
        delay = policy.delay_seconds(state.attempt)
        log.warning(
            "retry_scheduled",
            label=label,
            attempt=state.attempt,
            max_attempts=policy.max_attempts,
            delay_seconds=delay,
            error=str(state.last_error),
        )
        await sleep(delay)

    raise RetryExhaustedError(
        attempts=state.attempt,
        last_error=state.last_error,
        label=label,
    ) from state.last_error


async def complete_json(
    completer: Completer,
    request: CompletionRequest,
    policy: RetryPolicy,
    *,
    validate: Callable[[JSONValue], _T] | None = None,
    sleep: SleepFn = asyncio.sleep,
    label: str = "LLM call",
    logger: Any | None = None,
) -> ParsedPayload[Any]:
    """Complete ``request`` and recover a JSON value, retrying parse and validation failures."""

    def accept(result: CompletionResult) -> ParsedPayload[Any]:
        value = parse_completion_json(result.raw_text, schema_mode=request.is_schema_mode)
        if validate is not None:
            return ParsedPayload(raw_text=result.raw_text, value=validate(value))
        return ParsedPayload(raw_text=result.raw_text, value=value)

    return await attempt_with_retry(
        lambda: completer.complete(request),
        accept,
        policy,
        sleep=sleep,
        label=label,
        logger=logger,
    )


async def complete_text(
    completer: Completer,
    request: CompletionRequest,
    policy: RetryPolicy,
    *,
    sleep: SleepFn = asyncio.sleep,
    label: str = "LLM call",
    logger: Any | None = None,
) -> str:
    """Plain-mode counterpart of ``complete_json``: returns the trimmed text."""

    def accept(result: CompletionResult) -> str:
        return result.raw_text.strip()

    return await attempt_with_retry(
        lambda: completer.complete(request),
        accept,
        policy,
        sleep=sleep,
        label=label,
        logger=logger,
    )


__all__ = [
    "DEFAULT_BACKOFF_MS",
    "DEFAULT_MAX_ATTEMPTS",
    "MAX_ATTEMPTS_CEILING",
    "RetryPolicy",
    "RetryState",
    "attempt_with_retry",
    "complete_json",
    "complete_text",
]
