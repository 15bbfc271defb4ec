"""
insight-orchestrator — completion models and shared error taxonomy

File: src/insight_orchestrator/synthesis_plane/providers/base.py

Purpose
- Request/response models for one completion round trip.
- Error taxonomy shared by the invoker, retry validator, JSON recovery and the
  evaluation/mock consumers.

What should be included in this file
- Message, output-mode and structured-output descriptors.
- Normalized completion result with token usage.
- Deterministic, machine-readable error classes with retryability flags.

Functional requirements
- Requests are immutable once built; every attempt sends the same payload.
- Errors render a stable ``source=.. code=.. retryable=.. detail=..`` message.
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final, Generic, TypeAlias, TypeVar

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]

REASONING_EFFORTS: Final[tuple[str, ...]] = ("minimal", "low", "medium", "high")
MESSAGE_ROLES: Final[tuple[str, ...]] = ("system", "user", "assistant")

_T = TypeVar("_T")


def _validate_non_empty_str(value: str, field_name: str, *, strip: bool = True) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip() if strip else value
    if not normalized.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _validate_optional_str(value: str | None, field_name: str, *, strip: bool = True) -> str | None:
    if value is None:
        return None
    return _validate_non_empty_str(value, field_name, strip=strip)


def _coerce_json_value(value: object, *, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path} keys must be strings")
            out[key] = _coerce_json_value(item, path=f"{path}.{key}")
        return out
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_coerce_json_value(item, path=f"{path}[]") for item in value]
    raise TypeError(f"{path} must be JSON-serializable")


class OutputMode(enum.Enum):
    """How the completion output is constrained."""

    PLAIN = "plain"
    JSON_FREEFORM = "json_freeform"
    JSON_SCHEMA = "json_schema"


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """One role-tagged message in a completion request."""

    role: str
    content: str

    def __post_init__(self) -> None:
        role = _validate_non_empty_str(self.role, "ChatMessage.role").lower()
        if role not in MESSAGE_ROLES:
            raise ValueError(f"ChatMessage.role must be one of {', '.join(MESSAGE_ROLES)}")
        object.__setattr__(self, "role", role)
        if not isinstance(self.content, str):
            raise TypeError("ChatMessage.content must be a string")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class StructuredOutputDefinition:
    """Strict JSON-schema descriptor attached to schema-mode requests."""

    name: str
    json_schema: Mapping[str, JSONValue] = field(default_factory=dict)
    strict: bool = True
    description: str | None = None

    def __post_init__(self) -> None:
        name = _validate_non_empty_str(self.name, "StructuredOutputDefinition.name")
        if len(name) > 64:
            raise ValueError("StructuredOutputDefinition.name must be <= 64 characters")
        object.__setattr__(self, "name", name)
        coerced = _coerce_json_value(
            dict(self.json_schema), path="StructuredOutputDefinition.json_schema"
        )
        object.__setattr__(self, "json_schema", coerced)
        object.__setattr__(self, "strict", bool(self.strict))
        object.__setattr__(
            self,
            "description",
            _validate_optional_str(
                self.description, "StructuredOutputDefinition.description", strip=False
            ),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "name": self.name,
            "strict": self.strict,
            "schema": dict(self.json_schema),
        }
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    """Provider-agnostic request for one completion attempt."""

    messages: tuple[ChatMessage, ...]
    output_mode: OutputMode = OutputMode.PLAIN
    structured_output: StructuredOutputDefinition | None = None
    reasoning_effort: str | None = None

    def __post_init__(self) -> None:
        messages = tuple(self.messages)
        if not messages:
            raise ValueError("CompletionRequest.messages cannot be empty")
        for index, message in enumerate(messages):
            if not isinstance(message, ChatMessage):
                raise TypeError(f"CompletionRequest.messages[{index}] must be ChatMessage")
        object.__setattr__(self, "messages", messages)

        if not isinstance(self.output_mode, OutputMode):
            raise TypeError("CompletionRequest.output_mode must be OutputMode")
        if self.output_mode is OutputMode.JSON_SCHEMA and self.structured_output is None:
            raise ValueError("json_schema output mode requires structured_output")
        if self.output_mode is not OutputMode.JSON_SCHEMA and self.structured_output is not None:
            raise ValueError("structured_output is only valid in json_schema output mode")

        effort = _validate_optional_str(self.reasoning_effort, "CompletionRequest.reasoning_effort")
        if effort is not None:
            effort = effort.lower()
            if effort not in REASONING_EFFORTS:
                raise ValueError(
                    "CompletionRequest.reasoning_effort must be one of "
                    + ", ".join(REASONING_EFFORTS)
                )
        object.__setattr__(self, "reasoning_effort", effort)

    @classmethod
    def from_prompts(
        cls,
        *,
        system: str | None,
        user: str,
        output_mode: OutputMode = OutputMode.PLAIN,
        structured_output: StructuredOutputDefinition | None = None,
        reasoning_effort: str | None = None,
    ) -> CompletionRequest:
        """Build the common system + user request shape."""

        messages: list[ChatMessage] = []
        if system is not None:
            messages.append(ChatMessage(role="system", content=system))
        messages.append(ChatMessage(role="user", content=user))
        return cls(
            messages=tuple(messages),
            output_mode=output_mode,
            structured_output=structured_output,
            reasoning_effort=reasoning_effort,
        )

    @property
    def is_schema_mode(self) -> bool:
        return self.output_mode is OutputMode.JSON_SCHEMA


@dataclass(frozen=True, slots=True)
class CompletionUsage:
    """Token accounting reported by the completion service."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")
        if self.total_tokens < 0:
            raise ValueError("total_tokens must be >= 0")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Normalized text produced by one completion attempt."""

    raw_text: str
    model: str | None = None
    usage: CompletionUsage | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.raw_text, str):
            raise TypeError("CompletionResult.raw_text must be a string")


@dataclass(frozen=True, slots=True)
class ParsedPayload(Generic[_T]):
    """Raw completion text plus the value parsed from it."""

    raw_text: str
    value: _T


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class OrchestrationError(RuntimeError):
    """Base normalized error with deterministic machine-readable fields."""

    def __init__(
        self,
        *,
        source: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        self.source = _validate_non_empty_str(source, "source")
        self.code = _validate_non_empty_str(code, "code")
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [
            f"source={self.source}",
            f"code={self.code}",
            f"retryable={str(self.retryable).lower()}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class AuthError(OrchestrationError):
    """Credential or permission failure. Never retried."""

    def __init__(
        self,
        detail: str,
        *,
        source: str = "completion",
        http_status: int | None = None,
        remediation: str | None = None,
    ) -> None:
        self.remediation = remediation
        super().__init__(
            source=source,
            code="auth",
            detail=detail if remediation is None else f"{detail} (hint: {remediation})",
            retryable=False,
            http_status=http_status,
        )


class NetworkError(OrchestrationError):
    """Transport failure before an HTTP status was received."""

    def __init__(self, detail: str, *, source: str = "completion") -> None:
        super().__init__(source=source, code="network", detail=detail, retryable=True)


class VendorError(OrchestrationError):
    """Non-2xx response from the completion service."""

    def __init__(
        self,
        detail: str,
        *,
        source: str = "completion",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            source=source,
            code="vendor",
            detail=detail,
            retryable=True,
            http_status=http_status,
        )


class RefusalError(OrchestrationError):
    """Safety refusal returned under schema-constrained output."""

    def __init__(self, refusal: str, *, source: str = "completion") -> None:
        self.refusal = refusal
        super().__init__(
            source=source,
            code="refusal",
            detail=f"Model refused to respond: {refusal}",
            retryable=True,
        )


class EmptyResponseError(OrchestrationError):
    """Neither response envelope carried any text."""

    def __init__(
        self,
        detail: str = "No content in API response",
        *,
        source: str = "completion",
    ) -> None:
        super().__init__(source=source, code="empty_response", detail=detail, retryable=True)


class JsonExtractError(OrchestrationError):
    """Completion text could not be recovered as JSON."""

    def __init__(self, detail: str, *, excerpt: str = "", source: str = "json_recovery") -> None:
        self.excerpt = excerpt
        rendered = detail if not excerpt else f"{detail}; response excerpt: {excerpt}"
        super().__init__(source=source, code="json_extract", detail=rendered, retryable=True)


class SchemaMismatchError(OrchestrationError):
    """Parsed JSON lacks keys the calling context requires."""

    def __init__(self, detail: str, *, source: str = "validation") -> None:
        super().__init__(source=source, code="schema_mismatch", detail=detail, retryable=True)


class UnscorableResultError(OrchestrationError):
    """Model result that matches no criterion. Recorded, never raised by scoring."""

    def __init__(self, detail: str, *, result_index: int, source: str = "scoring") -> None:
        self.result_index = result_index
        super().__init__(source=source, code="unscorable", detail=detail, retryable=False)


class RetryExhaustedError(OrchestrationError):
    """Aggregate failure raised once every attempt has failed."""

    def __init__(
        self,
        *,
        attempts: int,
        last_error: BaseException | None,
        source: str = "retry",
        label: str = "LLM call",
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        last_message = _describe_error(last_error)
        super().__init__(
            source=source,
            code="retry_exhausted",
            detail=f"{label} failed after {attempts} attempts. Last error: {last_message}",
            retryable=False,
        )


class ToolMockGenerationError(OrchestrationError):
    """A tool exhausted its mock attempts; the whole mock run is aborted."""

    def __init__(
        self,
        *,
        tool_name: str,
        attempts: int,
        last_error: BaseException | None,
        source: str = "tool_mocks",
    ) -> None:
        self.tool_name = tool_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            source=source,
            code="mock_generation",
            detail=(
                f"Failed to generate realistic mock data for tool '{tool_name}' after "
                f"{attempts} attempts. Last error: {_describe_error(last_error)}"
            ),
            retryable=False,
        )


def is_retryable_error(error: BaseException) -> bool:
    """Return False only for errors that must short-circuit a retry loop."""

    return not isinstance(error, AuthError)


def _describe_error(error: BaseException | None) -> str:
    if error is None:
        return "unknown error"
    if isinstance(error, OrchestrationError):
        return error.detail
    return _normalize_detail(error)


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


__all__ = [
    "AuthError",
    "ChatMessage",
    "CompletionRequest",
    "CompletionResult",
    "CompletionUsage",
    "EmptyResponseError",
    "JSONScalar",
    "JSONValue",
    "JsonExtractError",
    "NetworkError",
    "OrchestrationError",
    "OutputMode",
    "ParsedPayload",
    "REASONING_EFFORTS",
    "RefusalError",
    "RetryExhaustedError",
    "SchemaMismatchError",
    "SleepFn",
    "StructuredOutputDefinition",
    "ToolMockGenerationError",
    "UnscorableResultError",
    "VendorError",
    "is_retryable_error",
]
