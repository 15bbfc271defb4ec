"""
insight-orchestrator — completion invoker for the Azure OpenAI Responses API

File: src/insight_orchestrator/synthesis_plane/providers/completion.py

Purpose
- Perform exactly one completion attempt and normalize the response envelope.

What should be included in this file
- Auth header selection (api-key or bearer token).
- Request shaping for plain, freeform-JSON and schema-constrained output.
- Reasoning-effort selection for reasoning model families.
- Exception mapping into the shared error taxonomy.

Functional requirements
- No retry logic here; RetryValidator owns the attempt loop.
- A refusal under schema mode must raise RefusalError, never read as empty.

Non-functional requirements
- The ``openai`` SDK is imported lazily so an injected client needs no SDK.
"""

from __future__ import annotations

import asyncio
import importlib
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Protocol, cast

import structlog

from insight_orchestrator.synthesis_plane.providers.base import (
    REASONING_EFFORTS,
    AuthError,
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    CompletionUsage,
    EmptyResponseError,
    NetworkError,
    OrchestrationError,
    OutputMode,
    RefusalError,
    VendorError,
)
from insight_orchestrator.synthesis_plane.providers.credentials import (
    AuthMode,
    CredentialSettings,
    TokenProvider,
    remediation_for,
    resolve_auth_headers,
)

SOURCE_NAME: Final[str] = "azure_openai"

JSON_ONLY_INSTRUCTION: Final[str] = (
    "IMPORTANT: You must respond with ONLY valid JSON. Do not include any explanatory "
    "text, markdown formatting, or code blocks. Output pure JSON only."
)

_REASONING_PREFIXES: Final[tuple[str, ...]] = ("o1", "o3", "o4", "gpt-5", "codex-mini")


class _ResponsesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _ResponsesClient(Protocol):
    responses: _ResponsesAPI


class Completer(Protocol):
    """Anything that turns one request into one normalized result."""

    async def complete(self, request: CompletionRequest) -> CompletionResult: ...


@dataclass(frozen=True, slots=True)
class CompletionSettings:
    """Static endpoint settings for one invoker."""

    endpoint: str
    model: str
    auth_mode: AuthMode = AuthMode.API_KEY
    api_key: str | None = None
    tenant_id: str | None = None
    default_reasoning_effort: str = "low"
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        endpoint = _validate_non_empty_str(self.endpoint, "CompletionSettings.endpoint")
        object.__setattr__(self, "endpoint", endpoint.rstrip("/"))
        object.__setattr__(self, "model", _validate_non_empty_str(self.model, "model"))
        if not isinstance(self.auth_mode, AuthMode):
            raise TypeError("CompletionSettings.auth_mode must be AuthMode")
        effort = self.default_reasoning_effort.strip().lower()
        if effort not in REASONING_EFFORTS:
            raise ValueError(
                "CompletionSettings.default_reasoning_effort must be one of "
                + ", ".join(REASONING_EFFORTS)
            )
        object.__setattr__(self, "default_reasoning_effort", effort)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

    @classmethod
    def from_config(
        cls, section: Mapping[str, object], *, api_key: str | None = None
    ) -> CompletionSettings:
        """Build settings from a loaded ``[completion]`` config section."""

        endpoint = section.get("endpoint")
        model = section.get("model")
        if not isinstance(endpoint, str) or not isinstance(model, str):
            raise ValueError("completion.endpoint and completion.model must be configured")
        tenant_id = section.get("tenant_id")
        timeout = section.get("timeout_seconds")
        effort = section.get("reasoning_effort", "low")
        return cls(
            endpoint=endpoint,
            model=model,
            auth_mode=AuthMode(str(section.get("auth_mode", AuthMode.API_KEY.value))),
            api_key=api_key,
            tenant_id=tenant_id if isinstance(tenant_id, str) else None,
            default_reasoning_effort=effort if isinstance(effort, str) else "low",
            timeout_seconds=float(timeout) if isinstance(timeout, (int, float)) else None,
        )

    @property
    def base_url(self) -> str:
        return f"{self.endpoint}/openai/v1/"


class CompletionInvoker:
    """Single-attempt Responses API caller with injected client support."""

    source_name = SOURCE_NAME

    def __init__(
        self,
        settings: CompletionSettings,
        *,
        token_provider: TokenProvider | None = None,
        client: _ResponsesClient | None = None,
        logger: Any | None = None,
    ) -> None:
        self.settings = settings
        self._credentials = CredentialSettings(
            auth_mode=settings.auth_mode,
            api_key=settings.api_key,
            token_provider=token_provider,
            tenant_id=settings.tenant_id,
        )
        self._client = client
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def model(self) -> str:
        return self.settings.model

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        headers = await resolve_auth_headers(self._credentials)
        payload = self.build_payload(request)
        client = self._ensure_client(headers)

        started = time.perf_counter()
        try:
            raw_response = await client.responses.create(**payload, extra_headers=headers)
        except OrchestrationError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalized into the error taxonomy.
            raise self._map_exception(exc) from exc
        latency_ms = int((time.perf_counter() - started) * 1000)

        raw_text = extract_response_text(raw_response, schema_mode=request.is_schema_mode)
        usage = _normalize_usage(raw_response)
        self._logger.debug(
            "completion_received",
            model=self.settings.model,
            output_mode=request.output_mode.value,
            latency_ms=latency_ms,
            output_chars=len(raw_text),
        )
        return CompletionResult(
            raw_text=raw_text,
            model=_read_str(raw_response, "model") or self.settings.model,
            usage=usage,
            request_id=_read_str(raw_response, "id"),
        )

    def build_payload(self, request: CompletionRequest) -> dict[str, object]:
        """Shape the Responses API body for ``request``."""

        messages = request.messages
        if request.output_mode is OutputMode.JSON_FREEFORM:
            messages = with_json_instruction(messages)

        payload: dict[str, object] = {
            "model": self.settings.model,
            "input": [_message_payload(message) for message in messages],
        }

        if request.output_mode is OutputMode.JSON_SCHEMA:
            structured = request.structured_output
            if structured is None:
                raise ValueError("json_schema output mode requires structured_output")
            payload["text"] = {"format": {"type": "json_schema", **structured.to_dict()}}
        elif request.output_mode is OutputMode.JSON_FREEFORM:
            payload["text"] = {"format": {"type": "json_object"}}

        effort = select_reasoning_effort(
            self.settings.model,
            requested=request.reasoning_effort,
            default=self.settings.default_reasoning_effort,
        )
        if effort is not None:
            payload["reasoning"] = {"effort": effort}

        return payload

    def _ensure_client(self, headers: Mapping[str, str]) -> _ResponsesClient:
        if self._client is not None:
            return self._client
        self._client = self._create_default_client(_sdk_credential(headers))
        return self._client

    def _create_default_client(self, credential: str) -> _ResponsesClient:
        try:
            openai_module = importlib.import_module("openai")
        except ImportError as exc:
            raise VendorError("openai SDK is not installed", source=self.source_name) from exc

        async_openai = getattr(openai_module, "AsyncOpenAI", None)
        if async_openai is None:
            raise VendorError("openai SDK does not expose AsyncOpenAI", source=self.source_name)

        init_kwargs: dict[str, object] = {
            "api_key": credential,
            "base_url": self.settings.base_url,
            "max_retries": 0,
        }
        if self.settings.timeout_seconds is not None:
            init_kwargs["timeout"] = self.settings.timeout_seconds
        return cast("_ResponsesClient", async_openai(**init_kwargs))

    def _map_exception(self, exc: Exception) -> OrchestrationError:
        status_code = _read_status_code(exc)
        class_name = exc.__class__.__name__.lower()
        detail = _exception_detail(exc)

        if (
            status_code in {401, 403}
            or "authentication" in class_name
            or "permissiondenied" in class_name
        ):
            if self.settings.auth_mode is AuthMode.ENTRA_ID:
                detail = f"[RBAC_ERROR] permission denied for the signed-in identity: {detail}"
            return AuthError(
                detail,
                source=self.source_name,
                http_status=status_code,
                remediation=remediation_for(self.settings.auth_mode),
            )

        if status_code is not None:
            return VendorError(
                f"Azure OpenAI API error ({status_code}): {detail}",
                source=self.source_name,
                http_status=status_code,
            )

        if (
            isinstance(exc, (asyncio.TimeoutError, OSError))
            or "connection" in class_name
            or "timeout" in class_name
        ):
            return NetworkError(
                f"Network error calling completion endpoint: {detail}",
                source=self.source_name,
            )

        return VendorError(detail, source=self.source_name)


# ---------------------------------------------------------------------------
# Request shaping
# ---------------------------------------------------------------------------


def is_reasoning_model(model: str) -> bool:
    return model.strip().lower().startswith(_REASONING_PREFIXES)


def supports_minimal_effort(model: str) -> bool:
    normalized = model.strip().lower()
    return normalized.startswith("gpt-5") and "codex" not in normalized


def select_reasoning_effort(model: str, *, requested: str | None, default: str) -> str | None:
    """Return the effort to send, or ``None`` for non-reasoning models."""

    if not is_reasoning_model(model):
        return None
    normalized = model.strip().lower()
    if "gpt-5-pro" in normalized:
        return "high"
    effort = (requested or default or "low").lower()
    if effort == "minimal" and not supports_minimal_effort(normalized):
        return "low"
    return effort


def with_json_instruction(messages: Sequence[ChatMessage]) -> tuple[ChatMessage, ...]:
    """Append the JSON-only instruction unless the system message already mentions JSON."""

    updated: list[ChatMessage] = []
    seen_system = False
    for message in messages:
        if message.role == "system" and not seen_system:
            seen_system = True
            if "json" not in message.content.lower():
                message = ChatMessage(
                    role="system",
                    content=f"{message.content}\n\n{JSON_ONLY_INSTRUCTION}",
                )
        updated.append(message)
    if not seen_system:
        updated.insert(0, ChatMessage(role="system", content=JSON_ONLY_INSTRUCTION))
    return tuple(updated)


def _message_payload(message: ChatMessage) -> dict[str, object]:
    content_type = "output_text" if message.role == "assistant" else "input_text"
    return {
        "role": message.role,
        "content": [{"type": content_type, "text": message.content}],
    }


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------


def extract_response_text(raw_response: object, *, schema_mode: bool) -> str:
    """Return generated text from either Responses API envelope."""

    direct_output = _read_str(raw_response, "output_text")
    if direct_output is not None:
        return direct_output

    assistant_item = None
    for item in _read_sequence(raw_response, "output"):
        if (_read_str(item, "role") or "").lower() == "assistant":
            assistant_item = item
            break

    if assistant_item is not None:
        blocks = _read_sequence(assistant_item, "content")
        if schema_mode:
            for block in blocks:
                if (_read_str(block, "type") or "").lower() == "refusal":
                    refusal = _read_str(block, "refusal") or "no refusal text provided"
                    raise RefusalError(refusal, source=SOURCE_NAME)
        for block in blocks:
            if (_read_str(block, "type") or "").lower() != "output_text":
                continue
            text = _read_str(block, "text")
            if text is not None:
                return text

    raise EmptyResponseError(source=SOURCE_NAME)


def _normalize_usage(raw_response: object) -> CompletionUsage | None:
    usage_payload = _read_value(raw_response, "usage")
    if usage_payload is None:
        return None

    input_tokens = _read_int(usage_payload, "input_tokens")
    if input_tokens is None:
        input_tokens = _read_int(usage_payload, "prompt_tokens") or 0

    output_tokens = _read_int(usage_payload, "output_tokens")
    if output_tokens is None:
        output_tokens = _read_int(usage_payload, "completion_tokens") or 0

    total_tokens = _read_int(usage_payload, "total_tokens")
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens

    return CompletionUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
    )


def _sdk_credential(headers: Mapping[str, str]) -> str:
    api_key = headers.get("api-key")
    if api_key is not None:
        return api_key
    return headers.get("Authorization", "").removeprefix("Bearer ").strip()


def _exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return " ".join(text.split())
    return exc.__class__.__name__


def _read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int):
            return nested
    return None


def _read_value(value: object, key: str, *, default: object | None = None) -> object | None:
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key, default))
    return cast("object | None", getattr(value, key, default))


def _read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = _read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def _read_str(value: object, key: str) -> str | None:
    candidate = _read_value(value, key)
    if isinstance(candidate, str) and candidate.strip():
        return candidate
    return None


def _read_int(value: object, key: str) -> int | None:
    candidate = _read_value(value, key)
    if isinstance(candidate, int) and not isinstance(candidate, bool):
        return candidate
    return None


def _validate_non_empty_str(value: str, name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{name} cannot be empty")
    return normalized


__all__ = [
    "JSON_ONLY_INSTRUCTION",
    "Completer",
    "CompletionInvoker",
    "CompletionSettings",
    "extract_response_text",
    "is_reasoning_model",
    "select_reasoning_effort",
    "supports_minimal_effort",
    "with_json_instruction",
]
