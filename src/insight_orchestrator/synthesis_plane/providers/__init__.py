"""
insight-orchestrator — completion provider and shared provider API

File: src/insight_orchestrator/synthesis_plane/providers/__init__.py

Purpose
- Azure OpenAI Responses API invoker, credential resolution and the typed
  request/result/error model every other plane depends on.

Functional requirements
- Must normalize responses (text, usage, refusals) into a common format.

Non-functional requirements
- Must never log secrets or raw API keys.
"""

from insight_orchestrator.synthesis_plane.providers.base import (
    AuthError,
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    CompletionUsage,
    EmptyResponseError,
    JSONValue,
    JsonExtractError,
    NetworkError,
    OrchestrationError,
    OutputMode,
    ParsedPayload,
    RefusalError,
    RetryExhaustedError,
    SchemaMismatchError,
    SleepFn,
    StructuredOutputDefinition,
    ToolMockGenerationError,
    UnscorableResultError,
    VendorError,
    is_retryable_error,
)
from insight_orchestrator.synthesis_plane.providers.completion import (
    Completer,
    CompletionInvoker,
    CompletionSettings,
    extract_response_text,
    select_reasoning_effort,
)
from insight_orchestrator.synthesis_plane.providers.credentials import (
    AccessToken,
    AuthMode,
    CachingTokenProvider,
    CredentialSettings,
    TokenProvider,
    resolve_auth_headers,
)

__all__ = [
    "AccessToken",
    "AuthError",
    "AuthMode",
    "CachingTokenProvider",
    "ChatMessage",
    "Completer",
    "CompletionInvoker",
    "CompletionRequest",
    "CompletionResult",
    "CompletionSettings",
    "CompletionUsage",
    "CredentialSettings",
    "EmptyResponseError",
    "JSONValue",
    "JsonExtractError",
    "NetworkError",
    "OrchestrationError",
    "OutputMode",
    "ParsedPayload",
    "RefusalError",
    "RetryExhaustedError",
    "SchemaMismatchError",
    "SleepFn",
    "StructuredOutputDefinition",
    "TokenProvider",
    "ToolMockGenerationError",
    "UnscorableResultError",
    "VendorError",
    "extract_response_text",
    "is_retryable_error",
    "resolve_auth_headers",
    "select_reasoning_effort",
]
