"""
insight-orchestrator — workflow-ordered tool mock generation

File: src/insight_orchestrator/synthesis_plane/tool_mocks.py

Purpose
- Generate one realistic mock response per tool, sequentially, in the order a
  workflow graph implies, feeding earlier accepted mocks into later prompts.

What should be included in this file
- ToolMockContext (accepted mocks for exactly one run).
- Strict mock schema builder and schema-name sanitizer.
- Double-encoded ``mockResponse`` string recovery.
- WorkflowMockOrchestrator driving per-tool attempts over ``complete_json``.

Functional requirements
- A tool that exhausts its attempt budget aborts the whole run; partial results
  are never returned.
- Empty payloads and payloads carrying placeholder markers are rejected.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Final

import structlog

from insight_orchestrator.planning.workflow_order import (
    AgentSpec,
    ToolDescriptor,
    WorkflowGraph,
    build_execution_order,
)
from insight_orchestrator.quality.placeholder_audit import rejection_reason
from insight_orchestrator.synthesis_plane.json_recovery import require_object
from insight_orchestrator.synthesis_plane.providers.base import (
    AuthError,
    CompletionRequest,
    JSONValue,
    OutputMode,
    SchemaMismatchError,
    SleepFn,
    StructuredOutputDefinition,
    ToolMockGenerationError,
)
from insight_orchestrator.synthesis_plane.providers.completion import Completer
from insight_orchestrator.synthesis_plane.retry import RetryPolicy, complete_json

DEFAULT_MOCK_ATTEMPTS: Final[int] = 3
DEFAULT_MOCK_BACKOFF_MS: Final[int] = 1000
SCHEMA_NAME_LIMIT: Final[int] = 60
FALLBACK_SCHEMA_NAME: Final[str] = "mcp_mock_schema"
MOCK_RESPONSE_KEY: Final[str] = "mockResponse"

MOCK_RESPONSE_DESCRIPTION: Final[str] = (
    "JSON string representation of the realistic mock output that the MCP tool would return"
)

MOCK_STRING_INSTRUCTION: Final[str] = (
    "STRICT JSON STRING REQUIREMENT:\n"
    '- For each tool key, set "mockResponse" to a JSON STRING (double-quoted) that contains '
    "the full realistic response object.\n"
    "- Escape quotes and control characters so the string is valid JSON.\n"
    "- Do NOT embed raw objects directly; always provide an escaped JSON string."
)

PREVIOUS_CONTEXT_HEADER: Final[str] = "CONTEXT FROM PREVIOUS TOOLS IN WORKFLOW:"
PREVIOUS_CONTEXT_FOOTER: Final[str] = (
    "Use consistent IDs, references, and data values that align with the above tools."
)

DEFAULT_SYSTEM_PROMPT: Final[str] = (
    "You generate realistic mock responses for MCP (Model Context Protocol) server tools. "
    "Responses must look like real production output: concrete identifiers, plausible "
    "values and complete objects. Never use placeholder text. Return JSON only."
)

_SCHEMA_NAME_RE: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")

_logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class MockPromptInput:
    """Values available to a mock prompt builder for one tool."""

    process_description: str
    server_name: str
    tool: ToolDescriptor


@dataclass(frozen=True, slots=True)
class PromptPair:
    system: str
    user: str


MockPromptBuilder = Callable[[MockPromptInput], PromptPair]


def default_mock_prompt(prompt_input: MockPromptInput) -> PromptPair:
    tools_json = json.dumps([prompt_input.tool.declaration], indent=2, sort_keys=True)
    user = (
        f"Business process:\n{prompt_input.process_description}\n\n"
        f"MCP server: {prompt_input.server_name}\n\n"
        f"Tool definition:\n{tools_json}\n\n"
        f'Return an object keyed by "{prompt_input.tool.name}" holding the realistic '
        "response this tool would produce for the process above."
    )
    return PromptPair(system=DEFAULT_SYSTEM_PROMPT, user=user)


class ToolMockContext:
    """Accepted mocks of one orchestration run, in acceptance order."""

    __slots__ = ("_mocks",)

    def __init__(self) -> None:
        self._mocks: dict[str, JSONValue] = {}

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._mocks

    def __len__(self) -> int:
        return len(self._mocks)

    @property
    def tool_names(self) -> tuple[str, ...]:
        return tuple(self._mocks)

    def accept(self, tool_name: str, payload: JSONValue) -> None:
        if tool_name in self._mocks:
            raise ValueError(f"mock for tool {tool_name!r} was already accepted")
        self._mocks[tool_name] = payload

    def payload(self, tool_name: str) -> JSONValue:
        return self._mocks[tool_name]

    def as_dict(self) -> dict[str, dict[str, JSONValue]]:
        return {name: {MOCK_RESPONSE_KEY: payload} for name, payload in self._mocks.items()}

    def snapshot(self) -> Mapping[str, Mapping[str, JSONValue]]:
        return MappingProxyType(self.as_dict())

    def render_previous_context(self) -> str | None:
        """Prompt block describing every mock accepted so far, or ``None`` when empty."""

        if not self._mocks:
            return None
        rendered = json.dumps(self.as_dict(), indent=2)
        return f"{PREVIOUS_CONTEXT_HEADER}\n{rendered}\n\n{PREVIOUS_CONTEXT_FOOTER}"


# ---------------------------------------------------------------------------
# Schema helpers
# ---------------------------------------------------------------------------


def sanitize_schema_name(name: str) -> str:
    cleaned = _SCHEMA_NAME_RE.sub("_", name.lower()).strip("_")[:SCHEMA_NAME_LIMIT]
    return cleaned or FALLBACK_SCHEMA_NAME


def build_mock_schema(tool_names: Iterable[str]) -> StructuredOutputDefinition:
    """Strict schema requiring ``{tool: {mockResponse: <json string>}}`` per tool."""

    names = list(dict.fromkeys(tool_names))
    properties: dict[str, JSONValue] = {
        name: {
            "type": "object",
            "additionalProperties": False,
            "required": [MOCK_RESPONSE_KEY],
            "properties": {
                MOCK_RESPONSE_KEY: {
                    "type": "string",
                    "description": MOCK_RESPONSE_DESCRIPTION,
                }
            },
        }
        for name in names
    }
    schema_name = f"mcp_mock_{sanitize_schema_name(names[0] if names else 'tool')}"
    return StructuredOutputDefinition(
        name=schema_name[:SCHEMA_NAME_LIMIT] or FALLBACK_SCHEMA_NAME,
        strict=True,
        json_schema={
            "type": "object",
            "additionalProperties": False,
            "required": list(names),
            "properties": properties,
        },
    )


def parse_mock_response_string(value: str, *, tool_name: str) -> JSONValue:
    """
    Decode a ``mockResponse`` string into its JSON payload.

    Unwinds at most one extra layer of string encoding: a value that decodes to
    another JSON string is decoded once more, and a value carrying literal
    ``\\"`` escapes is decoded as the body of a JSON string literal first.
    """

    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as direct_error:
        try:
            unescaped = json.loads(f'"{value}"')
        except json.JSONDecodeError:
            raise SchemaMismatchError(
                f"mockResponse for {tool_name} is not valid JSON string: {direct_error.msg}",
                source="tool_mocks",
            ) from direct_error
        try:
            return json.loads(unescaped)
        except json.JSONDecodeError as exc:
            raise SchemaMismatchError(
                f"mockResponse for {tool_name} is not valid JSON string: {exc.msg}",
                source="tool_mocks",
            ) from exc

    if isinstance(decoded, str):
        try:
            return json.loads(decoded)
        except json.JSONDecodeError as exc:
            raise SchemaMismatchError(
                f"mockResponse for {tool_name} is double-encoded but not valid JSON: {exc.msg}",
                source="tool_mocks",
            ) from exc
    return decoded


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MockRunResult:
    """Execution order used and the accepted mock per tool."""

    order: tuple[str, ...]
    mocks: Mapping[str, Mapping[str, JSONValue]]
    workflow_aware: bool


class WorkflowMockOrchestrator:
    """Sequential, workflow-ordered mock generation over one completer."""

    def __init__(
        self,
        completer: Completer,
        *,
        call_policy: RetryPolicy | None = None,
        tool_policy: RetryPolicy | None = None,
        prompt_builder: MockPromptBuilder = default_mock_prompt,
        reasoning_effort: str | None = None,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._completer = completer
        self._call_policy = call_policy or RetryPolicy()
        self._tool_policy = tool_policy or RetryPolicy(
            max_attempts=DEFAULT_MOCK_ATTEMPTS,
            backoff_ms=DEFAULT_MOCK_BACKOFF_MS,
        )
        self._prompt_builder = prompt_builder
        self._reasoning_effort = reasoning_effort
        self._sleep = sleep
        self._logger = logger if logger is not None else _logger

    async def generate(
        self,
        *,
        process_description: str,
        server_name: str,
        tools: Iterable[object],
        workflow: WorkflowGraph | None = None,
        agents: Iterable[AgentSpec] | None = None,
    ) -> MockRunResult:
        """Generate every tool's mock or raise ToolMockGenerationError."""

        workflow_aware = workflow is not None and workflow.has_edges
        if workflow_aware:
            order = build_execution_order(tools, workflow, tuple(agents or ()))
        else:
            order = build_execution_order(tools)

        self._logger.info(
            "tool_mock_run_started",
            tool_count=len(order),
            workflow_aware=workflow_aware,
            order=[tool.name for tool in order],
        )

        context = ToolMockContext()
        for index, tool in enumerate(order, start=1):
            previous = context.render_previous_context() if workflow_aware else None
            payload = await self._generate_tool(
                MockPromptInput(
                    process_description=process_description,
                    server_name=server_name,
                    tool=tool,
                ),
                previous_context=previous,
                position=index,
                total=len(order),
            )
            context.accept(tool.name, payload)

        return MockRunResult(
            order=tuple(tool.name for tool in order),
            mocks=context.snapshot(),
            workflow_aware=workflow_aware,
        )

    async def _generate_tool(
        self,
        prompt_input: MockPromptInput,
        *,
        previous_context: str | None,
        position: int,
        total: int,
    ) -> JSONValue:
        tool_name = prompt_input.tool.name
        request = self._build_request(prompt_input, previous_context)
        policy = self._tool_policy
        last_error: BaseException | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                parsed = await complete_json(
                    self._completer,
                    request,
                    self._call_policy,
                    validate=lambda value: _accept_mock(value, tool_name),
                    sleep=self._sleep,
                    label=f"Mock generation for {tool_name}",
                    logger=self._logger,
                )
            except AuthError:
                raise
            except Exception as exc:  # noqa: BLE001 - the per-tool budget absorbs any failure.
                last_error = exc
                self._logger.warning(
                    "tool_mock_attempt_failed",
                    tool_name=tool_name,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    error=str(exc),
                )
                if attempt < policy.max_attempts:
                    await self._sleep(policy.delay_seconds(attempt))
                continue

            self._logger.info(
                "tool_mock_accepted",
                tool_name=tool_name,
                position=position,
                total=total,
                attempt=attempt,
            )
            return parsed.value

        raise ToolMockGenerationError(
            tool_name=tool_name,
            attempts=policy.max_attempts,
            last_error=last_error,
        ) from last_error

    def _build_request(
        self,
        prompt_input: MockPromptInput,
        previous_context: str | None,
    ) -> CompletionRequest:
        prompts = self._prompt_builder(prompt_input)
        user = f"{prompts.user}\n\n{MOCK_STRING_INSTRUCTION}"
        if previous_context:
            user = f"{user}\n\n{previous_context}"
        return CompletionRequest.from_prompts(
            system=prompts.system,
            user=user,
            output_mode=OutputMode.JSON_SCHEMA,
            structured_output=build_mock_schema([prompt_input.tool.name]),
            reasoning_effort=self._reasoning_effort,
        )


def _accept_mock(value: JSONValue, tool_name: str) -> JSONValue:
    envelope = require_object(value, (tool_name,), context="mock response")
    entry = envelope[tool_name]
    if not isinstance(entry, dict) or not entry.get(MOCK_RESPONSE_KEY):
        raise SchemaMismatchError(f"No mockResponse generated for {tool_name}", source="tool_mocks")

    raw = entry[MOCK_RESPONSE_KEY]
    if isinstance(raw, str):
        payload = parse_mock_response_string(raw, tool_name=tool_name)
    elif isinstance(raw, (dict, list)):
        payload = raw
    else:
        raise SchemaMismatchError(
            f"mockResponse for {tool_name} must be a JSON string or object",
            source="tool_mocks",
        )

    reason = rejection_reason(payload)
    if reason is not None:
        raise SchemaMismatchError(
            f"Generic/placeholder mock data for {tool_name}: {reason}",
            source="tool_mocks",
        )
    return payload


__all__ = [
    "DEFAULT_MOCK_ATTEMPTS",
    "MOCK_STRING_INSTRUCTION",
    "MockPromptInput",
    "MockRunResult",
    "PromptPair",
    "ToolMockContext",
    "WorkflowMockOrchestrator",
    "build_mock_schema",
    "default_mock_prompt",
    "parse_mock_response_string",
    "sanitize_schema_name",
]
