"""
insight-orchestrator — synthesis plane

File: src/insight_orchestrator/synthesis_plane/__init__.py

Purpose
- Synthesis plane: completion calls, retry/validation, JSON recovery from model
  output and workflow-ordered tool mock generation.

Functional requirements
- Must stay provider-agnostic above the ``Completer`` protocol.
"""

from insight_orchestrator.synthesis_plane.json_recovery import (
    extract_json,
    parse_completion_json,
    require_object,
)
from insight_orchestrator.synthesis_plane.retry import (
    RetryPolicy,
    attempt_with_retry,
    complete_json,
    complete_text,
)
from insight_orchestrator.synthesis_plane.tool_mocks import (
    MockRunResult,
    ToolMockContext,
    WorkflowMockOrchestrator,
)

__all__ = [
    "MockRunResult",
    "RetryPolicy",
    "ToolMockContext",
    "WorkflowMockOrchestrator",
    "attempt_with_retry",
    "complete_json",
    "complete_text",
    "extract_json",
    "parse_completion_json",
    "require_object",
]
