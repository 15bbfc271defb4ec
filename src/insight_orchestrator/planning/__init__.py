"""Planning: workflow graph traversal that fixes tool mock generation order."""

from insight_orchestrator.planning.workflow_order import (
    AgentSpec,
    ToolDescriptor,
    WorkflowGraph,
    WorkflowInputError,
    build_execution_order,
)

__all__ = [
    "AgentSpec",
    "ToolDescriptor",
    "WorkflowGraph",
    "WorkflowInputError",
    "build_execution_order",
]
