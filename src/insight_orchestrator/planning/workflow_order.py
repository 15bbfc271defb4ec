"""Linear tool execution order derived from an agent workflow graph."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any


class WorkflowInputError(ValueError):
    """Raised when workflow, agent or tool input cannot be interpreted."""


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """A tool to mock: its name plus the caller's original declaration."""

    name: str
    declaration: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise WorkflowInputError("tool name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        if self.declaration is None:
            object.__setattr__(self, "declaration", self.name)

    @classmethod
    def from_value(cls, value: object) -> ToolDescriptor:
        if isinstance(value, ToolDescriptor):
            return value
        if isinstance(value, str):
            return cls(name=value)
        if isinstance(value, Mapping):
            name = value.get("name")
            if not isinstance(name, str):
                raise WorkflowInputError("tool mapping requires a string 'name'")
            return cls(name=name, declaration=dict(value))
        raise WorkflowInputError(f"unsupported tool declaration: {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class AgentSpec:
    """An agent node and the tool names it uses, in its own order."""

    id: str
    tools: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> AgentSpec:
        agent_id = raw.get("id")
        if not isinstance(agent_id, str) or not agent_id:
            raise WorkflowInputError("agent requires a string 'id'")
        raw_tools = raw.get("tools") or ()
        if not isinstance(raw_tools, Sequence) or isinstance(raw_tools, str):
            raise WorkflowInputError(f"agent {agent_id!r} tools must be a list")
        return cls(id=agent_id, tools=tuple(tool_name_of(item) for item in raw_tools))


@dataclass(frozen=True, slots=True)
class WorkflowGraph:
    """Agent nodes in declaration order plus directed ``(from, to)`` edges."""

    nodes: tuple[str, ...] = ()
    edges: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> WorkflowGraph:
        raw_nodes = raw.get("nodes") or ()
        raw_edges = raw.get("edges") or ()
        if not isinstance(raw_nodes, Sequence) or not isinstance(raw_edges, Sequence):
            raise WorkflowInputError("workflow nodes and edges must be lists")

        nodes: list[str] = []
        for item in raw_nodes:
            node_id = item.get("id") if isinstance(item, Mapping) else item
            if not isinstance(node_id, str) or not node_id:
                raise WorkflowInputError("workflow node requires a string 'id'")
            nodes.append(node_id)

        edges: list[tuple[str, str]] = []
        for item in raw_edges:
            if isinstance(item, Mapping):
                source, target = item.get("from"), item.get("to")
            elif isinstance(item, Sequence) and len(item) == 2:
                source, target = item[0], item[1]
            else:
                raise WorkflowInputError("workflow edge must be {from, to}")
            if not isinstance(source, str) or not isinstance(target, str):
                raise WorkflowInputError("workflow edge endpoints must be strings")
            edges.append((source, target))

        return cls(nodes=tuple(nodes), edges=tuple(edges))

    @property
    def has_edges(self) -> bool:
        return bool(self.edges)

    def successors(self, node_id: str) -> tuple[str, ...]:
        """Targets of edges leaving ``node_id``, in edge declaration order."""
        return tuple(target for source, target in self.edges if source == node_id)


def tool_name_of(value: object) -> str:
    return ToolDescriptor.from_value(value).name


def find_start_node(graph: WorkflowGraph) -> str | None:
    """First declared node that no edge points into."""
    targets = {target for _, target in graph.edges}
    for node_id in graph.nodes:
        if node_id not in targets:
            return node_id
    return None


def build_execution_order(
    tools: Iterable[object],
    graph: WorkflowGraph | None = None,
    agents: Iterable[AgentSpec] | None = None,
) -> tuple[ToolDescriptor, ...]:
    """
    Order ``tools`` by breadth-first traversal of ``graph`` from its start node.

    Each visited node contributes its agent's tools in the agent's own order.
    Nodes are expanded at most once, so cycles terminate; tools never reached
    are appended in their original order. Every declared tool appears exactly
    once, duplicates collapsing to the first declaration.
    """

    declared: dict[str, ToolDescriptor] = {}
    for item in tools:
        descriptor = ToolDescriptor.from_value(item)
        declared.setdefault(descriptor.name, descriptor)

    sequence: list[str] = []
    if graph is not None and agents is not None:
        tools_by_agent = {agent.id: agent.tools for agent in agents}
        start = find_start_node(graph)
        if start is not None:
            visited: set[str] = set()
            queue: deque[str] = deque([start])
            while queue:
                node_id = queue.popleft()
                if node_id in visited:
                    continue
                visited.add(node_id)
                for name in tools_by_agent.get(node_id, ()):
                    if name in declared and name not in sequence:
                        sequence.append(name)
                queue.extend(graph.successors(node_id))

    ordered = [declared[name] for name in sequence]
    reached = set(sequence)
    ordered.extend(descriptor for name, descriptor in declared.items() if name not in reached)
    return tuple(ordered)


__all__ = [
    "AgentSpec",
    "ToolDescriptor",
    "WorkflowGraph",
    "WorkflowInputError",
    "build_execution_order",
    "find_start_node",
    "tool_name_of",
]
