"""Command-line interface router for insight-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import yaml

from insight_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
    resolve_api_key,
)
from insight_orchestrator.evaluation_plane.rule_loader import (
    RuleBundle,
    RuleBundleError,
    load_rule_bundle,
)
from insight_orchestrator.evaluation_plane.scoring import (
    EvaluationReport,
    ScoringEnforcementEngine,
    score_results,
)
from insight_orchestrator.evaluation_plane.sentiment import (
    SentimentAnalyzer,
    SentimentTimeline,
    TranscriptPhrase,
    format_timestamp,
    stitch_segments,
)
from insight_orchestrator.observability import (
    configure_structlog,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)
from insight_orchestrator.planning.workflow_order import (
    AgentSpec,
    WorkflowGraph,
    WorkflowInputError,
    build_execution_order,
)
from insight_orchestrator.synthesis_plane.providers.completion import (
    CompletionInvoker,
    CompletionSettings,
)
from insight_orchestrator.synthesis_plane.retry import RetryPolicy
from insight_orchestrator.synthesis_plane.tool_mocks import WorkflowMockOrchestrator
from insight_orchestrator.ui.render import CLIRenderer, create_renderer

_T = TypeVar("_T")


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class WorkflowDocument:
    """Tool declarations plus optional graph, as read from a workflow file."""

    tools: tuple[object, ...]
    graph: WorkflowGraph | None
    agents: tuple[AgentSpec, ...]
    server_name: str
    process_description: str


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="insight",
        description=(
            "insight-orchestrator: LLM call evaluation, sentiment and tool mocks.\n\n"
            "Common workflows:\n"
            "  insight score rules.yaml results.json     Enforce rubric scores offline\n"
            "  insight evaluate rules.yaml call.txt      Evaluate a transcript\n"
            "  insight sentiment phrases.json            Build a sentiment timeline\n"
            "  insight mock-tools workflow.yaml          Generate workflow tool mocks\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to insight TOML config (default: ./insight.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the redacted effective configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    # order-tools ---------------------------------------------------------
    order_parser = subparsers.add_parser(
        "order-tools",
        parents=[common],
        help="Print the tool generation order for a workflow file",
    )
    order_parser.add_argument("workflow_path", help="YAML/JSON file with tools/agents/workflow")
    order_parser.set_defaults(handler=_cmd_order_tools)

    # score ---------------------------------------------------------------
    score_parser = subparsers.add_parser(
        "score",
        parents=[common],
        help="Enforce rubric scores on an existing model results payload",
        description=(
            "Apply the rubric in RULES to the model output in RESULTS without calling a "
            "model. RESULTS holds {results: [...], overallFeedback, insights}."
        ),
    )
    score_parser.add_argument("rules_path", help="Rule bundle (YAML or JSON)")
    score_parser.add_argument("results_path", help="Model results payload (JSON)")
    score_parser.add_argument("--call-id", default="offline", help="Call identifier")
    score_parser.set_defaults(handler=_cmd_score)

    # stitch --------------------------------------------------------------
    stitch_parser = subparsers.add_parser(
        "stitch",
        parents=[common],
        help="Validate and order raw sentiment spans against a conversation length",
    )
    stitch_parser.add_argument("spans_path", help="JSON list of raw spans, or {segments: [...]}")
    stitch_parser.add_argument(
        "--duration-ms", type=int, default=0, help="Conversation length in ms (0: unbounded)"
    )
    stitch_parser.set_defaults(handler=_cmd_stitch)

    # evaluate ------------------------------------------------------------
    evaluate_parser = subparsers.add_parser(
        "evaluate",
        parents=[common],
        help="Evaluate a transcript against a rule bundle via the completion endpoint",
    )
    evaluate_parser.add_argument("rules_path", help="Rule bundle (YAML or JSON)")
    evaluate_parser.add_argument("transcript_path", help="Plain-text transcript")
    evaluate_parser.add_argument("--call-id", default=None, help="Call identifier")
    evaluate_parser.add_argument("--metadata", default=None, help="JSON/YAML metadata file")
    evaluate_parser.set_defaults(handler=_cmd_evaluate)

    # sentiment -----------------------------------------------------------
    sentiment_parser = subparsers.add_parser(
        "sentiment",
        parents=[common],
        help="Build a sentiment timeline from recognized transcript phrases",
    )
    sentiment_parser.add_argument("phrases_path", help="JSON list of recognized phrases")
    sentiment_parser.add_argument("--call-id", default=None, help="Call identifier")
    sentiment_parser.add_argument("--locale", default="en-US", help="Conversation locale")
    sentiment_parser.set_defaults(handler=_cmd_sentiment)

    # mock-tools ----------------------------------------------------------
    mocks_parser = subparsers.add_parser(
        "mock-tools",
        parents=[common],
        help="Generate mock responses for every tool in a workflow file",
    )
    mocks_parser.add_argument("workflow_path", help="YAML/JSON file with tools/agents/workflow")
    mocks_parser.add_argument("--server-name", default=None, help="Override server name")
    mocks_parser.add_argument(
        "--process-description", default=None, help="Override process description"
    )
    mocks_parser.set_defaults(handler=_cmd_mock_tools)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    # Offline commands still emit warnings; keep them off stdout.
    configure_structlog()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


def _cmd_order_tools(args: argparse.Namespace) -> int:
    document = _load_workflow_document(Path(args.workflow_path))
    try:
        order = build_execution_order(document.tools, document.graph, document.agents)
    except WorkflowInputError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    names = [tool.name for tool in order]
    workflow_aware = document.graph is not None and document.graph.has_edges
    if _flag(args, "json"):
        _emit_json({"command": "order-tools", "order": names, "workflow_aware": workflow_aware})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Workflow aware", "yes" if workflow_aware else "no")
    renderer.table(["#", "tool"], [(index + 1, name) for index, name in enumerate(names)])
    return 0


def _cmd_score(args: argparse.Namespace) -> int:
    bundle = _load_bundle(Path(args.rules_path))
    payload = _read_document(Path(args.results_path))
    if not isinstance(payload, Mapping) or not isinstance(payload.get("results"), list):
        raise CLIError("results payload must be an object with a 'results' list", exit_code=2)

    report = score_results(
        payload,
        bundle.criteria,
        call_id=args.call_id,
        evaluated_at=datetime.now(UTC).isoformat(),
        insight_categories=bundle.insight_categories,
    )
    _render_report(args, report, command="score")
    return 0


def _cmd_stitch(args: argparse.Namespace) -> int:
    raw = _read_document(Path(args.spans_path))
    if isinstance(raw, Mapping):
        raw = raw.get("segments")
    if not isinstance(raw, list):
        raise CLIError("spans file must hold a list or an object with 'segments'", exit_code=2)
    if args.duration_ms < 0:
        raise CLIError("--duration-ms must be >= 0", exit_code=2)

    segments = stitch_segments(raw, args.duration_ms)
    timeline = SentimentTimeline(segments=segments, summary="")
    _render_timeline(args, timeline, command="stitch", dropped=len(raw) - len(segments))
    return 0


def _cmd_evaluate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    bundle = _load_bundle(Path(args.rules_path))
    transcript = _read_text(Path(args.transcript_path))
    metadata: Mapping[str, object] = {}
    if args.metadata:
        loaded = _read_document(Path(args.metadata))
        if not isinstance(loaded, Mapping):
            raise CLIError("metadata file must hold an object", exit_code=2)
        metadata = loaded
    call_id = args.call_id or Path(args.transcript_path).stem

    engine = ScoringEnforcementEngine(
        _build_invoker(config),
        policy=RetryPolicy.from_config(config["retry"]),
        insight_categories=bundle.insight_categories,
        reasoning_effort=config["completion"].get("reasoning_effort"),
    )
    report = _run_async(
        config,
        lambda: engine.evaluate(
            call_id=call_id,
            transcript=transcript,
            criteria=bundle.criteria,
            metadata=metadata,
        ),
        call_id=call_id,
    )
    _render_report(args, report, command="evaluate")
    return 0


def _cmd_sentiment(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    raw = _read_document(Path(args.phrases_path))
    if isinstance(raw, Mapping):
        raw = raw.get("phrases", raw.get("recognizedPhrases"))
    if not isinstance(raw, list) or not all(isinstance(item, Mapping) for item in raw):
        raise CLIError("phrases file must hold a list of phrase objects", exit_code=2)
    phrases = [TranscriptPhrase.from_mapping(item) for item in raw]
    call_id = args.call_id or Path(args.phrases_path).stem

    evaluation = config["evaluation"]
    analyzer = SentimentAnalyzer(
        _build_invoker(config),
        max_phrases=evaluation["max_sentiment_phrases"],
        max_segments=evaluation["max_sentiment_segments"],
    )
    timeline = _run_async(
        config,
        lambda: analyzer.analyze_timeline(call_id, phrases, args.locale),
        call_id=call_id,
    )
    _render_timeline(args, timeline, command="sentiment", dropped=None)
    return 0


def _cmd_mock_tools(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    document = _load_workflow_document(Path(args.workflow_path))
    server_name = args.server_name or document.server_name
    process_description = args.process_description or document.process_description
    if not server_name or not process_description:
        raise CLIError(
            "server_name and process_description are required (file or flags)", exit_code=2
        )

    orchestrator = WorkflowMockOrchestrator(
        _build_invoker(config),
        call_policy=RetryPolicy.from_config(config["retry"]),
        tool_policy=RetryPolicy.from_config(config["mocks"]),
        reasoning_effort=config["completion"].get("reasoning_effort"),
    )
    result = _run_async(
        config,
        lambda: orchestrator.generate(
            process_description=process_description,
            server_name=server_name,
            tools=document.tools,
            workflow=document.graph,
            agents=document.agents,
        ),
    )

    payload = {
        "command": "mock-tools",
        "order": list(result.order),
        "workflow_aware": result.workflow_aware,
        "mocks": {name: dict(mock) for name, mock in result.mocks.items()},
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Workflow aware", "yes" if result.workflow_aware else "no")
    renderer.kv("Order", " -> ".join(result.order))
    renderer.text(json.dumps(payload["mocks"], indent=2, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _render_report(args: argparse.Namespace, report: EvaluationReport, *, command: str) -> None:
    if _flag(args, "json"):
        _emit_json({"command": command, "report": report.to_dict()})
        return

    renderer = _get_renderer(args)
    renderer.kv("Call", report.call_id)
    renderer.kv("Score", f"{report.total_score}/{report.max_score} ({report.percentage}%)")
    rows = [
        (
            "-" if result.criterion_id is None else result.criterion_id,
            result.matched_by.value,
            result.passed.to_json() if result.passed is not None else "?",
            "-" if result.enforced_score is None else result.enforced_score,
            "-" if result.model_proposed_score is None else result.model_proposed_score,
        )
        for result in report.results
    ]
    renderer.table(["criterion", "matched", "passed", "score", "proposed"], rows, title="Results:")
    for warning in report.warnings:
        renderer.warning(warning)
    renderer.section("Feedback:")
    renderer.text(report.overall_feedback)
    if renderer.verbose and report.insights.insights:
        renderer.section("Insights:")
        renderer.text(json.dumps(report.insights.to_plain(), indent=2, ensure_ascii=False))


def _render_timeline(
    args: argparse.Namespace,
    timeline: SentimentTimeline,
    *,
    command: str,
    dropped: int | None,
) -> None:
    segments = [segment.to_dict() for segment in timeline.segments]
    if _flag(args, "json"):
        payload: dict[str, object] = {
            "command": command,
            "segments": segments,
            "summary": timeline.summary,
        }
        if dropped is not None:
            payload["dropped"] = dropped
        _emit_json(payload)
        return

    renderer = _get_renderer(args)
    if timeline.summary:
        renderer.kv("Summary", timeline.summary)
    if dropped:
        renderer.warning(f"{dropped} span(s) dropped")
    rows = [
        (
            format_timestamp(segment.start_ms),
            format_timestamp(segment.end_ms),
            segment.sentiment.value,
            "-" if segment.intensity is None else segment.intensity,
        )
        for segment in timeline.segments
    ]
    renderer.table(["start", "end", "sentiment", "intensity"], rows, title="Segments:")


# ---------------------------------------------------------------------------
# Helpers: config, inputs, runtime
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = getattr(args, "config_path", None)
    try:
        return load_config(config_path)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _build_invoker(config: Mapping[str, Any]) -> CompletionInvoker:
    try:
        settings = CompletionSettings.from_config(
            config["completion"], api_key=resolve_api_key(config)
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    return CompletionInvoker(settings)


def _run_async(
    config: Mapping[str, Any],
    factory: Callable[[], Awaitable[_T]],
    *,
    call_id: str | None = None,
) -> _T:
    run_id = uuid.uuid4().hex[:12]
    setup_logging(config["observability"], run_id=run_id)
    try:
        with correlation_scope(call_id=call_id):
            return asyncio.run(_await(factory))
    finally:
        shutdown_logging()


async def _await(factory: Callable[[], Awaitable[_T]]) -> _T:
    return await factory()


def _load_bundle(path: Path) -> RuleBundle:
    try:
        return load_rule_bundle(path)
    except RuleBundleError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_workflow_document(path: Path) -> WorkflowDocument:
    raw = _read_document(path)
    if not isinstance(raw, Mapping):
        raise CLIError(f"{path}: workflow file must hold an object", exit_code=2)

    tools = raw.get("tools")
    if not isinstance(tools, list) or not tools:
        raise CLIError(f"{path}: 'tools' must be a non-empty list", exit_code=2)

    try:
        raw_graph = raw.get("workflow")
        graph = WorkflowGraph.from_mapping(raw_graph) if isinstance(raw_graph, Mapping) else None
        raw_agents = raw.get("agents") or []
        if not isinstance(raw_agents, list):
            raise WorkflowInputError("'agents' must be a list")
        agents = tuple(
            AgentSpec.from_mapping(item) for item in raw_agents if isinstance(item, Mapping)
        )
    except WorkflowInputError as exc:
        raise CLIError(f"{path}: {exc}", exit_code=2) from exc

    return WorkflowDocument(
        tools=tuple(tools),
        graph=graph,
        agents=agents,
        server_name=_optional_str(raw.get("server_name", raw.get("serverName"))) or "",
        process_description=_optional_str(
            raw.get("process_description", raw.get("processDescription"))
        )
        or "",
    )


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"unable to read {path}: {exc}", exit_code=2) from exc


def _read_document(path: Path) -> object:
    text = _read_text(path)
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            return yaml.safe_load(text)
        return json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise CLIError(f"{path}: invalid document: {exc}", exit_code=2) from exc


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "WorkflowDocument", "build_parser", "run_cli"]
