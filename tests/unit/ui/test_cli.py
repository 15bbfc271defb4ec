"""
insight-orchestrator — unit tests for the CLI router and entrypoint

File: tests/unit/ui/test_cli.py

Purpose
- Validate the offline CLI workflows end to end through ``run_cli``.

What this test file should cover
- ``config``, ``order-tools``, ``score`` and ``stitch`` JSON and text output.
- Input errors mapped to exit code 2 with an ``error:`` line on stderr.
- ``cli_entrypoint`` exit-code normalization and exception routing.

Functional requirements
- No network usage and no provider credentials.
"""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

import pytest

from insight_orchestrator.main import ExitCode, cli_entrypoint
from insight_orchestrator.synthesis_plane.providers.base import AuthError
from insight_orchestrator.ui import cli as cli_module
from insight_orchestrator.ui.cli import build_parser, run_cli

if TYPE_CHECKING:
    from pathlib import Path

_RULES = """\
criteria:
  - id: 1
    type: Must Do
    name: Greeting
    scoringStandard: {passed: 10, failed: 0}
  - id: 2
    type: Must Not Do
    name: Interrupting
    scoringStandard: {passed: 5, failed: 0, partial: 2}
"""

_WORKFLOW = """\
server_name: orders
process_description: Customer refund handling
tools:
  - notify_customer
  - name: issue_refund
    description: Refund an order
  - lookup_order
agents:
  - id: triage
    tools: [lookup_order]
  - id: billing
    tools: [issue_refund]
workflow:
  nodes: [triage, billing]
  edges:
    - {from: triage, to: billing}
"""


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("INSIGHT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.chdir(tmp_path)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def _json_stdout(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    return json.loads(capsys.readouterr().out)


def test_parser_requires_a_subcommand() -> None:
    parser = build_parser()

    assert parser.prog == "insight"
    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args([])
    assert excinfo.value.code == 2


def test_config_json_is_redacted(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write(tmp_path / "insight.toml", "[retry]\nmax_attempts = 4\n")

    exit_code = run_cli(["config", "--json", "--config", str(config_path)])

    payload = _json_stdout(capsys)
    assert exit_code == 0
    assert payload["command"] == "config"
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["retry"]["max_attempts"] == 4
    assert config["completion"]["api_key_env"] == "<redacted>"


def test_config_errors_exit_with_code_2(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(["config", "--config", str(tmp_path / "absent.toml")])

    assert exit_code == 2
    assert capsys.readouterr().err.startswith("error: ")


def test_order_tools_follows_the_workflow_graph(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    workflow = _write(tmp_path / "workflow.yaml", _WORKFLOW)

    assert run_cli(["order-tools", str(workflow), "--json"]) == 0

    assert _json_stdout(capsys) == {
        "command": "order-tools",
        "order": ["lookup_order", "issue_refund", "notify_customer"],
        "workflow_aware": True,
    }


def test_order_tools_text_output_without_graph(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    workflow = _write(tmp_path / "tools.json", json.dumps({"tools": ["b", "a", "b"]}))

    assert run_cli(["order-tools", str(workflow)]) == 0

    out = capsys.readouterr().out
    assert "Workflow aware: no" in out
    assert out.index("1  b") < out.index("2  a")


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ({"tools": []}, "'tools' must be a non-empty list"),
        (["x"], "workflow file must hold an object"),
        ({"tools": ["a"], "workflow": {"edges": [{"from": 1, "to": "b"}]}}, "endpoints"),
    ],
)
def test_order_tools_rejects_malformed_workflows(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], document: object, message: str
) -> None:
    workflow = _write(tmp_path / "workflow.json", json.dumps(document))

    assert run_cli(["order-tools", str(workflow)]) == 2
    assert message in capsys.readouterr().err


def test_score_enforces_rule_scores_offline(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    rules = _write(tmp_path / "rules.yaml", _RULES)
    results = _write(
        tmp_path / "results.json",
        json.dumps(
            {
                "results": [
                    {"criterionId": 1, "passed": True, "score": 3},
                    {"criterionName": "interrupting", "passed": "partial", "score": 5},
                ],
                "overallFeedback": "Solid call.",
            }
        ),
    )

    assert run_cli(["score", str(rules), str(results), "--json", "--call-id", "c-1"]) == 0

    report = _json_stdout(capsys)["report"]
    assert isinstance(report, dict)
    assert report["call_id"] == "c-1"
    assert (report["total_score"], report["max_score"], report["percentage"]) == (12, 15, 80)
    assert [item["enforced_score"] for item in report["results"]] == [10, 2]
    assert [item["matched_by"] for item in report["results"]] == ["id", "name"]
    assert report["overall_feedback"] == "Solid call."


def test_score_text_output_lists_results(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    rules = _write(tmp_path / "rules.yaml", _RULES)
    results = _write(
        tmp_path / "results.json",
        json.dumps({"results": [{"criterionId": 1, "passed": False, "score": 10}]}),
    )

    assert run_cli(["score", str(rules), str(results)]) == 0

    out = capsys.readouterr().out
    assert "Call: offline" in out
    assert "Score: 0/15 (0%)" in out
    assert "Feedback:" in out


def test_score_rejects_payload_without_results(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    rules = _write(tmp_path / "rules.yaml", _RULES)
    results = _write(tmp_path / "results.json", json.dumps({"results": "none"}))

    assert run_cli(["score", str(rules), str(results)]) == 2
    assert "'results' list" in capsys.readouterr().err


def test_score_reports_bad_rule_bundle(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    rules = _write(tmp_path / "rules.yaml", "criteria: []\n")
    results = _write(tmp_path / "results.json", json.dumps({"results": []}))

    assert run_cli(["score", str(rules), str(results)]) == 2
    assert "criteria" in capsys.readouterr().err


def test_stitch_orders_clamps_and_counts_drops(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    spans = _write(
        tmp_path / "spans.json",
        json.dumps(
            {
                "segments": [
                    {"start": 5, "end": 1000, "sentiment": "negative"},
                    {"start": 0, "end": 10, "sentiment": "Positive"},
                    {"start": 1500, "end": 2500, "sentiment": "neutral"},
                ]
            }
        ),
    )

    assert run_cli(["stitch", str(spans), "--duration-ms", "800", "--json"]) == 0

    payload = _json_stdout(capsys)
    assert payload["dropped"] == 1
    assert payload["segments"] == [
        {"start_ms": 0, "end_ms": 10, "sentiment": "positive"},
        {"start_ms": 5, "end_ms": 800, "sentiment": "negative"},
    ]


def test_stitch_text_output_warns_about_drops(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    spans = _write(
        tmp_path / "spans.json",
        json.dumps([{"start": 0, "end": 61_250}, {"start": 90_000, "end": 91_000}]),
    )

    assert run_cli(["stitch", str(spans), "--duration-ms", "70000"]) == 0

    out = capsys.readouterr().out
    assert "Warning: 1 span(s) dropped" in out
    assert "00:00.00  01:01.25  neutral" in out


@pytest.mark.parametrize(
    ("argv_tail", "content", "message"),
    [
        ([], "{bad json", "invalid document"),
        ([], json.dumps({"spans": []}), "must hold a list"),
        (["--duration-ms", "-1"], json.dumps([]), "--duration-ms must be >= 0"),
    ],
)
def test_stitch_input_errors(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    argv_tail: list[str],
    content: str,
    message: str,
) -> None:
    spans = _write(tmp_path / "spans.json", content)

    assert run_cli(["stitch", str(spans), *argv_tail]) == 2
    assert message in capsys.readouterr().err


def test_evaluate_without_endpoint_is_a_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    rules = _write(tmp_path / "rules.yaml", _RULES)
    transcript = _write(tmp_path / "call.txt", "Agent: Hello")

    assert run_cli(["evaluate", str(rules), str(transcript)]) == 2
    assert "completion.endpoint and completion.model" in capsys.readouterr().err


def test_mock_tools_requires_server_and_process(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    workflow = _write(tmp_path / "workflow.json", json.dumps({"tools": ["lookup"]}))

    assert run_cli(["mock-tools", str(workflow)]) == 2
    assert "server_name and process_description" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def test_entrypoint_normalizes_argparse_exits(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["no-such-command"]) == ExitCode.CONFIG_ERROR
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert "insight score" in capsys.readouterr().out


def test_entrypoint_passes_handler_exit_codes(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    spans = _write(tmp_path / "spans.json", "[]")

    assert cli_entrypoint(["stitch", str(spans), "--json"]) == ExitCode.SUCCESS
    assert cli_entrypoint(["stitch", str(tmp_path / "absent.json")]) == ExitCode.CONFIG_ERROR
    capsys.readouterr()


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (AuthError("key rejected", http_status=401), ExitCode.PROVIDER_ERROR),
        (ValueError("bad input"), ExitCode.CONFIG_ERROR),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_entrypoint_routes_uncaught_exceptions(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    error: BaseException,
    expected: ExitCode,
) -> None:
    def _raise(argv: object = None) -> int:
        raise error

    monkeypatch.setattr(cli_module, "run_cli", _raise)

    assert cli_entrypoint(["config"]) == expected
    err = capsys.readouterr().err
    if expected is ExitCode.INTERNAL_ERROR:
        assert "Traceback" in err
    else:
        assert str(error) in err


def test_entrypoint_maps_unknown_return_codes_to_internal_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", lambda argv=None: 42)

    assert cli_entrypoint(["config"]) == ExitCode.INTERNAL_ERROR
