"""
insight-orchestrator — unit tests for run logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate the per-run JSON-lines log: redaction of credentials and
  conversation content, run id stamping and per-call correlation.

What this test file should cover
- structlog keyword events rendered as flat JSON objects.
- Correlation scopes binding call/tool ids, with event keywords winning.
- Plain ``logging`` records from third-party libraries sharing the same sink.
- Handle replacement, idempotent shutdown and rejected settings.

Functional requirements
- Offline operation.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING

import pytest
import structlog

from insight_orchestrator.observability.logging import (
    REDACTED,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_call_events_are_stamped_and_conversation_content_is_masked(tmp_path: Path) -> None:
    handle = setup_logging({"log_level": "INFO"}, run_id="run-redaction", log_dir=tmp_path)
    log = structlog.get_logger("insight_orchestrator.tests.evaluation")

    with correlation_scope(call_id="call-42", schema_id="schema-7"):
        log.info(
            "evaluation_requested",
            transcript="Customer: my card number is 4111...",
            prompt="Evaluate the call below",
            api_key="plain-secret",
            detail="upstream said Bearer abc.def.ghi and api_key=sk-live-1234567890",
            criteria=3,
        )
    handle.shutdown()

    (event,) = _read_json_lines(handle.log_path)
    assert handle.log_path == tmp_path / "run-redaction" / "insight.jsonl"
    assert event["event"] == "evaluation_requested"
    assert event["level"] == "info"
    assert (event["run_id"], event["call_id"], event["schema_id"]) == (
        "run-redaction",
        "call-42",
        "schema-7",
    )
    assert event["transcript"] == REDACTED
    assert event["prompt"] == REDACTED
    assert event["api_key"] == REDACTED
    assert "abc.def.ghi" not in str(event["detail"])
    assert "sk-live" not in str(event["detail"])
    assert event["criteria"] == 3
    assert str(event["timestamp"]).endswith("Z")


def test_events_below_configured_level_are_dropped(tmp_path: Path) -> None:
    handle = setup_logging({"log_level": "WARNING"}, run_id="run-level", log_dir=tmp_path)
    log = structlog.get_logger("insight_orchestrator.tests.retry")

    log.info("attempt_started", attempt=1)
    log.warning("retry_scheduled", tool_name="get_order", attempt=2, delay_seconds=1.5)
    handle.shutdown()

    (event,) = _read_json_lines(handle.log_path)
    assert event["event"] == "retry_scheduled"
    assert event["logger"] == "insight_orchestrator.tests.retry"
    assert (event["tool_name"], event["attempt"], event["delay_seconds"]) == ("get_order", 2, 1.5)


def test_event_keywords_override_ambient_scope(tmp_path: Path) -> None:
    handle = setup_logging({}, run_id="run-override", log_dir=tmp_path)

    with correlation_scope(call_id="outer", tool_name="lookup"):
        assert get_correlation_context() == {"call_id": "outer", "tool_name": "lookup"}
        structlog.get_logger("insight_orchestrator.tests.mocks").info("x", call_id="inner")
    handle.shutdown()

    (event,) = _read_json_lines(handle.log_path)
    assert (event["call_id"], event["tool_name"]) == ("inner", "lookup")
    assert get_correlation_context() == {}


def test_optional_ids_are_skipped_and_unknown_fields_rejected() -> None:
    with correlation_scope(call_id=None, tool_name="refund"):
        assert get_correlation_context() == {"tool_name": "refund"}

    with pytest.raises(ValueError, match="unknown correlation fields"):
        with correlation_scope(session="s-1"):
            pass
    with pytest.raises(ValueError, match="call_id"):
        with correlation_scope(call_id="  "):
            pass


def test_plain_logging_records_share_the_run_log(tmp_path: Path) -> None:
    handle = setup_logging({}, run_id="run-foreign", log_dir=tmp_path)

    with correlation_scope(call_id="call-7"):
        logging.getLogger("insight_orchestrator.tests.http").info(
            "POST /responses Authorization: Bearer tok.en.value"
        )
    handle.shutdown()

    (event,) = _read_json_lines(handle.log_path)
    assert event["run_id"] == "run-foreign"
    assert event["call_id"] == "call-7"
    assert "tok.en.value" not in str(event["event"])


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_level": "DEBUG", "redact_secrets": False}, run_id="run-raw", log_dir=tmp_path
    )

    structlog.get_logger("insight_orchestrator.tests.raw").debug(
        "prompt_built", prompt="Agent: hello"
    )
    handle.shutdown()

    (event,) = _read_json_lines(handle.log_path)
    assert event["prompt"] == "Agent: hello"


def test_multithreaded_logging_writes_every_record(tmp_path: Path) -> None:
    handle = setup_logging({}, run_id="run-threads", log_dir=tmp_path)
    log = structlog.get_logger("insight_orchestrator.tests.threads")

    def worker(index: int) -> None:
        for item in range(25):
            log.info("tick", worker=index, item=item)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    handle.shutdown()

    events = _read_json_lines(handle.log_path)
    assert len(events) == 100
    assert {(event["worker"], event["item"]) for event in events} == {
        (worker, item) for worker in range(4) for item in range(25)
    }


def test_setup_replaces_previous_handle_and_shutdown_is_idempotent(tmp_path: Path) -> None:
    first = setup_logging({}, run_id="run-a", log_dir=tmp_path)
    second = setup_logging({}, run_id="run-b", log_dir=tmp_path)
    assert first.is_shutdown

    structlog.get_logger("insight_orchestrator.tests.replace").info("after_replace")
    shutdown_logging()
    shutdown_logging()

    assert second.is_shutdown
    assert first.log_path.read_text(encoding="utf-8") == ""
    assert [event["event"] for event in _read_json_lines(second.log_path)] == ["after_replace"]


@pytest.mark.parametrize(
    ("config", "run_id"),
    [
        ({}, "  "),
        ({}, "nested/run"),
        ({"log_level": "VERBOSE"}, "run-x"),
    ],
)
def test_invalid_logging_settings_are_rejected(
    tmp_path: Path, config: dict[str, object], run_id: str
) -> None:
    with pytest.raises(ValueError):
        setup_logging(config, run_id=run_id, log_dir=tmp_path)


def test_default_redactor_walks_nested_values() -> None:
    value = {
        "headers": {"Authorization": "Bearer xyz", "accept": "json"},
        "items": ["using sk-abcdef0123456789", {"client_secret": "s"}],
        "phrases": ["hello"],
        "tool_name": "lookup_order",
    }

    assert default_log_redactor(value) == {
        "headers": {"Authorization": REDACTED, "accept": "json"},
        "items": [f"using {REDACTED}", {"client_secret": REDACTED}],
        "phrases": REDACTED,
        "tool_name": "lookup_order",
    }
