"""
insight-orchestrator — run logging

File: src/insight_orchestrator/observability/logging.py

Purpose
- Route every ``structlog.get_logger(__name__)`` event into one JSON-lines file
  per run (``<log_dir>/<run_id>/insight.jsonl``).
- Stamp each event with the run id and the active per-call correlation fields
  (``call_id``, ``tool_name``, ``schema_id``).
- Keep credentials and conversation content out of the log: transcripts,
  prompts and phrase text are replaced by a marker, bearer tokens and API keys
  are scrubbed from free text.

Offline commands still log warnings; those go to stderr as plain key=value lines.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import structlog

LOG_FILENAME: Final[str] = "insight.jsonl"
REDACTED: Final[str] = "***REDACTED***"
CORRELATION_KEYS: Final[tuple[str, ...]] = ("call_id", "tool_name", "schema_id")

_ROOT_LOGGER: Final[str] = "insight_orchestrator"
_DEFAULT_LOG_DIR: Final[str] = "logs/"
_LEVELS: Final[frozenset[str]] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

_SECRET_KEY = re.compile(
    r"api[_-]?key|authorization|password|secret|access[_-]?token|bearer|credential", re.I
)
_CONVERSATION_KEY = re.compile(r"transcript|prompt|phrases|raw_text|evidence|messages", re.I)
_SECRET_TEXT: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{8,}"),
    re.compile(r"(?i)\b(api[_-]?key|password|secret)\s*[:=]\s*\S+"),
)

EventProcessor = Callable[[Any, str, MutableMapping[str, Any]], Mapping[str, Any]]

# Shared by structlog events and records from plain ``logging`` callers (openai, httpx).
_SHARED_PROCESSORS: Final[list[EventProcessor]] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
]


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def default_log_redactor(value: object, *, key: str | None = None) -> object:
    """Return ``value`` with secrets and conversation content masked."""

    if key is not None and key not in CORRELATION_KEYS:
        if _SECRET_KEY.search(key) or _CONVERSATION_KEY.search(key):
            return REDACTED
    if isinstance(value, str):
        for pattern in _SECRET_TEXT:
            value = pattern.sub(REDACTED, value)
        return value
    if isinstance(value, Mapping):
        return {str(k): default_log_redactor(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [default_log_redactor(item) for item in value]
    return value


def redact_event(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in list(event_dict):
        event_dict[key] = default_log_redactor(event_dict[key], key=key)
    return event_dict


@dataclass(frozen=True, slots=True)
class _StampRunId:
    run_id: str

    def __call__(
        self, _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("run_id", self.run_id)
        return event_dict


# ---------------------------------------------------------------------------
# structlog wiring
# ---------------------------------------------------------------------------


def configure_structlog() -> None:
    """Send structlog events through stdlib logging so run handlers render them."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    root = logging.getLogger(_ROOT_LOGGER)
    if not root.handlers:
        # Until a run starts, warnings only.
        console = _StderrHandler()
        console.setFormatter(_formatter(structlog.processors.KeyValueRenderer(key_order=["event"])))
        root.addHandler(console)
        root.setLevel(logging.WARNING)
        root.propagate = False


class _StderrHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Writes to whatever ``sys.stderr`` is when the record is emitted."""

    @property  # type: ignore[override]
    def stream(self) -> Any:
        return sys.stderr

    @stream.setter
    def stream(self, _value: Any) -> None:
        pass


def _formatter(
    renderer: EventProcessor, *extra: EventProcessor, redact: bool = True
) -> structlog.stdlib.ProcessorFormatter:
    processors: list[EventProcessor] = [
        *extra,
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        structlog.processors.format_exc_info,
    ]
    if redact:
        processors.append(redact_event)
    processors.append(renderer)
    return structlog.stdlib.ProcessorFormatter(
        processors=processors, foreign_pre_chain=_SHARED_PROCESSORS
    )


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RunLogHandle:
    run_id: str
    log_path: Path
    _handler: logging.Handler = field(repr=False)
    _previous: tuple[list[logging.Handler], int] = field(repr=False)
    is_shutdown: bool = False

    def shutdown(self) -> None:
        """Detach the run file and restore the handlers that were active before."""
        if self.is_shutdown:
            return
        self.is_shutdown = True
        root = logging.getLogger(_ROOT_LOGGER)
        root.removeHandler(self._handler)
        self._handler.close()
        handlers, level = self._previous
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)


_active: RunLogHandle | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None,
    *,
    run_id: str,
    log_dir: str | Path | None = None,
) -> RunLogHandle:
    """Start the run log; replaces any run log that is still open."""

    global _active
    if not isinstance(run_id, str) or not run_id.strip():
        raise ValueError("run_id must be a non-empty string")
    if "/" in run_id or "\\" in run_id:
        raise ValueError("run_id must not contain path separators")
    cfg = observability_config or {}
    level = str(cfg.get("log_level", "INFO")).upper()
    if level not in _LEVELS:
        raise ValueError(f"log_level must be one of {sorted(_LEVELS)}, got {level!r}")

    shutdown_logging()
    configure_structlog()

    base = Path(log_dir) if log_dir is not None else Path(str(cfg.get("log_dir", _DEFAULT_LOG_DIR)))
    run_dir = base.expanduser() / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_dir / LOG_FILENAME

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(
        _formatter(
            structlog.processors.JSONRenderer(sort_keys=True),
            _StampRunId(run_id),
            redact=bool(cfg.get("redact_secrets", True)),
        )
    )

    root = logging.getLogger(_ROOT_LOGGER)
    previous = (list(root.handlers), root.level)
    for existing in previous[0]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False

    _active = RunLogHandle(run_id=run_id, log_path=log_path, _handler=handler, _previous=previous)
    return _active


def shutdown_logging() -> None:
    global _active
    if _active is not None:
        _active.shutdown()
        _active = None


# ---------------------------------------------------------------------------
# Per-call correlation
# ---------------------------------------------------------------------------


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields to every event logged inside the block.

    ``None`` values are skipped so callers can pass optional ids straight through.
    """

    unknown = set(fields) - set(CORRELATION_KEYS)
    if unknown:
        raise ValueError(f"unknown correlation fields: {sorted(unknown)}")
    bound: dict[str, str] = {}
    for name, value in fields.items():
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{name} must be a non-empty string")
        bound[name] = value.strip()
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_correlation_context() -> dict[str, str]:
    context = structlog.contextvars.get_contextvars()
    return {key: context[key] for key in CORRELATION_KEYS if key in context}


__all__ = [
    "CORRELATION_KEYS",
    "LOG_FILENAME",
    "REDACTED",
    "RunLogHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "redact_event",
    "setup_logging",
    "shutdown_logging",
]
