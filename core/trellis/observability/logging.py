"""
Structured logging with trace context propagation.

Every log line emitted during an execution carries the execution it belongs
to without the caller passing IDs around:

    GraphExecutor.execute() → sets execution_id, graph_id
        ↓ (ContextVar propagation)
    node step → adds node_id and step
        ↓ (asyncio tasks copy the context, so parallel branches inherit it)
    node body → logger.info("message") → gets all of the above

Two output modes: JSON lines for production, colorized text for development.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import IO, Any

# Per-task trace context; asyncio copies it into every task it creates
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Record attributes copied into JSON output when passed via ``extra=``
STRUCTURED_EXTRAS = ("event", "node_id", "step", "duration_ms", "attempt", "checkpoint_id")

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
RESET = "\033[0m"


def strip_ansi_codes(text: str) -> str:
    """Drop color codes; executor log lines are written for terminals first."""
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: timestamp, level, logger, message, then every trace field
    (execution_id, graph_id, node_id, step) and any STRUCTURED_EXTRAS set
    on the record. Extras win over trace fields of the same name.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }

        for name in STRUCTURED_EXTRAS:
            value = getattr(record, name, None)
            if value is None:
                continue
            entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Colorized text for a terminal, e.g.
    ``[INFO    ] [exec:3f2a9c1d | graph:triage] ▶ Step 1: check``
    """

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    @staticmethod
    def _prefix(context: dict[str, Any]) -> str:
        parts = []
        if context.get("execution_id"):
            parts.append(f"exec:{context['execution_id'][-8:]}")
        if context.get("graph_id"):
            parts.append(f"graph:{context['graph_id']}")
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:<8}]"
        if self.color:
            level = f"{LEVEL_COLORS.get(record.levelname, '')}{level}{RESET}"

        message = f"{level} {self._prefix(trace_context.get() or {})}{record.getMessage()}"
        event = getattr(record, "event", None)
        if event is not None:
            message += f" [{event}]"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def resolve_format(format: str = "auto") -> str:
    """Resolve "auto" to "json" (LOG_FORMAT=json or ENV=production) or "human"."""
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
    stream: IO[str] | None = None,
) -> None:
    """
    Install a single root handler for Trellis output.

    The CLI calls this once at startup. Existing root handlers are replaced.
    Color is dropped when NO_COLOR is set or the stream is not a terminal.

    Examples:
        configure_logging(level="DEBUG", format="human")
        configure_logging(level="INFO", format="json")
    """
    stream = stream or sys.stderr

    if resolve_format(format) == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        color = not os.getenv("NO_COLOR") and getattr(stream, "isatty", lambda: False)()
        formatter = HumanReadableFormatter(color=color)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def set_trace_context(**fields: Any) -> None:
    """
    Merge ``fields`` into the current task's trace context.

    The executor sets execution_id and graph_id on entry, then node_id and
    step for each step.
    """
    trace_context.set({**(trace_context.get() or {}), **fields})


def get_trace_context() -> dict:
    """Copy of the current trace context (empty when unset)."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
