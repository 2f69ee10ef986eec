from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
import threading
from typing import Final, Literal, cast


_LOGGER_NAME: Final[str] = "agentqueue"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)s %(name)s [%(threadName)s] task=%(task_ref)s %(message)s"
)
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "task_selected",
        "queue_empty",
        "gate_busy",
        "session_dispatched",
        "session_completed",
        "session_failed",
        "session_stuck",
        "pr_merged",
        "pr_checks_failed",
        "pr_conflict",
        "pr_escalated",
        "task_reconciled",
        "github_pr_created",
        "github_pr_create_failed",
        "github_issue_comment_failed",
    }
)
_TASK_CONTEXT = threading.local()


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler, mode)
    logger.addHandler(stream_handler)

    if state_dir is not None:
        file_handler = _daily_file_handler(state_dir)
        _configure_handler(file_handler, mode)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


@contextmanager
def logging_task_context(task_number: int | None) -> Iterator[None]:
    """Tag every record emitted on this thread with the task being worked on."""
    previous = getattr(_TASK_CONTEXT, "task_number", None)
    _TASK_CONTEXT.task_number = task_number
    try:
        yield
    finally:
        _TASK_CONTEXT.task_number = previous


def _current_task_ref() -> str:
    task_number = getattr(_TASK_CONTEXT, "task_number", None)
    if task_number is None:
        return "-"
    return f"#{task_number}"


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _configure_handler(handler: logging.Handler, mode: VerboseMode) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    handler.addFilter(_TaskContextFilter())
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())


def _daily_file_handler(state_dir: Path) -> logging.Handler:
    logs_dir = state_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return TimedRotatingFileHandler(
        logs_dir / "agentqueue.log", when="midnight", utc=True, encoding="utf-8"
    )


class _TaskContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "task_ref"):
            record.task_ref = _current_task_ref()
        return True


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        first_field = record.getMessage().split(" ", 1)[0]
        return first_field.removeprefix("event=") in _LOW_VERBOSITY_EVENTS
