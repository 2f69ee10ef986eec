from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import io
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys

import pytest

from agentqueue import observability
from agentqueue.observability import configure_logging, log_event, logging_task_context


@pytest.fixture(autouse=True)
def restore_agentqueue_logger_state() -> None:
    logger = logging.getLogger("agentqueue")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("agentqueue")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_is_idempotent() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("agentqueue")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(task_ref)s" in handler.formatter._fmt

    configure_logging(verbose=True)
    assert len(logger.handlers) == 1


def test_logging_task_context_is_applied_to_verbose_output(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("agentqueue.tests.task")
    with logging_task_context(12):
        logger.info("event=session_dispatched issue_number=12")
    logger.info("event=queue_empty")

    lines = capsys.readouterr().err.splitlines()
    assert "task=#12 event=session_dispatched issue_number=12" in lines[0]
    assert "task=- event=queue_empty" in lines[1]


def test_logging_task_context_is_isolated_per_thread() -> None:
    def resolve(task_number: int) -> str:
        with logging_task_context(task_number):
            return observability._current_task_ref()

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(resolve, 1)
        second = pool.submit(resolve, 2)

    assert first.result() == "#1"
    assert second.result() == "#2"
    assert observability._current_task_ref() == "-"


def test_configure_logging_low_mode_filters_to_high_signal_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("agentqueue.tests.low")

    logger.info("event=poll_started once=true")
    logger.info("event=task_selected issue_number=1")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.warning("event=session_failed issue_number=3")

    stderr = capsys.readouterr().err
    assert "event=poll_started" not in stderr
    assert "event=task_selected issue_number=1" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=session_failed issue_number=3" in stderr


def test_configure_logging_writes_rotating_log_file(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    logger = logging.getLogger("agentqueue.tests.file")
    logger.info("event=task_selected issue_number=2")

    log_path = tmp_path / "logs" / "agentqueue.log"
    assert log_path.exists()
    assert "event=task_selected issue_number=2" in log_path.read_text(encoding="utf-8")
    [file_handler] = [
        handler
        for handler in logging.getLogger("agentqueue").handlers
        if isinstance(handler, TimedRotatingFileHandler)
    ]
    assert file_handler.when == "MIDNIGHT"
    assert file_handler.utc is True


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("agentqueue.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        complex_value={"k": "v"},
        with_equals="a=b",
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event ")
    assert message.index("a=") < message.index("b=")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "none_value=null" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert "complex_value=<dict>" in message
    assert "..." in message
    assert 'with_equals="a=b"' in message
    logger.handlers.clear()
