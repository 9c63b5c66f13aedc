from __future__ import annotations

import json
import logging
from pathlib import Path

from hafailover.core.config import Settings
from hafailover.core.logging import NOTICE, RUN_LOGGER_NAME, StructuredLogger, configure_logging
from hafailover.tests.utils.fakes import EventRecorder


def _reset_run_logger() -> None:
    logger = logging.getLogger(RUN_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


def test_event_record_shape(logger, recorder) -> None:
    # Every event carries timestamp, name, pid and a context object.
    record = logger.notice("master_transition_complete", attempts=2, path=Path("/tmp/x"))
    assert record == {
        "timestamp": "2026-01-01T00:00:00+00:00",
        "event": "master_transition_complete",
        "pid": 4242,
        "context": {"attempts": 2, "path": Path("/tmp/x")},
    }
    emitted = recorder.events[0]
    assert emitted["level"] == "NOTICE"
    assert emitted["context"]["path"] == "/tmp/x"


def test_notice_sits_between_info_and_warning() -> None:
    # The custom level orders like syslog's notice.
    assert logging.INFO < NOTICE < logging.WARNING
    assert logging.getLevelName(NOTICE) == "NOTICE"


def test_dry_run_logs_to_stdout(capsys) -> None:
    # Dry runs print prefixed events locally and include debug detail.
    try:
        log = configure_logging(Settings(), dry_run=True)
        log.debug("event_ignored", type="INIT")
        output = capsys.readouterr().out.strip()
    finally:
        _reset_run_logger()
    assert output.startswith("DRY RUN [DEBUG]: ")
    payload = json.loads(output.split(": ", 1)[1])
    assert payload["event"] == "event_ignored"
    assert payload["context"] == {"type": "INIT"}


def test_configure_logging_replaces_handlers() -> None:
    # Repeated configuration never stacks handlers on the run logger.
    first, second = EventRecorder(), EventRecorder()
    try:
        configure_logging(Settings(), handler=first)
        log = configure_logging(Settings(log_level="warning"), handler=second)
        log.info("dropped")
        log.warning("kept")
        assert logging.getLogger(RUN_LOGGER_NAME).handlers == [second]
    finally:
        _reset_run_logger()
    assert first.events == []
    assert second.names() == ["kept"]


def test_structured_logger_defaults_to_process_pid() -> None:
    # Without overrides the record carries the real pid and an ISO timestamp.
    recorder = EventRecorder()
    base = logging.getLogger("hafailover.tests.pid")
    base.handlers = [recorder]
    base.setLevel(logging.DEBUG)
    base.propagate = False
    try:
        StructuredLogger(base).info("state_change_detected")
    finally:
        base.handlers = []
    event = recorder.events[0]
    assert event["pid"] > 0
    assert "T" in event["timestamp"]
