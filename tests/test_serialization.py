from __future__ import annotations

import io
import json
import logging
import sys
from datetime import datetime, timezone

from rich.console import Console

from vault_export.logging import (
    JsonFormatter,
    LogConfig,
    PlainFormatter,
    StepTimers,
    add_run_log_file,
    log_event,
    remove_run_log_file,
    setup_logging,
)
from vault_export.util.rich_progress import ExportProgress
from vault_export.util.serialization import REDACTED_VALUE, redact_params, sanitize_for_json, truncate_text


def test_sanitize_for_json_redacts_sensitive_fields() -> None:
    payload = {
        "password": "secret",
        "tokenValue": "abc",
        "Authorization": "raw-token",
        "nested": {"private_key": "-----BEGIN", "safe": 1},
    }

    sanitized = sanitize_for_json(payload)

    assert sanitized["password"] == REDACTED_VALUE
    assert sanitized["tokenValue"] == REDACTED_VALUE
    assert sanitized["Authorization"] == REDACTED_VALUE
    assert sanitized["nested"]["private_key"] == REDACTED_VALUE
    assert sanitized["nested"]["safe"] == 1


def test_sanitize_for_json_handles_datetime_and_bytes() -> None:
    ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    payload = {"when": ts, "blob": b"bytes"}

    sanitized = sanitize_for_json(payload)

    assert sanitized["when"] == "2024-01-01T00:00:00+00:00"
    assert sanitized["blob"] == "bytes"


def test_redact_params_keeps_cursor_values() -> None:
    assert redact_params(None) == {}
    assert redact_params({"offset": 0, "limit": 1000, "search": "svc"}) == {
        "offset": 0,
        "limit": 1000,
        "search": "svc",
    }


def test_truncate_text_collapses_whitespace() -> None:
    assert truncate_text(None) == ""
    assert truncate_text("a\n  b") == "a b"
    assert truncate_text("x" * 20, 10) == "xxxxxxx..."


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="unit",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_skips_non_serializable_extras() -> None:
    record = _record(good={"a": 1, "b": [1, 2]}, bad={"obj": object()})

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello"
    assert payload["good"] == {"a": 1, "b": [1, 2]}
    assert "bad" not in payload


def test_json_formatter_redacts_sensitive_extras() -> None:
    record = _record(params={"offset": 0, "token": "abc"})
    payload = json.loads(JsonFormatter().format(record))
    assert payload["params"] == {"offset": 0, "token": REDACTED_VALUE}


def test_plain_formatter_renders_step_phase_and_context() -> None:
    record = _record(
        "Retryable failure; backing off",
        step="request",
        phase="warning",
        url="https://pvwa/API/Safes/",
        attempt=1,
        status_code=503,
        delay_s=5.0,
    )
    line = PlainFormatter().format(record)
    assert "[request:warning] Retryable failure; backing off" in line
    assert "url=https://pvwa/API/Safes/, attempt=1, status_code=503, delay_s=5.0" in line


def test_log_event_returns_duration_for_terminal_phase(caplog) -> None:
    logger = logging.getLogger("unit.events")
    timers = StepTimers()
    with caplog.at_level(logging.INFO, logger="unit.events"):
        assert log_event(logger, logging.INFO, "go", step="report", phase="start", timers=timers) is None
        duration = log_event(logger, logging.INFO, "done", step="report", phase="complete", timers=timers)

    assert isinstance(duration, int)
    assert caplog.records[-1].event == "report.complete"
    assert caplog.records[-1].duration_ms == duration


def test_add_run_log_file_writes(tmp_path) -> None:
    if getattr(setup_logging, "_configured", False):
        setattr(setup_logging, "_configured", False)
    setup_logging(LogConfig(level="INFO", json_logs=False))

    log_path = tmp_path / "logs" / "vault-export.log"
    add_run_log_file(log_path)

    logger = logging.getLogger("unit.test")
    logger.info("file log test")
    remove_run_log_file(log_path)
    logger.info("after removal")

    content = log_path.read_text(encoding="utf-8")
    assert "file log test" in content
    assert "after removal" not in content


def test_console_handler_follows_current_stderr(monkeypatch) -> None:
    setup_logging(LogConfig(level="INFO", json_logs=False))
    swapped = io.StringIO()
    monkeypatch.setattr(sys, "stderr", swapped)

    logging.getLogger("unit.stderr").warning("written to the current stderr")

    assert "written to the current stderr" in swapped.getvalue()


def test_log_lines_go_through_live_progress_console() -> None:
    setup_logging(LogConfig(level="INFO", json_logs=False))
    buf = io.StringIO()
    console = Console(file=buf, force_terminal=True, width=160)

    with ExportProgress(enabled=True, console=console) as progress:
        progress.start_report("safes")
        logging.getLogger("unit.progress").warning("Retryable failure; backing off")
        progress.finish_report("safes", "succeeded")

    assert "Retryable failure; backing off" in buf.getvalue()
