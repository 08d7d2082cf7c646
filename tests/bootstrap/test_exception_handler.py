from __future__ import annotations

import json
import logging

from omnisync.bootstrap.exception_handler import generate_incident_id, handle_global_exception
from omnisync.bootstrap.logging import CRASH_LOG_NAME, configure_logging
from omnisync.core.observability import reset_correlation_id, set_correlation_id


def test_incident_ids_are_unique_and_prefixed() -> None:
    first, second = generate_incident_id(), generate_incident_id()

    assert first.startswith("INC-")
    assert len(first) == 16
    assert first != second


def test_global_exception_is_logged_with_incident_id(tmp_path, restore_root_logger) -> None:
    configure_logging(tmp_path, max_bytes=10_000)
    token = set_correlation_id("corr-crash")
    try:
        try:
            raise ValueError("fallo controlado")
        except ValueError as exc:
            incident_id = handle_global_exception(ValueError, exc, exc.__traceback__, log_dir=tmp_path)
    finally:
        reset_correlation_id(token)
    for handler in restore_root_logger.handlers:
        handler.flush()

    events = [json.loads(line) for line in (tmp_path / CRASH_LOG_NAME).read_text(encoding="utf-8").splitlines()]
    assert any(incident_id in event["message"] for event in events)
    assert events[-1]["correlation_id"] == "corr-crash"


def test_fallback_crash_log_when_logging_fails(tmp_path, monkeypatch) -> None:
    def _broken_critical(*args, **kwargs) -> None:
        raise RuntimeError("logging roto")

    monkeypatch.setattr(logging.getLogger("omnisync.global_exception"), "critical", _broken_critical)
    token = set_correlation_id("corr-fallback")
    try:
        try:
            raise KeyError("id")
        except KeyError as exc:
            incident_id = handle_global_exception(KeyError, exc, exc.__traceback__, log_dir=tmp_path)
    finally:
        reset_correlation_id(token)

    [line] = (tmp_path / CRASH_LOG_NAME).read_text(encoding="utf-8").splitlines()
    payload = json.loads(line)
    assert payload["incident_id"] == incident_id
    assert payload["correlation_id"] == "corr-fallback"
    assert payload["error_type"] == "KeyError"
    assert "Traceback" in payload["stacktrace"]
