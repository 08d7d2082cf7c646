from __future__ import annotations

import logging

from omnisync.core.observability import (
    OperationContext,
    get_correlation_id,
    get_drain_id,
    log_event,
    reset_correlation_id,
    set_correlation_id,
)


def test_operation_context_sets_and_restores_ids() -> None:
    previous = get_correlation_id()

    with OperationContext("sync_drain", drain=True) as operation:
        assert get_correlation_id() == operation.correlation_id
        assert get_drain_id() == operation.correlation_id

    assert get_correlation_id() == previous
    assert get_drain_id() is None


def test_operation_context_without_drain_leaves_drain_id_empty() -> None:
    with OperationContext("cli"):
        assert get_correlation_id() is not None
        assert get_drain_id() is None


def test_log_event_uses_current_correlation_id(caplog) -> None:
    logger = logging.getLogger("tests.observability")
    token = set_correlation_id("corr-1")
    try:
        with caplog.at_level(logging.INFO, logger="tests.observability"):
            event = log_event(logger, "sync_drain_started", {"queued": 3})
    finally:
        reset_correlation_id(token)

    assert event["correlation_id"] == "corr-1"
    assert event["payload"] == {"queued": 3}
    record = caplog.records[-1]
    assert record.getMessage() == "sync_drain_started"
    assert record.correlation_id == "corr-1"
    assert record.extra["event"] == "sync_drain_started"


def test_operation_context_accepts_explicit_correlation_id() -> None:
    with OperationContext("cli", correlation_id="corr-cli") as operation:
        event = log_event(logging.getLogger("tests.observability"), "cli_status", {})

    assert operation.correlation_id == "corr-cli"
    assert event["correlation_id"] == "corr-cli"
    assert event["drain_id"] is None
