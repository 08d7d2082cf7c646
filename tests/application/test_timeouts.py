from __future__ import annotations

import threading

import pytest

from omnisync.application.timeouts import RemoteCallTimeout, call_with_timeout
from omnisync.core.observability import OperationContext, get_correlation_id


def test_call_with_timeout_returns_result() -> None:
    assert call_with_timeout(lambda: 42, 1.0) == 42


def test_call_without_timeout_runs_inline() -> None:
    caller = threading.get_ident()

    assert call_with_timeout(threading.get_ident, None) == caller
    assert call_with_timeout(threading.get_ident, 0) == caller


def test_call_with_timeout_raises_without_waiting_for_hung_call() -> None:
    release = threading.Event()

    with pytest.raises(RemoteCallTimeout, match="list"):
        call_with_timeout(lambda: release.wait(5), 0.05, label="list")

    release.set()


def test_call_with_timeout_propagates_exceptions() -> None:
    def _boom() -> None:
        raise ValueError("roto")

    with pytest.raises(ValueError, match="roto"):
        call_with_timeout(_boom, 1.0)


def test_worker_thread_sees_caller_correlation_id() -> None:
    with OperationContext("sync_drain") as operation:
        seen = call_with_timeout(get_correlation_id, 1.0)

    assert seen == operation.correlation_id
