from __future__ import annotations

import uuid
from contextlib import ExitStack, contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Iterator

_CORRELATION_ID: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_DRAIN_ID: ContextVar[str | None] = ContextVar("drain_id", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()


def get_drain_id() -> str | None:
    return _DRAIN_ID.get()


def set_correlation_id(correlation_id: str | None) -> Token[str | None]:
    return _CORRELATION_ID.set(correlation_id)


def reset_correlation_id(token: Token[str | None]) -> None:
    _CORRELATION_ID.reset(token)


@contextmanager
def _bound(var: ContextVar[str | None], value: str | None) -> Iterator[None]:
    token = var.set(value)
    try:
        yield
    finally:
        var.reset(token)


class OperationContext:
    """Asocia un correlation_id (y en drenados también el drain_id) a todo lo que se loguea dentro.

    Los ids viajan en contextvars, así que ``copy_context`` los lleva a los hilos
    que ejecutan las llamadas remotas con timeout.
    """

    def __init__(self, operation_name: str, *, drain: bool = False, correlation_id: str | None = None) -> None:
        self.operation_name = operation_name
        self.correlation_id = correlation_id or generate_correlation_id()
        self.drain_id = self.correlation_id if drain else None
        self._stack: ExitStack | None = None

    def __enter__(self) -> "OperationContext":
        stack = ExitStack()
        stack.enter_context(_bound(_CORRELATION_ID, self.correlation_id))
        stack.enter_context(_bound(_DRAIN_ID, self.drain_id))
        self._stack = stack
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        if self._stack is not None:
            self._stack.close()
            self._stack = None


def log_event(logger: Any, event_name: str, payload: dict[str, Any], correlation_id: str | None = None) -> dict[str, Any]:
    resolved_id = correlation_id or get_correlation_id()
    drain_id = get_drain_id()
    event = {
        "event": event_name,
        "correlation_id": resolved_id,
        "drain_id": drain_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    logger.info(event_name, extra={"correlation_id": resolved_id, "drain_id": drain_id, "extra": event})
    return event
