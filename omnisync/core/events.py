from __future__ import annotations

import logging
from threading import RLock
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class Subscription:
    """Handle devuelto por ``Subject.subscribe``; ``unsubscribe`` es idempotente."""

    def __init__(self, release: Callable[[], None]) -> None:
        self._release: Callable[[], None] | None = release

    @property
    def active(self) -> bool:
        return self._release is not None

    def unsubscribe(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        self.unsubscribe()


class Subject(Generic[T]):
    """Observable mínimo: los errores de un suscriptor se registran y no cortan la notificación."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = RLock()
        self._next_token = 0
        self._listeners: dict[int, Callable[[T], None]] = {}

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = callback
        return Subscription(lambda: self._remove(token))

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def emit(self, value: T) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for callback in listeners:
            try:
                callback(value)
            except Exception:  # noqa: BLE001
                logger.exception("Error en suscriptor de %s", self.name)

    def _remove(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)
