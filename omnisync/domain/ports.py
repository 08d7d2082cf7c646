from __future__ import annotations

from typing import Any, Callable, Protocol

from omnisync.domain.sync_models import RemoteResult


class KeyValueStoragePort(Protocol):
    def get_item(self, key: str) -> Any | None:
        ...

    def set_item(self, key: str, value: Any) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class RemoteStorePort(Protocol):
    """Cliente del almacén remoto. Ningún método lanza: los fallos vuelven como ``RemoteResult``."""

    def create(self, record: dict[str, Any]) -> RemoteResult:
        ...

    def update(self, record_id: str, patch: dict[str, Any]) -> RemoteResult:
        ...

    def delete(self, record_id: str) -> RemoteResult:
        ...

    def list(self) -> RemoteResult:
        ...

    def get(self, record_id: str) -> RemoteResult:
        ...

    def check_connection(self) -> RemoteResult:
        ...


class SchedulerPort(Protocol):
    def start(self, interval_seconds: float, callback: Callable[[], None]) -> None:
        ...

    def stop(self) -> None:
        ...

    def is_active(self) -> bool:
        ...


class ConnectivityProbePort(Protocol):
    def check(self, *, timeout_seconds: float = 3.0) -> bool:
        ...
