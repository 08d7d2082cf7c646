from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

SyncOperation = Literal["create", "update", "delete"]
QueueItemStatus = Literal["pending", "in-flight", "failed", "done", "conflict"]
SyncStatus = Literal["synced", "pending", "syncing", "failed"]
ConflictStrategy = Literal["latest-wins", "manual", "local-wins", "remote-wins", "merge"]
ConflictBasePolicy = Literal["versioned", "last-write-wins"]
DrainOutcome = Literal["completed", "busy", "unreachable", "offline"]
NetworkStatus = Literal["online", "offline", "slow"]

SYNC_OPERATIONS: tuple[str, ...] = ("create", "update", "delete")
CONFLICT_STRATEGIES: tuple[str, ...] = ("latest-wins", "manual", "local-wins", "remote-wins", "merge")
CONFLICT_BASE_POLICIES: tuple[str, ...] = ("versioned", "last-write-wins")
UNFINISHED_STATUSES: frozenset[str] = frozenset({"pending", "in-flight", "failed", "conflict"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_iso(value: Any) -> datetime | None:
    """Interpreta timestamps ISO (incluido el sufijo ``Z`` de Postgres/JS); ``None`` si no es fecha."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class SyncQueueItem:
    id: str
    operation: SyncOperation
    resource_type: str
    resource_id: str
    created_at: str
    payload: dict[str, Any] | None = None
    attempts: int = 0
    last_error: str | None = None
    status: QueueItemStatus = "pending"
    base_version: str | None = None
    base_fields: dict[str, Any] | None = None
    next_attempt_at: str | None = None
    force: bool = False

    @property
    def is_unfinished(self) -> bool:
        return self.status in UNFINISHED_STATUSES

    def with_status(self, status: QueueItemStatus, **changes: Any) -> "SyncQueueItem":
        return replace(self, status=status, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncQueueItem":
        operation = str(payload["operation"])
        if operation not in SYNC_OPERATIONS:
            raise ValueError(f"Operación de cola desconocida: {operation!r}")
        return cls(
            id=str(payload["id"]),
            operation=operation,  # type: ignore[arg-type]
            resource_type=str(payload["resource_type"]),
            resource_id=str(payload["resource_id"]),
            created_at=str(payload["created_at"]),
            payload=payload.get("payload"),
            attempts=int(payload.get("attempts") or 0),
            last_error=payload.get("last_error"),
            status=payload.get("status") or "pending",
            base_version=payload.get("base_version"),
            base_fields=payload.get("base_fields"),
            next_attempt_at=payload.get("next_attempt_at"),
            force=bool(payload.get("force", False)),
        )


@dataclass(frozen=True)
class SyncConflict:
    id: str
    resource_type: str
    resource_id: str
    queue_item_id: str
    operation: SyncOperation
    local_version: dict[str, Any] | None
    remote_version: dict[str, Any] | None
    local_timestamp: str | None
    remote_timestamp: str | None
    detected_at: str
    fields: tuple[str, ...] = ()

    @property
    def remote_deleted(self) -> bool:
        return self.remote_version is None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["fields"] = list(self.fields)
        return data

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SyncConflict":
        return cls(
            id=str(payload["id"]),
            resource_type=str(payload["resource_type"]),
            resource_id=str(payload["resource_id"]),
            queue_item_id=str(payload.get("queue_item_id") or ""),
            operation=payload.get("operation") or "update",
            local_version=payload.get("local_version"),
            remote_version=payload.get("remote_version"),
            local_timestamp=payload.get("local_timestamp"),
            remote_timestamp=payload.get("remote_timestamp"),
            detected_at=str(payload["detected_at"]),
            fields=tuple(payload.get("fields") or ()),
        )


@dataclass(frozen=True)
class RemoteResult:
    success: bool
    data: Any = None
    error: str | None = None
    status_code: int | None = None
    transient: bool = False

    @classmethod
    def ok(cls, data: Any = None, status_code: int | None = None) -> "RemoteResult":
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(cls, error: str, *, status_code: int | None = None, transient: bool = False) -> "RemoteResult":
        return cls(success=False, error=error, status_code=status_code, transient=transient)


@dataclass(frozen=True)
class ApplyResult:
    success: bool
    error: str | None = None
    conflict: SyncConflict | None = None
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> "ApplyResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str) -> "ApplyResult":
        return cls(success=False, error=error)

    @classmethod
    def conflicted(cls, conflict: SyncConflict) -> "ApplyResult":
        return cls(success=False, error="Conflicto con la versión remota", conflict=conflict)


@dataclass(frozen=True)
class ConflictResolution:
    """Decisión sobre un conflicto: ``apply_local`` escribe ``state``, ``keep_remote`` acepta el remoto."""

    action: Literal["apply_local", "keep_remote", "manual"]
    state: dict[str, Any] | None = None
    delete: bool = False


@dataclass(frozen=True)
class QueueStats:
    pending: int = 0
    in_flight: int = 0
    failed: int = 0
    exhausted: int = 0
    conflicts: int = 0

    @property
    def unfinished(self) -> int:
        return self.pending + self.in_flight + self.failed + self.conflicts


@dataclass(frozen=True)
class DrainReport:
    drain_id: str
    started_at: str
    finished_at: str
    outcome: DrainOutcome
    status: SyncStatus
    applied: int = 0
    failed: int = 0
    conflicts: int = 0
    deferred: int = 0
    refreshed: bool = False
    error: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == "completed" and not self.failed and not self.conflicts and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SyncProgress:
    """Avance de un drenado. ``failed`` cuenta lo que no se aplicó (fallos y conflictos aparcados)."""

    total: int
    completed: int = 0
    failed: int = 0
    current: str | None = None

    @property
    def processed(self) -> int:
        return self.completed + self.failed


@dataclass(frozen=True)
class SyncState:
    is_syncing: bool
    is_online: bool
    sync_status: SyncStatus
    pending_count: int
    last_sync: str | None
    conflicts: tuple[SyncConflict, ...] = ()
    error: str | None = None
    network_status: NetworkStatus = "online"
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_syncing": self.is_syncing,
            "is_online": self.is_online,
            "sync_status": self.sync_status,
            "pending_count": self.pending_count,
            "last_sync": self.last_sync,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "error": self.error,
            "network_status": self.network_status,
            "latency_ms": self.latency_ms,
        }
