from __future__ import annotations

import logging
import uuid
from datetime import datetime
from threading import RLock
from typing import Any, Callable

from omnisync.domain.ports import KeyValueStoragePort
from omnisync.domain.sync_models import (
    QueueItemStatus,
    QueueStats,
    SyncOperation,
    SyncQueueItem,
    SYNC_OPERATIONS,
    parse_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


class SyncQueue:
    """Cola persistente y ordenada de mutaciones aún no confirmadas por el remoto.

    Cada transición sustituye el snapshot inmutable del item y persiste la
    cola completa. El orden de inserción se conserva siempre; ``dequeue_next``
    nunca adelanta un item a otro anterior sin terminar del mismo recurso.
    """

    def __init__(
        self,
        storage: KeyValueStoragePort,
        storage_key: str,
        *,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._storage = storage
        self._storage_key = storage_key
        self._clock = clock
        self._id_factory = id_factory
        self._lock = RLock()
        self._items: list[SyncQueueItem] = self._load()

    def build_item(
        self,
        operation: SyncOperation,
        resource_type: str,
        resource_id: str,
        payload: dict[str, Any] | None = None,
        *,
        base_version: str | None = None,
        base_fields: dict[str, Any] | None = None,
        force: bool = False,
    ) -> SyncQueueItem:
        if operation not in SYNC_OPERATIONS:
            raise ValueError(f"Operación no soportada: {operation!r}")
        return SyncQueueItem(
            id=self._id_factory(),
            operation=operation,
            resource_type=resource_type,
            resource_id=str(resource_id),
            created_at=to_iso(self._clock()),
            payload=None if operation == "delete" else payload,
            base_version=base_version,
            base_fields=base_fields,
            force=force,
        )

    def enqueue(
        self,
        operation: SyncOperation,
        resource_type: str,
        resource_id: str,
        payload: dict[str, Any] | None = None,
        *,
        base_version: str | None = None,
        base_fields: dict[str, Any] | None = None,
        force: bool = False,
    ) -> SyncQueueItem:
        item = self.build_item(
            operation,
            resource_type,
            resource_id,
            payload,
            base_version=base_version,
            base_fields=base_fields,
            force=force,
        )
        return self.append(item)

    def append(self, item: SyncQueueItem) -> SyncQueueItem:
        item = item.with_status("pending", attempts=0, last_error=None, next_attempt_at=None)
        with self._lock:
            self._items.append(item)
            self._save()
        logger.info(
            "Mutación encolada: %s %s/%s",
            item.operation,
            item.resource_type,
            item.resource_id,
            extra={"extra": {"queue_item_id": item.id}},
        )
        return item

    def dequeue_next(self) -> SyncQueueItem | None:
        with self._lock:
            blocked: set[str] = set()
            for item in self._items:
                if item.status == "pending" and item.resource_id not in blocked:
                    return item
                if item.is_unfinished:
                    blocked.add(item.resource_id)
            return None

    def mark_in_flight(self, item_id: str) -> SyncQueueItem:
        with self._lock:
            current = self._require(item_id)
            in_flight = [
                item for item in self._items
                if item.status == "in-flight" and item.resource_id == current.resource_id and item.id != item_id
            ]
            if in_flight:
                raise RuntimeError(f"Ya hay una mutación en curso para {current.resource_id}")
            return self._replace(current.with_status("in-flight"))

    def mark_done(self, item_id: str) -> SyncQueueItem | None:
        with self._lock:
            item = self.get_item(item_id)
            if item is None:
                return None
            self._items = [candidate for candidate in self._items if candidate.id != item_id]
            self._save()
            return item.with_status("done")

    def mark_failed(self, item_id: str, error: str, next_attempt_at: datetime | None = None) -> SyncQueueItem:
        with self._lock:
            item = self._require(item_id)
            return self._replace(
                item.with_status(
                    "failed",
                    attempts=item.attempts + 1,
                    last_error=error,
                    next_attempt_at=to_iso(next_attempt_at) if next_attempt_at else None,
                )
            )

    def mark_conflict(self, item_id: str, error: str | None = None) -> SyncQueueItem:
        with self._lock:
            item = self._require(item_id)
            return self._replace(item.with_status("conflict", last_error=error or item.last_error))

    def requeue_due(self, max_attempts: int, now: datetime | None = None) -> int:
        """Devuelve a ``pending`` los fallidos reintentables cuyo backoff ya venció."""

        moment = now or self._clock()
        requeued = 0
        with self._lock:
            for item in list(self._items):
                if item.status != "failed" or item.attempts >= max_attempts:
                    continue
                due_at = parse_iso(item.next_attempt_at)
                if due_at is not None and due_at > moment:
                    continue
                self._items[self._index(item.id)] = item.with_status("pending")
                requeued += 1
            if requeued:
                self._save()
        return requeued

    def reset_failed(self) -> int:
        with self._lock:
            reset = 0
            for index, item in enumerate(self._items):
                if item.status == "failed":
                    self._items[index] = item.with_status("pending", attempts=0, last_error=None, next_attempt_at=None)
                    reset += 1
            if reset:
                self._save()
            return reset

    def substitute(self, item_id: str, replacement: SyncQueueItem) -> SyncQueueItem:
        """Sustituye un item conservando su posición en la cola."""

        replacement = replacement.with_status("pending", attempts=0, last_error=None, next_attempt_at=None)
        with self._lock:
            self._items[self._index(self._require(item_id).id)] = replacement
            self._save()
        return replacement

    def remove(self, item_id: str) -> bool:
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.id != item_id]
            changed = len(self._items) != before
            if changed:
                self._save()
            return changed

    def clear(self) -> int:
        with self._lock:
            removed = len(self._items)
            self._items = []
            self._save()
        logger.warning("Cola de sincronización vaciada manualmente (%s items)", removed)
        return removed

    def clear_done(self) -> int:
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.status != "done"]
            removed = before - len(self._items)
            if removed:
                self._save()
            return removed

    def items(self) -> list[SyncQueueItem]:
        with self._lock:
            return list(self._items)

    def get_item(self, item_id: str) -> SyncQueueItem | None:
        with self._lock:
            return next((item for item in self._items if item.id == item_id), None)

    def get_pending(self) -> list[SyncQueueItem]:
        with self._lock:
            return [item for item in self._items if item.status in ("pending", "failed")]

    def get_items_by_status(self, status: QueueItemStatus) -> list[SyncQueueItem]:
        with self._lock:
            return [item for item in self._items if item.status == status]

    def has_unfinished(self, resource_id: str) -> bool:
        with self._lock:
            return any(item.resource_id == resource_id and item.is_unfinished for item in self._items)

    def exhausted(self, max_attempts: int) -> list[SyncQueueItem]:
        with self._lock:
            return [item for item in self._items if item.status == "failed" and item.attempts >= max_attempts]

    def stats(self, max_attempts: int) -> QueueStats:
        with self._lock:
            items = list(self._items)
        failed = [item for item in items if item.status == "failed"]
        return QueueStats(
            pending=sum(1 for item in items if item.status == "pending"),
            in_flight=sum(1 for item in items if item.status == "in-flight"),
            failed=len(failed),
            exhausted=sum(1 for item in failed if item.attempts >= max_attempts),
            conflicts=sum(1 for item in items if item.status == "conflict"),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _require(self, item_id: str) -> SyncQueueItem:
        item = self.get_item(item_id)
        if item is None:
            raise KeyError(f"Item de cola inexistente: {item_id}")
        return item

    def _index(self, item_id: str) -> int:
        return next(index for index, item in enumerate(self._items) if item.id == item_id)

    def _replace(self, updated: SyncQueueItem) -> SyncQueueItem:
        self._items[self._index(updated.id)] = updated
        self._save()
        return updated

    def _load(self) -> list[SyncQueueItem]:
        raw = self._storage.get_item(self._storage_key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.error("Cola persistida con formato inesperado; se ignora (%s)", type(raw).__name__)
            return []
        items: list[SyncQueueItem] = []
        for entry in raw:
            try:
                item = SyncQueueItem.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Item de cola ilegible descartado: %s", exc, extra={"extra": {"entry": entry}})
                continue
            if item.status == "in-flight":
                # sesión interrumpida a mitad de aplicar: se reintenta
                item = item.with_status("pending")
            items.append(item)
        return items

    def _save(self) -> None:
        self._storage.set_item(self._storage_key, [item.to_dict() for item in self._items])
