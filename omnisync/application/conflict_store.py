from __future__ import annotations

import logging
from threading import RLock

from omnisync.domain.ports import KeyValueStoragePort
from omnisync.domain.sync_models import SyncConflict

logger = logging.getLogger(__name__)


class ConflictStore:
    """Conjunto persistido de conflictos abiertos. Los registros nunca se modifican, solo se retiran."""

    def __init__(self, storage: KeyValueStoragePort, storage_key: str) -> None:
        self._storage = storage
        self._storage_key = storage_key
        self._lock = RLock()

    def add(self, conflict: SyncConflict) -> None:
        with self._lock:
            conflicts = [current for current in self._read() if current.id != conflict.id]
            conflicts.append(conflict)
            self._write(conflicts)

    def remove(self, conflict_id: str) -> SyncConflict | None:
        with self._lock:
            conflicts = self._read()
            removed = next((conflict for conflict in conflicts if conflict.id == conflict_id), None)
            if removed is not None:
                self._write([conflict for conflict in conflicts if conflict.id != conflict_id])
            return removed

    def get(self, conflict_id: str) -> SyncConflict | None:
        return next((conflict for conflict in self.list() if conflict.id == conflict_id), None)

    def for_queue_item(self, queue_item_id: str) -> SyncConflict | None:
        return next((conflict for conflict in self.list() if conflict.queue_item_id == queue_item_id), None)

    def list(self) -> list[SyncConflict]:
        with self._lock:
            return self._read()

    def count(self) -> int:
        return len(self.list())

    def clear(self) -> None:
        with self._lock:
            self._write([])

    def _read(self) -> list[SyncConflict]:
        raw = self._storage.get_item(self._storage_key)
        if not isinstance(raw, list):
            return []
        conflicts: list[SyncConflict] = []
        for entry in raw:
            try:
                conflicts.append(SyncConflict.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Conflicto persistido ilegible descartado: %s", exc)
        return conflicts

    def _write(self, conflicts: list[SyncConflict]) -> None:
        self._storage.set_item(self._storage_key, [conflict.to_dict() for conflict in conflicts])
