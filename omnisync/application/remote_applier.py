from __future__ import annotations

import logging
from typing import Any

from omnisync.application.conflict_detector import ConflictDetector
from omnisync.application.mirror_store import LocalMirrorStore
from omnisync.domain.ports import RemoteStorePort
from omnisync.domain.sync_models import ApplyResult, RemoteResult, SyncQueueItem

logger = logging.getLogger(__name__)


def _failure(result: RemoteResult, default: str) -> ApplyResult:
    return ApplyResult.failed(result.error or default)


class RemoteApplier:
    """``apply_fn`` por defecto: traduce un item genérico a la llamada concreta del remoto.

    Antes de escribir consulta el estado remoto cuando el detector lo necesita;
    si hay conflicto devuelve ``ApplyResult.conflicted`` sin tocar el remoto.
    """

    def __init__(
        self,
        remote: RemoteStorePort,
        detector: ConflictDetector,
        mirror: LocalMirrorStore | None = None,
    ) -> None:
        self._remote = remote
        self._detector = detector
        self._mirror = mirror

    def __call__(self, item: SyncQueueItem) -> ApplyResult:
        if self._detector.needs_remote_state(item):
            current = self._remote.get(item.resource_id)
            if not current.success:
                return _failure(current, "No se pudo leer el estado remoto")
            local_record = self._mirror.get(item.resource_id) if self._mirror is not None else None
            conflict = self._detector.detect(item, current.data, local_record)
            if conflict is not None:
                return ApplyResult.conflicted(conflict)
            if item.operation == "delete" and current.data is None:
                logger.info("%s/%s ya no existe en remoto; borrado confirmado", item.resource_type, item.resource_id)
                return ApplyResult.ok()
        return self.write(item)

    def write(self, item: SyncQueueItem) -> ApplyResult:
        if item.operation == "delete":
            result = self._remote.delete(item.resource_id)
        elif item.operation == "create" or item.force:
            result = self._remote.create(self._full_record(item))
        else:
            result = self._remote.update(item.resource_id, dict(item.payload or {}))
        if not result.success:
            return _failure(result, f"El remoto rechazó {item.operation}")
        return ApplyResult.ok(result.data)

    @staticmethod
    def _full_record(item: SyncQueueItem) -> dict[str, Any]:
        record = dict(item.payload or {})
        record.setdefault("id", item.resource_id)
        return record
