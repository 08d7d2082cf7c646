from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

from omnisync.domain.sync_models import (
    CONFLICT_STRATEGIES,
    ConflictBasePolicy,
    ConflictResolution,
    ConflictStrategy,
    SyncConflict,
    SyncQueueItem,
    parse_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_IGNORED_FIELDS: frozenset[str] = frozenset({"id", "createdAt", "updatedAt"})


def _same_value(left: Any, right: Any) -> bool:
    if left == right:
        return True
    left_date, right_date = parse_iso(left), parse_iso(right)
    if left_date is not None and right_date is not None:
        return left_date == right_date
    return json.dumps(left, sort_keys=True, default=str) == json.dumps(right, sort_keys=True, default=str)


class ConflictDetector:
    """Decide si aplicar una mutación pisaría un cambio remoto posterior a su base.

    Con ``versioned`` se compara el ``base_version`` guardado al encolar con el
    timestamp remoto actual y, si el remoto es más reciente, los campos tocados
    por la mutación. Con ``last-write-wins`` solo se detecta el borrado remoto
    de un registro con una actualización pendiente.
    """

    def __init__(
        self,
        base_policy: ConflictBasePolicy = "versioned",
        *,
        timestamp_field: str = "updatedAt",
        ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.base_policy = base_policy
        self._timestamp_field = timestamp_field
        self._ignored = frozenset(ignored_fields)
        self._clock = clock
        self._id_factory = id_factory

    def needs_remote_state(self, item: SyncQueueItem) -> bool:
        if item.force:
            return False
        if item.operation == "update":
            return True
        return self.base_policy == "versioned"

    def detect(
        self,
        item: SyncQueueItem,
        remote_record: dict[str, Any] | None,
        local_record: dict[str, Any] | None = None,
    ) -> SyncConflict | None:
        if item.force:
            return None
        if item.operation == "update":
            if remote_record is None:
                return self._build(item, None, local_record, fields=self._touched_fields(item))
            if self.base_policy != "versioned":
                return None
            fields = self._changed_since_base(item, remote_record)
            if fields and self._remote_is_newer(item, remote_record):
                return self._build(item, remote_record, local_record, fields=fields)
            return None
        if self.base_policy != "versioned" or remote_record is None:
            return None
        if item.operation == "delete":
            if self._remote_is_newer(item, remote_record):
                return self._build(item, remote_record, None, fields=())
            return None
        differing = self._differing_client_fields(item, remote_record)
        if differing and not self._is_own_write(item, remote_record):
            return self._build(item, remote_record, item.payload, fields=differing)
        return None

    def _differing_client_fields(self, item: SyncQueueItem, remote_record: dict[str, Any]) -> tuple[str, ...]:
        # listas y objetos anidados los reescribe el servidor (ids de líneas, orden)
        return tuple(
            key
            for key, value in (item.payload or {}).items()
            if key not in self._ignored
            and key in remote_record
            and not isinstance(value, (dict, list))
            and not _same_value(remote_record[key], value)
        )

    def _is_own_write(self, item: SyncQueueItem, remote_record: dict[str, Any]) -> bool:
        """Un create repetido tras perder la respuesta encuentra su propia escritura en remoto."""

        own_ts = parse_iso((item.payload or {}).get(self._timestamp_field))
        remote_ts = parse_iso(remote_record.get(self._timestamp_field))
        if own_ts is None or remote_ts is None:
            return False
        return remote_ts <= own_ts

    def _touched_fields(self, item: SyncQueueItem) -> tuple[str, ...]:
        return tuple(key for key in (item.payload or {}) if key not in self._ignored)

    def _changed_since_base(self, item: SyncQueueItem, remote_record: dict[str, Any]) -> tuple[str, ...]:
        base_fields = item.base_fields or {}
        changed: list[str] = []
        for key in self._touched_fields(item):
            remote_value = remote_record.get(key)
            if key in base_fields:
                if not _same_value(remote_value, base_fields[key]):
                    changed.append(key)
            elif not _same_value(remote_value, (item.payload or {}).get(key)):
                changed.append(key)
        return tuple(changed)

    def _remote_is_newer(self, item: SyncQueueItem, remote_record: dict[str, Any]) -> bool:
        remote_ts = parse_iso(remote_record.get(self._timestamp_field))
        base_ts = parse_iso(item.base_version)
        if remote_ts is None or base_ts is None:
            # sin versión base la mutación se aplica como last-write-wins
            return False
        return remote_ts > base_ts

    def _build(
        self,
        item: SyncQueueItem,
        remote_record: dict[str, Any] | None,
        local_record: dict[str, Any] | None,
        *,
        fields: tuple[str, ...],
    ) -> SyncConflict:
        local_version: dict[str, Any] | None
        if item.operation == "delete":
            local_version = None
        elif local_record is not None:
            local_version = {**local_record, **(item.payload or {})}
        else:
            local_version = dict(item.payload or {})
        conflict = SyncConflict(
            id=self._id_factory(),
            resource_type=item.resource_type,
            resource_id=item.resource_id,
            queue_item_id=item.id,
            operation=item.operation,
            local_version=local_version,
            remote_version=dict(remote_record) if remote_record is not None else None,
            local_timestamp=item.created_at,
            remote_timestamp=str(remote_record.get(self._timestamp_field)) if remote_record else None,
            detected_at=to_iso(self._clock()),
            fields=fields,
        )
        logger.warning(
            "Conflicto detectado en %s/%s (%s)",
            item.resource_type,
            item.resource_id,
            "remoto borrado" if remote_record is None else ", ".join(fields) or "registro modificado",
            extra={"extra": {"conflict_id": conflict.id, "queue_item_id": item.id}},
        )
        return conflict


def merge_versions(conflict: SyncConflict) -> dict[str, Any] | None:
    """Registro remoto con los valores locales de los campos que el remoto no cambió."""

    if conflict.remote_version is None:
        return dict(conflict.local_version) if conflict.local_version is not None else None
    merged = dict(conflict.remote_version)
    for key, value in (conflict.local_version or {}).items():
        if key in conflict.fields or key in DEFAULT_IGNORED_FIELDS:
            continue
        if value is not None:
            merged[key] = value
    return merged


def resolve_conflict(conflict: SyncConflict, strategy: ConflictStrategy) -> ConflictResolution:
    if strategy not in CONFLICT_STRATEGIES:
        raise ValueError(f"Estrategia de conflicto desconocida: {strategy!r}")
    local_deletes = conflict.operation == "delete"
    if strategy == "manual":
        return ConflictResolution(action="manual")
    if strategy == "local-wins":
        return ConflictResolution(action="apply_local", state=conflict.local_version, delete=local_deletes)
    if strategy == "remote-wins":
        return ConflictResolution(action="keep_remote", state=conflict.remote_version)
    if conflict.remote_deleted and not local_deletes:
        # sin versión remota no hay timestamp que comparar ni campos que fusionar
        return ConflictResolution(action="manual")
    if strategy == "merge":
        if local_deletes:
            return ConflictResolution(action="keep_remote", state=conflict.remote_version)
        return ConflictResolution(action="apply_local", state=merge_versions(conflict))

    local_ts = parse_iso(conflict.local_timestamp)
    remote_ts = parse_iso(conflict.remote_timestamp)
    local_is_newer = remote_ts is None or (local_ts is not None and local_ts > remote_ts)
    if local_is_newer:
        return ConflictResolution(action="apply_local", state=conflict.local_version, delete=local_deletes)
    return ConflictResolution(action="keep_remote", state=conflict.remote_version)
