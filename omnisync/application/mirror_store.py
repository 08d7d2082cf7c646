from __future__ import annotations

import copy
import logging
from datetime import datetime
from threading import RLock
from typing import Any, Callable

from omnisync.domain.ports import KeyValueStoragePort
from omnisync.domain.sync_models import to_iso, utc_now

logger = logging.getLogger(__name__)


class LocalMirrorStore:
    """Último snapshot conocido de los registros; fuente de lectura cuando no hay remoto.

    ``replace`` sobrescribe el snapshot completo (nunca fusiona campo a campo).
    Las escrituras optimistas (``upsert``/``apply_patch``/``remove``) son
    read-modify-write atómicos bajo el mismo lock que ``replace``.
    """

    def __init__(
        self,
        storage: KeyValueStoragePort,
        records_key: str,
        last_sync_key: str,
        *,
        id_field: str = "id",
        timestamp_field: str = "updatedAt",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._records_key = records_key
        self._last_sync_key = last_sync_key
        self._id_field = id_field
        self._timestamp_field = timestamp_field
        self._clock = clock
        self._lock = RLock()

    @property
    def timestamp_field(self) -> str:
        return self._timestamp_field

    def load(self) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._read())

    def get(self, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            for record in self._read():
                if str(record.get(self._id_field)) == str(record_id):
                    return copy.deepcopy(record)
        return None

    def replace(self, records: list[dict[str, Any]]) -> None:
        snapshot = [dict(record) for record in records]
        with self._lock:
            self._storage.set_item(self._records_key, snapshot)
        logger.info("Espejo local sobrescrito con %s registros", len(snapshot))

    def upsert(self, record: dict[str, Any]) -> dict[str, Any]:
        record_id = str(record[self._id_field])
        stored = dict(record)
        with self._lock:
            records = self._read()
            for index, current in enumerate(records):
                if str(current.get(self._id_field)) == record_id:
                    records[index] = stored
                    break
            else:
                records.append(stored)
            self._storage.set_item(self._records_key, records)
        return copy.deepcopy(stored)

    def apply_patch(self, record_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            records = self._read()
            for index, current in enumerate(records):
                if str(current.get(self._id_field)) == str(record_id):
                    merged = {**current, **patch, self._timestamp_field: to_iso(self._clock())}
                    records[index] = merged
                    self._storage.set_item(self._records_key, records)
                    return copy.deepcopy(merged)
        return None

    def remove(self, record_id: str) -> bool:
        with self._lock:
            records = self._read()
            kept = [record for record in records if str(record.get(self._id_field)) != str(record_id)]
            if len(kept) == len(records):
                return False
            self._storage.set_item(self._records_key, kept)
            return True

    def last_sync(self) -> str | None:
        value = self._storage.get_item(self._last_sync_key)
        return str(value) if value else None

    def set_last_sync(self, moment: datetime | None = None) -> str:
        stamp = to_iso(moment or self._clock())
        self._storage.set_item(self._last_sync_key, stamp)
        return stamp

    def _read(self) -> list[dict[str, Any]]:
        raw = self._storage.get_item(self._records_key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.error("Espejo local con formato inesperado; se trata como vacío")
            return []
        return [dict(record) for record in raw if isinstance(record, dict)]
