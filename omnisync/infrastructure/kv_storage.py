from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

from omnisync.core.errors import PersistenceError
from omnisync.domain.ports import KeyValueStoragePort

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class SQLiteKeyValueStorage:
    """Almacén clave/valor JSON sobre SQLite; los fallos de SQLite se elevan como ``PersistenceError``."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = threading.Lock()
        with self._lock:
            self._execute(_SCHEMA)
            self._commit()

    def get_item(self, key: str) -> Any | None:
        with self._lock:
            row = self._execute("SELECT value_json FROM kv_store WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as exc:
            logger.error("Valor corrupto para la clave %s; se ignora: %s", key, exc)
            return None

    def set_item(self, key: str, value: Any) -> None:
        try:
            serialized = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Valor no serializable para {key}: {exc}") from exc
        with self._lock:
            self._execute(
                """
                INSERT INTO kv_store (key, value_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                """,
                (key, serialized, datetime.now(timezone.utc).isoformat()),
            )
            self._commit()

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self._commit()

    def keys(self) -> list[str]:
        with self._lock:
            return [row[0] for row in self._execute("SELECT key FROM kv_store ORDER BY key").fetchall()]

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Error de almacenamiento local: {exc}") from exc

    def _commit(self) -> None:
        try:
            self._connection.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Error de almacenamiento local: {exc}") from exc


class InMemoryKeyValueStorage:
    """Almacén volátil; guarda copias JSON para que nadie comparta referencias mutables."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set_item(key, value)

    def get_item(self, key: str) -> Any | None:
        with self._lock:
            raw = self._values.get(key)
        return json.loads(raw) if raw is not None else None

    def set_item(self, key: str, value: Any) -> None:
        serialized = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._values[key] = serialized

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._values)


class ResilientKeyValueStorage:
    """Envuelve un almacén persistente y degrada a memoria al primer ``PersistenceError``.

    La sesión sigue funcionando con lo ya leído; el fallo se registra una sola vez.
    """

    def __init__(self, primary: KeyValueStoragePort) -> None:
        self._primary = primary
        self._fallback = InMemoryKeyValueStorage()
        self._known: dict[str, Any] = {}
        self._degraded = False
        self._lock = threading.Lock()

    @property
    def degraded(self) -> bool:
        return self._degraded

    def get_item(self, key: str) -> Any | None:
        if not self._degraded:
            try:
                value = self._primary.get_item(key)
            except PersistenceError as exc:
                self._degrade(exc)
            else:
                self._known[key] = value
                return value
        return self._fallback.get_item(key)

    def set_item(self, key: str, value: Any) -> None:
        if not self._degraded:
            try:
                self._primary.set_item(key, value)
            except PersistenceError as exc:
                self._degrade(exc)
            else:
                self._known[key] = value
                return
        self._fallback.set_item(key, value)

    def remove_item(self, key: str) -> None:
        if not self._degraded:
            try:
                self._primary.remove_item(key)
            except PersistenceError as exc:
                self._degrade(exc)
            else:
                self._known.pop(key, None)
                return
        self._fallback.remove_item(key)

    def _degrade(self, exc: PersistenceError) -> None:
        with self._lock:
            if self._degraded:
                return
            self._degraded = True
            for key, value in self._known.items():
                if value is not None:
                    self._fallback.set_item(key, value)
        logger.error("Almacenamiento local no disponible; la sesión continúa en memoria: %s", exc)
