from __future__ import annotations

import sqlite3
from pathlib import Path

DB_FILENAME = "omnisync.db"
MEMORY_DB = ":memory:"
DEFAULT_BUSY_TIMEOUT_MS = 30000

# WAL deja leer el espejo desde la UI mientras el hilo de drenado escribe
FILE_PRAGMAS: tuple[tuple[str, str], ...] = (
    ("journal_mode", "WAL"),
    ("synchronous", "NORMAL"),
)


def default_db_path() -> Path:
    from omnisync.infrastructure.local_config import resolve_appdata_dir

    return resolve_appdata_dir() / DB_FILENAME


def configure_sqlite_connection(connection: sqlite3.Connection, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
    connection.row_factory = sqlite3.Row
    for pragma, value in (*FILE_PRAGMAS, ("busy_timeout", str(int(busy_timeout_ms)))):
        connection.execute(f"PRAGMA {pragma}={value}")


def get_connection(
    db_path: Path | str | None = None,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    check_same_thread: bool = False,
) -> sqlite3.Connection:
    """Abre la base local; ``":memory:"`` sirve para tests y sesiones efímeras."""

    if str(db_path) == MEMORY_DB:
        connection = sqlite3.connect(MEMORY_DB, check_same_thread=check_same_thread)
        connection.row_factory = sqlite3.Row
        return connection

    path = default_db_path() if db_path is None else Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(path, check_same_thread=check_same_thread, timeout=max(1.0, busy_timeout_ms / 1000))
    configure_sqlite_connection(connection, busy_timeout_ms=busy_timeout_ms)
    return connection
