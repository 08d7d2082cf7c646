from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

SYNC_AUDIT_LOG_NAME = "sync_audit.jsonl"


class StructuredFileLogger:
    """Logger estructurado JSON Lines para auditoría de sync."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def log(self, event: str, **payload: object) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            **payload,
        }
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock, self._path.open("a", encoding="utf-8") as file:
            file.write(line + "\n")
