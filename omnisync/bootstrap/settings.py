from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Iterator

from omnisync.infrastructure.local_config import resolve_appdata_dir

LOG_DIR_ENV = "OMNISYNC_LOG_DIR"
_PROBE_FILE = "_write_test.tmp"


def _log_dir_candidates() -> Iterator[Path]:
    env_dir = os.environ.get(LOG_DIR_ENV)
    if env_dir:
        yield Path(env_dir)
    yield resolve_appdata_dir() / "logs"
    yield Path(tempfile.gettempdir()) / "OmniSync" / "logs"


def _is_writable_dir(candidate: Path) -> bool:
    try:
        candidate.mkdir(parents=True, exist_ok=True)
        probe = candidate / _PROBE_FILE
        probe.write_text("ok", encoding="utf-8")
        probe.unlink(missing_ok=True)
    except OSError:
        return False
    return True


def resolve_log_dir() -> Path:
    """Primer directorio escribible: ``OMNISYNC_LOG_DIR``, app-data del usuario o temporal."""

    return next((candidate for candidate in _log_dir_candidates() if _is_writable_dir(candidate)), Path.cwd())
