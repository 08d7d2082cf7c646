from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from omnisync.core.observability import get_correlation_id, get_drain_id
from omnisync.core.redactor_secretos import LoggingSecretsFilter

DEFAULT_LOG_MAX_BYTES = 1_048_576
DEFAULT_LOG_BACKUP_COUNT = 10
MAIN_LOG_NAME = "omnisync.log"
OPERATIONAL_ERROR_LOG_NAME = "operational_errors.log"
CRASH_LOG_NAME = "crash.log"
LOG_MAX_BYTES_ENV = "OMNISYNC_LOG_MAX_BYTES"
CRASH_MESSAGE = "Excepción no controlada"


@dataclass(frozen=True)
class LogFileRoute:
    """Un fichero de log y la franja de niveles que recibe (``max_level`` inclusivo)."""

    file_name: str
    min_level: int
    max_level: int | None = None


def default_log_files(level: int) -> tuple[LogFileRoute, ...]:
    return (
        LogFileRoute(MAIN_LOG_NAME, level),
        LogFileRoute(OPERATIONAL_ERROR_LOG_NAME, logging.ERROR, logging.ERROR),
        LogFileRoute(CRASH_LOG_NAME, logging.CRITICAL),
    )


class JsonLinesFormatter(logging.Formatter):
    """Una línea JSON por evento; el drenado en curso se identifica por ``drain_id``."""

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "thread": record.threadName,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        drain_id = getattr(record, "drain_id", None) or get_drain_id()
        if drain_id:
            event["drain_id"] = drain_id
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and extra:
            event["extra"] = extra
        if record.exc_info:
            event["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False, default=str)


class LevelRangeFilter(logging.Filter):
    def __init__(self, min_level: int, max_level: int | None = None) -> None:
        super().__init__()
        self._min_level = min_level
        self._max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno < self._min_level:
            return False
        return self._max_level is None or record.levelno <= self._max_level


def _rotating_handler(log_dir: Path, route: LogFileRoute, *, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(log_dir / route.file_name, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setLevel(route.min_level)
    handler.setFormatter(JsonLinesFormatter())
    handler.addFilter(LoggingSecretsFilter())
    handler.addFilter(LevelRangeFilter(route.min_level, route.max_level))
    return handler


def resolve_max_bytes(explicit: int | None = None) -> int:
    if explicit:
        return explicit
    raw_value = os.getenv(LOG_MAX_BYTES_ENV, "")
    return int(raw_value) if raw_value.isdigit() and int(raw_value) > 0 else DEFAULT_LOG_MAX_BYTES


def configure_logging(
    log_dir: Path,
    *,
    max_bytes: int | None = None,
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
    level: int = logging.INFO,
    console: bool = False,
) -> None:
    """Sustituye los handlers del root logger por los ficheros JSONL de ``log_dir``."""

    log_dir.mkdir(parents=True, exist_ok=True)
    resolved_max_bytes = resolve_max_bytes(max_bytes)

    root_logger = logging.getLogger()
    for previous in list(root_logger.handlers):
        root_logger.removeHandler(previous)
        previous.close()
    root_logger.setLevel(level)

    for route in default_log_files(level):
        root_logger.addHandler(
            _rotating_handler(log_dir, route, max_bytes=resolved_max_bytes, backup_count=backup_count)
        )

    if console:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        stderr_handler.addFilter(LoggingSecretsFilter())
        root_logger.addHandler(stderr_handler)


def log_operational_error(
    logger: logging.Logger,
    message: str,
    *,
    exc: BaseException | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    logger.error(
        message,
        exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else False,
        extra={"extra": extra} if extra else None,
    )


def write_crash_log(exc_type: type[BaseException], exc: BaseException, tb: Any, log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.getLogger("omnisync.crash").critical(
        CRASH_MESSAGE,
        exc_info=(exc_type, exc, tb),
        extra={"extra": {"python": sys.version, "argv": sys.argv, "cwd": str(Path.cwd())}},
    )
    return log_dir / CRASH_LOG_NAME


def install_exception_hook(log_dir: Path) -> None:
    def _hook(exc_type, exc, tb) -> None:
        # Ctrl+C en --watch no es un crash
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        try:
            write_crash_log(exc_type, exc, tb, log_dir)
        except OSError:
            sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _hook
