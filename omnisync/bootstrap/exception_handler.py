from __future__ import annotations

import json
import logging
import traceback
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from omnisync.bootstrap.logging import CRASH_LOG_NAME
from omnisync.bootstrap.settings import resolve_log_dir
from omnisync.core.observability import generate_correlation_id, get_correlation_id, get_drain_id, set_correlation_id

logger = logging.getLogger("omnisync.global_exception")


def generate_incident_id() -> str:
    return f"INC-{uuid.uuid4().hex[:12].upper()}"


@dataclass(frozen=True)
class Incident:
    incident_id: str
    correlation_id: str
    drain_id: str | None
    error_type: str
    error_message: str
    stacktrace: str
    occurred_at: str


def _build_incident(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
) -> Incident:
    correlation_id = get_correlation_id()
    if not correlation_id:
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
    return Incident(
        incident_id=generate_incident_id(),
        correlation_id=correlation_id,
        drain_id=get_drain_id(),
        error_type=exc_type.__name__,
        error_message=str(exc_value),
        stacktrace="".join(traceback.format_exception(exc_type, exc_value, exc_traceback)),
        occurred_at=datetime.now(timezone.utc).isoformat(),
    )


def _append_raw_incident(incident: Incident, log_dir: Path | None) -> None:
    target_dir = log_dir or resolve_log_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    with (target_dir / CRASH_LOG_NAME).open("a", encoding="utf-8") as crash_file:
        crash_file.write(json.dumps(asdict(incident), ensure_ascii=False) + "\n")


def handle_global_exception(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
    *,
    log_dir: Path | None = None,
) -> str:
    """Registra el fallo con un id de incidente que se puede enseñar al usuario.

    Si el propio logging falla, el incidente se escribe a mano en ``crash.log``.
    """

    incident = _build_incident(exc_type, exc_value, exc_traceback)
    try:
        logger.critical(
            "Excepción no controlada. incident_id=%s",
            incident.incident_id,
            exc_info=(exc_type, exc_value, exc_traceback),
            extra={
                "correlation_id": incident.correlation_id,
                "extra": {"incident_id": incident.incident_id, "drain_id": incident.drain_id},
            },
        )
    except Exception:  # noqa: BLE001
        _append_raw_incident(incident, log_dir)
    return incident.incident_id
