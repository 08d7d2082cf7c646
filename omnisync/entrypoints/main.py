from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from omnisync.bootstrap.container import SyncContainer, build_sync_container
from omnisync.bootstrap.exception_handler import handle_global_exception
from omnisync.bootstrap.logging import configure_logging, install_exception_hook
from omnisync.bootstrap.settings import resolve_log_dir
from omnisync.core.errors import ConfigurationError
from omnisync.domain.sync_models import DrainReport

EXIT_OK = 0
EXIT_DRAIN_ISSUES = 1
EXIT_ERROR = 2

ContainerFactory = Callable[..., SyncContainer]

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omnisync", description="Motor de sincronización offline de pedidos")
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--status", action="store_true", help="Muestra el estado de sincronización en JSON")
    actions.add_argument("--sync", action="store_true", help="Drena la cola y refresca el espejo local")
    actions.add_argument("--retry-failed", action="store_true", help="Reintenta los items fallidos")
    actions.add_argument("--clear-queue", action="store_true", help="Vacía la cola (requiere --yes)")
    actions.add_argument("--watch", action="store_true", help="Sincroniza periódicamente hasta Ctrl+C")
    parser.add_argument("--yes", action="store_true", help="Confirma operaciones destructivas")
    parser.add_argument("--db", type=Path, default=None, help="Ruta de la base SQLite local")
    parser.add_argument("--verbose", action="store_true", help="Muestra avisos y errores por stderr")
    return parser


def _write_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2, default=str) + "\n")


def _status_payload(container: SyncContainer) -> dict[str, Any]:
    stats = container.engine.queue_stats()
    settings = container.settings
    return {
        "state": container.controller.state.to_dict(),
        "queue": {
            "pending": stats.pending,
            "in_flight": stats.in_flight,
            "failed": stats.failed,
            "exhausted": stats.exhausted,
            "conflicts": stats.conflicts,
        },
        "settings": {
            "remote_configured": settings.remote_configured,
            "tenant_id": settings.tenant_id,
            "device_id": settings.device_id,
            "sync_interval_seconds": settings.sync_interval_seconds,
            "conflict_strategy": settings.conflict_strategy,
        },
    }


def _report_exit_code(report: DrainReport) -> int:
    return EXIT_OK if report.ok else EXIT_DRAIN_ISSUES


def _run_drain(container: SyncContainer, *, retry_failed: bool) -> int:
    if not container.engine.is_configured:
        sys.stderr.write("Supabase no está configurado (OMNISYNC_SUPABASE_URL / OMNISYNC_API_KEY).\n")
        return EXIT_ERROR
    container.monitor.poll()
    report = container.engine.retry_failed() if retry_failed else container.engine.force_sync()
    _write_json(report.to_dict())
    return _report_exit_code(report)


def _run_watch(container_factory: ContainerFactory, db_path: Path | None) -> int:
    import signal

    from PySide6.QtCore import QCoreApplication, QTimer

    from omnisync.ui.qt_scheduler import QtIntervalScheduler
    from omnisync.ui.sync_worker import QtDrainRunner

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    scheduler = QtIntervalScheduler()
    runner = QtDrainRunner()
    container = container_factory(db_path=db_path, scheduler=scheduler, runner=runner)
    if not container.engine.is_configured:
        sys.stderr.write("Supabase no está configurado; --watch no tiene nada que sincronizar.\n")
        return EXIT_ERROR

    def _on_state(state) -> None:
        logger.info("Estado de sync: %s", state.sync_status, extra={"extra": state.to_dict()})

    def _on_progress(progress) -> None:
        if progress.current:
            logger.debug("Drenando %s (%s/%s)", progress.current, progress.processed + 1, progress.total)

    subscriptions = [container.controller.on_state_change(_on_state), container.engine.on_progress(_on_progress)]
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    # el intérprete solo atiende señales cuando recupera el control del event loop
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(250)
    container.controller.start()
    try:
        return int(app.exec())
    finally:
        heartbeat.stop()
        for subscription in subscriptions:
            subscription.unsubscribe()
        container.controller.stop()


def main(argv: list[str] | None = None, *, container_factory: ContainerFactory = build_sync_container) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    log_dir = resolve_log_dir()
    configure_logging(log_dir, console=args.verbose)
    install_exception_hook(log_dir)

    try:
        if args.watch:
            return _run_watch(container_factory, args.db)
        if args.clear_queue and not args.yes:
            sys.stderr.write("--clear-queue descarta mutaciones no sincronizadas; repite con --yes.\n")
            return EXIT_ERROR

        container = container_factory(db_path=args.db)
        if args.sync:
            return _run_drain(container, retry_failed=False)
        if args.retry_failed:
            return _run_drain(container, retry_failed=True)
        if args.clear_queue:
            removed = container.engine.clear_queue()
            _write_json({"removed": removed})
            return EXIT_OK
        _write_json(_status_payload(container))
        return EXIT_OK
    except ConfigurationError as exc:
        logger.error("Configuración inválida: %s", exc)
        sys.stderr.write(f"Configuración inválida: {exc}\n")
        return EXIT_ERROR
    except Exception:  # noqa: BLE001
        exc_type, exc_value, exc_traceback = sys.exc_info()
        if exc_type is None or exc_value is None:
            return EXIT_ERROR
        incident_id = handle_global_exception(exc_type, exc_value, exc_traceback, log_dir=log_dir)
        sys.stderr.write(f"Error inesperado. ID de incidente: {incident_id}\n")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
