from __future__ import annotations

import logging
import traceback
from typing import Callable

from PySide6.QtCore import QObject, QThread, Signal, Slot

from omnisync.bootstrap.logging import log_operational_error
from omnisync.core.observability import OperationContext, log_event
from omnisync.domain.sync_models import DrainReport

logger = logging.getLogger(__name__)


class DrainWorker(QObject):
    finished = Signal(object)
    failed = Signal(object)

    def __init__(self, job: Callable[[], DrainReport], correlation_id: str) -> None:
        super().__init__()
        self._job = job
        self._correlation_id = correlation_id

    @Slot()
    def run(self) -> None:
        try:
            report = self._job()
        except Exception as exc:
            log_event(logger, "drain_worker_failed", {"error": str(exc)}, self._correlation_id)
            log_operational_error(
                logger,
                "Drenado en segundo plano fallido",
                exc=exc,
                extra={"correlation_id": self._correlation_id},
            )
            self.failed.emit({"error": exc, "details": traceback.format_exc()})
            return
        self.finished.emit(report)


class QtDrainRunner(QObject):
    """Ejecuta cada drenado en un ``QThread`` propio; solo uno a la vez.

    ``on_finished`` se invoca en el hilo de este objeto (el de la UI) cuando el
    hilo del drenado ya terminó, así que puede lanzar otro drenado.
    """

    drain_finished = Signal(object)
    drain_failed = Signal(object)

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._thread: QThread | None = None
        self._worker: DrainWorker | None = None
        self._on_finished: Callable[[DrainReport], None] | None = None
        self._report: DrainReport | None = None

    def is_busy(self) -> bool:
        return self._thread is not None

    def run(self, job: Callable[[], DrainReport], on_finished: Callable[[DrainReport], None]) -> bool:
        if self.is_busy():
            return False
        self._on_finished = on_finished
        operation_context = OperationContext("sync_ui")
        self._thread = QThread()
        self._worker = DrainWorker(job, operation_context.correlation_id)
        self._worker.moveToThread(self._thread)
        self._thread.started.connect(self._worker.run)
        self._worker.finished.connect(self._handle_finished)
        self._worker.failed.connect(self._handle_failed)
        self._worker.finished.connect(self._thread.quit)
        self._worker.failed.connect(self._thread.quit)
        self._worker.finished.connect(self._worker.deleteLater)
        self._worker.failed.connect(self._worker.deleteLater)
        self._thread.finished.connect(self._thread.deleteLater)
        self._thread.finished.connect(self._release)
        self._thread.start()
        return True

    @Slot(object)
    def _handle_finished(self, report: DrainReport) -> None:
        self._report = report
        self.drain_finished.emit(report)

    @Slot(object)
    def _handle_failed(self, payload: object) -> None:
        self.drain_failed.emit(payload)

    @Slot()
    def _release(self) -> None:
        callback, report = self._on_finished, self._report
        self._thread = None
        self._worker = None
        self._on_finished = None
        self._report = None
        if callback is not None and report is not None:
            callback(report)
