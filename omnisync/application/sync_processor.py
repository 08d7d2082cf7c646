from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any, Callable, Protocol

from omnisync.application.conflict_detector import resolve_conflict
from omnisync.application.conflict_store import ConflictStore
from omnisync.application.mirror_store import LocalMirrorStore
from omnisync.application.sync_queue import SyncQueue
from omnisync.application.timeouts import RemoteCallTimeout, call_with_timeout
from omnisync.core.events import Subject
from omnisync.core.metrics import MetricsRegistry, metrics_registry
from omnisync.core.observability import OperationContext, log_event
from omnisync.domain.ports import RemoteStorePort
from omnisync.domain.sync_models import (
    ApplyResult,
    ConflictStrategy,
    DrainOutcome,
    DrainReport,
    QueueStats,
    RemoteResult,
    SyncConflict,
    SyncProgress,
    SyncQueueItem,
    SyncStatus,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

ApplyFn = Callable[[SyncQueueItem], ApplyResult]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 300.0

    def backoff_seconds(self, attempts: int) -> float:
        """Espera antes del siguiente intento tras ``attempts`` fallos (1, 2, 4, ... con tope)."""

        exponent = max(attempts - 1, 0)
        return min(self.initial_backoff_seconds * (self.backoff_multiplier**exponent), self.max_backoff_seconds)


class StructuredLogger(Protocol):
    def log(self, event: str, **payload: object) -> None:
        ...


def skipped_report(
    outcome: DrainOutcome,
    status: SyncStatus,
    moment: datetime,
    error: str | None = None,
) -> DrainReport:
    """Informe de un drenado que no llegó a tocar ni la cola ni el remoto."""

    stamp = to_iso(moment)
    return DrainReport(drain_id="", started_at=stamp, finished_at=stamp, outcome=outcome, status=status, error=error)


def _progress(total: int, counters: dict[str, int], current: str | None = None) -> SyncProgress:
    completed = counters["applied"]
    failed = counters["failed"] + counters["conflicts"]
    # lo encolado durante el drenado también se procesa
    processed = completed + failed + (1 if current else 0)
    return SyncProgress(total=max(total, processed), completed=completed, failed=failed, current=current)


def derive_status(stats: QueueStats, *, draining: bool) -> SyncStatus:
    if draining:
        return "syncing"
    if stats.exhausted:
        return "failed"
    if stats.unfinished:
        return "pending"
    return "synced"


class SyncProcessor:
    """Vacía la cola contra el remoto, refresca el espejo y publica el estado.

    Solo hay un drenado activo por instancia: una llamada concurrente (o
    reentrante desde un callback) vuelve inmediatamente con ``outcome="busy"``.
    """

    def __init__(
        self,
        queue: SyncQueue,
        remote: RemoteStorePort,
        mirror: LocalMirrorStore,
        conflict_store: ConflictStore,
        *,
        strategy: ConflictStrategy = "latest-wins",
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = 8.0,
        is_online: Callable[[], bool] = lambda: True,
        structured_logger: StructuredLogger | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._queue = queue
        self._remote = remote
        self._mirror = mirror
        self._conflicts = conflict_store
        self.strategy = strategy
        self.retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout_seconds
        self._is_online = is_online
        self._structured_logger = structured_logger
        self._metrics = metrics or metrics_registry
        self._clock = clock
        self._drain_lock = threading.Lock()
        self._draining = False
        self._last_report: DrainReport | None = None
        self.status_changed: Subject[SyncStatus] = Subject("sync_status")
        self.conflict_detected: Subject[SyncConflict] = Subject("sync_conflict")
        self.progress_changed: Subject[SyncProgress] = Subject("sync_progress")

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def last_report(self) -> DrainReport | None:
        return self._last_report

    def current_status(self) -> SyncStatus:
        return derive_status(self._queue.stats(self.retry_policy.max_attempts), draining=self._draining)

    def process_queue(self, apply_fn: ApplyFn) -> DrainReport:
        if not self._drain_lock.acquire(blocking=False):
            logger.info("Drenado ya en curso; se ignora la nueva petición")
            self._metrics.increment("sync.drains_busy")
            return skipped_report("busy", "syncing", self._clock())
        try:
            self._draining = True
            with OperationContext("sync_drain", drain=True) as operation:
                report = self._drain(apply_fn, operation.drain_id or operation.correlation_id)
        finally:
            self._draining = False
            self._drain_lock.release()
        self._last_report = report
        self.status_changed.emit(report.status)
        return report

    def retry_failed(self, apply_fn: ApplyFn) -> DrainReport:
        reset = self._queue.reset_failed()
        logger.info("Reintento manual: %s items fallidos vuelven a pendientes", reset)
        return self.process_queue(apply_fn)

    def _drain(self, apply_fn: ApplyFn, drain_id: str) -> DrainReport:
        started_at = to_iso(self._clock())
        started = perf_counter()
        counters = {"applied": 0, "failed": 0, "conflicts": 0}
        errors: list[str] = []
        self.status_changed.emit("syncing")
        log_event(logger, "sync_drain_started", {"queued": len(self._queue)})
        self._audit("sync_drain_started", drain_id=drain_id, queued=len(self._queue))

        outcome: DrainOutcome = "completed"
        error: str | None = None
        refreshed = False
        connection = self._remote_call(self._remote.check_connection, "check_connection")
        if not connection.success:
            outcome = "unreachable"
            error = connection.error or "Remoto no disponible"
            logger.warning("Remoto inalcanzable; la cola queda intacta: %s", error)
        else:
            self._queue.requeue_due(self.retry_policy.max_attempts, self._clock())
            total = len(self._queue.get_items_by_status("pending"))
            self.progress_changed.emit(_progress(total, counters))
            while True:
                if not self._is_online():
                    outcome = "offline"
                    error = "Conexión perdida durante el drenado"
                    logger.warning(error)
                    break
                item = self._queue.dequeue_next()
                if item is None:
                    break
                self.progress_changed.emit(
                    _progress(total, counters, f"{item.operation} {item.resource_type}/{item.resource_id}")
                )
                self._process_item(item, apply_fn, counters, errors)
            self.progress_changed.emit(_progress(total, counters))
            if outcome == "completed":
                refreshed, pull_error = self._refresh_mirror()
                if pull_error:
                    errors.append(pull_error)

        stats = self._queue.stats(self.retry_policy.max_attempts)
        report = DrainReport(
            drain_id=drain_id,
            started_at=started_at,
            finished_at=to_iso(self._clock()),
            outcome=outcome,
            status=derive_status(stats, draining=False),
            applied=counters["applied"],
            failed=counters["failed"],
            conflicts=counters["conflicts"],
            deferred=stats.failed - stats.exhausted,
            refreshed=refreshed,
            error=error,
            errors=errors,
        )
        elapsed_ms = (perf_counter() - started) * 1000
        self._metrics.increment("sync.drains")
        self._metrics.increment(f"sync.drains_{outcome}")
        self._metrics.record_timing("sync.drain", elapsed_ms)
        self._metrics.set_gauge("sync.queue_unfinished", float(stats.unfinished))
        log_event(
            logger,
            "sync_drain_finished",
            {"outcome": outcome, "status": report.status, "applied": report.applied, "failed": report.failed},
        )
        self._audit("sync_drain_finished", duration_ms=round(elapsed_ms, 2), **report.to_dict())
        return report

    def _process_item(
        self,
        item: SyncQueueItem,
        apply_fn: ApplyFn,
        counters: dict[str, int],
        errors: list[str],
    ) -> None:
        self._queue.mark_in_flight(item.id)
        result = self.apply_with_timeout(item, apply_fn)
        if result.success:
            self._queue.mark_done(item.id)
            counters["applied"] += 1
            self._metrics.increment("sync.items_applied")
            self._audit("sync_item_applied", item_id=item.id, operation=item.operation, resource_id=item.resource_id)
            return
        if result.conflict is not None:
            self._handle_conflict(item, result.conflict, counters, errors)
            return
        self._fail(item, result.error or "Error desconocido", counters, errors)

    def apply_with_timeout(self, item: SyncQueueItem, apply_fn: ApplyFn) -> ApplyResult:
        try:
            return call_with_timeout(lambda: apply_fn(item), self._timeout, label=f"{item.operation} {item.resource_id}")
        except RemoteCallTimeout as exc:
            return ApplyResult.failed(str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Fallo inesperado aplicando %s", item.id)
            return ApplyResult.failed(f"{type(exc).__name__}: {exc}")

    def _fail(self, item: SyncQueueItem, message: str, counters: dict[str, int], errors: list[str]) -> None:
        backoff = self.retry_policy.backoff_seconds(item.attempts + 1)
        failed = self._queue.mark_failed(item.id, message, self._clock() + timedelta(seconds=backoff))
        counters["failed"] += 1
        errors.append(f"{item.operation} {item.resource_type}/{item.resource_id}: {message}")
        self._metrics.increment("sync.items_failed")
        exhausted = failed.attempts >= self.retry_policy.max_attempts
        logger.warning(
            "Fallo aplicando %s %s/%s (intento %s/%s): %s",
            item.operation,
            item.resource_type,
            item.resource_id,
            failed.attempts,
            self.retry_policy.max_attempts,
            message,
            extra={"extra": {"queue_item_id": item.id, "exhausted": exhausted}},
        )
        if exhausted:
            logger.error("Item %s agotó sus reintentos; requiere reintento manual", item.id)
        self._audit(
            "sync_item_failed",
            item_id=item.id,
            resource_id=item.resource_id,
            attempts=failed.attempts,
            error=message,
            exhausted=exhausted,
        )

    def _handle_conflict(
        self,
        item: SyncQueueItem,
        conflict: SyncConflict,
        counters: dict[str, int],
        errors: list[str],
    ) -> None:
        self._metrics.increment("sync.conflicts")
        resolution = resolve_conflict(conflict, self.strategy)
        self._audit(
            "sync_conflict",
            item_id=item.id,
            conflict_id=conflict.id,
            resource_id=item.resource_id,
            strategy=self.strategy,
            action=resolution.action,
        )
        if resolution.action == "manual":
            self._conflicts.add(conflict)
            self._queue.mark_conflict(item.id, "Conflicto pendiente de resolución manual")
            counters["conflicts"] += 1
            logger.warning("Conflicto %s aparcado para resolución manual", conflict.id)
            self.conflict_detected.emit(conflict)
            return

        if resolution.action == "keep_remote" or (resolution.state is None and not resolution.delete):
            self._adopt_remote(conflict)
            self._queue.mark_done(item.id)
            counters["applied"] += 1
            logger.info("Conflicto %s resuelto con la versión remota (%s)", conflict.id, self.strategy)
            return

        if resolution.delete:
            written = self._remote_call(lambda: self._remote.delete(item.resource_id), "delete")
        else:
            state = dict(resolution.state or {})
            state.setdefault("id", item.resource_id)
            written = self._remote_call(lambda: self._remote.create(state), "create")
        if not written.success:
            self._fail(item, written.error or "No se pudo imponer la versión local", counters, errors)
            return
        if resolution.delete:
            self._mirror.remove(item.resource_id)
        elif isinstance(written.data, dict):
            self._mirror.upsert(written.data)
        self._queue.mark_done(item.id)
        counters["applied"] += 1
        logger.info("Conflicto %s resuelto imponiendo la versión local (%s)", conflict.id, self.strategy)

    def _adopt_remote(self, conflict: SyncConflict) -> None:
        if conflict.remote_version is None:
            self._mirror.remove(conflict.resource_id)
        else:
            self._mirror.upsert(conflict.remote_version)

    def _refresh_mirror(self) -> tuple[bool, str | None]:
        result = self._remote_call(self._remote.list, "list")
        if not result.success:
            message = f"No se pudo refrescar el espejo local: {result.error}"
            logger.warning(message)
            return False, message
        records = result.data if isinstance(result.data, list) else []
        self._mirror.replace(records)
        self._mirror.set_last_sync(self._clock())
        return True, None

    def _remote_call(self, operation: Callable[[], RemoteResult], label: str) -> RemoteResult:
        try:
            return call_with_timeout(operation, self._timeout, label=label)
        except RemoteCallTimeout as exc:
            return RemoteResult.fail(str(exc), transient=True)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Fallo inesperado en llamada remota '%s'", label)
            return RemoteResult.fail(f"{type(exc).__name__}: {exc}", transient=True)

    def _audit(self, event: str, **payload: Any) -> None:
        if self._structured_logger is None:
            return
        try:
            self._structured_logger.log(event, **payload)
        except OSError as exc:
            logger.error("No se pudo escribir la auditoría de sync (%s): %s", event, exc)
