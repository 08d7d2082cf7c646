from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from omnisync.application.conflict_detector import ConflictDetector
from omnisync.application.conflict_store import ConflictStore
from omnisync.application.connectivity import ConnectivityState
from omnisync.application.mirror_store import LocalMirrorStore
from omnisync.application.remote_applier import RemoteApplier
from omnisync.application.sync_processor import RetryPolicy, StructuredLogger, SyncProcessor, skipped_report
from omnisync.application.sync_queue import SyncQueue
from omnisync.core.events import Subject, Subscription
from omnisync.core.metrics import MetricsRegistry
from omnisync.domain.models import StorageKeys, SyncSettings
from omnisync.domain.ports import KeyValueStoragePort, RemoteStorePort
from omnisync.domain.sync_models import (
    DrainReport,
    QueueStats,
    SyncConflict,
    SyncOperation,
    SyncProgress,
    SyncQueueItem,
    SyncStatus,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


class OfflineSyncEngine:
    """Fachada offline-first para un tipo de recurso.

    Las escrituras solo tocan el espejo local y la cola: nunca esperan al
    remoto. Quien orquesta el drenado (``SyncLifecycleController``) escucha
    ``on_local_change`` y lo lanza en su runner. Ningún método público propaga
    errores remotos.
    """

    def __init__(
        self,
        *,
        resource_type: str,
        queue: SyncQueue,
        mirror: LocalMirrorStore,
        conflict_store: ConflictStore,
        processor: SyncProcessor,
        applier: RemoteApplier,
        connectivity: ConnectivityState,
        remote_configured: bool = True,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.resource_type = resource_type
        self._queue = queue
        self._mirror = mirror
        self._conflicts = conflict_store
        self._processor = processor
        self._applier = applier
        self._connectivity = connectivity
        self._remote_configured = remote_configured
        self._clock = clock
        self._id_factory = id_factory
        self.local_change: Subject[SyncQueueItem] = Subject("local_change")

    @classmethod
    def build(
        cls,
        storage: KeyValueStoragePort,
        remote: RemoteStorePort,
        settings: SyncSettings,
        *,
        resource_type: str = "order",
        connectivity: ConnectivityState | None = None,
        structured_logger: StructuredLogger | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "OfflineSyncEngine":
        keys = StorageKeys.for_resource(resource_type, settings.tenant_id)
        connectivity = connectivity or ConnectivityState()
        queue = SyncQueue(storage, keys.queue, clock=clock)
        mirror = LocalMirrorStore(storage, keys.records, keys.last_sync, clock=clock)
        conflict_store = ConflictStore(storage, keys.conflicts)
        detector = ConflictDetector(settings.conflict_base_policy, timestamp_field=mirror.timestamp_field, clock=clock)
        processor = SyncProcessor(
            queue,
            remote,
            mirror,
            conflict_store,
            strategy=settings.conflict_strategy,
            retry_policy=RetryPolicy(max_attempts=settings.max_attempts),
            timeout_seconds=settings.request_timeout_seconds,
            is_online=lambda: connectivity.is_online,
            structured_logger=structured_logger,
            metrics=metrics,
            clock=clock,
        )
        return cls(
            resource_type=resource_type,
            queue=queue,
            mirror=mirror,
            conflict_store=conflict_store,
            processor=processor,
            applier=RemoteApplier(remote, detector, mirror),
            connectivity=connectivity,
            remote_configured=settings.remote_configured,
            clock=clock,
        )

    @property
    def is_configured(self) -> bool:
        return self._remote_configured

    @property
    def connectivity(self) -> ConnectivityState:
        return self._connectivity

    @property
    def is_syncing(self) -> bool:
        return self._processor.is_draining

    @property
    def last_report(self) -> DrainReport | None:
        return self._processor.last_report

    # Escrituras optimistas

    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        now = to_iso(self._clock())
        local = dict(record)
        local.setdefault("id", self._id_factory())
        local.setdefault("createdAt", now)
        local.setdefault("updatedAt", now)
        stored = self._mirror.upsert(local)
        self._enqueue("create", str(stored["id"]), stored)
        return stored

    def update(self, record_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        record_id = str(record_id)
        before = self._mirror.get(record_id)
        base_version = before.get(self._mirror.timestamp_field) if before else None
        base_fields = {key: before.get(key) for key in patch} if before else None
        merged = self._mirror.apply_patch(record_id, patch)
        payload = dict(patch)
        if merged is not None:
            payload[self._mirror.timestamp_field] = merged[self._mirror.timestamp_field]
        else:
            logger.info("%s %s no está en el espejo local; se envía solo el parche", self.resource_type, record_id)
        self._enqueue(
            "update",
            record_id,
            payload,
            base_version=str(base_version) if base_version else None,
            base_fields=base_fields,
        )
        return merged

    def delete(self, record_id: str) -> bool:
        record_id = str(record_id)
        before = self._mirror.get(record_id)
        base_version = before.get(self._mirror.timestamp_field) if before else None
        removed = self._mirror.remove(record_id)
        self._enqueue("delete", record_id, None, base_version=str(base_version) if base_version else None)
        return removed

    # Sincronización

    def sync(self) -> DrainReport:
        if not self._remote_configured:
            return skipped_report("unreachable", self.status(), self._clock(), "Remoto no configurado")
        if not self._connectivity.is_online:
            logger.info("Sin conexión; el drenado queda aplazado")
            return skipped_report("offline", self.status(), self._clock(), "Sin conexión")
        return self._processor.process_queue(self._applier)

    def force_sync(self) -> DrainReport:
        """Como ``sync`` pero sin esperar a que venza el backoff de los fallidos reintentables."""

        if self._remote_configured and self._connectivity.is_online and not self._processor.is_draining:
            self._queue.requeue_due(self._processor.retry_policy.max_attempts, _FAR_FUTURE)
        return self.sync()

    def retry_failed(self) -> DrainReport:
        if not self._remote_configured or not self._connectivity.is_online:
            reset = self._queue.reset_failed()
            logger.info("Reintento sin conexión: %s items quedan pendientes para el próximo drenado", reset)
            self._publish_status()
            return skipped_report(
                "unreachable" if not self._remote_configured else "offline", self.status(), self._clock()
            )
        return self._processor.retry_failed(self._applier)

    def clear_queue(self) -> int:
        removed = self._queue.clear()
        self._conflicts.clear()
        self._publish_status()
        return removed

    def resolve_conflict(self, conflict: SyncConflict | str, accepted_state: dict[str, Any] | None) -> SyncQueueItem | None:
        """Cierra un conflicto manual: el estado aceptado se escribe en local y se encola forzado.

        ``accepted_state=None`` significa borrar el registro.
        """

        conflict_id = conflict if isinstance(conflict, str) else conflict.id
        stored = self._conflicts.get(conflict_id)
        if stored is None:
            logger.warning("Conflicto %s inexistente o ya resuelto", conflict_id)
            return None
        if accepted_state is None:
            self._mirror.remove(stored.resource_id)
            replacement = self._queue.build_item("delete", stored.resource_type, stored.resource_id, force=True)
        else:
            state = {**accepted_state, "id": stored.resource_id}
            self._mirror.upsert(state)
            replacement = self._queue.build_item("update", stored.resource_type, stored.resource_id, state, force=True)
        if self._queue.get_item(stored.queue_item_id) is not None:
            item = self._queue.substitute(stored.queue_item_id, replacement)
        else:
            item = self._queue.append(replacement)
        self._conflicts.remove(conflict_id)
        logger.info("Conflicto %s resuelto manualmente", conflict_id, extra={"extra": {"queue_item_id": item.id}})
        self._publish_status()
        return item

    # Observadores y estado

    def on_status_change(self, callback: Callable[[SyncStatus], None]) -> Subscription:
        return self._processor.status_changed.subscribe(callback)

    def on_conflict(self, callback: Callable[[SyncConflict], None]) -> Subscription:
        return self._processor.conflict_detected.subscribe(callback)

    def on_progress(self, callback: Callable[[SyncProgress], None]) -> Subscription:
        return self._processor.progress_changed.subscribe(callback)

    def on_local_change(self, callback: Callable[[SyncQueueItem], None]) -> Subscription:
        """Se llama tras cada mutación local encolada, en el hilo que la hizo."""

        return self.local_change.subscribe(callback)

    def status(self) -> SyncStatus:
        return self._processor.current_status()

    def queue_stats(self) -> QueueStats:
        return self._queue.stats(self._processor.retry_policy.max_attempts)

    def pending_items(self) -> list[SyncQueueItem]:
        return self._queue.items()

    def conflicts(self) -> list[SyncConflict]:
        return self._conflicts.list()

    def last_sync(self) -> str | None:
        return self._mirror.last_sync()

    def records(self) -> list[dict[str, Any]]:
        return self._mirror.load()

    def get(self, record_id: str) -> dict[str, Any] | None:
        return self._mirror.get(str(record_id))

    def _enqueue(
        self,
        operation: SyncOperation,
        resource_id: str,
        payload: dict[str, Any] | None,
        *,
        base_version: str | None = None,
        base_fields: dict[str, Any] | None = None,
    ) -> None:
        item = self._queue.enqueue(
            operation,
            self.resource_type,
            resource_id,
            payload,
            base_version=base_version,
            base_fields=base_fields,
        )
        self._publish_status()
        self.local_change.emit(item)

    def _publish_status(self) -> None:
        self._processor.status_changed.emit(self.status())


class OrderSyncService:
    """API de pedidos sobre el motor: lecturas del espejo, escrituras optimistas."""

    def __init__(self, engine: OfflineSyncEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> OfflineSyncEngine:
        return self._engine

    def create_order(self, order: dict[str, Any]) -> dict[str, Any]:
        return self._engine.create(order)

    def update_order(self, order_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        return self._engine.update(order_id, patch)

    def delete_order(self, order_id: str) -> bool:
        return self._engine.delete(order_id)

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        return self._engine.get(order_id)

    def list_orders(self) -> list[dict[str, Any]]:
        orders = self._engine.records()
        return sorted(orders, key=lambda order: str(order.get("createdAt") or ""), reverse=True)
