from __future__ import annotations

import logging
from typing import Callable, Protocol

from omnisync.application.connectivity import ConnectivityMonitor, ConnectivityState
from omnisync.application.sync_engine import OfflineSyncEngine
from omnisync.core.events import Subject, Subscription
from omnisync.domain.ports import SchedulerPort
from omnisync.domain.sync_models import DrainReport, NetworkStatus, SyncQueueItem, SyncState

logger = logging.getLogger(__name__)

DrainJob = Callable[[], DrainReport]


class DrainRunner(Protocol):
    def run(self, job: DrainJob, on_finished: Callable[[DrainReport], None]) -> bool:
        ...

    def is_busy(self) -> bool:
        ...


class DirectDrainRunner:
    """Ejecuta el drenado en el hilo que lo pide; útil en CLI y tests."""

    def __init__(self) -> None:
        self._busy = False

    def run(self, job: DrainJob, on_finished: Callable[[DrainReport], None]) -> bool:
        if self._busy:
            return False
        self._busy = True
        try:
            report = job()
        finally:
            self._busy = False
        on_finished(report)
        return True

    def is_busy(self) -> bool:
        return self._busy


class ManualScheduler:
    """Scheduler sin reloj propio: el intervalo solo avanza cuando alguien llama a ``fire``."""

    def __init__(self) -> None:
        self.interval_seconds: float | None = None
        self._callback: Callable[[], None] | None = None

    def start(self, interval_seconds: float, callback: Callable[[], None]) -> None:
        self.interval_seconds = interval_seconds
        self._callback = callback

    def stop(self) -> None:
        self._callback = None

    def is_active(self) -> bool:
        return self._callback is not None

    def fire(self) -> None:
        if self._callback is not None:
            self._callback()


class SyncLifecycleController:
    """Decide cuándo drenar y expone el estado observable.

    Drena al arrancar, al reconectar, en cada intervalo, al forzarlo y tras
    cada mutación local. Una mutación que llega con un drenado en curso deja
    pendiente otro drenado al terminar.
    """

    def __init__(
        self,
        engine: OfflineSyncEngine,
        connectivity: ConnectivityState,
        scheduler: SchedulerPort,
        *,
        interval_seconds: float = 30.0,
        auto_sync: bool = True,
        monitor: ConnectivityMonitor | None = None,
        runner: DrainRunner | None = None,
    ) -> None:
        self._engine = engine
        self._connectivity = connectivity
        self._scheduler = scheduler
        self._interval = interval_seconds
        self._auto_sync = auto_sync
        self._monitor = monitor
        self._runner = runner or DirectDrainRunner()
        self._subscriptions: list[Subscription] = []
        self._last_report: DrainReport | None = None
        self._last_error: str | None = None
        self._started = False
        self._follow_up = False
        self.state_changed: Subject[SyncState] = Subject("sync_state")

    @property
    def started(self) -> bool:
        return self._started

    @property
    def last_report(self) -> DrainReport | None:
        return self._last_report

    @property
    def state(self) -> SyncState:
        is_syncing = self._engine.is_syncing or self._runner.is_busy()
        stats = self._engine.queue_stats()
        return SyncState(
            is_syncing=is_syncing,
            is_online=self._connectivity.is_online,
            sync_status="syncing" if is_syncing else self._engine.status(),
            pending_count=stats.unfinished,
            last_sync=self._engine.last_sync(),
            conflicts=tuple(self._engine.conflicts()),
            error=self._last_error,
            network_status=self.network_status,
            latency_ms=self._monitor.latency_ms if self._monitor is not None else None,
        )

    @property
    def network_status(self) -> NetworkStatus:
        if self._monitor is not None:
            return self._monitor.network_status
        return "online" if self._connectivity.is_online else "offline"

    def on_state_change(self, callback: Callable[[SyncState], None]) -> Subscription:
        return self.state_changed.subscribe(callback)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._subscriptions = [
            self._engine.on_status_change(lambda _status: self._publish()),
            self._connectivity.changed.subscribe(self._on_connectivity_changed),
            self._engine.on_local_change(self._on_local_change),
        ]
        if self._monitor is not None:
            self._subscriptions.append(self._monitor.network_changed.subscribe(lambda _status: self._publish()))
        if not self._engine.is_configured:
            logger.warning("Sincronización remota sin configurar; se trabaja solo en local")
            self._publish()
            return
        if self._monitor is not None:
            self._monitor.poll()
        if self._auto_sync:
            if self._connectivity.is_online:
                self._trigger(self._engine.sync, "arranque")
            self._scheduler.start(self._interval, self.tick)
        self._publish()

    def stop(self) -> None:
        self._scheduler.stop()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self._started = False
        self._follow_up = False

    def handle_online(self) -> None:
        self._connectivity.set_online(True)

    def handle_offline(self) -> None:
        self._connectivity.set_online(False)

    def tick(self) -> bool:
        if self._monitor is not None and self._monitor.poll() == "online":
            # la transición ya disparó su propio drenado
            return True
        if not self._connectivity.is_online:
            return False
        return self._trigger(self._engine.sync, "intervalo")

    def force_sync(self) -> bool:
        return self._trigger(self._engine.force_sync, "forzado")

    def _on_connectivity_changed(self, online: bool) -> None:
        if online and self._auto_sync:
            self._trigger(self._engine.sync, "reconexión")
        self._publish()

    def _on_local_change(self, _item: SyncQueueItem) -> None:
        if not self._auto_sync or not self._connectivity.is_online:
            return
        if not self._trigger(self._engine.sync, "mutación local"):
            self._follow_up = self._engine.is_configured

    def _trigger(self, job: DrainJob, reason: str) -> bool:
        if not self._engine.is_configured:
            return False
        if self._engine.is_syncing or self._runner.is_busy():
            logger.debug("Drenado (%s) descartado: ya hay uno en curso", reason)
            return False
        self._follow_up = False
        logger.info("Drenado solicitado: %s", reason)
        started = self._runner.run(job, self._on_drain_finished)
        self._publish()
        return started

    def _on_drain_finished(self, report: DrainReport) -> None:
        if report.outcome == "busy":
            return
        self._last_report = report
        self._last_error = report.error or (report.errors[0] if report.errors else None)
        self._publish()
        if self._follow_up and self._started and self._connectivity.is_online:
            self._trigger(self._engine.sync, "mutaciones durante el drenado")

    def _publish(self) -> None:
        self.state_changed.emit(self.state)
