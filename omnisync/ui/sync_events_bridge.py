from __future__ import annotations

from PySide6.QtCore import QObject, Signal

from omnisync.application.lifecycle import SyncLifecycleController
from omnisync.application.sync_engine import OfflineSyncEngine
from omnisync.core.events import Subscription
from omnisync.domain.sync_models import SyncConflict, SyncProgress, SyncState


class SyncEventsBridge(QObject):
    """Reemite los observadores del motor como señales Qt para conectarlas a widgets."""

    state_changed = Signal(object)
    conflict_detected = Signal(object)
    progress_changed = Signal(object)

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._subscriptions: list[Subscription] = []

    def bind(self, controller: SyncLifecycleController, engine: OfflineSyncEngine) -> None:
        self.close()
        self._subscriptions = [
            controller.on_state_change(self._emit_state),
            engine.on_conflict(self._emit_conflict),
            engine.on_progress(self._emit_progress),
        ]

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def _emit_state(self, state: SyncState) -> None:
        self.state_changed.emit(state)

    def _emit_conflict(self, conflict: SyncConflict) -> None:
        self.conflict_detected.emit(conflict)

    def _emit_progress(self, progress: SyncProgress) -> None:
        self.progress_changed.emit(progress)
