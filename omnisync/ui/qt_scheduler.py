from __future__ import annotations

from typing import Callable

from PySide6.QtCore import QObject, QTimer, Slot


class QtIntervalScheduler(QObject):
    """``SchedulerPort`` sobre ``QTimer``: el callback corre en el hilo del event loop."""

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._timer = QTimer(self)
        self._timer.timeout.connect(self._on_timeout)
        self._callback: Callable[[], None] | None = None

    @property
    def interval_ms(self) -> int:
        return self._timer.interval()

    def start(self, interval_seconds: float, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._timer.start(max(1, int(interval_seconds * 1000)))

    def stop(self) -> None:
        self._timer.stop()
        self._callback = None

    def is_active(self) -> bool:
        return self._timer.isActive()

    @Slot()
    def _on_timeout(self) -> None:
        if self._callback is not None:
            self._callback()
