from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Literal

from omnisync.core.events import Subject
from omnisync.domain.ports import ConnectivityProbePort
from omnisync.domain.sync_models import NetworkStatus

logger = logging.getLogger(__name__)

ConnectivityTransition = Literal["online", "offline"]

DEFAULT_SLOW_THRESHOLD_MS = 2000.0


class ConnectivityState:
    """Flag de conectividad compartido entre el motor, el procesador y el controlador."""

    def __init__(self, online: bool = True) -> None:
        self._lock = threading.Lock()
        self._online = online
        self.changed: Subject[bool] = Subject("connectivity")

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def set_online(self, online: bool) -> bool:
        with self._lock:
            changed = self._online != online
            self._online = online
        if changed:
            logger.info("Conectividad: %s", "online" if online else "offline")
            self.changed.emit(online)
        return changed


class ConnectivityMonitor:
    """Sondea el remoto y mide cuánto tarda: por encima de ``slow_threshold_ms`` la red es ``slow``.

    Una red lenta sigue contando como conectada para el motor; la calidad solo
    se publica en ``network_changed``.
    """

    def __init__(
        self,
        probe: ConnectivityProbePort,
        state: ConnectivityState,
        *,
        probe_timeout_seconds: float = 3.0,
        slow_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._probe = probe
        self._state = state
        self._probe_timeout = probe_timeout_seconds
        self._slow_threshold_ms = slow_threshold_ms
        self._timer = timer
        self._latency_ms: float | None = None
        self._network_status: NetworkStatus = "online" if state.is_online else "offline"
        self.network_changed: Subject[NetworkStatus] = Subject("network_status")

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def latency_ms(self) -> float | None:
        """Duración de la última sonda con éxito."""

        return self._latency_ms

    @property
    def network_status(self) -> NetworkStatus:
        if not self._state.is_online:
            return "offline"
        return self._network_status if self._network_status != "offline" else "online"

    def poll(self) -> ConnectivityTransition | None:
        """Sondea una vez y devuelve la transición observada, o ``None`` si no cambió nada."""

        started = self._timer()
        try:
            online = self._probe.check(timeout_seconds=self._probe_timeout)
        except OSError as exc:
            logger.info("Sonda de conectividad fallida: %s", exc)
            online = False
        if online:
            self._latency_ms = (self._timer() - started) * 1000
        self._set_network_status(self._classify(online))
        if not self._state.set_online(online):
            return None
        return "online" if online else "offline"

    def _classify(self, online: bool) -> NetworkStatus:
        if not online:
            return "offline"
        if self._latency_ms is not None and self._latency_ms > self._slow_threshold_ms:
            return "slow"
        return "online"

    def _set_network_status(self, status: NetworkStatus) -> None:
        if status == self._network_status:
            return
        self._network_status = status
        if status == "slow":
            logger.warning("Red lenta: la sonda tardó %.0f ms", self._latency_ms or 0.0)
        self.network_changed.emit(status)

    def wait_for_online(
        self,
        timeout_seconds: float = 30.0,
        *,
        poll_interval_seconds: float = 1.0,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> bool:
        if self._state.is_online:
            return True
        deadline = clock() + timeout_seconds
        while True:
            self.poll()
            if self._state.is_online:
                return True
            remaining = deadline - clock()
            if remaining <= 0:
                return False
            sleeper(min(poll_interval_seconds, remaining))
