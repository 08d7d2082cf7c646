from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from threading import Lock
from time import perf_counter
from typing import Any, Callable, Iterator


@dataclass
class _TimingSeries:
    """Resumen incremental: un proceso en ``--watch`` no acumula muestras sin límite."""

    count: int = 0
    total_ms: float = 0.0
    last_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, milliseconds: float) -> None:
        self.count += 1
        self.total_ms += milliseconds
        self.last_ms = milliseconds
        self.max_ms = max(self.max_ms, milliseconds)

    def as_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "last": self.last_ms,
            "avg": self.total_ms / self.count if self.count else 0.0,
            "max": self.max_ms,
        }


class MetricsRegistry:
    """Contadores, gauges y tiempos de drenado en memoria, seguros entre hilos."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._timings: dict[str, _TimingSeries] = {}

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def gauge(self, name: str) -> float | None:
        with self._lock:
            return self._gauges.get(name)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def record_timing(self, name: str, milliseconds: float) -> None:
        with self._lock:
            self._timings.setdefault(name, _TimingSeries()).add(milliseconds)

    @contextmanager
    def time_block(self, name: str) -> Iterator[None]:
        started = perf_counter()
        try:
            yield
        finally:
            self.record_timing(name, (perf_counter() - started) * 1000)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timings_ms": {name: series.as_dict() for name, series in self._timings.items()},
            }


metrics_registry = MetricsRegistry()


def measure_time(metric_name: str, registry: MetricsRegistry | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with (registry or metrics_registry).time_block(metric_name):
                return func(*args, **kwargs)

        return wrapper

    return decorator
