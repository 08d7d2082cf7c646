from __future__ import annotations

from omnisync.core.metrics import MetricsRegistry, measure_time


def test_registry_counts_gauges_and_timings() -> None:
    registry = MetricsRegistry()

    registry.increment("sync.drains")
    registry.increment("sync.drains", 2)
    registry.set_gauge("sync.queue_unfinished", 4)
    registry.record_timing("sync.drain", 10.0)
    registry.record_timing("sync.drain", 30.0)

    snapshot = registry.snapshot()
    assert registry.counter("sync.drains") == 3
    assert registry.gauge("sync.queue_unfinished") == 4
    assert snapshot["timings_ms"]["sync.drain"] == {"count": 2, "last": 30.0, "avg": 20.0, "max": 30.0}


def test_registry_reset_clears_everything() -> None:
    registry = MetricsRegistry()
    registry.increment("x")
    registry.set_gauge("y", 1.0)

    registry.reset()

    assert registry.snapshot() == {"counters": {}, "gauges": {}, "timings_ms": {}}
    assert registry.gauge("y") is None


def test_measure_time_records_even_when_the_function_raises() -> None:
    registry = MetricsRegistry()

    @measure_time("op.fallida", registry)
    def _explota() -> None:
        raise ValueError("x")

    try:
        _explota()
    except ValueError:
        pass

    assert registry.snapshot()["timings_ms"]["op.fallida"]["count"] == 1


def test_time_block_feeds_timing_summary() -> None:
    registry = MetricsRegistry()

    with registry.time_block("sync.pull"):
        pass
    with registry.time_block("sync.pull"):
        pass

    summary = registry.snapshot()["timings_ms"]["sync.pull"]
    assert summary["count"] == 2
    assert summary["max"] >= summary["last"] >= 0.0
