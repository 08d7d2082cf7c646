from __future__ import annotations

from omnisync.application.connectivity import ConnectivityMonitor
from omnisync.application.lifecycle import DirectDrainRunner, ManualScheduler, SyncLifecycleController
from omnisync.application.sync_engine import OfflineSyncEngine, OrderSyncService
from omnisync.core.metrics import MetricsRegistry
from omnisync.domain.models import SyncSettings
from omnisync.infrastructure.kv_storage import InMemoryKeyValueStorage
from tests.utilidades.fakes import FakeClock, FakeRemoteStore


class FakeProbe:
    def __init__(self, online: bool) -> None:
        self.online = online

    def check(self, *, timeout_seconds: float = 3.0) -> bool:
        return self.online


class BusyRunner:
    def __init__(self) -> None:
        self.jobs = []

    def run(self, job, on_finished) -> bool:
        self.jobs.append(job)
        return True

    def is_busy(self) -> bool:
        return bool(self.jobs)


def _engine(remote: FakeRemoteStore, **overrides) -> OfflineSyncEngine:
    values = {"supabase_url": "https://demo.supabase.co", "api_key": "k", "request_timeout_seconds": 0}
    values.update(overrides)
    return OfflineSyncEngine.build(
        InMemoryKeyValueStorage(),
        remote,
        SyncSettings(**values),
        metrics=MetricsRegistry(),
        clock=FakeClock(),
    )


def _controller(engine: OfflineSyncEngine, **kwargs) -> tuple[SyncLifecycleController, ManualScheduler]:
    scheduler = ManualScheduler()
    controller = SyncLifecycleController(engine, engine.connectivity, scheduler, interval_seconds=15, **kwargs)
    return controller, scheduler


def test_offline_order_is_queued_then_drained_on_reconnect() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    engine.connectivity.set_online(False)
    controller, _scheduler = _controller(engine)
    controller.start()
    states = []
    controller.on_state_change(states.append)

    order = OrderSyncService(engine).create_order({"id": "ord-1", "total": 25})

    assert engine.get("ord-1") == order
    [item] = engine.pending_items()
    assert item.operation == "create"
    assert controller.state.pending_count == 1
    assert controller.state.sync_status == "pending"
    assert remote.calls == []

    controller.handle_online()

    assert engine.pending_items() == []
    assert remote.records["ord-1"]["total"] == 25
    assert controller.state.sync_status == "synced"
    assert controller.state.pending_count == 0
    assert controller.state.is_online is True
    assert controller.state.last_sync is not None
    assert states[-1].sync_status == "synced"


def test_start_drains_once_and_schedules_interval() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    controller, scheduler = _controller(engine)

    controller.start()

    assert scheduler.is_active() is True
    assert scheduler.interval_seconds == 15
    assert remote.calls_for("check_connection") == [None]

    scheduler.fire()

    assert remote.calls_for("check_connection") == [None, None]
    assert controller.last_report is not None and controller.last_report.outcome == "completed"


def test_start_without_auto_sync_does_not_drain_or_schedule() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    controller, scheduler = _controller(engine, auto_sync=False)

    controller.start()
    controller.handle_offline()
    controller.handle_online()

    assert scheduler.is_active() is False
    assert remote.calls == []
    assert controller.force_sync() is True
    assert remote.calls_for("check_connection") == [None]


def test_unconfigured_engine_never_drains() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote, supabase_url="")
    controller, scheduler = _controller(engine)

    controller.start()

    assert scheduler.is_active() is False
    assert controller.force_sync() is False
    assert remote.calls == []


def test_tick_skips_while_offline_and_monitor_detects_recovery() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    probe = FakeProbe(online=False)
    monitor = ConnectivityMonitor(probe, engine.connectivity)
    controller, scheduler = _controller(engine, monitor=monitor)

    controller.start()
    assert engine.connectivity.is_online is False
    assert remote.calls == []

    assert controller.tick() is False
    probe.online = True
    assert controller.tick() is True

    assert remote.calls_for("check_connection") == [None]
    scheduler.fire()
    assert remote.calls_for("check_connection") == [None, None]


def test_busy_runner_discards_new_triggers() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    runner = BusyRunner()
    controller, _scheduler = _controller(engine, runner=runner)

    controller.start()

    assert len(runner.jobs) == 1
    assert controller.force_sync() is False
    assert controller.state.is_syncing is True
    assert controller.state.sync_status == "syncing"


def test_drain_errors_are_exposed_in_state() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    controller, _scheduler = _controller(engine)
    controller.start()
    engine.connectivity.set_online(False)
    engine.create({"id": "ord-1"})
    remote.fail_next("create", "HTTP 500")

    controller.handle_online()

    assert controller.state.error == "create order/ord-1: HTTP 500"
    assert controller.state.pending_count == 1


def test_stop_unsubscribes_and_stops_scheduler() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    controller, scheduler = _controller(engine)
    controller.start()
    controller.stop()
    calls_before = list(remote.calls)

    controller.handle_offline()
    controller.handle_online()

    assert scheduler.is_active() is False
    assert controller.started is False
    assert remote.calls == calls_before


def test_direct_runner_reports_busy_only_while_running() -> None:
    runner = DirectDrainRunner()
    observed = []

    def _job():
        observed.append(runner.is_busy())
        return "report"

    finished = []
    assert runner.run(_job, finished.append) is True
    assert observed == [True]
    assert finished == ["report"]
    assert runner.is_busy() is False


class DeferredRunner:
    """Acepta drenados sin ejecutarlos: el test decide cuándo corren."""

    def __init__(self) -> None:
        self.jobs = []

    def run(self, job, on_finished) -> bool:
        self.jobs.append((job, on_finished))
        return True

    def is_busy(self) -> bool:
        return False


def test_local_mutation_hands_the_drain_to_the_runner() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    runner = DeferredRunner()
    controller, _scheduler = _controller(engine, runner=runner)
    controller.start()
    assert len(runner.jobs) == 1

    OrderSyncService(engine).create_order({"id": "ord-1", "total": 7})

    assert remote.calls == []
    assert len(runner.jobs) == 2
    job, on_finished = runner.jobs[-1]
    on_finished(job())
    assert remote.records["ord-1"]["total"] == 7
    assert controller.state.pending_count == 0


def test_mutation_during_a_drain_gets_a_follow_up_drain() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    controller, _scheduler = _controller(engine)
    controller.start()
    assert remote.calls_for("check_connection") == [None]

    def _late_order() -> None:
        del remote.hooks["list"]
        engine.create({"id": "ord-2", "total": 3})

    remote.hooks["list"] = _late_order
    engine.create({"id": "ord-1", "total": 1})

    assert set(remote.records) == {"ord-1", "ord-2"}
    assert engine.pending_items() == []
    assert remote.calls_for("check_connection") == [None, None, None]


def test_local_mutation_does_not_drain_without_auto_sync() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    controller, _scheduler = _controller(engine, auto_sync=False)
    controller.start()

    engine.create({"id": "ord-1"})

    assert remote.calls == []
    assert controller.state.pending_count == 1


def test_state_reports_slow_network_from_monitor() -> None:
    remote = FakeRemoteStore()
    engine = _engine(remote)
    ticks = iter([0.0, 2.5])
    monitor = ConnectivityMonitor(FakeProbe(online=True), engine.connectivity, timer=lambda: next(ticks))
    controller, _scheduler = _controller(engine, monitor=monitor)
    states = []
    controller.on_state_change(states.append)

    controller.start()

    assert controller.state.is_online is True
    assert controller.state.network_status == "slow"
    assert controller.state.latency_ms == 2500
    assert "slow" in [state.network_status for state in states]

    controller.handle_offline()

    assert controller.state.network_status == "offline"
    assert controller.state.to_dict()["network_status"] == "offline"
