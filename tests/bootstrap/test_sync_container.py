from __future__ import annotations

import sqlite3

import pytest

from omnisync.application.lifecycle import ManualScheduler
from omnisync.bootstrap.container import build_sync_container, validate_settings
from omnisync.core.errors import ConfigurationError
from omnisync.core.metrics import MetricsRegistry
from omnisync.domain.models import SyncSettings
from omnisync.infrastructure.health_probes import StaticConnectivityProbe
from omnisync.infrastructure.kv_storage import InMemoryKeyValueStorage, ResilientKeyValueStorage
from omnisync.infrastructure.local_config import SyncConfigStore
from omnisync.infrastructure.supabase_rest_store import SupabaseRestStore, UnconfiguredRemoteStore
from tests.utilidades.fakes import FakeRemoteStore

CONFIGURED = SyncSettings(supabase_url="https://demo.supabase.co", api_key="k", request_timeout_seconds=0)


@pytest.mark.parametrize(
    "overrides",
    [
        {"conflict_strategy": "coin-flip"},
        {"conflict_base_policy": "optimistic"},
        {"sync_interval_seconds": 0},
        {"max_attempts": 0},
        {"supabase_url": "ftp://demo"},
    ],
)
def test_validate_settings_rejects_invalid_values(overrides) -> None:
    with pytest.raises(ConfigurationError):
        validate_settings(SyncSettings(**overrides))


def test_container_wires_engine_over_sqlite_and_injected_remote(tmp_path) -> None:
    remote = FakeRemoteStore()
    container = build_sync_container(
        CONFIGURED,
        db_path=":memory:",
        remote=remote,
        probe=StaticConnectivityProbe(online=True),
        log_dir=tmp_path,
        metrics=MetricsRegistry(),
    )

    container.orders.create_order({"id": "ord-1", "total": 5})
    assert remote.calls == []
    container.controller.start()

    assert isinstance(container.storage, ResilientKeyValueStorage)
    assert isinstance(container.controller._scheduler, ManualScheduler)
    assert remote.records["ord-1"]["total"] == 5
    assert container.engine.pending_items() == []
    assert container.engine.is_configured is True
    assert container.audit_logger.path == tmp_path / "sync_audit.jsonl"


def test_container_without_credentials_uses_unconfigured_remote(tmp_path) -> None:
    container = build_sync_container(SyncSettings(), db_path=":memory:", log_dir=tmp_path)

    assert isinstance(container.remote, UnconfiguredRemoteStore)
    assert container.monitor.poll() == "offline"
    assert container.engine.is_configured is False


def test_container_builds_supabase_store_from_settings(tmp_path) -> None:
    container = build_sync_container(CONFIGURED, db_path=":memory:", log_dir=tmp_path)

    assert isinstance(container.remote, SupabaseRestStore)


def test_container_loads_settings_from_config_store_and_env(tmp_path) -> None:
    store = SyncConfigStore(tmp_path / "config")
    store.save(SyncSettings(tenant_id="tienda-9"))

    container = build_sync_container(
        config_store=store,
        environ={"OMNISYNC_SUPABASE_URL": "https://env.supabase.co", "OMNISYNC_API_KEY": "k"},
        db_path=":memory:",
        remote=FakeRemoteStore(),
        log_dir=tmp_path,
    )

    assert container.settings.tenant_id == "tienda-9"
    assert container.settings.remote_configured is True


def test_storage_failure_falls_back_to_memory(tmp_path) -> None:
    def _broken_connection(_db_path):
        raise sqlite3.OperationalError("unable to open database file")

    container = build_sync_container(
        CONFIGURED,
        connection_factory=_broken_connection,
        remote=FakeRemoteStore(),
        log_dir=tmp_path,
    )

    assert isinstance(container.storage, InMemoryKeyValueStorage)
    container.engine.connectivity.set_online(False)
    container.orders.create_order({"id": "ord-1"})
    assert container.engine.queue_stats().pending == 1


def test_persistence_error_on_schema_creation_also_falls_back(tmp_path) -> None:
    class _ClosedConnection:
        def execute(self, *_args):
            raise sqlite3.ProgrammingError("closed")

    container = build_sync_container(
        CONFIGURED,
        connection_factory=lambda _path: _ClosedConnection(),
        remote=FakeRemoteStore(),
        log_dir=tmp_path,
    )

    assert isinstance(container.storage, InMemoryKeyValueStorage)
