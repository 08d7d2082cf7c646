from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

import requests

from omnisync.application.connectivity import ConnectivityMonitor, ConnectivityState
from omnisync.application.lifecycle import DrainRunner, ManualScheduler, SyncLifecycleController
from omnisync.application.sync_engine import OfflineSyncEngine, OrderSyncService
from omnisync.bootstrap.settings import resolve_log_dir
from omnisync.core.errors import ConfigurationError, PersistenceError
from omnisync.core.metrics import MetricsRegistry, metrics_registry
from omnisync.domain.models import SyncSettings
from omnisync.domain.ports import ConnectivityProbePort, KeyValueStoragePort, RemoteStorePort, SchedulerPort
from omnisync.domain.sync_models import CONFLICT_BASE_POLICIES, CONFLICT_STRATEGIES
from omnisync.infrastructure.db import get_connection
from omnisync.infrastructure.health_probes import SocketConnectivityProbe, StaticConnectivityProbe
from omnisync.infrastructure.kv_storage import InMemoryKeyValueStorage, ResilientKeyValueStorage, SQLiteKeyValueStorage
from omnisync.infrastructure.local_config import SyncConfigStore
from omnisync.infrastructure.supabase_rest_store import SupabaseRestStore, UnconfiguredRemoteStore
from omnisync.infrastructure.sync_audit_log import SYNC_AUDIT_LOG_NAME, StructuredFileLogger

logger = logging.getLogger(__name__)


@dataclass
class SyncContainer:
    settings: SyncSettings
    storage: KeyValueStoragePort
    remote: RemoteStorePort
    connectivity: ConnectivityState
    monitor: ConnectivityMonitor
    engine: OfflineSyncEngine
    orders: OrderSyncService
    controller: SyncLifecycleController
    audit_logger: StructuredFileLogger
    metrics: MetricsRegistry


ConnectionFactory = Callable[..., object]


def validate_settings(settings: SyncSettings) -> SyncSettings:
    if settings.conflict_strategy not in CONFLICT_STRATEGIES:
        raise ConfigurationError(f"Estrategia de conflicto desconocida: {settings.conflict_strategy!r}")
    if settings.conflict_base_policy not in CONFLICT_BASE_POLICIES:
        raise ConfigurationError(f"Política de versión base desconocida: {settings.conflict_base_policy!r}")
    if settings.sync_interval_seconds <= 0:
        raise ConfigurationError("El intervalo de sincronización debe ser positivo")
    if settings.max_attempts < 1:
        raise ConfigurationError("max_attempts debe ser al menos 1")
    if settings.supabase_url and not settings.supabase_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"URL de Supabase inválida: {settings.supabase_url!r}")
    return settings


def _build_storage(connection_factory: ConnectionFactory, db_path: Path | str | None) -> KeyValueStoragePort:
    try:
        connection = connection_factory(db_path)
        return ResilientKeyValueStorage(SQLiteKeyValueStorage(connection))
    except (PersistenceError, sqlite3.Error, OSError) as exc:
        logger.error("No se pudo abrir la base local (%s); la sesión trabaja en memoria", exc)
        return InMemoryKeyValueStorage()


def build_sync_container(
    settings: SyncSettings | None = None,
    *,
    db_path: Path | str | None = None,
    connection_factory: ConnectionFactory = get_connection,
    config_store: SyncConfigStore | None = None,
    environ: Mapping[str, str] | None = None,
    session: requests.Session | None = None,
    remote: RemoteStorePort | None = None,
    probe: ConnectivityProbePort | None = None,
    scheduler: SchedulerPort | None = None,
    runner: DrainRunner | None = None,
    log_dir: Path | None = None,
    metrics: MetricsRegistry | None = None,
) -> SyncContainer:
    if settings is None:
        settings = (config_store or SyncConfigStore()).load_effective(environ)
    validate_settings(settings)

    storage = _build_storage(connection_factory, db_path)

    if remote is None:
        remote = SupabaseRestStore.from_settings(settings, session) if settings.remote_configured else UnconfiguredRemoteStore()
    if probe is None:
        probe = (
            SocketConnectivityProbe.from_url(settings.supabase_url)
            if settings.remote_configured
            else StaticConnectivityProbe(online=False)
        )

    registry = metrics or metrics_registry
    audit_logger = StructuredFileLogger((log_dir or resolve_log_dir()) / SYNC_AUDIT_LOG_NAME)
    connectivity = ConnectivityState(online=True)
    monitor = ConnectivityMonitor(probe, connectivity)
    engine = OfflineSyncEngine.build(
        storage,
        remote,
        settings,
        connectivity=connectivity,
        structured_logger=audit_logger,
        metrics=registry,
    )
    controller = SyncLifecycleController(
        engine,
        connectivity,
        scheduler or ManualScheduler(),
        interval_seconds=settings.sync_interval_seconds,
        auto_sync=settings.auto_sync,
        monitor=monitor,
        runner=runner,
    )
    return SyncContainer(
        settings=settings,
        storage=storage,
        remote=remote,
        connectivity=connectivity,
        monitor=monitor,
        engine=engine,
        orders=OrderSyncService(engine),
        controller=controller,
        audit_logger=audit_logger,
        metrics=registry,
    )
