from __future__ import annotations

from dataclasses import dataclass

from omnisync.domain.sync_models import ConflictBasePolicy, ConflictStrategy

STORAGE_PREFIX = "omni-sales"


@dataclass(frozen=True)
class SyncSettings:
    supabase_url: str = ""
    api_key: str = ""
    orders_table: str = "orders"
    order_items_table: str = "order_items"
    sync_interval_seconds: float = 30.0
    max_attempts: int = 5
    request_timeout_seconds: float = 8.0
    conflict_strategy: ConflictStrategy = "latest-wins"
    conflict_base_policy: ConflictBasePolicy = "versioned"
    auto_sync: bool = True
    tenant_id: str = "default"
    device_id: str = ""

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url.strip() and self.api_key.strip())


@dataclass(frozen=True)
class StorageKeys:
    queue: str
    records: str
    last_sync: str
    conflicts: str

    @classmethod
    def for_resource(cls, resource_type: str, tenant_id: str = "default") -> "StorageKeys":
        base = f"{STORAGE_PREFIX}-{tenant_id}"
        return cls(
            queue=f"{base}-sync-queue",
            records=f"{base}-{resource_type}s",
            last_sync=f"{base}-{resource_type}s-last-sync",
            conflicts=f"{base}-{resource_type}s-conflicts",
        )
