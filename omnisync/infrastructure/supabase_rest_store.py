from __future__ import annotations

import logging
from typing import Any, Callable

import requests

from omnisync.core.errors import ExternalServiceError
from omnisync.domain.models import SyncSettings
from omnisync.domain.sync_models import RemoteResult
from omnisync.infrastructure.order_mapping import item_to_row, order_to_row, row_to_order
from omnisync.infrastructure.remote_errors import error_from_response, result_from_error, result_from_exception

logger = logging.getLogger(__name__)

_UPSERT_PREFER = "resolution=merge-duplicates,return=representation"
_RETURN_PREFER = "return=representation"


class SupabaseRestStore:
    """Pedidos (y sus líneas) en Supabase vía PostgREST.

    Cumple ``RemoteStorePort``: nunca lanza, todo fallo vuelve como
    ``RemoteResult`` con mensaje legible y flag de reintento.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        orders_table: str = "orders",
        items_table: str = "order_items",
        timeout_seconds: float = 8.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._orders_table = orders_table
        self._items_table = items_table
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: SyncSettings, session: requests.Session | None = None) -> "SupabaseRestStore":
        return cls(
            settings.supabase_url,
            settings.api_key,
            orders_table=settings.orders_table,
            items_table=settings.order_items_table,
            timeout_seconds=settings.request_timeout_seconds,
            session=session,
        )

    def create(self, record: dict[str, Any]) -> RemoteResult:
        order_id = str(record["id"])

        def _create() -> RemoteResult:
            rows = self._request(
                "POST",
                self._orders_table,
                params={"on_conflict": "id"},
                json=order_to_row(record),
                prefer=_UPSERT_PREFER,
            )
            items = self._replace_items(order_id, record["items"]) if "items" in record else self._fetch_items([order_id])
            return RemoteResult.ok(row_to_order(rows[0], items) if rows else dict(record), status_code=201)

        return self._guard("create", _create)

    def update(self, record_id: str, patch: dict[str, Any]) -> RemoteResult:
        def _update() -> RemoteResult:
            row = {key: value for key, value in order_to_row(patch).items() if key != "id"}
            if row:
                rows = self._request(
                    "PATCH",
                    self._orders_table,
                    params={"id": f"eq.{record_id}"},
                    json=row,
                    prefer=_RETURN_PREFER,
                )
                if not rows:
                    return RemoteResult.fail(f"El pedido {record_id} no existe en remoto", status_code=404)
            if "items" in patch:
                self._replace_items(str(record_id), patch["items"])
            return self._fetch_one(str(record_id))

        return self._guard("update", _update)

    def delete(self, record_id: str) -> RemoteResult:
        def _delete() -> RemoteResult:
            self._request("DELETE", self._items_table, params={"order_id": f"eq.{record_id}"})
            self._request("DELETE", self._orders_table, params={"id": f"eq.{record_id}"})
            return RemoteResult.ok(status_code=204)

        return self._guard("delete", _delete)

    def list(self) -> RemoteResult:
        def _list() -> RemoteResult:
            rows = self._request("GET", self._orders_table, params={"select": "*", "order": "created_at.desc"})
            items = self._fetch_items([str(row["id"]) for row in rows])
            by_order: dict[str, list[dict[str, Any]]] = {}
            for item in items:
                by_order.setdefault(str(item.get("order_id")), []).append(item)
            return RemoteResult.ok([row_to_order(row, by_order.get(str(row["id"]), [])) for row in rows], status_code=200)

        return self._guard("list", _list)

    def get(self, record_id: str) -> RemoteResult:
        return self._guard("get", lambda: self._fetch_one(str(record_id)))

    def check_connection(self) -> RemoteResult:
        def _check() -> RemoteResult:
            self._request("GET", self._orders_table, params={"select": "id", "limit": "1"})
            return RemoteResult.ok(True, status_code=200)

        return self._guard("check_connection", _check)

    def _fetch_one(self, record_id: str) -> RemoteResult:
        rows = self._request("GET", self._orders_table, params={"select": "*", "id": f"eq.{record_id}"})
        if not rows:
            return RemoteResult.ok(None, status_code=200)
        return RemoteResult.ok(row_to_order(rows[0], self._fetch_items([record_id])), status_code=200)

    def _fetch_items(self, order_ids: list[str]) -> list[dict[str, Any]]:
        if not order_ids:
            return []
        return self._request(
            "GET",
            self._items_table,
            params={"select": "*", "order_id": f"in.({','.join(order_ids)})"},
        )

    def _replace_items(self, order_id: str, items: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
        self._request("DELETE", self._items_table, params={"order_id": f"eq.{order_id}"})
        rows = [item_to_row(item, order_id) for item in items or []]
        if not rows:
            return []
        return self._request("POST", self._items_table, json=rows, prefer=_RETURN_PREFER)

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        response = self._session.request(
            method,
            f"{self._base_url}/rest/v1/{table}",
            params=params,
            json=json,
            headers=headers,
            timeout=self._timeout,
        )
        if response.status_code >= 400:
            raise error_from_response(response)
        if response.status_code == 204 or not response.content:
            return []
        payload = response.json()
        if isinstance(payload, dict):
            return [payload]
        return list(payload)

    def _guard(self, operation: str, call: Callable[[], RemoteResult]) -> RemoteResult:
        try:
            return call()
        except ExternalServiceError as error:
            result = result_from_error(error)
        except (requests.RequestException, ValueError, KeyError) as exc:
            result = result_from_exception(exc)
        logger.warning(
            "Supabase %s falló: %s",
            operation,
            result.error,
            extra={"extra": {"status_code": result.status_code, "transient": result.transient}},
        )
        return result


class UnconfiguredRemoteStore:
    """Remoto nulo para instalaciones sin URL/API key: todo falla sin tocar la red."""

    _MESSAGE = "Supabase no está configurado"

    def create(self, record: dict[str, Any]) -> RemoteResult:
        return RemoteResult.fail(self._MESSAGE)

    def update(self, record_id: str, patch: dict[str, Any]) -> RemoteResult:
        return RemoteResult.fail(self._MESSAGE)

    def delete(self, record_id: str) -> RemoteResult:
        return RemoteResult.fail(self._MESSAGE)

    def list(self) -> RemoteResult:
        return RemoteResult.fail(self._MESSAGE)

    def get(self, record_id: str) -> RemoteResult:
        return RemoteResult.fail(self._MESSAGE)

    def check_connection(self) -> RemoteResult:
        return RemoteResult.fail(self._MESSAGE)
