from __future__ import annotations

import re
import uuid
from typing import Any

ORDER_FIELDS: dict[str, str] = {
    "id": "id",
    "customerId": "customer_id",
    "customerName": "customer_name",
    "subtotal": "subtotal",
    "tax": "tax",
    "shipping": "shipping",
    "total": "total",
    "status": "status",
    "channel": "channel",
    "paymentMethod": "payment_method",
    "shippingAddress": "shipping_address",
    "notes": "notes",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "deliveredAt": "delivered_at",
}

ITEM_FIELDS: dict[str, str] = {
    "id": "id",
    "productId": "product_id",
    "productName": "product_name",
    "quantity": "quantity",
    "price": "price",
    "totalPrice": "total_price",
    "discount": "discount",
    "notes": "notes",
}

_DB_TO_ORDER = {db: app for app, db in ORDER_FIELDS.items()}
_DB_TO_ITEM = {db: app for app, db in ITEM_FIELDS.items()}
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def order_to_row(order: dict[str, Any]) -> dict[str, Any]:
    """Pedido de la aplicación (camelCase) a fila de ``orders``; los items van aparte."""

    row: dict[str, Any] = {}
    for key, value in order.items():
        if key == "items":
            continue
        row[ORDER_FIELDS.get(key, camel_to_snake(key))] = value
    return row


def item_to_row(item: dict[str, Any], order_id: str) -> dict[str, Any]:
    row = {ITEM_FIELDS.get(key, camel_to_snake(key)): value for key, value in item.items()}
    row["id"] = row.get("id") or str(uuid.uuid4())
    row["order_id"] = order_id
    if row.get("total_price") is None and row.get("price") is not None and row.get("quantity") is not None:
        row["total_price"] = row["price"] * row["quantity"]
    return row


def row_to_item(row: dict[str, Any]) -> dict[str, Any]:
    return {
        _DB_TO_ITEM.get(key, snake_to_camel(key)): value
        for key, value in row.items()
        if key not in ("order_id", "created_at", "updated_at")
    }


def row_to_order(row: dict[str, Any], items: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    order = {_DB_TO_ORDER.get(key, snake_to_camel(key)): value for key, value in row.items()}
    order["items"] = [row_to_item(item) for item in items or []]
    return order
