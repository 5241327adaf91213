#!/usr/bin/env python3
# Local mutation API: every write lands in the entity table and the sync queue together
import logging
import sqlite3
import time
from typing import Any, Dict, Optional

import pos_store
import sync_queue
from pos_store import transaction

logger = logging.getLogger(__name__)

# Remote collection path per entity type
ENTITY_ENDPOINTS = {
    "sale": "/sales",
    "stockAdjustment": "/stock-adjustments",
    "cheque": "/cheques",
    "party": "/parties",
    "product": "/products",
    "category": "/categories",
}

METHODS = {"CREATE": "POST", "UPDATE": "PUT", "DELETE": "DELETE"}


def _endpoint(entity: str) -> str:
    try:
        return ENTITY_ENDPOINTS[entity]
    except KeyError:
        raise LookupError(f"Unknown entity type: {entity}") from None


def _require(conn: sqlite3.Connection, entity: str, local_id: int) -> Dict[str, Any]:
    row = pos_store.get_entity(conn, entity, local_id)
    if row is None or row["is_deleted"]:
        raise LookupError(f"{entity} {local_id} not found")
    return row


def _queue(
    conn: sqlite3.Connection,
    operation: str,
    entity: str,
    local_id: int,
    payload: Dict[str, Any],
    expected_version: Optional[int] = None,
    max_attempts: int = sync_queue.DEFAULT_MAX_ATTEMPTS,
) -> Dict[str, Any]:
    return sync_queue.enqueue(
        conn,
        operation,
        entity,
        local_id,
        payload,
        endpoint=_endpoint(entity),
        method=METHODS[operation],
        expected_version=expected_version,
        max_attempts=max_attempts,
    )


def create_entity(
    conn: sqlite3.Connection,
    entity: str,
    data: Dict[str, Any],
    offline: bool = True,
    max_attempts: int = sync_queue.DEFAULT_MAX_ATTEMPTS,
    columns: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert a row under a fresh temp id and queue its CREATE."""
    if not isinstance(data, dict):
        raise ValueError("data must be an object")
    _endpoint(entity)
    temp_id = pos_store.generate_temp_id()
    with transaction(conn):
        local_id = pos_store.insert_entity(conn, entity, data, temp_id=temp_id, is_offline=offline, columns=columns)
        payload = dict(data)
        payload["temp_id"] = temp_id
        _queue(conn, "CREATE", entity, local_id, payload, max_attempts=max_attempts)
    logger.info("Created %s %s (temp id %s)", entity, local_id, temp_id)
    return pos_store.get_entity(conn, entity, local_id)


def update_entity(
    conn: sqlite3.Connection,
    entity: str,
    local_id: int,
    changes: Dict[str, Any],
    max_attempts: int = sync_queue.DEFAULT_MAX_ATTEMPTS,
) -> Dict[str, Any]:
    if not isinstance(changes, dict) or not changes:
        raise ValueError("changes must be a non-empty object")
    _endpoint(entity)
    with transaction(conn):
        current = _require(conn, entity, local_id)
        pos_store.update_entity_data(conn, entity, local_id, changes)
        _queue(conn, "UPDATE", entity, local_id, dict(changes),
               expected_version=current["version"], max_attempts=max_attempts)
    return pos_store.get_entity(conn, entity, local_id)


def delete_entity(
    conn: sqlite3.Connection,
    entity: str,
    local_id: int,
    max_attempts: int = sync_queue.DEFAULT_MAX_ATTEMPTS,
) -> Optional[Dict[str, Any]]:
    """Tombstone the row and queue a DELETE.

    A row the server has never seen, with nothing in flight, is removed
    outright and its pending and failed queue items are superseded instead,
    so a later retry cannot resurrect it.
    """
    _endpoint(entity)
    with transaction(conn):
        current = _require(conn, entity, local_id)
        history = sync_queue.get_by_entity(conn, entity, local_id)
        never_sent = current["server_id"] is None and not any(
            item["status"] in ("processing", "completed") for item in history
        )
        if never_sent:
            for item in history:
                if item["status"] in ("pending", "failed"):
                    sync_queue.mark_superseded(conn, item["id"], "local delete")
            pos_store.purge_entity(conn, entity, local_id)
            logger.info("Dropped unsynced %s %s", entity, local_id)
            return None
        pos_store.mark_deleted(conn, entity, local_id)
        item = _queue(conn, "DELETE", entity, local_id, {"temp_id": current["temp_id"]},
                      expected_version=current["version"], max_attempts=max_attempts)
    return item


def _offline_invoice_number(device_id: str) -> str:
    return f"OFF-{device_id}-{int(time.time() * 1000)}"


def record_offline_sale(
    conn: sqlite3.Connection,
    sale: Dict[str, Any],
    device_id: str,
    max_attempts: int = sync_queue.DEFAULT_MAX_ATTEMPTS,
) -> Dict[str, Any]:
    """Record a sale made without the backend; it carries a provisional invoice number."""
    if not isinstance(sale, dict):
        raise ValueError("sale must be an object")
    items = sale.get("items")
    if not isinstance(items, list) or not items:
        raise ValueError("sale has no items")
    data = dict(sale)
    invoice_number = data.get("invoice_number") or _offline_invoice_number(device_id)
    data["invoice_number"] = invoice_number
    data["device_id"] = device_id
    data["is_offline"] = True
    return create_entity(
        conn, "sale", data, offline=True, max_attempts=max_attempts,
        columns={"invoice_number": invoice_number},
    )


def record_stock_adjustment(
    conn: sqlite3.Connection,
    product_key: Any,
    quantity_change: float,
    reason: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    max_attempts: int = sync_queue.DEFAULT_MAX_ATTEMPTS,
) -> Dict[str, Any]:
    """Adjust local stock and queue the adjustment with its expected pre-state."""
    try:
        change = float(quantity_change)
    except (TypeError, ValueError):
        raise ValueError("quantity_change must be a number") from None
    if change == 0:
        raise ValueError("quantity_change must not be zero")
    with transaction(conn):
        found = pos_store.get_product_stock(conn, product_key)
        if found is None:
            raise LookupError(f"product {product_key} not found")
        product_local_id, old_qty = found
        new_qty = old_qty + change
        if new_qty < 0:
            raise ValueError(f"Insufficient stock: {old_qty} on hand, change {change}")
        product = pos_store.get_entity(conn, "product", product_local_id)
        data = dict(extra or {})
        data.update({
            "product_id": product["server_id"] if product["server_id"] is not None else product["temp_id"],
            "old_quantity": old_qty,
            "new_quantity": new_qty,
            "quantity_change": change,
            "reason": reason,
        })
        pos_store.set_product_stock(conn, product_local_id, new_qty)
        adjustment = create_entity(conn, "stockAdjustment", data, offline=True, max_attempts=max_attempts)
    return adjustment
