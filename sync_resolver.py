#!/usr/bin/env python3
# Conflict and stock-discrepancy handling for uploaded queue items
import datetime as dt
import logging
import sqlite3
from typing import Any, Dict, List, Optional

import pos_store
import sync_queue
from pos_store import iso_now, transaction
from sync_client import BatchItemResult

logger = logging.getLogger(__name__)

# Fields the server owns; local values are never re-sent over a server conflict
AUTHORITATIVE_FIELDS = frozenset({
    "id", "server_id", "serverId", "version", "invoice_number", "invoiceNumber",
    "stock_qty", "productStock", "created_at", "updated_at", "modified",
})

STRATEGIES = ("client_wins", "server_wins", "discard")


def _number(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _server_quantity(conflict: Dict[str, Any]) -> Optional[float]:
    for key in ("current_quantity", "currentQuantity", "available", "stock_qty", "productStock", "quantity"):
        qty = _number(conflict.get(key))
        if qty is not None:
            return qty
    return None


def _local_id(item: Dict[str, Any]) -> int:
    return int(item["entity_id"])


def _replace_with(
    conn: sqlite3.Connection,
    item: Dict[str, Any],
    payload: Dict[str, Any],
    expected_version: Optional[int],
    attempts: int = 0,
    retry_delay: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    """Supersede the original and enqueue a corrective op in its slot."""
    key = sync_queue.generate_idempotency_key(item["entity"], item["operation"], now)
    sync_queue.mark_superseded(conn, item["id"], key, now)
    return sync_queue.enqueue(
        conn,
        item["operation"],
        item["entity"],
        item["entity_id"],
        payload,
        endpoint=item["endpoint"],
        method=item["method"],
        idempotency_key=key,
        expected_version=expected_version,
        max_attempts=item["max_attempts"],
        created_utc=item["created_utc"],
        offline_utc=item["offline_utc"],
        attempts=attempts,
        retry_delay=retry_delay,
        now=now,
    )


def _rebase_stock_adjustment(
    conn: sqlite3.Connection,
    item: Dict[str, Any],
    conflict: Dict[str, Any],
    version: Optional[int],
    exhausted: bool,
    retry_delay: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> Optional[Dict[str, Any]]:
    payload = dict(item["payload"])
    server_qty = _server_quantity(conflict)
    change = _number(payload.get("quantity_change"))
    if server_qty is None or change is None:
        return None
    found = pos_store.get_product_stock(conn, payload.get("product_id"))
    new_qty = server_qty + change
    if new_qty < 0 or exhausted:
        # server stock still wins locally
        if found is not None:
            pos_store.set_product_stock(conn, found[0], server_qty)
        return None
    payload["old_quantity"] = server_qty
    payload["new_quantity"] = new_qty
    if found is not None:
        pos_store.set_product_stock(conn, found[0], new_qty)
    pos_store.update_entity_data(
        conn, item["entity"], _local_id(item),
        {"old_quantity": server_qty, "new_quantity": new_qty},
    )
    return _replace_with(conn, item, payload, version, int(item["attempts"]) + 1, retry_delay, now)


def _resend_update(
    conn: sqlite3.Connection,
    item: Dict[str, Any],
    version: Optional[int],
    retry_delay: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> Optional[Dict[str, Any]]:
    if version is None:
        return None
    payload = {k: v for k, v in item["payload"].items() if k not in AUTHORITATIVE_FIELDS}
    if not [k for k in payload if k != "temp_id"]:
        return None
    # keep the user's non-authoritative edits on top of the server state
    pos_store.update_entity_data(conn, item["entity"], _local_id(item),
                                 {k: v for k, v in payload.items() if k != "temp_id"})
    return _replace_with(conn, item, payload, version, int(item["attempts"]) + 1, retry_delay, now)


def resolve_conflict(
    conn: sqlite3.Connection,
    item: Dict[str, Any],
    result: BatchItemResult,
    retry_delay: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    """Server wins; then either enqueue a corrective op or fail the item with a reason.

    Each corrective op counts as an attempt of the item it replaces and waits
    out retry_delay, so a conflict the server keeps reporting ends in a
    failure once max_attempts is reached.

    Returns {"action": "corrected"|"failed", ...}.
    """
    conflict = result.conflict_data or {}
    version = result.version
    if version is None:
        version = conflict.get("version") if isinstance(conflict.get("version"), int) else None
    entity = item["entity"]
    local_id = _local_id(item)
    attempts = int(item["attempts"]) + 1
    exhausted = attempts >= int(item["max_attempts"])

    with transaction(conn):
        row = pos_store.get_entity(conn, entity, local_id)
        replacement = None
        if row is not None:
            if entity == "stockAdjustment" and item["operation"] == "CREATE":
                replacement = _rebase_stock_adjustment(conn, item, conflict, version, exhausted, retry_delay, now)
            else:
                if conflict:
                    pos_store.apply_server_state(conn, entity, local_id, conflict)
                if item["operation"] == "UPDATE" and not exhausted:
                    replacement = _resend_update(conn, item, version, retry_delay, now)

        if replacement is not None:
            pos_store.set_sync_error(conn, entity, local_id, None)
            logger.info(
                "Conflict on %s resolved with corrective %s (attempt %s of %s)",
                item["idempotency_key"], replacement["idempotency_key"], attempts, item["max_attempts"],
            )
            return {"action": "corrected", "replacement_key": replacement["idempotency_key"]}

        reason = result.message or "Version conflict: the server copy changed and was kept"
        if exhausted:
            reason = f"{reason} (still conflicting after {attempts} attempt(s))"
        sync_queue.mark_failed(
            conn, item["id"], reason, permanent=True,
            error_code=result.error_code or "conflict",
            conflict_data=conflict or None, now=now,
        )
        if row is not None:
            pos_store.set_sync_error(conn, entity, local_id, reason)
    logger.warning("Conflict on %s could not be corrected: %s", item["idempotency_key"], reason)
    return {"action": "failed", "reason": reason}


def record_discrepancies(
    conn: sqlite3.Connection,
    item: Dict[str, Any],
    discrepancies: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Attach stock discrepancies reported for an accepted operation to its entity."""
    if not discrepancies:
        return []
    payload = item.get("payload") or {}
    entries = []
    for entry in discrepancies:
        expected = entry.get("expected")
        if expected is None:
            expected = payload.get("old_quantity")
        available = entry.get("available")
        difference = entry.get("discrepancy")
        if difference is None and _number(expected) is not None and _number(available) is not None:
            difference = _number(available) - _number(expected)
        entries.append({
            "idempotency_key": item["idempotency_key"],
            "product_id": entry.get("product_id") or payload.get("product_id"),
            "expected": expected,
            "actual": available,
            "difference": difference,
            "action": entry.get("action"),
            "recorded_utc": iso_now(),
        })
    pos_store.append_discrepancies(conn, item["entity"], _local_id(item), entries)
    logger.warning("Stock discrepancy on %s: %s", item["idempotency_key"], entries)
    return entries


def resolve_manually(
    conn: sqlite3.Connection,
    item_id: int,
    strategy: str,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    """Operator decision for a failed item: client_wins, server_wins or discard."""
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown strategy: {strategy}")
    with transaction(conn):
        item = sync_queue.get_item(conn, item_id)
        if item is None:
            raise LookupError(f"Queue item {item_id} not found")
        if item["status"] != "failed":
            raise ValueError(f"Queue item {item_id} is {item['status']}, not failed")
        entity = item["entity"]
        local_id = _local_id(item)
        row = pos_store.get_entity(conn, entity, local_id)
        conflict = item["conflict_data"] or {}
        outcome: Dict[str, Any] = {"strategy": strategy}

        if strategy == "client_wins":
            payload = dict(item["payload"])
            payload["force"] = True
            version = conflict.get("version") if isinstance(conflict.get("version"), int) else None
            replacement = _replace_with(conn, item, payload, version, now=now)
            outcome["replacement_key"] = replacement["idempotency_key"]
        elif strategy == "server_wins":
            if row is not None:
                if conflict:
                    pos_store.apply_server_state(conn, entity, local_id, conflict)
                if row["server_id"] is not None:
                    pos_store.mark_entity_synced(conn, entity, local_id)
            sync_queue.mark_superseded(conn, item["id"], "manual server_wins", now)
        else:
            sync_queue.mark_superseded(conn, item["id"], "manual discard", now)

        if row is not None:
            pos_store.set_sync_error(conn, entity, local_id, None)
        outcome["released"] = sync_queue.release_blocked(conn, entity, item["entity_id"])
    logger.info("Queue item %s resolved manually with %s", item_id, strategy)
    return outcome
