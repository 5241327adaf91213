#!/usr/bin/env python3
# Read-only accessors behind the "offline / syncing / N pending" indicators
import json
import sqlite3
from typing import Any, Dict, List

import printed_receipts
import pos_store
import sync_puller
import sync_queue


def entity_errors(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    out = []
    for entity, table in pos_store.ENTITY_TABLES.items():
        rows = conn.execute(
            f"SELECT id, temp_id, server_id, sync_error, updated_utc FROM {table} WHERE sync_error IS NOT NULL ORDER BY id"
        ).fetchall()
        for r in rows:
            out.append({"entity": entity, **dict(r)})
    return out


def discrepancies(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    out = []
    for entity, table in pos_store.ENTITY_TABLES.items():
        rows = conn.execute(
            f"SELECT id, temp_id, server_id, discrepancy_json FROM {table} WHERE discrepancy_json IS NOT NULL ORDER BY id"
        ).fetchall()
        for r in rows:
            out.append({
                "entity": entity,
                "id": r["id"],
                "temp_id": r["temp_id"],
                "server_id": r["server_id"],
                "discrepancies": json.loads(r["discrepancy_json"]),
            })
    return out


def unsynced_counts(conn: sqlite3.Connection) -> Dict[str, int]:
    counts = {}
    for entity, table in pos_store.ENTITY_TABLES.items():
        row = conn.execute(f"SELECT COUNT(*) AS n FROM {table} WHERE is_synced=0").fetchone()
        counts[entity] = int(row["n"])
    return counts


def status_snapshot(conn: sqlite3.Connection) -> Dict[str, Any]:
    counts = sync_queue.count_by_status(conn)
    return {
        "device_id": pos_store.state_get(conn, "device_id"),
        "queue": counts,
        "pending": counts["pending"] + counts["processing"],
        "failed": counts["failed"],
        "last_upload_utc": pos_store.state_get(conn, "last_upload_utc"),
        "last_pull_utc": pos_store.state_get(conn, "last_pull_utc"),
        "unsynced": unsynced_counts(conn),
        "entity_errors": entity_errors(conn),
        "discrepancies": discrepancies(conn),
        "receipts_needing_reprint": len(printed_receipts.find_needing_reprint(conn)),
        "watermarks": sync_puller.list_watermarks(conn),
        "deferred_changes": len(sync_puller.list_deferred(conn)),
    }
