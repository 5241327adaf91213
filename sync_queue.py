#!/usr/bin/env python3
# Durable sync queue: ordered log of local mutations awaiting remote confirmation
import datetime as dt
import json
import logging
import random
import sqlite3
import string
from typing import Any, Dict, List, Optional

from pos_store import dumps, iso_after, iso_now, transaction, utcnow

logger = logging.getLogger(__name__)

OPERATIONS = ("CREATE", "UPDATE", "DELETE")
STATUSES = ("pending", "processing", "completed", "failed")
OPEN_STATUSES = ("pending", "processing")
DEFAULT_MAX_ATTEMPTS = 5


def generate_idempotency_key(entity: str, operation: str, now: Optional[dt.datetime] = None) -> str:
    ms = int((now or utcnow()).timestamp() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{entity}_{operation.lower()}_{ms}_{suffix}"


def item_from_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    item = dict(row)
    item["payload"] = json.loads(item.pop("payload_json") or "{}")
    raw = item.pop("conflict_json", None)
    item["conflict_data"] = json.loads(raw) if raw else None
    return item


def enqueue(
    conn: sqlite3.Connection,
    operation: str,
    entity: str,
    entity_id: Any,
    payload: Dict[str, Any],
    endpoint: str,
    method: str,
    idempotency_key: Optional[str] = None,
    expected_version: Optional[int] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    created_utc: Optional[str] = None,
    offline_utc: Optional[str] = None,
    attempts: int = 0,
    retry_delay: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    """Persist a new pending item and return it.

    created_utc may be supplied to place a corrective operation at the same
    position as the item it replaces; attempts and retry_delay carry the
    replaced item's budget and backoff over to it.

    An item queued behind a failed operation of the same entity starts out
    blocked, and is released together with the other dependents.
    """
    op = (operation or "").upper()
    if op not in OPERATIONS:
        raise ValueError(f"Unsupported operation: {operation}")
    if not entity:
        raise ValueError("entity is required")
    key = idempotency_key or generate_idempotency_key(entity, op, now)
    stamp = iso_now(now)
    created = created_utc or stamp
    next_retry = iso_after(retry_delay, now) if retry_delay else None
    with transaction(conn):
        blocker = _failed_ahead(conn, entity, entity_id, created)
        status, error, error_code = "pending", None, None
        if blocker is not None:
            status, error, error_code = "failed", f"Blocked by failed operation {blocker}", "blocked"
        cur = conn.execute("""
            INSERT INTO sync_queue (
              idempotency_key, operation, entity, entity_id, expected_version,
              payload_json, endpoint, method, status, attempts, max_attempts,
              error, error_code, next_retry_utc, created_utc, offline_utc
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            key, op, entity, str(entity_id), expected_version,
            dumps(payload or {}), endpoint, (method or "POST").upper(), status,
            int(attempts), int(max_attempts), error, error_code, next_retry,
            created, offline_utc or stamp,
        ))
        item_id = int(cur.lastrowid)
    if blocker is not None:
        logger.warning("Queued %s %s %s as %s behind failed %s", op, entity, entity_id, key, blocker)
    else:
        logger.debug("Queued %s %s %s as %s", op, entity, entity_id, key)
    return get_item(conn, item_id)


def _failed_ahead(conn: sqlite3.Connection, entity: str, entity_id: Any, created_utc: str) -> Optional[str]:
    row = conn.execute("""
        SELECT idempotency_key FROM sync_queue
        WHERE entity=? AND entity_id=? AND status='failed' AND created_utc <= ?
        ORDER BY created_utc, id LIMIT 1
    """, (entity, str(entity_id), created_utc)).fetchone()
    return row["idempotency_key"] if row else None


def get_item(conn: sqlite3.Connection, item_id: int) -> Optional[Dict[str, Any]]:
    return item_from_row(conn.execute("SELECT * FROM sync_queue WHERE id=?", (int(item_id),)).fetchone())


def get_by_key(conn: sqlite3.Connection, idempotency_key: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sync_queue WHERE idempotency_key=?", (idempotency_key,)).fetchone()
    return item_from_row(row)


def dequeue_pending(
    conn: sqlite3.Connection,
    limit: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> List[Dict[str, Any]]:
    """Pending items, oldest first. With `now`, only those whose backoff has elapsed."""
    sql = "SELECT * FROM sync_queue WHERE status='pending'"
    params: List[Any] = []
    if now is not None:
        sql += " AND (next_retry_utc IS NULL OR next_retry_utc <= ?)"
        params.append(iso_now(now))
    sql += " ORDER BY created_utc ASC, id ASC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [item_from_row(r) for r in conn.execute(sql, params).fetchall()]


def next_batch(conn: sqlite3.Connection, limit: int, now: Optional[dt.datetime] = None) -> List[Dict[str, Any]]:
    """Due pending items that are the oldest unfinished item of their entity.

    A later operation on an entity is held back while an earlier one is
    pending, processing or failed, so per-entity order survives retries,
    backoff and terminal failures.
    """
    rows = conn.execute("""
        SELECT q.* FROM sync_queue q
        WHERE q.status='pending'
          AND (q.next_retry_utc IS NULL OR q.next_retry_utc <= ?)
          AND NOT EXISTS (
            SELECT 1 FROM sync_queue e
            WHERE e.entity=q.entity AND e.entity_id=q.entity_id
              AND e.status IN ('pending','processing','failed')
              AND (e.created_utc < q.created_utc OR (e.created_utc = q.created_utc AND e.id < q.id))
          )
        ORDER BY q.created_utc ASC, q.id ASC
        LIMIT ?
    """, (iso_now(now), int(limit))).fetchall()
    return [item_from_row(r) for r in rows]


def claim_batch(conn: sqlite3.Connection, limit: int, now: Optional[dt.datetime] = None) -> List[Dict[str, Any]]:
    with transaction(conn):
        items = next_batch(conn, limit, now)
        for item in items:
            mark_processing(conn, item["id"], now)
            item["status"] = "processing"
    return items


def mark_processing(conn: sqlite3.Connection, item_id: int, now: Optional[dt.datetime] = None):
    conn.execute(
        "UPDATE sync_queue SET status='processing', last_attempt_utc=? WHERE id=?",
        (iso_now(now), int(item_id)),
    )


def mark_completed(
    conn: sqlite3.Connection,
    item_id: int,
    server_id: Any = None,
    now: Optional[dt.datetime] = None,
):
    conn.execute("""
        UPDATE sync_queue
        SET status='completed', completed_utc=?, error=NULL, error_code=NULL,
            next_retry_utc=NULL, server_id=COALESCE(?, server_id)
        WHERE id=?
    """, (iso_now(now), None if server_id is None else str(server_id), int(item_id)))


def mark_failed(
    conn: sqlite3.Connection,
    item_id: int,
    error: str,
    permanent: bool = False,
    retry_delay: Optional[float] = None,
    error_code: Optional[str] = None,
    conflict_data: Optional[Dict[str, Any]] = None,
    now: Optional[dt.datetime] = None,
) -> str:
    """Count a failed attempt; returns the item's new status."""
    with transaction(conn):
        item = get_item(conn, item_id)
        if item is None:
            raise LookupError(f"Queue item {item_id} not found")
        attempts = int(item["attempts"]) + 1
        terminal = permanent or attempts >= int(item["max_attempts"])
        status = "failed" if terminal else "pending"
        next_retry = None
        if not terminal and retry_delay:
            next_retry = iso_after(retry_delay, now)
        conn.execute("""
            UPDATE sync_queue
            SET status=?, attempts=?, error=?, error_code=?, last_attempt_utc=?,
                next_retry_utc=?, conflict_json=COALESCE(?, conflict_json)
            WHERE id=?
        """, (
            status, attempts, error, error_code, iso_now(now), next_retry,
            dumps(conflict_data) if conflict_data is not None else None, int(item_id),
        ))
        if terminal:
            _block_dependents(conn, item, now)
    return status


def _block_dependents(conn: sqlite3.Connection, item: Dict[str, Any], now: Optional[dt.datetime] = None):
    cur = conn.execute("""
        UPDATE sync_queue
        SET status='failed', error=?, error_code='blocked', last_attempt_utc=?
        WHERE entity=? AND entity_id=? AND status='pending' AND id<>?
    """, (
        f"Blocked by failed operation {item['idempotency_key']}", iso_now(now),
        item["entity"], item["entity_id"], item["id"],
    ))
    if cur.rowcount:
        logger.warning(
            "Blocked %s later operation(s) on %s %s behind %s",
            cur.rowcount, item["entity"], item["entity_id"], item["idempotency_key"],
        )


def mark_superseded(
    conn: sqlite3.Connection,
    item_id: int,
    replacement_key: str,
    now: Optional[dt.datetime] = None,
):
    """Complete an item that was replaced by a corrective operation."""
    conn.execute("""
        UPDATE sync_queue
        SET status='completed', completed_utc=?, error_code='superseded', error=?, next_retry_utc=NULL
        WHERE id=?
    """, (iso_now(now), f"Superseded by {replacement_key}", int(item_id)))


def retry(conn: sqlite3.Connection, item_id: int) -> bool:
    """Put a failed item back to pending; the idempotency key is kept."""
    with transaction(conn):
        item = get_item(conn, item_id)
        if item is None:
            raise LookupError(f"Queue item {item_id} not found")
        if item["status"] != "failed":
            return False
        conn.execute("""
            UPDATE sync_queue
            SET status='pending', attempts=0, error=NULL, error_code=NULL, next_retry_utc=NULL
            WHERE id=?
        """, (int(item_id),))
        release_blocked(conn, item["entity"], item["entity_id"])
    logger.info("Queue item %s (%s) reset for retry", item_id, item["idempotency_key"])
    return True


def release_blocked(conn: sqlite3.Connection, entity: str, entity_id: Any) -> int:
    """Return operations held behind a failed one to pending."""
    cur = conn.execute("""
        UPDATE sync_queue
        SET status='pending', attempts=0, error=NULL, error_code=NULL, next_retry_utc=NULL
        WHERE entity=? AND entity_id=? AND status='failed' AND error_code='blocked'
    """, (entity, str(entity_id)))
    return cur.rowcount


def retry_all(conn: sqlite3.Connection) -> int:
    with transaction(conn):
        cur = conn.execute("""
            UPDATE sync_queue
            SET status='pending', attempts=0, error=NULL, error_code=NULL, next_retry_utc=NULL
            WHERE status='failed'
        """)
    if cur.rowcount:
        logger.info("Reset %s failed queue item(s) for retry", cur.rowcount)
    return cur.rowcount


def recover_processing(conn: sqlite3.Connection) -> int:
    """Items left in processing by a crash go back to pending."""
    with transaction(conn):
        cur = conn.execute("UPDATE sync_queue SET status='pending' WHERE status='processing'")
    if cur.rowcount:
        logger.warning("Recovered %s queue item(s) left in processing", cur.rowcount)
    return cur.rowcount


def clear_completed(conn: sqlite3.Connection, before_utc: Optional[str] = None) -> int:
    sql = "DELETE FROM sync_queue WHERE status='completed'"
    params: List[Any] = []
    if before_utc:
        sql += " AND completed_utc < ?"
        params.append(before_utc)
    with transaction(conn):
        cur = conn.execute(sql, params)
    return cur.rowcount


def count_by_status(conn: sqlite3.Connection) -> Dict[str, int]:
    counts = {s: 0 for s in STATUSES}
    for row in conn.execute("SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status").fetchall():
        counts[row["status"]] = int(row["n"])
    return counts


def get_failed(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM sync_queue WHERE status='failed' ORDER BY created_utc, id").fetchall()
    return [item_from_row(r) for r in rows]


def get_by_entity(conn: sqlite3.Connection, entity: str, entity_id: Any) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM sync_queue WHERE entity=? AND entity_id=? ORDER BY created_utc, id",
        (entity, str(entity_id)),
    ).fetchall()
    return [item_from_row(r) for r in rows]


def reassign_entity(conn: sqlite3.Connection, entity: str, from_id: Any, to_id: Any) -> int:
    """Point queue items of one local row at another, when two rows turn out to be one record."""
    cur = conn.execute(
        "UPDATE sync_queue SET entity_id=? WHERE entity=? AND entity_id=?",
        (str(to_id), entity, str(from_id)),
    )
    return cur.rowcount


def has_open_items(conn: sqlite3.Connection, entity: str, entity_id: Any, exclude_id: Optional[int] = None) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sync_queue WHERE entity=? AND entity_id=? AND status IN ('pending','processing') AND id<>? LIMIT 1",
        (entity, str(entity_id), -1 if exclude_id is None else int(exclude_id)),
    ).fetchone()
    return row is not None


def list_items(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    if status is not None and status not in STATUSES:
        raise ValueError(f"Unknown queue status: {status}")
    sql = "SELECT * FROM sync_queue"
    params: List[Any] = []
    if status:
        sql += " WHERE status=?"
        params.append(status)
    sql += " ORDER BY created_utc ASC, id ASC LIMIT ?"
    params.append(int(limit))
    return [item_from_row(r) for r in conn.execute(sql, params).fetchall()]
