#!/usr/bin/env python3
# Local entity store: SQLite tables, sync metadata columns, shared transaction boundary
import datetime as dt
import json
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

# Logical entity type -> table
ENTITY_TABLES = {
    "sale": "sales",
    "stockAdjustment": "stock_adjustments",
    "cheque": "cheques",
    "party": "parties",
    "product": "products",
    "category": "categories",
}

# Extra per-table columns on top of the shared sync metadata
_EXTRA_COLUMNS = {
    "sales": ["invoice_number TEXT"],
    "products": ["stock_qty NUMERIC NOT NULL DEFAULT 0"],
}

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso_now(now: Optional[dt.datetime] = None) -> str:
    """Fixed-width UTC timestamp; lexical order matches time order."""
    return (now or utcnow()).astimezone(dt.timezone.utc).strftime(TS_FORMAT)


def iso_after(seconds: float, now: Optional[dt.datetime] = None) -> str:
    return iso_now((now or utcnow()) + dt.timedelta(seconds=seconds))


def dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def connect(db_path: str = "pos.db") -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # Explicit BEGIN/COMMIT only (see transaction()).
    conn.isolation_level = None
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    init_db(conn)
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block in one local transaction; nested use joins the outer one.

    Any exception rolls back everything written inside the outermost block and
    is re-raised to the caller.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def init_db(conn: sqlite3.Connection):
    for table in ENTITY_TABLES.values():
        _ensure_entity_table(conn, table)
    _ensure_sync_queue_table(conn)
    _ensure_sync_support_tables(conn)


def _ensure_entity_table(conn: sqlite3.Connection, table: str):
    """Create an entity table with the shared sync-metadata columns."""
    extras = "".join(f",\n      {col}" for col in _EXTRA_COLUMNS.get(table, []))
    conn.execute(f"""
    CREATE TABLE IF NOT EXISTS {table} (
      id              INTEGER PRIMARY KEY AUTOINCREMENT,
      temp_id         TEXT UNIQUE,
      server_id       INTEGER UNIQUE,
      is_offline      INTEGER NOT NULL DEFAULT 0,
      is_synced       INTEGER NOT NULL DEFAULT 0,
      is_deleted      INTEGER NOT NULL DEFAULT 0,
      version         INTEGER,
      sync_error      TEXT,
      discrepancy_json TEXT,
      last_synced_utc TEXT,
      created_utc     TEXT NOT NULL,
      updated_utc     TEXT NOT NULL,
      data_json       TEXT NOT NULL{extras}
    )
    """)
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_synced ON {table}(is_synced, is_offline)")
    # Older databases may predate the extra columns
    existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    for col in _EXTRA_COLUMNS.get(table, []):
        name = col.split()[0]
        if name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {col}")


def _ensure_sync_queue_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS sync_queue (
      id               INTEGER PRIMARY KEY AUTOINCREMENT,
      idempotency_key  TEXT NOT NULL UNIQUE,
      operation        TEXT NOT NULL CHECK (operation IN ('CREATE','UPDATE','DELETE')),
      entity           TEXT NOT NULL,
      entity_id        TEXT NOT NULL,
      expected_version INTEGER,
      payload_json     TEXT NOT NULL,
      endpoint         TEXT NOT NULL,
      method           TEXT NOT NULL,
      status           TEXT NOT NULL DEFAULT 'pending'
                       CHECK (status IN ('pending','processing','completed','failed')),
      attempts         INTEGER NOT NULL DEFAULT 0,
      max_attempts     INTEGER NOT NULL DEFAULT 5,
      error            TEXT,
      error_code       TEXT,
      conflict_json    TEXT,
      server_id        TEXT,
      created_utc      TEXT NOT NULL,
      offline_utc      TEXT,
      last_attempt_utc TEXT,
      next_retry_utc   TEXT,
      completed_utc    TEXT
    )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, created_utc)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity, entity_id)")


def _ensure_sync_support_tables(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS sync_watermarks (
      domain       TEXT PRIMARY KEY,
      watermark    TEXT,
      server_utc   TEXT,
      updated_utc  TEXT NOT NULL
    )
    """)
    conn.execute("""
    CREATE TABLE IF NOT EXISTS deferred_changes (
      id           INTEGER PRIMARY KEY AUTOINCREMENT,
      domain       TEXT NOT NULL,
      entity       TEXT NOT NULL,
      server_id    TEXT NOT NULL,
      change       TEXT NOT NULL CHECK (change IN ('upsert','delete')),
      record_json  TEXT,
      version      INTEGER,
      received_utc TEXT NOT NULL,
      UNIQUE (entity, server_id)
    )
    """)
    conn.execute("""
    CREATE TABLE IF NOT EXISTS printed_receipts (
      id                   INTEGER PRIMARY KEY AUTOINCREMENT,
      sale_id              INTEGER NOT NULL REFERENCES sales(id) ON DELETE CASCADE,
      temp_invoice_number  TEXT NOT NULL,
      final_invoice_number TEXT,
      status               TEXT NOT NULL DEFAULT 'pending_update'
                           CHECK (status IN ('pending_update','updated','reprinted')),
      printed_utc          TEXT NOT NULL,
      updated_utc          TEXT,
      reprinted_utc        TEXT
    )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_printed_receipts_sale ON printed_receipts(sale_id)")
    conn.execute("""
    CREATE TABLE IF NOT EXISTS sync_state (
      key         TEXT PRIMARY KEY,
      value       TEXT,
      updated_utc TEXT NOT NULL
    )
    """)


# ---------- ENTITY ROWS ----------
def table_for(entity: str) -> str:
    try:
        return ENTITY_TABLES[entity]
    except KeyError:
        raise LookupError(f"Unknown entity type: {entity}") from None


def generate_temp_id() -> str:
    return f"offline_{int(utcnow().timestamp())}_{uuid.uuid4().hex[:9]}"


def entity_from_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    out = dict(row)
    out["data"] = json.loads(out.pop("data_json") or "{}")
    raw = out.pop("discrepancy_json", None)
    out["discrepancies"] = json.loads(raw) if raw else []
    out["is_offline"] = bool(out["is_offline"])
    out["is_synced"] = bool(out["is_synced"])
    out["is_deleted"] = bool(out["is_deleted"])
    return out


def insert_entity(
    conn: sqlite3.Connection,
    entity: str,
    data: Dict[str, Any],
    temp_id: Optional[str] = None,
    is_offline: bool = True,
    columns: Optional[Dict[str, Any]] = None,
    now: Optional[str] = None,
) -> int:
    table = table_for(entity)
    now = now or iso_now()
    values = {
        "temp_id": temp_id,
        "is_offline": 1 if is_offline else 0,
        "is_synced": 0,
        "created_utc": now,
        "updated_utc": now,
        "data_json": dumps(data),
    }
    values.update(columns or {})
    names = ",".join(values.keys())
    marks = ",".join("?" for _ in values)
    cur = conn.execute(f"INSERT INTO {table} ({names}) VALUES ({marks})", tuple(values.values()))
    return int(cur.lastrowid)


def get_entity(conn: sqlite3.Connection, entity: str, local_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute(f"SELECT * FROM {table_for(entity)} WHERE id=?", (int(local_id),)).fetchone()
    return entity_from_row(row)


def resolve_entity(conn: sqlite3.Connection, entity: str, key: Any) -> Optional[Dict[str, Any]]:
    """Look up a row by temp id (before sync) or server id (after sync)."""
    if key in (None, ""):
        return None
    row = conn.execute(
        f"SELECT * FROM {table_for(entity)} WHERE temp_id=? OR server_id=? ORDER BY id LIMIT 1",
        (str(key), key),
    ).fetchone()
    return entity_from_row(row)


def find_by_server_id(conn: sqlite3.Connection, entity: str, server_id: Any) -> Optional[Dict[str, Any]]:
    row = conn.execute(f"SELECT * FROM {table_for(entity)} WHERE server_id=?", (server_id,)).fetchone()
    return entity_from_row(row)


def find_by_temp_id(conn: sqlite3.Connection, entity: str, temp_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(f"SELECT * FROM {table_for(entity)} WHERE temp_id=?", (str(temp_id),)).fetchone()
    return entity_from_row(row)


def list_entities(
    conn: sqlite3.Connection,
    entity: str,
    unsynced_only: bool = False,
    include_deleted: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    where = []
    if unsynced_only:
        where.append("is_synced=0")
    if not include_deleted:
        where.append("is_deleted=0")
    sql = f"SELECT * FROM {table_for(entity)}"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY id ASC"
    params: Tuple[Any, ...] = ()
    if limit:
        sql += " LIMIT ?"
        params = (int(limit),)
    return [entity_from_row(r) for r in conn.execute(sql, params).fetchall()]


def update_entity_data(
    conn: sqlite3.Connection,
    entity: str,
    local_id: int,
    changes: Dict[str, Any],
    mark_unsynced: bool = True,
):
    current = get_entity(conn, entity, local_id)
    if current is None:
        raise LookupError(f"{entity} {local_id} not found")
    data = dict(current["data"])
    data.update(changes)
    synced_sql = ", is_synced=0" if mark_unsynced else ""
    conn.execute(
        f"UPDATE {table_for(entity)} SET data_json=?, updated_utc=?{synced_sql} WHERE id=?",
        (dumps(data), iso_now(), int(local_id)),
    )


def mark_deleted(conn: sqlite3.Connection, entity: str, local_id: int):
    conn.execute(
        f"UPDATE {table_for(entity)} SET is_deleted=1, is_synced=0, updated_utc=? WHERE id=?",
        (iso_now(), int(local_id)),
    )


def purge_entity(conn: sqlite3.Connection, entity: str, local_id: int):
    conn.execute(f"DELETE FROM {table_for(entity)} WHERE id=?", (int(local_id),))


def mark_entity_synced(
    conn: sqlite3.Connection,
    entity: str,
    local_id: int,
    server_id: Any = None,
    version: Optional[int] = None,
    now: Optional[str] = None,
    synced: bool = True,
):
    """Record a confirmed write; server id goes to its own column, never the primary key.

    synced=False keeps the row flagged unsynced while later local writes are queued.
    """
    conn.execute(
        f"""
        UPDATE {table_for(entity)}
        SET is_synced=?, sync_error=NULL, last_synced_utc=?,
            server_id=COALESCE(?, server_id), version=COALESCE(?, version)
        WHERE id=?
        """,
        (1 if synced else 0, now or iso_now(), server_id, version, int(local_id)),
    )


def set_sync_error(conn: sqlite3.Connection, entity: str, local_id: int, error: Optional[str]):
    conn.execute(f"UPDATE {table_for(entity)} SET sync_error=? WHERE id=?", (error, int(local_id)))


def append_discrepancies(conn: sqlite3.Connection, entity: str, local_id: int, entries: List[Dict[str, Any]]):
    if not entries:
        return
    row = conn.execute(
        f"SELECT discrepancy_json FROM {table_for(entity)} WHERE id=?", (int(local_id),)
    ).fetchone()
    if row is None:
        return
    existing = json.loads(row["discrepancy_json"]) if row["discrepancy_json"] else []
    existing.extend(entries)
    conn.execute(
        f"UPDATE {table_for(entity)} SET discrepancy_json=? WHERE id=?",
        (dumps(existing), int(local_id)),
    )


def set_invoice_number(conn: sqlite3.Connection, local_id: int, invoice_number: str):
    conn.execute("UPDATE sales SET invoice_number=?, updated_utc=? WHERE id=?", (invoice_number, iso_now(), int(local_id)))


# ---------- REMOTE STATE ----------
def remote_server_id(record: Dict[str, Any]) -> Any:
    for key in ("id", "server_id", "serverId"):
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def remote_temp_id(record: Dict[str, Any]) -> Optional[str]:
    """Temp id a remote record was created under, echoed back by the server."""
    for key in ("temp_id", "tempId"):
        value = record.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def match_remote(conn: sqlite3.Connection, entity: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Local row for a remote record: by server id, else by the temp id it was created under.

    A temp id match only counts while the local row has no server id yet.
    """
    server_id = remote_server_id(record)
    if server_id is not None:
        found = find_by_server_id(conn, entity, server_id)
        if found is not None:
            return found
    temp_id = remote_temp_id(record)
    if temp_id:
        found = find_by_temp_id(conn, entity, temp_id)
        if found is not None and found["server_id"] is None:
            return found
    return None


def _remote_version(record: Dict[str, Any]) -> Optional[int]:
    try:
        value = record.get("version")
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _remote_stock_qty(record: Dict[str, Any]) -> Optional[float]:
    """Products arrive with stock in a few historical shapes."""
    for key in ("stock_qty", "productStock", "quantity"):
        if record.get(key) is not None:
            try:
                return float(record[key])
            except (TypeError, ValueError):
                return None
    stock = record.get("stock")
    if not isinstance(stock, dict):
        stocks = record.get("stocks")
        stock = stocks[0] if isinstance(stocks, list) and stocks and isinstance(stocks[0], dict) else None
    if stock and stock.get("productStock") is not None:
        try:
            return float(stock["productStock"])
        except (TypeError, ValueError):
            return None
    return None


def apply_server_state(
    conn: sqlite3.Connection,
    entity: str,
    local_id: int,
    server_data: Dict[str, Any],
    now: Optional[str] = None,
):
    """Overwrite local fields with the server's values (server wins)."""
    current = get_entity(conn, entity, local_id)
    if current is None or not server_data:
        return
    data = dict(current["data"])
    data.update({k: v for k, v in server_data.items() if k not in ("id", "server_id", "serverId", "version")})
    now = now or iso_now()
    conn.execute(
        f"UPDATE {table_for(entity)} SET data_json=?, version=COALESCE(?, version), updated_utc=? WHERE id=?",
        (dumps(data), _remote_version(server_data), now, int(local_id)),
    )
    if entity == "product":
        qty = _remote_stock_qty(server_data)
        if qty is not None:
            set_product_stock(conn, local_id, qty)


def upsert_remote(
    conn: sqlite3.Connection,
    entity: str,
    record: Dict[str, Any],
    now: Optional[str] = None,
) -> Tuple[str, int]:
    """Insert or overwrite a row from an authoritative remote record."""
    server_id = remote_server_id(record)
    if server_id is None:
        raise ValueError(f"Remote {entity} record without id")
    now = now or iso_now()
    table = table_for(entity)
    version = _remote_version(record)
    existing = match_remote(conn, entity, record)
    if existing is None:
        local_id = insert_entity(conn, entity, record, is_offline=False, now=now)
        conn.execute(
            f"UPDATE {table} SET server_id=?, is_synced=1, version=?, last_synced_utc=? WHERE id=?",
            (server_id, version, now, local_id),
        )
        outcome = "created"
    else:
        # a row matched by temp id adopts the server id here
        local_id = existing["id"]
        conn.execute(
            f"""
            UPDATE {table} SET data_json=?, server_id=?, version=?, is_synced=1, is_deleted=0,
                sync_error=NULL, last_synced_utc=?, updated_utc=?
            WHERE id=?
            """,
            (dumps(record), server_id, version, now, now, local_id),
        )
        outcome = "updated"
    if entity == "product":
        qty = _remote_stock_qty(record)
        if qty is not None:
            set_product_stock(conn, local_id, qty)
    return outcome, local_id


def delete_remote(conn: sqlite3.Connection, entity: str, server_id: Any) -> Optional[int]:
    existing = find_by_server_id(conn, entity, server_id)
    if existing is None:
        return None
    purge_entity(conn, entity, existing["id"])
    return existing["id"]


# ---------- PRODUCT STOCK ----------
def get_product_stock(conn: sqlite3.Connection, product_key: Any) -> Optional[Tuple[int, float]]:
    """Return (local_id, qty) for a product addressed by server id or temp id."""
    product = resolve_entity(conn, "product", product_key)
    if product is None:
        return None
    return product["id"], float(product["stock_qty"] or 0)


def set_product_stock(conn: sqlite3.Connection, local_id: int, qty: float):
    conn.execute("UPDATE products SET stock_qty=?, updated_utc=? WHERE id=?", (float(qty), iso_now(), int(local_id)))


# ---------- SYNC STATE ----------
def state_get(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM sync_state WHERE key=?", (key,)).fetchone()
    return row["value"] if row else None


def state_set(conn: sqlite3.Connection, key: str, value: Optional[str]):
    conn.execute("""
        INSERT INTO sync_state (key, value, updated_utc) VALUES (?,?,?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_utc=excluded.updated_utc
    """, (key, value, iso_now()))


def device_id(conn: sqlite3.Connection, configured: Optional[str] = None) -> str:
    """Configured device id, else the one stored in the DB, else a new one."""
    if configured:
        return configured
    stored = state_get(conn, "device_id")
    if stored:
        return stored
    generated = f"POS-{uuid.uuid4().hex[:10].upper()}"
    with transaction(conn):
        state_set(conn, "device_id", generated)
    return generated
