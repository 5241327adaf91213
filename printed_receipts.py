#!/usr/bin/env python3
# Receipts printed with a provisional invoice number, tracked until the final number is known
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from pos_store import iso_now

logger = logging.getLogger(__name__)

STATUSES = ("pending_update", "updated", "reprinted")


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def get_receipt(conn: sqlite3.Connection, receipt_id: int) -> Optional[Dict[str, Any]]:
    return _row(conn.execute("SELECT * FROM printed_receipts WHERE id=?", (int(receipt_id),)).fetchone())


def record_printed(conn: sqlite3.Connection, sale_id: int, temp_invoice_number: str) -> Dict[str, Any]:
    if not temp_invoice_number:
        raise ValueError("temp_invoice_number is required")
    sale = conn.execute("SELECT id FROM sales WHERE id=?", (int(sale_id),)).fetchone()
    if sale is None:
        raise LookupError(f"sale {sale_id} not found")
    cur = conn.execute(
        "INSERT INTO printed_receipts (sale_id, temp_invoice_number, status, printed_utc) VALUES (?,?,'pending_update',?)",
        (int(sale_id), temp_invoice_number, iso_now()),
    )
    return get_receipt(conn, int(cur.lastrowid))


def find_by_sale(conn: sqlite3.Connection, sale_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM printed_receipts WHERE sale_id=? ORDER BY id", (int(sale_id),)).fetchall()
    return [dict(r) for r in rows]


def find_needing_reprint(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM printed_receipts WHERE status IN ('pending_update','updated') ORDER BY printed_utc, id"
    ).fetchall()
    return [dict(r) for r in rows]


def update_with_final_invoice(conn: sqlite3.Connection, sale_id: int, final_invoice_number: str) -> int:
    """pending_update -> updated for every receipt of the sale. Never touches reprinted ones."""
    cur = conn.execute("""
        UPDATE printed_receipts
        SET final_invoice_number=?, status='updated', updated_utc=?
        WHERE sale_id=? AND status IN ('pending_update','updated')
    """, (final_invoice_number, iso_now(), int(sale_id)))
    if cur.rowcount:
        logger.info("Sale %s: %s printed receipt(s) now carry invoice %s", sale_id, cur.rowcount, final_invoice_number)
    return cur.rowcount


def mark_reprinted(conn: sqlite3.Connection, receipt_id: int) -> Dict[str, Any]:
    receipt = get_receipt(conn, receipt_id)
    if receipt is None:
        raise LookupError(f"receipt {receipt_id} not found")
    if receipt["status"] == "reprinted":
        return receipt
    if not receipt["final_invoice_number"]:
        raise ValueError("Final invoice number not known yet")
    conn.execute(
        "UPDATE printed_receipts SET status='reprinted', reprinted_utc=? WHERE id=?",
        (iso_now(), int(receipt_id)),
    )
    return get_receipt(conn, receipt_id)
