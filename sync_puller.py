#!/usr/bin/env python3
# Incremental puller: per-domain watermarks, delta merge that never clobbers pending local writes
import datetime as dt
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import pos_store
import sync_queue
from pos_store import dumps, iso_now, transaction, utcnow
from sync_client import DeltaPage, SyncApiClient, SyncError
from sync_settings import DEFAULT_PULL_DOMAINS

logger = logging.getLogger(__name__)

# Remote domain -> local entity type
DOMAIN_ENTITIES = {
    "products": "product",
    "categories": "category",
    "parties": "party",
    "sales": "sale",
    "cheques": "cheque",
    "stockAdjustments": "stockAdjustment",
}


@dataclass
class DomainPullResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    deferred: int = 0
    pages: int = 0
    watermark: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PullResult:
    domains: Dict[str, DomainPullResult] = field(default_factory=dict)
    replayed: int = 0

    @property
    def errors(self) -> Dict[str, str]:
        return {d: r.error for d, r in self.domains.items() if r.error}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "replayed": self.replayed,
            "domains": {d: vars(r).copy() for d, r in self.domains.items()},
            "errors": self.errors,
        }


# ---------- WATERMARKS ----------
def get_watermark(conn: sqlite3.Connection, domain: str) -> Optional[str]:
    row = conn.execute("SELECT watermark FROM sync_watermarks WHERE domain=?", (domain,)).fetchone()
    return row["watermark"] if row else None


def set_watermark(conn: sqlite3.Connection, domain: str, watermark: str, server_utc: Optional[str] = None):
    conn.execute("""
        INSERT INTO sync_watermarks (domain, watermark, server_utc, updated_utc) VALUES (?,?,?,?)
        ON CONFLICT(domain) DO UPDATE SET
          watermark=excluded.watermark, server_utc=excluded.server_utc, updated_utc=excluded.updated_utc
    """, (domain, watermark, server_utc, iso_now()))


def clear_watermark(conn: sqlite3.Connection, domain: Optional[str] = None) -> int:
    """Forget pull progress so the next pull starts from a full sync."""
    with transaction(conn):
        if domain:
            cur = conn.execute("DELETE FROM sync_watermarks WHERE domain=?", (domain,))
        else:
            cur = conn.execute("DELETE FROM sync_watermarks")
    logger.info("Cleared %s watermark(s)%s", cur.rowcount, f" for {domain}" if domain else "")
    return cur.rowcount


def list_watermarks(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM sync_watermarks ORDER BY domain").fetchall()
    return [dict(r) for r in rows]


# ---------- DEFERRED CHANGES ----------
def _defer(conn: sqlite3.Connection, domain: str, entity: str, server_id: Any, change: str,
           record: Optional[Dict[str, Any]] = None):
    version = record.get("version") if record else None
    conn.execute("""
        INSERT INTO deferred_changes (domain, entity, server_id, change, record_json, version, received_utc)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(entity, server_id) DO UPDATE SET
          domain=excluded.domain, change=excluded.change, record_json=excluded.record_json,
          version=excluded.version, received_utc=excluded.received_utc
    """, (domain, entity, str(server_id), change, dumps(record) if record is not None else None,
          version if isinstance(version, int) else None, iso_now()))


def _drop_deferred(conn: sqlite3.Connection, entity: str, server_id: Any):
    conn.execute("DELETE FROM deferred_changes WHERE entity=? AND server_id=?", (entity, str(server_id)))


def list_deferred(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM deferred_changes ORDER BY received_utc, id").fetchall()
    return [dict(r) for r in rows]


def _deleted_id(entry: Any) -> Any:
    if isinstance(entry, dict):
        return pos_store.remote_server_id(entry)
    return entry


class IncrementalPuller:
    def __init__(
        self,
        client: SyncApiClient,
        domains: Iterable[str] = DEFAULT_PULL_DOMAINS,
        max_pages: int = 50,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.client = client
        self.domains = tuple(domains)
        self.max_pages = max(1, int(max_pages))
        self.clock = clock
        self._lock = threading.Lock()

    def pull(self, conn: sqlite3.Connection) -> Optional[PullResult]:
        """Pull every tracked domain; returns None when a pull is already running."""
        if not self._lock.acquire(blocking=False):
            logger.debug("Pull already in flight; skipping")
            return None
        try:
            result = PullResult()
            result.replayed = self.replay_deferred(conn)
            for domain in self.domains:
                result.domains[domain] = self._pull_domain(conn, domain)
            with transaction(conn):
                pos_store.state_set(conn, "last_pull_utc", iso_now(self.clock()))
            return result
        finally:
            self._lock.release()

    def clear_watermark(self, conn: sqlite3.Connection, domain: Optional[str] = None) -> int:
        return clear_watermark(conn, domain)

    def _fetch_pages(self, domain: str, since: Optional[str]) -> List[DeltaPage]:
        pages = []
        cursor = since
        for _ in range(self.max_pages):
            page = self.client.get_changes(domain, cursor)
            pages.append(page)
            if not page.has_more or not page.watermark or page.watermark == cursor:
                break
            cursor = page.watermark
        return pages

    def _pull_domain(self, conn: sqlite3.Connection, domain: str) -> DomainPullResult:
        stats = DomainPullResult()
        entity = DOMAIN_ENTITIES.get(domain)
        if entity is None:
            stats.error = f"Unknown domain: {domain}"
            logger.error(stats.error)
            return stats
        since = get_watermark(conn, domain)
        try:
            pages = self._fetch_pages(domain, since)
        except SyncError as exc:
            # nothing merged, watermark untouched; the next pull asks for the same window
            stats.error = str(exc)
            logger.warning("Pull of %s since %s failed: %s", domain, since, exc)
            return stats

        stats.pages = len(pages)
        with transaction(conn):
            for page in pages:
                self._merge_page(conn, domain, entity, page, stats)
            final = pages[-1].watermark if pages else None
            if final:
                set_watermark(conn, domain, final, pages[-1].server_timestamp)
                stats.watermark = final
        if stats.created or stats.updated or stats.deleted or stats.deferred:
            logger.info(
                "Pulled %s: %s created, %s updated, %s deleted, %s deferred",
                domain, stats.created, stats.updated, stats.deleted, stats.deferred,
            )
        return stats

    def _merge_page(self, conn: sqlite3.Connection, domain: str, entity: str, page: DeltaPage,
                    stats: DomainPullResult):
        for record in list(page.created) + list(page.updated):
            server_id = pos_store.remote_server_id(record)
            if server_id is None:
                logger.warning("Skipping %s record without id", domain)
                continue
            # a row still known only by its temp id is the same record when the server echoes it back
            local = pos_store.match_remote(conn, entity, record)
            if local is not None and sync_queue.has_open_items(conn, entity, local["id"]):
                _defer(conn, domain, entity, server_id, "upsert", record)
                stats.deferred += 1
                continue
            outcome, _ = pos_store.upsert_remote(conn, entity, record)
            _drop_deferred(conn, entity, server_id)
            if outcome == "created":
                stats.created += 1
            else:
                stats.updated += 1

        for entry in page.deleted:
            server_id = _deleted_id(entry)
            if server_id is None:
                continue
            local = pos_store.find_by_server_id(conn, entity, server_id)
            if local is not None and sync_queue.has_open_items(conn, entity, local["id"]):
                _defer(conn, domain, entity, server_id, "delete")
                stats.deferred += 1
                continue
            if pos_store.delete_remote(conn, entity, server_id) is not None:
                stats.deleted += 1
            _drop_deferred(conn, entity, server_id)

    def replay_deferred(self, conn: sqlite3.Connection) -> int:
        """Apply held-back remote changes whose local writes have resolved."""
        applied = 0
        with transaction(conn):
            for change in list_deferred(conn):
                entity = change["entity"]
                server_id = change["server_id"]
                record = json.loads(change["record_json"] or "{}")
                if record:
                    local = pos_store.match_remote(conn, entity, record)
                else:
                    local = pos_store.find_by_server_id(conn, entity, server_id)
                if local is not None and sync_queue.has_open_items(conn, entity, local["id"]):
                    continue
                if change["change"] == "delete":
                    if local is not None:
                        pos_store.purge_entity(conn, entity, local["id"])
                        applied += 1
                else:
                    remote_version = change["version"]
                    local_version = local["version"] if local is not None else None
                    if local_version is not None and remote_version is not None and local_version > remote_version:
                        logger.debug("Dropping stale deferred %s %s (v%s < v%s)",
                                     entity, server_id, remote_version, local_version)
                    elif record:
                        pos_store.upsert_remote(conn, entity, record)
                        applied += 1
                _drop_deferred(conn, entity, server_id)
        if applied:
            logger.info("Replayed %s deferred remote change(s)", applied)
        return applied
