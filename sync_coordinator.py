#!/usr/bin/env python3
# Batch upload coordinator: drains the sync queue, one transaction per item outcome
import datetime as dt
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pos_store
import printed_receipts
import sync_queue
import sync_resolver
from pos_store import transaction, utcnow
from sync_client import TRANSIENT_ERROR_CODES, BatchItemResult, SyncApiClient, SyncError

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicts: int = 0
    retried: int = 0
    batches: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    server_timestamp: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "retried": self.retried,
            "batches": self.batches,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "server_timestamp": self.server_timestamp,
        }


class BatchUploadCoordinator:
    """Moves queue items to the backend in batches, at most one pass at a time."""

    def __init__(
        self,
        client: SyncApiClient,
        batch_size: int = 50,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        max_batches: int = 20,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.client = client
        self.batch_size = max(1, int(batch_size))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_batches = max_batches
        self.clock = clock
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def backoff_delay(self, attempts: int) -> float:
        return min(self.backoff_base * (2 ** attempts), self.backoff_max)

    def run_once(self, conn: sqlite3.Connection) -> Optional[UploadResult]:
        """Drain due items. Returns None when another pass is already running."""
        if not self._lock.acquire(blocking=False):
            logger.debug("Upload pass already in flight; skipping")
            return None
        try:
            return self._drain(conn)
        finally:
            self._lock.release()

    def _drain(self, conn: sqlite3.Connection) -> UploadResult:
        result = UploadResult()
        for _ in range(self.max_batches):
            items = sync_queue.claim_batch(conn, self.batch_size, self.clock())
            if not items:
                break
            result.batches += 1
            result.total += len(items)
            if not self._submit(conn, items, result):
                break
        if result.total:
            with transaction(conn):
                pos_store.state_set(conn, "last_upload_utc", pos_store.iso_now(self.clock()))
            logger.info(
                "Upload pass: %s item(s), %s ok, %s conflict, %s retry, %s failed",
                result.total, result.succeeded, result.conflicts, result.retried, result.failed,
            )
        return result

    def _operation(self, conn: sqlite3.Connection, item: Dict[str, Any]) -> Dict[str, Any]:
        row = pos_store.get_entity(conn, item["entity"], int(item["entity_id"]))
        return {
            "idempotency_key": item["idempotency_key"],
            "entity": item["entity"],
            "operation": item["operation"],
            "action": item["operation"].lower(),
            "endpoint": item["endpoint"],
            "method": item["method"],
            "data": item["payload"],
            "local_id": item["entity_id"],
            "temp_id": row["temp_id"] if row else item["payload"].get("temp_id"),
            "server_id": row["server_id"] if row else None,
            "expected_version": item["expected_version"],
            "offline_timestamp": item["offline_utc"],
        }

    def _submit(self, conn: sqlite3.Connection, items: List[Dict[str, Any]], result: UploadResult) -> bool:
        """Send one claimed batch. Returns False when the whole request failed."""
        operations = [self._operation(conn, item) for item in items]
        try:
            outcomes = self.client.batch_sync(operations)
        except SyncError as exc:
            logger.warning("Batch upload of %s item(s) failed: %s", len(items), exc)
            result.errors.append(str(exc))
            for item in items:
                self._retry_later(conn, item, str(exc), result)
            return False
        result.server_timestamp = getattr(self.client, "last_server_timestamp", None)

        by_key = {o.idempotency_key: o for o in outcomes}
        for index, item in enumerate(items):
            outcome = by_key.get(item["idempotency_key"])
            try:
                if outcome is None:
                    self._retry_later(conn, item, "No result returned for operation", result)
                elif outcome.status == "success":
                    self._apply_success(conn, item, outcome, result)
                elif outcome.status == "conflict":
                    self._apply_conflict(conn, item, outcome, result)
                else:
                    self._apply_error(conn, item, outcome, result)
            except Exception:
                self._release(conn, items[index:])
                raise
        return True

    def _release(self, conn: sqlite3.Connection, items: List[Dict[str, Any]]):
        """Hand unprocessed items back to the queue after a local failure."""
        with transaction(conn):
            for item in items:
                conn.execute(
                    "UPDATE sync_queue SET status='pending' WHERE id=? AND status='processing'",
                    (item["id"],),
                )

    def _apply_success(self, conn: sqlite3.Connection, item: Dict[str, Any], outcome: BatchItemResult,
                       result: UploadResult):
        entity = item["entity"]
        local_id = int(item["entity_id"])
        with transaction(conn):
            row = pos_store.get_entity(conn, entity, local_id)
            server_id = outcome.server_id
            if row is not None:
                if item["operation"] == "DELETE":
                    pos_store.purge_entity(conn, entity, local_id)
                else:
                    if server_id is not None:
                        self._merge_duplicate(conn, entity, local_id, server_id)
                    still_pending = sync_queue.has_open_items(conn, entity, local_id, exclude_id=item["id"])
                    pos_store.mark_entity_synced(
                        conn, entity, local_id, server_id=server_id, version=outcome.version,
                        synced=not still_pending,
                    )
                    if entity == "sale" and outcome.invoice_number:
                        pos_store.set_invoice_number(conn, local_id, outcome.invoice_number)
                        pos_store.update_entity_data(
                            conn, entity, local_id, {"invoice_number": outcome.invoice_number},
                            mark_unsynced=False,
                        )
                        printed_receipts.update_with_final_invoice(conn, local_id, outcome.invoice_number)
                    if outcome.discrepancies:
                        result.warnings.extend(sync_resolver.record_discrepancies(conn, item, outcome.discrepancies))
                if server_id is None:
                    server_id = row["server_id"]
            sync_queue.mark_completed(conn, item["id"], server_id=server_id, now=self.clock())
        result.succeeded += 1

    def _merge_duplicate(self, conn: sqlite3.Connection, entity: str, local_id: int, server_id: Any):
        """Fold a row pulled under this server id into the local row that created it.

        Happens when the server committed a write whose response was lost and
        a pull stored the record before the retry confirmed it.
        """
        other = pos_store.find_by_server_id(conn, entity, server_id)
        if other is None or int(other["id"]) == local_id:
            return
        moved = sync_queue.reassign_entity(conn, entity, other["id"], local_id)
        pos_store.purge_entity(conn, entity, other["id"])
        logger.warning(
            "Merged duplicate %s %s into %s for server id %s (%s queue item(s) moved)",
            entity, other["id"], local_id, server_id, moved,
        )

    def _apply_conflict(self, conn: sqlite3.Connection, item: Dict[str, Any], outcome: BatchItemResult,
                        result: UploadResult):
        result.conflicts += 1
        resolution = sync_resolver.resolve_conflict(
            conn, item, outcome,
            retry_delay=self.backoff_delay(int(item["attempts"])), now=self.clock(),
        )
        if resolution["action"] == "failed":
            result.failed += 1
            result.errors.append(f"{item['idempotency_key']}: {resolution['reason']}")

    def _apply_error(self, conn: sqlite3.Connection, item: Dict[str, Any], outcome: BatchItemResult,
                     result: UploadResult):
        message = outcome.message or "Rejected by server"
        code = (outcome.error_code or "").lower()
        if outcome.retryable or code in TRANSIENT_ERROR_CODES:
            self._retry_later(conn, item, message, result, error_code=outcome.error_code)
            return
        with transaction(conn):
            sync_queue.mark_failed(
                conn, item["id"], message, permanent=True,
                error_code=outcome.error_code or "rejected", now=self.clock(),
            )
            self._entity_error(conn, item, message)
        result.failed += 1
        result.errors.append(f"{item['idempotency_key']}: {message}")
        logger.error("Server rejected %s: %s", item["idempotency_key"], message)

    def _retry_later(self, conn: sqlite3.Connection, item: Dict[str, Any], message: str, result: UploadResult,
                     error_code: Optional[str] = None):
        with transaction(conn):
            status = sync_queue.mark_failed(
                conn, item["id"], message,
                retry_delay=self.backoff_delay(int(item["attempts"])),
                error_code=error_code or "transient", now=self.clock(),
            )
            if status == "failed":
                self._entity_error(conn, item, message)
        if status == "failed":
            result.failed += 1
            logger.error("Giving up on %s after %s attempt(s): %s",
                         item["idempotency_key"], int(item["attempts"]) + 1, message)
        else:
            result.retried += 1

    def _entity_error(self, conn: sqlite3.Connection, item: Dict[str, Any], message: str):
        if pos_store.get_entity(conn, item["entity"], int(item["entity_id"])) is not None:
            pos_store.set_sync_error(conn, item["entity"], int(item["entity_id"]), message)
