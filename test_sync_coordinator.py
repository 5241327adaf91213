import datetime as dt
import unittest

import pos_records
import pos_store
import printed_receipts
import sync_queue
from sync_client import DeltaPage, TransientSyncError, normalize_batch_results
from sync_coordinator import BatchUploadCoordinator
from sync_puller import IncrementalPuller


class FakeBatchClient:
    """Answers each batch through `handler(operation) -> raw result dict`."""

    def __init__(self, handler=None, error=None):
        self.handler = handler or (lambda op: {"status": "success", "server_id": 100 + int(op["local_id"])})
        self.error = error
        self.calls = []
        self.last_server_timestamp = None

    def batch_sync(self, operations):
        self.calls.append([dict(op) for op in operations])
        if self.error is not None:
            raise self.error
        raw = []
        for op in operations:
            result = self.handler(op)
            if result is None:
                continue
            result.setdefault("idempotency_key", op["idempotency_key"])
            raw.append(result)
        return normalize_batch_results({"results": raw})


class FakeChangesClient:
    """Serves the given pages in order, then empty deltas."""

    def __init__(self, pages):
        self.pages = list(pages)

    def get_changes(self, domain, since=None):
        if self.pages:
            return self.pages.pop(0)
        return DeltaPage(domain=domain, watermark=since)


def page_of(domain, created=(), watermark="T1"):
    return DeltaPage(domain=domain, created=list(created), watermark=watermark)


class CoordinatorTest(unittest.TestCase):
    def setUp(self):
        self.conn = pos_store.connect(":memory:")
        self.now = dt.datetime.now(dt.timezone.utc)

    def tearDown(self):
        self.conn.close()

    def _coordinator(self, client, **kw):
        kw.setdefault("backoff_base", 1.0)
        kw.setdefault("backoff_max", 60.0)
        return BatchUploadCoordinator(client, clock=lambda: self.now, **kw)

    def _advance(self, seconds=120):
        self.now = self.now + dt.timedelta(seconds=seconds)

    def _offline_sale(self, temp_id):
        with pos_store.transaction(self.conn):
            local_id = pos_store.insert_entity(self.conn, "sale", {"items": [{"sku": "A"}]}, temp_id=temp_id)
            sync_queue.enqueue(self.conn, "CREATE", "sale", local_id, {"temp_id": temp_id},
                               endpoint="/sales", method="POST")
        return local_id

    def test_offline_create_gets_server_id(self):
        local_id = self._offline_sale("offline_1700000000_abc12")
        client = FakeBatchClient(lambda op: {"status": "success", "serverId": 42})
        result = self._coordinator(client).run_once(self.conn)

        self.assertEqual((result.total, result.succeeded, result.failed), (1, 1, 0))
        sale = pos_store.get_entity(self.conn, "sale", local_id)
        self.assertTrue(sale["is_synced"])
        self.assertEqual(sale["server_id"], 42)
        self.assertIsNotNone(sale["last_synced_utc"])
        item = sync_queue.get_by_entity(self.conn, "sale", local_id)[0]
        self.assertEqual(item["status"], "completed")
        self.assertEqual(pos_store.resolve_entity(self.conn, "sale", "42")["id"], local_id)
        self.assertEqual(pos_store.resolve_entity(self.conn, "sale", "offline_1700000000_abc12")["id"], local_id)
        op = client.calls[0][0]
        self.assertEqual((op["entity"], op["action"], op["temp_id"]), ("sale", "create", "offline_1700000000_abc12"))
        self.assertIsNotNone(pos_store.state_get(self.conn, "last_upload_utc"))

    def test_five_transient_failures_then_explicit_retry(self):
        local_id = self._offline_sale("offline_1_x")
        client = FakeBatchClient(error=TransientSyncError("connection refused"))
        coordinator = self._coordinator(client)
        for _ in range(5):
            coordinator.run_once(self.conn)
            self._advance()
        item = sync_queue.get_by_entity(self.conn, "sale", local_id)[0]
        self.assertEqual((item["attempts"], item["status"]), (5, "failed"))
        self.assertEqual(len(client.calls), 5)
        self.assertEqual(pos_store.get_entity(self.conn, "sale", local_id)["sync_error"], "connection refused")

        coordinator.run_once(self.conn)
        self.assertEqual(len(client.calls), 5)

        sync_queue.retry(self.conn, item["id"])
        client.error = None
        coordinator.run_once(self.conn)
        self.assertEqual(len(client.calls), 6)
        self.assertEqual(sync_queue.get_item(self.conn, item["id"])["status"], "completed")
        # the key never changes across attempts
        keys = {call[0]["idempotency_key"] for call in client.calls}
        self.assertEqual(keys, {item["idempotency_key"]})

    def test_backoff_holds_item_until_due(self):
        self._offline_sale("offline_1_y")
        client = FakeBatchClient(error=TransientSyncError("timeout"))
        coordinator = self._coordinator(client, backoff_base=10.0)
        coordinator.run_once(self.conn)
        coordinator.run_once(self.conn)
        self.assertEqual(len(client.calls), 1)
        self._advance(11)
        coordinator.run_once(self.conn)
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(coordinator.backoff_delay(10), 60.0)

    def test_partial_batch_failure_is_isolated(self):
        first = self._offline_sale("offline_a")
        second = self._offline_sale("offline_b")
        third = self._offline_sale("offline_c")

        def handler(op):
            if op["temp_id"] == "offline_b":
                return {"status": "conflict", "message": "Sale already closed on server"}
            return {"status": "success", "server_id": 500 + int(op["local_id"])}

        result = self._coordinator(FakeBatchClient(handler)).run_once(self.conn)
        self.assertEqual((result.succeeded, result.conflicts, result.failed), (2, 1, 1))
        for local_id in (first, third):
            self.assertTrue(pos_store.get_entity(self.conn, "sale", local_id)["is_synced"])
            self.assertEqual(sync_queue.get_by_entity(self.conn, "sale", local_id)[0]["status"], "completed")
        failed = sync_queue.get_by_entity(self.conn, "sale", second)[0]
        self.assertEqual((failed["status"], failed["error_code"]), ("failed", "conflict"))
        self.assertEqual(failed["error"], "Sale already closed on server")
        row = pos_store.get_entity(self.conn, "sale", second)
        self.assertFalse(row["is_synced"])
        self.assertEqual(row["sync_error"], "Sale already closed on server")

    def test_local_failure_mid_batch_hands_rest_back(self):
        first = self._offline_sale("offline_a")
        second = self._offline_sale("offline_b")
        third = self._offline_sale("offline_c")

        class Broken(BatchUploadCoordinator):
            def _apply_error(self, conn, item, outcome, result):
                raise RuntimeError("disk full")

        def handler(op):
            if op["temp_id"] == "offline_b":
                return {"status": "error", "error": "bad"}
            return {"status": "success", "server_id": 500 + int(op["local_id"])}

        coordinator = Broken(FakeBatchClient(handler), clock=lambda: self.now)
        with self.assertRaises(RuntimeError):
            coordinator.run_once(self.conn)
        self.assertFalse(coordinator.busy)
        statuses = [sync_queue.get_by_entity(self.conn, "sale", i)[0]["status"] for i in (first, second, third)]
        self.assertEqual(statuses, ["completed", "pending", "pending"])

    def test_per_entity_order_create_before_update(self):
        row = pos_records.create_entity(self.conn, "party", {"name": "A"})
        pos_records.update_entity(self.conn, "party", row["id"], {"name": "B"})
        client = FakeBatchClient(lambda op: {"status": "success", "server_id": 42, "version": 1})
        result = self._coordinator(client).run_once(self.conn)

        self.assertEqual(result.batches, 2)
        self.assertEqual([op["operation"] for op in client.calls[0]], ["CREATE"])
        self.assertEqual([op["operation"] for op in client.calls[1]], ["UPDATE"])
        self.assertEqual(client.calls[1][0]["server_id"], 42)
        self.assertTrue(pos_store.get_entity(self.conn, "party", row["id"])["is_synced"])

    def test_entity_stays_unsynced_while_later_write_is_queued(self):
        row = pos_records.create_entity(self.conn, "party", {"name": "A"})
        pos_records.update_entity(self.conn, "party", row["id"], {"name": "B"})

        def handler(op):
            if op["operation"] == "UPDATE":
                return {"status": "error", "error": "busy", "retryable": True}
            return {"status": "success", "server_id": 7}

        self._coordinator(FakeBatchClient(handler)).run_once(self.conn)
        stored = pos_store.get_entity(self.conn, "party", row["id"])
        self.assertEqual(stored["server_id"], 7)
        self.assertFalse(stored["is_synced"])
        update = sync_queue.get_by_entity(self.conn, "party", row["id"])[1]
        self.assertEqual((update["status"], update["attempts"]), ("pending", 1))

    def test_permanent_error_fails_immediately(self):
        row = pos_records.create_entity(self.conn, "cheque", {"amount": -1})
        client = FakeBatchClient(lambda op: {"status": "error", "error": "amount must be positive",
                                             "error_code": "validation"})
        result = self._coordinator(client).run_once(self.conn)
        self.assertEqual(result.failed, 1)
        item = sync_queue.get_by_entity(self.conn, "cheque", row["id"])[0]
        self.assertEqual((item["status"], item["attempts"], item["error_code"]), ("failed", 1, "validation"))
        self.assertEqual(pos_store.get_entity(self.conn, "cheque", row["id"])["sync_error"], "amount must be positive")

    def test_missing_result_is_retried(self):
        row = pos_records.create_entity(self.conn, "party", {"name": "A"})
        result = self._coordinator(FakeBatchClient(lambda op: None)).run_once(self.conn)
        self.assertEqual(result.retried, 1)
        item = sync_queue.get_by_entity(self.conn, "party", row["id"])[0]
        self.assertEqual((item["status"], item["attempts"]), ("pending", 1))
        self.assertIsNotNone(item["next_retry_utc"])

    def test_pass_in_flight_is_not_reentered(self):
        self._offline_sale("offline_busy")
        client = FakeBatchClient()
        coordinator = self._coordinator(client)
        coordinator._lock.acquire()
        try:
            self.assertIsNone(coordinator.run_once(self.conn))
        finally:
            coordinator._lock.release()
        self.assertEqual(client.calls, [])
        self.assertEqual(sync_queue.count_by_status(self.conn)["pending"], 1)

    def test_final_invoice_number_updates_printed_receipt(self):
        sale = pos_records.record_offline_sale(self.conn, {"items": [{"sku": "A"}]}, "TILL-1")
        receipt = printed_receipts.record_printed(self.conn, sale["id"], sale["invoice_number"])
        client = FakeBatchClient(lambda op: {"status": "created", "server_id": 9, "invoice_number": "INV-0009"})
        self._coordinator(client).run_once(self.conn)
        stored = pos_store.get_entity(self.conn, "sale", sale["id"])
        self.assertEqual(stored["invoice_number"], "INV-0009")
        updated = printed_receipts.get_receipt(self.conn, receipt["id"])
        self.assertEqual((updated["status"], updated["final_invoice_number"]), ("updated", "INV-0009"))

    def test_stock_discrepancy_is_recorded_without_rollback(self):
        pos_store.upsert_remote(self.conn, "product", {"id": 3, "stock_qty": 5})
        adj = pos_records.record_stock_adjustment(self.conn, 3, -1)
        client = FakeBatchClient(lambda op: {
            "status": "success", "server_id": 88,
            "warnings": [{"type": "stock_discrepancy", "product_id": 3, "available": 2, "action": "applied"}],
        })
        result = self._coordinator(client).run_once(self.conn)
        self.assertEqual(result.succeeded, 1)
        stored = pos_store.get_entity(self.conn, "stockAdjustment", adj["id"])
        self.assertTrue(stored["is_synced"])
        entry = stored["discrepancies"][0]
        self.assertEqual((entry["expected"], entry["actual"], entry["difference"]), (5.0, 2, -3.0))
        self.assertEqual(len(result.warnings), 1)

    def test_delete_success_removes_row(self):
        row = pos_records.create_entity(self.conn, "party", {"name": "A"})
        coordinator = self._coordinator(FakeBatchClient(lambda op: {"status": "success", "server_id": 4}))
        coordinator.run_once(self.conn)
        pos_records.delete_entity(self.conn, "party", row["id"])
        coordinator.run_once(self.conn)
        self.assertIsNone(pos_store.get_entity(self.conn, "party", row["id"]))
        statuses = [i["status"] for i in sync_queue.get_by_entity(self.conn, "party", row["id"])]
        self.assertEqual(statuses, ["completed", "completed"])

    def test_repeated_conflict_spends_attempts_and_backs_off(self):
        pos_store.upsert_remote(self.conn, "product", {"id": 3, "stock_qty": 5})
        adj = pos_records.record_stock_adjustment(self.conn, 3, -2)
        client = FakeBatchClient(lambda op: {"status": "conflict", "message": "Stock changed",
                                             "conflict_data": {"current_quantity": 8}})
        coordinator = self._coordinator(client)

        result = coordinator.run_once(self.conn)
        self.assertEqual((len(client.calls), result.conflicts), (1, 1))
        head = sync_queue.next_batch(self.conn, 10, self.now + dt.timedelta(seconds=2))[0]
        self.assertEqual(head["attempts"], 1)
        self.assertIsNotNone(head["next_retry_utc"])

        for _ in range(6):
            self._advance()
            coordinator.run_once(self.conn)
        self.assertEqual(len(client.calls), 5)
        counts = sync_queue.count_by_status(self.conn)
        self.assertEqual((counts["pending"], counts["completed"], counts["failed"]), (0, 4, 1))
        last = sync_queue.get_by_entity(self.conn, "stockAdjustment", adj["id"])[-1]
        self.assertEqual((last["status"], last["attempts"], last["error_code"]), ("failed", 5, "conflict"))
        self.assertIn("Stock changed", last["error"])
        self.assertEqual(pos_store.get_product_stock(self.conn, 3)[1], 8.0)

    def test_update_waits_behind_failed_create(self):
        row = pos_records.create_entity(self.conn, "party", {"name": "A"})
        client = FakeBatchClient(lambda op: {"status": "error", "error": "bad name", "error_code": "validation"})
        coordinator = self._coordinator(client)
        coordinator.run_once(self.conn)
        pos_records.update_entity(self.conn, "party", row["id"], {"name": "B"})

        client.handler = lambda op: {"status": "success", "server_id": 42, "version": 1}
        coordinator.run_once(self.conn)
        self.assertEqual(len(client.calls), 1)
        create, update = sync_queue.get_by_entity(self.conn, "party", row["id"])
        self.assertEqual((update["status"], update["error_code"]), ("failed", "blocked"))

        sync_queue.retry(self.conn, create["id"])
        coordinator.run_once(self.conn)
        self.assertEqual([[op["operation"] for op in call] for call in client.calls[1:]], [["CREATE"], ["UPDATE"]])
        self.assertEqual(client.calls[2][0]["server_id"], 42)

    def test_lost_create_response_then_pull_keeps_one_row(self):
        row = pos_records.create_entity(self.conn, "party", {"name": "Ann"})
        client = FakeBatchClient(error=TransientSyncError("read timed out"))
        coordinator = self._coordinator(client)
        coordinator.run_once(self.conn)

        # the server did commit the create and now serves it back
        remote = {"id": 7, "temp_id": row["temp_id"], "name": "Ann", "version": 1}
        puller = IncrementalPuller(FakeChangesClient([page_of("parties", created=[remote])]), domains=("parties",))
        pulled = puller.pull(self.conn).domains["parties"]
        self.assertEqual((pulled.created, pulled.deferred), (0, 1))
        self.assertEqual(len(pos_store.list_entities(self.conn, "party")), 1)

        client.error = None
        client.handler = lambda op: {"status": "success", "server_id": 7, "version": 1}
        self._advance()
        result = coordinator.run_once(self.conn)
        self.assertEqual(result.succeeded, 1)
        self.assertEqual(sync_queue.get_by_entity(self.conn, "party", row["id"])[0]["status"], "completed")

        self.assertEqual(puller.pull(self.conn).replayed, 1)
        rows = pos_store.list_entities(self.conn, "party")
        self.assertEqual([(r["id"], r["server_id"]) for r in rows], [(row["id"], 7)])

    def test_success_folds_in_row_pulled_under_same_server_id(self):
        row = pos_records.create_entity(self.conn, "party", {"name": "Ann"})
        _, pulled_id = pos_store.upsert_remote(self.conn, "party", {"id": 7, "name": "Ann"})
        client = FakeBatchClient(lambda op: {"status": "success", "server_id": 7})
        result = self._coordinator(client).run_once(self.conn)

        self.assertEqual(result.succeeded, 1)
        self.assertIsNone(pos_store.get_entity(self.conn, "party", pulled_id))
        self.assertEqual(pos_store.find_by_server_id(self.conn, "party", 7)["id"], row["id"])
        self.assertEqual(sync_queue.count_by_status(self.conn)["completed"], 1)


if __name__ == "__main__":
    unittest.main()
