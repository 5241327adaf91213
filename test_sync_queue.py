import datetime as dt
import re
import sqlite3
import unittest

import pos_store
import sync_queue


class SyncQueueTest(unittest.TestCase):
    def setUp(self):
        self.conn = pos_store.connect(":memory:")
        self.now = dt.datetime.now(dt.timezone.utc)

    def tearDown(self):
        self.conn.close()

    def _enqueue(self, entity="sale", entity_id=1, operation="CREATE", **kw):
        return sync_queue.enqueue(
            self.conn, operation, entity, entity_id, {"n": entity_id},
            endpoint="/sales", method="POST", **kw,
        )

    def test_enqueue_defaults_and_key_format(self):
        item = self._enqueue()
        self.assertEqual(item["status"], "pending")
        self.assertEqual(item["attempts"], 0)
        self.assertEqual(item["max_attempts"], 5)
        self.assertEqual(item["payload"], {"n": 1})
        self.assertRegex(item["idempotency_key"], r"^sale_create_\d{13}_[a-z0-9]{6}$")

    def test_keys_are_distinct_for_distinct_operations(self):
        keys = {self._enqueue(entity_id=i)["idempotency_key"] for i in range(20)}
        self.assertEqual(len(keys), 20)

    def test_caller_supplied_key_is_kept_and_unique(self):
        item = self._enqueue(idempotency_key="fixed-key")
        self.assertEqual(item["idempotency_key"], "fixed-key")
        with self.assertRaises(sqlite3.IntegrityError):
            self._enqueue(entity_id=2, idempotency_key="fixed-key")

    def test_rejects_unknown_operation(self):
        with self.assertRaises(ValueError):
            self._enqueue(operation="UPSERT")

    def test_dequeue_pending_is_fifo(self):
        first = self._enqueue(entity_id=1, created_utc="2024-01-01T00:00:02.000000Z")
        second = self._enqueue(entity_id=2, created_utc="2024-01-01T00:00:01.000000Z")
        third = self._enqueue(entity_id=3, created_utc="2024-01-01T00:00:02.000000Z")
        ids = [i["id"] for i in sync_queue.dequeue_pending(self.conn)]
        self.assertEqual(ids, [second["id"], first["id"], third["id"]])
        self.assertEqual(len(sync_queue.dequeue_pending(self.conn, limit=2)), 2)

    def test_next_batch_keeps_one_item_per_entity(self):
        create = self._enqueue(entity_id=7, operation="CREATE")
        update = self._enqueue(entity_id=7, operation="UPDATE")
        other = self._enqueue(entity_id=8)
        batch = sync_queue.next_batch(self.conn, 10, self.now)
        self.assertEqual([i["id"] for i in batch], [create["id"], other["id"]])

        sync_queue.claim_batch(self.conn, 10, self.now)
        # create still processing: the update must wait
        self.assertEqual(sync_queue.next_batch(self.conn, 10, self.now), [])
        sync_queue.mark_completed(self.conn, create["id"], server_id=42)
        self.assertEqual([i["id"] for i in sync_queue.next_batch(self.conn, 10, self.now)], [update["id"]])

    def test_next_batch_respects_backoff_gate(self):
        item = self._enqueue()
        sync_queue.mark_failed(self.conn, item["id"], "timeout", retry_delay=30, now=self.now)
        self.assertEqual(sync_queue.next_batch(self.conn, 10, self.now), [])
        self.assertEqual(sync_queue.dequeue_pending(self.conn, now=self.now), [])
        later = self.now + dt.timedelta(seconds=31)
        self.assertEqual(len(sync_queue.next_batch(self.conn, 10, later)), 1)

    def test_transient_failures_exhaust_attempts(self):
        item = self._enqueue(max_attempts=3)
        self.assertEqual(sync_queue.mark_failed(self.conn, item["id"], "boom"), "pending")
        self.assertEqual(sync_queue.mark_failed(self.conn, item["id"], "boom"), "pending")
        self.assertEqual(sync_queue.mark_failed(self.conn, item["id"], "boom"), "failed")
        stored = sync_queue.get_item(self.conn, item["id"])
        self.assertEqual(stored["attempts"], 3)
        self.assertEqual(stored["error"], "boom")
        self.assertIsNotNone(stored["last_attempt_utc"])

    def test_permanent_failure_blocks_later_items_until_retry(self):
        create = self._enqueue(entity_id=5, operation="CREATE")
        update = self._enqueue(entity_id=5, operation="UPDATE")
        status = sync_queue.mark_failed(self.conn, create["id"], "invalid", permanent=True, error_code="validation")
        self.assertEqual(status, "failed")
        self.assertEqual(sync_queue.get_item(self.conn, create["id"])["attempts"], 1)
        blocked = sync_queue.get_item(self.conn, update["id"])
        self.assertEqual(blocked["status"], "failed")
        self.assertEqual(blocked["error_code"], "blocked")

        self.assertTrue(sync_queue.retry(self.conn, create["id"]))
        reset = sync_queue.get_item(self.conn, create["id"])
        self.assertEqual((reset["status"], reset["attempts"], reset["error"]), ("pending", 0, None))
        self.assertEqual(reset["idempotency_key"], create["idempotency_key"])
        self.assertEqual(sync_queue.get_item(self.conn, update["id"])["status"], "pending")

    def test_item_queued_behind_failed_operation_starts_blocked(self):
        create = self._enqueue(entity_id=6, operation="CREATE")
        sync_queue.mark_failed(self.conn, create["id"], "invalid", permanent=True)
        update = self._enqueue(entity_id=6, operation="UPDATE")
        self.assertEqual((update["status"], update["error_code"]), ("failed", "blocked"))
        self.assertIn(create["idempotency_key"], update["error"])
        self.assertEqual(sync_queue.next_batch(self.conn, 10, self.now), [])

        # a blocked item retried on its own still waits for the failed head
        self.assertTrue(sync_queue.retry(self.conn, update["id"]))
        self.assertEqual(sync_queue.next_batch(self.conn, 10, self.now), [])

        sync_queue.retry(self.conn, create["id"])
        self.assertEqual([i["id"] for i in sync_queue.next_batch(self.conn, 10, self.now)], [create["id"]])
        sync_queue.mark_completed(self.conn, create["id"], server_id=3)
        self.assertEqual([i["id"] for i in sync_queue.next_batch(self.conn, 10, self.now)], [update["id"]])

    def test_enqueue_carries_attempts_and_backoff(self):
        item = self._enqueue(attempts=2, retry_delay=30, now=self.now)
        self.assertEqual((item["status"], item["attempts"]), ("pending", 2))
        self.assertIsNotNone(item["next_retry_utc"])
        self.assertEqual(sync_queue.next_batch(self.conn, 10, self.now), [])
        later = self.now + dt.timedelta(seconds=31)
        self.assertEqual([i["id"] for i in sync_queue.next_batch(self.conn, 10, later)], [item["id"]])

    def test_retry_ignores_items_that_are_not_failed(self):
        item = self._enqueue()
        self.assertFalse(sync_queue.retry(self.conn, item["id"]))
        with self.assertRaises(LookupError):
            sync_queue.retry(self.conn, 999)

    def test_retry_all_and_counts(self):
        a = self._enqueue(entity_id=1)
        b = self._enqueue(entity_id=2)
        self._enqueue(entity_id=3)
        sync_queue.mark_failed(self.conn, a["id"], "x", permanent=True)
        sync_queue.mark_failed(self.conn, b["id"], "y", permanent=True)
        self.assertEqual(sync_queue.count_by_status(self.conn)["failed"], 2)
        self.assertEqual(len(sync_queue.get_failed(self.conn)), 2)
        self.assertEqual(sync_queue.retry_all(self.conn), 2)
        self.assertEqual(sync_queue.count_by_status(self.conn),
                         {"pending": 3, "processing": 0, "completed": 0, "failed": 0})

    def test_recover_processing_after_crash(self):
        item = self._enqueue()
        sync_queue.claim_batch(self.conn, 10, self.now)
        self.assertEqual(sync_queue.get_item(self.conn, item["id"])["status"], "processing")
        self.assertEqual(sync_queue.recover_processing(self.conn), 1)
        self.assertEqual(sync_queue.get_item(self.conn, item["id"])["status"], "pending")

    def test_clear_completed_and_entity_lookup(self):
        item = self._enqueue(entity_id=4)
        self._enqueue(entity_id=4, operation="UPDATE")
        self.assertTrue(sync_queue.has_open_items(self.conn, "sale", 4))
        self.assertEqual(len(sync_queue.get_by_entity(self.conn, "sale", 4)), 2)
        sync_queue.mark_completed(self.conn, item["id"])
        self.assertEqual(sync_queue.clear_completed(self.conn), 1)
        self.assertEqual(len(sync_queue.list_items(self.conn)), 1)
        with self.assertRaises(ValueError):
            sync_queue.list_items(self.conn, status="bogus")

    def test_enqueue_rolls_back_with_outer_transaction(self):
        with self.assertRaises(RuntimeError):
            with pos_store.transaction(self.conn):
                self._enqueue()
                raise RuntimeError("disk full")
        self.assertEqual(sync_queue.list_items(self.conn), [])


if __name__ == "__main__":
    unittest.main()
