import os
import tempfile
import unittest

import pos_store
import sync_queue
from pos_server import create_app
from sync_client import normalize_batch_results
from sync_engine import SyncEngine
from sync_settings import SyncSettings


class FakeBackend:
    is_configured = True
    last_server_timestamp = None

    def __init__(self):
        self.batches = []

    def is_reachable(self):
        return True

    def batch_sync(self, operations):
        self.batches.append(operations)
        return normalize_batch_results([
            {"idempotency_key": op["idempotency_key"], "status": "success",
             "server_id": 700 + int(op["local_id"]), "invoice_number": "INV-%s" % op["local_id"]}
            for op in operations
        ])

    def get_changes(self, domain, since=None):
        raise AssertionError("no pulls expected")


class PosServerTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        settings = SyncSettings(db_path=os.path.join(self.tmp.name, "pos.db"), device_id="TILL-1",
                                api_base="https://backend.test", pull_domains=())
        self.backend = FakeBackend()
        self.engine = SyncEngine(settings, client=self.backend)
        self.app = create_app(self.engine)
        self.client = self.app.test_client()

    def tearDown(self):
        self.tmp.cleanup()

    def test_create_and_fetch_entity_by_temp_id(self):
        resp = self.client.post('/api/entities/party', json={'name': 'Ann'})
        self.assertEqual(resp.status_code, 201)
        item = resp.get_json()['item']
        self.assertEqual(item['sync_state'], 'pending')

        resp = self.client.get(f"/api/entities/party/{item['temp_id']}")
        body = resp.get_json()
        self.assertEqual(body['item']['id'], item['id'])
        self.assertEqual(body['queue'][0]['operation'], 'CREATE')

        resp = self.client.patch(f"/api/entities/party/{item['temp_id']}", json={'phone': '555'})
        self.assertEqual(resp.get_json()['item']['data']['phone'], '555')

        listing = self.client.get('/api/entities/party?unsynced=1').get_json()
        self.assertEqual(len(listing['items']), 1)

    def test_validation_and_lookup_errors(self):
        self.assertEqual(self.client.post('/api/entities/party', json={}).status_code, 400)
        self.assertEqual(self.client.post('/api/entities/invoice', json={'x': 1}).status_code, 404)
        self.assertEqual(self.client.get('/api/entities/party/offline_missing').status_code, 404)
        self.assertEqual(self.client.post('/api/sales', json={'items': []}).status_code, 400)
        resp = self.client.post('/api/stock-adjustments', json={'product_id': 5, 'quantity_change': 1})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()['status'], 'error')

    def test_sale_upload_and_receipt_reprint_flow(self):
        resp = self.client.post('/api/sales', json={'items': [{'sku': 'A', 'qty': 1}]})
        self.assertEqual(resp.status_code, 201)
        sale = resp.get_json()['sale']
        self.assertTrue(sale['invoice_number'].startswith('OFF-TILL-1-'))

        resp = self.client.post(f"/api/sales/{sale['temp_id']}/printed", json={})
        receipt = resp.get_json()['receipt']
        self.assertEqual(receipt['temp_invoice_number'], sale['invoice_number'])

        run = self.client.post('/api/sync/run', json={}).get_json()
        self.assertEqual(run['upload']['succeeded'], 1)
        self.assertNotIn('pull', run)

        by_server = self.client.get(f"/api/entities/sale/{700 + sale['id']}").get_json()
        self.assertEqual(by_server['item']['sync_state'], 'synced')

        reprint = self.client.get('/api/receipts/reprint').get_json()['receipts']
        self.assertEqual(reprint[0]['final_invoice_number'], f"INV-{sale['id']}")
        self.assertEqual(reprint[0]['status'], 'updated')

        done = self.client.post(f"/api/receipts/{receipt['id']}/reprinted").get_json()
        self.assertEqual(done['receipt']['status'], 'reprinted')
        self.assertEqual(self.client.get('/api/receipts/reprint').get_json()['receipts'], [])

    def test_status_queue_and_recovery_endpoints(self):
        self.client.post('/api/entities/party', json={'name': 'Ann'})
        with self.engine.session() as conn:
            item = sync_queue.list_items(conn)[0]
            sync_queue.mark_failed(conn, item['id'], 'rejected', permanent=True)

        status = self.client.get('/api/sync/status').get_json()['sync']
        self.assertEqual((status['failed'], status['pending']), (1, 0))
        self.assertEqual(status['device_id'], 'TILL-1')

        failed = self.client.get('/api/sync/queue?status=failed').get_json()['items']
        self.assertEqual([i['id'] for i in failed], [item['id']])
        self.assertEqual(self.client.get('/api/sync/queue?status=bogus').status_code, 400)

        resp = self.client.post(f"/api/sync/queue/{item['id']}/retry").get_json()
        self.assertTrue(resp['reset'])
        self.assertEqual(resp['item']['status'], 'pending')

        with self.engine.session() as conn:
            sync_queue.mark_failed(conn, item['id'], 'rejected', permanent=True)
        self.assertEqual(self.client.post('/api/sync/retry-all').get_json()['reset'], 1)

        with self.engine.session() as conn:
            sync_queue.mark_failed(conn, item['id'], 'stale', permanent=True, error_code='conflict')
        resp = self.client.post(f"/api/sync/queue/{item['id']}/resolve", json={'strategy': 'discard'})
        self.assertEqual(resp.get_json()['resolution']['strategy'], 'discard')
        self.assertEqual(self.client.post(f"/api/sync/queue/{item['id']}/resolve", json={}).status_code, 400)

    def test_delete_and_watermark_endpoints(self):
        item = self.client.post('/api/entities/category', json={'name': 'Dairy'}).get_json()['item']
        resp = self.client.delete(f"/api/entities/category/{item['temp_id']}")
        self.assertEqual(resp.get_json(), {'status': 'success', 'queued': False})

        with self.engine.session() as conn:
            conn.execute(
                "INSERT INTO sync_watermarks (domain, watermark, updated_utc) VALUES ('products','T1',?)",
                (pos_store.iso_now(),),
            )
        self.assertEqual(self.client.delete('/api/sync/watermarks/products').get_json()['cleared'], 1)
        self.assertEqual(self.client.delete('/api/sync/watermarks').get_json()['cleared'], 0)


if __name__ == "__main__":
    unittest.main()
