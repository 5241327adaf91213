import logging
import sqlite3
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

import pos_records
import pos_store
import printed_receipts
import sync_puller
import sync_queue
import sync_resolver
from sync_engine import SyncEngine


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError('Request body must be a JSON object')
    return payload


def _truthy(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in ('1', 'true', 'yes')


def _entity_view(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    view = dict(row)
    view['sync_state'] = 'error' if row.get('sync_error') else ('synced' if row.get('is_synced') else 'pending')
    return view


def create_app(engine: SyncEngine) -> Flask:
    """Local JSON surface over the sync engine, its queue and the mutation API."""
    app = Flask(__name__)
    app.config['SYNC_ENGINE'] = engine
    level = getattr(logging, (engine.settings.log_level or 'INFO').upper(), logging.INFO)
    app.logger.setLevel(level)
    max_attempts = engine.settings.max_attempts

    def _resolve(conn: sqlite3.Connection, entity: str, key: str) -> Dict[str, Any]:
        row = pos_store.resolve_entity(conn, entity, key)
        if row is None or row['is_deleted']:
            raise LookupError(f'{entity} {key} not found')
        return row

    @app.errorhandler(ValueError)
    def handle_value_error(exc):
        return jsonify({'status': 'error', 'message': str(exc)}), 400

    @app.errorhandler(LookupError)
    def handle_lookup_error(exc):
        message = exc.args[0] if exc.args else str(exc)
        return jsonify({'status': 'error', 'message': message}), 404

    @app.errorhandler(sqlite3.Error)
    def handle_db_error(exc):
        app.logger.exception("Local database error: %s", exc)
        return jsonify({'status': 'error', 'message': 'Local database error'}), 500

    # ---------- sync status & recovery ----------
    @app.route('/api/sync/status')
    def api_sync_status():
        return jsonify({'status': 'success', 'sync': engine.status()})

    @app.route('/api/sync/queue')
    def api_sync_queue():
        status = request.args.get('status') or None
        try:
            limit = int(request.args.get('limit', '100'))
        except ValueError:
            raise ValueError('limit must be an integer') from None
        with engine.session() as conn:
            items = sync_queue.list_items(conn, status=status, limit=limit)
        return jsonify({'status': 'success', 'items': items})

    @app.route('/api/sync/queue/<int:item_id>/retry', methods=['POST'])
    def api_sync_retry(item_id):
        with engine.session() as conn:
            reset = sync_queue.retry(conn, item_id)
            item = sync_queue.get_item(conn, item_id)
        if reset:
            engine.notify_enqueued()
        return jsonify({'status': 'success', 'reset': reset, 'item': item})

    @app.route('/api/sync/retry-all', methods=['POST'])
    def api_sync_retry_all():
        with engine.session() as conn:
            count = sync_queue.retry_all(conn)
        if count:
            engine.notify_enqueued()
        app.logger.info("Retry requested for %s failed item(s)", count)
        return jsonify({'status': 'success', 'reset': count})

    @app.route('/api/sync/queue/<int:item_id>/resolve', methods=['POST'])
    def api_sync_resolve(item_id):
        strategy = _json_body().get('strategy')
        if not strategy:
            raise ValueError('Missing strategy')
        with engine.session() as conn:
            outcome = sync_resolver.resolve_manually(conn, item_id, strategy)
        engine.notify_enqueued()
        return jsonify({'status': 'success', 'resolution': outcome})

    @app.route('/api/sync/run', methods=['POST'])
    def api_sync_run():
        """Run an upload pass now; add {"pull": true} to pull as well."""
        body = _json_body()
        upload = engine.upload_now()
        response: Dict[str, Any] = {
            'status': 'success',
            'upload': upload.as_dict() if upload is not None else 'busy',
        }
        if body.get('pull'):
            pulled = engine.pull_now()
            response['pull'] = pulled.as_dict() if pulled is not None else 'busy'
        return jsonify(response)

    @app.route('/api/sync/watermarks', methods=['DELETE'])
    @app.route('/api/sync/watermarks/<domain>', methods=['DELETE'])
    def api_sync_clear_watermarks(domain=None):
        with engine.session() as conn:
            cleared = sync_puller.clear_watermark(conn, domain)
        return jsonify({'status': 'success', 'cleared': cleared})

    # ---------- local entities ----------
    @app.route('/api/entities/<entity>', methods=['GET'])
    def api_entities_list(entity):
        unsynced = _truthy(request.args.get('unsynced'))
        with engine.session() as conn:
            rows = pos_store.list_entities(conn, entity, unsynced_only=unsynced)
        return jsonify({'status': 'success', 'items': [_entity_view(r) for r in rows]})

    @app.route('/api/entities/<entity>', methods=['POST'])
    def api_entities_create(entity):
        data = _json_body()
        if not data:
            raise ValueError('Missing entity data')
        with engine.session() as conn:
            row = pos_records.create_entity(conn, entity, data, max_attempts=max_attempts)
        engine.notify_enqueued()
        return jsonify({'status': 'success', 'item': _entity_view(row)}), 201

    @app.route('/api/entities/<entity>/<key>', methods=['GET'])
    def api_entities_get(entity, key):
        with engine.session() as conn:
            row = _resolve(conn, entity, key)
            queue = sync_queue.get_by_entity(conn, entity, row['id'])
        return jsonify({'status': 'success', 'item': _entity_view(row), 'queue': queue})

    @app.route('/api/entities/<entity>/<key>', methods=['PATCH'])
    def api_entities_update(entity, key):
        changes = _json_body()
        with engine.session() as conn:
            row = _resolve(conn, entity, key)
            updated = pos_records.update_entity(conn, entity, row['id'], changes, max_attempts=max_attempts)
        engine.notify_enqueued()
        return jsonify({'status': 'success', 'item': _entity_view(updated)})

    @app.route('/api/entities/<entity>/<key>', methods=['DELETE'])
    def api_entities_delete(entity, key):
        with engine.session() as conn:
            row = _resolve(conn, entity, key)
            item = pos_records.delete_entity(conn, entity, row['id'], max_attempts=max_attempts)
        if item is not None:
            engine.notify_enqueued()
        return jsonify({'status': 'success', 'queued': item is not None})

    # ---------- sales, stock, receipts ----------
    @app.route('/api/sales', methods=['POST'])
    def api_sales_create():
        sale = _json_body()
        with engine.session() as conn:
            row = pos_records.record_offline_sale(conn, sale, engine.device_id, max_attempts=max_attempts)
        engine.notify_enqueued()
        app.logger.info("Recorded offline sale %s (%s)", row['temp_id'], row['invoice_number'])
        return jsonify({'status': 'success', 'sale': _entity_view(row)}), 201

    @app.route('/api/stock-adjustments', methods=['POST'])
    def api_stock_adjustment():
        body = _json_body()
        product_id = body.get('product_id')
        if product_id in (None, ''):
            raise ValueError('Missing product_id')
        extra = {k: v for k, v in body.items() if k not in ('product_id', 'quantity_change', 'reason')}
        with engine.session() as conn:
            row = pos_records.record_stock_adjustment(
                conn, product_id, body.get('quantity_change'), reason=body.get('reason'),
                extra=extra, max_attempts=max_attempts,
            )
        engine.notify_enqueued()
        return jsonify({'status': 'success', 'adjustment': _entity_view(row)}), 201

    @app.route('/api/sales/<key>/printed', methods=['POST'])
    def api_sale_printed(key):
        body = _json_body()
        with engine.session() as conn:
            sale = _resolve(conn, 'sale', key)
            number = body.get('temp_invoice_number') or sale['invoice_number']
            receipt = printed_receipts.record_printed(conn, sale['id'], number)
        return jsonify({'status': 'success', 'receipt': receipt}), 201

    @app.route('/api/receipts/reprint')
    def api_receipts_reprint():
        with engine.session() as conn:
            receipts = printed_receipts.find_needing_reprint(conn)
        return jsonify({'status': 'success', 'receipts': receipts})

    @app.route('/api/receipts/<int:receipt_id>/reprinted', methods=['POST'])
    def api_receipt_reprinted(receipt_id):
        with engine.session() as conn:
            receipt = printed_receipts.mark_reprinted(conn, receipt_id)
        return jsonify({'status': 'success', 'receipt': receipt})

    return app
