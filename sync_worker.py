#!/usr/bin/env python3
"""
POS Sync Worker

Runs the sync driver without the HTTP surface, or performs one-shot
maintenance against the local database.

Modes:
  (default)           upload queued changes and pull remote deltas on a timer
  --once              one upload pass plus one pull, then exit
  --push / --pull     only that half, once
  --status            print the status snapshot as JSON
  --retry-all         put every failed queue item back to pending
  --clear-watermarks  forget pull progress (full resync on the next pull)

Env vars: see sync_settings.py (POS_DB_PATH, POS_SYNC_API_BASE, SYNC_INTERVAL, ...)

Run:
  python sync_worker.py
"""
import argparse
import json
import logging
import time

import sync_puller
import sync_queue
from sync_engine import SyncEngine
from sync_settings import configure_logging, load_settings

logger = logging.getLogger("sync_worker")


def run_forever(engine: SyncEngine):
    engine.start()
    try:
        while engine.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Exiting on Ctrl+C")
    finally:
        engine.stop()


def main(argv=None):
    ap = argparse.ArgumentParser(description="POS sync worker")
    ap.add_argument("--db", default=None, help="Path to SQLite DB (overrides POS_DB_PATH)")
    ap.add_argument("--once", action="store_true", help="Run one upload pass and one pull, then exit")
    ap.add_argument("--push", action="store_true", help="Run one upload pass")
    ap.add_argument("--pull", action="store_true", help="Run one pull")
    ap.add_argument("--status", action="store_true", help="Print sync status")
    ap.add_argument("--retry-all", action="store_true", help="Reset failed queue items to pending")
    ap.add_argument("--clear-watermarks", nargs="?", const="", default=None, metavar="DOMAIN",
                    help="Clear pull watermarks (all, or one domain)")
    args = ap.parse_args(argv)

    settings = load_settings()
    if args.db:
        settings = settings._replace(db_path=args.db)
    configure_logging(settings.log_level)
    engine = SyncEngine(settings)

    one_shot = False
    if args.retry_all:
        one_shot = True
        with engine.session() as conn:
            print("Reset", sync_queue.retry_all(conn), "failed item(s)")
    if args.clear_watermarks is not None:
        one_shot = True
        with engine.session() as conn:
            print("Cleared", sync_puller.clear_watermark(conn, args.clear_watermarks or None), "watermark(s)")
    if args.push or args.once:
        one_shot = True
        result = engine.upload_now()
        print(json.dumps(result.as_dict() if result else "busy", indent=2))
    if args.pull or args.once:
        one_shot = True
        result = engine.pull_now()
        print(json.dumps(result.as_dict() if result else "busy", indent=2))
    if args.status:
        one_shot = True
        print(json.dumps(engine.status(), indent=2, default=str))

    if not one_shot:
        logger.info("Starting sync worker (db=%s, interval=%ss)", settings.db_path, settings.upload_interval)
        run_forever(engine)


if __name__ == "__main__":
    main()
