#!/usr/bin/env python3
# Composition root for the sync engine: one coordinator, one puller, one driver thread
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

import pos_store
import sync_queue
import sync_status
from sync_client import SyncApiClient, SyncError
from sync_coordinator import BatchUploadCoordinator, UploadResult
from sync_puller import IncrementalPuller, PullResult
from sync_settings import SyncSettings

logger = logging.getLogger(__name__)


class SyncEngine:
    """Owns the sync components for the lifetime of the process.

    Built once by the entry point and handed to whoever needs it; each pass
    opens its own SQLite connection so the driver thread never shares one
    with request handlers.
    """

    def __init__(
        self,
        settings: SyncSettings,
        client: Optional[SyncApiClient] = None,
        connect: Optional[Callable[[], sqlite3.Connection]] = None,
    ):
        self.settings = settings
        self._connect = connect or (lambda: pos_store.connect(settings.db_path))
        with self.session() as conn:
            self.device_id = pos_store.device_id(conn, settings.device_id)
            self.registered = pos_store.state_get(conn, "device_registered_utc") is not None
        self.client = client or SyncApiClient(
            settings.api_base,
            api_key=settings.api_key,
            api_secret=settings.api_secret,
            device_id=self.device_id,
            timeout=settings.request_timeout,
        )
        self.coordinator = BatchUploadCoordinator(
            self.client,
            batch_size=settings.batch_size,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
        )
        self.puller = IncrementalPuller(self.client, domains=settings.pull_domains)
        self.online: Optional[bool] = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_pull: Optional[float] = None

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self):
        if self.running:
            return
        with self.session() as conn:
            sync_queue.recover_processing(conn)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sync-driver", daemon=True)
        self._thread.start()
        logger.info(
            "Sync driver started (device=%s, upload every %ss, pull every %ss)",
            self.device_id, self.settings.upload_interval, self.settings.pull_interval,
        )

    def stop(self, timeout: float = 10.0):
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sync driver stopped")

    def notify_enqueued(self):
        """Wake the driver so fresh local writes are uploaded without waiting for the timer."""
        self._wake.set()

    def upload_now(self) -> Optional[UploadResult]:
        with self.session() as conn:
            return self.coordinator.run_once(conn)

    def pull_now(self) -> Optional[PullResult]:
        with self.session() as conn:
            result = self.puller.pull(conn)
        self._last_pull = time.monotonic()
        return result

    def register_device(self) -> bool:
        """Register with the backend once; a failure is logged and retried on a later tick."""
        if self.registered:
            return True
        try:
            reply = self.client.register_device(self.settings.device_name)
        except SyncError as exc:
            logger.warning("Device registration failed: %s", exc)
            return False
        if reply.get("success") is False:
            logger.warning("Device registration rejected: %s", reply.get("message") or reply)
            return False
        with self.session() as conn:
            with pos_store.transaction(conn):
                pos_store.state_set(conn, "device_registered_utc", pos_store.iso_now())
        self.registered = True
        logger.info("Registered device %s", self.device_id)
        return True

    def status(self) -> Dict[str, Any]:
        with self.session() as conn:
            snapshot = sync_status.status_snapshot(conn)
        snapshot.update({
            "device_id": self.device_id,
            "online": self.online,
            "configured": self.client.is_configured,
            "running": self.running,
            "registered": self.registered,
            "uploading": self.coordinator.busy,
        })
        return snapshot

    def _loop(self):
        while not self._stop.is_set():
            self._wake.wait(self.settings.upload_interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self.tick()
            except Exception as exc:
                logger.exception("Sync cycle failed: %s", exc)

    def tick(self):
        """One driver cycle: register once, upload, then pull when the pull interval has elapsed."""
        if not self.client.is_configured:
            return
        self.online = self.client.is_reachable()
        if not self.online:
            # offline ticks must not burn retry attempts
            logger.debug("Sync backend unreachable; skipping cycle")
            return
        self.register_device()
        self.upload_now()
        due = self._last_pull is None or time.monotonic() - self._last_pull >= self.settings.pull_interval
        if due:
            self.pull_now()
