#!/usr/bin/env python3
# Remote sync API client: device registration, batch upload, delta/full pull, health, response normalization
import hashlib
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from pos_store import iso_now

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"success", "created", "updated", "deleted", "skipped", "ok"}
TRANSIENT_HTTP = {408, 425, 429}
TRANSIENT_ERROR_CODES = {"timeout", "unavailable", "rate_limited", "locked", "temporarily_unavailable"}
APP_NAME = "POS"
APP_VERSION = "0.1.0"


class SyncError(Exception):
    """Base error for remote sync failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientSyncError(SyncError):
    """Network trouble, timeouts, 5xx, throttling: worth retrying."""


class PermanentSyncError(SyncError):
    """The backend rejected the request; retrying the same payload will not help."""


@dataclass
class BatchItemResult:
    idempotency_key: str
    status: str
    server_id: Any = None
    invoice_number: Optional[str] = None
    version: Optional[int] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    discrepancies: List[Dict[str, Any]] = field(default_factory=list)
    conflict_data: Optional[Dict[str, Any]] = None


@dataclass
class DeltaPage:
    domain: str
    created: List[Dict[str, Any]] = field(default_factory=list)
    updated: List[Dict[str, Any]] = field(default_factory=list)
    deleted: List[Any] = field(default_factory=list)
    watermark: Optional[str] = None
    server_timestamp: Optional[str] = None
    has_more: bool = False


def _describe_response(resp: requests.Response) -> str:
    """Short description/body snippet for logging HTTP errors."""
    detail = ""
    try:
        body = resp.json()
        if isinstance(body, dict):
            detail = body.get("message") or body.get("error") or ""
    except ValueError:
        detail = ""
    if not detail:
        detail = (resp.text or "").strip() or (resp.reason or "")
    detail = str(detail).strip()
    if len(detail) > 400:
        detail = detail[:400] + "…"
    return f"HTTP {resp.status_code}: {detail}" if detail else f"HTTP {resp.status_code}"


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _normalize_discrepancies(raw: Any) -> List[Dict[str, Any]]:
    """`warnings` (list of typed entries) or a single `discrepancy` object."""
    if not raw:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    out = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        kind = entry.get("type")
        if kind and kind != "stock_discrepancy":
            continue
        out.append({
            "product_id": _first(entry, "product_id", "productId"),
            "expected": _first(entry, "expected", "expected_quantity", "expectedQuantity"),
            "available": _first(entry, "available", "actual", "actual_quantity", "actualQuantity"),
            "discrepancy": _first(entry, "discrepancy", "difference"),
            "action": entry.get("action"),
        })
    return out


def normalize_batch_results(body: Any) -> List[BatchItemResult]:
    """Per-item results from any of the batch response shapes the backend has used."""
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(body.get("results"), list):
            raw = body["results"]
        elif isinstance(data, dict) and isinstance(data.get("results"), list):
            raw = data["results"]
        elif isinstance(data, list):
            raw = data
        else:
            raise TransientSyncError("Batch response carries no results")
    elif isinstance(body, list):
        raw = body
    else:
        raise TransientSyncError("Unrecognised batch response")

    results = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        key = _first(entry, "idempotency_key", "idempotencyKey")
        if not key:
            continue
        raw_status = str(entry.get("status") or "").lower()
        if raw_status in SUCCESS_STATUSES:
            status = "success"
        elif raw_status == "conflict":
            status = "conflict"
        else:
            status = "error"
        conflict = _first(entry, "conflict_data", "conflictData", "server_data", "serverData")
        results.append(BatchItemResult(
            idempotency_key=str(key),
            status=status,
            server_id=_first(entry, "server_id", "serverId"),
            invoice_number=_first(entry, "invoice_number", "invoiceNumber"),
            version=_as_int(entry.get("version")),
            message=_first(entry, "error", "message"),
            error_code=_first(entry, "error_code", "errorCode"),
            retryable=_as_bool(entry.get("retryable")),
            discrepancies=_normalize_discrepancies(_first(entry, "warnings", "discrepancy", "discrepancies")),
            conflict_data=conflict if isinstance(conflict, dict) else None,
        ))
    return results


def normalize_changes_response(domain: str, body: Any) -> DeltaPage:
    """One domain's page out of a delta/full response.

    The domain payload may be {created, updated, deleted}, a bare list of
    records, or a paginated {data: [...]} envelope.
    """
    if not isinstance(body, dict):
        raise TransientSyncError("Unrecognised changes response")
    envelope = body.get("data") if isinstance(body.get("data"), dict) else body
    page = DeltaPage(domain=domain)
    page.server_timestamp = _first(envelope, "server_timestamp", "serverTimestamp") or _first(
        body, "server_timestamp", "serverTimestamp")
    page.watermark = _first(envelope, "sync_token", "syncToken") or _first(
        body, "sync_token", "syncToken") or page.server_timestamp
    page.has_more = _as_bool(_first(envelope, "has_more", "hasMore") or _first(body, "has_more", "hasMore"))

    payload = envelope.get(domain)
    if payload is None and isinstance(envelope.get("changes"), dict):
        payload = envelope["changes"].get(domain)
    if isinstance(payload, dict) and isinstance(payload.get("data"), list) and not (
            "created" in payload or "updated" in payload or "deleted" in payload):
        # paginated envelope
        if payload.get("has_more") or payload.get("hasMore"):
            page.has_more = True
        payload = payload["data"]
    if isinstance(payload, list):
        page.updated = [r for r in payload if isinstance(r, dict)]
    elif isinstance(payload, dict):
        page.created = [r for r in payload.get("created") or [] if isinstance(r, dict)]
        page.updated = [r for r in payload.get("updated") or [] if isinstance(r, dict)]
        page.deleted = list(payload.get("deleted") or [])
    return page


class SyncApiClient:
    """Thin requests-based client for the remote sync endpoints."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        device_id: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.device_id = device_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.last_server_timestamp: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key and self.api_secret:
            headers["Authorization"] = f"token {self.api_key}:{self.api_secret}"
        if self.device_id:
            headers["X-Device-ID"] = self.device_id
        headers.update(extra or {})
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Any:
        if not self.is_configured:
            raise TransientSyncError("Sync API base URL is not configured")
        url = self.base_url + path
        headers = self._headers(kwargs.pop("headers", None))
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise TransientSyncError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 500 or resp.status_code in TRANSIENT_HTTP:
            raise TransientSyncError(_describe_response(resp), resp.status_code)
        if resp.status_code >= 400:
            raise PermanentSyncError(_describe_response(resp), resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientSyncError(f"{method} {path} returned a non-JSON body") from exc

    def is_reachable(self) -> bool:
        if not self.is_configured:
            return False
        try:
            self._request("GET", "/sync/health")
            return True
        except SyncError as exc:
            logger.debug("Sync backend unreachable: %s", exc)
            return False

    def register_device(self, device_name: Optional[str] = None) -> Dict[str, Any]:
        """Announce this device to the backend; returns the server's reply."""
        body = {
            "device_id": self.device_id,
            "device_name": device_name or f"{APP_NAME} - {sys.platform}",
            "os": sys.platform,
            "app_version": APP_VERSION,
        }
        data = self._request("POST", "/sync/register", json=body)
        if isinstance(data, dict):
            return data
        return {"success": bool(data)}

    @staticmethod
    def batch_key(operations: List[Dict[str, Any]]) -> str:
        """Deterministic per batch so a replayed request carries the same header."""
        digest = hashlib.sha1("|".join(op["idempotency_key"] for op in operations).encode("utf-8"))
        return f"batch_{digest.hexdigest()[:16]}"

    def batch_sync(self, operations: List[Dict[str, Any]]) -> List[BatchItemResult]:
        body = {
            "operations": operations,
            "client_timestamp": iso_now(),
            "device_id": self.device_id,
        }
        data = self._request(
            "POST", "/sync/batch", json=body,
            headers={"X-Idempotency-Key": self.batch_key(operations)},
        )
        if isinstance(data, dict):
            self.last_server_timestamp = _first(data, "server_timestamp", "serverTimestamp")
        return normalize_batch_results(data)

    def get_changes(self, domain: str, since: Optional[str] = None) -> DeltaPage:
        """Delta since a watermark; no watermark means a full sync of the domain."""
        if since:
            data = self._request("GET", "/sync/changes", params={"since": since, "entities": domain})
        else:
            data = self._request("GET", "/sync/full", params={"entities": domain})
        return normalize_changes_response(domain, data)
