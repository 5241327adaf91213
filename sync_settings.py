"""
Environment-driven configuration for the POS sync engine.

Env vars (all optional):
  POS_DB_PATH            SQLite DB path (default: pos.db)
  POS_SYNC_API_BASE      Remote backend base URL, e.g. https://api.example.com/api/v1
  POS_SYNC_API_KEY       API key (sent as "token key:secret")
  POS_SYNC_API_SECRET    API secret
  POS_DEVICE_ID          Device id; generated and stored in the DB when unset
  POS_DEVICE_NAME        Name sent when registering the device (default: "POS - <platform>")
  POS_SYNC_BATCH_SIZE    Queue items per batch request (default: 50)
  POS_SYNC_MAX_ATTEMPTS  Attempts before a queue item fails (default: 5)
  POS_SYNC_BACKOFF_BASE  Backoff base in seconds (default: 1.0)
  POS_SYNC_BACKOFF_MAX   Backoff cap in seconds (default: 60.0)
  SYNC_INTERVAL          Seconds between upload passes (default: 10)
  POS_PULL_INTERVAL      Seconds between delta pulls (default: 300)
  POS_SYNC_TIMEOUT       HTTP timeout in seconds (default: 30)
  POS_PULL_DOMAINS       Comma separated remote domains (default: products,categories,parties)
  POS_LOG_LEVEL          Logging level name (default: INFO)
"""
import logging
import os
from typing import NamedTuple, Optional, Tuple

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
DEFAULT_PULL_DOMAINS = ("products", "categories", "parties")


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_int(name: str, default: int) -> int:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class SyncSettings(NamedTuple):
    db_path: str = "pos.db"
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    batch_size: int = 50
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    upload_interval: float = 10.0
    pull_interval: float = 300.0
    request_timeout: float = 30.0
    pull_domains: Tuple[str, ...] = DEFAULT_PULL_DOMAINS
    log_level: str = "INFO"


def load_settings(env_file: Optional[str] = None) -> SyncSettings:
    """Build settings from the process environment (and a .env file if present)."""
    load_dotenv(env_file)
    domains_raw = _env_string("POS_PULL_DOMAINS")
    if domains_raw:
        domains = tuple(d.strip() for d in domains_raw.split(",") if d.strip())
    else:
        domains = DEFAULT_PULL_DOMAINS
    return SyncSettings(
        db_path=_env_string("POS_DB_PATH", "pos.db"),
        api_base=_env_string("POS_SYNC_API_BASE"),
        api_key=_env_string("POS_SYNC_API_KEY"),
        api_secret=_env_string("POS_SYNC_API_SECRET"),
        device_id=_env_string("POS_DEVICE_ID"),
        device_name=_env_string("POS_DEVICE_NAME"),
        batch_size=max(1, _env_int("POS_SYNC_BATCH_SIZE", 50)),
        max_attempts=max(1, _env_int("POS_SYNC_MAX_ATTEMPTS", 5)),
        backoff_base=_env_float("POS_SYNC_BACKOFF_BASE", 1.0),
        backoff_max=_env_float("POS_SYNC_BACKOFF_MAX", 60.0),
        upload_interval=_env_float("SYNC_INTERVAL", 10.0),
        pull_interval=_env_float("POS_PULL_INTERVAL", 300.0),
        request_timeout=_env_float("POS_SYNC_TIMEOUT", 30.0),
        pull_domains=domains,
        log_level=(_env_string("POS_LOG_LEVEL", "INFO") or "INFO").upper(),
    )


def configure_logging(level_name: str = "INFO") -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("werkzeug").setLevel(level)
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
