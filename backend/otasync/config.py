"""Process configuration for the channel sync service.

Everything is env-driven so the same image can run as API-only, worker-only
or both. Values are read once at import; tests construct services with
explicit arguments instead of mutating these globals.
"""

from __future__ import annotations

import os


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean-like flag from environment.

    Accepted falsy values: "0", "false", "off", "no" (case-insensitive).
    Anything else (or unset) falls back to `default`.
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "off", "no"}:
        return False
    if value in {"1", "true", "on", "yes"}:
        return True
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Application constants
API_PREFIX = "/api/channel-sync"
APP_NAME = "Channel Sync API"
APP_VERSION = "1.0.0"

# Worker pool
WORKERS: int = _env_int("WORKERS", (os.cpu_count() or 1) * 2)
LEASE_BATCH: int = _env_int("LEASE_BATCH", 10)
PER_HOTEL_FANOUT: int = _env_int("PER_HOTEL_FANOUT", 4)
WORKER_IDLE_SLEEP_S: float = _env_float("WORKER_IDLE_SLEEP_S", 2.0)
LEASE_GRACE_S: int = _env_int("LEASE_GRACE_S", 60)
ENABLE_SYNC_WORKERS: bool = _env_flag("ENABLE_SYNC_WORKERS", default=False)

# Retention
TTL_DAYS: int = _env_int("TTL_DAYS", 30)
PAYLOAD_LOG_TTL_DAYS: int = _env_int("PAYLOAD_LOG_TTL_DAYS", 90)
REAPER_INTERVAL_S: int = _env_int("REAPER_INTERVAL_S", 600)

# FX
FX_DEFAULT_TTL_S: int = _env_int("FX_DEFAULT_TTL_S", 3600)
FX_API_URL: str = os.environ.get("FX_API_URL", "https://api.exchangerate.host")
FX_TIMEOUT_SECONDS: float = _env_float("FX_TIMEOUT_SECONDS", 5.0)

# Machine translation (disabled when empty)
TRANSLATION_API_URL: str = os.environ.get("TRANSLATION_API_URL", "")
TRANSLATION_API_KEY: str = os.environ.get("TRANSLATION_API_KEY", "")

# Producer back-pressure
PRODUCER_RATE_PER_MINUTE: int = _env_int("PRODUCER_RATE_PER_MINUTE", 600)
THROTTLE_SPACING_MS: int = _env_int("THROTTLE_SPACING_MS", 1000)

# Worker-side configuration cache
CONFIG_CACHE_TTL_S: int = _env_int("CONFIG_CACHE_TTL_S", 60)
