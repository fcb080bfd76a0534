# services/cache/cache_backend.py
"""
Two-tier cache for chat usage bookkeeping.

L1 is an in-process TTL store; L2 is Redis (Upstash) when
UPSTASH_REDIS_URL is set. Redis errors never fail a request: reads fall
back to L1 and writes to L2 are best effort.

Holds two kinds of values:
  - JSON payloads (``cache_get`` / ``cache_set``), e.g. the resolved plan
  - windowed integer counters (``counter_get`` / ``counter_incr``), e.g.
    messages sent today
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional, Tuple, Union

try:
    import redis as redis_sync
except Exception:
    redis_sync = None

logger = logging.getLogger(__name__)

JsonValue = Union[Dict[str, Any], List[Any], str, int, float, bool, None]

DEFAULT_TTL_SEC = int(os.getenv("CACHE_DEFAULT_TTL_SEC", "60"))
LOCAL_CACHE_TTL_SEC = int(os.getenv("CACHE_LOCAL_TTL_SEC", "60"))

# Prefix isolates app + env, e.g. portfoliochat:prod:
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "portfoliochat:")

UPSTASH_REDIS_URL = os.getenv("UPSTASH_REDIS_URL")


class _LocalStore:
    """key -> (expires_at_epoch, value), guarded by one lock."""

    def __init__(self):
        self._items: Dict[str, Tuple[float, JsonValue]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[JsonValue]:
        with self._lock:
            hit = self._items.get(key)
            if hit is None:
                return None
            if time.time() > hit[0]:
                self._items.pop(key, None)
                return None
            return hit[1]

    def set(self, key: str, value: JsonValue, ttl_seconds: int) -> None:
        with self._lock:
            self._items[key] = (time.time() + ttl_seconds, value)

    def incr(self, key: str, ttl_seconds: int) -> int:
        # the window starts at the first increment and is not extended
        with self._lock:
            now = time.time()
            hit = self._items.get(key)
            if hit is not None and now <= hit[0]:
                expires_at, value = hit[0], int(hit[1] or 0) + 1  # type: ignore[arg-type]
            else:
                expires_at, value = now + ttl_seconds, 1
            self._items[key] = (expires_at, value)
            return value

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


_local = _LocalStore()
_redis_client = None


def get_redis_client():
    """Lazy sync Redis client. None when not configured or unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not redis_sync or not UPSTASH_REDIS_URL:
        return None
    try:
        _redis_client = redis_sync.from_url(
            UPSTASH_REDIS_URL,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )
    except Exception:
        logger.warning("cache.redis_unavailable")
        _redis_client = None
    return _redis_client


def _norm_key(key: str) -> str:
    return (key or "").strip()


def _ttl(ttl_seconds: Optional[int]) -> int:
    return int(ttl_seconds) if ttl_seconds and ttl_seconds > 0 else DEFAULT_TTL_SEC


def cache_get(key: str) -> Optional[JsonValue]:
    """Read-through: L1 first, then Redis (refilling L1 on a hit)."""
    k = _norm_key(key)
    if not k:
        return None

    hit = _local.get(k)
    if hit is not None:
        return hit

    r = get_redis_client()
    if not r:
        return None
    try:
        raw = r.get(REDIS_PREFIX + k)
        if not isinstance(raw, (str, bytes, bytearray)):
            return None
        payload: JsonValue = json.loads(raw)
    except Exception:
        return None
    _local.set(k, payload, LOCAL_CACHE_TTL_SEC)
    return payload


def cache_set(key: str, payload: JsonValue, ttl_seconds: int = DEFAULT_TTL_SEC) -> None:
    """Write-through: L1 keeps at most LOCAL_CACHE_TTL_SEC, Redis the full TTL."""
    k = _norm_key(key)
    if not k:
        return
    ttl_seconds = _ttl(ttl_seconds)
    _local.set(k, payload, min(LOCAL_CACHE_TTL_SEC, ttl_seconds))

    r = get_redis_client()
    if not r:
        return
    try:
        r.setex(REDIS_PREFIX + k, ttl_seconds, json.dumps(payload, separators=(",", ":")))
    except Exception:
        pass


def counter_get(key: str) -> int:
    """Current value of a windowed counter (0 when absent or expired)."""
    k = _norm_key(key)
    if not k:
        return 0

    r = get_redis_client()
    if r:
        try:
            raw = r.get(REDIS_PREFIX + k)
            return int(raw) if raw is not None else 0
        except Exception:
            pass

    value = _local.get(k)
    try:
        return int(value) if value is not None else 0  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0


def counter_incr(key: str, ttl_seconds: int) -> int:
    """Increment a counter; Redis INCR + EXPIRE when available, else L1 for the full window."""
    k = _norm_key(key)
    if not k:
        return 0
    ttl_seconds = _ttl(ttl_seconds)

    r = get_redis_client()
    if r:
        try:
            rk = REDIS_PREFIX + k
            value = int(r.incr(rk))
            if value == 1:
                r.expire(rk, ttl_seconds)
            return value
        except Exception:
            logger.warning("cache.counter_incr.redis_failed key=%s", k)

    return _local.incr(k, ttl_seconds)


def cache_clear_local() -> None:
    _local.clear()
