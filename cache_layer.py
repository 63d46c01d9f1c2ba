from __future__ import annotations

import hashlib
import json
import os
import threading
from typing import Any, Callable

from cachetools import TTLCache


DASHBOARD_STATS_NS = "DASHBOARD_STATS"


def _sha256_16(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def make_cache_key(namespace: str, *, scope: list[str] | None = None, params: dict[str, Any] | None = None) -> str:
    ns = str(namespace or "").strip().upper()
    scope = scope or []
    params = params or {}
    try:
        blob = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        blob = str(params)
    parts = [ns] + [str(s or "").strip() for s in scope if str(s or "").strip()] + [_sha256_16(blob)]
    return ":".join(parts)


class _StatsCache:
    """Process-local TTL cache for read-side aggregates. Values are never None."""

    def __init__(self):
        ttl = int(os.getenv("CACHE_TTL_SECONDS", "60") or "60")
        max_items = int(os.getenv("CACHE_MAX_ITEMS", "1000") or "1000")
        ttl = max(1, min(3600, ttl))
        max_items = max(16, min(100_000, max_items))
        self._cache = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            val = self._cache.get(key)
            if val is not None:
                self._hits += 1
                return val
            self._misses += 1
        # Compute outside the lock; a concurrent writer may win, which is fine.
        computed = factory()
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            self._cache[key] = computed
        return computed

    def invalidate_prefix(self, prefix: str) -> int:
        pfx = str(prefix or "")
        if not pfx:
            return 0
        with self._lock:
            keys = [k for k in list(self._cache.keys()) if str(k).startswith(pfx)]
            for k in keys:
                self._cache.pop(k, None)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total * 100) if total > 0 else 0.0
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(hit_rate, 2),
            }


_cache = _StatsCache()


def cache_get_or_set(key: str, factory: Callable[[], Any]) -> Any:
    return _cache.get_or_set(key, factory)


def cache_invalidate_prefix(prefix: str) -> int:
    return _cache.invalidate_prefix(prefix)


def invalidate_dashboard_stats() -> int:
    """Called by the request boundary after every committed mutation."""
    return _cache.invalidate_prefix(DASHBOARD_STATS_NS)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
