from __future__ import annotations

import os
import threading
from typing import Any, Callable

from cachetools import TTLCache


def _cache_limits() -> tuple[int, int]:
    try:
        ttl = int(os.getenv("CACHE_TTL_SECONDS", "60") or "60")
    except ValueError:
        ttl = 60
    try:
        max_items = int(os.getenv("CACHE_MAX_ITEMS", "5000") or "5000")
    except ValueError:
        max_items = 5000
    return max(1, min(3600, ttl)), max(100, min(500_000, max_items))


class TenantCache:
    """TTL cache owned by a single tenant. Keys never leak across tenants."""

    def __init__(self, tenant_id: str):
        ttl, max_items = _cache_limits()
        self.tenant_id = tenant_id
        self._cache = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any:
        with self._lock:
            val = self._cache.get(key)
            if val is not None:
                self._hits += 1
            else:
                self._misses += 1
            return val

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            val = self._cache.get(key)
            if val is not None:
                self._hits += 1
                return val
            self._misses += 1
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


_caches: dict[str, TenantCache] = {}
_caches_lock = threading.Lock()


def tenant_cache(tenant_id: str) -> TenantCache:
    tid = str(tenant_id or "").strip().lower() or "_default"
    cache = _caches.get(tid)
    if cache is not None:
        return cache
    with _caches_lock:
        cache = _caches.get(tid)
        if cache is None:
            cache = TenantCache(tid)
            _caches[tid] = cache
        return cache


def cache_get(tenant_id: str, key: str) -> Any:
    return tenant_cache(tenant_id).get(key)


def cache_set(tenant_id: str, key: str, value: Any) -> None:
    tenant_cache(tenant_id).set(key, value)


def cache_invalidate_prefix(tenant_id: str, prefix: str) -> int:
    return tenant_cache(tenant_id).invalidate_prefix(prefix)


def cache_clear_all() -> None:
    with _caches_lock:
        for cache in _caches.values():
            cache.clear()
        _caches.clear()


def cache_stats() -> dict[str, Any]:
    with _caches_lock:
        return {tid: c.stats() for tid, c in _caches.items()}
