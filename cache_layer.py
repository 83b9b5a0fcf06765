from __future__ import annotations

import os
import threading
from typing import Any, Optional

from cachetools import TTLCache

# Stored for permission keys with no row so repeated checks skip the DB.
NO_RULE = object()

_RULE_PREFIX = "RBAC:RULE:"
_ROLES_KEY = "RBAC:ROLES"


def _rule_key(perm_type: str, perm_key: str) -> str:
    return f"{_RULE_PREFIX}{str(perm_type or '').upper().strip()}:{str(perm_key or '').upper().strip()}"


class _RbacCache:
    """TTL cache in front of the Permission and Role tables."""

    def __init__(self):
        ttl = int(os.getenv("CACHE_TTL_SECONDS", "60") or "60")
        max_items = int(os.getenv("CACHE_MAX_ITEMS", "5000") or "5000")
        self._cache = TTLCache(maxsize=max(100, max_items), ttl=max(1, min(3600, ttl)))
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def lookup(self, key: str) -> Optional[Any]:
        with self._lock:
            if key in self._cache:
                self._hits += 1
                return self._cache[key]
            self._misses += 1
            return None

    def store(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def drop_where(self, predicate) -> int:
        with self._lock:
            keys = [k for k in list(self._cache.keys()) if predicate(k)]
            for k in keys:
                self._cache.pop(k, None)
        return len(keys)

    def reset(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / total * 100) if total else 0.0, 2),
            }


_cache = _RbacCache()


def get_cached_rule(perm_type: str, perm_key: str) -> Optional[Any]:
    """Cached rule dict, ``NO_RULE`` for a known-missing rule, or None when not cached."""
    return _cache.lookup(_rule_key(perm_type, perm_key))


def put_cached_rule(perm_type: str, perm_key: str, rule: Optional[dict[str, Any]]) -> None:
    _cache.store(_rule_key(perm_type, perm_key), NO_RULE if rule is None else rule)


def get_cached_roles() -> Optional[dict[str, str]]:
    return _cache.lookup(_ROLES_KEY)


def put_cached_roles(index: dict[str, str]) -> None:
    _cache.store(_ROLES_KEY, dict(index))


def invalidate_rbac() -> int:
    """Drops every rule and the roles index; call after Permission or Role rows change."""
    return _cache.drop_where(lambda k: str(k).startswith(_RULE_PREFIX) or k == _ROLES_KEY)


def cache_clear() -> None:
    _cache.reset()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
