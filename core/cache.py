"""
cache.py
---------
Explicit time-to-live cache for suggestion lookups and history aggregates.

Keys are tuples whose leading elements name the cached thing and its scope,
e.g. ("suggestion", family_id, user_id, normalized_descriptor). invalidate()
takes key prefixes, so ("suggestion", family_id) drops every cached
suggestion of that family and ("suggestion",) drops all of them. ANY in a
prefix matches any value at that position: ("suggestion", ANY, user_id)
drops one user's suggestions in every family.
"""

import threading
import time
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, Tuple

from config.config_loader import get_cache_config


CacheKey = Tuple[Hashable, ...]

_MISSING = object()


class _Any:
    def __repr__(self):
        return "ANY"


ANY = _Any()


def _starts_with(key: CacheKey, prefix: CacheKey) -> bool:
    if len(key) < len(prefix):
        return False
    return all(p is ANY or k == p for k, p in zip(key, prefix))


class TTLCache:
    """
    In-process (key) -> value cache with per-entry expiry.

    Usage:
        cache = TTLCache()
        cache.set(("suggestion", "fam-1", "user-1", "ifood"), suggestion, ttl=300)
        cache.get(("suggestion", "fam-1", "user-1", "ifood"))
        cache.invalidate([("suggestion", "fam-1")])
    """

    def __init__(self, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        if default_ttl is None:
            default_ttl = get_cache_config()["default_ttl_seconds"]
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return default
            return value

    def set(self, key: CacheKey, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else float(ttl)
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def get_or_compute(self, key: CacheKey, compute: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Returns the cached value, computing and storing it on a miss."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = compute()
            self.set(key, value, ttl)
        return value

    def invalidate(self, prefixes: Iterable[CacheKey]) -> int:
        """Drops every entry whose key starts with one of the prefixes."""
        prefixes = [tuple(p) for p in prefixes]
        with self._lock:
            doomed = [
                key for key in self._entries
                if any(_starts_with(key, p) for p in prefixes)
            ]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)
