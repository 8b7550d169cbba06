"""
In-process TTL cache, used for the live leaderboard.
The leaderboard entry is dropped whenever a session is stamped or the week is
reset, and expires on its own after a short TTL in any case.
"""

import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .logging_utils import get_logger

logger = get_logger("puzzlerace.cache")

LEADERBOARD_KEY = "leaderboard:live"
LEADERBOARD_TTL_SECONDS = 30


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    created_at: float

    def expired(self, now: float) -> bool:
        return now > self.expires_at


class MemoryCache:
    """Thread-safe dict of CacheEntry with hit/miss counters"""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats: Counter = Counter(hits=0, misses=0, sets=0, evictions=0)

    def get(self, key: str) -> Optional[Any]:
        """Value for key, or None when missing or expired"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(time.time()):
                del self._entries[key]
                self._stats['evictions'] += 1
                entry = None
            self._stats['hits' if entry is not None else 'misses'] += 1
            return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        now = time.time()
        with self._lock:
            self._entries[key] = CacheEntry(value, now + ttl_seconds, now)
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._stats['evictions'] += len(self._entries)
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Drop expired entries and return how many went"""
        now = time.time()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.expired(now)]
            for k in stale:
                del self._entries[k]
            self._stats['evictions'] += len(stale)
            return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats['hits'] + self._stats['misses']
            return {
                **self._stats,
                'total_requests': lookups,
                'hit_rate_percent': round(self._stats['hits'] * 100 / lookups, 2) if lookups else 0,
                'cache_size': len(self._entries),
            }


_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


def cache_leaderboard(leaderboard: list, ttl_seconds: int = LEADERBOARD_TTL_SECONDS) -> None:
    _cache.set(LEADERBOARD_KEY, leaderboard, ttl_seconds)


def get_cached_leaderboard() -> Optional[list]:
    return _cache.get(LEADERBOARD_KEY)


def invalidate_leaderboard_cache() -> None:
    if _cache.delete(LEADERBOARD_KEY):
        logger.debug("leaderboard_cache_invalidated")


def cleanup_cache() -> int:
    evicted = _cache.cleanup_expired()
    if evicted:
        logger.info("cache_cleanup", extra={"evicted": evicted})
    return evicted
