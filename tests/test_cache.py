import time

from puzzlerace.cache import (
    MemoryCache,
    cache_leaderboard,
    cleanup_cache,
    get_cache,
    get_cached_leaderboard,
    invalidate_leaderboard_cache,
)


def test_memory_cache_set_get_and_expire():
    c = MemoryCache()
    c.set('k', 'v', ttl_seconds=1)
    assert c.get('k') == 'v'
    time.sleep(1.1)
    assert c.get('k') is None
    stats = c.get_stats()
    assert stats['hits'] == 1 and stats['misses'] == 1
    assert stats['cache_size'] == 0


def test_cleanup_expired_counts_evictions():
    c = MemoryCache()
    c.set('old', 1, ttl_seconds=-1)
    c.set('new', 2, ttl_seconds=60)
    assert c.cleanup_expired() == 1
    assert c.get('new') == 2
    assert c.delete('new') is True
    assert c.delete('new') is False


def test_leaderboard_helpers():
    lb = [{"rank": 1, "handle": "alice", "total_time_ms": 42_000}]
    cache_leaderboard(lb)
    assert get_cached_leaderboard() == lb
    invalidate_leaderboard_cache()
    assert get_cached_leaderboard() is None


def test_cleanup_cache_uses_global_cache():
    get_cache().set('gone', 1, ttl_seconds=-1)
    assert cleanup_cache() == 1
