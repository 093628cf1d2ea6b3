import time

from cache import QuizCache, fast_dumps


async def test_memory_cache_without_redis():
    cache = QuizCache(ttl_sec=30, leaderboard_ttl_sec=5)
    assert await cache.connect("") is False

    await cache.set_questions("g1", [{"id": "q1"}])
    await cache.set_leaderboard("g1", [])

    assert await cache.get_questions("g1") == [{"id": "q1"}]
    assert await cache.get_leaderboard("g1") == []
    assert await cache.get_questions("g2") is None


async def test_leaderboard_entries_expire(monkeypatch):
    cache = QuizCache(ttl_sec=30, leaderboard_ttl_sec=5)
    await cache.set_leaderboard("g1", [{"name": "Alice", "rank": 1}])

    later = time.time() + 6
    monkeypatch.setattr(time, "time", lambda: later)

    assert await cache.get_leaderboard("g1") is None
    assert await cache.get_questions("g1") is None


async def test_invalidate():
    cache = QuizCache()
    await cache.set_questions("g1", [{"id": "q1"}])
    await cache.set_leaderboard("g1", [{"name": "Alice"}])

    await cache.invalidate_leaderboard("g1")
    assert await cache.get_leaderboard("g1") is None
    assert await cache.get_questions("g1") == [{"id": "q1"}]

    await cache.invalidate("g1")
    assert await cache.get_questions("g1") is None


def test_fast_dumps_returns_text():
    assert fast_dumps({"type": "ping"}) == '{"type":"ping"}'
