import logging
import time
from typing import Dict, List, Optional, Tuple

import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config import config

logger = logging.getLogger(__name__)


def fast_dumps(obj) -> str:
    return orjson.dumps(obj).decode("utf-8")


class QuizCache:
    """Hybrid Redis + in-memory cache for game data.

    Questions are cached only once a game has started, when they can no
    longer change. Redis is used when configured; the in-memory copy always
    backs it so a Redis outage degrades to process-local caching.
    """

    def __init__(self, ttl_sec: int = None, leaderboard_ttl_sec: int = None):
        self.ttl_sec = config.CACHE_TTL_SEC if ttl_sec is None else ttl_sec
        self.leaderboard_ttl_sec = (
            config.LEADERBOARD_CACHE_TTL if leaderboard_ttl_sec is None else leaderboard_ttl_sec
        )
        self.redis: Optional[aioredis.Redis] = None
        self._mem: Dict[str, Tuple[float, float, object]] = {}

    async def connect(self, redis_url: str) -> bool:
        if not redis_url:
            logger.info("Redis not configured, using in-memory cache")
            return False
        try:
            self.redis = aioredis.from_url(redis_url, decode_responses=False)
            await self.redis.ping()
            logger.info("✓ Redis connected")
            return True
        except (RedisError, OSError) as e:
            logger.error(f"✗ Redis unavailable, using in-memory cache: {e}")
            self.redis = None
            return False

    async def close(self):
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    async def _get(self, key: str):
        if self.redis:
            try:
                data = await self.redis.get(key)
                if data:
                    return orjson.loads(data)
            except RedisError as e:
                logger.warning(f"Redis get {key} failed: {e}")
        entry = self._mem.get(key)
        if entry:
            stored_at, ttl, value = entry
            if time.time() - stored_at < ttl:
                return value
            self._mem.pop(key, None)
        return None

    async def _set(self, key: str, value, ttl: int):
        self._mem[key] = (time.time(), ttl, value)
        if self.redis:
            try:
                await self.redis.setex(key, ttl, fast_dumps(value))
            except RedisError as e:
                logger.warning(f"Redis set {key} failed: {e}")

    async def get_questions(self, game_id: str) -> Optional[List[Dict]]:
        return await self._get(f"questions:{game_id}")

    async def set_questions(self, game_id: str, questions: List[Dict]):
        await self._set(f"questions:{game_id}", questions, self.ttl_sec)

    async def get_leaderboard(self, game_id: str) -> Optional[List[Dict]]:
        return await self._get(f"leaderboard:{game_id}")

    async def set_leaderboard(self, game_id: str, leaderboard: List[Dict]):
        await self._set(f"leaderboard:{game_id}", leaderboard, self.leaderboard_ttl_sec)

    async def invalidate_leaderboard(self, game_id: str):
        self._mem.pop(f"leaderboard:{game_id}", None)
        if self.redis:
            try:
                await self.redis.delete(f"leaderboard:{game_id}")
            except RedisError as e:
                logger.warning(f"Redis delete leaderboard:{game_id} failed: {e}")

    async def invalidate(self, game_id: str):
        keys = [f"questions:{game_id}", f"leaderboard:{game_id}"]
        for key in keys:
            self._mem.pop(key, None)
        if self.redis:
            try:
                await self.redis.delete(*keys)
            except RedisError as e:
                logger.warning(f"Redis invalidate {game_id} failed: {e}")
