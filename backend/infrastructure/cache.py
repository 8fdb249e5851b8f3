import json
import logging
from typing import Any, Optional

from redis import asyncio as aioredis

from config import REDIS_URL

logger = logging.getLogger(__name__)
_redis: Optional[aioredis.Redis] = None

CATALOG_KEY = "eldergrove:catalog"
CATALOG_TTL_SEC = 300
LEADERBOARD_TTL_SEC = 30


def leaderboard_key(regatta_id: int, scope: str) -> str:
    return f"eldergrove:regatta:{regatta_id}:leaderboard:{scope}"


def _get_redis() -> Optional[aioredis.Redis]:
    global _redis
    if _redis is None:
        try:
            _redis = aioredis.from_url(REDIS_URL, encoding="utf-8", decode_responses=True)
        except Exception as e:
            logger.warning("Redis unavailable: %s", e)
    return _redis


async def cache_get(key: str) -> Optional[Any]:
    r = _get_redis()
    if r is None:
        return None
    try:
        s = await r.get(key)
        if s is None:
            return None
        return json.loads(s)
    except Exception as e:
        logger.warning("Cache get failed: %s", e)
        return None


async def cache_set(key: str, value: Any, ttl_sec: int = CATALOG_TTL_SEC) -> None:
    r = _get_redis()
    if r is None:
        return
    try:
        await r.setex(key, ttl_sec, json.dumps(value, ensure_ascii=False, default=str))
    except Exception as e:
        logger.warning("Cache set failed: %s", e)


async def cache_delete(key: str) -> None:
    r = _get_redis()
    if r is None:
        return
    try:
        await r.delete(key)
    except Exception as e:
        logger.warning("Cache delete failed: %s", e)


async def ping() -> bool:
    r = _get_redis()
    if r is None:
        return False
    try:
        return bool(await r.ping())
    except Exception as e:
        logger.warning("Redis ping failed: %s", e)
        return False
