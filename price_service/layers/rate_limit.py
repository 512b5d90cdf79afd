"""
Layer 3 – Rate-limit layer
Sliding-window limiter on upstream calls. Backend priority:
Redis (WATCH/MULTI) → MongoDB (atomic pipeline update) → process memory (asyncio.Lock)

Every backend performs the same atomic step per key:
read window → drop timestamps older than the window → compare with limit → append now.
"""

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from pymongo import ReturnDocument
from redis.exceptions import WatchError

from price_service.config import settings
from price_service.db import RATE_LIMITS, get_mongo_db, get_redis

logger = logging.getLogger(__name__)

_REDIS_PREFIX = "ratelimit:"


class RateLimitLayer:
    """At most `limit` grants per rolling `window` seconds per limiter key"""

    def __init__(
        self,
        limit: Optional[int] = None,
        window: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit if limit is not None else settings.RATE_LIMIT_PER_MINUTE
        self.window = window if window is not None else settings.RATE_LIMIT_WINDOW_SECONDS
        self._clock = clock
        self._windows: Dict[str, List[int]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def try_acquire(self, limiter_key: str) -> bool:
        """Grant one upstream call for limiter_key if the window has room"""
        redis = get_redis()
        if redis is not None:
            granted = await self._acquire_redis(redis, limiter_key)
        else:
            db = get_mongo_db()
            if db is not None:
                granted = await self._acquire_mongo(db, limiter_key)
            else:
                granted = await self._acquire_memory(limiter_key)
        if not granted:
            logger.warning(f"Rate limit reached for {limiter_key}: {self.limit}/{self.window}s")
        return granted

    async def window_usage(self, limiter_key: str) -> int:
        """Requests currently counted in the window"""
        window_start = self._now_ms() - self.window * 1000
        redis = get_redis()
        if redis is not None:
            return await redis.zcount(_REDIS_PREFIX + limiter_key, f"({window_start}", "+inf")
        db = get_mongo_db()
        if db is not None:
            doc = await db[RATE_LIMITS].find_one({"_id": limiter_key})
            requests = (doc or {}).get("requests", [])
        else:
            requests = self._windows.get(limiter_key, [])
        return len([ts for ts in requests if ts > window_start])

    # ── Redis ─────────────────────────────────────────────

    async def _acquire_redis(self, redis, limiter_key: str) -> bool:
        key = _REDIS_PREFIX + limiter_key
        async with redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    now = self._now_ms()
                    window_start = now - self.window * 1000
                    count = await pipe.zcount(key, f"({window_start}", "+inf")
                    if count >= self.limit:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.zremrangebyscore(key, "-inf", window_start)
                    # member must be unique, several grants can share a millisecond
                    pipe.zadd(key, {f"{now}:{uuid.uuid4().hex}": now})
                    pipe.pexpire(key, self.window * 1000)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug(f"Rate limit window for {limiter_key} changed concurrently, retrying")
                    continue

    # ── MongoDB ───────────────────────────────────────────

    async def _acquire_mongo(self, db, limiter_key: str) -> bool:
        now = self._now_ms()
        window_start = now - self.window * 1000
        # single-document update, atomic without a multi-document transaction
        pipeline = [
            {"$set": {"requests": {"$filter": {
                "input": {"$ifNull": ["$requests", []]},
                "as": "ts",
                "cond": {"$gt": ["$$ts", window_start]},
            }}}},
            {"$set": {"granted": {"$lt": [{"$size": "$requests"}, self.limit]}}},
            {"$set": {"requests": {"$cond": [
                "$granted",
                {"$concatArrays": ["$requests", [now]]},
                "$requests",
            ]}}},
        ]
        doc = await db[RATE_LIMITS].find_one_and_update(
            {"_id": limiter_key},
            pipeline,
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return bool(doc and doc.get("granted"))

    # ── Memory ────────────────────────────────────────────

    async def _acquire_memory(self, limiter_key: str) -> bool:
        async with self._locks[limiter_key]:
            now = self._now_ms()
            window_start = now - self.window * 1000
            requests = [ts for ts in self._windows[limiter_key] if ts > window_start]
            if len(requests) >= self.limit:
                self._windows[limiter_key] = requests
                return False
            requests.append(now)
            self._windows[limiter_key] = requests
            return True


# ── Module-level singleton ───────────────────────────────
_limiter: Optional[RateLimitLayer] = None


def get_rate_limit_layer() -> RateLimitLayer:
    global _limiter
    if _limiter is None:
        _limiter = RateLimitLayer()
    return _limiter
