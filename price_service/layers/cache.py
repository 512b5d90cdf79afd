"""
Layer 2 – Cache layer
Price series and spot quotes, MongoDB when connected, process memory otherwise.

Entries are never expired on read: freshness is decided per timeframe by `get`,
while `get_latest` hands back whatever was stored last so that a failed fetch
can still be answered. Old entries are removed by the sweeper only.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from price_service.config import settings
from price_service.db import PRICE_CACHE, PRICE_QUOTES, get_mongo_db
from price_service.models.price import Interval, Series, Timeframe

logger = logging.getLogger(__name__)


def make_cache_key(token_id: str, timeframe: Union[Timeframe, str], interval: Union[Interval, str]) -> str:
    """price_{tokenId}_{timeframe}_{interval}"""
    timeframe = timeframe.value if isinstance(timeframe, Timeframe) else timeframe
    interval = interval.value if isinstance(interval, Interval) else interval
    return f"price_{token_id}_{timeframe}_{interval}"


def default_durations() -> Dict[Timeframe, int]:
    """Freshness per timeframe in seconds; shorter windows move faster"""
    return {
        Timeframe.HOUR: settings.PRICE_CACHE_TTL_1H,
        Timeframe.DAY: settings.PRICE_CACHE_TTL_24H,
        Timeframe.WEEK: settings.PRICE_CACHE_TTL_7D,
    }


def _to_doc_series(series: Series) -> list:
    return [{"timestamp": int(ts), "price": float(price)} for ts, price in series]


def _from_doc_series(points: list) -> Series:
    return [(int(p["timestamp"]), float(p["price"])) for p in points]


class PriceCacheLayer:
    """Keyed store of fetched price series and spot quotes"""

    def __init__(
        self,
        durations: Optional[Dict[Timeframe, int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._durations = durations or default_durations()
        self._clock = clock
        # in-memory fallback when MongoDB is not connected
        self._series: Dict[str, Dict[str, Any]] = {}
        self._quotes: Dict[str, Dict[str, Any]] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def cache_duration(self, timeframe: Union[Timeframe, str]) -> int:
        """Seconds a series of this timeframe stays fresh (unknown → 24h)"""
        try:
            timeframe = Timeframe(timeframe)
        except ValueError:
            timeframe = Timeframe.DAY
        return self._durations[timeframe]

    # ── Series ────────────────────────────────────────────

    async def _load(self, key: str) -> Optional[Dict[str, Any]]:
        db = get_mongo_db()
        if db is not None:
            return await db[PRICE_CACHE].find_one({"_id": key})
        return self._series.get(key)

    async def get(self, key: str, timeframe: Union[Timeframe, str]) -> Optional[Series]:
        """Cached series if younger than the timeframe's duration, else None"""
        doc = await self._load(key)
        if not doc:
            return None
        age_ms = self._now_ms() - doc["fetched_at"]
        if age_ms >= self.cache_duration(timeframe) * 1000:
            return None
        logger.debug(f"Cache hit: {key} (age {age_ms}ms)")
        return _from_doc_series(doc["series"])

    async def get_latest(self, key: str) -> Optional[Series]:
        """Last stored series for key, however old"""
        doc = await self._load(key)
        if not doc:
            return None
        return _from_doc_series(doc["series"])

    async def set(self, key: str, series: Series, timeframe: Union[Timeframe, str]) -> None:
        """Overwrite the entry for key and stamp the current time"""
        timeframe = timeframe.value if isinstance(timeframe, Timeframe) else timeframe
        doc = {
            "_id": key,
            "series": _to_doc_series(series),
            "fetched_at": self._now_ms(),
            "timeframe": timeframe,
        }
        db = get_mongo_db()
        if db is not None:
            await db[PRICE_CACHE].replace_one({"_id": key}, doc, upsert=True)
        else:
            self._series[key] = doc
        logger.debug(f"Cache write: {key} ({len(series)} points)")

    async def delete(self, key: str) -> bool:
        db = get_mongo_db()
        if db is not None:
            result = await db[PRICE_CACHE].delete_one({"_id": key})
            return result.deleted_count > 0
        return self._series.pop(key, None) is not None

    # ── Spot quotes ───────────────────────────────────────

    async def _load_quote(self, symbol: str) -> Optional[Dict[str, Any]]:
        db = get_mongo_db()
        if db is not None:
            return await db[PRICE_QUOTES].find_one({"_id": symbol})
        return self._quotes.get(symbol)

    async def get_quote(self, symbol: str, ttl: int) -> Optional[Dict[str, Any]]:
        doc = await self._load_quote(symbol)
        if not doc or self._now_ms() - doc["fetched_at"] >= ttl * 1000:
            return None
        return doc["quote"]

    async def get_latest_quote(self, symbol: str) -> Optional[Dict[str, Any]]:
        doc = await self._load_quote(symbol)
        return doc["quote"] if doc else None

    async def set_quote(self, symbol: str, quote: Dict[str, Any]) -> None:
        doc = {"_id": symbol, "quote": quote, "fetched_at": self._now_ms()}
        db = get_mongo_db()
        if db is not None:
            await db[PRICE_QUOTES].replace_one({"_id": symbol}, doc, upsert=True)
        else:
            self._quotes[symbol] = doc

    # ── Maintenance ───────────────────────────────────────

    async def sweep(self, max_age: int) -> int:
        """Delete every entry fetched more than max_age seconds ago, return count"""
        cutoff = self._now_ms() - max_age * 1000
        db = get_mongo_db()
        if db is not None:
            removed = 0
            for name in (PRICE_CACHE, PRICE_QUOTES):
                result = await db[name].delete_many({"fetched_at": {"$lt": cutoff}})
                removed += result.deleted_count
            return removed

        removed = 0
        for store in (self._series, self._quotes):
            stale = [k for k, doc in store.items() if doc["fetched_at"] < cutoff]
            for k in stale:
                del store[k]
            removed += len(stale)
        return removed

    async def stats(self) -> dict:
        """Entry counts of the active backend"""
        db = get_mongo_db()
        if db is not None:
            return {
                "backend": "mongodb",
                "series": await db[PRICE_CACHE].count_documents({}),
                "quotes": await db[PRICE_QUOTES].count_documents({}),
            }
        return {
            "backend": "memory",
            "series": len(self._series),
            "quotes": len(self._quotes),
        }


# ── Module-level singleton ───────────────────────────────
_cache: Optional[PriceCacheLayer] = None


def get_cache_layer() -> PriceCacheLayer:
    global _cache
    if _cache is None:
        _cache = PriceCacheLayer()
    return _cache
