"""
Layer 4 – Quota layer
Monthly budget of upstream calls, counted from usage records since the start of the
current UTC calendar month.

The check is read-then-act and not transactional: concurrent requests can overshoot
the ceiling by a few calls. The safety buffer absorbs that.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from price_service.config import settings
from price_service.db import RATE_LIMIT_STATS, get_mongo_db
from price_service.errors import QuotaExceededError

logger = logging.getLogger(__name__)

KIND_CALL = "call"
KIND_LIMITED = "limited"


def month_start(now: datetime) -> datetime:
    """First instant of now's calendar month, UTC"""
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class QuotaLayer:
    """Monthly usage counter and guard"""

    def __init__(
        self,
        hard_limit: Optional[int] = None,
        safety_buffer: Optional[int] = None,
        api: str = "coingecko",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.hard_limit = hard_limit if hard_limit is not None else settings.MONTHLY_CALL_LIMIT
        self.safety_buffer = safety_buffer if safety_buffer is not None else settings.MONTHLY_CALL_BUFFER
        self.api = api
        self._clock = clock
        self._records: List[Dict] = []

    @property
    def ceiling(self) -> int:
        return self.hard_limit - self.safety_buffer

    async def _record(self, kind: str) -> None:
        record = {"timestamp": self._clock(), "api": self.api, "kind": kind}
        db = get_mongo_db()
        if db is not None:
            await db[RATE_LIMIT_STATS].insert_one(record)
        else:
            # only the current month is ever counted
            since = month_start(record["timestamp"])
            self._records = [r for r in self._records if r["timestamp"] >= since]
            self._records.append(record)

    async def record_call(self) -> None:
        """One granted upstream call"""
        await self._record(KIND_CALL)

    async def record_limited(self) -> None:
        """One call refused by the per-minute limiter"""
        await self._record(KIND_LIMITED)

    async def count(self, kind: str = KIND_CALL) -> int:
        since = month_start(self._clock())
        db = get_mongo_db()
        if db is not None:
            return await db[RATE_LIMIT_STATS].count_documents(
                {"api": self.api, "kind": kind, "timestamp": {"$gte": since}}
            )
        return sum(
            1 for r in self._records
            if r["api"] == self.api and r["kind"] == kind and r["timestamp"] >= since
        )

    async def check(self) -> None:
        """Raise QuotaExceededError once this month's calls reach the ceiling"""
        used = await self.count()
        if used >= self.ceiling:
            logger.warning(f"Monthly {self.api} budget reached: {used}/{self.hard_limit}")
            raise QuotaExceededError("Monthly API limit approaching, using cached data only")

    async def usage(self) -> dict:
        used = await self.count()
        return {
            "used": used,
            "limited": await self.count(KIND_LIMITED),
            "limit": self.hard_limit,
            "buffer": self.safety_buffer,
            "remaining": max(self.ceiling - used, 0),
            "month_start": month_start(self._clock()).isoformat(),
        }


# ── Module-level singleton ───────────────────────────────
_quota: Optional[QuotaLayer] = None


def get_quota_layer() -> QuotaLayer:
    global _quota
    if _quota is None:
        _quota = QuotaLayer()
    return _quota
