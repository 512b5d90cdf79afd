"""
Layer 6 – Cleanup layer
Removes cache entries older than the max age. Runs either as a periodic background
task owned by the application lifespan, or opportunistically after a fraction of
successful fetches.
"""

import asyncio
import logging
import random
from typing import Callable, Optional

from price_service.config import settings
from price_service.layers.cache import PriceCacheLayer, get_cache_layer

logger = logging.getLogger(__name__)


class CleanupLayer:
    """Stale cache sweeper"""

    def __init__(
        self,
        cache: Optional[PriceCacheLayer] = None,
        max_age: Optional[int] = None,
        probability: Optional[float] = None,
        rng: Callable[[], float] = random.random,
    ):
        self._cache = cache or get_cache_layer()
        self.max_age = max_age if max_age is not None else settings.PRICE_CACHE_MAX_AGE
        self.probability = (
            probability if probability is not None else settings.CACHE_CLEANUP_PROBABILITY
        )
        self._rng = rng

    async def sweep_now(self) -> int:
        removed = await self._cache.sweep(self.max_age)
        if removed:
            logger.info(f"Cleaned up {removed} old cache entries")
        return removed

    async def maybe_sweep(self) -> int:
        """Sweep with the configured probability; failures are logged, not raised"""
        if self._rng() >= self.probability:
            return 0
        try:
            return await self.sweep_now()
        except Exception as exc:
            logger.warning(f"Cache cleanup failed: {exc}")
            return 0

    async def run_periodic(self, interval: int) -> None:
        """Sweep every `interval` seconds until cancelled"""
        logger.info(f"Cache sweeper started (every {interval}s, max age {self.max_age}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_now()
            except Exception as exc:
                logger.warning(f"Periodic cache cleanup failed: {exc}")


# ── Module-level singleton ───────────────────────────────
_cleanup: Optional[CleanupLayer] = None


def get_cleanup_layer() -> CleanupLayer:
    global _cleanup
    if _cleanup is None:
        _cleanup = CleanupLayer()
    return _cleanup
