"""
Price data service
Sequences the quota, cache, rate-limit, acquisition and processing layers into the
price pipeline, falling back to the last cached series whenever a live fetch fails.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

from price_service.config import settings
from price_service.errors import (
    EmptyResultError,
    PriceFetchError,
    RateLimitExceededError,
    UpstreamError,
)
from price_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from price_service.layers.cache import PriceCacheLayer, get_cache_layer, make_cache_key
from price_service.layers.cleanup import CleanupLayer, get_cleanup_layer
from price_service.layers.processing import ProcessingLayer, get_processing_layer
from price_service.layers.quota import QuotaLayer, get_quota_layer
from price_service.layers.rate_limit import RateLimitLayer, get_rate_limit_layer
from price_service.models.price import Interval, Quote, Series, Timeframe

logger = logging.getLogger(__name__)


class PriceService:
    """Price pipeline orchestrator"""

    def __init__(
        self,
        cache: Optional[PriceCacheLayer] = None,
        limiter: Optional[RateLimitLayer] = None,
        quota: Optional[QuotaLayer] = None,
        acquisition: Optional[AcquisitionLayer] = None,
        processor: Optional[ProcessingLayer] = None,
        cleanup: Optional[CleanupLayer] = None,
    ):
        self._cache = cache or get_cache_layer()
        self._limiter = limiter or get_rate_limit_layer()
        self._quota = quota or get_quota_layer()
        self._acq = acquisition or get_acquisition_layer()
        self._proc = processor or get_processing_layer()
        self._cleanup = cleanup or (
            CleanupLayer(cache=self._cache) if cache is not None else get_cleanup_layer()
        )
        self._limiter_key = settings.RATE_LIMIT_KEY
        self._aliases = dict(settings.TOKEN_ALIASES)
        self._default_tokens = list(settings.DEFAULT_TOKENS)
        self._quote_ttl = settings.CURRENT_PRICE_CACHE_TTL

    def resolve_token(self, token_id: str) -> str:
        """Map short aliases ("89") to upstream ids ("project89")"""
        token_id = token_id.strip()
        return self._aliases.get(token_id, token_id)

    # ── Price history ─────────────────────────────────────

    async def get_token_price(
        self,
        token_id: str,
        timeframe: Union[Timeframe, str] = Timeframe.DAY,
        interval: Union[Interval, str] = Interval.M15,
    ) -> List[Dict[str, Union[int, float]]]:
        """
        Price series for a token, resampled to the interval

        Args:
            token_id: upstream coin id or alias
            timeframe: 1h / 24h / 7d, picks cache freshness and lookback
            interval: 15m / 1h / 4h / 1d resampling width

        Raises:
            PriceFetchError: live fetch and fallback cache read both failed;
                `.cause` holds the original error
        """
        timeframe = Timeframe(timeframe)
        interval = Interval(interval)
        token = self.resolve_token(token_id)
        key = make_cache_key(token, timeframe, interval)

        try:
            series = await self._fetch_series(token, timeframe, key)
        except Exception as exc:
            logger.error(f"Error fetching price data for {token}: {exc}")
            if isinstance(exc, UpstreamError) and exc.body:
                logger.error(f"Upstream response: {exc.body}")
            raise PriceFetchError(exc) from exc

        return self._proc.to_points(self._proc.resample(series, interval))

    async def _fetch_series(self, token: str, timeframe: Timeframe, key: str) -> Series:
        try:
            await self._quota.check()

            cached = await self._cache.get(key, timeframe)
            if cached is not None:
                return cached

            if not await self._limiter.try_acquire(self._limiter_key):
                await self._quota.record_limited()
                raise RateLimitExceededError("Rate limit exceeded and no cache available")

            await self._quota.record_call()
            raw = await self._acq.get_market_chart(token, timeframe.days)
            series = self._proc.normalize_series(raw)
            if not series:
                raise EmptyResultError(f"No price data found for {token}")

            await self._cache.set(key, series, timeframe)
            await self._cleanup.maybe_sweep()
            return series
        except Exception as exc:
            fallback = await self._fallback_read(key)
            if fallback is not None:
                logger.warning(f"Serving cached {key} after failure: {exc}")
                return fallback
            raise

    async def _fallback_read(self, key: str) -> Optional[Series]:
        try:
            return await self._cache.get_latest(key)
        except Exception as exc:
            logger.warning(f"Fallback cache read failed for {key}: {exc}")
            return None

    # ── Spot prices ───────────────────────────────────────

    async def get_current_prices(self, symbols: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Spot prices for several tokens

        Fresh quotes come from the cache, the rest are fetched in a single upstream
        call. A symbol that cannot be priced falls back to its last cached quote,
        and only lands in `errors` when none exists.
        """
        requested = [self.resolve_token(s) for s in (symbols or self._default_tokens) if s.strip()]
        requested = list(dict.fromkeys(requested))

        prices: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        missing: List[str] = []
        for symbol in requested:
            quote = await self._cache.get_quote(symbol, self._quote_ttl)
            if quote is not None:
                prices[symbol] = quote
            else:
                missing.append(symbol)

        if not missing:
            return {"prices": prices, "errors": errors}

        failure: Optional[Exception] = None
        try:
            fetched = await self._fetch_quotes(missing)
        except Exception as exc:
            logger.warning(f"Spot price fetch failed for {missing}: {exc}")
            fetched = {}
            failure = exc

        for symbol in missing:
            if symbol in fetched:
                prices[symbol] = fetched[symbol]
                continue
            stale = await self._fallback_quote(symbol)
            if stale is not None:
                prices[symbol] = stale
            elif failure is not None:
                errors[symbol] = str(failure)
            else:
                errors[symbol] = f"No price data found for {symbol}"

        return {"prices": prices, "errors": errors}

    async def _fetch_quotes(self, symbols: List[str]) -> Dict[str, Dict[str, Any]]:
        await self._quota.check()
        if not await self._limiter.try_acquire(self._limiter_key):
            await self._quota.record_limited()
            raise RateLimitExceededError("Rate limit exceeded and no cache available")
        await self._quota.record_call()

        data = await self._acq.get_simple_prices(symbols)
        now_ms = int(time.time() * 1000)
        quotes: Dict[str, Dict[str, Any]] = {}
        for symbol in symbols:
            entry = data.get(symbol)
            if not isinstance(entry, dict) or entry.get("usd") is None:
                continue
            quote = Quote(
                symbol=symbol,
                usd=entry["usd"],
                usd_24h_change=entry.get("usd_24h_change"),
                last_updated=now_ms,
            ).model_dump()
            await self._cache.set_quote(symbol, quote)
            quotes[symbol] = quote
        return quotes

    async def _fallback_quote(self, symbol: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._cache.get_latest_quote(symbol)
        except Exception as exc:
            logger.warning(f"Fallback quote read failed for {symbol}: {exc}")
            return None

    # ── Stats ─────────────────────────────────────────────

    async def usage(self) -> Dict[str, Any]:
        """Upstream budget: this minute's window and this month's calls"""
        return {
            "window": {
                "used": await self._limiter.window_usage(self._limiter_key),
                "limit": self._limiter.limit,
                "seconds": self._limiter.window,
            },
            "monthly": await self._quota.usage(),
        }


# ── Module-level singleton ───────────────────────────────
_price_service: Optional[PriceService] = None


def get_price_service() -> PriceService:
    global _price_service
    if _price_service is None:
        _price_service = PriceService()
    return _price_service
