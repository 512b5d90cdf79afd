"""
Price pipeline layer tests

Covers:
  - configuration (service discovery, env parsing, upstream URL)
  - models and cache keys
  - processing layer (normalisation, greedy resampling)
  - cache layer (per-timeframe freshness, stale reads, sweeping, quotes)
  - rate-limit layer (sliding window, concurrent callers)
  - quota layer (monthly ceiling, calendar month boundary)
  - acquisition layer (httpx.MockTransport, no network)

No database is initialised, so every layer runs on its in-memory backend.
"""

import asyncio
import os
import sys
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import httpx
import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from price_service.errors import QuotaExceededError, UpstreamError  # noqa: E402
from price_service.layers.acquisition import AcquisitionLayer  # noqa: E402
from price_service.layers.cache import PriceCacheLayer, make_cache_key  # noqa: E402
from price_service.layers.cleanup import CleanupLayer  # noqa: E402
from price_service.layers.processing import ProcessingLayer  # noqa: E402
from price_service.layers.quota import QuotaLayer, month_start  # noqa: E402
from price_service.layers.rate_limit import RateLimitLayer  # noqa: E402
from price_service.models.price import Interval, Timeframe  # noqa: E402

DAY = 24 * 60 * 60


class FakeClock:
    """Mutable epoch-seconds clock"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _minute_series(n: int, start_ms: int = 1_700_000_000_000) -> list:
    return [(start_ms + i * 60_000, 0.01 + i * 0.0001) for i in range(n)]


# ─────────────────────────────────────────────────────────
# 1. Configuration
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        from price_service.config import PriceServiceSettings
        s = PriceServiceSettings()
        assert s.MONGODB_DATABASE == "argos"
        assert s.RATE_LIMIT_PER_MINUTE == 30
        assert s.RATE_LIMIT_WINDOW_SECONDS == 60
        assert s.MONTHLY_CALL_LIMIT - s.MONTHLY_CALL_BUFFER == 9900
        assert (s.PRICE_CACHE_TTL_1H, s.PRICE_CACHE_TTL_24H, s.PRICE_CACHE_TTL_7D) == (60, 300, 900)
        assert s.PRICE_CACHE_MAX_AGE == DAY
        assert s.DEFAULT_TOKENS == ["project89", "ethereum", "bitcoin"]
        assert s.TOKEN_ALIASES["89"] == "project89"

    def test_mongo_uri_with_auth(self):
        from price_service.config import PriceServiceSettings
        s = PriceServiceSettings(
            MONGODB_USERNAME="user",
            MONGODB_PASSWORD="pass",
            MONGODB_HOST="db-host",
            MONGODB_PORT=27017,
            MONGODB_DATABASE="argos",
        )
        assert "user:pass@db-host:27017/argos" in s.MONGO_URI

    def test_redis_url_with_auth(self):
        from price_service.config import PriceServiceSettings
        s = PriceServiceSettings(REDIS_PASSWORD="secret", REDIS_HOST="cache", REDIS_PORT=6379)
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_docker_service_discovery(self):
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from price_service import config as cfg_module
            assert cfg_module._default_mongo_host() == "mongodb"
            assert cfg_module._default_redis_host() == "redis"

    def test_pro_upstream_url(self):
        from price_service.config import PriceServiceSettings
        assert "pro-api" not in PriceServiceSettings(COINGECKO_PRO=False).UPSTREAM_BASE_URL
        assert "pro-api" in PriceServiceSettings(COINGECKO_PRO=True).UPSTREAM_BASE_URL


# ─────────────────────────────────────────────────────────
# 2. Models / cache keys
# ─────────────────────────────────────────────────────────

class TestModels:
    def test_timeframe_days(self):
        assert Timeframe.HOUR.days == 1
        assert Timeframe.DAY.days == 1
        assert Timeframe.WEEK.days == 7

    def test_interval_widths(self):
        assert Interval("15m").minutes == 15
        assert Interval("4h").minutes == 240
        assert Interval("1d").milliseconds == 86_400_000

    def test_cache_key_format(self):
        assert make_cache_key("project89", Timeframe.DAY, Interval.H1) == "price_project89_24h_1h"
        assert make_cache_key("bitcoin", "7d", "1d") == "price_bitcoin_7d_1d"


# ─────────────────────────────────────────────────────────
# 3. Processing layer
# ─────────────────────────────────────────────────────────

class TestProcessingLayer:
    def setup_method(self):
        self.proc = ProcessingLayer()

    def test_normalize_empty(self):
        assert self.proc.normalize_series([]) == []

    def test_normalize_drops_sorts_dedupes(self):
        raw = [
            [3000, "3.5"],
            [1000, 1.0],
            [2000, None],
            [1000, 1.5],
            ["bad", 2.0],
        ]
        assert self.proc.normalize_series(raw) == [(1000, 1.5), (3000, 3.5)]

    def test_normalize_drops_non_finite(self):
        raw = [
            [1000, 1.0],
            ["Infinity", 2.0],
            [2000, float("inf")],
            [3000, float("nan")],
            [float("-inf"), 1.0],
            [4000, "-Infinity"],
            [5000, 5.0],
        ]
        assert self.proc.normalize_series(raw) == [(1000, 1.0), (5000, 5.0)]

    def test_hourly_resample_of_minute_series(self):
        series = _minute_series(24 * 60)
        out = self.proc.resample(series, Interval.H1)
        assert out[0] == series[0]
        assert len(out) == 24
        gaps = [b[0] - a[0] for a, b in zip(out, out[1:])]
        assert all(g >= 3_600_000 for g in gaps)

    def test_resample_measures_from_last_kept_point(self):
        minute = 60_000
        series = [(0, 1.0), (10 * minute, 2.0), (20 * minute, 3.0), (25 * minute, 4.0), (36 * minute, 5.0)]
        out = self.proc.resample(series, Interval.M15)
        assert [ts for ts, _ in out] == [0, 20 * minute, 36 * minute]

    def test_resample_idempotent(self):
        irregular = [(t, float(i)) for i, t in enumerate([0, 7, 9, 15, 31, 32, 50, 64, 65, 90])]
        for width in (1, 10, 15, 30):
            once = self.proc.resample(irregular, width)
            assert self.proc.resample(once, width) == once

    def test_to_points(self):
        assert self.proc.to_points([(1, 2)]) == [{"timestamp": 1, "price": 2.0}]


# ─────────────────────────────────────────────────────────
# 4. Cache layer
# ─────────────────────────────────────────────────────────

class TestCacheLayer:
    def setup_method(self):
        self.clock = FakeClock()
        self.cache = PriceCacheLayer(clock=self.clock)

    def test_miss(self):
        assert asyncio.run(self.cache.get("price_x_24h_1h", Timeframe.DAY)) is None
        assert asyncio.run(self.cache.get_latest("price_x_24h_1h")) is None

    @pytest.mark.parametrize("timeframe,duration", [("1h", 60), ("24h", 300), ("7d", 900)])
    def test_fresh_within_duration(self, timeframe, duration):
        series = _minute_series(3)
        asyncio.run(self.cache.set("k", series, timeframe))
        self.clock.advance(duration - 1)
        assert asyncio.run(self.cache.get("k", timeframe)) == series
        self.clock.advance(1)
        assert asyncio.run(self.cache.get("k", timeframe)) is None
        # the stale entry is still there for fallback reads
        assert asyncio.run(self.cache.get_latest("k")) == series

    def test_unknown_timeframe_uses_daily_duration(self):
        assert self.cache.cache_duration("30d") == self.cache.cache_duration(Timeframe.DAY)

    def test_set_overwrites(self):
        asyncio.run(self.cache.set("k", [(1, 1.0)], Timeframe.DAY))
        asyncio.run(self.cache.set("k", [(2, 2.0)], Timeframe.DAY))
        assert asyncio.run(self.cache.get_latest("k")) == [(2, 2.0)]

    def test_sweep_removes_only_old_entries(self):
        ages = {"fresh": 60, "day_minus": DAY - 60, "day_plus": DAY + 60, "week": 7 * DAY}
        start = self.clock.now
        for key, age in ages.items():
            self.clock.now = start - age
            asyncio.run(self.cache.set(key, [(1, 1.0)], Timeframe.DAY))
        self.clock.now = start

        removed = asyncio.run(self.cache.sweep(DAY))
        assert removed == 2
        for key in ("fresh", "day_minus"):
            assert asyncio.run(self.cache.get_latest(key)) is not None
        for key in ("day_plus", "week"):
            assert asyncio.run(self.cache.get_latest(key)) is None

    def test_quotes(self):
        quote = {"symbol": "bitcoin", "usd": 1.0, "usd_24h_change": 0.5, "last_updated": 1}
        asyncio.run(self.cache.set_quote("bitcoin", quote))
        assert asyncio.run(self.cache.get_quote("bitcoin", ttl=300)) == quote
        self.clock.advance(301)
        assert asyncio.run(self.cache.get_quote("bitcoin", ttl=300)) is None
        assert asyncio.run(self.cache.get_latest_quote("bitcoin")) == quote

    def test_stats_memory_backend(self):
        asyncio.run(self.cache.set("k", [(1, 1.0)], Timeframe.DAY))
        stats = asyncio.run(self.cache.stats())
        assert stats == {"backend": "memory", "series": 1, "quotes": 0}


class TestCleanupLayer:
    def setup_method(self):
        self.clock = FakeClock()
        self.cache = PriceCacheLayer(clock=self.clock)
        self.clock.advance(-2 * DAY)
        asyncio.run(self.cache.set("old", [(1, 1.0)], Timeframe.DAY))
        self.clock.advance(2 * DAY)

    def test_maybe_sweep_skips_above_probability(self):
        cleanup = CleanupLayer(cache=self.cache, max_age=DAY, probability=0.01, rng=lambda: 0.5)
        assert asyncio.run(cleanup.maybe_sweep()) == 0
        assert asyncio.run(self.cache.get_latest("old")) is not None

    def test_maybe_sweep_runs_below_probability(self):
        cleanup = CleanupLayer(cache=self.cache, max_age=DAY, probability=0.01, rng=lambda: 0.001)
        assert asyncio.run(cleanup.maybe_sweep()) == 1
        assert asyncio.run(self.cache.get_latest("old")) is None

    def test_maybe_sweep_swallows_backend_failure(self):
        cleanup = CleanupLayer(cache=self.cache, max_age=DAY, probability=1.0, rng=lambda: 0.0)
        with patch.object(self.cache, "sweep", side_effect=RuntimeError("db down")):
            assert asyncio.run(cleanup.maybe_sweep()) == 0


# ─────────────────────────────────────────────────────────
# 5. Rate-limit layer
# ─────────────────────────────────────────────────────────

class TestRateLimitLayer:
    def setup_method(self):
        self.clock = FakeClock()
        self.limiter = RateLimitLayer(limit=30, window=60, clock=self.clock)

    def test_grants_up_to_limit(self):
        async def run():
            return [await self.limiter.try_acquire("coingecko") for _ in range(31)]
        results = asyncio.run(run())
        assert results[:30] == [True] * 30
        assert results[30] is False

    def test_concurrent_callers_never_exceed_limit(self):
        async def run():
            return await asyncio.gather(*(self.limiter.try_acquire("coingecko") for _ in range(100)))
        assert sum(asyncio.run(run())) == 30

    def test_window_slides(self):
        async def burst(n):
            return sum([await self.limiter.try_acquire("coingecko") for _ in range(n)])
        assert asyncio.run(burst(30)) == 30
        self.clock.advance(30)
        assert asyncio.run(burst(5)) == 0
        self.clock.advance(30.001)
        assert asyncio.run(burst(40)) == 30

    def test_rolling_window_counts_recent_grants(self):
        async def burst(n):
            return sum([await self.limiter.try_acquire("coingecko") for _ in range(n)])
        assert asyncio.run(burst(20)) == 20
        self.clock.advance(40)
        assert asyncio.run(burst(20)) == 10
        # the first 20 leave the window, the last 10 stay in it
        self.clock.advance(21)
        assert asyncio.run(burst(30)) == 20
        assert asyncio.run(self.limiter.window_usage("coingecko")) == 30

    def test_keys_are_independent(self):
        async def run():
            for _ in range(30):
                await self.limiter.try_acquire("a")
            return await self.limiter.try_acquire("a"), await self.limiter.try_acquire("b")
        assert asyncio.run(run()) == (False, True)

    def test_redis_backend_concurrent_callers(self):
        async def run():
            redis = fakeredis.FakeAsyncRedis(decode_responses=True)
            with patch("price_service.layers.rate_limit.get_redis", return_value=redis):
                results = await asyncio.gather(
                    *(self.limiter.try_acquire("coingecko") for _ in range(100))
                )
                usage = await self.limiter.window_usage("coingecko")
            await redis.aclose()
            return results, usage

        results, usage = asyncio.run(run())
        assert sum(results) == 30
        assert usage == 30

    def test_mongo_backend_single_atomic_update(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(
            return_value={"_id": "coingecko", "requests": [1], "granted": True}
        )
        db = MagicMock()
        db.__getitem__.return_value = collection

        with patch("price_service.layers.rate_limit.get_redis", return_value=None), \
                patch("price_service.layers.rate_limit.get_mongo_db", return_value=db):
            assert asyncio.run(self.limiter.try_acquire("coingecko")) is True

            args, kwargs = collection.find_one_and_update.call_args
            assert args[0] == {"_id": "coingecko"}
            assert kwargs["upsert"] is True
            now = int(self.clock() * 1000)
            pipeline = args[1]
            assert pipeline[0]["$set"]["requests"]["$filter"]["cond"] == {"$gt": ["$$ts", now - 60_000]}
            assert pipeline[1]["$set"]["granted"]["$lt"][1] == 30
            assert pipeline[2]["$set"]["requests"]["$cond"][1] == {"$concatArrays": ["$requests", [now]]}

            collection.find_one_and_update.return_value = {"_id": "coingecko", "granted": False}
            assert asyncio.run(self.limiter.try_acquire("coingecko")) is False


# ─────────────────────────────────────────────────────────
# 6. Quota layer
# ─────────────────────────────────────────────────────────

class DateClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestQuotaLayer:
    def test_month_start(self):
        now = datetime(2026, 3, 15, 12, 30, tzinfo=timezone.utc)
        assert month_start(now) == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_check_raises_at_ceiling(self):
        quota = QuotaLayer(hard_limit=3, safety_buffer=1)
        asyncio.run(quota.check())
        asyncio.run(quota.record_call())
        asyncio.run(quota.check())
        asyncio.run(quota.record_call())
        with pytest.raises(QuotaExceededError):
            asyncio.run(quota.check())

    def test_limited_records_do_not_count(self):
        quota = QuotaLayer(hard_limit=2, safety_buffer=1)
        for _ in range(5):
            asyncio.run(quota.record_limited())
        asyncio.run(quota.check())
        usage = asyncio.run(quota.usage())
        assert usage["used"] == 0
        assert usage["limited"] == 5
        assert usage["remaining"] == 1

    def test_previous_month_not_counted(self):
        clock = DateClock(datetime(2026, 2, 28, 23, 59, tzinfo=timezone.utc))
        quota = QuotaLayer(hard_limit=2, safety_buffer=0, clock=clock)
        asyncio.run(quota.record_call())
        asyncio.run(quota.record_call())
        with pytest.raises(QuotaExceededError):
            asyncio.run(quota.check())
        clock.now = datetime(2026, 3, 1, 0, 1, tzinfo=timezone.utc)
        asyncio.run(quota.check())
        assert asyncio.run(quota.count()) == 0

    def test_memory_records_kept_for_current_month_only(self):
        clock = DateClock(datetime(2025, 1, 10, tzinfo=timezone.utc))
        quota = QuotaLayer(hard_limit=1000, safety_buffer=0, clock=clock)

        async def record(n):
            for _ in range(n):
                await quota.record_call()

        for month in range(1, 13):
            clock.now = datetime(2025, month, 10, tzinfo=timezone.utc)
            asyncio.run(record(100))
        assert len(quota._records) == 100
        assert asyncio.run(quota.count()) == 100


# ─────────────────────────────────────────────────────────
# 7. Acquisition layer
# ─────────────────────────────────────────────────────────

def _acquisition(handler, **kwargs) -> AcquisitionLayer:
    kwargs.setdefault("api_key", "")
    kwargs.setdefault("pro", False)
    return AcquisitionLayer(
        base_url="https://upstream.test/api/v3",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestAcquisitionLayer:
    def test_market_chart_request(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"prices": [[1, 2.0], [2, 3.0]]})

        acq = _acquisition(handler, api_key="demo-key")
        prices = asyncio.run(acq.get_market_chart("project89", 1))

        assert prices == [[1, 2.0], [2, 3.0]]
        req = seen[0]
        assert req.method == "GET"
        assert req.url.path == "/api/v3/coins/project89/market_chart"
        assert req.url.params["vs_currency"] == "usd"
        assert req.url.params["days"] == "1"
        assert req.headers["x-cg-demo-api-key"] == "demo-key"

    def test_pro_key_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"prices": []})

        asyncio.run(_acquisition(handler, api_key="pro-key", pro=True).get_market_chart("x", 7))
        assert seen[0].headers["x-cg-pro-api-key"] == "pro-key"
        assert "x-cg-demo-api-key" not in seen[0].headers

    def test_non_2xx_carries_status_and_body(self):
        acq = _acquisition(lambda r: httpx.Response(500, text="boom"))
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(acq.get_market_chart("x", 1))
        assert excinfo.value.status == 500
        assert excinfo.value.body == "boom"
        assert excinfo.value.status_code == 502

    def test_not_found_maps_to_404(self):
        acq = _acquisition(lambda r: httpx.Response(404, json={"error": "coin not found"}))
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(acq.get_market_chart("nope", 1))
        assert excinfo.value.status_code == 404

    def test_invalid_json(self):
        acq = _acquisition(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(UpstreamError, match="invalid JSON"):
            asyncio.run(acq.get_market_chart("x", 1))

    @pytest.mark.parametrize("payload", [{}, {"prices": "nope"}, {"prices": [[1]]}, ["prices"]])
    def test_malformed_payload(self, payload):
        acq = _acquisition(lambda r: httpx.Response(200, json=payload))
        with pytest.raises(UpstreamError):
            asyncio.run(acq.get_market_chart("x", 1))

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(UpstreamError, match="request failed"):
            asyncio.run(_acquisition(handler).get_market_chart("x", 1))

    def test_simple_prices(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"bitcoin": {"usd": 1.0, "usd_24h_change": 2.0}})

        data = asyncio.run(_acquisition(handler).get_simple_prices(["bitcoin", "ethereum"]))
        assert data["bitcoin"]["usd"] == 1.0
        assert seen[0].url.path.endswith("/simple/price")
        assert seen[0].url.params["ids"] == "bitcoin,ethereum"
        assert seen[0].url.params["include_24hr_change"] == "true"

    def test_client_shared_until_closed(self):
        acq = _acquisition(lambda r: httpx.Response(200, json={"prices": []}))

        async def run():
            await acq.get_market_chart("x", 1)
            first = acq._client
            await acq.get_market_chart("x", 7)
            assert acq._client is first
            await acq.aclose()
            return first

        client = asyncio.run(run())
        assert client.is_closed
        assert acq._client is None
