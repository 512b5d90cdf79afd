"""
Cache maintenance routes
GET  /api/cache/stats     - cache entry counts and upstream budget
POST /api/cache/sweep     - drop entries older than the max age
POST /api/cache/clear     - drop one price series
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from price_service.layers.cache import get_cache_layer, make_cache_key
from price_service.layers.cleanup import get_cleanup_layer
from price_service.models.price import Interval, Timeframe
from price_service.models.response import ApiResponse
from price_service.routers.auth import require_admin_key
from price_service.services.price_service import get_price_service

router = APIRouter(prefix="/api/cache", tags=["Cache"], dependencies=[Depends(require_admin_key)])


class ClearRequest(BaseModel):
    token_id: str
    timeframe: Timeframe
    interval: Interval


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """Entry counts of the cache backend plus rate-limit and monthly usage"""
    return ApiResponse.ok(data={
        "cache": await get_cache_layer().stats(),
        "usage": await get_price_service().usage(),
    })


@router.post("/sweep", response_model=ApiResponse)
async def sweep_cache():
    removed = await get_cleanup_layer().sweep_now()
    return ApiResponse.ok(data={"removed": removed}, message=f"Removed {removed} stale entries")


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(body: ClearRequest):
    svc = get_price_service()
    key = make_cache_key(svc.resolve_token(body.token_id), body.timeframe, body.interval)
    removed = await get_cache_layer().delete(key)
    return ApiResponse.ok(data={"key": key, "removed": removed}, message=f"Cache cleared: {key}")
