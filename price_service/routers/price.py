"""
Price routes
GET /api/price/history/{token_id}   - resampled price series
GET /api/price/current              - spot prices for several tokens
"""

from typing import Optional

from fastapi import APIRouter, Query

from price_service.models.price import Interval, Timeframe
from price_service.models.response import ApiResponse
from price_service.services.price_service import get_price_service

router = APIRouter(prefix="/api/price", tags=["Prices"])


@router.get("/history/{token_id}", response_model=ApiResponse)
async def get_price_history(
    token_id: str,
    timeframe: Timeframe = Query(default=Timeframe.DAY, description="1h / 24h / 7d"),
    interval: Interval = Query(default=Interval.M15, description="15m / 1h / 4h / 1d"),
):
    """Price series for a token, thinned to the interval"""
    points = await get_price_service().get_token_price(token_id, timeframe, interval)
    return ApiResponse.ok(
        data={
            "token_id": token_id,
            "timeframe": timeframe.value,
            "interval": interval.value,
            "count": len(points),
            "prices": points,
        },
    )


@router.get("/current", response_model=ApiResponse)
async def get_current_prices(
    symbols: Optional[str] = Query(default=None, description="Comma separated token ids"),
):
    """Spot USD prices; symbols that could not be priced are listed under errors"""
    tokens = [s.strip() for s in symbols.split(",") if s.strip()] if symbols else []
    result = await get_price_service().get_current_prices(tokens)
    message = "success" if not result["errors"] else f"{len(result['errors'])} symbol(s) failed"
    return ApiResponse.ok(data=result, message=message)
