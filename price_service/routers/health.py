"""Health check routes"""

import time

from fastapi import APIRouter

from price_service import __version__
from price_service.db import check_health

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health():
    """Service health, including database connections"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Argos PriceService",
            "databases": db_health,
        },
        "message": "Service is running",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe"""
    return {"ready": True}
