"""
Argos price service
FastAPI application entry point

Run with:
    uvicorn price_service.main:app --host 0.0.0.0 --port 8089
    python -m price_service.main
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from price_service import __version__
from price_service.config import settings
from price_service.db import init_mongodb, init_redis, close_connections
from price_service.errors import PriceServiceError
from price_service.layers.acquisition import get_acquisition_layer
from price_service.layers.cleanup import get_cleanup_layer
from price_service.models.response import ApiResponse
from price_service.routers import health, price, cache

# ── Logging ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ─────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks"""
    logger.info("=" * 60)
    logger.info(f"Argos PriceService v{__version__} starting")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   Upstream  : {settings.UPSTREAM_BASE_URL}")
    logger.info("=" * 60)

    # connection failures do not block startup, the layers degrade instead
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("All database connections ready")
    elif mongo_ok:
        logger.warning("Redis unavailable, rate limiting falls back to MongoDB")
    elif redis_ok:
        logger.warning("MongoDB unavailable, cache and quota held in process memory")
    else:
        logger.warning("No database available, running fully in process memory")

    sweeper = None
    if settings.CACHE_SWEEP_INTERVAL > 0:
        sweeper = asyncio.create_task(
            get_cleanup_layer().run_periodic(settings.CACHE_SWEEP_INTERVAL)
        )

    yield

    logger.info("Price service shutting down...")
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    await get_acquisition_layer().aclose()
    await close_connections()
    logger.info("Price service stopped")


# ── Application ──────────────────────────────────────────
app = FastAPI(
    title="Argos PriceService",
    description=(
        "Token price microservice:\n"
        "- Price history resampled to 15m / 1h / 4h / 1d\n"
        "- Spot prices for several tokens\n"
        "- Per-minute rate limit and monthly budget on upstream calls\n"
        "- Cached series served when the upstream cannot be reached\n\n"
        "**Pipeline**\n"
        "```\n"
        "Quota → Cache → Rate limit → Acquisition → Cache write → Cleanup\n"
        "        └──────── fallback to last cached series on failure ────────┘\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS ─────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-api-key"],
)


# ── Request timing ───────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── Exception handlers ───────────────────────────────────
@app.exception_handler(PriceServiceError)
async def price_error_handler(request: Request, exc: PriceServiceError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse.fail(error=type(exc).__name__, message=exc.message).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "message": str(exc)},
    )


# ── Routers ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(price.router)
app.include_router(cache.router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Argos PriceService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    uvicorn.run(
        "price_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
