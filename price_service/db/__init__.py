"""
Database connection management
MongoDB (async, motor) and Redis (async) connections in one place
"""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING
from redis.asyncio import Redis, ConnectionPool

from price_service.config import settings

logger = logging.getLogger(__name__)

# ── Collections ──────────────────────────────────────────
PRICE_CACHE = "price_cache"
PRICE_QUOTES = "price_quotes"
RATE_LIMITS = "rate_limits"
RATE_LIMIT_STATS = "rate_limit_stats"

# ── Global connection instances ──────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def init_mongodb() -> bool:
    """Open the MongoDB connection, return whether it succeeded"""
    global _mongo_client, _mongo_db
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB disabled, skipping init")
        return False
    try:
        _mongo_client = AsyncIOMotorClient(
            settings.MONGO_URI,
            maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
            minPoolSize=settings.MONGO_MIN_CONNECTIONS,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
        )
        _mongo_db = _mongo_client[settings.MONGODB_DATABASE]
        await _mongo_client.admin.command("ping")
        await ensure_indexes(_mongo_db)
        logger.info(f"MongoDB connected: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"MongoDB connection failed (continuing in degraded mode): {exc}")
        _mongo_client = None
        _mongo_db = None
        return False


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Indexes backing the sweeper and the monthly usage count"""
    await db[PRICE_CACHE].create_index([("fetched_at", ASCENDING)])
    await db[PRICE_QUOTES].create_index([("fetched_at", ASCENDING)])
    await db[RATE_LIMIT_STATS].create_index([("kind", ASCENDING), ("timestamp", ASCENDING)])


async def init_redis() -> bool:
    """Open the Redis connection, return whether it succeeded"""
    global _redis_client, _redis_pool
    if not settings.REDIS_ENABLED:
        logger.info("Redis disabled, skipping init")
        return False
    try:
        _redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
        )
        _redis_client = Redis(connection_pool=_redis_pool)
        await _redis_client.ping()
        logger.info(f"Redis connected: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"Redis connection failed (continuing in degraded mode): {exc}")
        _redis_client = None
        _redis_pool = None
        return False


async def close_connections():
    """Close every database connection"""
    global _mongo_client, _mongo_db, _redis_client, _redis_pool
    if _mongo_client:
        _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        logger.info("MongoDB connection closed")
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis connection closed")


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    """MongoDB database handle (may be None)"""
    return _mongo_db


def get_redis() -> Optional[Redis]:
    """Redis client (may be None)"""
    return _redis_client


async def check_health() -> dict:
    """Health of every database connection"""
    result = {
        "mongodb": {"status": "disabled"},
        "redis": {"status": "disabled"},
    }
    if _mongo_client:
        try:
            await _mongo_client.admin.command("ping")
            result["mongodb"] = {"status": "healthy", "host": settings.MONGODB_HOST}
        except Exception as exc:
            result["mongodb"] = {"status": "unhealthy", "error": str(exc)}
    elif settings.MONGODB_ENABLED:
        result["mongodb"] = {"status": "disconnected"}

    if _redis_client:
        try:
            await _redis_client.ping()
            result["redis"] = {"status": "healthy", "host": settings.REDIS_HOST}
        except Exception as exc:
            result["redis"] = {"status": "unhealthy", "error": str(exc)}
    elif settings.REDIS_ENABLED:
        result["redis"] = {"status": "disconnected"}

    return result
