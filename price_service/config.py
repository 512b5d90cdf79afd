"""
Price service configuration
Reads settings from the environment, detects Docker and switches to service discovery
"""

import os
from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """Whether we are running inside a Docker container"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker uses the 'mongodb' service name, local runs use 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker uses the 'redis' service name, local runs use 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class PriceServiceSettings(BaseSettings):
    """Price service settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Basics ────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8089)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )
    ADMIN_API_KEY: str = Field(default="")

    # ── MongoDB (service discovery aware) ─────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="argos")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis (service discovery aware) ───────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── Upstream price API ────────────────────────────────
    COINGECKO_API_URL: str = Field(default="https://api.coingecko.com/api/v3")
    COINGECKO_PRO_API_URL: str = Field(default="https://pro-api.coingecko.com/api/v3")
    COINGECKO_PRO: bool = Field(default=False)
    COINGECKO_API_KEY: str = Field(default="")
    UPSTREAM_TIMEOUT: float = Field(default=10.0)   # seconds

    @property
    def UPSTREAM_BASE_URL(self) -> str:
        return self.COINGECKO_PRO_API_URL if self.COINGECKO_PRO else self.COINGECKO_API_URL

    # ── Tokens ────────────────────────────────────────────
    DEFAULT_TOKENS: List[str] = Field(default_factory=lambda: ["project89", "ethereum", "bitcoin"])
    TOKEN_ALIASES: Dict[str, str] = Field(default_factory=lambda: {"89": "project89"})

    # ── Cache ─────────────────────────────────────────────
    PRICE_CACHE_TTL_1H: int = Field(default=60)        # hourly series TTL (seconds)
    PRICE_CACHE_TTL_24H: int = Field(default=300)      # daily series TTL
    PRICE_CACHE_TTL_7D: int = Field(default=900)       # weekly series TTL
    CURRENT_PRICE_CACHE_TTL: int = Field(default=300)  # spot quote TTL
    PRICE_CACHE_MAX_AGE: int = Field(default=86400)    # entries older than this are swept
    CACHE_CLEANUP_PROBABILITY: float = Field(default=0.01)
    CACHE_SWEEP_INTERVAL: int = Field(default=900)     # background sweep period, 0 disables

    # ── Rate limit / quota ────────────────────────────────
    RATE_LIMIT_KEY: str = Field(default="coingecko")
    RATE_LIMIT_PER_MINUTE: int = Field(default=30)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=60)
    MONTHLY_CALL_LIMIT: int = Field(default=10000)
    MONTHLY_CALL_BUFFER: int = Field(default=100)

    # ── Logging ───────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> PriceServiceSettings:
    """Global settings singleton"""
    return PriceServiceSettings()


settings = get_settings()
