"""
Price pipeline error taxonomy
Every error carries the HTTP status it is rendered with by the API layer
"""

from typing import Any, Optional


class PriceServiceError(Exception):
    """Base class for price pipeline failures"""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class QuotaExceededError(PriceServiceError):
    """Monthly upstream budget exhausted (soft limit)"""

    status_code = 503


class RateLimitExceededError(PriceServiceError):
    """Per-minute window full and nothing cached to fall back on"""

    status_code = 429


class UpstreamError(PriceServiceError):
    """Upstream HTTP failure or malformed payload"""

    status_code = 502

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message, status_code=404 if status == 404 else None)
        self.status = status
        self.body = body


class EmptyResultError(PriceServiceError):
    """Upstream answered with zero data points"""

    status_code = 404


class PriceFetchError(PriceServiceError):
    """Terminal failure of a price request, chained to its original cause"""

    def __init__(self, cause: Exception):
        status_code = cause.status_code if isinstance(cause, PriceServiceError) else 500
        super().__init__(f"Failed to fetch price data: {cause}", status_code=status_code)
        self.cause = cause
