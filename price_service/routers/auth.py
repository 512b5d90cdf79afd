"""
Admin authentication
Maintenance endpoints require the `x-api-key` header to match ADMIN_API_KEY.
With no key configured they are closed.
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from price_service.config import settings


async def require_admin_key(
    x_api_key: Optional[str] = Header(default=None),
) -> str:
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin endpoints are disabled")
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API key is required")
    if not hmac.compare_digest(x_api_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
    return x_api_key
