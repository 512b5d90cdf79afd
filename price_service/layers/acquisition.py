"""
Layer 1 – Acquisition layer
Pulls raw price data from the upstream API (CoinGecko) over HTTP.
Any non-2xx answer or malformed payload is raised as UpstreamError.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from price_service.config import settings
from price_service.errors import UpstreamError

logger = logging.getLogger(__name__)

_BODY_PREVIEW = 500


class AcquisitionLayer:
    """Thin async client over the upstream price API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        pro: Optional[bool] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or settings.UPSTREAM_BASE_URL).rstrip("/")
        self._api_key = settings.COINGECKO_API_KEY if api_key is None else api_key
        self._pro = settings.COINGECKO_PRO if pro is None else pro
        self._timeout = timeout if timeout is not None else settings.UPSTREAM_TIMEOUT
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json"}
        if self._api_key:
            header = "x-cg-pro-api-key" if self._pro else "x-cg-demo-api-key"
            headers[header] = self._api_key
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        """Shared client so upstream connections are pooled across requests"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Single GET against the upstream API, returns decoded JSON"""
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            resp = await self._get_client().get(url, params=params, headers=self._headers())
        except httpx.RequestError as exc:
            raise UpstreamError(f"Upstream request failed: {exc}") from exc

        if not resp.is_success:
            body = resp.text[:_BODY_PREVIEW]
            logger.warning(f"Upstream {url} answered {resp.status_code}: {body}")
            if resp.status_code == 429:
                message = "Upstream rate limit exceeded"
            elif resp.status_code == 404:
                message = "Token not found upstream"
            else:
                message = f"Upstream returned HTTP {resp.status_code}"
            raise UpstreamError(message, status=resp.status_code, body=body)

        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(
                "Upstream returned invalid JSON",
                status=resp.status_code,
                body=resp.text[:_BODY_PREVIEW],
            ) from exc

    async def get_market_chart(self, token_id: str, days: int) -> List[List[Any]]:
        """Raw [[timestampMs, price], ...] for the last `days` days"""
        data = await self.fetch(
            f"coins/{token_id}/market_chart",
            {"vs_currency": "usd", "days": days},
        )
        prices = data.get("prices") if isinstance(data, dict) else None
        if not isinstance(prices, list):
            raise UpstreamError("Invalid price data received", body=str(data)[:_BODY_PREVIEW])
        for point in prices:
            if not isinstance(point, (list, tuple)) or len(point) < 2:
                raise UpstreamError(
                    f"Invalid price point received: {point!r}",
                    body=str(data)[:_BODY_PREVIEW],
                )
        return prices

    async def get_simple_prices(self, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Spot USD price and 24h change for each id"""
        data = await self.fetch(
            "simple/price",
            {
                "ids": ",".join(ids),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
            },
        )
        if not isinstance(data, dict):
            raise UpstreamError("Invalid response from upstream", body=str(data)[:_BODY_PREVIEW])
        return data


# ── Module-level singleton ───────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition
