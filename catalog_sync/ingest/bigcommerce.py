"""BigCommerce catalog API client."""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable

import httpx

from catalog_sync.ingest import ConfigError
from catalog_sync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.bigcommerce.com"
LISTING_TIMEOUT = 15.0
DETAIL_TIMEOUT = 30.0
MAX_RATE_LIMIT_RETRIES = 3
DETAIL_INCLUDE = "images,variants,options"


class RateLimitExceeded(RuntimeError):
    """Raised when the API keeps answering 429 past the retry ceiling."""


class BigCommerceClient:
    """Every call to the store API goes through :meth:`send`.

    The client shares one :class:`RateLimiter` across all concurrent callers,
    so quota bookkeeping stays consistent no matter how many pages or chunks
    are in flight.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        rate_limiter: RateLimiter | None = None,
        session: httpx.AsyncClient | None = None,
        max_retries: int = MAX_RATE_LIMIT_RETRIES,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_retries = max_retries
        self._owns_session = session is None
        self._session = session or httpx.AsyncClient(timeout=DETAIL_TIMEOUT)
        self._headers = {
            "X-Auth-Token": token,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_env(
        cls,
        *,
        rate_limiter: RateLimiter | None = None,
        session: httpx.AsyncClient | None = None,
    ) -> "BigCommerceClient":
        api_url = os.environ.get("BIGCOMMERCE_API_URL", DEFAULT_API_URL)
        try:
            store_hash = os.environ["BIGCOMMERCE_STORE_HASH"]
            token = os.environ["BIGCOMMERCE_ACCESS_TOKEN"]
        except KeyError as exc:
            raise ConfigError(f"Missing environment variable: {exc.args[0]}") from exc
        return cls(
            f"{api_url.rstrip('/')}/stores/{store_hash}",
            token,
            rate_limiter=rate_limiter,
            session=session,
        )

    async def close(self) -> None:
        if self._owns_session:
            await self._session.aclose()

    async def send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        timeout: float = DETAIL_TIMEOUT,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        retries = 0
        while True:
            await self.rate_limiter.before_request()
            response = await self._session.request(
                method, url, params=params, headers=self._headers, timeout=timeout
            )
            self.rate_limiter.record_response(response.headers)
            if response.status_code != 429:
                response.raise_for_status()
                return response
            if retries >= self.max_retries:
                logger.error("Rate limit still exceeded after %s retries: %s %s", retries, method, path)
                raise RateLimitExceeded(f"{method} {path} rate limited after {retries} retries")
            retries += 1
            logger.warning("429 from %s; retry %s/%s after reset", path, retries, self.max_retries)
            await self.rate_limiter.backoff(response.headers)

    async def get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        timeout: float = DETAIL_TIMEOUT,
    ) -> Any:
        response = await self.send("GET", path, params=params, timeout=timeout)
        return response.json()

    async def list_channel_assignments(self, channel_id: int, *, page: int, limit: int) -> Any:
        return await self.get_json(
            "/v3/catalog/products/channel-assignments",
            params={"channel_id:in": channel_id, "limit": limit, "page": page},
            timeout=LISTING_TIMEOUT,
        )

    async def list_products(self, ids: Iterable[int], *, parent_category: int | None = None) -> Any:
        id_list = list(ids)
        params: dict[str, Any] = {
            "id:in": ",".join(str(product_id) for product_id in id_list),
            "availability": "available",
            "include": DETAIL_INCLUDE,
            "limit": max(len(id_list), 1),
            "page": 1,
        }
        if parent_category:
            params["categories:in"] = parent_category
        return await self.get_json("/v3/catalog/products", params=params)

    async def list_categories(self, *, page: int, limit: int = 250) -> Any:
        return await self.get_json(
            "/v3/catalog/trees/categories",
            params={"limit": limit, "page": page},
            timeout=LISTING_TIMEOUT,
        )

    async def list_brands(self, *, page: int, limit: int = 200) -> Any:
        return await self.get_json(
            "/v3/catalog/brands",
            params={"limit": limit, "page": page},
            timeout=LISTING_TIMEOUT,
        )

    async def list_inventory_items(self, location_id: int, *, page: int, limit: int = 1000) -> Any:
        return await self.get_json(
            f"/v3/inventory/locations/{location_id}/items",
            params={"limit": limit, "page": page},
            timeout=LISTING_TIMEOUT,
        )


def total_pages(payload: Any) -> int:
    """Page count from a ``meta.pagination`` block, 1 when absent or malformed."""
    try:
        value = int(payload["meta"]["pagination"]["total_pages"])
    except (KeyError, TypeError, ValueError):
        return 1
    return max(value, 1)


def page_data(payload: Any) -> list[dict[str, Any]] | None:
    """The ``data`` list of a page, or ``None`` when the payload is malformed."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, list):
        return None
    return [item for item in data if isinstance(item, dict)]
