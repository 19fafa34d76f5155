"""Channel listing pagination and chunked product detail fetches."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx

from catalog_sync.ingest.bigcommerce import BigCommerceClient, RateLimitExceeded, page_data, total_pages
from catalog_sync.ingest.models import ChannelConfig
from catalog_sync.utils.retry import retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 2000
DEFAULT_PAGE_CONCURRENCY = 20
DEFAULT_CHUNK_SIZE = 250
DEFAULT_DETAIL_CONCURRENCY = 5

UNIT_ERRORS = (httpx.HTTPError, RateLimitExceeded, ValueError)


@dataclass(slots=True)
class ProductListing:
    ids: list[int]
    total_pages: int
    failed_pages: list[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_pages


@dataclass(slots=True)
class FetchResult:
    products: list[dict[str, Any]] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)
    missing: list[int] = field(default_factory=list)
    duplicates: int = 0
    requested: int = 0

    @property
    def returned_ids(self) -> list[int]:
        return [product["id"] for product in self.products]


def chunked(items: list[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[start : start + size] for start in range(0, len(items), size)]


def dedupe_ids(ids: Iterable[int]) -> tuple[list[int], int]:
    """Order-preserving de-duplication; returns the unique ids and the number dropped."""
    values = list(ids)
    seen: set[int] = set()
    unique: list[int] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique, len(values) - len(unique)


async def gather_bounded(
    factories: Iterable[Callable[[], Awaitable[T]]], *, concurrency: int
) -> list[T]:
    semaphore = asyncio.Semaphore(concurrency)

    async def _run(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    return list(await asyncio.gather(*(_run(factory) for factory in factories)))


class ProductPaginator:
    """Walks a channel's product assignments across every page."""

    def __init__(
        self,
        client: BigCommerceClient,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        concurrency: int = DEFAULT_PAGE_CONCURRENCY,
    ) -> None:
        self.client = client
        self.page_size = page_size
        self.concurrency = concurrency

    async def list_all_ids(self, channel_id: int) -> ProductListing:
        first = await self.client.list_channel_assignments(channel_id, page=1, limit=self.page_size)
        pages = total_pages(first)
        listing = ProductListing(ids=[], total_pages=pages)
        first_ids = self._extract_ids(first, 1)
        if first_ids is None:
            listing.failed_pages.append(1)
        else:
            listing.ids.extend(first_ids)
        if pages > 1:
            logger.info("Channel %s has %s assignment pages", channel_id, pages)
            results = await gather_bounded(
                (self._page_loader(channel_id, page) for page in range(2, pages + 1)),
                concurrency=self.concurrency,
            )
            for page, ids in zip(range(2, pages + 1), results):
                if ids is None:
                    listing.failed_pages.append(page)
                    continue
                listing.ids.extend(ids)
        logger.info(
            "Listed %s product ids for channel %s (%s pages, %s failed)",
            len(listing.ids),
            channel_id,
            pages,
            len(listing.failed_pages),
        )
        return listing

    def _page_loader(self, channel_id: int, page: int) -> Callable[[], Awaitable[list[int] | None]]:
        async def load() -> list[int] | None:
            try:
                payload = await self.client.list_channel_assignments(channel_id, page=page, limit=self.page_size)
            except UNIT_ERRORS as exc:
                logger.warning("Assignment page %s for channel %s failed: %s", page, channel_id, exc)
                return None
            return self._extract_ids(payload, page)

        return load

    @staticmethod
    def _extract_ids(payload: Any, page: int) -> list[int] | None:
        data = page_data(payload)
        if data is None:
            logger.warning("Assignment page %s is malformed; treating it as empty", page)
            return None
        ids: list[int] = []
        for item in data:
            try:
                ids.append(int(item["product_id"] if item.get("product_id") is not None else item["id"]))
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("Skipping assignment without product_id on page %s: %r", page, item)
        return ids


class BatchFetcher:
    """Fetches product detail in bounded, concurrently running chunks."""

    def __init__(
        self,
        client: BigCommerceClient,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        concurrency: int = DEFAULT_DETAIL_CONCURRENCY,
        attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.client = client
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self._list_products = retry_async(
            client.list_products, attempts=attempts, base_delay=retry_delay
        )

    async def fetch_details(self, ids: list[int], channel: ChannelConfig) -> FetchResult:
        unique, _ = dedupe_ids(ids)
        result = FetchResult(requested=len(unique))
        chunks = chunked(unique, self.chunk_size)
        outcomes = await gather_bounded(
            (self._chunk_loader(chunk, channel) for chunk in chunks),
            concurrency=self.concurrency,
        )

        seen: set[int] = set()
        for chunk, (products, error) in zip(chunks, outcomes):
            if error is not None:
                for product_id in chunk:
                    result.failures[product_id] = error
                continue
            for product in products:
                product_id = product.get("id")
                if not isinstance(product_id, int):
                    logger.warning("Dropping detail record without numeric id: %r", product_id)
                    continue
                if product_id in seen:
                    result.duplicates += 1
                    continue
                seen.add(product_id)
                result.products.append(product)

        result.missing = [pid for pid in unique if pid not in seen and pid not in result.failures]
        if result.duplicates:
            logger.info("Dropped %s duplicate detail records", result.duplicates)
        if result.missing:
            logger.warning(
                "%s listed products were not returned by the detail endpoint for %s",
                len(result.missing),
                channel.name,
            )
        return result

    def _chunk_loader(
        self, chunk: list[int], channel: ChannelConfig
    ) -> Callable[[], Awaitable[tuple[list[dict[str, Any]], str | None]]]:
        async def load() -> tuple[list[dict[str, Any]], str | None]:
            try:
                payload = await self._list_products(chunk, parent_category=channel.parent_category)
            except UNIT_ERRORS as exc:
                logger.error("Detail chunk of %s products failed: %s", len(chunk), exc)
                return [], f"detail fetch failed: {exc.__class__.__name__}: {exc}"
            data = page_data(payload)
            if data is None:
                logger.warning("Detail chunk of %s products returned a malformed payload", len(chunk))
                return [], "detail fetch returned a malformed payload"
            return data, None

        return load
