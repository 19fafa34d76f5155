"""Catalog sync orchestration."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

import httpx
from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from catalog_sync.db.migrate import CATALOG_TABLES
from catalog_sync.db.session import create_engine_from_env
from catalog_sync.ingest import ConfigError, get_channel
from catalog_sync.ingest.bigcommerce import BigCommerceClient, RateLimitExceeded
from catalog_sync.ingest.brands import BrandSync
from catalog_sync.ingest.cache import RunCache
from catalog_sync.ingest.categories import CategoryLookup, CategorySync
from catalog_sync.ingest.filters import FiltersSync
from catalog_sync.ingest.inventory import SafetyStockSync, load_stock_levels
from catalog_sync.ingest.listing import BatchFetcher, ProductPaginator, chunked, dedupe_ids
from catalog_sync.ingest.models import CatalogLookups, ChannelConfig
from catalog_sync.ingest.persist import BatchPersister, ChunkOutcome
from catalog_sync.ingest.reconcile import ReconcileState, Reconciler
from catalog_sync.logic.tracking import SyncReport, SyncTrackingStats
from catalog_sync.logic.transform import TransformedChunk, Transformer
from catalog_sync.utils.dates import db_timestamp
from catalog_sync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

FATAL_ERRORS = (ConfigError, SQLAlchemyError, httpx.HTTPError, RateLimitExceeded, OSError)

VERIFY_SQL = {
    "products": "SELECT COUNT(*) FROM channel_product WHERE channel_id = :channel_id",
    "variants": """
        SELECT COUNT(*) FROM variants v
        JOIN channel_product cp ON cp.product_id = v.product_id
        WHERE cp.channel_id = :channel_id
    """,
    "options": """
        SELECT COUNT(*) FROM options o
        JOIN channel_product cp ON cp.product_id = o.product_id
        WHERE cp.channel_id = :channel_id
    """,
    "category_products": """
        SELECT COUNT(*) FROM category_products c
        JOIN channel_product cp ON cp.product_id = c.product_id
        WHERE cp.channel_id = :channel_id
    """,
    "filters_products": """
        SELECT COUNT(*) FROM filters_products f
        JOIN channel_product cp ON cp.product_id = f.product_id
        WHERE cp.channel_id = :channel_id
    """,
}


@dataclass(slots=True)
class SyncSettings:
    page_size: int = 2000
    page_concurrency: int = 20
    chunk_size: int = 250
    detail_concurrency: int = 5
    persist_concurrency: int = 3
    persist_retry_base_seconds: float = 1.0
    fetch_retry_base_seconds: float = 1.0
    orphan_max_fraction: float = 0.5
    block_chunks: int = 10

    @classmethod
    def from_env(cls) -> "SyncSettings":
        try:
            return cls(
                page_size=int(os.environ.get("CHANNEL_PAGE_SIZE", "2000")),
                page_concurrency=int(os.environ.get("PAGE_CONCURRENCY", "20")),
                chunk_size=int(os.environ.get("DETAIL_CHUNK_SIZE", "250")),
                detail_concurrency=int(os.environ.get("DETAIL_CONCURRENCY", "5")),
                persist_concurrency=int(os.environ.get("PERSIST_CONCURRENCY", "3")),
                persist_retry_base_seconds=float(os.environ.get("PERSIST_RETRY_BASE_SECONDS", "1.0")),
                orphan_max_fraction=float(os.environ.get("ORPHAN_MAX_FRACTION", "0.5")),
                block_chunks=int(os.environ.get("SYNC_BLOCK_CHUNKS", "10")),
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid sync setting: {exc}") from exc


class CatalogSync:
    """Runs one channel through listing, fetch, transform, persist and cleanup."""

    def __init__(
        self,
        engine: Engine,
        client: BigCommerceClient,
        channel: ChannelConfig,
        *,
        settings: SyncSettings | None = None,
        transformer: Transformer | None = None,
    ) -> None:
        self.engine = engine
        self.client = client
        self.channel = channel
        self.settings = settings or SyncSettings()
        self.transformer = transformer or Transformer()
        self.paginator = ProductPaginator(
            client, page_size=self.settings.page_size, concurrency=self.settings.page_concurrency
        )
        self.fetcher = BatchFetcher(
            client,
            chunk_size=self.settings.chunk_size,
            concurrency=self.settings.detail_concurrency,
            retry_delay=self.settings.fetch_retry_base_seconds,
        )
        self.persister = BatchPersister(
            engine,
            concurrency=self.settings.persist_concurrency,
            base_delay=self.settings.persist_retry_base_seconds,
        )
        self.reconciler = Reconciler(engine, max_orphan_fraction=self.settings.orphan_max_fraction)
        self.safety_stock = SafetyStockSync(engine, client)
        self.filters = FiltersSync(engine)

    async def run(self) -> SyncReport:
        stats = SyncTrackingStats()
        report = SyncReport(
            status="running",
            message="",
            channel=self.channel.name,
            started_at=db_timestamp(),
            stats=stats,
        )
        cache = RunCache()
        try:
            await self._run_in_executor(self._preflight)
            await self._refresh_safety_stock()

            listing = await self.paginator.list_all_ids(self.channel.channel_id)
            ids, duplicates = dedupe_ids(listing.ids)
            stats.record_listing(len(ids), duplicates)
            if duplicates:
                logger.info("Listing for %s contained %s duplicate ids", self.channel.name, duplicates)

            upstream, protected = await self._process(ids, stats, CategoryLookup(self.engine, cache))

            report.reconciliation = await self.reconciler.reconcile(
                self.channel.channel_id,
                upstream,
                protected_ids=protected,
                listing_complete=listing.complete,
            )
            stats.record_reconciliation(report.reconciliation)
            if self.channel.advanced_category is not None:
                rebuilt = await self.filters.rebuild(self.channel.channel_id, self.channel.advanced_category)
                report.filters = asdict(rebuilt)
            report.database_verification = await self._run_in_executor(self._verify)
        except FATAL_ERRORS as exc:
            logger.exception("Catalog sync for %s failed", self.channel.name)
            report.status = "error"
            report.message = f"{exc.__class__.__name__}: {exc}"
        except Exception as exc:
            logger.exception("Catalog sync for %s stopped by an unexpected error", self.channel.name)
            report.status = "error"
            report.message = f"Unexpected {exc.__class__.__name__}: {exc}"
        else:
            report.status, report.message = _summarize(report)
        finally:
            cache.clear()
            report.finished_at = db_timestamp()
            report.rate_limit = self.client.rate_limiter.status()
        logger.info(
            "Catalog sync for %s finished with status %s: %s processed, %s failed",
            self.channel.name,
            report.status,
            stats.total_processed,
            stats.total_failed,
        )
        return report

    async def _process(
        self, ids: list[int], stats: SyncTrackingStats, categories: CategoryLookup
    ) -> tuple[set[int], set[int]]:
        upstream: set[int] = set()
        protected: set[int] = set()
        block_size = self.settings.chunk_size * max(self.settings.block_chunks, 1)
        work = deque(chunked(ids, block_size)) if ids else deque()
        total_blocks = len(work)
        while work:
            block = work.popleft()
            fetched = await self.fetcher.fetch_details(block, self.channel)
            stats.record_fetch(fetched)
            upstream.update(fetched.returned_ids)
            protected.update(fetched.failures)

            chunks = chunked(fetched.products, self.settings.chunk_size) if fetched.products else []
            results = await asyncio.gather(
                *(self._process_chunk(chunk, categories) for chunk in chunks), return_exceptions=True
            )
            errors = [result for result in results if isinstance(result, BaseException)]
            for result in results:
                if not isinstance(result, BaseException):
                    stats.record_chunk(*result)
            if errors:
                raise errors[0]
            logger.info(
                "Block %s/%s for %s done: %s processed so far, %s failed",
                total_blocks - len(work),
                total_blocks,
                self.channel.name,
                stats.total_processed,
                stats.total_failed,
            )
        return upstream, protected

    async def _process_chunk(
        self, products: list[dict[str, Any]], categories: CategoryLookup
    ) -> tuple[TransformedChunk, ChunkOutcome]:
        lookups = await self._run_in_executor(self._load_lookups, products, categories)
        transformed = self.transformer.format(products, self.channel, lookups)
        outcome = await self.persister.persist(transformed)
        return transformed, outcome

    def _load_lookups(self, products: list[dict[str, Any]], categories: CategoryLookup) -> CatalogLookups:
        category_ids: set[int] = set()
        skus: set[str] = set()
        for product in products:
            linked = product.get("categories")
            if isinstance(linked, list):
                category_ids.update(c for c in linked if isinstance(c, int))
            variants = product.get("variants")
            for variant in variants if isinstance(variants, list) else []:
                if isinstance(variant, dict) and variant.get("sku"):
                    skus.add(str(variant["sku"]).strip())
        return CatalogLookups(
            category_titles=categories.titles(category_ids),
            tag_categories=categories.children(self.channel.benefits_category),
            campaign_categories=categories.children(self.channel.campaigns_category),
            reserve_categories=categories.children(self.channel.reserve_category),
            stock=load_stock_levels(self.engine, skus),
        )

    async def _refresh_safety_stock(self) -> None:
        location_id = self.channel.inventory_location_id
        if location_id is None:
            return
        try:
            await self.safety_stock.sync(location_id)
        except (httpx.HTTPError, RateLimitExceeded, SQLAlchemyError, ValueError) as exc:
            logger.warning("Safety stock refresh for location %s failed, using stored stock: %s", location_id, exc)

    def _preflight(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            for table in CATALOG_TABLES:
                conn.execute(text(f"SELECT 1 FROM {table} LIMIT 1"))

    def _verify(self) -> dict[str, int]:
        params = {"channel_id": self.channel.channel_id}
        with self.engine.connect() as conn:
            return {name: int(conn.execute(text(sql), params).scalar_one()) for name, sql in VERIFY_SQL.items()}

    async def _run_in_executor(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)


def _summarize(report: SyncReport) -> tuple[str, str]:
    stats = report.stats
    partial = stats.total_failed > 0 or bool(stats.missing_products)
    if report.reconciliation and report.reconciliation.state is ReconcileState.PARTIALLY_CLEANED:
        partial = True
    message = (
        f"{stats.total_processed} of {stats.listed} products synced, {stats.total_failed} failed, "
        f"{len(stats.missing_products)} missing, {len(stats.hidden_products)} hidden"
    )
    return ("partial" if partial else "success"), message


def failed_report(channel_name: str, exc: BaseException) -> SyncReport:
    now = db_timestamp()
    return SyncReport(
        status="error",
        message=f"{exc.__class__.__name__}: {exc}",
        channel=channel_name,
        started_at=now,
        finished_at=now,
        stats=SyncTrackingStats(),
    )


async def run_sync(channel_name: str, *, engine: Engine | None = None) -> SyncReport:
    load_dotenv()
    try:
        channel = get_channel(channel_name)
        settings = SyncSettings.from_env()
        client = BigCommerceClient.from_env(rate_limiter=RateLimiter())
    except ConfigError as exc:
        logger.error("Cannot start sync for %s: %s", channel_name, exc)
        return failed_report(channel_name, exc)
    try:
        return await CatalogSync(engine or create_engine_from_env(), client, channel, settings=settings).run()
    finally:
        await client.close()


async def run_category_sync(*, engine: Engine | None = None) -> dict[str, Any]:
    load_dotenv()
    client = BigCommerceClient.from_env(rate_limiter=RateLimiter())
    try:
        result = await CategorySync(engine or create_engine_from_env(), client).sync()
    finally:
        await client.close()
    return asdict(result)


async def run_brand_sync(*, engine: Engine | None = None) -> dict[str, Any]:
    load_dotenv()
    client = BigCommerceClient.from_env(rate_limiter=RateLimiter())
    try:
        result = await BrandSync(engine or create_engine_from_env(), client).sync()
    finally:
        await client.close()
    return asdict(result)


async def run_safety_stock_sync(channel_name: str, *, engine: Engine | None = None) -> dict[str, Any]:
    load_dotenv()
    channel = get_channel(channel_name)
    if channel.inventory_location_id is None:
        raise ConfigError(f"Channel {channel.name} has no inventory_location_id")
    client = BigCommerceClient.from_env(rate_limiter=RateLimiter())
    try:
        result = await SafetyStockSync(engine or create_engine_from_env(), client).sync(channel.inventory_location_id)
    finally:
        await client.close()
    return asdict(result)


def configured_channels() -> list[str]:
    raw = os.environ.get("SYNC_CHANNELS", "")
    return [name.strip() for name in raw.split(",") if name.strip()]


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    names = sys.argv[1:] or configured_channels()
    for name in names:
        print(asyncio.run(run_sync(name)).to_dict())
