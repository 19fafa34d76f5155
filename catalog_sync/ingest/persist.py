"""Transactional per-chunk persistence of normalized catalog records."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from catalog_sync.logic.transform import TransformedChunk
from catalog_sync.utils.dates import db_timestamp
from catalog_sync.utils.retry import is_transient_error, retry_async

logger = logging.getLogger(__name__)

PRODUCT_COLUMNS = (
    "id",
    "title",
    "page_title",
    "description",
    "type",
    "brand_id",
    "categories",
    "image",
    "images",
    "hover",
    "url",
    "quantity",
    "stock",
    "warning_stock",
    "normal_price",
    "discount_price",
    "cash_price",
    "percent",
    "weight",
    "sort_order",
    "reserve",
    "sameday",
    "despacho24horas",
    "pickup_in_store",
    "turbo",
    "free_shipping",
    "featured",
    "total_sold",
    "is_visible",
    "meta_description",
    "meta_keywords",
    "related_products",
    "variants",
    "updated_at",
)

VARIANT_COLUMNS = (
    "id",
    "product_id",
    "title",
    "sku",
    "normal_price",
    "discount_price",
    "cash_price",
    "discount_rate",
    "stock",
    "warning_stock",
    "image",
    "images",
    "categories",
    "quantity",
    "weight",
    "height",
    "depth",
    "width",
    "type",
    "options",
    "option_label",
    "keywords",
    "is_visible",
    "updated_at",
)

OPTION_COLUMNS = ("product_id", "option_id", "label", "options", "updated_at")

PERSIST_ERRORS = (SQLAlchemyError, OSError)


def upsert_sql(table: str, columns: Sequence[str], key: Sequence[str]):
    names = ", ".join(columns)
    values = ", ".join(f":{column}" for column in columns)
    updates = ",\n      ".join(f"{column} = EXCLUDED.{column}" for column in columns if column not in key)
    return text(
        f"""
        INSERT INTO {table} ({names})
        VALUES ({values})
        ON CONFLICT ({", ".join(key)}) DO UPDATE SET
          {updates}
        """
    )


def scoped(sql: str, *names: str):
    """``text()`` with the given parameters bound as expanding ``IN`` lists."""
    return text(sql).bindparams(*(bindparam(name, expanding=True) for name in names))


UPSERT_PRODUCT_SQL = upsert_sql("products", PRODUCT_COLUMNS, ("id",))
UPSERT_VARIANT_SQL = upsert_sql("variants", VARIANT_COLUMNS, ("id",))
UPSERT_OPTION_SQL = upsert_sql("options", OPTION_COLUMNS, ("product_id", "option_id"))

DELETE_VARIANTS_SQL = scoped("DELETE FROM variants WHERE product_id IN :ids", "ids")
DELETE_CATEGORY_LINKS_SQL = scoped("DELETE FROM category_products WHERE product_id IN :ids", "ids")
DELETE_OPTIONS_SQL = scoped("DELETE FROM options WHERE product_id IN :ids", "ids")
DELETE_CHANNEL_LINKS_SQL = scoped(
    "DELETE FROM channel_product WHERE channel_id = :channel_id AND product_id IN :ids", "ids"
)
EXISTING_CATEGORIES_SQL = scoped("SELECT category_id FROM categories WHERE category_id IN :ids", "ids")

INSERT_CATEGORY_LINK_SQL = text(
    """
    INSERT INTO category_products (product_id, category_id)
    VALUES (:product_id, :category_id)
    ON CONFLICT (product_id, category_id) DO NOTHING
    """
)
INSERT_CHANNEL_LINK_SQL = text(
    """
    INSERT INTO channel_product (channel_id, product_id)
    VALUES (:channel_id, :product_id)
    ON CONFLICT (channel_id, product_id) DO NOTHING
    """
)


@dataclass(slots=True)
class ChunkOutcome:
    product_ids: list[int]
    committed: bool
    attempts: int = 0
    products: int = 0
    variants: int = 0
    options: int = 0
    categories: int = 0
    channels: int = 0
    failed_categories: list[tuple[int, int]] = field(default_factory=list)
    error: str | None = None


class BatchPersister:
    """Writes one transformed chunk per transaction.

    Child rows of the chunk's products (variants, options, category and
    channel links) are replaced with deletes filtered by the chunk's exact
    product ids, so concurrent chunks never touch each other's rows.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        concurrency: int = 3,
        attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.engine = engine
        self.attempts = attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(concurrency)

    async def persist(self, chunk: TransformedChunk) -> ChunkOutcome:
        product_ids = chunk.product_ids
        if not product_ids:
            return ChunkOutcome(product_ids=[], committed=True)

        attempts = 0
        loop = asyncio.get_running_loop()

        async def write() -> ChunkOutcome:
            nonlocal attempts
            attempts += 1
            return await loop.run_in_executor(None, self._write_chunk, chunk)

        guarded = retry_async(
            write,
            attempts=self.attempts,
            base_delay=self.base_delay,
            jitter=False,
            retry_on=PERSIST_ERRORS,
            should_retry=is_transient_error,
            sleep=self._sleep,
        )
        async with self._semaphore:
            try:
                outcome = await guarded()
            except PERSIST_ERRORS as exc:
                logger.error(
                    "Chunk of %s products rolled back after %s attempt(s): %s", len(product_ids), attempts, exc
                )
                return ChunkOutcome(
                    product_ids=product_ids,
                    committed=False,
                    attempts=attempts,
                    error=f"{exc.__class__.__name__}: {exc}",
                )
        outcome.attempts = attempts
        return outcome

    def _write_chunk(self, chunk: TransformedChunk) -> ChunkOutcome:
        product_ids = chunk.product_ids
        updated_at = db_timestamp()
        outcome = ChunkOutcome(product_ids=product_ids, committed=False)
        with self.engine.begin() as conn:
            conn.execute(UPSERT_PRODUCT_SQL, [{**p.to_row(), "updated_at": updated_at} for p in chunk.products])
            outcome.products = len(chunk.products)

            conn.execute(DELETE_VARIANTS_SQL, {"ids": product_ids})
            if chunk.variants:
                conn.execute(UPSERT_VARIANT_SQL, [{**v.to_row(), "updated_at": updated_at} for v in chunk.variants])
            outcome.variants = len(chunk.variants)

            conn.execute(DELETE_CATEGORY_LINKS_SQL, {"ids": product_ids})
            links, outcome.failed_categories = self._valid_category_links(conn, chunk.category_links)
            if links:
                conn.execute(
                    INSERT_CATEGORY_LINK_SQL,
                    [{"product_id": product_id, "category_id": category_id} for product_id, category_id in links],
                )
            outcome.categories = len(links)

            conn.execute(DELETE_OPTIONS_SQL, {"ids": product_ids})
            if chunk.options:
                conn.execute(UPSERT_OPTION_SQL, [{**o.to_row(), "updated_at": updated_at} for o in chunk.options])
            outcome.options = len(chunk.options)

            conn.execute(DELETE_CHANNEL_LINKS_SQL, {"channel_id": chunk.channel_id, "ids": product_ids})
            if chunk.channel_links:
                conn.execute(
                    INSERT_CHANNEL_LINK_SQL,
                    [{"channel_id": channel_id, "product_id": product_id} for channel_id, product_id in chunk.channel_links],
                )
            outcome.channels = len(chunk.channel_links)
        outcome.committed = True
        if outcome.failed_categories:
            logger.warning(
                "Skipped %s category links pointing at unknown categories", len(outcome.failed_categories)
            )
        return outcome

    @staticmethod
    def _valid_category_links(
        conn: Connection, links: list[tuple[int, int]]
    ) -> tuple[list[tuple[int, int]], list[tuple[int, int]]]:
        if not links:
            return [], []
        requested = sorted({category_id for _, category_id in links})
        existing = set(conn.execute(EXISTING_CATEGORIES_SQL, {"ids": requested}).scalars())
        valid = [link for link in links if link[1] in existing]
        invalid = [link for link in links if link[1] not in existing]
        return valid, invalid
