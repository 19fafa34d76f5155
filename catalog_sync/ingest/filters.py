"""Rebuild of the product filter relations for one channel."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

# Filter categories are the grandchildren of the advanced root:
# root -> filter group -> filter value.
DELETE_CHANNEL_FILTERS_SQL = text(
    """
    DELETE FROM filters_products
    WHERE product_id IN (SELECT product_id FROM channel_product WHERE channel_id = :channel_id)
    """
)
INSERT_CHANNEL_FILTERS_SQL = text(
    """
    INSERT INTO filters_products (product_id, category_id)
    SELECT DISTINCT cp.product_id, cp.category_id
    FROM category_products cp
    JOIN categories child ON child.category_id = cp.category_id
    JOIN categories grp ON grp.category_id = child.parent_id
    JOIN channel_product ch ON ch.product_id = cp.product_id
    WHERE ch.channel_id = :channel_id AND grp.parent_id = :advanced_category
    """
)


@dataclass(slots=True)
class FiltersSyncResult:
    removed: int
    saved: int


class FiltersSync:
    """Replaces the filter rows of a channel's products in one transaction.

    Only products linked to the channel are touched, so rebuilding one channel
    never drops another channel's filters.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def rebuild(self, channel_id: int, advanced_category: int) -> FiltersSyncResult:
        return await asyncio.get_running_loop().run_in_executor(
            None, self._rebuild, channel_id, advanced_category
        )

    def _rebuild(self, channel_id: int, advanced_category: int) -> FiltersSyncResult:
        params = {"channel_id": channel_id, "advanced_category": advanced_category}
        with self.engine.begin() as conn:
            removed = conn.execute(DELETE_CHANNEL_FILTERS_SQL, {"channel_id": channel_id}).rowcount
            saved = conn.execute(INSERT_CHANNEL_FILTERS_SQL, params).rowcount
        result = FiltersSyncResult(removed=max(removed, 0), saved=max(saved, 0))
        if result.saved == 0:
            logger.warning("No filter relations found under category %s for channel %s", advanced_category, channel_id)
        else:
            logger.info("Channel %s filters rebuilt: %s relations", channel_id, result.saved)
        return result
