"""Orphan cleanup after a channel's products have been persisted."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.engine import Engine

from catalog_sync.ingest.listing import chunked
from catalog_sync.ingest.persist import scoped
from catalog_sync.utils.dates import db_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_ORPHAN_FRACTION = 0.5

VISIBLE_IN_CHANNEL_SQL = text(
    """
    SELECT p.id
    FROM products p
    JOIN channel_product cp ON cp.product_id = p.id
    WHERE cp.channel_id = :channel_id AND p.is_visible = :visible
    """
)
UNLINK_CHANNEL_SQL = scoped(
    "DELETE FROM channel_product WHERE channel_id = :channel_id AND product_id IN :ids", "ids"
)
STILL_LINKED_SQL = scoped("SELECT DISTINCT product_id FROM channel_product WHERE product_id IN :ids", "ids")
HIDE_PRODUCTS_SQL = scoped(
    "UPDATE products SET is_visible = :hidden, updated_at = :updated_at WHERE id IN :ids", "ids"
)
CASCADE_SQL = {
    "category_products": scoped("DELETE FROM category_products WHERE product_id IN :ids", "ids"),
    "options": scoped("DELETE FROM options WHERE product_id IN :ids", "ids"),
    "variants": scoped("DELETE FROM variants WHERE product_id IN :ids", "ids"),
    "filters_products": scoped("DELETE FROM filters_products WHERE product_id IN :ids", "ids"),
}


class ReconcileState(str, enum.Enum):
    CLEAN = "clean"
    PARTIALLY_CLEANED = "partially_cleaned"


@dataclass(slots=True)
class ReconcileResult:
    state: ReconcileState
    visible: int = 0
    orphan_ids: list[int] = field(default_factory=list)
    hidden_ids: list[int] = field(default_factory=list)
    unlinked_ids: list[int] = field(default_factory=list)
    deleted: dict[str, int] = field(default_factory=dict)
    reason: str | None = None


class Reconciler:
    """Hides products a channel no longer lists upstream.

    Orphans are the channel's visible products missing from ``upstream_ids``.
    Each orphan loses its link to the channel; an orphan left without any
    channel is soft-hidden and its variants, options, category links and filter
    rows are deleted. Nothing is touched when the listing was incomplete or when the
    orphans exceed ``max_orphan_fraction`` of the channel's visible products.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        max_orphan_fraction: float = DEFAULT_MAX_ORPHAN_FRACTION,
        batch_size: int = 500,
    ) -> None:
        self.engine = engine
        self.max_orphan_fraction = max_orphan_fraction
        self.batch_size = batch_size

    async def reconcile(
        self,
        channel_id: int,
        upstream_ids: Iterable[int],
        *,
        protected_ids: Iterable[int] = (),
        listing_complete: bool = True,
    ) -> ReconcileResult:
        return await asyncio.get_running_loop().run_in_executor(
            None, self._reconcile, channel_id, set(upstream_ids), set(protected_ids), listing_complete
        )

    def _reconcile(
        self, channel_id: int, upstream: set[int], protected: set[int], listing_complete: bool
    ) -> ReconcileResult:
        with self.engine.connect() as conn:
            visible = set(
                conn.execute(VISIBLE_IN_CHANNEL_SQL, {"channel_id": channel_id, "visible": True}).scalars()
            )
        orphans = sorted(visible - upstream - protected)
        result = ReconcileResult(state=ReconcileState.CLEAN, visible=len(visible), orphan_ids=orphans)
        if not orphans:
            logger.info("Channel %s has no orphaned products", channel_id)
            return result

        if not listing_complete:
            result.state = ReconcileState.PARTIALLY_CLEANED
            result.reason = "listing incomplete"
            logger.warning(
                "Skipping cleanup of %s orphan candidates for channel %s: listing incomplete",
                len(orphans),
                channel_id,
            )
            return result

        if len(orphans) > self.max_orphan_fraction * len(visible):
            result.state = ReconcileState.PARTIALLY_CLEANED
            result.reason = "orphan safety gate"
            logger.warning(
                "Orphan safety gate tripped for channel %s: %s of %s visible products missing upstream "
                "(limit %.0f%%); no products hidden",
                channel_id,
                len(orphans),
                len(visible),
                self.max_orphan_fraction * 100,
            )
            return result

        deleted = {"channel_product": 0, **{table: 0 for table in CASCADE_SQL}}
        for batch in chunked(orphans, self.batch_size):
            with self.engine.begin() as conn:
                unlinked = conn.execute(UNLINK_CHANNEL_SQL, {"channel_id": channel_id, "ids": batch})
                deleted["channel_product"] += max(unlinked.rowcount, 0)
                linked = set(conn.execute(STILL_LINKED_SQL, {"ids": batch}).scalars())
                to_hide = [product_id for product_id in batch if product_id not in linked]
                result.unlinked_ids.extend(product_id for product_id in batch if product_id in linked)
                if not to_hide:
                    continue
                conn.execute(HIDE_PRODUCTS_SQL, {"hidden": False, "updated_at": db_timestamp(), "ids": to_hide})
                for table, stmt in CASCADE_SQL.items():
                    deleted[table] += max(conn.execute(stmt, {"ids": to_hide}).rowcount, 0)
                result.hidden_ids.extend(to_hide)

        result.deleted = deleted
        logger.info(
            "Channel %s cleanup: %s hidden, %s unlinked only, deleted %s",
            channel_id,
            len(result.hidden_ids),
            len(result.unlinked_ids),
            deleted,
        )
        return result
