"""Safety stock feed sync and read-only stock lookups."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from catalog_sync.ingest.bigcommerce import BigCommerceClient, page_data, total_pages
from catalog_sync.ingest.listing import UNIT_ERRORS, gather_bounded
from catalog_sync.ingest.models import SafetyStockRecord, StockLevel
from catalog_sync.utils.dates import db_timestamp

logger = logging.getLogger(__name__)

INVENTORY_PAGE_SIZE = 1000

UPSERT_SAFE_STOCK_SQL = text(
    """
    INSERT INTO catalog_safe_stocks
      (sku, product_id, variant_id, safety_stock, warning_level, available_to_sell, bin_picking_number, updated_at)
    VALUES
      (:sku, :product_id, :variant_id, :safety_stock, :warning_level, :available_to_sell, :bin_picking_number, :updated_at)
    ON CONFLICT (sku) DO UPDATE SET
      product_id = EXCLUDED.product_id,
      variant_id = EXCLUDED.variant_id,
      safety_stock = EXCLUDED.safety_stock,
      warning_level = EXCLUDED.warning_level,
      available_to_sell = EXCLUDED.available_to_sell,
      bin_picking_number = EXCLUDED.bin_picking_number,
      updated_at = EXCLUDED.updated_at
    """
)


@dataclass(slots=True)
class SafetyStockSyncResult:
    location_id: int
    saved: int = 0
    skipped: int = 0
    pages: int = 0
    failed_pages: list[int] = field(default_factory=list)


class SafetyStockSync:
    """Refreshes ``catalog_safe_stocks`` from one inventory location."""

    def __init__(
        self,
        engine: Engine,
        client: BigCommerceClient,
        *,
        page_size: int = INVENTORY_PAGE_SIZE,
        concurrency: int = 10,
    ) -> None:
        self.engine = engine
        self.client = client
        self.page_size = page_size
        self.concurrency = concurrency

    async def sync(self, location_id: int) -> SafetyStockSyncResult:
        result = SafetyStockSyncResult(location_id=location_id)
        first = await self.client.list_inventory_items(location_id, page=1, limit=self.page_size)
        result.pages = total_pages(first)
        pages = [page_data(first)]
        if result.pages > 1:
            pages.extend(
                await gather_bounded(
                    (self._page_loader(location_id, page) for page in range(2, result.pages + 1)),
                    concurrency=self.concurrency,
                )
            )

        records: dict[str, SafetyStockRecord] = {}
        for page, items in enumerate(pages, start=1):
            if items is None:
                logger.warning("Inventory page %s for location %s unavailable", page, location_id)
                result.failed_pages.append(page)
                continue
            for item in items:
                record = parse_inventory_item(item)
                if record is None:
                    result.skipped += 1
                    continue
                records[record.sku] = record

        await asyncio.get_running_loop().run_in_executor(None, self._persist, list(records.values()))
        result.saved = len(records)
        logger.info(
            "Safety stock for location %s: %s saved, %s skipped, %s failed pages",
            location_id,
            result.saved,
            result.skipped,
            len(result.failed_pages),
        )
        return result

    def _page_loader(self, location_id: int, page: int):
        async def load() -> list[dict[str, Any]] | None:
            try:
                payload = await self.client.list_inventory_items(location_id, page=page, limit=self.page_size)
            except UNIT_ERRORS as exc:
                logger.warning("Inventory page %s for location %s failed: %s", page, location_id, exc)
                return None
            return page_data(payload)

        return load

    def _persist(self, records: list[SafetyStockRecord]) -> None:
        if not records:
            return
        updated_at = db_timestamp()
        with self.engine.begin() as conn:
            conn.execute(UPSERT_SAFE_STOCK_SQL, [{**asdict(r), "updated_at": updated_at} for r in records])


def parse_inventory_item(item: dict[str, Any]) -> SafetyStockRecord | None:
    identity = item.get("identity") or {}
    settings = item.get("settings") or {}
    sku = str(identity.get("sku") or "").strip()
    if not sku:
        return None
    try:
        return SafetyStockRecord(
            sku=sku,
            product_id=int(identity["product_id"]),
            variant_id=int(identity["variant_id"]),
            safety_stock=int(settings.get("safety_stock") or 0),
            warning_level=_optional_int(settings.get("warning_level")),
            available_to_sell=_optional_int(item.get("available_to_sell")),
            bin_picking_number=settings.get("bin_picking_number") or None,
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping inventory item for %s with incomplete identity", sku)
        return None


def load_stock_levels(engine: Engine, skus: Iterable[str]) -> dict[str, StockLevel]:
    wanted = sorted({sku.strip() for sku in skus if sku and sku.strip()})
    if not wanted:
        return {}
    stmt = text(
        "SELECT sku, available_to_sell, safety_stock FROM catalog_safe_stocks WHERE sku IN :skus"
    ).bindparams(bindparam("skus", expanding=True))
    with engine.connect() as conn:
        rows = conn.execute(stmt, {"skus": wanted})
        return {
            sku: StockLevel(available_to_sell=available or 0, safety_stock=safety or 0)
            for sku, available, safety in rows
        }


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    return int(value)
