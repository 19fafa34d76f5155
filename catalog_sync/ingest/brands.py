"""Brand list sync."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine

from catalog_sync.ingest.bigcommerce import BigCommerceClient, page_data, total_pages
from catalog_sync.ingest.models import BrandRecord
from catalog_sync.utils.dates import db_timestamp

logger = logging.getLogger(__name__)

BRAND_PAGE_SIZE = 200

UPSERT_BRAND_SQL = text(
    """
    INSERT INTO brands (id, name, updated_at)
    VALUES (:id, :name, :updated_at)
    ON CONFLICT (id) DO UPDATE SET
      name = EXCLUDED.name,
      updated_at = EXCLUDED.updated_at
    """
)


@dataclass(slots=True)
class BrandSyncResult:
    fetched: int
    saved: int
    failed: int
    pages: int


class BrandSync:
    """Upserts every store brand so ``products.brand_id`` resolves to a name."""

    def __init__(self, engine: Engine, client: BigCommerceClient, *, page_size: int = BRAND_PAGE_SIZE) -> None:
        self.engine = engine
        self.client = client
        self.page_size = page_size

    async def sync(self) -> BrandSyncResult:
        records: dict[int, BrandRecord] = {}
        failed = 0
        page = 1
        pages = 1
        while page <= pages:
            payload = await self.client.list_brands(page=page, limit=self.page_size)
            pages = total_pages(payload)
            data = page_data(payload)
            if data is None:
                logger.warning("Brand page %s is malformed; skipping", page)
                data = []
            for item in data:
                record = parse_brand(item)
                if record is None:
                    failed += 1
                    continue
                records[record.id] = record
            page += 1

        await asyncio.get_running_loop().run_in_executor(None, self._persist, list(records.values()))
        logger.info("Brands synced: %s saved, %s skipped", len(records), failed)
        return BrandSyncResult(fetched=len(records) + failed, saved=len(records), failed=failed, pages=pages)

    def _persist(self, records: list[BrandRecord]) -> None:
        if not records:
            return
        updated_at = db_timestamp()
        with self.engine.begin() as conn:
            conn.execute(UPSERT_BRAND_SQL, [{**asdict(r), "updated_at": updated_at} for r in records])


def parse_brand(item: dict[str, Any]) -> BrandRecord | None:
    name = item.get("name")
    if not isinstance(name, str) or not name.strip():
        logger.warning("Skipping brand without name: %r", item)
        return None
    try:
        brand_id = int(item["id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping brand without id: %r", item)
        return None
    if brand_id <= 0:
        return None
    return BrandRecord(id=brand_id, name=name.strip())
