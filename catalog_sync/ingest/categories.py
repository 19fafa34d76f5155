"""Category tree sync and read-only category lookups."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from catalog_sync.ingest.bigcommerce import BigCommerceClient, page_data, total_pages
from catalog_sync.ingest.cache import RunCache
from catalog_sync.ingest.models import CategoryRecord
from catalog_sync.utils.dates import db_timestamp

logger = logging.getLogger(__name__)

CATEGORY_PAGE_SIZE = 250

UPSERT_CATEGORY_SQL = text(
    """
    INSERT INTO categories (category_id, parent_id, title, url, sort_order, image, is_visible, tree_id, updated_at)
    VALUES (:category_id, :parent_id, :title, :url, :sort_order, :image, :is_visible, :tree_id, :updated_at)
    ON CONFLICT (category_id) DO UPDATE SET
      parent_id = EXCLUDED.parent_id,
      title = EXCLUDED.title,
      url = EXCLUDED.url,
      sort_order = EXCLUDED.sort_order,
      image = EXCLUDED.image,
      is_visible = EXCLUDED.is_visible,
      tree_id = EXCLUDED.tree_id,
      updated_at = EXCLUDED.updated_at
    """
)


@dataclass(slots=True)
class CategorySyncResult:
    fetched: int
    saved: int
    failed: int
    pages: int


class CategorySync:
    """Pages through the category tree and upserts every category."""

    def __init__(self, engine: Engine, client: BigCommerceClient, *, page_size: int = CATEGORY_PAGE_SIZE) -> None:
        self.engine = engine
        self.client = client
        self.page_size = page_size

    async def sync(self) -> CategorySyncResult:
        records: list[CategoryRecord] = []
        failed = 0
        page = 1
        pages = 1
        while page <= pages:
            payload = await self.client.list_categories(page=page, limit=self.page_size)
            pages = total_pages(payload)
            data = page_data(payload)
            if data is None:
                logger.warning("Category page %s is malformed; skipping", page)
                data = []
            for item in data:
                record = parse_category(item)
                if record is None:
                    failed += 1
                    continue
                records.append(record)
            page += 1

        logger.info("Persisting %s categories", len(records))
        await asyncio.get_running_loop().run_in_executor(None, self._persist, records)
        return CategorySyncResult(fetched=len(records) + failed, saved=len(records), failed=failed, pages=pages)

    def _persist(self, records: list[CategoryRecord]) -> None:
        if not records:
            return
        updated_at = db_timestamp()
        with self.engine.begin() as conn:
            conn.execute(UPSERT_CATEGORY_SQL, [{**asdict(r), "updated_at": updated_at} for r in records])


def parse_category(item: dict[str, Any]) -> CategoryRecord | None:
    url_data = item.get("url") or {}
    try:
        return CategoryRecord(
            category_id=int(item["category_id"] if "category_id" in item else item["id"]),
            parent_id=int(item.get("parent_id") or 0),
            title=item.get("name") or item.get("title") or "",
            url=(url_data.get("path") or "") if isinstance(url_data, dict) else str(url_data),
            sort_order=int(item.get("sort_order") or 0),
            image=item.get("image_url") or None,
            is_visible=bool(item.get("is_visible", False)),
            tree_id=item.get("tree_id"),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping malformed category: %r", item)
        return None


class CategoryLookup:
    """Cached reads of category titles and children for the transformer."""

    def __init__(self, engine: Engine, cache: RunCache) -> None:
        self.engine = engine
        self.cache = cache

    def titles(self, category_ids: Iterable[int]) -> dict[int, str]:
        wanted = set(category_ids)
        found: dict[int, str] = {}
        uncached = []
        for category_id in wanted:
            title = self.cache.get(("category", category_id))
            if title is None:
                uncached.append(category_id)
            else:
                found[category_id] = title
        if uncached:
            stmt = text("SELECT category_id, title FROM categories WHERE category_id IN :ids").bindparams(
                bindparam("ids", expanding=True)
            )
            with self.engine.connect() as conn:
                for category_id, title in conn.execute(stmt, {"ids": uncached}):
                    self.cache.set(("category", category_id), title)
                    found[category_id] = title
        return found

    def children(self, parent_id: int | None) -> dict[int, str]:
        if parent_id is None:
            return {}
        cached = self.cache.get(("children", parent_id))
        if cached is not None:
            return cached
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT category_id, title FROM categories WHERE parent_id = :parent_id"),
                {"parent_id": parent_id},
            )
            children = {category_id: title for category_id, title in rows}
        self.cache.set(("children", parent_id), children)
        return children
