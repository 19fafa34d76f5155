"""Run-scoped sync statistics and the final report."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from catalog_sync.ingest.listing import FetchResult
from catalog_sync.ingest.persist import ChunkOutcome
from catalog_sync.ingest.reconcile import ReconcileResult
from catalog_sync.logic.transform import TransformedChunk


@dataclass(slots=True)
class EntityStats:
    processed: int = 0
    failed: dict[str, str] = field(default_factory=dict)

    def fail(self, key: Any, reason: str) -> None:
        self.failed[str(key)] = reason

    def success_rate(self) -> float:
        total = self.processed + len(self.failed)
        if total == 0:
            return 100.0
        return round(self.processed / total * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": len(self.failed),
            "success_rate": self.success_rate(),
            "failures": dict(self.failed),
        }


@dataclass(slots=True)
class SyncTrackingStats:
    products: EntityStats = field(default_factory=EntityStats)
    variants: EntityStats = field(default_factory=EntityStats)
    options: EntityStats = field(default_factory=EntityStats)
    categories: EntityStats = field(default_factory=EntityStats)
    listed: int = 0
    duplicates: int = 0
    attempted: int = 0
    chunks: int = 0
    failed_chunks: int = 0
    missing_products: list[int] = field(default_factory=list)
    hidden_products: list[int] = field(default_factory=list)

    def record_listing(self, unique_ids: int, duplicates: int) -> None:
        self.listed = unique_ids
        self.duplicates += duplicates

    def record_fetch(self, fetched: FetchResult) -> None:
        self.attempted += fetched.requested
        self.duplicates += fetched.duplicates
        self.missing_products.extend(fetched.missing)
        for product_id, reason in fetched.failures.items():
            self.products.fail(product_id, reason)

    def record_chunk(self, chunk: TransformedChunk, outcome: ChunkOutcome) -> None:
        self.chunks += 1
        for product_id, reason in chunk.failed_products.items():
            self.products.fail(product_id, reason)
        for variant_id, reason in chunk.failed_variants.items():
            self.variants.fail(variant_id, reason)
        if not outcome.committed:
            self.failed_chunks += 1
            reason = outcome.error or "persist failed"
            for product in chunk.products:
                self.products.fail(product.id, reason)
            for variant in chunk.variants:
                self.variants.fail(variant.id, reason)
            for option in chunk.options:
                self.options.fail(f"{option.product_id}:{option.option_id}", reason)
            return
        self.products.processed += outcome.products
        self.variants.processed += outcome.variants
        self.options.processed += outcome.options
        self.categories.processed += outcome.categories
        for product_id, category_id in outcome.failed_categories:
            self.categories.fail(f"{product_id}:{category_id}", "unknown category")

    def record_reconciliation(self, result: ReconcileResult) -> None:
        self.hidden_products.extend(result.hidden_ids)

    @property
    def total_processed(self) -> int:
        return self.products.processed

    @property
    def total_failed(self) -> int:
        return len(self.products.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "products": self.products.to_dict(),
            "variants": self.variants.to_dict(),
            "options": self.options.to_dict(),
            "categories": self.categories.to_dict(),
            "chunks": self.chunks,
            "failed_chunks": self.failed_chunks,
            "missing_products": list(self.missing_products),
            "hidden_products": list(self.hidden_products),
        }


@dataclass(slots=True)
class SyncReport:
    status: str
    message: str
    channel: str
    started_at: str
    stats: SyncTrackingStats
    finished_at: str | None = None
    reconciliation: ReconcileResult | None = None
    database_verification: dict[str, int] = field(default_factory=dict)
    rate_limit: dict[str, Any] = field(default_factory=dict)
    filters: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status != "error"

    def to_dict(self) -> dict[str, Any]:
        reconciliation = None
        if self.reconciliation is not None:
            reconciliation = {
                "state": self.reconciliation.state.value,
                "visible": self.reconciliation.visible,
                "orphans": len(self.reconciliation.orphan_ids),
                "hidden": len(self.reconciliation.hidden_ids),
                "unlinked": len(self.reconciliation.unlinked_ids),
                "deleted": dict(self.reconciliation.deleted),
                "reason": self.reconciliation.reason,
            }
        return {
            "status": self.status,
            "message": self.message,
            "channel": self.channel,
            "total": self.stats.listed,
            "total_attempted": self.stats.attempted,
            "total_processed": self.stats.total_processed,
            "total_failed": self.stats.total_failed,
            "duplicates": self.stats.duplicates,
            "reconciliation": reconciliation,
            "database_verification": dict(self.database_verification),
            "filters": dict(self.filters),
            "tracking": self.stats.to_dict(),
            "rate_limit": dict(self.rate_limit),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
