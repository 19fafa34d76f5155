"""Ingestion data models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ChannelConfig:
    name: str
    channel_id: int
    parent_category: int | None = None
    transfer_percent: float = 2.0
    country_code: str = "CL"
    inventory_location_id: int | None = None
    benefits_category: int | None = None
    campaigns_category: int | None = None
    reserve_category: int | None = None
    sameday_category: int | None = None
    express_category: int | None = None
    pickup_category: int | None = None
    turbo_category: int | None = None
    free_shipping_category: int | None = None
    advanced_category: int | None = None


@dataclass(slots=True)
class StockLevel:
    available_to_sell: int = 0
    safety_stock: int = 0


@dataclass(slots=True)
class CatalogLookups:
    """Read-only state the transformer needs for one chunk."""

    category_titles: dict[int, str] = field(default_factory=dict)
    tag_categories: dict[int, str] = field(default_factory=dict)
    campaign_categories: dict[int, str] = field(default_factory=dict)
    reserve_categories: dict[int, str] = field(default_factory=dict)
    stock: dict[str, StockLevel] = field(default_factory=dict)


@dataclass(slots=True)
class ProductRecord:
    id: int
    title: str
    page_title: str
    description: str
    type: str
    brand_id: int | None
    categories: list[int]
    image: str
    images: list[dict[str, Any]] | None
    hover: str
    url: str
    quantity: int
    stock: int
    warning_stock: int
    normal_price: float
    discount_price: float
    cash_price: int
    percent: str
    weight: float
    sort_order: int
    reserve: str
    sameday: bool
    despacho24horas: bool
    pickup_in_store: bool
    turbo: bool
    free_shipping: bool
    featured: bool
    total_sold: int
    is_visible: bool
    meta_description: str
    meta_keywords: list[str]
    related_products: list[int]
    variants: list[dict[str, Any]]

    def to_row(self) -> dict[str, Any]:
        row = {name: getattr(self, name) for name in self.__slots__}
        for key in ("categories", "meta_keywords", "related_products", "variants"):
            row[key] = json.dumps(row[key])
        row["images"] = json.dumps(self.images) if self.images is not None else None
        return row


@dataclass(slots=True)
class VariantRecord:
    id: int
    product_id: int
    title: str
    sku: str
    normal_price: float
    discount_price: float
    cash_price: int
    discount_rate: str
    stock: int
    warning_stock: int
    image: str
    images: list[str]
    categories: list[int]
    quantity: int
    weight: float
    height: float | None
    depth: float | None
    width: float | None
    options: list[dict[str, Any]] | None
    option_label: str | None
    keywords: str
    is_visible: bool
    type: str = "variant"

    def to_row(self) -> dict[str, Any]:
        row = {name: getattr(self, name) for name in self.__slots__}
        row["images"] = json.dumps(self.images)
        row["categories"] = json.dumps(self.categories)
        row["options"] = json.dumps(self.options) if self.options else None
        return row


@dataclass(slots=True)
class OptionRecord:
    product_id: int
    option_id: int
    label: str
    options: list[dict[str, Any]]

    def to_row(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "option_id": self.option_id,
            "label": self.label,
            "options": json.dumps(self.options),
        }


@dataclass(slots=True)
class CategoryRecord:
    category_id: int
    parent_id: int
    title: str
    url: str
    sort_order: int
    image: str | None
    is_visible: bool
    tree_id: int | None


@dataclass(slots=True)
class BrandRecord:
    id: int
    name: str


@dataclass(slots=True)
class SafetyStockRecord:
    sku: str
    product_id: int
    variant_id: int
    safety_stock: int
    warning_level: int | None
    available_to_sell: int | None
    bin_picking_number: str | None
