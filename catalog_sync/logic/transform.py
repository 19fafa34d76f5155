"""Normalize upstream product payloads into storage records."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from catalog_sync.ingest.models import (
    CatalogLookups,
    ChannelConfig,
    OptionRecord,
    ProductRecord,
    StockLevel,
    VariantRecord,
)
from catalog_sync.logic.pricing import (
    discount_percent,
    has_zero_prices,
    to_money,
    transfer_price,
    volumetric_weight,
)

logger = logging.getLogger(__name__)

META_DESCRIPTION_LENGTH = 160


class RecordError(ValueError):
    """A single upstream record cannot be normalized."""


MALFORMED_ERRORS = (ValueError, TypeError, AttributeError, KeyError)


@dataclass(slots=True)
class TransformedChunk:
    channel_id: int
    products: list[ProductRecord] = field(default_factory=list)
    variants: list[VariantRecord] = field(default_factory=list)
    options: list[OptionRecord] = field(default_factory=list)
    category_links: list[tuple[int, int]] = field(default_factory=list)
    channel_links: list[tuple[int, int]] = field(default_factory=list)
    failed_products: dict[int | str, str] = field(default_factory=dict)
    failed_variants: dict[str, str] = field(default_factory=dict)

    @property
    def product_ids(self) -> list[int]:
        return [product.id for product in self.products]


class Transformer:
    """Pure mapping from detail payloads to products, variants and relation rows.

    All database state the mapping depends on (category titles, safety stock)
    arrives through :class:`CatalogLookups`; nothing here performs I/O.
    """

    def format(
        self,
        raw_records: Iterable[dict[str, Any]],
        channel: ChannelConfig,
        lookups: CatalogLookups,
    ) -> TransformedChunk:
        chunk = TransformedChunk(channel_id=channel.channel_id)
        for position, raw in enumerate(raw_records):
            product_id = raw.get("id") if isinstance(raw, dict) else None
            try:
                self._format_one(raw, channel, lookups, chunk)
            except MALFORMED_ERRORS as exc:
                key = product_id if isinstance(product_id, int) else f"#{position}"
                logger.warning("Skipping product %s: %s", key, exc)
                chunk.failed_products[key] = f"{exc.__class__.__name__}: {exc}"
        return chunk

    def _format_one(
        self,
        raw: dict[str, Any],
        channel: ChannelConfig,
        lookups: CatalogLookups,
        chunk: TransformedChunk,
    ) -> None:
        if not isinstance(raw, dict):
            raise RecordError(f"record is {type(raw).__name__}, not an object")
        variants_payload = [v for v in _json_list(raw.get("variants"), "variants") if isinstance(v, dict)]
        product = self._product(raw, variants_payload, channel, lookups)
        options = self._options(raw, variants_payload, product.id)

        keywords = self._keywords(product.categories, lookups)
        variants = []
        for variant_raw in variants_payload:
            try:
                variants.append(self._variant(variant_raw, product, channel, lookups, keywords))
            except MALFORMED_ERRORS as exc:
                key = str(variant_raw.get("id"))
                logger.warning("Skipping variant %s of product %s: %s", key, product.id, exc)
                chunk.failed_variants[key] = f"{exc.__class__.__name__}: {exc}"

        chunk.products.append(product)
        chunk.variants.extend(variants)
        chunk.options.extend(options)
        chunk.category_links.extend((product.id, category_id) for category_id in product.categories)
        chunk.channel_links.append((channel.channel_id, product.id))

    def _product(
        self,
        raw: dict[str, Any],
        variants: list[dict[str, Any]],
        channel: ChannelConfig,
        lookups: CatalogLookups,
    ) -> ProductRecord:
        product_id = raw.get("id")
        if not isinstance(product_id, int):
            raise RecordError("missing numeric id")
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise RecordError("missing name")

        categories = _int_list(raw.get("categories"))
        images = [img for img in _json_list(raw.get("images"), "images") if isinstance(img, dict)]
        description = raw.get("description") or ""

        normal_price = to_money(raw.get("price"))
        discount_price = to_money(raw.get("sale_price"))
        stock = _sum_stock(lookups.stock, (v.get("sku") for v in variants))

        thumbnail = next((img for img in images if img.get("is_thumbnail")), None)
        hover = next((img for img in images if "hover" in (img.get("description") or "")), None)
        custom_url = raw.get("custom_url")
        if isinstance(custom_url, dict):
            url = custom_url.get("url") or "/"
        else:
            url = custom_url if isinstance(custom_url, str) and custom_url else "/"

        visible = bool(raw.get("is_visible", False))
        if has_zero_prices(normal_price, discount_price):
            visible = False

        return ProductRecord(
            id=product_id,
            title=name,
            page_title=raw.get("page_title") or name,
            description=description,
            type="variation" if len(variants) > 1 else "product",
            brand_id=raw.get("brand_id") or None,
            categories=categories,
            image=(thumbnail or {}).get("url_standard") or "",
            images=images or None,
            hover=(hover or {}).get("url_standard") or "",
            url=url,
            quantity=sum(int(v.get("inventory_level") or 0) for v in variants),
            stock=stock.available_to_sell,
            warning_stock=stock.safety_stock,
            normal_price=normal_price,
            discount_price=discount_price,
            cash_price=transfer_price(normal_price, discount_price, channel.transfer_percent),
            percent=discount_percent(normal_price, discount_price),
            weight=to_money(raw.get("weight")),
            sort_order=int(raw.get("sort_order") or 0),
            reserve=_reserve_label(categories, channel, lookups),
            sameday=_in_category(categories, channel.sameday_category),
            despacho24horas=_in_category(categories, channel.express_category),
            pickup_in_store=_in_category(categories, channel.pickup_category),
            turbo=_in_category(categories, channel.turbo_category),
            free_shipping=_in_category(categories, channel.free_shipping_category),
            featured=bool(raw.get("is_featured", False)),
            total_sold=int(raw.get("total_sold") or 0),
            is_visible=visible,
            meta_description=raw.get("meta_description") or description[:META_DESCRIPTION_LENGTH],
            meta_keywords=[str(k) for k in raw.get("meta_keywords") or []],
            related_products=_int_list(raw.get("related_products")),
            variants=variants,
        )

    def _variant(
        self,
        raw: dict[str, Any],
        product: ProductRecord,
        channel: ChannelConfig,
        lookups: CatalogLookups,
        keywords: str,
    ) -> VariantRecord:
        variant_id = raw.get("id")
        if not isinstance(variant_id, int):
            raise RecordError("missing numeric id")
        sku = (raw.get("sku") or "").strip()
        if not sku:
            raise RecordError("missing SKU")

        # Variants without their own price inherit the product price.
        normal_price = product.normal_price if raw.get("price") is None else to_money(raw.get("price"))
        if raw.get("sale_price") is None:
            discount_price = product.discount_price
        else:
            discount_price = to_money(raw.get("sale_price"))
        stock = lookups.stock.get(sku, StockLevel())
        option_values = [v for v in _json_list(raw.get("option_values"), "option_values") if isinstance(v, dict)]

        visible = product.is_visible
        if has_zero_prices(normal_price, discount_price):
            visible = False

        return VariantRecord(
            id=variant_id,
            product_id=product.id,
            title=product.title,
            sku=sku,
            normal_price=normal_price,
            discount_price=discount_price,
            cash_price=transfer_price(normal_price, discount_price, channel.transfer_percent),
            discount_rate=discount_percent(normal_price, discount_price),
            stock=stock.available_to_sell,
            warning_stock=stock.safety_stock,
            image=raw.get("image_url") or product.image,
            images=_variant_images(product.images or [], sku, raw.get("image_url")),
            categories=product.categories,
            quantity=int(raw.get("inventory_level") or 0),
            weight=volumetric_weight(
                raw.get("width"), raw.get("depth"), raw.get("height"), raw.get("weight"), channel.country_code
            ),
            height=_optional_float(raw.get("height")),
            depth=_optional_float(raw.get("depth")),
            width=_optional_float(raw.get("width")),
            options=option_values or None,
            option_label=option_values[0].get("label") if option_values else None,
            keywords=keywords,
            is_visible=visible,
        )

    def _options(
        self, raw: dict[str, Any], variants: list[dict[str, Any]], product_id: int
    ) -> list[OptionRecord]:
        try:
            options = _json_list(raw.get("options"), "options")
        except RecordError as exc:
            logger.warning("Ignoring options of product %s: %s", product_id, exc)
            options = []
        if options:
            records = []
            for option in options:
                if not isinstance(option, dict):
                    continue
                option_id = option.get("id")
                if not isinstance(option_id, int):
                    continue
                values = [
                    {"id": value.get("id"), "label": value.get("label"), "value_data": _value_data(value)}
                    for value in option.get("option_values") or []
                    if isinstance(value, dict)
                ]
                values.sort(key=lambda value: value["id"] or 0)
                records.append(
                    OptionRecord(
                        product_id=product_id,
                        option_id=option_id,
                        label=option.get("display_name") or option.get("name") or "",
                        options=values,
                    )
                )
            return records
        return _options_from_variants(variants, product_id)

    def _keywords(self, categories: list[int], lookups: CatalogLookups) -> str:
        titles = [lookups.category_titles[c] for c in categories if c in lookups.category_titles]
        tags = [lookups.tag_categories[c] for c in categories if c in lookups.tag_categories]
        campaigns = [lookups.campaign_categories[c] for c in categories if c in lookups.campaign_categories]
        keywords: list[str] = []
        for title in titles + tags + campaigns:
            if title and title not in keywords:
                keywords.append(title)
        return ", ".join(keywords)


def _options_from_variants(variants: list[dict[str, Any]], product_id: int) -> list[OptionRecord]:
    grouped: dict[int, OptionRecord] = {}
    for variant in variants:
        values = variant.get("option_values")
        for value in values if isinstance(values, list) else []:
            if not isinstance(value, dict):
                continue
            option_id = value.get("option_id")
            if not isinstance(option_id, int):
                continue
            record = grouped.setdefault(
                option_id,
                OptionRecord(
                    product_id=product_id,
                    option_id=option_id,
                    label=value.get("option_display_name") or "",
                    options=[],
                ),
            )
            if any(existing["id"] == value.get("id") for existing in record.options):
                continue
            record.options.append({"id": value.get("id"), "label": value.get("label"), "value_data": None})
    for record in grouped.values():
        record.options.sort(key=lambda value: value["id"] or 0)
    return list(grouped.values())


def _value_data(value: dict[str, Any]) -> Any:
    data = value.get("value_data") or {}
    if not isinstance(data, dict):
        return None
    return data.get("colors") or data.get("image_url")


def _variant_images(images: list[dict[str, Any]], sku: str, image_url: str | None) -> list[str]:
    needle = sku.lower()
    matched = [
        img.get("url_standard")
        for img in images
        if needle in (img.get("description") or "").lower() and img.get("url_standard")
    ]
    if matched:
        return matched
    if image_url:
        return [image_url]
    return [img["url_standard"] for img in images if img.get("url_standard")]


def _reserve_label(categories: list[int], channel: ChannelConfig, lookups: CatalogLookups) -> str:
    if channel.reserve_category is None or channel.reserve_category not in categories:
        return ""
    for category_id in categories:
        title = lookups.reserve_categories.get(category_id)
        if title:
            return title
    return ""


def _in_category(categories: list[int], category_id: int | None) -> bool:
    return category_id is not None and category_id in categories


def _sum_stock(stock: dict[str, StockLevel], skus: Iterable[Any]) -> StockLevel:
    total = StockLevel()
    for sku in {str(s).strip() for s in skus if s}:
        level = stock.get(sku)
        if level is None:
            continue
        total.available_to_sell += level.available_to_sell
        total.safety_stock += level.safety_stock
    return total


def _json_list(value: Any, name: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise RecordError(f"unparsable {name} JSON") from exc
    if not isinstance(value, list):
        raise RecordError(f"{name} is not a list")
    return value


def _int_list(value: Any) -> list[int]:
    result = []
    for item in value or []:
        try:
            result.append(int(item))
        except (TypeError, ValueError):
            continue
    return result


def _optional_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    return to_money(value)
