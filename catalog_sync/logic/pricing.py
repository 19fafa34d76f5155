"""Price, weight and stock derivations."""

from __future__ import annotations

import math
from typing import Any

DEFAULT_TRANSFER_PERCENT = 2.0
VOLUMETRIC_DIVISOR = 4000
ACTUAL_WEIGHT_COUNTRIES = frozenset({"PE"})


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_money(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def discount_percent(price: float, sale_price: float) -> str:
    """Rounded discount of ``sale_price`` against ``price`` as ``'NN%'``.

    Anything outside ``[0, 100)`` or a sale price that is not a discount
    yields ``'0%'``.
    """
    if price <= 0 or sale_price <= 0 or sale_price >= price:
        return "0%"
    percent = round_half_up((price - sale_price) / price * 100)
    if 0 <= percent < 100:
        return f"{percent}%"
    return "0%"


def transfer_price(price: float, sale_price: float, transfer_percent: float | None = None) -> int:
    """Cash price after the bank transfer discount, based on the sale price when set."""
    if transfer_percent is None:
        transfer_percent = DEFAULT_TRANSFER_PERCENT
    if price <= 0 and sale_price <= 0:
        return 0
    base = sale_price if sale_price > 0 else price
    return round_half_up(max(0.0, base * (1 - transfer_percent / 100)))


def volumetric_weight(
    width: Any, depth: Any, height: Any, weight: Any, country_code: str | None = "CL"
) -> float:
    declared = to_money(weight)
    if (country_code or "").upper() in ACTUAL_WEIGHT_COUNTRIES:
        return declared
    volumetric = to_money(width) * to_money(depth) * to_money(height) / VOLUMETRIC_DIVISOR
    return max(volumetric, declared)


def has_zero_prices(normal_price: float, discount_price: float) -> bool:
    return normal_price == 0 and discount_price == 0
