"""Fee source resolution for order items.

Each order item resolves to exactly one fee amount and a provenance label:

1. A stored real fee (``api`` or ``settlement_report`` source, total > 0).
2. The product's historical per-unit average (ASIN first, then SKU) times
   quantity.
3. A flat percentage of the item price.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from sellermetrics.adapters.amazon.entities import (
    REAL_FEE_SOURCES,
    ZERO,
    FeeBreakdown,
    OrderItem,
    Product,
)
from sellermetrics.adapters.amazon.logger import ReconLogger

DEFAULT_FALLBACK_RATE = Decimal("0.15")


class FeeProvenance(str, Enum):
    """How a resolved fee was obtained."""

    REAL = "real"
    HISTORICAL = "historical"
    ESTIMATED = "estimated"


@dataclass(frozen=True)
class ResolvedFee:
    amount: Decimal
    provenance: FeeProvenance
    breakdown: FeeBreakdown = field(default_factory=FeeBreakdown)


class HistoricalFeeIndex:
    """Per-unit historical fee lookup keyed by ASIN and by SKU."""

    def __init__(
        self,
        by_asin: dict[str, Decimal] | None = None,
        by_sku: dict[str, Decimal] | None = None,
    ) -> None:
        self._by_asin = dict(by_asin or {})
        self._by_sku = dict(by_sku or {})

    @classmethod
    def from_products(
        cls,
        products: Iterable[Product],
        recon_logger: ReconLogger | None = None,
    ) -> HistoricalFeeIndex:
        """Build the index from products in creation order.

        When several products share an ASIN (or SKU) the later one replaces
        the earlier one. Each replacement is logged so duplicate catalog rows
        show up in the logs instead of silently changing the estimate.
        Inactive products are left out.

        Args:
            products: Products ordered by creation time
            recon_logger: Logger for duplicate-key warnings

        Returns:
            HistoricalFeeIndex with one per-unit fee per key
        """
        log = recon_logger or ReconLogger()
        by_asin: dict[str, Decimal] = {}
        by_sku: dict[str, Decimal] = {}

        for product in products:
            fee = product.avg_fee_per_unit
            if not product.is_active or fee is None or fee <= ZERO:
                continue
            if product.asin:
                previous = by_asin.get(product.asin)
                if previous is not None and previous != fee:
                    log.duplicate_product_key("asin", product.asin, previous, fee)
                by_asin[product.asin] = fee
            if product.sku:
                previous = by_sku.get(product.sku)
                if previous is not None and previous != fee:
                    log.duplicate_product_key("sku", product.sku, previous, fee)
                by_sku[product.sku] = fee

        log.historical_index_built(len(by_asin), len(by_sku))
        return cls(by_asin, by_sku)

    def per_unit_fee(self, asin: str | None, sku: str | None) -> Decimal | None:
        """Return the per-unit fee by ASIN, falling back to SKU."""
        if asin and asin in self._by_asin:
            return self._by_asin[asin]
        if sku and sku in self._by_sku:
            return self._by_sku[sku]
        return None

    def __len__(self) -> int:
        return len(self._by_asin) + len(self._by_sku)


def has_real_fee(item: OrderItem) -> bool:
    """True when the item's stored total came from a real fee source."""
    return (
        item.fee_source in REAL_FEE_SOURCES
        and item.total_fee is not None
        and item.total_fee > ZERO
    )


def resolve_item_fee(
    item: OrderItem,
    index: HistoricalFeeIndex,
    *,
    fallback_rate: Decimal = DEFAULT_FALLBACK_RATE,
) -> ResolvedFee:
    """Resolve the fee for one order item.

    Args:
        item: Order item with stored fee fields
        index: Historical per-unit fees
        fallback_rate: Share of item price used when nothing else is known

    Returns:
        ResolvedFee with amount and provenance
    """
    if has_real_fee(item):
        assert item.total_fee is not None  # noqa: S101
        return ResolvedFee(item.total_fee, FeeProvenance.REAL, item.fees)

    per_unit = index.per_unit_fee(item.asin, item.seller_sku)
    if per_unit is not None and per_unit > ZERO:
        return ResolvedFee(per_unit * item.fee_quantity, FeeProvenance.HISTORICAL)

    return ResolvedFee(item.item_price * fallback_rate, FeeProvenance.ESTIMATED)
