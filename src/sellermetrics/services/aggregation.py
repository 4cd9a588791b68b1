"""Period aggregation of orders, units, sales and resolved fees."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from sellermetrics.adapters.amazon.entities import (
    ZERO,
    FeeBreakdown,
    Order,
    OrderItem,
    Product,
)
from sellermetrics.adapters.amazon.fee_resolver import (
    DEFAULT_FALLBACK_RATE,
    FeeProvenance,
    HistoricalFeeIndex,
    ResolvedFee,
    resolve_item_fee,
)
from sellermetrics.adapters.amazon.logger import ReconLogger
from sellermetrics.adapters.db.facade import DB
from sellermetrics.core.periods import Period
from sellermetrics.core.tenant import TenantScope


def fee_source_label(counts: dict[FeeProvenance, int]) -> str:
    """Summarize item provenances as ``real``, ``historical``, ``estimated`` or ``mixed``."""
    present = [provenance for provenance, count in counts.items() if count > 0]
    if not present:
        return FeeProvenance.ESTIMATED.value
    if len(present) == 1:
        return present[0].value
    return "mixed"


def _empty_counts() -> dict[FeeProvenance, int]:
    return {provenance: 0 for provenance in FeeProvenance}


@dataclass(frozen=True)
class ItemDetail:
    """One item's contribution, reported in debug output."""

    amazon_order_id: str
    order_item_id: str
    asin: str | None
    seller_sku: str | None
    quantity: int
    price: Decimal
    fee: ResolvedFee


@dataclass
class PeriodTotals:
    orders: int = 0
    units: int = 0
    sales: Decimal = ZERO
    fees: Decimal = ZERO
    cogs: Decimal = ZERO
    refunds: Decimal = ZERO
    real_breakdown: FeeBreakdown = field(default_factory=FeeBreakdown)
    historical_fees: Decimal = ZERO
    estimated_fees: Decimal = ZERO
    provenance_counts: dict[FeeProvenance, int] = field(default_factory=_empty_counts)
    items: list[ItemDetail] = field(default_factory=list)

    @property
    def fee_source(self) -> str:
        return fee_source_label(self.provenance_counts)


@dataclass
class AsinTotals:
    asin: str | None
    seller_sku: str | None = None
    title: str | None = None
    order_ids: set[str] = field(default_factory=set)
    units: int = 0
    sales: Decimal = ZERO
    fees: Decimal = ZERO
    cogs: Decimal = ZERO
    provenance_counts: dict[FeeProvenance, int] = field(default_factory=_empty_counts)

    @property
    def orders(self) -> int:
        return len(self.order_ids)

    @property
    def fee_source(self) -> str:
        return fee_source_label(self.provenance_counts)


class CogsIndex:
    """Per-unit cost of goods keyed by ASIN, then SKU."""

    def __init__(self, products: Iterable[Product] = ()) -> None:
        self._by_asin: dict[str, Decimal] = {}
        self._by_sku: dict[str, Decimal] = {}
        self._titles: dict[str, str] = {}
        for product in products:
            if product.asin and product.title:
                self._titles[product.asin] = product.title
            if product.cogs is None or product.cogs <= ZERO:
                continue
            if product.asin:
                self._by_asin[product.asin] = product.cogs
            if product.sku:
                self._by_sku[product.sku] = product.cogs

    def unit_cost(self, asin: str | None, sku: str | None) -> Decimal | None:
        if asin and asin in self._by_asin:
            return self._by_asin[asin]
        if sku and sku in self._by_sku:
            return self._by_sku[sku]
        return None

    def title(self, asin: str | None) -> str | None:
        return self._titles.get(asin) if asin else None


def _unique_items(
    orders: Sequence[Order],
    items: Iterable[OrderItem],
    recon_logger: ReconLogger,
) -> list[OrderItem]:
    """Items belonging to ``orders``, each ``order_item_id`` once."""
    order_ids = {order.amazon_order_id for order in orders}
    seen: set[str] = set()
    unique: list[OrderItem] = []
    for item in items:
        if item.amazon_order_id not in order_ids:
            continue
        if item.order_item_id in seen:
            recon_logger.duplicate_item_skipped(item.order_item_id)
            continue
        seen.add(item.order_item_id)
        unique.append(item)
    return unique


def summarize_items(
    orders: Sequence[Order],
    items: Iterable[OrderItem],
    index: HistoricalFeeIndex,
    *,
    fallback_rate: Decimal = DEFAULT_FALLBACK_RATE,
    cogs: CogsIndex | None = None,
    include_items: bool = False,
    recon_logger: ReconLogger | None = None,
) -> PeriodTotals:
    """Reduce orders and their items to period totals.

    The result does not depend on item order. Items whose order is not in
    ``orders`` are ignored and each ``order_item_id`` is counted once.

    Args:
        orders: Orders in the period
        items: Items of those orders
        index: Historical per-unit fees
        fallback_rate: Share of item price used for estimates
        cogs: Optional per-unit cost lookup
        include_items: Keep a per-item detail list
        recon_logger: Logger for per-item and duplicate messages

    Returns:
        PeriodTotals for the period
    """
    log = recon_logger or ReconLogger()
    cogs = cogs or CogsIndex()
    totals = PeriodTotals(orders=len({order.amazon_order_id for order in orders}))

    for item in _unique_items(orders, items, log):
        resolved = resolve_item_fee(item, index, fallback_rate=fallback_rate)
        log.item_resolved(
            item.amazon_order_id, item.asin, resolved.amount, resolved.provenance.value
        )

        totals.units += item.quantity_ordered
        totals.sales += item.item_price
        totals.fees += resolved.amount
        totals.refunds += item.refunded
        totals.provenance_counts[resolved.provenance] += 1
        if resolved.provenance is FeeProvenance.REAL:
            totals.real_breakdown = totals.real_breakdown.plus(resolved.breakdown)
        elif resolved.provenance is FeeProvenance.HISTORICAL:
            totals.historical_fees += resolved.amount
        else:
            totals.estimated_fees += resolved.amount

        unit_cost = cogs.unit_cost(item.asin, item.seller_sku)
        if unit_cost is not None:
            totals.cogs += unit_cost * item.quantity_ordered

        if include_items:
            totals.items.append(
                ItemDetail(
                    amazon_order_id=item.amazon_order_id,
                    order_item_id=item.order_item_id,
                    asin=item.asin,
                    seller_sku=item.seller_sku,
                    quantity=item.quantity_ordered,
                    price=item.item_price,
                    fee=resolved,
                )
            )
    return totals


def summarize_by_asin(
    orders: Sequence[Order],
    items: Iterable[OrderItem],
    index: HistoricalFeeIndex,
    *,
    fallback_rate: Decimal = DEFAULT_FALLBACK_RATE,
    cogs: CogsIndex | None = None,
    recon_logger: ReconLogger | None = None,
) -> list[AsinTotals]:
    """Same reduction as summarize_items, grouped by ASIN.

    Returns:
        One AsinTotals per ASIN, highest sales first
    """
    log = recon_logger or ReconLogger()
    cogs = cogs or CogsIndex()
    by_asin: dict[str | None, AsinTotals] = {}

    for item in _unique_items(orders, items, log):
        resolved = resolve_item_fee(item, index, fallback_rate=fallback_rate)
        entry = by_asin.get(item.asin)
        if entry is None:
            entry = AsinTotals(
                asin=item.asin,
                seller_sku=item.seller_sku,
                title=cogs.title(item.asin),
            )
            by_asin[item.asin] = entry
        entry.order_ids.add(item.amazon_order_id)
        entry.units += item.quantity_ordered
        entry.sales += item.item_price
        entry.fees += resolved.amount
        entry.provenance_counts[resolved.provenance] += 1
        unit_cost = cogs.unit_cost(item.asin, item.seller_sku)
        if unit_cost is not None:
            entry.cogs += unit_cost * item.quantity_ordered

    return sorted(
        by_asin.values(), key=lambda entry: (-entry.sales, entry.asin or "")
    )


def aggregate_period(
    db: DB,
    scope: TenantScope,
    period: Period,
    *,
    exclude_canceled: bool = True,
    fallback_rate: Decimal = DEFAULT_FALLBACK_RATE,
    include_items: bool = False,
    recon_logger: ReconLogger | None = None,
) -> PeriodTotals:
    """Fetch the tenant's orders in ``period`` and reduce them.

    Database errors propagate; no partial result is returned.
    """
    log = recon_logger or ReconLogger()
    log.aggregation_start(
        scope.user_id, period.label, period.start, period.end, exclude_canceled
    )

    orders = db.list_orders_in_range(
        scope, period.start, period.end, exclude_canceled=exclude_canceled
    )
    items = db.list_items_for_orders(
        scope, [order.amazon_order_id for order in orders]
    )
    products = db.list_products(scope)
    log.orders_fetched(len(orders), len(items))

    totals = summarize_items(
        orders,
        items,
        HistoricalFeeIndex.from_products(products, log),
        fallback_rate=fallback_rate,
        cogs=CogsIndex(products),
        include_items=include_items,
        recon_logger=log,
    )
    log.aggregation_complete(
        period.label,
        totals.orders,
        totals.units,
        totals.sales,
        totals.fees,
        totals.fee_source,
    )
    return totals


def aggregate_by_asin(
    db: DB,
    scope: TenantScope,
    period: Period,
    *,
    exclude_canceled: bool = True,
    fallback_rate: Decimal = DEFAULT_FALLBACK_RATE,
    recon_logger: ReconLogger | None = None,
) -> list[AsinTotals]:
    log = recon_logger or ReconLogger()
    log.aggregation_start(
        scope.user_id, period.label, period.start, period.end, exclude_canceled
    )
    orders = db.list_orders_in_range(
        scope, period.start, period.end, exclude_canceled=exclude_canceled
    )
    items = db.list_items_for_orders(
        scope, [order.amazon_order_id for order in orders]
    )
    products = db.list_products(scope)
    log.orders_fetched(len(orders), len(items))
    return summarize_by_asin(
        orders,
        items,
        HistoricalFeeIndex.from_products(products, log),
        fallback_rate=fallback_rate,
        cogs=CogsIndex(products),
        recon_logger=log,
    )
