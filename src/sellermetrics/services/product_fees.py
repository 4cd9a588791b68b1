from __future__ import annotations

from decimal import Decimal

from sellermetrics.adapters.amazon.entities import ZERO
from sellermetrics.adapters.amazon.logger import ReconLogger
from sellermetrics.adapters.db.facade import DB
from sellermetrics.core.tenant import TenantScope

_AVERAGE_PLACES = Decimal("0.0001")


def refresh_product_fee_averages(
    db: DB,
    scope: TenantScope,
    recon_logger: ReconLogger | None = None,
) -> int:
    """Recompute each product's average fee-per-unit from real item fees.

    The average is ``sum(total_fee) / sum(quantity)`` over the tenant's items
    with a real fee source, grouped by (ASIN, SKU). Products missing for a
    pair seen on those items are created.

    Returns:
        Number of products updated
    """
    log = recon_logger or ReconLogger()
    sums: dict[tuple[str | None, str | None], tuple[Decimal, int]] = {}
    for row in db.list_real_fee_rows(scope):
        if not row.asin and not row.sku:
            continue
        key = (row.asin, row.sku)
        fee_total, units = sums.get(key, (ZERO, 0))
        sums[key] = (fee_total + row.total_fee, units + row.quantity)

    updated = 0
    for (asin, sku), (fee_total, units) in sorted(
        sums.items(), key=lambda entry: (entry[0][0] or "", entry[0][1] or "")
    ):
        if units <= 0:
            continue
        average = (fee_total / Decimal(units)).quantize(_AVERAGE_PLACES)
        db.upsert_product(scope, asin=asin, sku=sku, avg_fee_per_unit=average)
        updated += 1

    log.product_averages_refreshed(scope.user_id, updated)
    return updated
