"""Account-level service fees prorated onto a reporting period."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from sellermetrics.adapters.amazon.entities import ZERO, ServiceFee, ServiceFeeType
from sellermetrics.adapters.amazon.logger import ReconLogger
from sellermetrics.adapters.db.facade import DB
from sellermetrics.core.periods import Period
from sellermetrics.core.tenant import TenantScope

MIN_PERIOD_DAYS = 7
FULL_AMOUNT_SHARE = Decimal("0.8")


@dataclass(frozen=True)
class ServiceFeeTotals:
    subscription: Decimal = ZERO
    storage: Decimal = ZERO
    other: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.subscription + self.storage + self.other


def prorated_amount(fee: ServiceFee, requested_days: int) -> Decimal:
    """Share of ``fee`` attributable to a period of ``requested_days``.

    A period covering at least 80% of the fee's span takes the full amount;
    shorter periods take ``requested_days / fee.days`` of it.
    """
    if requested_days >= FULL_AMOUNT_SHARE * fee.days:
        return fee.amount
    return fee.amount * Decimal(requested_days) / Decimal(fee.days)


def prorate_service_fees(
    fees: Iterable[ServiceFee],
    requested_days: int,
    recon_logger: ReconLogger | None = None,
) -> ServiceFeeTotals:
    """Group prorated service fees; periods under a week carry none."""
    if requested_days < MIN_PERIOD_DAYS:
        return ServiceFeeTotals()

    log = recon_logger or ReconLogger()
    totals = {fee_type: ZERO for fee_type in ServiceFeeType}
    for fee in fees:
        amount = prorated_amount(fee, requested_days)
        log.service_fee_prorated(
            fee.fee_type.value, fee.amount, fee.days, amount, requested_days
        )
        totals[fee.fee_type] += amount
    return ServiceFeeTotals(
        subscription=totals[ServiceFeeType.SUBSCRIPTION],
        storage=totals[ServiceFeeType.STORAGE],
        other=totals[ServiceFeeType.OTHER],
    )


def service_fees_for_period(
    db: DB,
    scope: TenantScope,
    period: Period,
    recon_logger: ReconLogger | None = None,
) -> ServiceFeeTotals:
    if period.days < MIN_PERIOD_DAYS:
        return ServiceFeeTotals()
    fees = db.list_service_fees(scope, period.first_day, period.last_day)
    return prorate_service_fees(fees, period.days, recon_logger)
