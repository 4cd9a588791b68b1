"""Dashboard metrics payloads.

Amounts are computed in Decimal and rounded to cents only here, when the
response is built.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sellermetrics.adapters.amazon.fee_resolver import FeeProvenance
from sellermetrics.adapters.amazon.logger import ReconLogger
from sellermetrics.adapters.db.facade import DB
from sellermetrics.core.config import AppConfig
from sellermetrics.core.periods import Period
from sellermetrics.core.tenant import TenantScope
from sellermetrics.services.aggregation import (
    AsinTotals,
    PeriodTotals,
    aggregate_by_asin,
    aggregate_period,
)
from sellermetrics.services.service_fees import (
    ServiceFeeTotals,
    service_fees_for_period,
)

_CENTS = Decimal("0.01")


def money(value: Decimal) -> float:
    return float(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


class CamelModel(BaseModel):
    """Response model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class PeriodModel(CamelModel):
    label: str
    start_date: str
    end_date: str
    start_utc: str
    end_utc: str
    days: int

    @classmethod
    def from_period(cls, period: Period) -> PeriodModel:
        return cls(
            label=period.label,
            start_date=period.first_day.isoformat(),
            end_date=period.last_day.isoformat(),
            start_utc=period.start.isoformat(),
            end_utc=period.end.isoformat(),
            days=period.days,
        )


class FeeBreakdownModel(CamelModel):
    fulfillment: float = 0.0
    referral: float = 0.0
    storage: float = 0.0
    inbound: float = 0.0
    refund: float = 0.0
    other: float = 0.0
    reimbursements: float = 0.0
    promotion: float = 0.0
    historical: float = 0.0
    estimated: float = 0.0


class ServiceFeesModel(CamelModel):
    subscription: float = 0.0
    storage: float = 0.0
    other: float = 0.0
    total: float = 0.0

    @classmethod
    def from_totals(cls, totals: ServiceFeeTotals) -> ServiceFeesModel:
        return cls(
            subscription=money(totals.subscription),
            storage=money(totals.storage),
            other=money(totals.other),
            total=money(totals.total),
        )


class ProvenanceCountsModel(CamelModel):
    real: int = 0
    historical: int = 0
    estimated: int = 0


class MetricsModel(CamelModel):
    orders: int
    units: int
    sales: float
    amazon_fees: float
    fee_source: str
    service_fees: ServiceFeesModel
    total_fees: float
    cogs: float
    gross_profit: float
    fee_breakdown: FeeBreakdownModel
    fee_provenance: ProvenanceCountsModel
    period: PeriodModel
    refunds: float = 0.0


class DebugItemModel(CamelModel):
    order_id: str
    order_item_id: str
    asin: str | None = None
    sku: str | None = None
    quantity: int
    price: float
    fee: float
    fee_source: str


class DebugModel(CamelModel):
    start_utc: str
    end_utc: str
    exclude_canceled: bool
    items: list[DebugItemModel] = Field(default_factory=list)


class MetricsResponse(CamelModel):
    success: bool = True
    metrics: MetricsModel
    debug: DebugModel | None = Field(default=None, alias="_debug")


class AsinMetricsModel(CamelModel):
    asin: str | None = None
    sku: str | None = None
    title: str | None = None
    orders: int
    units: int
    sales: float
    amazon_fees: float
    fee_source: str
    cogs: float
    gross_profit: float


class AsinMetricsResponse(CamelModel):
    success: bool = True
    period: PeriodModel
    asins: list[AsinMetricsModel]


class ErrorResponse(CamelModel):
    success: bool = False
    error: str


def build_metrics_response(
    totals: PeriodTotals,
    service_fees: ServiceFeeTotals,
    period: Period,
    *,
    exclude_canceled: bool,
    debug: bool = False,
) -> MetricsResponse:
    """Shape period totals into the dashboard payload.

    ``amazonFees`` is the sum of resolved item fees; ``totalFees`` adds the
    prorated service fees and ``grossProfit`` subtracts fees and COGS from
    sales. ``refunds`` is the item price paid back to buyers and is reported
    on its own.
    """
    total_fees = totals.fees + service_fees.total
    breakdown = totals.real_breakdown
    metrics = MetricsModel(
        orders=totals.orders,
        units=totals.units,
        sales=money(totals.sales),
        amazon_fees=money(totals.fees),
        fee_source=totals.fee_source,
        service_fees=ServiceFeesModel.from_totals(service_fees),
        total_fees=money(total_fees),
        cogs=money(totals.cogs),
        gross_profit=money(totals.sales - total_fees - totals.cogs),
        fee_breakdown=FeeBreakdownModel(
            fulfillment=money(breakdown.fulfillment),
            referral=money(breakdown.referral),
            storage=money(breakdown.storage),
            inbound=money(breakdown.inbound),
            refund=money(breakdown.refund),
            other=money(breakdown.other),
            reimbursements=money(breakdown.reimbursements),
            promotion=money(breakdown.promotion),
            historical=money(totals.historical_fees),
            estimated=money(totals.estimated_fees),
        ),
        fee_provenance=ProvenanceCountsModel(
            real=totals.provenance_counts[FeeProvenance.REAL],
            historical=totals.provenance_counts[FeeProvenance.HISTORICAL],
            estimated=totals.provenance_counts[FeeProvenance.ESTIMATED],
        ),
        period=PeriodModel.from_period(period),
        refunds=money(totals.refunds),
    )

    debug_model = None
    if debug:
        debug_model = DebugModel(
            start_utc=period.start.isoformat(),
            end_utc=period.end.isoformat(),
            exclude_canceled=exclude_canceled,
            items=[
                DebugItemModel(
                    order_id=detail.amazon_order_id,
                    order_item_id=detail.order_item_id,
                    asin=detail.asin,
                    sku=detail.seller_sku,
                    quantity=detail.quantity,
                    price=money(detail.price),
                    fee=money(detail.fee.amount),
                    fee_source=detail.fee.provenance.value,
                )
                for detail in totals.items
            ],
        )
    return MetricsResponse(metrics=metrics, debug=debug_model)


def build_asin_response(
    rows: list[AsinTotals],
    period: Period,
) -> AsinMetricsResponse:
    return AsinMetricsResponse(
        period=PeriodModel.from_period(period),
        asins=[
            AsinMetricsModel(
                asin=row.asin,
                sku=row.seller_sku,
                title=row.title,
                orders=row.orders,
                units=row.units,
                sales=money(row.sales),
                amazon_fees=money(row.fees),
                fee_source=row.fee_source,
                cogs=money(row.cogs),
                gross_profit=money(row.sales - row.fees - row.cogs),
            )
            for row in rows
        ],
    )


def compute_metrics(
    db: DB,
    scope: TenantScope,
    period: Period,
    config: AppConfig,
    *,
    exclude_canceled: bool | None = None,
    debug: bool = False,
    recon_logger: ReconLogger | None = None,
) -> MetricsResponse:
    """Aggregate a period and its service fees into a MetricsResponse."""
    log = recon_logger or ReconLogger()
    exclude = config.exclude_canceled if exclude_canceled is None else exclude_canceled
    totals = aggregate_period(
        db,
        scope,
        period,
        exclude_canceled=exclude,
        fallback_rate=config.fallback_fee_rate,
        include_items=debug,
        recon_logger=log,
    )
    service_fees = service_fees_for_period(db, scope, period, log)
    return build_metrics_response(
        totals, service_fees, period, exclude_canceled=exclude, debug=debug
    )


def compute_asin_metrics(
    db: DB,
    scope: TenantScope,
    period: Period,
    config: AppConfig,
    *,
    exclude_canceled: bool | None = None,
    recon_logger: ReconLogger | None = None,
) -> AsinMetricsResponse:
    exclude = config.exclude_canceled if exclude_canceled is None else exclude_canceled
    rows = aggregate_by_asin(
        db,
        scope,
        period,
        exclude_canceled=exclude,
        fallback_rate=config.fallback_fee_rate,
        recon_logger=recon_logger,
    )
    return build_asin_response(rows, period)
