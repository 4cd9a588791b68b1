"""Amazon seller entities, payload parsing and fee resolution."""

from sellermetrics.adapters.amazon.entities import (
    FeeBreakdown,
    FeeSource,
    Order,
    OrderItem,
    OrderItemFees,
    Product,
    ServiceFee,
    ServiceFeeType,
)
from sellermetrics.adapters.amazon.fee_resolver import (
    FeeProvenance,
    HistoricalFeeIndex,
    ResolvedFee,
    resolve_item_fee,
)
from sellermetrics.adapters.amazon.settlement import (
    SettlementRow,
    account_fees_from_settlement,
    fees_from_settlement,
    parse_settlement_report,
)

__all__ = [
    "FeeBreakdown",
    "FeeProvenance",
    "FeeSource",
    "HistoricalFeeIndex",
    "Order",
    "OrderItem",
    "OrderItemFees",
    "Product",
    "ResolvedFee",
    "ServiceFee",
    "ServiceFeeType",
    "SettlementRow",
    "account_fees_from_settlement",
    "fees_from_settlement",
    "parse_settlement_report",
    "resolve_item_fee",
]
