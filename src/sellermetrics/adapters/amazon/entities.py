"""Amazon seller domain entities used by fee resolution and aggregation."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

ZERO = Decimal("0")
CANCELED_STATUS = "Canceled"


class FeeSource(str, Enum):
    """Where an order item's stored fee fields came from."""

    API = "api"
    SETTLEMENT_REPORT = "settlement_report"

    @classmethod
    def parse(cls, value: str | None) -> FeeSource | None:
        """Map a stored tag to a source; unknown or empty tags mean none."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


REAL_FEE_SOURCES = frozenset({FeeSource.API, FeeSource.SETTLEMENT_REPORT})


@dataclass
class FeeBreakdown:
    """Fee components for an order item or an aggregate.

    Reimbursements are credits and reduce the Amazon fee total. Promotions
    are tracked but are not Amazon fees.
    """

    fulfillment: Decimal = ZERO
    referral: Decimal = ZERO
    storage: Decimal = ZERO
    inbound: Decimal = ZERO
    refund: Decimal = ZERO
    other: Decimal = ZERO
    reimbursements: Decimal = ZERO
    promotion: Decimal = ZERO

    @property
    def amazon_total(self) -> Decimal:
        return (
            self.fulfillment
            + self.referral
            + self.storage
            + self.inbound
            + self.refund
            + self.other
            - self.reimbursements
        )

    def plus(self, other: FeeBreakdown) -> FeeBreakdown:
        return FeeBreakdown(
            **{
                f.name: getattr(self, f.name) + getattr(other, f.name)
                for f in fields(self)
            }
        )

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) == ZERO for f in fields(self))


@dataclass
class Order:
    """Marketplace order as used by reconciliation."""

    amazon_order_id: str
    purchase_date: datetime
    order_status: str
    order_total: Decimal | None = None
    currency_code: str | None = None
    fulfillment_channel: str | None = None
    marketplace_id: str | None = None

    @property
    def is_canceled(self) -> bool:
        return self.order_status == CANCELED_STATUS


@dataclass
class OrderItem:
    """Order line item with its stored fee fields and provenance tag."""

    order_item_id: str
    amazon_order_id: str
    asin: str | None
    seller_sku: str | None
    quantity_ordered: int
    item_price: Decimal
    quantity_shipped: int = 0
    fees: FeeBreakdown = field(default_factory=FeeBreakdown)
    total_fee: Decimal | None = None
    fee_source: FeeSource | None = None
    refunded: Decimal = ZERO

    @property
    def fee_quantity(self) -> int:
        """Units used for per-unit fee math; items without a count are one unit."""
        return self.quantity_ordered or 1


def fee_key(amazon_order_id: str, seller_sku: str | None) -> str:
    """Key matching real fees to order lines: ``order|sku`` or the bare order id."""
    return f"{amazon_order_id}|{seller_sku}" if seller_sku else amazon_order_id


@dataclass
class OrderItemFees:
    """Real fees attributed to one order line, or to a whole order without SKU.

    ``refunded`` is the item price paid back to buyers, kept apart from fees.
    """

    amazon_order_id: str
    seller_sku: str | None
    quantity: int = 0
    principal: Decimal = ZERO
    fees: FeeBreakdown = field(default_factory=FeeBreakdown)
    refunded: Decimal = ZERO

    @property
    def key(self) -> str:
        return fee_key(self.amazon_order_id, self.seller_sku)

    @property
    def total_fee(self) -> Decimal:
        return self.fees.amazon_total


@dataclass
class Product:
    """Catalog product with its rolling historical fee-per-unit."""

    asin: str | None
    sku: str | None
    avg_fee_per_unit: Decimal | None = None
    cogs: Decimal | None = None
    title: str | None = None
    is_active: bool = True
    created_at: datetime | None = None


class ServiceFeeType(str, Enum):
    """Account-level fee groups reported alongside period metrics."""

    SUBSCRIPTION = "subscription"
    STORAGE = "storage"
    OTHER = "other"

    @classmethod
    def categorize(cls, raw_type: str | None) -> ServiceFeeType:
        """Group an Amazon service fee type (``Subscription``, ``FBAStorageFee``...)."""
        lowered = (raw_type or "").lower()
        if "subscription" in lowered or "monthlyfee" in lowered:
            return cls.SUBSCRIPTION
        if "storage" in lowered:
            return cls.STORAGE
        return cls.OTHER


@dataclass
class ServiceFee:
    """Account-level fee charged over an inclusive span of calendar days."""

    fee_type: ServiceFeeType
    amount: Decimal
    period_start: date
    period_end: date
    description: str | None = None

    @property
    def days(self) -> int:
        return max(1, (self.period_end - self.period_start).days + 1)
