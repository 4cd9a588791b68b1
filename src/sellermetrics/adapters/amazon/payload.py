"""Parsing of Selling Partner API JSON payloads.

The API is inconsistent about key casing (``AmazonOrderId`` vs
``amazonOrderId``), so every lookup tries the PascalCase key first and the
camelCase key second.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sellermetrics.adapters.amazon.entities import ZERO, Order, OrderItem


def camel_case(pascal: str) -> str:
    """``AmazonOrderId`` -> ``amazonOrderId``; ``ASIN`` -> ``asin``."""
    if pascal.isupper():
        return pascal.lower()
    return pascal[:1].lower() + pascal[1:]


def get_field(obj: Mapping[str, Any] | None, pascal: str) -> Any:
    """Read a field under either casing; ``None`` when absent."""
    if not obj:
        return None
    value = obj.get(pascal)
    if value is None:
        value = obj.get(camel_case(pascal))
    return value


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_money(obj: Any) -> Decimal | None:
    """Amount of a money object (``Amount`` or ``CurrencyAmount``)."""
    if not isinstance(obj, Mapping):
        return None
    amount = get_field(obj, "Amount")
    if amount is None:
        amount = get_field(obj, "CurrencyAmount")
    return to_decimal(amount)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 API timestamp into an aware UTC datetime."""
    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_order(raw: Mapping[str, Any]) -> Order | None:
    """Build an Order from a getOrders entry; ``None`` when unusable."""
    order_id = get_field(raw, "AmazonOrderId")
    purchase_date = parse_timestamp(get_field(raw, "PurchaseDate"))
    if not order_id or purchase_date is None:
        return None

    order_total = get_field(raw, "OrderTotal")
    currency = get_field(order_total, "CurrencyCode") if order_total else None
    return Order(
        amazon_order_id=str(order_id),
        purchase_date=purchase_date,
        order_status=str(get_field(raw, "OrderStatus") or "Unknown"),
        order_total=parse_money(order_total),
        currency_code=currency,
        fulfillment_channel=get_field(raw, "FulfillmentChannel"),
        marketplace_id=get_field(raw, "MarketplaceId"),
    )


def parse_order_item(amazon_order_id: str, raw: Mapping[str, Any]) -> OrderItem | None:
    """Build an OrderItem from a getOrderItems entry; ``None`` without an id."""
    order_item_id = get_field(raw, "OrderItemId")
    if not order_item_id:
        return None
    return OrderItem(
        order_item_id=str(order_item_id),
        amazon_order_id=amazon_order_id,
        asin=get_field(raw, "ASIN") or None,
        seller_sku=get_field(raw, "SellerSKU") or None,
        quantity_ordered=to_int(get_field(raw, "QuantityOrdered")),
        quantity_shipped=to_int(get_field(raw, "QuantityShipped")),
        item_price=parse_money(get_field(raw, "ItemPrice")) or ZERO,
    )


def item_title(raw: Mapping[str, Any]) -> str | None:
    title = get_field(raw, "Title")
    return str(title) if title else None
