"""Entity and database builders for seller tests."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from sellermetrics.adapters.amazon.entities import (
    FeeBreakdown,
    FeeSource,
    Order,
    OrderItem,
    Product,
)
from sellermetrics.adapters.db.facade import DB

SETTLEMENT_HEADERS = [
    "settlement-id",
    "settlement-start-date",
    "settlement-end-date",
    "transaction-type",
    "order-id",
    "sku",
    "quantity-purchased",
    "amount-type",
    "amount-description",
    "amount",
    "posted-date",
]


def create_db(tmp_path: Path) -> DB:
    """File-backed SQLite database with the schema created.

    A file is used instead of ``:memory:`` so worker threads share the data.
    """
    db = DB(f"sqlite:///{tmp_path / 'sellermetrics.db'}")
    db.create_schema()
    return db


def make_order(
    amazon_order_id: str = "111-0000001-0000001",
    *,
    purchase_date: datetime | None = None,
    order_status: str = "Shipped",
    order_total: str | None = "25.00",
) -> Order:
    return Order(
        amazon_order_id=amazon_order_id,
        purchase_date=purchase_date or datetime(2026, 1, 15, 18, 0, tzinfo=timezone.utc),
        order_status=order_status,
        order_total=Decimal(order_total) if order_total is not None else None,
        currency_code="USD",
        fulfillment_channel="AFN",
        marketplace_id="ATVPDKIKX0DER",
    )


def make_order_item(
    order_item_id: str = "item-1",
    amazon_order_id: str = "111-0000001-0000001",
    *,
    asin: str | None = "B000TEST01",
    seller_sku: str | None = "SKU-1",
    quantity_ordered: int = 1,
    item_price: str = "25.00",
    total_fee: str | None = None,
    fee_source: FeeSource | None = None,
    fees: FeeBreakdown | None = None,
    refunded: str = "0",
) -> OrderItem:
    return OrderItem(
        order_item_id=order_item_id,
        amazon_order_id=amazon_order_id,
        asin=asin,
        seller_sku=seller_sku,
        quantity_ordered=quantity_ordered,
        item_price=Decimal(item_price),
        fees=fees or FeeBreakdown(),
        total_fee=Decimal(total_fee) if total_fee is not None else None,
        fee_source=fee_source,
        refunded=Decimal(refunded),
    )


def make_product(
    asin: str | None = "B000TEST01",
    sku: str | None = "SKU-1",
    *,
    avg_fee_per_unit: str | None = None,
    cogs: str | None = None,
    title: str | None = None,
    is_active: bool = True,
) -> Product:
    return Product(
        asin=asin,
        sku=sku,
        avg_fee_per_unit=Decimal(avg_fee_per_unit) if avg_fee_per_unit else None,
        cogs=Decimal(cogs) if cogs else None,
        title=title,
        is_active=is_active,
    )


def settlement_line(
    *,
    transaction_type: str = "Order",
    order_id: str = "111-0000001-0000001",
    sku: str = "SKU-1",
    quantity: str = "1",
    amount_type: str = "ItemFees",
    amount_description: str = "Commission",
    amount: str = "-3.75",
    posted_date: str = "2026-01-16",
    settlement_id: str = "9001",
    start_date: str = "2026-01-01",
    end_date: str = "2026-01-14",
) -> str:
    """One tab-separated settlement report line in header order."""
    return "\t".join(
        [
            settlement_id,
            start_date,
            end_date,
            transaction_type,
            order_id,
            sku,
            quantity,
            amount_type,
            amount_description,
            amount,
            posted_date,
        ]
    )


def make_settlement_report(*lines: str) -> str:
    return "\n".join(["\t".join(SETTLEMENT_HEADERS), *lines]) + "\n"
