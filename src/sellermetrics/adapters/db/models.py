from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    Date,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)

MONEY = Numeric(14, 2, asdecimal=True)
RATE = Numeric(14, 4, asdecimal=True)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class AmazonConnectionDB(Base):
    """Selling Partner API authorization for one tenant."""

    __tablename__ = "amazon_connections"

    connection_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    seller_id: Mapped[str | None] = mapped_column(String, nullable=True)
    region: Mapped[str] = mapped_column(String, nullable=False, default="na")
    marketplace_ids: Mapped[str] = mapped_column(
        String, nullable=False
    )  # comma-separated
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class OrderDB(Base):
    """Marketplace order. Purchase timestamps are stored as naive UTC."""

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("user_id", "amazon_order_id", name="uq_orders_user_order"),
        Index("ix_orders_user_purchase_date", "user_id", "purchase_date"),
    )

    order_pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    amazon_order_id: Mapped[str] = mapped_column(String, nullable=False)
    purchase_date: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)
    order_status: Mapped[str] = mapped_column(String, nullable=False)
    order_total: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    currency_code: Mapped[str | None] = mapped_column(String, nullable=True)
    fulfillment_channel: Mapped[str | None] = mapped_column(String, nullable=True)
    marketplace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class OrderItemDB(Base):
    """Order line item with its fee fields and fee provenance tag."""

    __tablename__ = "order_items"
    __table_args__ = (
        UniqueConstraint("user_id", "order_item_id", name="uq_order_items_user_item"),
        Index("ix_order_items_user_order", "user_id", "amazon_order_id"),
    )

    item_pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    order_item_id: Mapped[str] = mapped_column(String, nullable=False)
    amazon_order_id: Mapped[str] = mapped_column(String, nullable=False)
    asin: Mapped[str | None] = mapped_column(String, nullable=True)
    seller_sku: Mapped[str | None] = mapped_column(String, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity_ordered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity_shipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    item_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)

    fulfillment_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    referral_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    storage_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    inbound_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    refund_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    other_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    reimbursements: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    promotion_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    refunded_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    total_fee: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    fee_source: Mapped[str | None] = mapped_column(
        String, nullable=True
    )  # NULL, "api" or "settlement_report"
    fees_updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class ProductDB(Base):
    """Catalog product with COGS and the rolling average fee-per-unit."""

    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("user_id", "asin", "sku", name="uq_products_user_asin_sku"),
    )

    product_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    asin: Mapped[str | None] = mapped_column(String, nullable=True)
    sku: Mapped[str | None] = mapped_column(String, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    cogs: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    avg_fee_per_unit: Mapped[Decimal | None] = mapped_column(RATE, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class ServiceFeeDB(Base):
    """Account-level fee over an inclusive date span."""

    __tablename__ = "service_fees"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "fee_type",
            "period_start",
            "period_end",
            name="uq_service_fees_user_type_span",
        ),
    )

    service_fee_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    fee_type: Mapped[str] = mapped_column(
        String, nullable=False
    )  # "subscription", "storage" or "other"
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
