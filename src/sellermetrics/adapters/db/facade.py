from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import ColumnElement, create_engine, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from sellermetrics.adapters.amazon.entities import (
    CANCELED_STATUS,
    ZERO,
    FeeBreakdown,
    FeeSource,
    Order,
    OrderItem,
    OrderItemFees,
    Product,
    ServiceFee,
    ServiceFeeType,
    fee_key,
)
from sellermetrics.adapters.db.models import (
    AmazonConnectionDB,
    Base,
    OrderDB,
    OrderItemDB,
    ProductDB,
    ServiceFeeDB,
)
from sellermetrics.core.tenant import TenantScope

_IN_CLAUSE_CHUNK = 500


@dataclass(frozen=True, slots=True)
class FeeApplyOutcome:
    """Result of writing real fees onto stored order items."""

    matched: int
    updated: int
    protected: int


@dataclass(frozen=True, slots=True)
class RealFeeRow:
    """Stored real fee of one item, used for historical averages."""

    asin: str | None
    sku: str | None
    quantity: int
    total_fee: Decimal


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_order(row: OrderDB) -> Order:
    return Order(
        amazon_order_id=row.amazon_order_id,
        purchase_date=_aware_utc(row.purchase_date),
        order_status=row.order_status,
        order_total=row.order_total,
        currency_code=row.currency_code,
        fulfillment_channel=row.fulfillment_channel,
        marketplace_id=row.marketplace_id,
    )


def _to_item(row: OrderItemDB) -> OrderItem:
    return OrderItem(
        order_item_id=row.order_item_id,
        amazon_order_id=row.amazon_order_id,
        asin=row.asin,
        seller_sku=row.seller_sku,
        quantity_ordered=row.quantity_ordered or 0,
        quantity_shipped=row.quantity_shipped or 0,
        item_price=row.item_price if row.item_price is not None else ZERO,
        fees=FeeBreakdown(
            fulfillment=row.fulfillment_fee or ZERO,
            referral=row.referral_fee or ZERO,
            storage=row.storage_fee or ZERO,
            inbound=row.inbound_fee or ZERO,
            refund=row.refund_fee or ZERO,
            other=row.other_fee or ZERO,
            reimbursements=row.reimbursements or ZERO,
            promotion=row.promotion_amount or ZERO,
        ),
        total_fee=row.total_fee,
        fee_source=FeeSource.parse(row.fee_source),
        refunded=row.refunded_amount or ZERO,
    )


def _to_product(row: ProductDB) -> Product:
    return Product(
        asin=row.asin,
        sku=row.sku,
        avg_fee_per_unit=row.avg_fee_per_unit,
        cogs=row.cogs,
        title=row.title,
        is_active=row.is_active,
        created_at=row.created_at,
    )


def _to_service_fee(row: ServiceFeeDB) -> ServiceFee:
    return ServiceFee(
        fee_type=ServiceFeeType(row.fee_type),
        amount=row.amount,
        period_start=row.period_start,
        period_end=row.period_end,
        description=row.description,
    )


def _chunks(values: Sequence[str], size: int = _IN_CLAUSE_CHUNK) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _match_fees(
    fees_by_key: Mapping[str, OrderItemFees],
    amazon_order_id: str,
    seller_sku: str | None,
) -> OrderItemFees | None:
    fees = None
    if seller_sku:
        fees = fees_by_key.get(fee_key(amazon_order_id, seller_sku))
    if fees is None:
        fees = fees_by_key.get(amazon_order_id)
    return fees


def _stored_total(breakdown: FeeBreakdown) -> Decimal | None:
    total = breakdown.amazon_total
    return total if total != ZERO else None


def _not_settled() -> ColumnElement[bool]:
    return or_(
        OrderItemDB.fee_source.is_(None),
        OrderItemDB.fee_source != FeeSource.SETTLEMENT_REPORT.value,
    )



class DB:
    """Tenant-scoped persistence for orders, items, products and fees.

    Every read and write takes a TenantScope and filters on its user id.
    Database errors propagate after the session is rolled back.
    """

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///sellermetrics.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @property
    def url(self) -> str:
        return self._url

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    # Connections

    def save_connection(
        self,
        scope: TenantScope,
        *,
        refresh_token: str,
        marketplace_ids: Sequence[str],
        region: str = "na",
        seller_id: str | None = None,
    ) -> AmazonConnectionDB:
        """Save or replace the tenant's Selling Partner API connection.

        Args:
            scope: Tenant the connection belongs to
            refresh_token: LWA refresh token from the seller's authorization
            marketplace_ids: Marketplaces to sync
            region: Selling Partner API region ("na", "eu" or "fe")
            seller_id: Optional merchant token

        Returns:
            Created or updated AmazonConnectionDB instance
        """
        with self.session() as session:  # type: Session
            connection = (
                session.query(AmazonConnectionDB)
                .filter_by(user_id=scope.user_id)
                .first()
            )
            if connection is None:
                connection = AmazonConnectionDB(
                    user_id=scope.user_id,
                    refresh_token=refresh_token,
                    marketplace_ids=",".join(marketplace_ids),
                    region=region,
                    seller_id=seller_id,
                    is_active=True,
                )
                session.add(connection)
            else:
                connection.refresh_token = refresh_token
                connection.marketplace_ids = ",".join(marketplace_ids)
                connection.region = region
                connection.seller_id = seller_id
                connection.is_active = True
                connection.updated_at = datetime.now()
            session.flush()
            session.refresh(connection)
            session.expunge(connection)
            return connection

    def get_active_connection(self, scope: TenantScope) -> AmazonConnectionDB | None:
        with self.session() as session:  # type: Session
            connection = (
                session.query(AmazonConnectionDB)
                .filter_by(user_id=scope.user_id, is_active=True)
                .first()
            )
            if connection:
                session.expunge(connection)
            return connection

    def list_active_scopes(self) -> list[TenantScope]:
        """Tenants with an active connection, for scheduled syncs."""
        with self.session() as session:  # type: Session
            user_ids = session.scalars(
                select(AmazonConnectionDB.user_id)
                .where(AmazonConnectionDB.is_active.is_(True))
                .order_by(AmazonConnectionDB.user_id)
            ).all()
            return [TenantScope(user_id) for user_id in user_ids]

    def mark_synced(self, scope: TenantScope, synced_at: datetime) -> None:
        with self.session() as session:  # type: Session
            connection = (
                session.query(AmazonConnectionDB)
                .filter_by(user_id=scope.user_id)
                .first()
            )
            if connection is not None:
                connection.last_sync_at = _naive_utc(synced_at)

    # Orders and items

    def upsert_order(self, scope: TenantScope, order: Order) -> Order:
        """Insert or update an order by its Amazon order id.

        Status and totals are mutated on re-sync; orders are never deleted.
        """
        with self.session() as session:  # type: Session
            row = (
                session.query(OrderDB)
                .filter_by(user_id=scope.user_id, amazon_order_id=order.amazon_order_id)
                .first()
            )
            if row is None:
                row = OrderDB(
                    user_id=scope.user_id, amazon_order_id=order.amazon_order_id
                )
                session.add(row)
            else:
                row.updated_at = datetime.now()
            row.purchase_date = _naive_utc(order.purchase_date)
            row.order_status = order.order_status
            row.order_total = order.order_total
            row.currency_code = order.currency_code
            row.fulfillment_channel = order.fulfillment_channel
            row.marketplace_id = order.marketplace_id
            session.flush()
            return _to_order(row)

    def upsert_order_item(
        self,
        scope: TenantScope,
        item: OrderItem,
        *,
        title: str | None = None,
    ) -> OrderItem:
        """Insert or update an order item by its order item id.

        Fee fields and the fee source are left untouched on update; only the
        fee writers change them.
        """
        with self.session() as session:  # type: Session
            row = (
                session.query(OrderItemDB)
                .filter_by(user_id=scope.user_id, order_item_id=item.order_item_id)
                .first()
            )
            if row is None:
                row = OrderItemDB(
                    user_id=scope.user_id,
                    order_item_id=item.order_item_id,
                    fulfillment_fee=ZERO,
                    referral_fee=ZERO,
                    storage_fee=ZERO,
                    inbound_fee=ZERO,
                    refund_fee=ZERO,
                    other_fee=ZERO,
                    reimbursements=ZERO,
                    promotion_amount=ZERO,
                    refunded_amount=ZERO,
                )
                session.add(row)
            else:
                row.updated_at = datetime.now()
            row.amazon_order_id = item.amazon_order_id
            row.asin = item.asin
            row.seller_sku = item.seller_sku
            row.quantity_ordered = item.quantity_ordered
            row.quantity_shipped = item.quantity_shipped
            row.item_price = item.item_price
            if title:
                row.title = title
            session.flush()
            return _to_item(row)

    def apply_item_fees(
        self,
        scope: TenantScope,
        fees_by_key: Mapping[str, OrderItemFees],
        source: FeeSource,
    ) -> FeeApplyOutcome:
        """Write real fees onto the tenant's order items.

        Each item is matched by ``order|sku`` first and by order id second.
        Fees from the Finances API never overwrite settlement report fees,
        and keep the refund columns written by ``apply_item_refunds``.

        Args:
            scope: Tenant whose items are updated
            fees_by_key: Fees keyed by ``order|sku`` or order id
            source: Fee source tag written with the fees

        Returns:
            FeeApplyOutcome with matched, updated and protected counts
        """
        if not fees_by_key:
            return FeeApplyOutcome(matched=0, updated=0, protected=0)

        order_ids = sorted({fees.amazon_order_id for fees in fees_by_key.values()})
        matched = updated = 0
        now = datetime.now()
        with self.session() as session:  # type: Session
            for chunk in _chunks(order_ids):
                rows = session.execute(
                    select(
                        OrderItemDB.item_pk,
                        OrderItemDB.amazon_order_id,
                        OrderItemDB.seller_sku,
                        OrderItemDB.refund_fee,
                        OrderItemDB.reimbursements,
                        OrderItemDB.refunded_amount,
                    ).where(
                        OrderItemDB.user_id == scope.user_id,
                        OrderItemDB.amazon_order_id.in_(chunk),
                    )
                ).all()
                for row in rows:
                    fees = _match_fees(fees_by_key, row.amazon_order_id, row.seller_sku)
                    if fees is None:
                        continue
                    matched += 1

                    stmt = update(OrderItemDB).where(
                        OrderItemDB.item_pk == row.item_pk,
                        OrderItemDB.user_id == scope.user_id,
                    )
                    breakdown = fees.fees
                    refunded = fees.refunded
                    if source is FeeSource.API:
                        # Settlement fees win over API fees.
                        stmt = stmt.where(_not_settled())
                        breakdown = replace(
                            breakdown,
                            refund=row.refund_fee or ZERO,
                            reimbursements=row.reimbursements or ZERO,
                        )
                        refunded = row.refunded_amount or ZERO
                    outcome = session.execute(
                        stmt.values(
                            fulfillment_fee=breakdown.fulfillment,
                            referral_fee=breakdown.referral,
                            storage_fee=breakdown.storage,
                            inbound_fee=breakdown.inbound,
                            refund_fee=breakdown.refund,
                            other_fee=breakdown.other,
                            reimbursements=breakdown.reimbursements,
                            promotion_amount=breakdown.promotion,
                            refunded_amount=refunded,
                            total_fee=_stored_total(breakdown),
                            fee_source=source.value,
                            fees_updated_at=now,
                        ).execution_options(synchronize_session=False)
                    )
                    updated += outcome.rowcount
        return FeeApplyOutcome(
            matched=matched, updated=updated, protected=matched - updated
        )

    def apply_item_refunds(
        self,
        scope: TenantScope,
        refunds_by_key: Mapping[str, OrderItemFees],
    ) -> FeeApplyOutcome:
        """Write Finances API refund adjustments onto the tenant's order items.

        Only the refund fee, reimbursements and refunded amount change. The
        stored total is recomputed for items that already carry API fees.
        Items with settlement report fees are left alone.
        """
        if not refunds_by_key:
            return FeeApplyOutcome(matched=0, updated=0, protected=0)

        order_ids = sorted({fees.amazon_order_id for fees in refunds_by_key.values()})
        matched = updated = 0
        now = datetime.now()
        with self.session() as session:  # type: Session
            for chunk in _chunks(order_ids):
                rows = session.scalars(
                    select(OrderItemDB).where(
                        OrderItemDB.user_id == scope.user_id,
                        OrderItemDB.amazon_order_id.in_(chunk),
                    )
                ).all()
                for row in rows:
                    refund = _match_fees(
                        refunds_by_key, row.amazon_order_id, row.seller_sku
                    )
                    if refund is None:
                        continue
                    matched += 1

                    values = {
                        "refund_fee": refund.fees.refund,
                        "reimbursements": refund.fees.reimbursements,
                        "refunded_amount": refund.refunded,
                        "fees_updated_at": now,
                    }
                    if FeeSource.parse(row.fee_source) is FeeSource.API:
                        breakdown = replace(
                            _to_item(row).fees,
                            refund=refund.fees.refund,
                            reimbursements=refund.fees.reimbursements,
                        )
                        values["total_fee"] = _stored_total(breakdown)
                    outcome = session.execute(
                        update(OrderItemDB)
                        .where(
                            OrderItemDB.item_pk == row.item_pk,
                            OrderItemDB.user_id == scope.user_id,
                            _not_settled(),
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    updated += outcome.rowcount
        return FeeApplyOutcome(
            matched=matched, updated=updated, protected=matched - updated
        )

    def list_orders_in_range(
        self,
        scope: TenantScope,
        start: datetime,
        end: datetime,
        *,
        exclude_canceled: bool,
    ) -> list[Order]:
        """Orders with ``start <= purchase_date < end``."""
        stmt = select(OrderDB).where(
            OrderDB.user_id == scope.user_id,
            OrderDB.purchase_date >= _naive_utc(start),
            OrderDB.purchase_date < _naive_utc(end),
        )
        if exclude_canceled:
            stmt = stmt.where(OrderDB.order_status != CANCELED_STATUS)
        stmt = stmt.order_by(OrderDB.purchase_date, OrderDB.order_pk)
        with self.session() as session:  # type: Session
            return [_to_order(row) for row in session.scalars(stmt).all()]

    def list_items_for_orders(
        self,
        scope: TenantScope,
        amazon_order_ids: Sequence[str],
    ) -> list[OrderItem]:
        items: list[OrderItem] = []
        unique_ids = sorted(set(amazon_order_ids))
        with self.session() as session:  # type: Session
            for chunk in _chunks(unique_ids):
                rows = session.scalars(
                    select(OrderItemDB)
                    .where(
                        OrderItemDB.user_id == scope.user_id,
                        OrderItemDB.amazon_order_id.in_(chunk),
                    )
                    .order_by(OrderItemDB.item_pk)
                ).all()
                items.extend(_to_item(row) for row in rows)
        return items

    def list_items(self, scope: TenantScope) -> list[OrderItem]:
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(OrderItemDB)
                .where(OrderItemDB.user_id == scope.user_id)
                .order_by(OrderItemDB.item_pk)
            ).all()
            return [_to_item(row) for row in rows]

    def list_real_fee_rows(self, scope: TenantScope) -> list[RealFeeRow]:
        """Items with a real fee source and a positive stored total."""
        with self.session() as session:  # type: Session
            rows = session.execute(
                select(
                    OrderItemDB.asin,
                    OrderItemDB.seller_sku,
                    OrderItemDB.quantity_ordered,
                    OrderItemDB.total_fee,
                ).where(
                    OrderItemDB.user_id == scope.user_id,
                    OrderItemDB.fee_source.in_(
                        [FeeSource.API.value, FeeSource.SETTLEMENT_REPORT.value]
                    ),
                    OrderItemDB.total_fee > 0,
                )
            ).all()
            return [
                RealFeeRow(
                    asin=asin,
                    sku=sku,
                    quantity=quantity or 1,
                    total_fee=total_fee,
                )
                for asin, sku, quantity, total_fee in rows
            ]

    def latest_purchase_date(self, scope: TenantScope) -> datetime | None:
        with self.session() as session:  # type: Session
            latest = session.scalar(
                select(func.max(OrderDB.purchase_date)).where(
                    OrderDB.user_id == scope.user_id
                )
            )
            return _aware_utc(latest) if latest is not None else None

    # Products

    def upsert_product(
        self,
        scope: TenantScope,
        *,
        asin: str | None,
        sku: str | None,
        title: str | None = None,
        cogs: Decimal | None = None,
        avg_fee_per_unit: Decimal | None = None,
        is_active: bool | None = None,
    ) -> Product:
        """Insert or update a product by (ASIN, SKU).

        Only the fields passed as non-None are changed on update.
        """
        with self.session() as session:  # type: Session
            row = (
                session.query(ProductDB)
                .filter_by(user_id=scope.user_id, asin=asin, sku=sku)
                .first()
            )
            if row is None:
                row = ProductDB(user_id=scope.user_id, asin=asin, sku=sku)
                session.add(row)
            else:
                row.updated_at = datetime.now()
            if title is not None:
                row.title = title
            if cogs is not None:
                row.cogs = cogs
            if avg_fee_per_unit is not None:
                row.avg_fee_per_unit = avg_fee_per_unit
            if is_active is not None:
                row.is_active = is_active
            session.flush()
            session.refresh(row)
            return _to_product(row)

    def list_products(self, scope: TenantScope) -> list[Product]:
        """Products in creation order."""
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(ProductDB)
                .where(ProductDB.user_id == scope.user_id)
                .order_by(ProductDB.created_at, ProductDB.product_id)
            ).all()
            return [_to_product(row) for row in rows]

    # Service fees

    def upsert_service_fee(self, scope: TenantScope, fee: ServiceFee) -> ServiceFee:
        with self.session() as session:  # type: Session
            row = (
                session.query(ServiceFeeDB)
                .filter_by(
                    user_id=scope.user_id,
                    fee_type=fee.fee_type.value,
                    period_start=fee.period_start,
                    period_end=fee.period_end,
                )
                .first()
            )
            if row is None:
                row = ServiceFeeDB(
                    user_id=scope.user_id,
                    fee_type=fee.fee_type.value,
                    period_start=fee.period_start,
                    period_end=fee.period_end,
                )
                session.add(row)
            row.amount = fee.amount
            row.description = fee.description
            session.flush()
            return _to_service_fee(row)

    def list_service_fees(
        self,
        scope: TenantScope,
        first_day: date,
        last_day: date,
    ) -> list[ServiceFee]:
        """Service fees whose span overlaps ``[first_day, last_day]``."""
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(ServiceFeeDB)
                .where(
                    ServiceFeeDB.user_id == scope.user_id,
                    ServiceFeeDB.period_start <= last_day,
                    ServiceFeeDB.period_end >= first_day,
                )
                .order_by(ServiceFeeDB.period_start, ServiceFeeDB.service_fee_id)
            ).all()
            return [_to_service_fee(row) for row in rows]
