"""Tests for order and fee ingestion."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from sellermetrics.adapters.amazon.entities import FeeSource, ServiceFeeType
from sellermetrics.adapters.amazon.financial_events import FinancialEvents
from sellermetrics.adapters.db.facade import DB
from sellermetrics.core.config import AppConfig
from sellermetrics.core.tenant import TenantScope
from sellermetrics.infra.clients.sp_api import ReportModel
from sellermetrics.services.sync import (
    ConnectionNotFoundError,
    SyncLogger,
    SyncService,
    import_settlement_report,
)
from tests.fixtures.sellers import (
    MockSellerAPI,
    create_db,
    make_settlement_report,
    settlement_line,
)

SELLER = TenantScope("seller-1")
NOW = datetime(2026, 1, 20, 20, 0, tzinfo=timezone.utc)
ORDER_ID = "111-0000001-0000001"

# Helper functions


def raw_order(order_id: str = ORDER_ID, **overrides: Any) -> dict[str, Any]:
    order = {
        "AmazonOrderId": order_id,
        "PurchaseDate": "2026-01-15T20:00:00Z",
        "OrderStatus": "Shipped",
        "OrderTotal": {"CurrencyCode": "USD", "Amount": "25.00"},
    }
    order.update(overrides)
    return order


def raw_item(item_id: str = "item-1", sku: str = "SKU-1") -> dict[str, Any]:
    return {
        "OrderItemId": item_id,
        "ASIN": "B000TEST01",
        "SellerSKU": sku,
        "Title": "Widget",
        "QuantityOrdered": 1,
        "ItemPrice": {"CurrencyCode": "USD", "Amount": "25.00"},
    }


def shipment_events(commission: str = "-1.00") -> FinancialEvents:
    return FinancialEvents(
        shipment_events=[
            {
                "AmazonOrderId": ORDER_ID,
                "ShipmentItemList": [
                    {
                        "SellerSKU": "SKU-1",
                        "QuantityShipped": 1,
                        "ItemFeeList": [
                            {
                                "FeeType": "Commission",
                                "FeeAmount": {"CurrencyAmount": commission},
                            }
                        ],
                    }
                ],
            }
        ],
        service_fee_events=[
            {
                "FeeList": [
                    {"FeeType": "Subscription", "FeeAmount": {"CurrencyAmount": "-39.99"}}
                ]
            }
        ],
    )


def with_refund(events: FinancialEvents) -> FinancialEvents:
    events.refund_events.append(
        {
            "AmazonOrderId": ORDER_ID,
            "ShipmentItemAdjustmentList": [
                {
                    "SellerSKU": "SKU-1",
                    "ItemChargeAdjustmentList": [
                        {
                            "ChargeType": "Principal",
                            "ChargeAmount": {"CurrencyAmount": "-25.00"},
                        }
                    ],
                    "ItemFeeAdjustmentList": [
                        {"FeeType": "Commission", "FeeAmount": {"CurrencyAmount": "0.40"}},
                        {
                            "FeeType": "RefundCommission",
                            "FeeAmount": {"CurrencyAmount": "-1.00"},
                        },
                    ],
                }
            ],
        }
    )
    return events


def settlement_document() -> str:
    return make_settlement_report(
        settlement_line(order_id=ORDER_ID, amount_description="Commission", amount="-3.75"),
        settlement_line(
            order_id=ORDER_ID,
            amount_description="FBAPerUnitFulfillmentFee",
            amount="-3.22",
        ),
        settlement_line(
            transaction_type="other-transaction",
            order_id="",
            sku="",
            amount_type="other-transaction",
            amount_description="Storage Fee",
            amount="-12.00",
        ),
    )


def build_service(
    db: DB,
    client: MockSellerAPI,
    sleeps: list[float] | None = None,
) -> SyncService:
    recorded = sleeps if sleeps is not None else []
    return SyncService(
        db,
        SELLER,
        client,
        marketplace_ids=["ATVPDKIKX0DER"],
        request_delay_seconds=0.3,
        sync_logger=MagicMock(spec=SyncLogger),
        clock=lambda: NOW,
        sleep=recorded.append,
    )


class TestSyncOrders:
    def test_upserts_orders_and_items(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        sleeps: list[float] = []
        client = MockSellerAPI(
            orders=[
                raw_order(),
                raw_order("111-0000002-0000002"),
                raw_order("111-0000003-0000003", PurchaseDate=None),
            ],
            order_items={
                ORDER_ID: [raw_item()],
                "111-0000002-0000002": [raw_item("item-2", "SKU-2"), {"ASIN": "x"}],
            },
        )
        service = build_service(db, client, sleeps)

        # Act
        result = service.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Assert
        assert (result.orders, result.items, result.skipped) == (2, 2, 2)
        assert client.order_item_calls == [ORDER_ID, "111-0000002-0000002"]
        # One pause between the two item requests
        assert sleeps == [0.3]
        assert {item.order_item_id for item in db.list_items(SELLER)} == {
            "item-1",
            "item-2",
        }

    def test_resync_keeps_fees(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        client = MockSellerAPI(
            orders=[raw_order()],
            order_items={ORDER_ID: [raw_item()]},
            financial_events=shipment_events(),
        )
        service = build_service(db, client)
        service.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))
        service.sync_financial_fees(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Act
        service.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Assert
        item = db.list_items(SELLER)[0]
        assert item.fee_source is FeeSource.API
        assert item.total_fee == Decimal("1.00")


class TestFeeSync:
    def test_financial_fees_and_service_fees(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        client = MockSellerAPI(
            orders=[raw_order()],
            order_items={ORDER_ID: [raw_item()]},
            financial_events=shipment_events(),
        )
        service = build_service(db, client)
        service.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Act
        result = service.sync_financial_fees(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Assert
        assert (result.matched, result.updated, result.service_fees) == (1, 1, 1)
        fees = db.list_service_fees(SELLER, date(2026, 1, 1), date(2026, 1, 20))
        assert [(fee.fee_type, fee.amount) for fee in fees] == [
            (ServiceFeeType.SUBSCRIPTION, Decimal("39.99"))
        ]
        assert fees[0].period_end == date(2026, 1, 20)

    def test_refund_events_write_refund_columns(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        client = MockSellerAPI(
            orders=[raw_order()],
            order_items={ORDER_ID: [raw_item()]},
            financial_events=with_refund(shipment_events()),
        )
        service = build_service(db, client)
        service.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Act
        result = service.sync_financial_fees(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Assert
        assert result.refunds == 1
        item = db.list_items(SELLER)[0]
        assert item.fee_source is FeeSource.API
        assert item.refunded == Decimal("25.00")
        assert item.fees.refund == Decimal("1.00")
        assert item.fees.reimbursements == Decimal("0.40")
        # 1.00 commission + 1.00 refund commission - 0.40 returned commission
        assert item.total_fee == Decimal("1.60")

    def test_later_shipment_fees_keep_earlier_refunds(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        orders = {"orders": [raw_order()], "order_items": {ORDER_ID: [raw_item()]}}
        first = build_service(
            db, MockSellerAPI(**orders, financial_events=with_refund(shipment_events()))
        )
        first.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))
        first.sync_financial_fees(datetime(2026, 1, 1, tzinfo=timezone.utc))
        later = build_service(
            db, MockSellerAPI(**orders, financial_events=shipment_events("-2.00"))
        )

        # Act
        later.sync_financial_fees(datetime(2026, 1, 15, tzinfo=timezone.utc))

        # Assert
        item = db.list_items(SELLER)[0]
        assert item.fees.referral == Decimal("2.00")
        assert item.refunded == Decimal("25.00")
        assert item.total_fee == Decimal("2.60")

    def test_refunds_leave_settled_items_alone(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        client = MockSellerAPI(
            orders=[raw_order()],
            order_items={ORDER_ID: [raw_item()]},
            financial_events=with_refund(FinancialEvents()),
        )
        service = build_service(db, client)
        service.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))
        import_settlement_report(db, SELLER, settlement_document())

        # Act
        result = service.sync_financial_fees(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Assert
        assert result.refunds == 0
        item = db.list_items(SELLER)[0]
        assert item.fee_source is FeeSource.SETTLEMENT_REPORT
        assert item.refunded == Decimal("0")
        assert item.total_fee == Decimal("6.97")

    def test_settlement_fees_win_in_either_order(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        client = MockSellerAPI(
            orders=[raw_order()],
            order_items={ORDER_ID: [raw_item()]},
            financial_events=shipment_events(),
            reports=[
                ReportModel(reportId="r-1", processingStatus="DONE", reportDocumentId="d-1"),
                ReportModel(reportId="r-2", processingStatus="IN_PROGRESS"),
            ],
            documents={"d-1": settlement_document()},
        )
        service = build_service(db, client)
        service.sync_orders(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Act
        settlement = service.apply_settlement_fees(datetime(2025, 10, 1, tzinfo=timezone.utc))
        api = service.sync_financial_fees(datetime(2026, 1, 1, tzinfo=timezone.utc))

        # Assert
        assert settlement.reports == 1
        assert client.downloaded == ["d-1"]
        assert api.protected == 1
        item = db.list_items(SELLER)[0]
        assert item.fee_source is FeeSource.SETTLEMENT_REPORT
        assert item.total_fee == Decimal("6.97")

    def test_settlement_account_fees_become_service_fees(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)

        # Act
        result = import_settlement_report(db, SELLER, settlement_document())

        # Assert
        assert result.reports == 1
        assert result.service_fees == 1
        fees = db.list_service_fees(SELLER, date(2026, 1, 1), date(2026, 1, 14))
        assert [(fee.fee_type, fee.amount) for fee in fees] == [
            (ServiceFeeType.STORAGE, Decimal("12.00"))
        ]


class TestRunFullSync:
    def test_failed_job_does_not_cancel_the_other(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        db.save_connection(SELLER, refresh_token="Atzr|x", marketplace_ids=["ATVPDKIKX0DER"])
        client = MockSellerAPI(
            orders=[raw_order()],
            order_items={ORDER_ID: [raw_item()]},
            financial_events=shipment_events(commission="-2.00"),
            fail_settlement_reports=True,
        )
        service = build_service(db, client)

        # Act
        result = service.run_full_sync(days=30)

        # Assert
        assert not result.ok
        outcomes = {job.name: job for job in result.jobs}
        assert outcomes["financial_events"].ok
        assert outcomes["financial_events"].result is not None
        assert outcomes["financial_events"].result.updated == 1
        assert not outcomes["settlement_reports"].ok
        assert "quota exceeded" in (outcomes["settlement_reports"].error or "")

        item = db.list_items(SELLER)[0]
        assert item.fee_source is FeeSource.API
        assert result.products_updated == 1
        assert db.list_products(SELLER)[0].avg_fee_per_unit == Decimal("2.0000")

        connection = db.get_active_connection(SELLER)
        assert connection is not None
        assert connection.last_sync_at == datetime(2026, 1, 20, 20, 0)

    def test_both_jobs_succeed(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        client = MockSellerAPI(
            orders=[raw_order()],
            order_items={ORDER_ID: [raw_item()]},
            financial_events=shipment_events(),
            reports=[
                ReportModel(reportId="r-1", processingStatus="DONE", reportDocumentId="d-1")
            ],
            documents={"d-1": settlement_document()},
        )
        service = build_service(db, client)

        # Act
        result = service.run_full_sync(days=30)

        # Assert
        assert result.ok
        assert [job.name for job in result.jobs] == ["financial_events", "settlement_reports"]
        item = db.list_items(SELLER)[0]
        assert item.fee_source is FeeSource.SETTLEMENT_REPORT
        assert item.total_fee == Decimal("6.97")


class TestForTenant:
    def test_requires_active_connection(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)

        # Act / Assert
        with pytest.raises(ConnectionNotFoundError, match="seller-1"):
            SyncService.for_tenant(db, SELLER, AppConfig(), client_factory=MagicMock())

    def test_builds_client_from_connection(self, tmp_path: Path) -> None:
        # Setup
        db = create_db(tmp_path)
        db.save_connection(
            SELLER,
            refresh_token="Atzr|x",
            marketplace_ids=["A1PA6795UKMFR9"],
            region="eu",
        )
        factory = MagicMock(return_value=MockSellerAPI())

        # Act
        SyncService.for_tenant(
            db, SELLER, AppConfig(request_delay_seconds=0.5), client_factory=factory
        )

        # Assert
        factory.assert_called_once_with("Atzr|x", region="eu", request_delay_seconds=0.5)
