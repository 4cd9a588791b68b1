"""Tests for settlement report parsing and fee categorization."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sellermetrics.adapters.amazon.entities import ServiceFeeType
from sellermetrics.adapters.amazon.settlement import (
    account_fees_from_settlement,
    fees_from_settlement,
    parse_settlement_report,
)
from tests.fixtures.sellers import make_settlement_report, settlement_line

ORDER_ID = "111-0000001-0000001"


def fees_for(*lines: str) -> dict:
    return fees_from_settlement(parse_settlement_report(make_settlement_report(*lines)))


class TestParseSettlementReport:
    def test_parses_rows_with_normalized_headers(self) -> None:
        # Input
        content = make_settlement_report(settlement_line(amount="-3.75"))

        # Act
        rows = parse_settlement_report(content)

        # Assert
        assert len(rows) == 1
        row = rows[0]
        assert row.order_id == ORDER_ID
        assert row.sku == "SKU-1"
        assert row.amount == Decimal("-3.75")
        assert row.quantity_purchased == 1
        assert row.settlement_start_date == "2026-01-01"

    def test_skips_short_summary_lines(self) -> None:
        # Input
        content = make_settlement_report(
            "9001\t2026-01-01\t2026-01-14", settlement_line()
        )

        # Act
        rows = parse_settlement_report(content)

        # Assert
        assert len(rows) == 1

    def test_header_only_report_is_empty(self) -> None:
        # Act / Assert
        assert parse_settlement_report(make_settlement_report()) == []
        assert parse_settlement_report("") == []


class TestFeesFromSettlement:
    def test_categorizes_order_fees(self) -> None:
        # Input
        lines = [
            settlement_line(
                amount_type="ItemPrice", amount_description="Principal", amount="25.00"
            ),
            settlement_line(amount_description="Commission", amount="-3.75"),
            settlement_line(
                amount_description="FBAPerUnitFulfillmentFee", amount="-3.22"
            ),
            settlement_line(
                amount_description="FBA Inbound Placement Service Fee", amount="-0.27"
            ),
        ]

        # Act
        fees = fees_for(*lines)

        # Assert
        entry = fees[f"{ORDER_ID}|SKU-1"]
        assert entry.principal == Decimal("25.00")
        assert entry.fees.referral == Decimal("3.75")
        # Descriptions mentioning FBA are fulfillment fees first.
        assert entry.fees.fulfillment == Decimal("3.49")
        assert entry.total_fee == Decimal("7.24")

    def test_inbound_and_storage_buckets(self) -> None:
        # Input
        lines = [
            settlement_line(amount_description="Inbound Transportation", amount="-1.10"),
            settlement_line(amount_description="Storage Fee", amount="-0.40"),
            settlement_line(amount_description="Aged inventory surcharge", amount="-0.60"),
        ]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.fees.inbound == Decimal("1.10")
        assert entry.fees.storage == Decimal("1.00")

    def test_reimbursements_reduce_total(self) -> None:
        # Input
        lines = [
            settlement_line(amount_description="Commission", amount="-3.75"),
            settlement_line(
                amount_description="FBAPerUnitFulfillmentFee", amount="-3.22"
            ),
            settlement_line(
                amount_type="other-transaction",
                amount_description="WAREHOUSE_DAMAGE",
                amount="1.00",
            ),
        ]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.fees.reimbursements == Decimal("1.00")
        assert entry.total_fee == Decimal("5.97")

    def test_positive_referral_is_a_credit(self) -> None:
        # Input
        lines = [settlement_line(amount_description="ReferralFee", amount="0.50")]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.fees.referral == Decimal("0")
        assert entry.fees.reimbursements == Decimal("0.50")

    def test_promotions_are_not_amazon_fees(self) -> None:
        # Input
        lines = [
            settlement_line(amount_description="Commission", amount="-3.00"),
            settlement_line(
                amount_type="Promotion", amount_description="Coupon", amount="-2.00"
            ),
        ]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.fees.promotion == Decimal("2.00")
        assert entry.total_fee == Decimal("3.00")

    def test_shipping_chargeback_is_ignored(self) -> None:
        # Input
        lines = [
            settlement_line(amount_description="ShippingChargeback", amount="-4.00"),
        ]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.fees.is_empty()

    def test_refund_commission_is_a_refund_fee(self) -> None:
        # Input
        lines = [
            settlement_line(
                transaction_type="Refund",
                amount_description="RefundCommission",
                amount="-0.75",
            ),
        ]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.fees.refund == Decimal("0.75")

    def test_refunded_principal_is_tracked(self) -> None:
        # Input
        lines = [
            settlement_line(
                amount_type="ItemPrice", amount_description="Principal", amount="25.00"
            ),
            settlement_line(
                transaction_type="Refund",
                amount_type="ItemPrice",
                amount_description="Principal",
                amount="-25.00",
            ),
        ]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.refunded == Decimal("25.00")
        assert entry.principal == Decimal("0")
        assert entry.total_fee == Decimal("0")

    def test_unknown_negative_fee_is_other(self) -> None:
        # Input
        lines = [settlement_line(amount_description="Mystery Fee", amount="-0.10")]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.fees.other == Decimal("0.10")

    def test_transfers_and_rows_without_order_are_ignored(self) -> None:
        # Input
        lines = [
            settlement_line(
                transaction_type="Transfer", amount_description="Commission"
            ),
            settlement_line(order_id="", amount_description="Subscription Fee"),
        ]

        # Act / Assert
        assert fees_for(*lines) == {}

    def test_rows_without_sku_key_on_order_id(self) -> None:
        # Input
        lines = [settlement_line(sku="", amount_description="Commission")]

        # Act
        fees = fees_for(*lines)

        # Assert
        assert list(fees) == [ORDER_ID]
        assert fees[ORDER_ID].seller_sku is None

    def test_quantity_is_largest_seen(self) -> None:
        # Input
        lines = [
            settlement_line(quantity="2", amount_description="Commission"),
            settlement_line(quantity="", amount_description="FBA Fee"),
        ]

        # Act
        entry = fees_for(*lines)[f"{ORDER_ID}|SKU-1"]

        # Assert
        assert entry.quantity == 2


class TestAccountFeesFromSettlement:
    def test_collects_account_level_fees_by_type_and_span(self) -> None:
        # Input
        content = make_settlement_report(
            settlement_line(
                transaction_type="other-transaction",
                order_id="",
                sku="",
                amount_type="other-transaction",
                amount_description="Subscription Fee",
                amount="-39.99",
            ),
            settlement_line(
                transaction_type="other-transaction",
                order_id="",
                sku="",
                amount_type="other-transaction",
                amount_description="Storage Fee",
                amount="-12.00",
            ),
            settlement_line(
                transaction_type="other-transaction",
                order_id="",
                sku="",
                amount_type="other-transaction",
                amount_description="StorageRenewalBilling",
                amount="-3.00",
            ),
        )

        # Act
        fees = account_fees_from_settlement(parse_settlement_report(content))

        # Assert
        by_type = {fee.fee_type: fee for fee in fees}
        assert by_type[ServiceFeeType.SUBSCRIPTION].amount == Decimal("39.99")
        assert by_type[ServiceFeeType.STORAGE].amount == Decimal("15.00")
        assert by_type[ServiceFeeType.STORAGE].period_start == date(2026, 1, 1)
        assert by_type[ServiceFeeType.STORAGE].period_end == date(2026, 1, 14)
        assert by_type[ServiceFeeType.STORAGE].days == 14

    def test_disposal_fees_count_even_with_order_id(self) -> None:
        # Input
        content = make_settlement_report(
            settlement_line(
                transaction_type="other-transaction",
                order_id="REMOVAL-1",
                amount_description="DisposalComplete",
                amount="-0.50",
            ),
        )

        # Act
        fees = account_fees_from_settlement(parse_settlement_report(content))

        # Assert
        assert [(fee.fee_type, fee.amount) for fee in fees] == [
            (ServiceFeeType.OTHER, Decimal("0.50"))
        ]

    def test_skips_order_fees_reserves_and_zero_amounts(self) -> None:
        # Input
        content = make_settlement_report(
            settlement_line(amount_description="Commission"),
            settlement_line(
                transaction_type="other-transaction",
                order_id="",
                sku="",
                amount_description="Current Reserve Amount",
                amount="-100.00",
            ),
            settlement_line(
                transaction_type="other-transaction",
                order_id="",
                sku="",
                amount_description="Subscription Fee",
                amount="0.00",
            ),
        )

        # Act / Assert
        assert account_fees_from_settlement(parse_settlement_report(content)) == []

    def test_falls_back_to_posted_date(self) -> None:
        # Input
        content = make_settlement_report(
            settlement_line(
                transaction_type="ServiceFee",
                order_id="",
                sku="",
                amount_description="Subscription",
                amount="-39.99",
                start_date="",
                end_date="",
                posted_date="2026-01-20",
            ),
        )

        # Act
        fees = account_fees_from_settlement(parse_settlement_report(content))

        # Assert
        assert len(fees) == 1
        assert fees[0].period_start == fees[0].period_end == date(2026, 1, 20)
        assert fees[0].days == 1
