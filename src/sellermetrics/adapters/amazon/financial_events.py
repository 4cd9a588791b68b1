"""Reduction of Finances API events into per-order-line fees."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from sellermetrics.adapters.amazon.entities import (
    ZERO,
    FeeBreakdown,
    OrderItemFees,
    ServiceFee,
    ServiceFeeType,
    fee_key,
)
from sellermetrics.adapters.amazon.payload import get_field, parse_money, to_int


@dataclass
class FinancialEvents:
    """Event lists from one or more ``listFinancialEvents`` pages."""

    shipment_events: list[Mapping[str, Any]] = field(default_factory=list)
    refund_events: list[Mapping[str, Any]] = field(default_factory=list)
    service_fee_events: list[Mapping[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> FinancialEvents:
        """Read event lists from a ``FinancialEvents`` object."""
        return cls(
            shipment_events=list(get_field(payload, "ShipmentEventList") or []),
            refund_events=list(get_field(payload, "RefundEventList") or []),
            service_fee_events=list(get_field(payload, "ServiceFeeEventList") or []),
        )

    def extend(self, other: FinancialEvents) -> None:
        self.shipment_events.extend(other.shipment_events)
        self.refund_events.extend(other.refund_events)
        self.service_fee_events.extend(other.service_fee_events)


def _add_fee(fees: FeeBreakdown, fee_type: str, amount: Decimal) -> None:
    # FBAStorageFee and FBAInbound* carry the FBA prefix too.
    if "Storage" in fee_type:
        fees.storage += amount
    elif "Inbound" in fee_type or "Placement" in fee_type:
        fees.inbound += amount
    elif "Commission" in fee_type or "Referral" in fee_type:
        fees.referral += amount
    elif "FBA" in fee_type or "Fulfillment" in fee_type:
        fees.fulfillment += amount
    else:
        fees.other += amount


def _principal(item: Mapping[str, Any]) -> Decimal:
    for charge in get_field(item, "ItemChargeList") or []:
        if get_field(charge, "ChargeType") == "Principal":
            return parse_money(get_field(charge, "ChargeAmount")) or ZERO
    return ZERO


def fees_from_shipment_events(
    events: Iterable[Mapping[str, Any]],
) -> dict[str, OrderItemFees]:
    """Sum shipment item fees per ``order|sku``.

    Fee amounts are negative debits in the API and are stored as positive
    fees. Promotions are collected separately from the Amazon fee total.
    """
    by_key: dict[str, OrderItemFees] = {}
    for shipment in events:
        order_id = get_field(shipment, "AmazonOrderId")
        if not order_id:
            continue
        for item in get_field(shipment, "ShipmentItemList") or []:
            sku = get_field(item, "SellerSKU") or None
            key = fee_key(str(order_id), sku)
            entry = by_key.get(key)
            if entry is None:
                entry = OrderItemFees(amazon_order_id=str(order_id), seller_sku=sku)
                by_key[key] = entry

            entry.quantity += to_int(get_field(item, "QuantityShipped"))
            entry.principal += _principal(item)
            for fee in get_field(item, "ItemFeeList") or []:
                amount = parse_money(get_field(fee, "FeeAmount"))
                if amount is None:
                    continue
                _add_fee(entry.fees, str(get_field(fee, "FeeType") or ""), abs(amount))
            for promotion in get_field(item, "PromotionList") or []:
                amount = parse_money(get_field(promotion, "PromotionAmount"))
                if amount is not None:
                    entry.fees.promotion += abs(amount)
    return by_key


def fees_from_refund_events(
    events: Iterable[Mapping[str, Any]],
) -> dict[str, OrderItemFees]:
    """Sum refund adjustments per ``order|sku``.

    Refunded principal is reported as ``refunded``. Negative fee adjustments
    (``RefundCommission`` and the like) are fees charged for the refund and
    land in the refund bucket; positive ones are fees Amazon hands back and
    count as reimbursements.
    """
    by_key: dict[str, OrderItemFees] = {}
    for refund in events:
        order_id = get_field(refund, "AmazonOrderId")
        if not order_id:
            continue
        adjustments = get_field(refund, "ShipmentItemAdjustmentList") or get_field(
            refund, "ShipmentItemList"
        )
        for item in adjustments or []:
            sku = get_field(item, "SellerSKU") or None
            key = fee_key(str(order_id), sku)
            entry = by_key.get(key)
            if entry is None:
                entry = OrderItemFees(amazon_order_id=str(order_id), seller_sku=sku)
                by_key[key] = entry

            for charge in get_field(item, "ItemChargeAdjustmentList") or []:
                if get_field(charge, "ChargeType") != "Principal":
                    continue
                amount = parse_money(get_field(charge, "ChargeAmount"))
                if amount is not None:
                    entry.refunded -= amount
            for fee in get_field(item, "ItemFeeAdjustmentList") or []:
                amount = parse_money(get_field(fee, "FeeAmount"))
                if amount is None:
                    continue
                if amount > ZERO:
                    entry.fees.reimbursements += amount
                else:
                    entry.fees.refund += abs(amount)
    return by_key


def service_fees_from_events(
    events: Iterable[Mapping[str, Any]],
    period_start: date,
    period_end: date,
) -> list[ServiceFee]:
    """Collect account-level fees that are not attached to an order.

    The events carry no span of their own, so each fee is attributed to the
    window it was fetched for.
    """
    totals: dict[ServiceFeeType, Decimal] = {}
    for event in events:
        if get_field(event, "AmazonOrderId"):
            continue
        for fee in get_field(event, "FeeList") or []:
            amount = parse_money(get_field(fee, "FeeAmount"))
            if amount is None or amount == ZERO:
                continue
            fee_type = ServiceFeeType.categorize(get_field(fee, "FeeType"))
            totals[fee_type] = totals.get(fee_type, ZERO) + abs(amount)

    return [
        ServiceFee(
            fee_type=fee_type,
            amount=amount,
            period_start=period_start,
            period_end=period_end,
            description="Finances API service fee events",
        )
        for fee_type, amount in totals.items()
    ]
