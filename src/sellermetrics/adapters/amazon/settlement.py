"""Settlement report parsing and fee categorization.

Settlement reports (``GET_V2_SETTLEMENT_REPORT_DATA_FLAT_FILE_V2``) are
tab-separated files listing every charge and credit Amazon applied. They are
the most authoritative fee source available.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import re

from sellermetrics.adapters.amazon.entities import (
    ZERO,
    OrderItemFees,
    ServiceFee,
    ServiceFeeType,
    fee_key,
)
from sellermetrics.adapters.amazon.payload import to_decimal, to_int

_MIN_COLUMNS = 5


@dataclass
class SettlementRow:
    settlement_id: str
    transaction_type: str
    order_id: str
    sku: str
    amount_type: str
    amount_description: str
    amount: Decimal
    quantity_purchased: int
    posted_date: str
    settlement_start_date: str = ""
    settlement_end_date: str = ""


def _normalize_header(header: str) -> str:
    lowered = header.strip().lower()
    return re.sub(r"[()]", "", re.sub(r"[- ]", "_", lowered))


def parse_settlement_report(content: str) -> list[SettlementRow]:
    """Parse a settlement flat file into rows.

    Lines with fewer than five columns (summary lines) are skipped.
    """
    lines = content.strip().splitlines()
    if len(lines) < 2:
        return []

    headers = [_normalize_header(h) for h in lines[0].split("\t")]
    rows: list[SettlementRow] = []
    for line in lines[1:]:
        values = line.split("\t")
        if len(values) < _MIN_COLUMNS:
            continue
        record = {
            header: (values[idx].strip() if idx < len(values) else "")
            for idx, header in enumerate(headers)
        }
        rows.append(
            SettlementRow(
                settlement_id=record.get("settlement_id", ""),
                transaction_type=record.get("transaction_type", ""),
                order_id=record.get("order_id", ""),
                sku=record.get("sku", ""),
                amount_type=record.get("amount_type", ""),
                amount_description=record.get("amount_description", ""),
                amount=to_decimal(record.get("amount")) or ZERO,
                quantity_purchased=to_int(record.get("quantity_purchased")),
                posted_date=record.get("posted_date", ""),
                settlement_start_date=record.get("settlement_start_date", ""),
                settlement_end_date=record.get("settlement_end_date", ""),
            )
        )
    return rows


def _contains(text: str, *needles: str) -> bool:
    return any(needle in text for needle in needles)


def _apply_row(entry: OrderItemFees, row: SettlementRow) -> None:
    amount_type = row.amount_type.lower()
    desc = row.amount_description.lower()
    transaction_type = row.transaction_type.lower()
    amount = row.amount
    fees = entry.fees

    if _contains(amount_type, "principal", "itemprice", "itemcharges") and (
        "principal" in desc or not desc
    ):
        entry.principal += amount
        if transaction_type == "refund":
            entry.refunded -= amount

    # Multi-channel fulfillment descriptions also mention FBA; check first.
    if _contains(desc, "mcf", "multi-channel", "multichannel"):
        fees.fulfillment += abs(amount)
    elif _contains(desc, "fba", "fulfillment fee", "pick & pack"):
        fees.fulfillment += abs(amount)
    elif "referral" in desc and "refund" not in desc:
        # A positive referral line is Amazon handing the fee back.
        if amount > ZERO:
            fees.reimbursements += amount
        else:
            fees.referral += abs(amount)
    elif "commission" in desc and "refund" not in desc:
        fees.referral += abs(amount)
    elif _contains(
        desc,
        "long-term",
        "longterm",
        "long term",
        "aged",
        "storagerenewalbilling",
        "storage renewal",
    ):
        fees.storage += abs(amount)
    elif "storage" in desc:
        fees.storage += abs(amount)
    elif _contains(desc, "inbound", "placement", "transportation"):
        fees.inbound += abs(amount)
    elif _contains(desc, "disposal", "removal", "digital service"):
        fees.other += abs(amount)
    elif "warehouse" in desc and _contains(desc, "damage", "lost"):
        fees.reimbursements += amount
    elif _contains(desc, "reimbursement", "reversal", "compensat"):
        fees.reimbursements += amount
    elif "promotion" in amount_type or _contains(
        desc, "promotion", "coupon", "lightning deal", "deal"
    ):
        fees.promotion += abs(amount)
    elif "shipping" in desc or "gift" in desc:
        pass
    elif transaction_type == "refund" or ("refund" in desc and "referral" not in desc):
        if _contains(desc, "commission", "admin"):
            fees.refund += abs(amount)
        elif "referral" in desc:
            fees.reimbursements += abs(amount)
    elif amount < ZERO and ("fee" in amount_type or "fee" in desc):
        fees.other += abs(amount)


def fees_from_settlement(rows: Iterable[SettlementRow]) -> dict[str, OrderItemFees]:
    """Reduce settlement rows to fees per ``order|sku`` (or per order).

    ``Transfer`` rows and rows without an order id are not order fees and
    are ignored.
    """
    by_key: dict[str, OrderItemFees] = {}
    for row in rows:
        if not row.order_id or row.transaction_type == "Transfer":
            continue
        sku = row.sku or None
        key = fee_key(row.order_id, sku)
        entry = by_key.get(key)
        if entry is None:
            entry = OrderItemFees(amazon_order_id=row.order_id, seller_sku=sku)
            by_key[key] = entry
        entry.quantity = max(entry.quantity, row.quantity_purchased)
        _apply_row(entry, row)
    return by_key


def _row_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _account_fee_type(desc: str) -> ServiceFeeType | None:
    if _contains(desc, "disposal", "removal"):
        return ServiceFeeType.OTHER
    if _contains(desc, "long-term", "longterm", "aged", "storage"):
        return ServiceFeeType.STORAGE
    if "subscription" in desc:
        return ServiceFeeType.SUBSCRIPTION
    if "reserve" in desc:
        return None
    return ServiceFeeType.OTHER


def account_fees_from_settlement(rows: Iterable[SettlementRow]) -> list[ServiceFee]:
    """Collect fees not tied to a sales order as service fees.

    These are ``other-transaction`` and ``ServiceFee`` rows without an order
    id, plus disposal and removal fees, whose order ids belong to removal
    orders. Each fee spans its settlement period (or its posting day) and
    amounts of the same type and span are summed.
    """
    totals: dict[tuple[ServiceFeeType, date, date], Decimal] = {}
    for row in rows:
        amount = abs(row.amount)
        if amount == ZERO or row.transaction_type == "Transfer":
            continue
        desc = row.amount_description.lower()
        is_disposal = _contains(desc, "disposal", "removal")
        transaction_type = row.transaction_type.lower()
        if row.order_id and not is_disposal:
            continue
        if not is_disposal and not _contains(
            transaction_type, "other-transaction", "servicefee"
        ):
            continue

        fee_type = _account_fee_type(desc)
        if fee_type is None:
            continue
        start = _row_date(row.settlement_start_date) or _row_date(row.posted_date)
        end = _row_date(row.settlement_end_date) or start
        if start is None or end is None:
            continue
        key = (fee_type, start, end)
        totals[key] = totals.get(key, ZERO) + amount

    return [
        ServiceFee(
            fee_type=fee_type,
            amount=amount,
            period_start=start,
            period_end=end,
            description="Settlement report account-level fees",
        )
        for (fee_type, start, end), amount in totals.items()
    ]
