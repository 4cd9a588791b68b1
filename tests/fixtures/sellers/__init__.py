"""Builders and fakes shared by the seller reconciliation tests."""

from tests.fixtures.sellers.builders import (
    create_db,
    make_order,
    make_order_item,
    make_product,
    make_settlement_report,
    settlement_line,
)
from tests.fixtures.sellers.mock_seller_api import MockSellerAPI

__all__ = [
    "MockSellerAPI",
    "create_db",
    "make_order",
    "make_order_item",
    "make_product",
    "make_settlement_report",
    "settlement_line",
]
