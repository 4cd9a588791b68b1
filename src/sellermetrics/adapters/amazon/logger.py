"""Logging for fee resolution and aggregation.

Keeps log statements out of the reconciliation logic.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import loguru
from loguru import logger


class ReconLogger:
    """Handles all logging for fee resolution and period aggregation."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        """Initialize logger.

        Args:
            logger_instance: Logger instance to use (defaults to loguru.logger)
        """
        self._logger = logger_instance

    def historical_index_built(self, asin_count: int, sku_count: int) -> None:
        """Log historical fee index size."""
        self._logger.bind(asins=asin_count, skus=sku_count).debug(
            "Historical fee index built: {} ASINs, {} SKUs", asin_count, sku_count
        )

    def duplicate_product_key(
        self,
        key_type: str,
        key: str,
        previous: Decimal,
        replacement: Decimal,
    ) -> None:
        """Log a later product overwriting an earlier one's historical fee."""
        self._logger.bind(
            key_type=key_type,
            key=key,
            previous=str(previous),
            replacement=str(replacement),
        ).warning(
            "Duplicate product {} {}: historical fee ${:.2f}/unit replaced by "
            "${:.2f}/unit",
            key_type,
            key,
            previous,
            replacement,
        )

    def aggregation_start(
        self,
        user_id: str,
        label: str,
        start: datetime,
        end: datetime,
        exclude_canceled: bool,
    ) -> None:
        """Log start of a period aggregation."""
        self._logger.bind(
            user_id=user_id,
            period=label,
            start=start.isoformat(),
            end=end.isoformat(),
            exclude_canceled=exclude_canceled,
        ).info(
            "Aggregating {} for user {}: [{}, {})",
            label,
            user_id,
            start.isoformat(),
            end.isoformat(),
        )

    def orders_fetched(self, order_count: int, item_count: int) -> None:
        """Log rows fetched for aggregation."""
        self._logger.bind(orders=order_count, items=item_count).debug(
            "Fetched {} orders with {} items", order_count, item_count
        )

    def duplicate_item_skipped(self, order_item_id: str) -> None:
        """Log an order item seen twice in one reduction."""
        self._logger.bind(order_item_id=order_item_id).warning(
            "Order item {} appeared twice; counted once", order_item_id
        )

    def item_resolved(
        self,
        order_id: str,
        asin: str | None,
        amount: Decimal,
        provenance: str,
    ) -> None:
        """Log a single item's resolved fee."""
        self._logger.bind(
            order_id=order_id, asin=asin, provenance=provenance
        ).debug(
            "Order {} ASIN {}: fee ${:.2f} ({})",
            order_id,
            asin or "-",
            amount,
            provenance,
        )

    def aggregation_complete(
        self,
        label: str,
        orders: int,
        units: int,
        sales: Decimal,
        fees: Decimal,
        fee_source: str,
    ) -> None:
        """Log period totals."""
        self._logger.bind(
            period=label,
            orders=orders,
            units=units,
            sales=str(sales),
            fees=str(fees),
            fee_source=fee_source,
        ).info(
            "{}: {} orders, {} units, sales ${:.2f}, fees ${:.2f} ({})",
            label,
            orders,
            units,
            sales,
            fees,
            fee_source,
        )

    def service_fee_prorated(
        self,
        fee_type: str,
        amount: Decimal,
        fee_days: int,
        prorated: Decimal,
        requested_days: int,
    ) -> None:
        """Log proration of one account-level service fee."""
        self._logger.bind(
            fee_type=fee_type,
            amount=str(amount),
            fee_days=fee_days,
            prorated=str(prorated),
            requested_days=requested_days,
        ).debug(
            "Service fee {}: ${:.2f} over {} days -> ${:.2f} for {} day(s)",
            fee_type,
            amount,
            fee_days,
            prorated,
            requested_days,
        )

    def product_averages_refreshed(self, user_id: str, updated: int) -> None:
        """Log product fee averages refresh."""
        self._logger.bind(user_id=user_id, updated=updated).info(
            "Refreshed historical fee averages for {} products (user {})",
            updated,
            user_id,
        )
