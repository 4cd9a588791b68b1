from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
import concurrent.futures
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import time
from typing import Any, Protocol

import loguru
from loguru import logger

from sellermetrics.adapters.amazon.entities import FeeSource, OrderItemFees
from sellermetrics.adapters.amazon.financial_events import (
    FinancialEvents,
    fees_from_refund_events,
    fees_from_shipment_events,
    service_fees_from_events,
)
from sellermetrics.adapters.amazon.payload import (
    item_title,
    parse_order,
    parse_order_item,
)
from sellermetrics.adapters.amazon.settlement import (
    SettlementRow,
    account_fees_from_settlement,
    fees_from_settlement,
    parse_settlement_report,
)
from sellermetrics.adapters.db.facade import DB, FeeApplyOutcome
from sellermetrics.core.config import AppConfig
from sellermetrics.core.tenant import TenantScope
from sellermetrics.infra.clients.sp_api import ReportModel, SPAPIClient
from sellermetrics.services.product_fees import refresh_product_fee_averages

DEFAULT_SYNC_DAYS = 30
SETTLEMENT_LOOKBACK_DAYS = 90


class ConnectionNotFoundError(LookupError):
    """Raised when a tenant has no active Selling Partner API connection."""


class SellerAPI(Protocol):
    """Selling Partner API operations used by the sync jobs."""

    def get_orders(
        self,
        marketplace_ids: list[str],
        created_after: datetime,
        created_before: datetime | None = None,
    ) -> Iterable[Mapping[str, Any]]: ...

    def get_order_items(self, amazon_order_id: str) -> list[dict[str, Any]]: ...

    def list_financial_events(
        self,
        posted_after: datetime,
        posted_before: datetime | None = None,
    ) -> FinancialEvents: ...

    def list_settlement_reports(self, created_since: datetime) -> list[ReportModel]: ...

    def download_report_document(self, report_document_id: str) -> str: ...


@dataclass
class OrderSyncResult:
    orders: int = 0
    items: int = 0
    skipped: int = 0


@dataclass
class FeeSyncResult:
    source: FeeSource
    fee_keys: int = 0
    matched: int = 0
    updated: int = 0
    protected: int = 0
    service_fees: int = 0
    refunds: int = 0
    reports: int = 0


@dataclass
class JobOutcome:
    """Settled outcome of one concurrent job."""

    name: str
    result: FeeSyncResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FullSyncResult:
    orders: OrderSyncResult
    jobs: list[JobOutcome] = field(default_factory=list)
    products_updated: int = 0

    @property
    def ok(self) -> bool:
        return all(job.ok for job in self.jobs)


class SyncLogger:
    """Handles all logging for SyncService with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def orders_start(self, user_id: str, created_after: datetime) -> None:
        self._logger.bind(user_id=user_id, created_after=created_after.isoformat()).info(
            "Syncing orders for user {} since {}", user_id, created_after.isoformat()
        )

    def orders_complete(self, user_id: str, result: OrderSyncResult) -> None:
        self._logger.bind(
            user_id=user_id,
            orders=result.orders,
            items=result.items,
            skipped=result.skipped,
        ).info(
            "Order sync complete for user {}: {} orders, {} items ({} skipped)",
            user_id,
            result.orders,
            result.items,
            result.skipped,
        )

    def order_skipped(self, raw_id: Any) -> None:
        self._logger.bind(order_id=raw_id).warning(
            "Skipping order {} without id or purchase date", raw_id
        )

    def fees_applied(self, user_id: str, result: FeeSyncResult) -> None:
        self._logger.bind(
            user_id=user_id,
            source=result.source.value,
            keys=result.fee_keys,
            matched=result.matched,
            updated=result.updated,
            protected=result.protected,
            refunds=result.refunds,
        ).info(
            "{} fees for user {}: {} keys, {} items matched, {} updated, "
            "{} kept settlement fees, {} refunds",
            result.source.value,
            user_id,
            result.fee_keys,
            result.matched,
            result.updated,
            result.protected,
            result.refunds,
        )

    def report_skipped(self, report_id: str, status: str | None) -> None:
        self._logger.bind(report_id=report_id, status=status).debug(
            "Skipping settlement report {} (status {})", report_id, status
        )

    def job_failed(self, user_id: str, name: str, error: Exception) -> None:
        self._logger.bind(user_id=user_id, job=name).opt(exception=error).error(
            "Sync job {} failed for user {}: {}", name, user_id, error
        )

    def full_sync_complete(self, user_id: str, result: FullSyncResult) -> None:
        failed = [job.name for job in result.jobs if not job.ok]
        self._logger.bind(user_id=user_id, failed=failed).info(
            "Full sync complete for user {}: {} orders, {} products updated, "
            "failed jobs: {}",
            user_id,
            result.orders.orders,
            result.products_updated,
            ", ".join(failed) or "none",
        )


def apply_settlement_rows(
    db: DB,
    scope: TenantScope,
    rows: list[SettlementRow],
) -> FeeSyncResult:
    """Write settlement fees onto the tenant's items and store account fees."""
    fees_by_key = fees_from_settlement(rows)
    outcome = db.apply_item_fees(scope, fees_by_key, FeeSource.SETTLEMENT_REPORT)
    result = _fee_result(FeeSource.SETTLEMENT_REPORT, fees_by_key, outcome)
    for fee in account_fees_from_settlement(rows):
        db.upsert_service_fee(scope, fee)
        result.service_fees += 1
    return result


def import_settlement_report(db: DB, scope: TenantScope, content: str) -> FeeSyncResult:
    """Apply a settlement flat file that was downloaded by hand."""
    result = apply_settlement_rows(db, scope, parse_settlement_report(content))
    result.reports = 1
    return result


def _fee_result(
    source: FeeSource,
    fees_by_key: Mapping[str, OrderItemFees],
    outcome: FeeApplyOutcome,
) -> FeeSyncResult:
    return FeeSyncResult(
        source=source,
        fee_keys=len(fees_by_key),
        matched=outcome.matched,
        updated=outcome.updated,
        protected=outcome.protected,
    )


class SyncService:
    """Pulls one tenant's orders and real fees into the database."""

    def __init__(
        self,
        db: DB,
        scope: TenantScope,
        client: SellerAPI,
        *,
        marketplace_ids: Iterable[str],
        request_delay_seconds: float = 0.3,
        sync_logger: SyncLogger | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = db
        self._scope = scope
        self._client = client
        self._marketplace_ids = list(marketplace_ids)
        self._request_delay_seconds = request_delay_seconds
        self._logger = sync_logger or SyncLogger()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    @classmethod
    def for_tenant(
        cls,
        db: DB,
        scope: TenantScope,
        config: AppConfig,
        client_factory: Callable[..., SellerAPI] = SPAPIClient.from_env,
    ) -> SyncService:
        """Build a service from the tenant's stored connection.

        Raises:
            ConnectionNotFoundError: If the tenant has no active connection
        """
        connection = db.get_active_connection(scope)
        if connection is None:
            raise ConnectionNotFoundError(
                f"No active Amazon connection for user {scope.user_id}"
            )
        client = client_factory(
            connection.refresh_token,
            region=connection.region,
            request_delay_seconds=config.request_delay_seconds,
        )
        marketplace_ids = [
            part for part in connection.marketplace_ids.split(",") if part
        ] or list(config.marketplace_ids)
        return cls(
            db,
            scope,
            client,
            marketplace_ids=marketplace_ids,
            request_delay_seconds=config.request_delay_seconds,
        )

    def sync_orders(
        self,
        created_after: datetime,
        created_before: datetime | None = None,
    ) -> OrderSyncResult:
        """Upsert orders created in the window, then each order's items.

        Item requests are made one at a time with a fixed delay between them.
        """
        self._logger.orders_start(self._scope.user_id, created_after)
        result = OrderSyncResult()
        order_ids: list[str] = []
        for raw in self._client.get_orders(
            self._marketplace_ids, created_after, created_before
        ):
            order = parse_order(raw)
            if order is None:
                result.skipped += 1
                self._logger.order_skipped(raw.get("AmazonOrderId"))
                continue
            self._db.upsert_order(self._scope, order)
            order_ids.append(order.amazon_order_id)
            result.orders += 1

        for position, amazon_order_id in enumerate(order_ids):
            if position:
                self._sleep(self._request_delay_seconds)
            for raw_item in self._client.get_order_items(amazon_order_id):
                item = parse_order_item(amazon_order_id, raw_item)
                if item is None:
                    result.skipped += 1
                    continue
                self._db.upsert_order_item(
                    self._scope, item, title=item_title(raw_item)
                )
                result.items += 1

        self._logger.orders_complete(self._scope.user_id, result)
        return result

    def sync_financial_fees(
        self,
        posted_after: datetime,
        posted_before: datetime | None = None,
    ) -> FeeSyncResult:
        """Write Finances API fees (``api`` source), refunds and service fees.

        Items already carrying settlement report fees are left untouched.
        """
        events = self._client.list_financial_events(posted_after, posted_before)
        fees_by_key = fees_from_shipment_events(events.shipment_events)
        outcome = self._db.apply_item_fees(self._scope, fees_by_key, FeeSource.API)
        result = _fee_result(FeeSource.API, fees_by_key, outcome)

        refunds_by_key = fees_from_refund_events(events.refund_events)
        result.refunds = self._db.apply_item_refunds(
            self._scope, refunds_by_key
        ).updated

        window_end = posted_before or self._clock()
        for fee in service_fees_from_events(
            events.service_fee_events, posted_after.date(), window_end.date()
        ):
            self._db.upsert_service_fee(self._scope, fee)
            result.service_fees += 1

        self._logger.fees_applied(self._scope.user_id, result)
        return result

    def apply_settlement_fees(self, created_since: datetime) -> FeeSyncResult:
        """Download settlement reports and write their fees.

        Settlement fees overwrite any earlier ``api`` fees.
        """
        rows: list[SettlementRow] = []
        reports = 0
        for position, report in enumerate(
            self._client.list_settlement_reports(created_since)
        ):
            if not report.report_document_id or report.processing_status not in (
                None,
                "DONE",
            ):
                self._logger.report_skipped(report.report_id, report.processing_status)
                continue
            if position:
                self._sleep(self._request_delay_seconds)
            content = self._client.download_report_document(report.report_document_id)
            rows.extend(parse_settlement_report(content))
            reports += 1

        result = apply_settlement_rows(self._db, self._scope, rows)
        result.reports = reports
        self._logger.fees_applied(self._scope.user_id, result)
        return result

    def run_full_sync(self, days: int = DEFAULT_SYNC_DAYS) -> FullSyncResult:
        """Ingest orders, then fetch both real fee sources concurrently.

        Each fee job settles independently: a failing job is recorded in the
        result and does not cancel the other. Product averages are refreshed
        afterwards from whatever fees were written.
        """
        now = self._clock()
        since = now - timedelta(days=days)
        orders = self.sync_orders(since)

        jobs: dict[str, Callable[[], FeeSyncResult]] = {
            "financial_events": lambda: self.sync_financial_fees(since),
            "settlement_reports": lambda: self.apply_settlement_fees(
                now - timedelta(days=max(days, SETTLEMENT_LOOKBACK_DAYS))
            ),
        }
        result = FullSyncResult(orders=orders)
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(jobs)) as executor:
            futures = {name: executor.submit(job) for name, job in jobs.items()}
            for name, future in futures.items():
                try:
                    result.jobs.append(JobOutcome(name=name, result=future.result()))
                except Exception as e:
                    self._logger.job_failed(self._scope.user_id, name, e)
                    result.jobs.append(JobOutcome(name=name, error=str(e)))

        result.products_updated = refresh_product_fee_averages(self._db, self._scope)
        self._db.mark_synced(self._scope, now)
        self._logger.full_sync_complete(self._scope.user_id, result)
        return result
