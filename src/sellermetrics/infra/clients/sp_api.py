from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from datetime import datetime, timedelta, timezone
import gzip
import json
import os
import time
from typing import Any, Literal, Self
import urllib.error
import urllib.parse
import urllib.request

import loguru
from loguru import logger
from pydantic import BaseModel, Field

from sellermetrics.adapters.amazon.financial_events import FinancialEvents
from sellermetrics.adapters.amazon.payload import get_field

SPAPIRegion = Literal["na", "eu", "fe"]

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
SETTLEMENT_REPORT_TYPE = "GET_V2_SETTLEMENT_REPORT_DATA_FLAT_FILE_V2"

SP_API_ENDPOINTS: dict[SPAPIRegion, str] = {
    "na": "https://sellingpartnerapi-na.amazon.com",
    "eu": "https://sellingpartnerapi-eu.amazon.com",
    "fe": "https://sellingpartnerapi-fe.amazon.com",
}

# Amazon rejects CreatedBefore/PostedBefore values less than two minutes old.
_MIN_LAG = timedelta(minutes=3)
_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


class SPAPIClientError(Exception):
    """Base error for Selling Partner API client failures."""


class SPAPIBaseModel(BaseModel):
    """Shared base for SP-API response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class LWATokenResponse(SPAPIBaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = 3600
    refresh_token: str | None = None


class ReportModel(SPAPIBaseModel):
    report_id: str = Field(alias="reportId")
    report_type: str | None = Field(default=None, alias="reportType")
    processing_status: str | None = Field(default=None, alias="processingStatus")
    report_document_id: str | None = Field(default=None, alias="reportDocumentId")
    data_start_time: str | None = Field(default=None, alias="dataStartTime")
    data_end_time: str | None = Field(default=None, alias="dataEndTime")


class ReportsResponse(SPAPIBaseModel):
    reports: list[ReportModel] = Field(default_factory=list)
    next_token: str | None = Field(default=None, alias="nextToken")


class ReportDocumentResponse(SPAPIBaseModel):
    report_document_id: str = Field(alias="reportDocumentId")
    url: str
    compression_algorithm: str | None = Field(
        default=None, alias="compressionAlgorithm"
    )


class SPAPILogger:
    """Handles all logging for SPAPIClient with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def token_refreshed(self, expires_in: int) -> None:
        self._logger.bind(expires_in=expires_in).debug(
            "Refreshed SP-API access token (expires in {}s)", expires_in
        )

    def request(self, method: str, path: str) -> None:
        self._logger.bind(method=method, path=path).debug("SP-API {} {}", method, path)

    def page_fetched(self, operation: str, page: int, count: int) -> None:
        self._logger.bind(operation=operation, page=page, count=count).info(
            "{}: page {} returned {} records", operation, page, count
        )

    def report_downloaded(self, document_id: str, size: int, compressed: bool) -> None:
        self._logger.bind(
            document_id=document_id, size=size, compressed=compressed
        ).info("Downloaded report document {} ({} bytes)", document_id, size)


class SPAPIClient:
    """Minimal JSON client for the Selling Partner API of one seller.

    Access tokens are exchanged from the seller's refresh token and cached
    until shortly before they expire.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        region: SPAPIRegion = "na",
        request_delay_seconds: float = 0.3,
        sp_logger: SPAPILogger | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if region not in SP_API_ENDPOINTS:
            raise SPAPIClientError(f"Unsupported SP-API region: {region!r}")
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._region = region
        self._request_delay_seconds = request_delay_seconds
        self._logger = sp_logger or SPAPILogger()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._access_token: str | None = None
        self._token_expires_at: datetime | None = None

    @property
    def region(self) -> SPAPIRegion:
        return self._region

    @classmethod
    def from_env(
        cls,
        refresh_token: str,
        *,
        region: SPAPIRegion | None = None,
        request_delay_seconds: float = 0.3,
    ) -> SPAPIClient:
        """Construct a client for one seller from environment variables.

        Required:
        - AMAZON_SP_API_CLIENT_ID
        - AMAZON_SP_API_CLIENT_SECRET
        Optional:
        - AMAZON_SP_API_REGION (defaults to na)
        """
        region_str = (region or os.getenv("AMAZON_SP_API_REGION", "na")).lower()
        if region_str not in SP_API_ENDPOINTS:
            raise SPAPIClientError(
                f"Invalid AMAZON_SP_API_REGION={region_str!r}. "
                "Expected one of: na, eu, fe."
            )
        return cls(
            client_id=cls._getenv_or_die("AMAZON_SP_API_CLIENT_ID"),
            client_secret=cls._getenv_or_die("AMAZON_SP_API_CLIENT_SECRET"),
            refresh_token=refresh_token,
            region=region_str,  # type: ignore[arg-type]
            request_delay_seconds=request_delay_seconds,
        )

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise SPAPIClientError(f"Missing required environment variable: {name}")
        return value

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            parsed = json.loads(body) if body else {}
        except json.JSONDecodeError as e:
            raise SPAPIClientError(
                f"Failed to parse SP-API response as JSON: {e}: {body[:200]}"
            ) from e
        if not isinstance(parsed, dict):
            raise SPAPIClientError(f"Unexpected SP-API response: {body[:200]}")
        return parsed

    def _open(self, req: urllib.request.Request) -> bytes:
        try:
            with urllib.request.urlopen(req) as resp:  # noqa: S310 - external HTTPS
                return resp.read()
        except urllib.error.HTTPError as e:
            err_body = e.read().decode("utf-8", "ignore")
            raise SPAPIClientError(f"SP-API error ({e.code}): {err_body}") from e
        except urllib.error.URLError as e:
            raise SPAPIClientError(f"Network error calling SP-API: {e}") from e

    def _access_token_value(self) -> str:
        now = self._clock()
        if (
            self._access_token is not None
            and self._token_expires_at is not None
            and now < self._token_expires_at - _TOKEN_EXPIRY_MARGIN
        ):
            return self._access_token

        data = urllib.parse.urlencode(
            {
                "grant_type": "refresh_token",
                "refresh_token": self._refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            }
        ).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            LWA_TOKEN_URL,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        body = self._open(req).decode("utf-8")
        token = LWATokenResponse.parse(self._parse_json_response(body))
        self._access_token = token.access_token
        self._token_expires_at = now + timedelta(seconds=token.expires_in)
        self._logger.token_refreshed(token.expires_in)
        return token.access_token

    def _get(self, path: str, params: Mapping[str, str | int] | None = None) -> dict[str, Any]:
        url = SP_API_ENDPOINTS[self._region] + path
        if params:
            url += "?" + urllib.parse.urlencode(params)
        req = urllib.request.Request(  # noqa: S310
            url,
            headers={
                "x-amz-access-token": self._access_token_value(),
                "Accept": "application/json",
            },
            method="GET",
        )
        self._logger.request("GET", path)
        return self._parse_json_response(self._open(req).decode("utf-8"))

    def _safe_before(self, before: datetime | None) -> datetime:
        latest = self._clock() - _MIN_LAG
        if before is None or before > latest:
            return latest
        return before

    @staticmethod
    def _iso(value: datetime) -> str:
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def get_orders(
        self,
        marketplace_ids: list[str],
        created_after: datetime,
        created_before: datetime | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield raw orders created in the window, following ``NextToken``.

        Args:
            marketplace_ids: Marketplaces to query
            created_after: Inclusive lower bound
            created_before: Upper bound, clamped to three minutes ago

        Yields:
            Raw order objects
        """
        params: dict[str, str | int] = {
            "MarketplaceIds": ",".join(marketplace_ids),
            "CreatedAfter": self._iso(created_after),
            "CreatedBefore": self._iso(self._safe_before(created_before)),
            "MaxResultsPerPage": 100,
        }
        page = 0
        while True:
            response = self._get("/orders/v0/orders", params)
            payload = get_field(response, "Payload") or response
            orders = get_field(payload, "Orders") or []
            page += 1
            self._logger.page_fetched("getOrders", page, len(orders))
            yield from orders

            next_token = get_field(payload, "NextToken")
            if not next_token:
                return
            params = {
                "MarketplaceIds": ",".join(marketplace_ids),
                "NextToken": next_token,
            }
            self._sleep(self._request_delay_seconds)

    def get_order_items(self, amazon_order_id: str) -> list[dict[str, Any]]:
        """Return all raw items of one order."""
        path = f"/orders/v0/orders/{urllib.parse.quote(amazon_order_id)}/orderItems"
        items: list[dict[str, Any]] = []
        params: dict[str, str | int] | None = None
        while True:
            response = self._get(path, params)
            payload = get_field(response, "Payload") or response
            items.extend(get_field(payload, "OrderItems") or [])
            next_token = get_field(payload, "NextToken")
            if not next_token:
                return items
            params = {"NextToken": next_token}
            self._sleep(self._request_delay_seconds)

    def list_financial_events(
        self,
        posted_after: datetime,
        posted_before: datetime | None = None,
    ) -> FinancialEvents:
        """Fetch every page of financial events posted in the window."""
        params: dict[str, str | int] = {
            "MaxResultsPerPage": 100,
            "PostedAfter": self._iso(posted_after),
            "PostedBefore": self._iso(self._safe_before(posted_before)),
        }
        events = FinancialEvents()
        page = 0
        while True:
            response = self._get("/finances/v0/financialEvents", params)
            payload = get_field(response, "Payload") or response
            page_events = FinancialEvents.from_payload(
                get_field(payload, "FinancialEvents")
            )
            events.extend(page_events)
            page += 1
            self._logger.page_fetched(
                "listFinancialEvents", page, len(page_events.shipment_events)
            )

            next_token = get_field(payload, "NextToken")
            if not next_token:
                return events
            params = {"NextToken": next_token}
            self._sleep(self._request_delay_seconds)

    def list_settlement_reports(self, created_since: datetime) -> list[ReportModel]:
        """List settlement reports created since the given instant."""
        params: dict[str, str | int] = {
            "reportTypes": SETTLEMENT_REPORT_TYPE,
            "createdSince": self._iso(created_since),
            "pageSize": 100,
        }
        reports: list[ReportModel] = []
        while True:
            response = ReportsResponse.parse(
                self._get("/reports/2021-06-30/reports", params)
            )
            reports.extend(response.reports)
            if not response.next_token:
                return reports
            params = {"nextToken": response.next_token}
            self._sleep(self._request_delay_seconds)

    def download_report_document(self, report_document_id: str) -> str:
        """Download a report document and return its text, gunzipping if needed."""
        document = ReportDocumentResponse.parse(
            self._get(
                "/reports/2021-06-30/documents/"
                + urllib.parse.quote(report_document_id)
            )
        )
        req = urllib.request.Request(document.url, method="GET")  # noqa: S310
        raw = self._open(req)
        compressed = (document.compression_algorithm or "").upper() == "GZIP"
        if compressed:
            try:
                raw = gzip.decompress(raw)
            except OSError as e:
                raise SPAPIClientError(
                    f"Failed to decompress report document {report_document_id}: {e}"
                ) from e
        self._logger.report_downloaded(report_document_id, len(raw), compressed)
        return raw.decode("utf-8", "replace")
