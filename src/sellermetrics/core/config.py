from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import os
from typing import Literal

from sellermetrics.core.periods import PacificClock, TimezoneMode

Region = Literal["na", "eu", "fe"]

DEFAULT_DATABASE_URL = "sqlite:///sellermetrics.db"
US_MARKETPLACE_ID = "ATVPDKIKX0DER"
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Reconciliation settings loaded at process startup."""

    database_url: str = DEFAULT_DATABASE_URL
    fallback_fee_rate: Decimal = Decimal("0.15")
    timezone_mode: TimezoneMode = "fixed"
    exclude_canceled: bool = True
    request_delay_seconds: float = 0.3
    region: Region = "na"
    marketplace_ids: tuple[str, ...] = (US_MARKETPLACE_ID,)

    def clock(self) -> PacificClock:
        return PacificClock(self.timezone_mode)


def _env(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def load_app_config_from_env() -> AppConfig:
    """Load reconciliation config from env and validate it."""
    database_url = _env("DATABASE_URL", DEFAULT_DATABASE_URL) or DEFAULT_DATABASE_URL

    rate_value = _env("SELLERMETRICS_FALLBACK_FEE_RATE", "0.15")
    try:
        fallback_fee_rate = Decimal(rate_value)
    except InvalidOperation as e:
        raise ValueError(
            "SELLERMETRICS_FALLBACK_FEE_RATE must be a decimal number"
        ) from e
    if not Decimal("0") <= fallback_fee_rate <= Decimal("1"):
        raise ValueError("SELLERMETRICS_FALLBACK_FEE_RATE must be between 0 and 1")

    timezone_mode = _env("SELLERMETRICS_TIMEZONE_MODE", "fixed").lower()
    if timezone_mode not in {"fixed", "dst"}:
        raise ValueError("SELLERMETRICS_TIMEZONE_MODE must be one of: fixed, dst")

    exclude_canceled = (
        _env("SELLERMETRICS_EXCLUDE_CANCELED", "true").lower() in _TRUE_VALUES
    )

    delay_value = _env("SELLERMETRICS_REQUEST_DELAY_SECONDS", "0.3")
    try:
        request_delay_seconds = float(delay_value)
    except ValueError as e:
        raise ValueError(
            "SELLERMETRICS_REQUEST_DELAY_SECONDS must be a number"
        ) from e
    if request_delay_seconds < 0:
        raise ValueError("SELLERMETRICS_REQUEST_DELAY_SECONDS must not be negative")

    region = _env("AMAZON_SP_API_REGION", "na").lower()
    if region not in {"na", "eu", "fe"}:
        raise ValueError("AMAZON_SP_API_REGION must be one of: na, eu, fe")

    marketplace_ids = tuple(
        part.strip()
        for part in _env("AMAZON_MARKETPLACE_IDS", US_MARKETPLACE_ID).split(",")
        if part.strip()
    )

    return AppConfig(
        database_url=database_url,
        fallback_fee_rate=fallback_fee_rate,
        timezone_mode=timezone_mode,  # type: ignore[arg-type]
        exclude_canceled=exclude_canceled,
        request_delay_seconds=request_delay_seconds,
        region=region,  # type: ignore[arg-type]
        marketplace_ids=marketplace_ids or (US_MARKETPLACE_ID,),
    )
