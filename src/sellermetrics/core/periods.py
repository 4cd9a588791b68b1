"""Period normalization anchored to US Pacific wall-clock midnight.

Amazon's US marketplace reports daily boundaries in Pacific time. Every
reconciliation computation is parameterized by a ``Period``: a half-open
``[start, end)`` interval in UTC derived from Pacific calendar days.

The default ``fixed`` mode uses a constant UTC-8 offset for the whole year.
It is NOT daylight-saving aware: between March and November Pacific midnight
is actually 07:00 UTC, so period edges are one hour late. The fixed offset is
kept because every existing report was produced with it; ``dst`` mode
(``America/Los_Angeles``) is available through configuration until the
intended fiscal calendar is confirmed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Literal
from zoneinfo import ZoneInfo

TimezoneMode = Literal["fixed", "dst"]

PACIFIC_FIXED_OFFSET = timedelta(hours=-8)
PACIFIC_ZONE_NAME = "America/Los_Angeles"


class PeriodError(ValueError):
    """Raised when a period name or date range cannot be normalized."""


class PeriodName(str, Enum):
    """User-facing period names."""

    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "this_week"
    LAST_WEEK = "last_week"
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    CUSTOM = "custom"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass(frozen=True, slots=True)
class Period:
    """Half-open UTC interval covering whole Pacific calendar days."""

    label: str
    start: datetime
    end: datetime
    first_day: date
    last_day: date

    @property
    def days(self) -> int:
        """Number of Pacific calendar days covered (inclusive)."""
        return (self.last_day - self.first_day).days + 1

    def contains(self, instant: datetime) -> bool:
        return self.start <= _as_utc(instant) < self.end


class PacificClock:
    """Single place where Pacific wall-clock dates are mapped to UTC."""

    def __init__(self, mode: TimezoneMode = "fixed") -> None:
        if mode not in ("fixed", "dst"):
            raise PeriodError(f"Unknown timezone mode: {mode!r}")
        self._mode = mode
        self._tz: tzinfo = (
            timezone(PACIFIC_FIXED_OFFSET, "PST")
            if mode == "fixed"
            else ZoneInfo(PACIFIC_ZONE_NAME)
        )

    @property
    def mode(self) -> TimezoneMode:
        return self._mode

    def local_date(self, instant: datetime) -> date:
        """Pacific calendar date of a UTC instant."""
        return _as_utc(instant).astimezone(self._tz).date()

    def midnight_utc(self, day: date) -> datetime:
        """UTC instant of Pacific midnight at the start of ``day``."""
        return datetime.combine(day, time.min, tzinfo=self._tz).astimezone(
            timezone.utc
        )

    def day_span(self, label: str, first_day: date, last_day: date) -> Period:
        """Period covering ``first_day`` through ``last_day`` inclusive."""
        if last_day < first_day:
            raise PeriodError(
                f"Period end {last_day.isoformat()} is before start "
                f"{first_day.isoformat()}"
            )
        return Period(
            label=label,
            start=self.midnight_utc(first_day),
            end=self.midnight_utc(last_day + timedelta(days=1)),
            first_day=first_day,
            last_day=last_day,
        )


def _as_utc(instant: datetime) -> datetime:
    # Naive timestamps coming out of the database are stored as UTC.
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def parse_period_name(value: str) -> PeriodName:
    """Parse ``"This Week"``, ``"this-week"`` or ``"this_week"``."""
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return PeriodName(normalized)
    except ValueError as e:
        choices = ", ".join(name.value for name in PeriodName)
        raise PeriodError(
            f"Unknown period {value!r}. Expected one of: {choices}"
        ) from e


def parse_iso_date(value: str | date) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as e:
        raise PeriodError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def _first_of_previous_month(day: date) -> date:
    last_of_previous = day.replace(day=1) - timedelta(days=1)
    return last_of_previous.replace(day=1)


def resolve_period(
    name: str | PeriodName,
    *,
    now: datetime | None = None,
    start_date: str | date | None = None,
    end_date: str | date | None = None,
    clock: PacificClock | None = None,
    label: str | None = None,
) -> Period:
    """Convert a period name (or custom date range) into a UTC interval.

    Args:
        name: Period name; ``custom`` requires ``start_date`` and ``end_date``
        now: Reference instant (defaults to the current UTC time)
        start_date: First Pacific calendar day for custom ranges
        end_date: Last Pacific calendar day (inclusive) for custom ranges
        clock: Offset policy (defaults to the fixed UTC-8 clock)
        label: Optional display label overriding the default

    Returns:
        Period with UTC ``start``/``end`` on Pacific midnights

    Raises:
        PeriodError: For unknown names or an invalid custom range
    """
    clock = clock or PacificClock()
    period_name = name if isinstance(name, PeriodName) else parse_period_name(name)
    today = clock.local_date(now or datetime.now(timezone.utc))
    display = label or period_name.label

    if period_name is PeriodName.CUSTOM:
        if start_date is None or end_date is None:
            raise PeriodError("Custom periods require both start_date and end_date")
        return clock.day_span(
            display, parse_iso_date(start_date), parse_iso_date(end_date)
        )

    if period_name is PeriodName.TODAY:
        return clock.day_span(display, today, today)
    if period_name is PeriodName.YESTERDAY:
        yesterday = today - timedelta(days=1)
        return clock.day_span(display, yesterday, yesterday)

    monday = today - timedelta(days=today.weekday())
    if period_name is PeriodName.THIS_WEEK:
        return clock.day_span(display, monday, today)
    if period_name is PeriodName.LAST_WEEK:
        return clock.day_span(
            display, monday - timedelta(days=7), monday - timedelta(days=1)
        )

    if period_name is PeriodName.THIS_MONTH:
        return clock.day_span(display, today.replace(day=1), today)
    if period_name is PeriodName.LAST_MONTH:
        return clock.day_span(
            display,
            _first_of_previous_month(today),
            today.replace(day=1) - timedelta(days=1),
        )

    if period_name is PeriodName.LAST_7_DAYS:
        return clock.day_span(display, today - timedelta(days=6), today)
    return clock.day_span(display, today - timedelta(days=29), today)
