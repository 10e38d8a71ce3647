"""Daily analytics aggregator.

WHAT:
    Maintains one `analytics` row per (listing, local calendar day) with
    running totals: scans, page views, leads and unique visitors.

WHY:
    Dashboards and plan usage limits poll these rows instead of scanning raw
    sessions. Every increment goes through the upsert engine, so the scan and
    page-view handlers can both create the first row of a day concurrently.

NOTES:
    - Counters are incremented with ``col = col + 1`` in the UPDATE itself,
      never read-modify-written in Python.
    - `unique_visitors` is recounted from scan_sessions on every event and
      written as ``max(stored, counted)``: rows are never deleted, so a lower
      count can only be a stale read from a racing handler.
    - Stored timestamps are naive UTC; calendar days are cut in
      ANALYTICS_TIMEZONE.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from homeqr.deps import Settings, get_settings
from homeqr.models import AnalyticsDaily, ScanSession, utcnow
from homeqr.services.upsert import UpsertResult, upsert_row

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = ("total_scans", "total_leads", "unique_visitors", "page_views")


# =============================================================================
# CALENDAR HELPERS
# =============================================================================


def get_analytics_timezone(settings: Optional[Settings] = None) -> ZoneInfo:
    settings = settings or get_settings()
    return ZoneInfo(settings.ANALYTICS_TIMEZONE)


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def local_date(ts: datetime, tz: ZoneInfo) -> date:
    """Calendar date of a stored (naive UTC) timestamp in the analytics timezone."""
    return _as_utc(ts).astimezone(tz).date()


def local_hour(ts: datetime, tz: ZoneInfo) -> int:
    return _as_utc(ts).astimezone(tz).hour


def day_bounds(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """Naive UTC [start, end) of a local calendar day, for range filters."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


# =============================================================================
# COUNTERS
# =============================================================================


def count_unique_visitors(db: Session, listing_id: UUID, day: date, tz: ZoneInfo) -> int:
    """Sessions of the listing whose first_seen_at falls on `day`."""
    start, end = day_bounds(day, tz)
    return (
        db.query(func.count(ScanSession.id))
        .filter(
            ScanSession.listing_id == listing_id,
            ScanSession.first_seen_at >= start,
            ScanSession.first_seen_at < end,
        )
        .scalar()
        or 0
    )


def _increment_counter(
    db: Session,
    listing_id: UUID,
    day: date,
    counter: str,
    unique_visitors: Optional[int] = None,
) -> UpsertResult:
    """Add one to `counter` on the (listing, day) row, creating it if needed."""
    if counter not in COUNTER_COLUMNS:
        raise ValueError(f"Unknown analytics counter: {counter}")

    def build() -> AnalyticsDaily:
        row = AnalyticsDaily(
            listing_id=listing_id,
            date=day,
            total_scans=0,
            total_leads=0,
            unique_visitors=unique_visitors or 0,
            page_views=0,
        )
        setattr(row, counter, 1)
        return row

    def apply_update(row: AnalyticsDaily) -> None:
        setattr(row, counter, getattr(AnalyticsDaily, counter) + 1)
        if unique_visitors is not None:
            row.unique_visitors = case(
                (AnalyticsDaily.unique_visitors < unique_visitors, unique_visitors),
                else_=AnalyticsDaily.unique_visitors,
            )

    return upsert_row(
        db,
        AnalyticsDaily,
        {"listing_id": listing_id, "date": day},
        build,
        apply_update,
    )


def record_scan(
    db: Session,
    listing_id: UUID,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> UpsertResult:
    """Count one QR scan for today and refresh unique visitors."""
    tz = get_analytics_timezone(settings)
    day = local_date(now or utcnow(), tz)
    unique = count_unique_visitors(db, listing_id, day, tz)
    result = _increment_counter(db, listing_id, day, "total_scans", unique_visitors=unique)
    logger.info(
        f"[ANALYTICS] Scan counted ({result.outcome.value})",
        extra={"listing_id": str(listing_id), "date": day.isoformat(), "unique_visitors": unique},
    )
    return result


def record_page_view(
    db: Session,
    listing_id: UUID,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> UpsertResult:
    """Count one page view for today and refresh unique visitors."""
    tz = get_analytics_timezone(settings)
    day = local_date(now or utcnow(), tz)
    unique = count_unique_visitors(db, listing_id, day, tz)
    result = _increment_counter(db, listing_id, day, "page_views", unique_visitors=unique)
    logger.info(
        f"[ANALYTICS] Page view counted ({result.outcome.value})",
        extra={"listing_id": str(listing_id), "date": day.isoformat(), "unique_visitors": unique},
    )
    return result


def record_lead(
    db: Session,
    listing_id: UUID,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> UpsertResult:
    """Count one lead for the day it was created."""
    tz = get_analytics_timezone(settings)
    day = local_date(now or utcnow(), tz)
    result = _increment_counter(db, listing_id, day, "total_leads")
    logger.info(
        f"[ANALYTICS] Lead counted ({result.outcome.value})",
        extra={"listing_id": str(listing_id), "date": day.isoformat()},
    )
    return result
