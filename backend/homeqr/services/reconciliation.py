"""Analytics reconciliation (repair) job.

WHAT:
    Rebuilds the daily `analytics` rows from the raw tables:
      - scan_sessions grouped by (listing, local date of first_seen_at):
        unique_visitors = number of sessions, total_scans = sum(scan_count)
      - leads grouped by (listing, local date of created_at): total_leads
      - page_view_events grouped by (listing, local date of occurred_at)

WHY:
    Live counters drift when events are dropped, races are lost or a bug
    slips into the increment path. This job is the self-healing mechanism.
    It is safe to run next to live traffic: every write goes through the
    same upsert engine as the request handlers.

NOTES:
    page_views is never lowered: it becomes max(stored, total_scans, logged
    page views). Older days predate the page-view log, so their stored
    counter is the only record of views that were never scans.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homeqr.deps import Settings
from homeqr.models import AnalyticsDaily, Lead, PageViewEvent, ScanSession
from homeqr.services.daily_analytics import get_analytics_timezone, local_date
from homeqr.services.errors import ReconciliationError, UpsertError
from homeqr.services.upsert import UpsertOutcome, upsert_row

logger = logging.getLogger(__name__)

GroupKey = Tuple[UUID, date]

READ_BATCH_SIZE = 1000


@dataclass
class GroupTotals:
    """Recomputed counters for one (listing, date)."""
    session_tokens: Set[str] = field(default_factory=set)
    total_scans: int = 0
    total_leads: int = 0
    logged_page_views: int = 0

    @property
    def unique_visitors(self) -> int:
        return len(self.session_tokens)

    @property
    def page_view_floor(self) -> int:
        return max(self.total_scans, self.logged_page_views)


@dataclass
class ReconciliationSummary:
    listings_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    failures: List[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.records_failed == 0


def collect_group_totals(
    db: Session,
    settings: Optional[Settings] = None,
    listing_id: Optional[UUID] = None,
) -> Dict[GroupKey, GroupTotals]:
    """Bulk-read the raw tables and group them by (listing, local date).

    Raises:
        ReconciliationError: any of the raw reads failed.
    """
    tz = get_analytics_timezone(settings)
    groups: Dict[GroupKey, GroupTotals] = defaultdict(GroupTotals)

    def scoped(query, column):
        return query.filter(column == listing_id) if listing_id is not None else query

    try:
        sessions = scoped(
            db.query(
                ScanSession.listing_id,
                ScanSession.session_token,
                ScanSession.scan_count,
                ScanSession.first_seen_at,
            ),
            ScanSession.listing_id,
        )
        for row in sessions.yield_per(READ_BATCH_SIZE):
            totals = groups[(row.listing_id, local_date(row.first_seen_at, tz))]
            totals.session_tokens.add(row.session_token)
            totals.total_scans += row.scan_count or 0

        leads = scoped(db.query(Lead.listing_id, Lead.created_at), Lead.listing_id)
        for row in leads.yield_per(READ_BATCH_SIZE):
            groups[(row.listing_id, local_date(row.created_at, tz))].total_leads += 1

        views = scoped(db.query(PageViewEvent.listing_id, PageViewEvent.occurred_at), PageViewEvent.listing_id)
        for row in views.yield_per(READ_BATCH_SIZE):
            groups[(row.listing_id, local_date(row.occurred_at, tz))].logged_page_views += 1
    except SQLAlchemyError as exc:
        db.rollback()
        raise ReconciliationError("Failed to read raw analytics rows") from exc

    return dict(groups)


def write_group(db: Session, key: GroupKey, totals: GroupTotals) -> UpsertOutcome:
    """Overwrite one analytics row with recomputed totals."""
    listing_id, day = key
    floor = totals.page_view_floor

    def build() -> AnalyticsDaily:
        return AnalyticsDaily(
            listing_id=listing_id,
            date=day,
            total_scans=totals.total_scans,
            unique_visitors=totals.unique_visitors,
            total_leads=totals.total_leads,
            page_views=floor,
        )

    def apply_update(row: AnalyticsDaily) -> None:
        row.total_scans = totals.total_scans
        row.unique_visitors = totals.unique_visitors
        row.total_leads = totals.total_leads
        row.page_views = case(
            (AnalyticsDaily.page_views < floor, floor),
            else_=AnalyticsDaily.page_views,
        )

    result = upsert_row(db, AnalyticsDaily, {"listing_id": listing_id, "date": day}, build, apply_update)
    return result.outcome


def reconcile_analytics(
    db: Session,
    settings: Optional[Settings] = None,
    listing_id: Optional[UUID] = None,
) -> ReconciliationSummary:
    """Recompute daily analytics from raw rows.

    Args:
        db: Session used for the bulk reads and per-group upserts
        settings: Supplies ANALYTICS_TIMEZONE for day boundaries
        listing_id: Restrict the repair to one listing

    Returns:
        ReconciliationSummary; a failed group is recorded there and does
        not stop the remaining groups.

    Raises:
        ReconciliationError: the raw rows could not be read.
    """
    logger.info("[REPAIR] Starting analytics repair", extra={"listing_id": str(listing_id) if listing_id else None})

    groups = collect_group_totals(db, settings=settings, listing_id=listing_id)
    summary = ReconciliationSummary(listings_processed=len({key[0] for key in groups}))

    for key in sorted(groups, key=lambda k: (str(k[0]), k[1])):
        try:
            outcome = write_group(db, key, groups[key])
        except UpsertError as exc:
            summary.records_failed += 1
            summary.failures.append({
                "listing_id": str(key[0]),
                "date": key[1].isoformat(),
                "error": str(exc),
            })
            logger.error(f"[REPAIR] Failed to write analytics row: {exc}")
            continue

        if outcome is UpsertOutcome.created:
            summary.records_created += 1
        else:
            summary.records_updated += 1

    logger.info(
        "[REPAIR] Completed",
        extra={
            "listings_processed": summary.listings_processed,
            "records_created": summary.records_created,
            "records_updated": summary.records_updated,
            "records_failed": summary.records_failed,
        },
    )
    return summary
