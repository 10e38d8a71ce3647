#!/usr/bin/env python3
"""
Analytics Repair Script.

WHAT:
    Recomputes the daily `analytics` rows from scan_sessions, leads and
    page_view_events. Same job as POST /api/admin/repair-analytics, for
    operators with shell access (cron, one-off backfills).

USAGE:
    # Repair every listing
    python scripts/repair_analytics.py

    # Repair one listing
    python scripts/repair_analytics.py --listing 5b0c2c7e-...

    # Cut calendar days in another timezone than ANALYTICS_TIMEZONE
    python scripts/repair_analytics.py --timezone Europe/Amsterdam

EXIT CODES:
    0 all groups written, 1 some groups failed, 2 raw rows unreadable

REFERENCES:
    - backend/homeqr/services/reconciliation.py
"""

import argparse
import logging
import os
import sys
import uuid

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def run(listing_id=None, timezone_name=None) -> int:
    """Run the repair job and print a summary. Returns the process exit code."""
    from homeqr.database import get_sync_session
    from homeqr.deps import get_settings
    from homeqr.services.errors import ReconciliationError
    from homeqr.services.reconciliation import reconcile_analytics

    settings = get_settings()
    if timezone_name:
        settings = settings.model_copy(update={"ANALYTICS_TIMEZONE": timezone_name})

    with get_sync_session() as db:
        try:
            summary = reconcile_analytics(db, settings=settings, listing_id=listing_id)
        except ReconciliationError as e:
            logger.error(f"Repair aborted: {e}")
            return 2

    print("")
    print("Analytics repair summary")
    print(f"  Listings processed: {summary.listings_processed}")
    print(f"  Records created:    {summary.records_created}")
    print(f"  Records updated:    {summary.records_updated}")
    print(f"  Records failed:     {summary.records_failed}")
    for failure in summary.failures:
        print(f"    - {failure['listing_id']} {failure['date']}: {failure['error']}")

    return 0 if summary.ok else 1


def main():
    parser = argparse.ArgumentParser(description="Recompute daily analytics from raw rows")
    parser.add_argument("--listing", type=uuid.UUID, help="Only repair this listing id")
    parser.add_argument("--timezone", help="Override ANALYTICS_TIMEZONE for day boundaries")
    args = parser.parse_args()

    sys.exit(run(listing_id=args.listing, timezone_name=args.timezone))


if __name__ == "__main__":
    main()
