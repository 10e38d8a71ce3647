"""Admin endpoints for analytics maintenance.

WHAT: Protected trigger for the analytics repair job
WHY: Lets operators heal drifted daily counters without shell access

SECURITY: Protected by ADMIN_SECRET (X-Admin-Secret header)
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from homeqr.database import get_db
from homeqr.deps import Settings, get_settings
from homeqr.schemas import RepairFailure, RepairResponse, RepairStats
from homeqr.services.errors import ReconciliationError
from homeqr.services.reconciliation import reconcile_analytics
from homeqr.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
)


def verify_admin_secret(
    x_admin_secret: str = Header(...),
    settings: Settings = Depends(get_settings),
):
    """Verify admin secret header for protected endpoints."""
    if not settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints not configured"
        )
    if x_admin_secret != settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin secret"
        )
    return True


@router.post(
    "/repair-analytics",
    response_model=RepairResponse,
    summary="Recompute daily analytics from raw sessions, leads and page views",
    description="""
    Rebuilds total_scans, unique_visitors and total_leads for every
    (listing, date) seen in the raw tables. page_views is only ever raised.

    Safe to run next to live traffic. Requires X-Admin-Secret header.
    """
)
def repair_analytics(
    listing_id: Optional[UUID] = Query(None, description="Restrict the repair to one listing"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: bool = Depends(verify_admin_secret),
):
    """Run the repair job and report its counts."""
    try:
        summary = reconcile_analytics(db, settings=settings, listing_id=listing_id)
    except ReconciliationError as exc:
        logger.error(f"[REPAIR] Repair aborted: {exc}")
        capture_exception(exc, extra={"listing_id": str(listing_id) if listing_id else None})
        response = RepairResponse(
            success=False,
            message=f"Analytics repair failed: {exc.message}",
            stats=RepairStats(),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(by_alias=True),
        )

    stats = RepairStats(
        listings_processed=summary.listings_processed,
        records_created=summary.records_created,
        records_updated=summary.records_updated,
        records_failed=summary.records_failed,
    )

    if not summary.ok:
        response = RepairResponse(
            success=False,
            message=f"Analytics repair finished with {summary.records_failed} failed record(s)",
            stats=stats,
            failures=[RepairFailure(**failure) for failure in summary.failures],
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(by_alias=True),
        )

    response = RepairResponse(
        success=True,
        message=(
            f"Analytics repaired for {summary.listings_processed} listing(s): "
            f"{summary.records_created} created, {summary.records_updated} updated"
        ),
        stats=stats,
    )
    return JSONResponse(content=response.model_dump(by_alias=True))
