"""Lead submission endpoint.

WHAT:
    Saves contact-form leads and stamps them with the visitor's first
    contact time for time-to-lead reporting.

WHY:
    The lead row is the primary write and must not be lost to an analytics
    hiccup: the daily counter is bumped afterwards on a best-effort basis.

REFERENCES:
    - homeqr/services/time_to_lead.py
    - homeqr/services/daily_analytics.py
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homeqr.database import get_db
from homeqr.deps import Settings, get_settings
from homeqr.models import Lead, Listing, utcnow
from homeqr.schemas import LeadCreate, LeadResponse
from homeqr.services import daily_analytics
from homeqr.services.errors import UpsertError
from homeqr.services.request_context import extract_referrer
from homeqr.services.session_identity import read_session_token
from homeqr.services.time_to_lead import correlate_lead
from homeqr.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/leads", tags=["Leads"])


@router.post("", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
async def create_lead(
    request: Request,
    payload: LeadCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Create a lead for a listing.

    WHAT:
        Correlates the lead with the visitor's scan session (cookie token),
        stores it and counts it in today's analytics. The cookie is read but
        never set here.

    Raises:
        HTTPException 404: listing does not exist
        HTTPException 500: the lead itself could not be stored
    """
    listing = db.query(Listing).filter(Listing.id == payload.listing_id).first()
    if not listing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")

    created_at = utcnow()
    session_token = read_session_token(request, settings)
    correlation = correlate_lead(
        db,
        listing.id,
        session_token,
        created_at,
        explicit_source=payload.source,
        referrer=extract_referrer(request),
    )

    lead = Lead(
        listing_id=listing.id,
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        message=payload.message,
        source=correlation.source,
        scan_timestamp=correlation.scan_timestamp,
        created_at=created_at,
    )
    try:
        db.add(lead)
        db.commit()
        db.refresh(lead)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"[LEADS] Failed to store lead: {exc}", extra={"listing_id": str(listing.id)})
        capture_exception(exc, extra={"listing_id": str(listing.id)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save lead",
        )

    logger.info(
        "[LEADS] Lead created",
        extra={
            "lead_id": str(lead.id),
            "listing_id": str(listing.id),
            "source": lead.source,
            "correlated_session": str(correlation.session_id) if correlation.session_id else None,
        },
    )

    try:
        daily_analytics.record_lead(db, listing.id, now=created_at, settings=settings)
    except (UpsertError, SQLAlchemyError) as exc:
        db.rollback()
        context = {
            "listing_id": str(listing.id),
            "session_token": session_token,
            "date": daily_analytics.local_date(
                created_at, daily_analytics.get_analytics_timezone(settings)
            ).isoformat(),
        }
        logger.error(f"[LEADS] Lead counter not updated; left for repair job: {exc}", extra=context)
        capture_exception(exc, extra=context)

    db.refresh(lead)
    return lead
