"""Page-view beacon endpoint.

WHAT:
    Receives page-view hits from listing pages and agent microsites and
    merges them into the visitor's scan session.

WHY:
    A page view after a scan must land on the same session row so the
    prospect is not counted twice and the QR attribution survives.

REFERENCES:
    - homeqr/services/scan_tracking.py
    - homeqr/services/attribution_policy.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homeqr.database import get_db
from homeqr.deps import Settings, get_settings
from homeqr.models import Listing, SourceEnum
from homeqr.schemas import PageViewRequest, PageViewResponse
from homeqr.services import scan_tracking
from homeqr.services.errors import UpsertError
from homeqr.services.request_context import detect_device_type, extract_referrer
from homeqr.services.session_identity import attach_session_cookie, resolve_session_token
from homeqr.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["Analytics"])


def _accepted(token: str, settings: Settings) -> JSONResponse:
    response = JSONResponse(content=PageViewResponse().model_dump())
    return attach_session_cookie(response, token, settings)


@router.post("/track", response_model=PageViewResponse)
async def track_page_view(
    request: Request,
    payload: PageViewRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Record a page view.

    WHAT:
        Validates the listing id, resolves the correlation token and tracks
        the view. The (possibly re-used) token is echoed in the cookie.

    Returns:
        {"success": true}; store failures are logged, never surfaced.

    Raises:
        HTTPException 400: malformed or unknown listing_id
    """
    try:
        listing_id = UUID(payload.listing_id)
    except ValueError:
        logger.warning(f"[PAGE VIEW] Invalid listing_id format: {payload.listing_id}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid listing_id format",
        )

    resolved = resolve_session_token(request, settings)
    token = resolved.token

    try:
        listing = db.query(Listing.id).filter(Listing.id == listing_id).first()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"[PAGE VIEW] Listing lookup failed, view dropped: {exc}")
        capture_exception(exc, extra={"listing_id": str(listing_id)})
        return _accepted(token, settings)

    if listing is None:
        logger.warning(f"[PAGE VIEW] Unknown listing_id: {listing_id}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid listing",
        )

    event = scan_tracking.build_event(
        listing_id=listing_id,
        session_token=token,
        source=SourceEnum(payload.source),
        device_type=detect_device_type(request.headers.get("user-agent")),
        referrer=extract_referrer(request),
        settings=settings,
    )
    try:
        outcome = scan_tracking.track_event(db, event, token_is_new=resolved.is_new, settings=settings)
    except (UpsertError, SQLAlchemyError) as exc:
        db.rollback()
        logger.error(
            f"[PAGE VIEW] Dropped page view: {exc}",
            extra={"listing_id": str(listing_id), "session_token": token},
        )
        capture_exception(exc, extra={"listing_id": str(listing_id), "session_token": token})
        return _accepted(token, settings)

    logger.info(
        "[PAGE VIEW] View tracked",
        extra={
            "listing_id": str(listing_id),
            "source": payload.source,
            "action": outcome.action.value,
            "joined_recent_qr_session": outcome.joined_recent_qr_session,
        },
    )
    return _accepted(outcome.session_token, settings)
