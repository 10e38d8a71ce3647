"""QR scan endpoints.

WHAT:
    Entry points printed into QR codes. Each hit is attributed to a scan
    session, counted in daily analytics and redirected to the listing page.

WHY:
    The redirect is what the prospect sees. Analytics is best effort: a
    failed or dropped tracking write never blocks or breaks the redirect.

REFERENCES:
    - homeqr/services/scan_tracking.py
    - homeqr/services/session_identity.py
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homeqr.database import get_db
from homeqr.deps import Settings, get_settings
from homeqr.models import Listing, QRCode, SourceEnum
from homeqr.services import scan_tracking
from homeqr.services.errors import UpsertError
from homeqr.services.request_context import detect_device_type, extract_referrer
from homeqr.services.session_identity import attach_session_cookie, resolve_session_token
from homeqr.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scan", tags=["Scan"])


# =============================================================================
# HELPERS
# =============================================================================


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(value)
    except ValueError:
        return None


def _site_url(settings: Settings) -> str:
    return settings.SITE_URL.rstrip("/")


def listing_url(settings: Settings, listing_id: UUID, slug: Optional[str] = None) -> str:
    """Public page of a listing: pretty slug URL when available."""
    if slug:
        return f"{_site_url(settings)}/{slug}"
    return f"{_site_url(settings)}/listing/{listing_id}"


def absolute_url(settings: Settings, url: str) -> str:
    """Make a stored redirect target absolute against SITE_URL."""
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"{_site_url(settings)}/{url.lstrip('/')}"


def not_found_redirect(settings: Settings) -> RedirectResponse:
    return RedirectResponse(f"{_site_url(settings)}/404")


def _track_scan(
    request: Request,
    db: Session,
    settings: Settings,
    listing_id: UUID,
    qr_code_id: Optional[UUID] = None,
) -> str:
    """Record the scan, swallowing analytics failures. Returns the token to echo."""
    resolved = resolve_session_token(request, settings)
    event = scan_tracking.build_event(
        listing_id=listing_id,
        session_token=resolved.token,
        source=SourceEnum.qr,
        device_type=detect_device_type(request.headers.get("user-agent")),
        referrer=extract_referrer(request),
        settings=settings,
    )

    try:
        outcome = scan_tracking.track_event(db, event, token_is_new=resolved.is_new, settings=settings)
        logger.info(
            "[QR SCAN] Scan tracked",
            extra={
                "listing_id": str(listing_id),
                "action": outcome.action.value,
                "upsert": outcome.upsert.value,
                "device_type": event.device_type,
            },
        )
    except (UpsertError, SQLAlchemyError) as exc:
        db.rollback()
        logger.error(
            f"[QR SCAN] Dropped scan event: {exc}",
            extra={"listing_id": str(listing_id), "session_token": resolved.token},
        )
        capture_exception(exc, extra={"listing_id": str(listing_id), "session_token": resolved.token})
        return resolved.token

    scan_tracking.increment_qr_code_scans(db, listing_id=listing_id, qr_code_id=qr_code_id)
    return outcome.session_token


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.get("/qr/{listing_id}")
async def scan_listing_qr(
    listing_id: str,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Handle a scan of a listing QR code.

    WHAT:
        Resolves the listing, tracks the scan and redirects to the listing's
        public page with the correlation cookie set.

    Returns:
        Redirect to the listing page, or to /404 for unknown listings.
    """
    parsed_id = _parse_uuid(listing_id)
    if parsed_id is None:
        logger.warning(f"[QR SCAN] Invalid listing id: {listing_id}")
        return not_found_redirect(settings)

    try:
        listing = db.query(Listing).filter(Listing.id == parsed_id).first()
    except SQLAlchemyError as exc:
        # Store unreachable: still send the prospect to the listing page
        db.rollback()
        logger.error(f"[QR SCAN] Listing lookup failed, redirecting untracked: {exc}")
        capture_exception(exc, extra={"listing_id": listing_id})
        return RedirectResponse(listing_url(settings, parsed_id))

    if listing is None:
        logger.warning(f"[QR SCAN] Listing not found: {listing_id}")
        return not_found_redirect(settings)

    redirect_to = listing_url(settings, listing.id, listing.slug)
    token = _track_scan(request, db, settings, listing.id)

    response = RedirectResponse(redirect_to)
    return attach_session_cookie(response, token, settings)


@router.get("/{qr_id}")
async def scan_legacy_qr(
    qr_id: str,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Handle a scan of a QR code printed against the old per-code route.

    WHAT:
        Resolves the QR code to its listing, tracks the scan like the
        listing route and redirects to the code's stored redirect URL or the
        listing page.
    """
    parsed_id = _parse_uuid(qr_id)
    if parsed_id is None:
        logger.warning(f"[QR SCAN] Invalid QR code id: {qr_id}")
        return not_found_redirect(settings)

    try:
        qr_code = db.query(QRCode).filter(QRCode.id == parsed_id).first()
        listing = None
        if qr_code is not None:
            listing = db.query(Listing).filter(Listing.id == qr_code.listing_id).first()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"[QR SCAN] QR code lookup failed: {exc}")
        capture_exception(exc, extra={"qr_code_id": qr_id})
        return not_found_redirect(settings)

    if qr_code is None:
        logger.warning(f"[QR SCAN] QR code not found: {qr_id}")
        return not_found_redirect(settings)

    logger.info(
        "[QR SCAN] Legacy route used; regenerate this code to use /api/scan/qr/{listing_id}",
        extra={"qr_code_id": qr_id},
    )

    listing_id = qr_code.listing_id
    if qr_code.redirect_url:
        redirect_to = absolute_url(settings, qr_code.redirect_url)
    else:
        redirect_to = listing_url(settings, listing_id, listing.slug if listing else None)

    token = _track_scan(request, db, settings, listing_id, qr_code_id=qr_code.id)

    response = RedirectResponse(redirect_to)
    return attach_session_cookie(response, token, settings)
