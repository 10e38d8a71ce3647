"""Scan and page-view tracking.

WHAT:
    Turns one scan or page-view hit into:
      1. a merged ScanSession row (attribution policy + upsert engine)
      2. an append-only PageViewEvent row (page views only)
      3. daily analytics increments
      4. the legacy per-QR-code scan counter (scans only)

WHY:
    Analytics is best effort. Step 1 is the primary write; when it fails the
    event is dropped and the caller still redirects / answers 200. Failures
    in steps 2-4 are partial failures: the session write is kept, the error
    is logged with listing, token and date so the repair job can rebuild
    the counters, and the request carries on.

REFERENCES:
    - homeqr/services/attribution_policy.py (decision table)
    - homeqr/services/upsert.py (conflict recovery)
    - homeqr/services/reconciliation.py (repairs what is dropped here)
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, case, literal
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.types import DateTime

from homeqr.deps import Settings, get_settings
from homeqr.models import PageViewEvent, QRCode, ScanSession, SourceEnum, utcnow
from homeqr.services import daily_analytics
from homeqr.services.attribution_policy import (
    AttributionAction,
    AttributionDecision,
    SessionSnapshot,
    TrackingEvent,
    decide,
)
from homeqr.services.errors import UpsertError
from homeqr.services.upsert import UpsertOutcome, upsert_row
from homeqr.telemetry import capture_exception

logger = logging.getLogger(__name__)


@dataclass
class TrackingOutcome:
    """What happened to one tracked hit."""
    session_token: str  # token to echo back; differs from the request's under the QR fallback
    session_id: Optional[UUID]
    action: AttributionAction
    upsert: UpsertOutcome
    analytics_recorded: bool = True
    joined_recent_qr_session: bool = False


def build_event(
    listing_id: UUID,
    session_token: str,
    source: SourceEnum,
    device_type: str,
    referrer: Optional[str],
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> TrackingEvent:
    """Stamp a hit with its time and local hour of day."""
    occurred_at = now or utcnow()
    tz = daily_analytics.get_analytics_timezone(settings)
    return TrackingEvent(
        listing_id=listing_id,
        session_token=session_token,
        source=SourceEnum(source),
        device_type=device_type,
        hour=daily_analytics.local_hour(occurred_at, tz),
        referrer=referrer,
        occurred_at=occurred_at,
    )


# =============================================================================
# SESSION WRITES
# =============================================================================
# The decision is taken on a snapshot, but the UPDATE re-checks the sticky
# rule in SQL: a page view that decided on a stale unscanned row can never
# overwrite a "qr" source committed by a concurrent scan in between.


def _sticky_source(incoming: str):
    return case(
        (and_(ScanSession.source.is_(None), ScanSession.scan_count == 0), literal(incoming)),
        else_=ScanSession.source,
    )


def _refresh_metadata(row: ScanSession, event: TrackingEvent) -> None:
    row.device_type = event.device_type
    row.time_of_day = event.hour
    row.referrer = event.referrer
    seen_at = literal(event.occurred_at, DateTime())
    row.last_seen_at = case(
        (ScanSession.last_seen_at < seen_at, seen_at),
        else_=ScanSession.last_seen_at,
    )


def apply_decision(row: ScanSession, event: TrackingEvent, decision: AttributionDecision) -> None:
    """Write a non-create decision onto an existing session row."""
    _refresh_metadata(row, event)
    if decision.scan_increment:
        row.scan_count = ScanSession.scan_count + decision.scan_increment
    if decision.source is not None:
        if decision.source_only_if_unset:
            row.source = _sticky_source(decision.source)
        else:
            row.source = decision.source


def merge_lost_create(row: ScanSession, event: TrackingEvent, decision: AttributionDecision) -> None:
    """Fold a CREATE that lost the insert race into the winner's row.

    Both requests saw no row, so both describe the visitor's first contact.
    A lost first scan raises scan_count to at least 1 instead of adding 1.
    """
    _refresh_metadata(row, event)
    if decision.scan_increment:
        row.scan_count = case((ScanSession.scan_count < 1, 1), else_=ScanSession.scan_count)
        row.source = SourceEnum.qr.value
    elif decision.source is not None:
        row.source = _sticky_source(decision.source)


def new_session(event: TrackingEvent, decision: AttributionDecision) -> ScanSession:
    return ScanSession(
        listing_id=event.listing_id,
        session_token=event.session_token,
        source=decision.source,
        scan_count=decision.scan_increment,
        device_type=event.device_type,
        time_of_day=event.hour,
        referrer=event.referrer,
        first_seen_at=event.occurred_at,
        last_seen_at=event.occurred_at,
    )


def upsert_session(db: Session, event: TrackingEvent):
    """Merge one event into the (listing, token) session row.

    Returns:
        (UpsertResult, AttributionDecision actually applied)

    Raises:
        UpsertError: the session could not be written; the event is dropped.
    """
    applied: dict = {}
    create_decision = decide(None, event.source)

    def build() -> ScanSession:
        applied["decision"] = create_decision
        return new_session(event, create_decision)

    def apply_update(row: ScanSession) -> None:
        decision = decide(SessionSnapshot.from_row(row), event.source)
        applied["decision"] = decision
        apply_decision(row, event, decision)

    def apply_conflict(row: ScanSession) -> None:
        applied["decision"] = create_decision
        merge_lost_create(row, event, create_decision)

    result = upsert_row(
        db,
        ScanSession,
        {"listing_id": event.listing_id, "session_token": event.session_token},
        build,
        apply_update,
        apply_conflict,
    )
    return result, applied["decision"]


def find_recent_qr_session(
    db: Session,
    listing_id: UUID,
    now: datetime,
    window: timedelta,
) -> Optional[ScanSession]:
    """Most recent QR session of the listing first seen within `window` of `now`."""
    if window <= timedelta(0):
        return None
    return (
        db.query(ScanSession)
        .filter(
            ScanSession.listing_id == listing_id,
            ScanSession.source == SourceEnum.qr.value,
            ScanSession.first_seen_at >= now - window,
            ScanSession.first_seen_at <= now,
        )
        .order_by(ScanSession.first_seen_at.desc())
        .first()
    )


# =============================================================================
# ENTRY POINTS
# =============================================================================


def _log_partial_failure(step: str, event: TrackingEvent, exc: Exception, settings: Settings) -> None:
    tz = daily_analytics.get_analytics_timezone(settings)
    context = {
        "step": step,
        "listing_id": str(event.listing_id),
        "session_token": event.session_token,
        "date": daily_analytics.local_date(event.occurred_at, tz).isoformat(),
    }
    logger.error(f"[TRACKING] {step} failed after session write; left for repair job: {exc}", extra=context)
    capture_exception(exc, extra=context)


def track_event(
    db: Session,
    event: TrackingEvent,
    token_is_new: bool = False,
    settings: Optional[Settings] = None,
) -> TrackingOutcome:
    """Record one scan or page view.

    Args:
        db: Session for this request only
        event: The hit, see `build_event`
        token_is_new: The request carried no correlation token and one was
            minted for it. Only then may a page view join a recent QR
            session of the same listing (the token was lost on a redirect).
        settings: Overrides for timezone and fallback window

    Raises:
        UpsertError: the session write failed; nothing was recorded.
    """
    settings = settings or get_settings()
    joined_recent = False

    if not event.is_scan and token_is_new:
        window = timedelta(seconds=settings.QR_SESSION_FALLBACK_SECONDS)
        try:
            recent = find_recent_qr_session(db, event.listing_id, event.occurred_at, window)
        except SQLAlchemyError as exc:
            db.rollback()
            raise UpsertError(
                "Lookup of recent QR session failed",
                {"listing_id": str(event.listing_id)},
            ) from exc
        if recent is not None:
            logger.info(
                "[TRACKING] Token-less page view joined recent QR session",
                extra={"listing_id": str(event.listing_id), "session_token": recent.session_token},
            )
            event = replace(event, session_token=recent.session_token)
            joined_recent = True

    result, decision = upsert_session(db, event)
    outcome = TrackingOutcome(
        session_token=event.session_token,
        session_id=result.row.id,
        action=decision.action,
        upsert=result.outcome,
        joined_recent_qr_session=joined_recent,
    )

    if not event.is_scan:
        try:
            db.add(
                PageViewEvent(
                    listing_id=event.listing_id,
                    session_token=event.session_token,
                    source=event.source.value,
                    device_type=event.device_type,
                    referrer=event.referrer,
                    occurred_at=event.occurred_at,
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            _log_partial_failure("page view log", event, exc, settings)

    try:
        if event.is_scan:
            daily_analytics.record_scan(db, event.listing_id, now=event.occurred_at, settings=settings)
        else:
            daily_analytics.record_page_view(db, event.listing_id, now=event.occurred_at, settings=settings)
    except (UpsertError, SQLAlchemyError) as exc:
        db.rollback()
        outcome.analytics_recorded = False
        _log_partial_failure("daily analytics", event, exc, settings)

    return outcome


def increment_qr_code_scans(
    db: Session,
    listing_id: Optional[UUID] = None,
    qr_code_id: Optional[UUID] = None,
) -> int:
    """Bump the legacy per-code counter. Returns the number of codes updated.

    By listing, the counter is only bumped when the listing has exactly one
    code; with several, the scanned one cannot be told apart.
    """
    query = db.query(QRCode)
    try:
        if qr_code_id is None and listing_id is not None:
            code_ids = [row.id for row in db.query(QRCode.id).filter(QRCode.listing_id == listing_id).limit(2)]
            if len(code_ids) > 1:
                logger.debug(
                    "[TRACKING] Listing has several QR codes, per-code counter skipped",
                    extra={"listing_id": str(listing_id)},
                )
                return 0
            qr_code_id = code_ids[0] if code_ids else None
            if qr_code_id is None:
                logger.debug("[TRACKING] No QR code record for scan (older printed code)", extra={"listing_id": str(listing_id)})
                return 0
        if qr_code_id is None:
            return 0
        query = query.filter(QRCode.id == qr_code_id)

        updated = query.update(
            {QRCode.scan_count: QRCode.scan_count + 1},
            synchronize_session=False,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            f"[TRACKING] QR code counter update failed: {exc}",
            extra={"listing_id": str(listing_id), "qr_code_id": str(qr_code_id)},
        )
        capture_exception(exc, extra={"listing_id": str(listing_id), "qr_code_id": str(qr_code_id)})
        return 0

    if not updated:
        logger.debug("[TRACKING] No QR code record for scan (older printed code)", extra={"listing_id": str(listing_id)})
    return updated
