"""Time-to-lead correlation.

WHAT:
    At lead submission, finds the visitor's scan session for the listing and
    stamps the lead with the time of that first contact (`scan_timestamp`).
    Also provides the read-side maths dashboards use on those timestamps.

WHY:
    "How long after scanning did this prospect reach out?" is the agent's
    main lead-quality signal. A missing session must never fail the lead:
    correlation degrades to the lead's own creation time (time-to-lead 0).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homeqr.models import LeadSourceEnum, ScanSession, SourceEnum

logger = logging.getLogger(__name__)

# Differences outside [0, 7 days) are clock noise or unrelated visits
TIME_TO_LEAD_WINDOW = timedelta(days=7)
HOT_LEAD_THRESHOLD = timedelta(hours=1)

# (label, lower bound minutes inclusive, upper bound minutes exclusive)
TIME_TO_LEAD_BUCKETS: Tuple[Tuple[str, float, Optional[float]], ...] = (
    ("< 1 hour", 0, 60),
    ("1-6 hours", 60, 360),
    ("6-24 hours", 360, 1440),
    ("1-3 days", 1440, 4320),
    ("3+ days", 4320, None),
)

_LEAD_SOURCES = {member.value for member in LeadSourceEnum}


@dataclass(frozen=True)
class LeadCorrelation:
    source: str
    scan_timestamp: Optional[datetime]
    session_id: Optional[UUID] = None


def find_correlated_session(db: Session, listing_id: UUID, session_token: str) -> Optional[ScanSession]:
    """Most recently active session for (listing, token)."""
    return (
        db.query(ScanSession)
        .filter(
            ScanSession.listing_id == listing_id,
            ScanSession.session_token == session_token,
        )
        .order_by(ScanSession.last_seen_at.desc())
        .first()
    )


def referrer_source_hint(referrer: Optional[str]) -> Optional[str]:
    """`direct` / `microsite` from a `?source=` parameter on the referring page."""
    if not referrer or referrer == "direct":
        return None
    values = parse_qs(urlsplit(referrer).query).get("source", [])
    for value in values:
        if value in (LeadSourceEnum.direct.value, LeadSourceEnum.microsite.value):
            return value
    return None


def infer_lead_source(
    explicit: Optional[str],
    session: Optional[ScanSession],
    referrer: Optional[str] = None,
) -> str:
    """Attribute a lead to qr_scan, direct or microsite.

    An explicit, valid value from the form wins. Otherwise the visitor's
    session decides: any scan makes it a QR lead, an unscanned session keeps
    its page-view source. Without a session a `?source=` hint on the
    referring page is used, and failing that the lead counts as a QR lead,
    which is how the contact form on listing pages has always tagged them.
    """
    if explicit in _LEAD_SOURCES:
        return explicit
    if session is not None:
        if (session.scan_count or 0) > 0 or session.source == SourceEnum.qr.value:
            return LeadSourceEnum.qr_scan.value
        if session.source in (SourceEnum.direct.value, SourceEnum.microsite.value):
            return session.source
    hint = referrer_source_hint(referrer)
    if session is None and hint is not None:
        return hint
    return LeadSourceEnum.qr_scan.value


def scan_timestamp_for(session: Optional[ScanSession], lead_created_at: datetime) -> datetime:
    """first_seen_at, else last_seen_at, never later than the lead itself."""
    if session is None:
        return lead_created_at
    seen_at = session.first_seen_at or session.last_seen_at
    if seen_at is None or seen_at > lead_created_at:
        return lead_created_at
    return seen_at


def _lookup_session(db: Session, listing_id: UUID, session_token: Optional[str]) -> Optional[ScanSession]:
    if not session_token:
        return None
    try:
        return find_correlated_session(db, listing_id, session_token)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            f"[LEADS] Session lookup failed, using lead time: {exc}",
            extra={"listing_id": str(listing_id), "session_token": session_token},
        )
        return None


def correlate_scan_timestamp(
    db: Session,
    listing_id: UUID,
    session_token: Optional[str],
    lead_created_at: datetime,
    qr_attributed: bool = True,
) -> Optional[datetime]:
    """scan_timestamp for a lead: None unless QR-attributed."""
    if not qr_attributed:
        return None
    return scan_timestamp_for(_lookup_session(db, listing_id, session_token), lead_created_at)


def correlate_lead(
    db: Session,
    listing_id: UUID,
    session_token: Optional[str],
    lead_created_at: datetime,
    explicit_source: Optional[str] = None,
    referrer: Optional[str] = None,
) -> LeadCorrelation:
    """Resolve source and scan_timestamp for a lead about to be created.

    Non-QR leads carry no scan_timestamp. QR leads without a token or a
    matching session fall back to `lead_created_at`.
    """
    session = _lookup_session(db, listing_id, session_token)
    session_id = session.id if session is not None else None

    source = infer_lead_source(explicit_source, session, referrer)
    if source != LeadSourceEnum.qr_scan.value:
        return LeadCorrelation(source=source, scan_timestamp=None, session_id=session_id)

    if session is None:
        logger.debug(
            "[LEADS] No scan session for lead, time-to-lead degrades to zero",
            extra={"listing_id": str(listing_id), "has_token": bool(session_token)},
        )
    return LeadCorrelation(
        source=source,
        scan_timestamp=scan_timestamp_for(session, lead_created_at),
        session_id=session_id,
    )


# =============================================================================
# READ SIDE
# =============================================================================


def time_to_lead_minutes(created_at: Optional[datetime], scan_timestamp: Optional[datetime]) -> Optional[float]:
    """Minutes from scan to lead, or None when missing or outside [0, 7 days)."""
    if created_at is None or scan_timestamp is None:
        return None
    delta = created_at - scan_timestamp
    if delta < timedelta(0) or delta >= TIME_TO_LEAD_WINDOW:
        return None
    return delta.total_seconds() / 60


def is_hot_lead(minutes: float) -> bool:
    return minutes <= HOT_LEAD_THRESHOLD.total_seconds() / 60


@dataclass
class TimeToLeadSummary:
    total_leads: int = 0
    avg_minutes: float = 0.0
    hot_leads: int = 0
    distribution: List[Tuple[str, int]] = field(default_factory=list)


def summarize_time_to_lead(leads: Iterable) -> TimeToLeadSummary:
    """Average, hot-lead count and bucket distribution over lead rows.

    `leads` are objects with `created_at` and `scan_timestamp`; leads whose
    time-to-lead is outside the window still count towards `total_leads`.
    """
    minutes: List[float] = []
    total = 0
    for lead in leads:
        total += 1
        value = time_to_lead_minutes(lead.created_at, lead.scan_timestamp)
        if value is not None:
            minutes.append(value)

    distribution = []
    for label, lower, upper in TIME_TO_LEAD_BUCKETS:
        count = sum(1 for m in minutes if m >= lower and (upper is None or m < upper))
        distribution.append((label, count))

    return TimeToLeadSummary(
        total_leads=total,
        avg_minutes=sum(minutes) / len(minutes) if minutes else 0.0,
        hot_leads=sum(1 for m in minutes if is_hot_lead(m)),
        distribution=distribution,
    )
