"""SQLAlchemy ORM models and enums.

This module defines the attribution schema using UUID primary keys. All
DateTime columns store naive UTC timestamps; local calendar days are derived
in `homeqr.services.daily_analytics` from the configured analytics timezone.

Listings and QR codes are owned by the listing/QR management surface and are
only read here (plus the legacy QR scan counter).
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC, matching how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class SourceEnum(str, enum.Enum):
    """Attribution of a scan session. `qr` is sticky once set."""
    qr = "qr"
    direct = "direct"
    microsite = "microsite"


class DeviceTypeEnum(str, enum.Enum):
    mobile = "mobile"
    desktop = "desktop"
    tablet = "tablet"
    unknown = "unknown"


class LeadSourceEnum(str, enum.Enum):
    qr_scan = "qr_scan"
    direct = "direct"
    microsite = "microsite"


# Listing surface (read-only here) --------------------------------

class Listing(Base):
    """A property listing that QR codes and microsites point at.

    Owned by listing CRUD; the attribution engine only needs the id and the
    slug used to build the public redirect URL.
    """
    __tablename__ = "listings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = Column(String, unique=True, nullable=True)
    address = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.slug or str(self.id)


class QRCode(Base):
    """Printed QR code for a listing.

    `scan_count` is the legacy per-code counter kept in step with scans for
    older dashboards; `redirect_url` overrides the landing page for codes
    printed against the old `/api/scan/{qr_id}` route.
    """
    __tablename__ = "qrcodes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=False, index=True)
    scan_count = Column(Integer, nullable=False, default=0, server_default="0")
    redirect_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return f"QR {self.id} ({self.scan_count} scans)"


# =============================================================================
# ATTRIBUTION MODELS
# =============================================================================
# WHAT: Per-visitor sessions, daily counters, leads and the page-view log
# WHY: Attributes QR/microsite traffic to listings and rolls it into daily
#      analytics that dashboards and usage limits poll


class ScanSession(Base):
    """One row per (listing, correlation token).

    WHAT: Merges every scan and page view from one browser into one row
    WHY: Unique visitors and QR attribution are derived from these rows

    Invariants:
        - at most one row per (listing_id, session_token); the unique
          constraint is the conflict target of the upsert engine
        - once source == "qr" or scan_count > 0, neither is ever downgraded
        - first_seen_at is immutable; last_seen_at never moves backwards
    """
    __tablename__ = "scan_sessions"
    __table_args__ = (
        UniqueConstraint("listing_id", "session_token", name="uq_scan_session_token"),
        CheckConstraint("scan_count >= 0", name="ck_scan_sessions_scan_count_non_negative"),
        Index("ix_scan_sessions_listing_first_seen", "listing_id", "first_seen_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    session_token = Column(String(128), nullable=False)

    # Attribution
    source = Column(String(16), nullable=True)
    scan_count = Column(Integer, nullable=False, default=0, server_default="0")

    # Last observed context
    device_type = Column(String(16), nullable=False, default=DeviceTypeEnum.unknown.value)
    time_of_day = Column(Integer, nullable=True)
    referrer = Column(String, nullable=True)

    first_seen_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=utcnow)

    def __str__(self):
        return f"{self.session_token} ({self.source or 'unattributed'}, {self.scan_count} scans)"


class AnalyticsDaily(Base):
    """Daily counters for one listing on one local calendar date.

    WHAT: Running totals maintained incrementally by tracking handlers
    WHY: Dashboards read one row per day instead of scanning raw sessions

    Counters only grow during the day; the reconciliation job is the only
    writer allowed to overwrite them.
    """
    __tablename__ = "analytics"
    __table_args__ = (
        UniqueConstraint("listing_id", "date", name="uq_analytics_listing_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    date = Column(Date, nullable=False)

    total_scans = Column(Integer, nullable=False, default=0, server_default="0")
    total_leads = Column(Integer, nullable=False, default=0, server_default="0")
    unique_visitors = Column(Integer, nullable=False, default=0, server_default="0")
    page_views = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"{self.listing_id} @ {self.date}"


class Lead(Base):
    """Lead captured by the listing contact form.

    `scan_timestamp` is copied from the correlated scan session at creation
    time; time-to-lead is `created_at - scan_timestamp`.
    """
    __tablename__ = "leads"
    __table_args__ = (
        Index("ix_leads_listing_created", "listing_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    message = Column(Text, nullable=True)
    source = Column(String(16), nullable=False, default=LeadSourceEnum.qr_scan.value)
    scan_timestamp = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __str__(self):
        return f"{self.name} ({self.source})"


class PageViewEvent(Base):
    """Append-only log of accepted page-view beacons.

    WHAT: One row per page view, never updated or deleted
    WHY: `analytics.page_views` is an incremented counter; this log lets the
         reconciliation job rebuild it instead of only flooring it
    """
    __tablename__ = "page_view_events"
    __table_args__ = (
        Index("ix_page_view_events_listing_occurred", "listing_id", "occurred_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    session_token = Column(String(128), nullable=False)
    source = Column(String(16), nullable=False)
    device_type = Column(String(16), nullable=False, default=DeviceTypeEnum.unknown.value)
    referrer = Column(String, nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)

    def __str__(self):
        return f"{self.source} view - {self.session_token} - {self.occurred_at}"
