"""Source attribution policy for scan sessions.

WHAT:
    A pure decision table that classifies an incoming scan or page view
    against the visitor's existing ScanSession row (if any).

WHY:
    A QR scan is the highest-signal event. It must never be reclassified as a
    plain visit because the page-view beacon of the same tab fires a moment
    later, and a page view followed by a real scan must upgrade the existing
    session rather than count a second visitor. Keeping the precedence rules
    in one function means no HTTP handler carries its own copy of them.

DECISION TABLE:
    existing  scan_count  incoming          action
    --------  ----------  ----------------  ------------------------------------
    none      -           qr                CREATE (scan_count=1, source=qr)
    none      -           direct/microsite  CREATE (scan_count=0, source=incoming)
    row       0           qr                UPGRADE_SOURCE (+1 scan, source=qr)
    row       0           direct/microsite  UPDATE_METADATA_ONLY (source only if unset)
    row       >0          qr                INCREMENT_SCAN_COUNT (+1 scan)
    row       >0          direct/microsite  UPDATE_METADATA_ONLY (source untouched)

Every non-create action also refreshes device, hour, referrer and
last_seen_at; that part is applied by the writer in `scan_tracking`.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from homeqr.models import SourceEnum


class AttributionAction(str, enum.Enum):
    CREATE = "create"
    UPDATE_METADATA_ONLY = "update_metadata_only"
    UPGRADE_SOURCE = "upgrade_source"
    INCREMENT_SCAN_COUNT = "increment_scan_count"


@dataclass(frozen=True)
class TrackingEvent:
    """A scan or page view, already enriched with request metadata."""
    listing_id: UUID
    session_token: str
    source: SourceEnum
    device_type: str
    hour: int
    referrer: Optional[str]
    occurred_at: datetime  # naive UTC

    @property
    def is_scan(self) -> bool:
        return self.source is SourceEnum.qr


@dataclass(frozen=True)
class SessionSnapshot:
    """The attribution-relevant part of a stored ScanSession."""
    source: Optional[str]
    scan_count: int

    @classmethod
    def from_row(cls, row) -> "SessionSnapshot":
        return cls(source=row.source, scan_count=row.scan_count or 0)


@dataclass(frozen=True)
class AttributionDecision:
    action: AttributionAction
    scan_increment: int
    # Source to write; None leaves the stored value alone
    source: Optional[str]
    # Write `source` only while the row is still unattributed and unscanned
    source_only_if_unset: bool = False


def decide(existing: Optional[SessionSnapshot], incoming: SourceEnum) -> AttributionDecision:
    """Apply the decision table to one incoming event."""
    incoming = SourceEnum(incoming)

    if existing is None:
        if incoming is SourceEnum.qr:
            return AttributionDecision(AttributionAction.CREATE, scan_increment=1, source=SourceEnum.qr.value)
        return AttributionDecision(AttributionAction.CREATE, scan_increment=0, source=incoming.value)

    if incoming is SourceEnum.qr:
        if existing.scan_count > 0:
            # Rewriting "qr" is a no-op for scanned rows and repairs legacy
            # rows that were counted before sources were recorded
            return AttributionDecision(
                AttributionAction.INCREMENT_SCAN_COUNT, scan_increment=1, source=SourceEnum.qr.value
            )
        return AttributionDecision(AttributionAction.UPGRADE_SOURCE, scan_increment=1, source=SourceEnum.qr.value)

    if existing.scan_count == 0 and existing.source is None:
        return AttributionDecision(
            AttributionAction.UPDATE_METADATA_ONLY,
            scan_increment=0,
            source=incoming.value,
            source_only_if_unset=True,
        )
    return AttributionDecision(AttributionAction.UPDATE_METADATA_ONLY, scan_increment=0, source=None)
