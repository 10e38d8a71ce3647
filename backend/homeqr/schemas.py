"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


# =============================================================================
# PAGE VIEW BEACON
# =============================================================================


class PageViewRequest(BaseModel):
    """Page-view beacon sent by listing pages and microsites.

    Example:
        {"listing_id": "5b0c...", "source": "microsite"}
    """

    listing_id: str = Field(..., description="Listing UUID")
    source: Literal["microsite", "direct"] = Field(
        "direct",
        description="How the visitor reached the page",
    )


class PageViewResponse(BaseModel):
    success: bool = True


# =============================================================================
# LEADS
# =============================================================================


class LeadCreate(BaseModel):
    """Lead form submission from a listing page."""

    listing_id: UUID
    name: str = Field(..., min_length=1, max_length=200)
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=50)
    message: Optional[str] = Field(None, max_length=5000)
    source: Optional[Literal["qr_scan", "direct", "microsite"]] = Field(
        None,
        description="Explicit attribution; inferred from the visitor's session when omitted",
    )


class LeadResponse(BaseModel):
    id: UUID
    listing_id: UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    source: str
    scan_timestamp: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# REPAIR JOB
# =============================================================================


class RepairStats(BaseModel):
    """Counts reported by the repair job (camelCase on the wire)."""

    listings_processed: int = Field(0, serialization_alias="listingsProcessed")
    records_created: int = Field(0, serialization_alias="recordsCreated")
    records_updated: int = Field(0, serialization_alias="recordsUpdated")
    records_failed: int = Field(0, serialization_alias="recordsFailed")


class RepairFailure(BaseModel):
    listing_id: str
    date: str
    error: str


class RepairResponse(BaseModel):
    success: bool
    message: str
    stats: RepairStats
    failures: List[RepairFailure] = []
