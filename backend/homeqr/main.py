"""FastAPI application entrypoint.

Configures CORS, includes routers, mounts the read-only admin panel and
exposes a healthcheck endpoint.
"""

import hmac
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqladmin import Admin, ModelView
from sqladmin.authentication import AuthenticationBackend
from starlette.requests import Request
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from homeqr import models, schemas
from homeqr.database import engine
from homeqr.deps import get_settings
from homeqr.routers import admin as admin_router
from homeqr.routers import leads as leads_router
from homeqr.routers import scan as scan_router
from homeqr.routers import tracking as tracking_router
from homeqr.telemetry import init_observability


# =============================================================================
# ADMIN PANEL
# =============================================================================
# Read-only browsing of raw attribution data. Views rely on the __str__
# methods in models.py for related-object labels.


class AdminSecretAuth(AuthenticationBackend):
    """Session login for /admin using ADMIN_SECRET as the password."""

    def __init__(self, secret_key: str, admin_secret: Optional[str] = None):
        super().__init__(secret_key=secret_key)
        self.admin_secret = admin_secret

    async def login(self, request: Request) -> bool:
        form = await request.form()
        password = form.get("password") or ""
        if not self.admin_secret or not hmac.compare_digest(str(password), self.admin_secret):
            logger.warning("[ADMIN] Rejected admin panel login")
            return False
        request.session.update({"admin": True})
        return True

    async def logout(self, request: Request) -> bool:
        request.session.clear()
        return True

    async def authenticate(self, request: Request) -> bool:
        return bool(request.session.get("admin"))


class ReadOnlyView(ModelView):
    can_create = False
    can_edit = False
    can_delete = False
    can_export = True
    page_size = 50


class ListingAdmin(ReadOnlyView, model=models.Listing):
    column_list = [models.Listing.id, models.Listing.slug, models.Listing.address, models.Listing.created_at]
    column_searchable_list = ["slug", "address"]
    column_sortable_list = ["created_at"]
    name = "Listing"
    name_plural = "Listings"
    icon = "fa-solid fa-house"


class ScanSessionAdmin(ReadOnlyView, model=models.ScanSession):
    column_list = [
        models.ScanSession.listing_id,
        models.ScanSession.session_token,
        models.ScanSession.source,
        models.ScanSession.scan_count,
        models.ScanSession.device_type,
        models.ScanSession.first_seen_at,
        models.ScanSession.last_seen_at,
    ]
    column_searchable_list = ["session_token"]
    column_sortable_list = ["first_seen_at", "last_seen_at", "scan_count"]
    column_default_sort = ("last_seen_at", True)
    name = "Scan Session"
    name_plural = "Scan Sessions"
    icon = "fa-solid fa-qrcode"


class AnalyticsDailyAdmin(ReadOnlyView, model=models.AnalyticsDaily):
    column_list = [
        models.AnalyticsDaily.listing_id,
        models.AnalyticsDaily.date,
        models.AnalyticsDaily.total_scans,
        models.AnalyticsDaily.unique_visitors,
        models.AnalyticsDaily.page_views,
        models.AnalyticsDaily.total_leads,
        models.AnalyticsDaily.updated_at,
    ]
    column_sortable_list = ["date", "total_scans", "total_leads"]
    column_default_sort = ("date", True)
    name = "Daily Analytics"
    name_plural = "Daily Analytics"
    icon = "fa-solid fa-chart-line"


class LeadAdmin(ReadOnlyView, model=models.Lead):
    column_list = [
        models.Lead.name,
        models.Lead.email,
        models.Lead.listing_id,
        models.Lead.source,
        models.Lead.scan_timestamp,
        models.Lead.created_at,
    ]
    column_searchable_list = ["name", "email"]
    column_sortable_list = ["created_at"]
    column_default_sort = ("created_at", True)
    name = "Lead"
    name_plural = "Leads"
    icon = "fa-solid fa-user"


class PageViewEventAdmin(ReadOnlyView, model=models.PageViewEvent):
    column_list = [
        models.PageViewEvent.listing_id,
        models.PageViewEvent.session_token,
        models.PageViewEvent.source,
        models.PageViewEvent.device_type,
        models.PageViewEvent.occurred_at,
    ]
    column_sortable_list = ["occurred_at"]
    column_default_sort = ("occurred_at", True)
    name = "Page View"
    name_plural = "Page Views"
    icon = "fa-solid fa-eye"


def create_app() -> FastAPI:
    app = FastAPI(
        title="HomeQR Analytics API",
        description="""
        Scan attribution and lead analytics for HomeQR listing QR codes.

        This API provides endpoints for:
        - QR scan redirects with visitor session tracking
        - Page-view beacons from listing pages and microsites
        - Lead submission with time-to-lead correlation
        - Admin repair of daily analytics counters
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer so redirects keep https
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    observability = init_observability()
    logger.info(f"[STARTUP] Observability: {observability}")

    allowed_origins = settings.cors_origins
    if settings.SITE_URL.rstrip("/") not in allowed_origins:
        allowed_origins.append(settings.SITE_URL.rstrip("/"))
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(scan_router.router)
    app.include_router(tracking_router.router)
    app.include_router(leads_router.router)
    app.include_router(admin_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        Does not require authentication and does not touch the database,
        so it can be used for load balancer health checks.
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    if not settings.ADMIN_SECRET:
        logger.warning("[STARTUP] ADMIN_SECRET not set - admin panel login and repair endpoint are disabled")

    authentication_backend = AdminSecretAuth(
        secret_key=settings.ADMIN_SESSION_SECRET,
        admin_secret=settings.ADMIN_SECRET,
    )
    admin = Admin(
        app,
        engine,
        title="HomeQR Analytics Admin",
        authentication_backend=authentication_backend,
    )
    admin.add_view(ListingAdmin)
    admin.add_view(ScanSessionAdmin)
    admin.add_view(AnalyticsDailyAdmin)
    admin.add_view(LeadAdmin)
    admin.add_view(PageViewEventAdmin)

    return app


app = create_app()
