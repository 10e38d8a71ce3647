"""Correlation token resolution for scan and page-view requests.

WHAT:
    Reads the visitor's correlation token from the session cookie, or mints a
    new one, and echoes it back on the response.

WHY:
    The token is the only client-held state. It groups a browser's scans and
    page views into one ScanSession row per listing. It is opaque and
    non-cryptographic: attribution only, never authentication.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request, Response

from homeqr.deps import Settings

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "session_"
MAX_TOKEN_LENGTH = 128


@dataclass(frozen=True)
class ResolvedSession:
    """Token for the current request and whether it was minted just now."""
    token: str
    is_new: bool


def mint_session_token(now: Optional[datetime] = None) -> str:
    """Mint a new correlation token.

    Format: ``session_<epoch millis>_<random suffix>``. The random part comes
    from `secrets`, so tokens minted in the same millisecond do not collide
    in practice and no central coordination is needed.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"{TOKEN_PREFIX}{millis}_{secrets.token_hex(6)}"


def _is_usable_token(value: Optional[str]) -> bool:
    if not value:
        return False
    value = value.strip()
    return 0 < len(value) <= MAX_TOKEN_LENGTH and not any(ch.isspace() for ch in value)


def resolve_session_token(request: Request, settings: Settings) -> ResolvedSession:
    """Return the request's correlation token, minting one when absent.

    A previously issued token is returned unchanged. Values that could not
    have been issued by us (empty, oversized, containing whitespace) are
    replaced by a fresh token.
    """
    existing = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if _is_usable_token(existing):
        return ResolvedSession(token=existing.strip(), is_new=False)

    if existing:
        logger.debug("[SESSION] Ignoring malformed session cookie (length=%d)", len(existing))
    return ResolvedSession(token=mint_session_token(), is_new=True)


def read_session_token(request: Request, settings: Settings) -> Optional[str]:
    """Read the token without minting one (lead submission path)."""
    existing = request.cookies.get(settings.SESSION_COOKIE_NAME)
    return existing.strip() if _is_usable_token(existing) else None


def attach_session_cookie(response: Response, token: str, settings: Settings) -> Response:
    """Persist the token on the client for the next 30 days."""
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=settings.SESSION_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.SESSION_COOKIE_SECURE,
    )
    return response
