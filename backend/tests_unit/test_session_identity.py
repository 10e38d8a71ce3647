"""
Session Identity Tests (Unit)
=============================

WHAT: Unit tests for correlation-token minting/resolution and request metadata.
WHY: A valid cookie must be reused untouched, or scans and page views of one
     visitor split into separate sessions.

REFERENCES:
- backend/homeqr/services/session_identity.py
- backend/homeqr/services/request_context.py
"""

import re
from datetime import datetime, timezone

import pytest
from fastapi import Request, Response

from homeqr.deps import Settings
from homeqr.services.request_context import detect_device_type, extract_referrer
from homeqr.services.session_identity import (
    attach_session_cookie,
    mint_session_token,
    read_session_token,
    resolve_session_token,
)

SETTINGS = Settings(_env_file=None, SESSION_COOKIE_NAME="homeqr_session")


def _request(headers=None) -> Request:
    raw_headers = [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw_headers})


def test_mint_session_token_format() -> None:
    now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

    token = mint_session_token(now)

    millis = int(now.timestamp() * 1000)
    assert re.fullmatch(rf"session_{millis}_[0-9a-f]{{12}}", token)


def test_minted_tokens_are_unique() -> None:
    tokens = {mint_session_token() for _ in range(500)}

    assert len(tokens) == 500


def test_resolve_reuses_cookie_token() -> None:
    request = _request({"cookie": "homeqr_session=session_1700000000000_abcdef123456"})

    resolved = resolve_session_token(request, SETTINGS)

    assert resolved.token == "session_1700000000000_abcdef123456"
    assert resolved.is_new is False


def test_resolve_mints_without_cookie() -> None:
    resolved = resolve_session_token(_request(), SETTINGS)

    assert resolved.is_new is True
    assert resolved.token.startswith("session_")


def test_resolve_replaces_oversized_cookie() -> None:
    request = _request({"cookie": f"homeqr_session={'x' * 300}"})

    resolved = resolve_session_token(request, SETTINGS)

    assert resolved.is_new is True
    assert read_session_token(request, SETTINGS) is None


def test_attach_session_cookie() -> None:
    response = attach_session_cookie(Response(), "session_1_abc", SETTINGS)

    header = response.headers["set-cookie"].lower()
    assert header.startswith("homeqr_session=session_1_abc")
    assert "httponly" in header
    assert "samesite=lax" in header
    assert f"max-age={SETTINGS.SESSION_COOKIE_MAX_AGE}" in header


@pytest.mark.parametrize(
    ("user_agent", "expected"),
    [
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148", "mobile"),
        ("Mozilla/5.0 (Linux; Android 14; Pixel 8) Mobile Safari/537.36", "mobile"),
        ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) Mobile/15E148", "tablet"),
        ("Mozilla/5.0 (Linux; Android 13; SM-X200) Safari/537.36", "tablet"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0", "desktop"),
        (None, "unknown"),
        ("", "unknown"),
    ],
)
def test_detect_device_type(user_agent, expected) -> None:
    assert detect_device_type(user_agent) == expected


def test_extract_referrer() -> None:
    assert extract_referrer(_request({"referer": "https://news.example/a"})) == "https://news.example/a"
    assert extract_referrer(_request({"referrer": "https://mail.example"})) == "https://mail.example"
    assert extract_referrer(_request()) == "direct"
