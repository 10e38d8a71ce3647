"""Scan / page-view tracking tests.

Covers the session merge rules end to end through the store: sticky QR
attribution, no double counting of scan + page view, the token-less QR
fallback and partial-failure handling.
"""

import itertools
from datetime import datetime, timedelta

import pytest

from homeqr.models import AnalyticsDaily, PageViewEvent, QRCode, ScanSession, SourceEnum
from homeqr.services import daily_analytics, scan_tracking
from homeqr.services import upsert as upsert_module
from homeqr.services.attribution_policy import AttributionAction
from homeqr.services.errors import UpsertError
from homeqr.services.upsert import UpsertOutcome

T0 = datetime(2026, 3, 2, 10, 0)


def _event(listing_id, token, source, at, referrer="direct", device_type="mobile", settings=None):
    return scan_tracking.build_event(
        listing_id=listing_id,
        session_token=token,
        source=source,
        device_type=device_type,
        referrer=referrer,
        now=at,
        settings=settings,
    )


def _track(db, settings, listing_id, token, source, at, token_is_new=False, **kwargs):
    event = _event(listing_id, token, source, at, settings=settings, **kwargs)
    return scan_tracking.track_event(db, event, token_is_new=token_is_new, settings=settings)


def _sessions(db, listing_id):
    return db.query(ScanSession).filter(ScanSession.listing_id == listing_id).all()


# =============================================================================
# ATTRIBUTION SCENARIOS
# =============================================================================


def test_first_scan_creates_qr_session(test_db_session, test_settings, test_listing):
    outcome = _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)

    assert outcome.action is AttributionAction.CREATE
    assert outcome.upsert is UpsertOutcome.created
    session = _sessions(test_db_session, test_listing.id)[0]
    assert session.source == "qr"
    assert session.scan_count == 1
    assert session.first_seen_at == T0
    assert session.time_of_day == 10


def test_page_view_after_scan_keeps_qr_and_refreshes_metadata(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)
    outcome = _track(
        test_db_session,
        test_settings,
        test_listing.id,
        "tok-a",
        SourceEnum.direct,
        T0 + timedelta(minutes=2),
        referrer="https://homeqr.test/12-oak-street",
        device_type="desktop",
    )

    assert outcome.action is AttributionAction.UPDATE_METADATA_ONLY
    sessions = _sessions(test_db_session, test_listing.id)
    assert len(sessions) == 1
    session = sessions[0]
    assert session.scan_count == 1
    assert session.source == "qr"
    assert session.last_seen_at == T0 + timedelta(minutes=2)
    assert session.first_seen_at == T0
    assert session.referrer == "https://homeqr.test/12-oak-street"
    assert session.device_type == "desktop"


def test_scan_after_page_view_upgrades_source(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.microsite, T0)
    outcome = _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0 + timedelta(minutes=1))

    assert outcome.action is AttributionAction.UPGRADE_SOURCE
    session = _sessions(test_db_session, test_listing.id)[0]
    assert session.source == "qr"
    assert session.scan_count == 1


def test_repeat_scan_increments_count(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)
    outcome = _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0 + timedelta(hours=1))

    assert outcome.action is AttributionAction.INCREMENT_SCAN_COUNT
    assert _sessions(test_db_session, test_listing.id)[0].scan_count == 2


def test_unscanned_session_keeps_first_page_view_source(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.microsite, T0)
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.direct, T0 + timedelta(minutes=1))

    session = _sessions(test_db_session, test_listing.id)[0]
    assert session.source == "microsite"
    assert session.scan_count == 0


def test_last_seen_never_moves_backwards(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0 + timedelta(minutes=5))
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.direct, T0 + timedelta(minutes=1))

    session = _sessions(test_db_session, test_listing.id)[0]
    assert session.last_seen_at == T0 + timedelta(minutes=5)


@pytest.mark.parametrize(
    "sources",
    [
        list(order)
        for order in itertools.permutations([SourceEnum.qr, SourceEnum.direct, SourceEnum.microsite])
    ]
    + [[SourceEnum.direct, SourceEnum.microsite], [SourceEnum.qr, SourceEnum.direct, SourceEnum.qr]],
)
def test_source_is_qr_iff_a_scan_happened(test_db_session, test_settings, test_listing, sources):
    for offset, source in enumerate(sources):
        _track(test_db_session, test_settings, test_listing.id, "tok-a", source, T0 + timedelta(minutes=offset))

    sessions = _sessions(test_db_session, test_listing.id)
    scans = sum(1 for source in sources if source is SourceEnum.qr)
    assert len(sessions) == 1
    assert (sessions[0].source == "qr") == (scans > 0)
    assert sessions[0].scan_count == scans


def test_concurrent_first_scans_count_once(test_db_session, test_settings, test_listing, monkeypatch):
    """Second delivery of a first scan loses the insert race and merges."""
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)

    real_find = upsert_module.find_by_key
    calls = {"sessions": 0}

    def stale_find(db, model, key):
        if model is ScanSession:
            calls["sessions"] += 1
            if calls["sessions"] == 1:
                return None
        return real_find(db, model, key)

    monkeypatch.setattr(upsert_module, "find_by_key", stale_find)
    outcome = _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0 + timedelta(seconds=3))

    assert outcome.upsert is UpsertOutcome.recovered
    assert outcome.action is AttributionAction.CREATE
    sessions = _sessions(test_db_session, test_listing.id)
    assert len(sessions) == 1
    assert sessions[0].scan_count == 1
    assert sessions[0].source == "qr"
    assert sessions[0].last_seen_at == T0 + timedelta(seconds=3)


def test_lost_page_view_create_does_not_downgrade_scan(test_db_session, test_settings, test_listing, monkeypatch):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)

    real_find = upsert_module.find_by_key
    calls = {"sessions": 0}

    def stale_find(db, model, key):
        if model is ScanSession:
            calls["sessions"] += 1
            if calls["sessions"] == 1:
                return None
        return real_find(db, model, key)

    monkeypatch.setattr(upsert_module, "find_by_key", stale_find)
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.direct, T0 + timedelta(seconds=1))

    session = _sessions(test_db_session, test_listing.id)[0]
    assert session.source == "qr"
    assert session.scan_count == 1


# =============================================================================
# QR FALLBACK FOR TOKEN-LESS PAGE VIEWS
# =============================================================================


def test_tokenless_page_view_joins_recent_qr_session(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-scan", SourceEnum.qr, T0)

    outcome = _track(
        test_db_session,
        test_settings,
        test_listing.id,
        "tok-fresh",
        SourceEnum.direct,
        T0 + timedelta(minutes=3),
        token_is_new=True,
    )

    assert outcome.joined_recent_qr_session is True
    assert outcome.session_token == "tok-scan"
    sessions = _sessions(test_db_session, test_listing.id)
    assert len(sessions) == 1
    assert sessions[0].last_seen_at == T0 + timedelta(minutes=3)
    view = test_db_session.query(PageViewEvent).one()
    assert view.session_token == "tok-scan"


def test_tokenless_page_view_outside_window_starts_new_session(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-scan", SourceEnum.qr, T0)

    outcome = _track(
        test_db_session,
        test_settings,
        test_listing.id,
        "tok-fresh",
        SourceEnum.direct,
        T0 + timedelta(minutes=6),
        token_is_new=True,
    )

    assert outcome.joined_recent_qr_session is False
    assert outcome.session_token == "tok-fresh"
    assert len(_sessions(test_db_session, test_listing.id)) == 2


def test_page_view_with_existing_token_never_uses_fallback(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-scan", SourceEnum.qr, T0)

    outcome = _track(
        test_db_session,
        test_settings,
        test_listing.id,
        "tok-other",
        SourceEnum.direct,
        T0 + timedelta(minutes=1),
        token_is_new=False,
    )

    assert outcome.session_token == "tok-other"
    assert len(_sessions(test_db_session, test_listing.id)) == 2


def test_fallback_disabled_with_zero_window(test_db_session, test_settings, test_listing):
    settings = test_settings.model_copy(update={"QR_SESSION_FALLBACK_SECONDS": 0})
    _track(test_db_session, settings, test_listing.id, "tok-scan", SourceEnum.qr, T0)

    outcome = _track(
        test_db_session, settings, test_listing.id, "tok-fresh", SourceEnum.direct, T0 + timedelta(seconds=10), token_is_new=True
    )

    assert outcome.joined_recent_qr_session is False
    assert len(_sessions(test_db_session, test_listing.id)) == 2


def test_fallback_ignores_other_listings(test_db_session, test_settings, test_listing, test_listing_without_slug):
    _track(test_db_session, test_settings, test_listing_without_slug.id, "tok-scan", SourceEnum.qr, T0)

    outcome = _track(
        test_db_session, test_settings, test_listing.id, "tok-fresh", SourceEnum.direct, T0 + timedelta(minutes=1), token_is_new=True
    )

    assert outcome.joined_recent_qr_session is False
    assert outcome.session_token == "tok-fresh"


# =============================================================================
# SIDE EFFECTS
# =============================================================================


def test_page_views_are_logged_and_scans_are_not(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.microsite, T0 + timedelta(minutes=1))

    views = test_db_session.query(PageViewEvent).all()
    assert len(views) == 1
    assert views[0].source == "microsite"
    assert views[0].occurred_at == T0 + timedelta(minutes=1)


def test_tracking_updates_daily_counters(test_db_session, test_settings, test_listing):
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)
    _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.direct, T0 + timedelta(minutes=1))
    _track(test_db_session, test_settings, test_listing.id, "tok-b", SourceEnum.direct, T0 + timedelta(minutes=2))

    row = test_db_session.query(AnalyticsDaily).one()
    assert row.date == T0.date()
    assert row.total_scans == 1
    assert row.page_views == 2
    assert row.unique_visitors == 2


def test_analytics_failure_keeps_session_write(test_db_session, test_settings, test_listing, monkeypatch):
    def failing_record_scan(*args, **kwargs):
        raise UpsertError("Update of analytics failed", {"table": "analytics"})

    monkeypatch.setattr(daily_analytics, "record_scan", failing_record_scan)

    outcome = _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)

    assert outcome.analytics_recorded is False
    assert len(_sessions(test_db_session, test_listing.id)) == 1
    assert test_db_session.query(AnalyticsDaily).count() == 0


def test_session_write_failure_propagates(test_db_session, test_settings, test_listing, monkeypatch):
    def failing_upsert(*args, **kwargs):
        raise UpsertError("Insert into scan_sessions failed", {"table": "scan_sessions"})

    monkeypatch.setattr(scan_tracking, "upsert_row", failing_upsert)

    with pytest.raises(UpsertError):
        _track(test_db_session, test_settings, test_listing.id, "tok-a", SourceEnum.qr, T0)
    assert test_db_session.query(AnalyticsDaily).count() == 0


def test_increment_qr_code_scans(test_db_session, test_qr_code, test_listing):
    assert scan_tracking.increment_qr_code_scans(test_db_session, listing_id=test_listing.id) == 1
    assert scan_tracking.increment_qr_code_scans(test_db_session, qr_code_id=test_qr_code.id) == 1
    assert scan_tracking.increment_qr_code_scans(test_db_session) == 0

    test_db_session.expire_all()
    assert test_db_session.query(QRCode).one().scan_count == 2


def test_increment_qr_code_scans_skips_listing_with_several_codes(test_db_session, test_qr_code, test_listing):
    second = QRCode(listing_id=test_listing.id, scan_count=0)
    test_db_session.add(second)
    test_db_session.commit()

    assert scan_tracking.increment_qr_code_scans(test_db_session, listing_id=test_listing.id) == 0
    assert scan_tracking.increment_qr_code_scans(test_db_session, qr_code_id=second.id) == 1

    test_db_session.expire_all()
    counts = {code.id: code.scan_count for code in test_db_session.query(QRCode)}
    assert counts == {test_qr_code.id: 0, second.id: 1}
