"""Command-line repair script tests."""

import importlib.util
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import pytest

from homeqr import database
from homeqr.models import AnalyticsDaily, ScanSession

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "repair_analytics.py"


@pytest.fixture
def repair_script(test_db_session, test_settings, monkeypatch):
    spec = importlib.util.spec_from_file_location("repair_analytics", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    @contextmanager
    def session_override():
        yield test_db_session

    monkeypatch.setattr(database, "get_sync_session", session_override)
    monkeypatch.setattr("homeqr.deps.get_settings", lambda: test_settings)
    return module


def test_script_repairs_and_exits_zero(repair_script, test_db_session, test_listing, capsys):
    seen_at = datetime(2026, 3, 2, 9, 0)
    test_db_session.add(
        ScanSession(
            id=uuid.uuid4(),
            listing_id=test_listing.id,
            session_token="tok-a",
            source="qr",
            scan_count=2,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
        )
    )
    test_db_session.commit()

    exit_code = repair_script.run()

    assert exit_code == 0
    assert "Records created:    1" in capsys.readouterr().out
    assert test_db_session.query(AnalyticsDaily).one().total_scans == 2


def test_script_exits_one_on_failed_groups(repair_script, monkeypatch):
    from homeqr.services import reconciliation
    from homeqr.services.reconciliation import ReconciliationSummary

    summary = ReconciliationSummary(
        listings_processed=1,
        records_failed=1,
        failures=[{"listing_id": "abc", "date": "2026-03-02", "error": "boom"}],
    )
    monkeypatch.setattr(reconciliation, "reconcile_analytics", lambda db, settings=None, listing_id=None: summary)

    assert repair_script.run() == 1
