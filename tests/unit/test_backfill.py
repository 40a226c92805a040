"""Unit tests for BackfillDetector."""
import sqlite3
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from src.adsync_core.fusion.backfill import BackfillDetector
from src.adsync_core.schemas.performance import BatchRow, PushDelta
from src.adsync_core.storage.schema import connect, init_database
from src.adsync_core.storage.store import PerformanceStore


NOW = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    conn = connect(":memory:")
    init_database(conn)
    yield PerformanceStore(conn)
    conn.close()


def add_batch_rows(store, local_date, count):
    rows = [BatchRow(f"C{i}", local_date, impressions=10) for i in range(count)]
    store.write_canonical("A1", rows, finalize=False, now=NOW)


def add_push_row(store, local_date):
    delta = PushDelta(
        account_id="A1", campaign_id="C0", local_date=local_date, event_time=NOW, impressions=1
    )
    store.apply_push_delta(f"push-{local_date}", "traffic", delta, NOW)


def test_push_missing_batch_present_needs_backfill(store):
    """Test pushCount=0, batchCount=5 -> needsBackfill with 5 candidates."""
    add_batch_rows(store, "2024-01-18", 5)

    check = BackfillDetector(store).check_backfill("A1", "2024-01-18")

    assert check.needs_backfill is True
    assert check.candidate_count == 5
    assert "2024-01-18" in check.message


def test_any_push_data_means_no_backfill(store):
    """Test pushCount=1, batchCount=5 -> no backfill."""
    add_push_row(store, "2024-01-18")
    add_batch_rows(store, "2024-01-18", 5)

    check = BackfillDetector(store).check_backfill("A1", "2024-01-18")

    assert check.needs_backfill is False
    assert check.candidate_count == 0


def test_no_data_in_either_source(store):
    check = BackfillDetector(store).check_backfill("A1", "2024-01-18")

    assert check.needs_backfill is False
    assert "No data" in check.message


def test_scan_returns_only_candidates(store):
    add_batch_rows(store, "2024-01-17", 2)
    add_push_row(store, "2024-01-18")
    add_batch_rows(store, "2024-01-18", 2)

    candidates = BackfillDetector(store).scan("A1", ["2024-01-16", "2024-01-17", "2024-01-18"])

    assert [local_date for local_date, _ in candidates] == ["2024-01-17"]


def test_storage_failure_reports_no_backfill(store):
    add_batch_rows(store, "2024-01-18", 5)
    broken = MagicMock(wraps=store)
    broken.count_push_records.side_effect = sqlite3.OperationalError("database is locked")

    check = BackfillDetector(broken).check_backfill("A1", "2024-01-18")

    assert check.needs_backfill is False
    assert check.candidate_count == 0
    assert "database is locked" in check.message
