"""Unit tests for ReconciliationSweep (mocked Redis lock)."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from src.adsync_core.batch.reconciler import BatchReconciler, ReconcileStatus
from src.adsync_core.batch.sweep import ReconciliationSweep, iter_dates
from src.adsync_core.exceptions import (
    InvalidDateRangeError,
    ReconcileLockedError,
    ReportDownloadError,
)
from src.adsync_core.schemas.performance import BatchRow
from src.adsync_core.storage.schema import connect, init_database
from src.adsync_core.storage.store import PerformanceStore


NOW = datetime(2024, 1, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    conn = connect(":memory:")
    init_database(conn)
    yield PerformanceStore(conn)
    conn.close()


@pytest.fixture
def sweep(store):
    return ReconciliationSweep(BatchReconciler(store, clock=lambda: NOW), redis=AsyncMock())


@pytest.fixture
def mock_lock():
    lock = AsyncMock()
    lock.acquire.return_value = True
    return lock


async def rows_for_date(local_date):
    return [BatchRow("C1", local_date, impressions=100, sales=10.0, orders=1)]


def test_iter_dates_inclusive():
    assert iter_dates("2024-01-30", "2024-02-01") == ["2024-01-30", "2024-01-31", "2024-02-01"]

    with pytest.raises(InvalidDateRangeError):
        iter_dates("2024-01-02", "2024-01-01")


@pytest.mark.asyncio
async def test_sweep_finalizes_elapsed_days_and_defers_rest(sweep, store, mock_lock):
    """Test days whose window has closed finalize; the rest are deferred."""
    with patch("src.adsync_core.batch.sweep.AsyncRedisLock", return_value=mock_lock):
        summary = await sweep.run("A1", "2024-01-14", "2024-01-17", rows_for_date, tz_name="UTC")

    statuses = {result.local_date: result.status for result in summary.results}
    assert statuses == {
        "2024-01-14": ReconcileStatus.FINALIZED,
        "2024-01-15": ReconcileStatus.FINALIZED,
        "2024-01-16": ReconcileStatus.DEFERRED,
        "2024-01-17": ReconcileStatus.DEFERRED,
    }
    assert store.is_finalized("A1", "C1", "2024-01-15")
    assert store.get_canonical_record("A1", "C1", "2024-01-16") is None
    mock_lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_sweep_rerun_is_idempotent(sweep, store, mock_lock):
    with patch("src.adsync_core.batch.sweep.AsyncRedisLock", return_value=mock_lock):
        await sweep.run("A1", "2024-01-14", "2024-01-15", rows_for_date, tz_name="UTC")
        summary = await sweep.run("A1", "2024-01-14", "2024-01-15", rows_for_date, tz_name="UTC")

    assert all(result.written == 0 for result in summary.results)
    assert all(result.already_finalized == 1 for result in summary.results)
    assert store.count_canonical_records("A1", "2024-01-14") == 1


@pytest.mark.asyncio
async def test_sweep_lock_held_raises(sweep, mock_lock):
    mock_lock.acquire.return_value = False

    with patch("src.adsync_core.batch.sweep.AsyncRedisLock", return_value=mock_lock):
        with pytest.raises(ReconcileLockedError) as exc_info:
            await sweep.run("A1", "2024-01-14", "2024-01-15", rows_for_date, tz_name="UTC")

    assert exc_info.value.lock_key == "adsync:reconcile_lock:A1"
    mock_lock.release.assert_not_called()


@pytest.mark.asyncio
async def test_download_failure_isolated_per_day(sweep, store, mock_lock):
    async def flaky(local_date):
        if local_date == "2024-01-14":
            raise ReportDownloadError("HTTP 500 after 7 attempts")
        return await rows_for_date(local_date)

    with patch("src.adsync_core.batch.sweep.AsyncRedisLock", return_value=mock_lock):
        summary = await sweep.run("A1", "2024-01-14", "2024-01-15", flaky, tz_name="UTC")

    assert summary.count(ReconcileStatus.FAILED) == 1
    assert summary.count(ReconcileStatus.FINALIZED) == 1
    assert store.is_finalized("A1", "C1", "2024-01-15")
    mock_lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_lock_release_failure_is_swallowed(sweep, mock_lock):
    mock_lock.release.side_effect = Exception("connection reset")

    with patch("src.adsync_core.batch.sweep.AsyncRedisLock", return_value=mock_lock):
        summary = await sweep.run("A1", "2024-01-14", "2024-01-14", rows_for_date, tz_name="UTC")

    assert summary.as_dict()["finalized"] == 1


@pytest.mark.asyncio
async def test_deferred_days_skip_download(sweep, mock_lock):
    provider = AsyncMock(return_value=[])

    with patch("src.adsync_core.batch.sweep.AsyncRedisLock", return_value=mock_lock):
        summary = await sweep.run("A1", "2024-01-17", "2024-01-17", provider, tz_name="UTC")

    assert summary.results[0].status == ReconcileStatus.DEFERRED
    provider.assert_not_awaited()
