"""Integration test: push ingestion -> reconciliation -> merged views.

Runs the full pipeline against a file-backed SQLite database with a fixed
clock. No network or Redis access.
"""
import random
from datetime import datetime, timezone

import pytest

from src.adsync_core.batch.reconciler import BatchReconciler, ReconcileStatus
from src.adsync_core.fusion.backfill import BackfillDetector
from src.adsync_core.fusion.consistency import ConsistencyChecker, ConsistencyStatus
from src.adsync_core.fusion.engine import DataFusionEngine
from src.adsync_core.ingest.consumer import StreamConsumer
from src.adsync_core.ingest.stream import StreamIngestor
from src.adsync_core.schemas.performance import AccountProfile, BatchRow, DataSource, Purpose
from src.adsync_core.storage.schema import connect, init_database
from src.adsync_core.storage.store import PerformanceStore


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    conn = connect(tmp_path / "adsync.db")
    init_database(conn)
    store = PerformanceStore(conn)
    store.upsert_account_profile(AccountProfile("A1", "US"))
    yield store
    conn.close()


def traffic(message_id, event_time, impressions, clicks, cost):
    return {
        "messageId": message_id,
        "subscriptionId": "sub-traffic",
        "dataSetId": "sp-traffic",
        "timestamp": "2024-01-16T08:30:00Z",
        "payload": {
            "campaignId": "C1",
            "adGroupId": "G1",
            "eventTime": event_time,
            "impressions": impressions,
            "clicks": clicks,
            "cost": cost,
        },
    }


def conversion(message_id, event_time, sales, orders):
    return {
        "messageId": message_id,
        "subscriptionId": "sub-conversion",
        "dataSetId": "sp-conversion",
        "timestamp": "2024-01-16T08:30:00Z",
        "payload": {
            "campaignId": "C1",
            "eventTime": event_time,
            "attributedSales": sales,
            "attributedConversions": orders,
        },
    }


# All four events fall on 2024-01-15 in America/Los_Angeles
MESSAGES = [
    traffic("t1", "2024-01-15T17:00:00Z", 100, 4, 2.0),
    traffic("t2", "2024-01-15T23:30:00Z", 250, 6, 3.5),
    traffic("t3", "2024-01-16T07:59:59Z", 50, 1, 0.5),
    conversion("c1", "2024-01-16T02:00:00Z", 45.0, 2),
]


@pytest.mark.asyncio
async def test_out_of_order_events_aggregate_into_one_record(store, clock, tmp_path):
    ingestor = StreamIngestor(store, clock=clock)
    consumer = StreamConsumer(ingestor, tmp_path / "raw", clock=clock)
    shuffled = MESSAGES[:]
    random.Random(7).shuffle(shuffled)

    outcome = await consumer.handle(shuffled, "A1")

    assert outcome.as_dict() == {"processed": 4, "skipped": 0, "errors": 0}
    records = store.fetch_push_records("A1", "2024-01-01", "2024-01-31")
    assert len(records) == 1
    record = records[0]
    assert record.local_date == "2024-01-15"
    assert (record.impressions, record.clicks, record.orders) == (400, 11, 2)
    assert record.cost == pytest.approx(6.0)
    assert record.sales == pytest.approx(45.0)


def test_redelivery_is_idempotent(store, clock):
    ingestor = StreamIngestor(store, clock=clock)

    ingestor.process_batch(MESSAGES, "A1")
    before = store.get_push_record("A1", "C1", "2024-01-15")
    again = ingestor.process_batch(list(reversed(MESSAGES)), "A1")
    after = store.get_push_record("A1", "C1", "2024-01-15")

    assert again.duplicates == 4
    assert (after.impressions, after.clicks, after.cost, after.sales, after.orders) == (
        before.impressions,
        before.clicks,
        before.cost,
        before.sales,
        before.orders,
    )


def test_finalized_cells_ignore_late_push(store, clock):
    ingestor = StreamIngestor(store, clock=clock)
    reconciler = BatchReconciler(store, clock=clock)
    ingestor.process_batch(MESSAGES[:2], "A1")

    row = BatchRow("C1", "2024-01-15", impressions=420, clicks=11, cost=6.1, sales=50.0, orders=2)
    deferred = reconciler.reconcile_day("A1", "2024-01-15", [row])
    assert deferred.status == ReconcileStatus.DEFERRED

    clock.now = datetime(2024, 1, 18, 9, 0, tzinfo=timezone.utc)
    finalized = reconciler.reconcile_day("A1", "2024-01-15", [row])
    assert finalized.status == ReconcileStatus.FINALIZED

    canonical_before = store.get_canonical_record("A1", "C1", "2024-01-15")
    push_before = store.get_push_record("A1", "C1", "2024-01-15")
    outcome = ingestor.process_batch(MESSAGES[2:], "A1")

    assert outcome.finalized_skips == 2
    assert store.get_canonical_record("A1", "C1", "2024-01-15") == canonical_before
    assert store.get_push_record("A1", "C1", "2024-01-15").impressions == push_before.impressions

    engine = DataFusionEngine(store, clock=clock)
    view = engine.get_merged_view("A1", "2024-01-15", "2024-01-17", Purpose.ALGORITHM_INPUT)
    assert [record.data_source for record in view.records] == [DataSource.BATCH]
    assert view.records[0].impressions == 420

    result = ConsistencyChecker(store, clock=clock).run_check("A1", end_date="2024-01-15", window_days=1)
    assert result.compared_cells == 1
    assert result.status == ConsistencyStatus.MINOR_DEVIATION

    assert BackfillDetector(store).check_backfill("A1", "2024-01-15").needs_backfill is False
