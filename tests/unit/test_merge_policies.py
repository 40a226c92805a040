"""Unit tests for the merge policy functions and purpose table."""
from datetime import datetime, timezone

from src.adsync_core.config import FusionConfig
from src.adsync_core.fusion.policies import (
    DEFAULT_POLICIES,
    MergeContext,
    build_purpose_table,
    merge_batch_first,
    merge_latest_wins,
    merge_push_first,
    merge_weighted,
)
from src.adsync_core.schemas.performance import DataSource, PerformanceRecord, Purpose


TODAY = "2024-01-20"
CONTEXT = MergeContext(today=TODAY)


def record(source, local_date, campaign="C1", impressions=100, minute=0):
    return PerformanceRecord(
        account_id="A1",
        campaign_id=campaign,
        local_date=local_date,
        impressions=impressions,
        clicks=1,
        cost=1.0,
        sales=5.0,
        orders=1,
        data_source=source,
        is_finalized=source == DataSource.BATCH,
        last_update=datetime(2024, 1, 20, 10, minute, tzinfo=timezone.utc),
    )


def batch(local_date, **kwargs):
    return record(DataSource.BATCH, local_date, **kwargs)


def push(local_date, **kwargs):
    return record(DataSource.PUSH, local_date, **kwargs)


def test_push_first_replaces_only_current_day():
    merged = merge_push_first(
        [batch("2024-01-19"), batch(TODAY, impressions=1)],
        [push("2024-01-19", impressions=999), push(TODAY, impressions=50)],
        CONTEXT,
    )

    by_date = {r.local_date: r for r in merged}
    assert by_date["2024-01-19"].data_source == DataSource.BATCH
    assert by_date[TODAY].data_source == DataSource.PUSH
    assert by_date[TODAY].impressions == 50


def test_push_first_keeps_today_canonical_without_push():
    merged = merge_push_first([batch(TODAY, campaign="C2")], [push(TODAY)], CONTEXT)

    assert {(r.campaign_id, r.data_source) for r in merged} == {
        ("C1", DataSource.PUSH),
        ("C2", DataSource.BATCH),
    }


def test_batch_first_push_fills_gaps():
    merged = merge_batch_first(
        [batch("2024-01-18")],
        [push("2024-01-18", impressions=999), push("2024-01-19")],
        CONTEXT,
    )

    assert [(r.local_date, r.data_source) for r in merged] == [
        ("2024-01-18", DataSource.BATCH),
        ("2024-01-19", DataSource.PUSH),
    ]
    assert merged[0].impressions == 100


def test_weighted_assigns_weights():
    merged = merge_weighted(
        [batch("2024-01-18")],
        [push("2024-01-18"), push("2024-01-19")],
        CONTEXT,
    )

    assert [(r.data_source, r.weight) for r in merged] == [
        (DataSource.BATCH, 1.0),
        (DataSource.PUSH, 0.8),
    ]


def test_latest_wins_by_update_time():
    merged = merge_latest_wins(
        [batch("2024-01-18", minute=5), batch("2024-01-19", minute=30)],
        [push("2024-01-18", minute=10), push("2024-01-19", minute=30)],
        CONTEXT,
    )

    by_date = {r.local_date: r.data_source for r in merged}
    assert by_date["2024-01-18"] == DataSource.PUSH
    # Ties go to batch
    assert by_date["2024-01-19"] == DataSource.BATCH


def test_merge_key_is_date_and_campaign():
    merged = merge_batch_first(
        [batch("2024-01-18", campaign="C1")],
        [push("2024-01-18", campaign="C2")],
        CONTEXT,
    )

    assert len(merged) == 2


def test_purpose_table_maps_every_purpose():
    table = build_purpose_table(FusionConfig(algorithm_exclude_days=2))

    assert set(table) == set(Purpose)
    assert all(rule.policy in DEFAULT_POLICIES for rule in table.values())
    assert table[Purpose.REALTIME_DISPLAY].policy == "push_first"
    assert table[Purpose.HISTORICAL_ANALYSIS].exclude_days == 1
    assert table[Purpose.REPORT_EXPORT].policy == "weighted"
    assert table[Purpose.ALGORITHM_INPUT].exclude_days == 2
    assert table[Purpose.ALGORITHM_INPUT].warning
