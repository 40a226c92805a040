"""Merge policies for combining push and batch records.

Each merge function takes the batch (canonical) and push records for the
window and returns one record per (local_date, campaign_id). Policies are
looked up by name and purposes map to policies through a read-only table, so
adding a policy or purpose never touches the existing entries.
"""
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Sequence

from ..config import FusionConfig
from ..schemas.performance import DataSource, PerformanceRecord, Purpose


@dataclass(frozen=True)
class MergeContext:
    """Per-call inputs shared by all merge functions."""

    today: str
    batch_weight: float = 1.0
    push_weight: float = 0.8


MergeFunction = Callable[
    [Sequence[PerformanceRecord], Sequence[PerformanceRecord], MergeContext],
    list[PerformanceRecord],
]


def _sorted(records: dict[tuple[str, str], PerformanceRecord]) -> list[PerformanceRecord]:
    return [records[key] for key in sorted(records)]


def merge_push_first(
    batch: Sequence[PerformanceRecord],
    push: Sequence[PerformanceRecord],
    context: MergeContext,
) -> list[PerformanceRecord]:
    """Canonical for past days, push for the current day.

    Push only replaces current-day cells; a current-day canonical cell with no
    push counterpart is kept.
    """
    merged = {record.key: record for record in batch}
    for record in push:
        if record.local_date == context.today:
            merged[record.key] = record
    return _sorted(merged)


def merge_batch_first(
    batch: Sequence[PerformanceRecord],
    push: Sequence[PerformanceRecord],
    context: MergeContext,
) -> list[PerformanceRecord]:
    """Batch wins; push only fills keys batch does not have."""
    merged = {record.key: record for record in batch}
    for record in push:
        merged.setdefault(record.key, record)
    return _sorted(merged)


def merge_weighted(
    batch: Sequence[PerformanceRecord],
    push: Sequence[PerformanceRecord],
    context: MergeContext,
) -> list[PerformanceRecord]:
    """Batch at full weight when present, push at reduced weight as fallback."""
    merged = {record.key: replace(record, weight=context.batch_weight) for record in batch}
    for record in push:
        if record.key not in merged:
            merged[record.key] = replace(record, weight=context.push_weight)
    return _sorted(merged)


def merge_latest_wins(
    batch: Sequence[PerformanceRecord],
    push: Sequence[PerformanceRecord],
    context: MergeContext,
) -> list[PerformanceRecord]:
    """Most recently updated record per key; batch wins ties."""
    merged: dict[tuple[str, str], PerformanceRecord] = {}
    for record in list(batch) + list(push):
        current = merged.get(record.key)
        if current is None or record.last_update > current.last_update:
            merged[record.key] = record
    return _sorted(merged)


@dataclass(frozen=True)
class MergePolicy:
    """A named merge function plus the source its freshness depends on.

    ``primary_source`` is None for policies that rely on both sources equally.
    """

    name: str
    merge: MergeFunction
    primary_source: Optional[DataSource]


PUSH_FIRST = MergePolicy("push_first", merge_push_first, DataSource.PUSH)
BATCH_FIRST = MergePolicy("batch_first", merge_batch_first, DataSource.BATCH)
WEIGHTED = MergePolicy("weighted", merge_weighted, DataSource.BATCH)
LATEST_WINS = MergePolicy("latest_wins", merge_latest_wins, None)

DEFAULT_POLICIES: Mapping[str, MergePolicy] = MappingProxyType(
    {policy.name: policy for policy in (PUSH_FIRST, BATCH_FIRST, WEIGHTED, LATEST_WINS)}
)


@dataclass(frozen=True)
class PurposeRule:
    """Policy and trailing-day exclusion for one purpose.

    ``exclude_days`` of N drops the current day and the N-1 days before it.
    """

    policy: str
    exclude_days: int = 0
    warning: Optional[str] = None


def build_purpose_table(config: Optional[FusionConfig] = None) -> Mapping[Purpose, PurposeRule]:
    """Fixed purpose -> rule table for a fusion configuration."""
    config = config or FusionConfig()
    return MappingProxyType(
        {
            Purpose.REALTIME_DISPLAY: PurposeRule(PUSH_FIRST.name),
            Purpose.HISTORICAL_ANALYSIS: PurposeRule(
                BATCH_FIRST.name, exclude_days=config.historical_exclude_days
            ),
            Purpose.REPORT_EXPORT: PurposeRule(WEIGHTED.name),
            Purpose.ALGORITHM_INPUT: PurposeRule(
                BATCH_FIRST.name,
                exclude_days=config.algorithm_exclude_days,
                warning=(
                    f"Excluded the most recent {config.algorithm_exclude_days} day(s) "
                    "still subject to attribution revision"
                ),
            ),
        }
    )
