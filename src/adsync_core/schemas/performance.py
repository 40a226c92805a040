"""Typed performance records shared by the push and batch paths."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


METRIC_FIELDS = ("impressions", "clicks", "cost", "sales", "orders")


class DataSource(str, Enum):
    """Origin of a performance record or merged view."""

    PUSH = "push"
    BATCH = "batch"
    MERGED = "merged"


class Freshness(str, Enum):
    """Freshness classification of a merged view."""

    FRESH = "fresh"
    STALE = "stale"
    MIXED = "mixed"


class Purpose(str, Enum):
    """Consumer purpose that selects a merge policy."""

    REALTIME_DISPLAY = "realtime_display"
    HISTORICAL_ANALYSIS = "historical_analysis"
    REPORT_EXPORT = "report_export"
    ALGORITHM_INPUT = "algorithm_input"


class Granularity(str, Enum):
    """Timeline bucket size."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class PerformanceRecord:
    """One (account, campaign, local date) performance cell.

    ``local_date`` is YYYY-MM-DD in the marketplace's local calendar.
    ``weight`` is only set by the report-export merge.
    """

    account_id: str
    campaign_id: str
    local_date: str
    impressions: int
    clicks: int
    cost: float
    sales: float
    orders: int
    data_source: DataSource
    is_finalized: bool
    last_update: datetime
    ad_group_id: Optional[str] = None
    superseded: bool = False
    weight: Optional[float] = None

    @property
    def key(self) -> tuple[str, str]:
        """Merge key: (local_date, campaign_id)."""
        return (self.local_date, self.campaign_id)


@dataclass(frozen=True)
class PushDelta:
    """Additive contribution of one push event to a provisional cell."""

    account_id: str
    campaign_id: str
    local_date: str
    event_time: datetime
    ad_group_id: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    sales: float = 0.0
    orders: int = 0


@dataclass(frozen=True)
class BudgetSnapshot:
    """Latest budget usage reported for a campaign on a local date."""

    account_id: str
    campaign_id: str
    local_date: str
    event_time: datetime
    budget_used: float
    budget_remaining: Optional[float] = None


@dataclass(frozen=True)
class BatchRow:
    """One canonical report row for a campaign on a local date."""

    campaign_id: str
    local_date: str
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    sales: float = 0.0
    orders: int = 0


@dataclass(frozen=True)
class AccountProfile:
    """Account credential data relevant to date bucketing."""

    account_id: str
    marketplace: str
    timezone_override: Optional[str] = None


@dataclass
class BatchOutcome:
    """Per-batch counters; a batch always completes."""

    processed: int = 0
    skipped: int = 0
    errors: int = 0
    duplicates: int = 0
    finalized_skips: int = 0

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class MergedView:
    """Unified view returned to UI and automation consumers."""

    records: list[PerformanceRecord]
    data_source: DataSource
    freshness: Freshness
    warnings: list[str] = field(default_factory=list)
    strategy: Optional[str] = None
    effective_end: Optional[str] = None


@dataclass(frozen=True)
class TimelinePoint:
    """Summed metrics and derived ratios for one period (or the totals row).

    ctr, cvr and acos are percentages; roas is a plain ratio.
    """

    period: str
    impressions: int
    clicks: int
    cost: float
    sales: float
    orders: int
    ctr: float
    cvr: float
    acos: float
    roas: float


@dataclass
class TimelineAggregate:
    series: list[TimelinePoint]
    totals: TimelinePoint
    data_source: DataSource
    granularity: Granularity
    warnings: list[str] = field(default_factory=list)


@dataclass
class RealtimeDashboard:
    """Today's numbers split by how far they can be trusted.

    Traffic and spend are stable within minutes; conversion fields are
    still moving until the attribution window closes.
    """

    account_id: str
    local_date: str
    spend: float
    clicks: int
    impressions: int
    last_update: Optional[datetime]
    sales: float
    orders: int
    roas: float
    acos: float
    warning: str
    data_source: DataSource
