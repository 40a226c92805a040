"""Consistency Checker: flag cells where push and batch disagree.

Deviations are fractions of the batch value and are compared with strict
``>``: a cell exactly at the threshold is not flagged. Order counts are flagged
on any difference.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from ..config import ConsistencyConfig
from ..ingest.timezones import TimezoneResolver, historical_date_range
from ..schemas.performance import METRIC_FIELDS, PerformanceRecord
from ..storage.store import PerformanceStore


logger = logging.getLogger(__name__)


# Canonical value wins for every metric, applied in this order
REPAIR_PRECEDENCE = METRIC_FIELDS

TRAFFIC_METRICS = ("impressions", "clicks")
SPEND_METRICS = ("cost", "sales")

# Guards the threshold comparison against float noise (1.05 - 1.00 != 0.05)
DEVIATION_PRECISION = 9


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConsistencyStatus(str, Enum):
    CONSISTENT = "consistent"
    MINOR_DEVIATION = "minor_deviation"
    MAJOR_DEVIATION = "major_deviation"


def deviation(push_value: float, batch_value: float) -> float:
    """Relative deviation of push from batch, as a fraction of batch.

    A zero batch value gives 0.0 when push is also zero, else 1.0.
    """
    if batch_value == 0:
        return 0.0 if push_value == 0 else 1.0
    return round(abs(push_value - batch_value) / abs(batch_value), DEVIATION_PRECISION)


@dataclass
class FlaggedCell:
    local_date: str
    campaign_id: str
    deviations: dict[str, float]
    reasons: list[str]


@dataclass
class RepairOutcome:
    cells_repaired: int
    push_rows_superseded: int
    precedence: list[str] = field(default_factory=lambda: list(REPAIR_PRECEDENCE))


@dataclass
class ConsistencyCheckResult:
    """Window bounds, per-metric deviation percentages and flagged cells."""

    account_id: str
    window_start: str
    window_end: str
    status: ConsistencyStatus
    compared_cells: int
    push_totals: dict[str, float]
    batch_totals: dict[str, float]
    metric_deviation_pct: dict[str, float]
    flagged: list[FlaggedCell] = field(default_factory=list)
    repair: Optional[RepairOutcome] = None

    def as_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def _totals(records: list[PerformanceRecord]) -> dict[str, float]:
    return {
        metric: round(sum(getattr(record, metric) for record in records), 6)
        for metric in METRIC_FIELDS
    }


class ConsistencyChecker:
    """Compare push and batch over a trailing window, optionally repairing."""

    def __init__(
        self,
        store: PerformanceStore,
        resolver: Optional[TimezoneResolver] = None,
        config: Optional[ConsistencyConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.resolver = resolver or TimezoneResolver()
        self.config = config or ConsistencyConfig()
        self.clock = clock

    def compare_cell(
        self, push: PerformanceRecord, batch: PerformanceRecord
    ) -> Optional[FlaggedCell]:
        """Return a FlaggedCell if push diverges from batch, else None."""
        deviations = {
            metric: deviation(getattr(push, metric), getattr(batch, metric))
            for metric in TRAFFIC_METRICS + SPEND_METRICS
        }

        reasons = []
        for metric in TRAFFIC_METRICS:
            if deviations[metric] > self.config.traffic_deviation:
                reasons.append(f"{metric} deviates {deviations[metric]:.2%}")
        for metric in SPEND_METRICS:
            if deviations[metric] > self.config.spend_deviation:
                reasons.append(f"{metric} deviates {deviations[metric]:.2%}")
        if push.orders != batch.orders:
            reasons.append(f"orders differ ({push.orders} vs {batch.orders})")

        if not reasons:
            return None
        return FlaggedCell(
            local_date=batch.local_date,
            campaign_id=batch.campaign_id,
            deviations=deviations,
            reasons=reasons,
        )

    def run_check(
        self,
        account_id: str,
        end_date: Optional[str] = None,
        window_days: Optional[int] = None,
        repair: bool = False,
        tz_name: Optional[str] = None,
    ) -> ConsistencyCheckResult:
        """Check the trailing window ending at ``end_date`` (default yesterday).

        Only cells present in both sources are compared; push cells already
        superseded by an earlier repair are skipped.
        """
        if window_days is None:
            window_days = self.config.window_days
        now = self.clock()

        if end_date is None:
            if tz_name is None:
                profile = self.store.get_account_profile(account_id)
                tz_name = (
                    self.resolver.resolve_timezone(profile.marketplace, profile.timezone_override)
                    if profile
                    else self.resolver.resolve_timezone(None)
                )
            start, end = historical_date_range(tz_name, window_days, now)
        else:
            end = date.fromisoformat(end_date)
            start = end - timedelta(days=max(window_days, 1) - 1)

        window_start, window_end = start.isoformat(), end.isoformat()

        with self.store.snapshot():
            batch = self.store.fetch_canonical_records(account_id, window_start, window_end)
            push = [
                record
                for record in self.store.fetch_push_records(account_id, window_start, window_end)
                if not record.superseded
            ]

        batch_by_key = {record.key: record for record in batch}
        compared = [(record, batch_by_key[record.key]) for record in push if record.key in batch_by_key]

        flagged = []
        for push_record, batch_record in compared:
            cell = self.compare_cell(push_record, batch_record)
            if cell is not None:
                flagged.append(cell)

        push_totals = _totals([pair[0] for pair in compared])
        batch_totals = _totals([pair[1] for pair in compared])

        if not flagged:
            status = ConsistencyStatus.CONSISTENT
        elif len(flagged) >= self.config.alert_threshold:
            status = ConsistencyStatus.MAJOR_DEVIATION
        else:
            status = ConsistencyStatus.MINOR_DEVIATION

        result = ConsistencyCheckResult(
            account_id=account_id,
            window_start=window_start,
            window_end=window_end,
            status=status,
            compared_cells=len(compared),
            push_totals=push_totals,
            batch_totals=batch_totals,
            metric_deviation_pct={
                metric: round(deviation(push_totals[metric], batch_totals[metric]) * 100, 4)
                for metric in METRIC_FIELDS
            },
            flagged=flagged,
        )

        if repair and flagged:
            result.repair = self.repair(account_id, flagged, now)

        if status == ConsistencyStatus.CONSISTENT:
            logger.info(
                "Consistency check %s %s..%s: %s cells consistent",
                account_id,
                window_start,
                window_end,
                len(compared),
            )
        else:
            logger.warning(
                "Consistency check %s %s..%s: %s of %s cells flagged (%s)",
                account_id,
                window_start,
                window_end,
                len(flagged),
                len(compared),
                status.value,
            )

        try:
            self.store.record_consistency_check(
                account_id,
                window_start,
                window_end,
                status.value,
                len(flagged),
                result.as_dict(),
                now,
            )
        except Exception as exc:
            logger.error("Failed to record consistency check for %s: %s", account_id, exc)

        return result

    def repair(
        self, account_id: str, flagged: list[FlaggedCell], now: Optional[datetime] = None
    ) -> RepairOutcome:
        """Mark push rows of flagged cells as superseded by the canonical record."""
        if now is None:
            now = self.clock()

        cells = 0
        rows = 0
        for cell in flagged:
            superseded = self.store.mark_push_superseded(
                account_id, cell.campaign_id, cell.local_date, now
            )
            if superseded:
                cells += 1
                rows += superseded

        logger.info(
            "Repaired %s cells for account %s (%s push rows superseded)", cells, account_id, rows
        )
        return RepairOutcome(cells_repaired=cells, push_rows_superseded=rows)
