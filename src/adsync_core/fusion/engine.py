"""Data Fusion Engine: one view over the push and batch sources per purpose."""
import logging
import sqlite3
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Mapping, Optional, Union

from ..config import FreshnessConfig, FusionConfig
from ..exceptions import InvalidDateRangeError
from ..ingest.timezones import TimezoneResolver, current_local_date
from ..schemas.performance import (
    DataSource,
    Freshness,
    Granularity,
    MergedView,
    PerformanceRecord,
    Purpose,
    RealtimeDashboard,
    TimelineAggregate,
    TimelinePoint,
)
from ..storage.store import PerformanceStore
from .policies import DEFAULT_POLICIES, MergeContext, MergePolicy, PurposeRule, build_purpose_table


logger = logging.getLogger(__name__)


ATTRIBUTION_WARNING = "Conversion metrics (sales, orders) are subject to a 12-48 hour attribution delay"

DateLike = Union[str, date]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_range(start: DateLike, end: DateLike) -> tuple[date, date]:
    try:
        start_date = start if isinstance(start, date) else date.fromisoformat(start)
        end_date = end if isinstance(end, date) else date.fromisoformat(end)
    except (TypeError, ValueError) as exc:
        raise InvalidDateRangeError(start, end) from exc
    if end_date < start_date:
        raise InvalidDateRangeError(start, end)
    return start_date, end_date


def resolve_superseded(
    push: Iterable[PerformanceRecord], batch: Iterable[PerformanceRecord]
) -> list[PerformanceRecord]:
    """Substitute the canonical record for push cells marked superseded."""
    canonical = {record.key: record for record in batch}
    resolved = []
    for record in push:
        if record.superseded and record.key in canonical:
            resolved.append(canonical[record.key])
        else:
            resolved.append(record)
    return resolved


def _is_fresh(records: Iterable[PerformanceRecord], max_age_minutes: int, now: datetime) -> bool:
    latest = max(
        (record.last_update for record in records if record.last_update is not None),
        default=None,
    )
    if latest is None:
        return False
    return now - latest < timedelta(minutes=max_age_minutes)


def view_source(records: Iterable[PerformanceRecord], fallback: DataSource) -> DataSource:
    sources = {record.data_source for record in records}
    if not sources:
        return fallback
    if len(sources) == 1:
        return sources.pop()
    return DataSource.MERGED


def derive_point(period: str, records: Iterable[PerformanceRecord]) -> TimelinePoint:
    impressions = clicks = orders = 0
    cost = sales = 0.0
    for record in records:
        impressions += record.impressions
        clicks += record.clicks
        cost += record.cost
        sales += record.sales
        orders += record.orders

    return TimelinePoint(
        period=period,
        impressions=impressions,
        clicks=clicks,
        cost=round(cost, 6),
        sales=round(sales, 6),
        orders=orders,
        ctr=(clicks / impressions * 100) if impressions > 0 else 0.0,
        cvr=(orders / clicks * 100) if clicks > 0 else 0.0,
        acos=(cost / sales * 100) if sales > 0 else 0.0,
        roas=(sales / cost) if cost > 0 else 0.0,
    )


def period_of(local_date: str, granularity: Granularity) -> str:
    """Bucket label: the date, its ISO week (YYYY-Www) or its month (YYYY-MM)."""
    if granularity == Granularity.WEEKLY:
        year, week, _ = date.fromisoformat(local_date).isocalendar()
        return f"{year}-W{week:02d}"
    if granularity == Granularity.MONTHLY:
        return local_date[:7]
    return local_date


class DataFusionEngine:
    """Serve merged views chosen by consumer purpose."""

    def __init__(
        self,
        store: PerformanceStore,
        resolver: Optional[TimezoneResolver] = None,
        fusion_config: Optional[FusionConfig] = None,
        freshness_config: Optional[FreshnessConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
        policies: Optional[Mapping[str, MergePolicy]] = None,
        purpose_table: Optional[Mapping[Purpose, PurposeRule]] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver or TimezoneResolver()
        self.fusion_config = fusion_config or FusionConfig()
        self.freshness_config = freshness_config or FreshnessConfig()
        self.clock = clock
        self.policies = policies or DEFAULT_POLICIES
        self.purpose_table = purpose_table or build_purpose_table(self.fusion_config)

        unknown = {rule.policy for rule in self.purpose_table.values()} - set(self.policies)
        if unknown:
            raise ValueError(f"Purpose table references unknown policies: {sorted(unknown)}")

    def timezone_for_account(self, account_id: str) -> str:
        profile = self.store.get_account_profile(account_id)
        if profile is None:
            return self.resolver.resolve_timezone(None)
        return self.resolver.resolve_timezone(profile.marketplace, profile.timezone_override)

    def get_merged_view(
        self,
        account_id: str,
        start: DateLike,
        end: DateLike,
        purpose: Purpose,
        include_today: bool = True,
        campaign_ids: Optional[list[str]] = None,
        tz_name: Optional[str] = None,
    ) -> MergedView:
        """Merged records for [start, end] under the purpose's policy.

        The purpose's exclusion window is applied to the end date and again to
        every returned record, whatever either source holds for those days.

        Raises:
            InvalidDateRangeError: If end precedes start or a date is malformed
        """
        start_date, end_date = _parse_range(start, end)
        purpose = Purpose(purpose)
        rule = self.purpose_table[purpose]
        policy = self.policies[rule.policy]
        fallback_source = policy.primary_source or DataSource.BATCH

        warnings: list[str] = []
        if rule.warning:
            warnings.append(rule.warning)

        try:
            if tz_name is None:
                tz_name = self.timezone_for_account(account_id)
            now = self.clock()
            today = current_local_date(tz_name, now)

            exclude_days = rule.exclude_days
            if not include_today:
                exclude_days = max(exclude_days, 1)

            effective_end = end_date
            if exclude_days > 0:
                effective_end = min(end_date, today - timedelta(days=exclude_days))

            if effective_end < start_date:
                warnings.append(
                    f"No dates left in range after excluding the most recent {exclude_days} day(s)"
                )
                return MergedView(
                    records=[],
                    data_source=fallback_source,
                    freshness=Freshness.STALE,
                    warnings=warnings,
                    strategy=policy.name,
                    effective_end=effective_end.isoformat(),
                )

            window = (start_date.isoformat(), effective_end.isoformat())
            with self.store.snapshot():
                batch = self.store.fetch_canonical_records(account_id, *window, campaign_ids)
                push = self.store.fetch_push_records(account_id, *window, campaign_ids)

        except sqlite3.Error as exc:
            logger.error("Merged view read failed for account %s: %s", account_id, exc, exc_info=True)
            warnings.append(f"Storage read failed: {exc}")
            return MergedView(
                records=[],
                data_source=fallback_source,
                freshness=Freshness.STALE,
                warnings=warnings,
                strategy=policy.name,
            )

        freshness = self._freshness(policy, batch, push, now)
        push = resolve_superseded(push, batch)
        context = MergeContext(
            today=today.isoformat(),
            batch_weight=self.fusion_config.report_batch_weight,
            push_weight=self.fusion_config.report_push_weight,
        )
        merged = policy.merge(batch, push, context)

        cutoff = window[1]
        records = [record for record in merged if window[0] <= record.local_date <= cutoff]

        logger.debug(
            "Merged view for %s: purpose=%s, policy=%s, window=%s..%s, batch=%s, push=%s, out=%s",
            account_id,
            purpose.value,
            policy.name,
            window[0],
            cutoff,
            len(batch),
            len(push),
            len(records),
        )

        return MergedView(
            records=records,
            data_source=view_source(records, fallback_source),
            freshness=freshness,
            warnings=warnings,
            strategy=policy.name,
            effective_end=cutoff,
        )

    def _freshness(
        self,
        policy: MergePolicy,
        batch: list[PerformanceRecord],
        push: list[PerformanceRecord],
        now: datetime,
    ) -> Freshness:
        """Classify the view from the records fetched for its window only."""
        fresh = {
            DataSource.PUSH: _is_fresh(push, self.freshness_config.push_max_age_minutes, now),
            DataSource.BATCH: _is_fresh(batch, self.freshness_config.batch_max_age_minutes, now),
        }

        if policy.primary_source is None:
            if all(fresh.values()):
                return Freshness.FRESH
        elif fresh[policy.primary_source]:
            return Freshness.FRESH

        if any(fresh.values()):
            return Freshness.MIXED
        return Freshness.STALE

    def get_timeline_aggregate(
        self,
        account_id: str,
        start: DateLike,
        end: DateLike,
        granularity: Granularity = Granularity.DAILY,
        purpose: Purpose = Purpose.HISTORICAL_ANALYSIS,
        tz_name: Optional[str] = None,
    ) -> TimelineAggregate:
        """Per-period sums with ctr/cvr/acos/roas, plus a totals row.

        Raises:
            InvalidDateRangeError: If end precedes start or a date is malformed
        """
        granularity = Granularity(granularity)
        view = self.get_merged_view(account_id, start, end, purpose, tz_name=tz_name)

        buckets: dict[str, list[PerformanceRecord]] = {}
        for record in view.records:
            buckets.setdefault(period_of(record.local_date, granularity), []).append(record)

        return TimelineAggregate(
            series=[derive_point(period, buckets[period]) for period in sorted(buckets)],
            totals=derive_point("total", view.records),
            data_source=view.data_source,
            granularity=granularity,
            warnings=list(view.warnings),
        )

    def get_realtime_dashboard(
        self, account_id: str, tz_name: Optional[str] = None
    ) -> RealtimeDashboard:
        """Today's trusted (traffic, spend) and untrusted (conversion) fields.

        Push buffer first, canonical store as fallback when the push feed has
        nothing for today.
        """
        if tz_name is None:
            tz_name = self.timezone_for_account(account_id)
        today = current_local_date(tz_name, self.clock()).isoformat()

        with self.store.snapshot():
            push = self.store.fetch_push_records(account_id, today, today)
            batch = self.store.fetch_canonical_records(account_id, today, today)

        if push:
            records = resolve_superseded(push, batch)
            source = DataSource.PUSH
        else:
            records = batch
            source = DataSource.BATCH

        point = derive_point(today, records)
        last_update = max((record.last_update for record in records), default=None)

        return RealtimeDashboard(
            account_id=account_id,
            local_date=today,
            spend=point.cost,
            clicks=point.clicks,
            impressions=point.impressions,
            last_update=last_update,
            sales=point.sales,
            orders=point.orders,
            roas=point.roas,
            acos=point.acos,
            warning=ATTRIBUTION_WARNING,
            data_source=source,
        )
