"""FastAPI routes exposing merged views and reconciliation health."""
import logging
from datetime import date, datetime
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..config import AdsyncSettings
from ..exceptions import InvalidDateRangeError
from ..fusion.backfill import BackfillDetector
from ..fusion.consistency import ConsistencyChecker
from ..fusion.engine import DataFusionEngine
from ..fusion.status import StatusReporter
from ..ingest.timezones import TimezoneResolver
from ..schemas.performance import Granularity, PerformanceRecord, Purpose, TimelinePoint
from ..storage.schema import connect
from ..storage.store import PerformanceStore


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["performance"])


def get_settings() -> AdsyncSettings:
    return AdsyncSettings.from_env()


def get_store(settings: AdsyncSettings = Depends(get_settings)) -> Iterator[PerformanceStore]:
    """Per-request store on the configured database."""
    conn = connect(settings.db_path)
    try:
        yield PerformanceStore(conn)
    finally:
        conn.close()


class RecordOut(BaseModel):
    campaign_id: str
    local_date: str
    impressions: int
    clicks: int
    cost: float
    sales: float
    orders: int
    data_source: str
    is_finalized: bool
    last_update: Optional[datetime] = None
    weight: Optional[float] = None

    @classmethod
    def from_record(cls, record: PerformanceRecord) -> "RecordOut":
        return cls(
            campaign_id=record.campaign_id,
            local_date=record.local_date,
            impressions=record.impressions,
            clicks=record.clicks,
            cost=record.cost,
            sales=record.sales,
            orders=record.orders,
            data_source=record.data_source.value,
            is_finalized=record.is_finalized,
            last_update=record.last_update,
            weight=record.weight,
        )


class MergedViewResponse(BaseModel):
    account_id: str
    purpose: str
    strategy: Optional[str] = None
    effective_end: Optional[str] = None
    data_source: str
    freshness: str
    warnings: list[str] = Field(default_factory=list)
    records: list[RecordOut] = Field(default_factory=list)


class TimelinePointOut(BaseModel):
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

    @classmethod
    def from_point(cls, point: TimelinePoint) -> "TimelinePointOut":
        return cls(**{name: getattr(point, name) for name in cls.model_fields})


class TimelineResponse(BaseModel):
    account_id: str
    granularity: str
    data_source: str
    series: list[TimelinePointOut]
    totals: TimelinePointOut
    warnings: list[str] = Field(default_factory=list)


class BackfillResponse(BaseModel):
    account_id: str
    local_date: str
    needs_backfill: bool
    candidate_count: int
    message: str


class RealtimeResponse(BaseModel):
    """Today's dashboard: trusted traffic/spend, untrusted conversions."""

    account_id: str
    local_date: str
    data_source: str
    trusted: dict
    untrusted: dict


class SourceStatusOut(BaseModel):
    last_update: Optional[datetime] = None
    record_count: int
    health: str


class StatusResponse(BaseModel):
    account_id: str
    push: SourceStatusOut
    batch: SourceStatusOut
    last_consistency_check: Optional[datetime] = None
    overall: str


class ConsistencyCheckRequest(BaseModel):
    end_date: Optional[date] = Field(None, description="Last local date of the window (default yesterday)")
    window_days: Optional[int] = Field(None, ge=1, le=90, description="Window length in days")
    repair: bool = Field(False, description="Mark flagged push cells as superseded by canonical")


def _bad_range(exc: InvalidDateRangeError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get(
    "/accounts/{account_id}/performance",
    response_model=MergedViewResponse,
    summary="Merged performance view for a purpose",
)
def get_performance(
    account_id: str,
    start: str = Query(..., description="First local date (YYYY-MM-DD)"),
    end: str = Query(..., description="Last local date (YYYY-MM-DD)"),
    purpose: Purpose = Query(Purpose.HISTORICAL_ANALYSIS),
    include_today: bool = Query(True),
    campaign_ids: Optional[list[str]] = Query(None),
    store: PerformanceStore = Depends(get_store),
    settings: AdsyncSettings = Depends(get_settings),
) -> MergedViewResponse:
    engine = DataFusionEngine(
        store,
        resolver=TimezoneResolver(settings.timezones),
        fusion_config=settings.fusion,
        freshness_config=settings.freshness,
    )
    try:
        view = engine.get_merged_view(
            account_id,
            start,
            end,
            purpose,
            include_today=include_today,
            campaign_ids=campaign_ids,
        )
    except InvalidDateRangeError as exc:
        raise _bad_range(exc)

    return MergedViewResponse(
        account_id=account_id,
        purpose=purpose.value,
        strategy=view.strategy,
        effective_end=view.effective_end,
        data_source=view.data_source.value,
        freshness=view.freshness.value,
        warnings=view.warnings,
        records=[RecordOut.from_record(record) for record in view.records],
    )


@router.get(
    "/accounts/{account_id}/timeline",
    response_model=TimelineResponse,
    summary="Timeline aggregate with derived ratios",
)
def get_timeline(
    account_id: str,
    start: str = Query(...),
    end: str = Query(...),
    granularity: Granularity = Query(Granularity.DAILY),
    store: PerformanceStore = Depends(get_store),
    settings: AdsyncSettings = Depends(get_settings),
) -> TimelineResponse:
    engine = DataFusionEngine(
        store,
        resolver=TimezoneResolver(settings.timezones),
        fusion_config=settings.fusion,
        freshness_config=settings.freshness,
    )
    try:
        aggregate = engine.get_timeline_aggregate(account_id, start, end, granularity)
    except InvalidDateRangeError as exc:
        raise _bad_range(exc)

    return TimelineResponse(
        account_id=account_id,
        granularity=aggregate.granularity.value,
        data_source=aggregate.data_source.value,
        series=[TimelinePointOut.from_point(point) for point in aggregate.series],
        totals=TimelinePointOut.from_point(aggregate.totals),
        warnings=aggregate.warnings,
    )


@router.get(
    "/accounts/{account_id}/backfill",
    response_model=BackfillResponse,
    summary="Check whether a local date needs push backfill",
)
def get_backfill(
    account_id: str,
    local_date: date = Query(..., alias="date"),
    store: PerformanceStore = Depends(get_store),
) -> BackfillResponse:
    check = BackfillDetector(store).check_backfill(account_id, local_date.isoformat())
    return BackfillResponse(
        account_id=account_id,
        local_date=local_date.isoformat(),
        needs_backfill=check.needs_backfill,
        candidate_count=check.candidate_count,
        message=check.message,
    )


@router.get(
    "/accounts/{account_id}/realtime",
    response_model=RealtimeResponse,
    summary="Realtime dashboard for the current local day",
)
def get_realtime(
    account_id: str,
    store: PerformanceStore = Depends(get_store),
    settings: AdsyncSettings = Depends(get_settings),
) -> RealtimeResponse:
    engine = DataFusionEngine(store, resolver=TimezoneResolver(settings.timezones))
    dashboard = engine.get_realtime_dashboard(account_id)
    return RealtimeResponse(
        account_id=account_id,
        local_date=dashboard.local_date,
        data_source=dashboard.data_source.value,
        trusted={
            "spend": dashboard.spend,
            "clicks": dashboard.clicks,
            "impressions": dashboard.impressions,
            "last_update": dashboard.last_update.isoformat() if dashboard.last_update else None,
        },
        untrusted={
            "sales": dashboard.sales,
            "orders": dashboard.orders,
            "roas": dashboard.roas,
            "acos": dashboard.acos,
            "warning": dashboard.warning,
        },
    )


@router.get(
    "/accounts/{account_id}/status",
    response_model=StatusResponse,
    summary="Dual-track source health",
)
def get_status(
    account_id: str,
    store: PerformanceStore = Depends(get_store),
    settings: AdsyncSettings = Depends(get_settings),
) -> StatusResponse:
    report = StatusReporter(store, settings.freshness).get_status(account_id)
    return StatusResponse(
        account_id=account_id,
        push=SourceStatusOut(
            last_update=report.push.last_update,
            record_count=report.push.record_count,
            health=report.push.health.value,
        ),
        batch=SourceStatusOut(
            last_update=report.batch.last_update,
            record_count=report.batch.record_count,
            health=report.batch.health.value,
        ),
        last_consistency_check=report.last_consistency_check,
        overall=report.overall.value,
    )


@router.post(
    "/accounts/{account_id}/consistency-checks",
    summary="Run a cross-source consistency check",
    description=(
        "Compare push and batch cells over a trailing window. "
        "With repair=true, flagged push cells are superseded by the canonical record."
    ),
)
def run_consistency_check(
    account_id: str,
    payload: ConsistencyCheckRequest,
    store: PerformanceStore = Depends(get_store),
    settings: AdsyncSettings = Depends(get_settings),
) -> dict:
    checker = ConsistencyChecker(
        store,
        resolver=TimezoneResolver(settings.timezones),
        config=settings.consistency,
    )
    result = checker.run_check(
        account_id,
        end_date=payload.end_date.isoformat() if payload.end_date else None,
        window_days=payload.window_days,
        repair=payload.repair,
    )

    logger.info(
        "Consistency check via API: account=%s, status=%s, flagged=%s",
        account_id,
        result.status.value,
        len(result.flagged),
    )
    return result.as_dict()
