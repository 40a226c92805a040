"""Dual-track health summary for operators."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from ..config import FreshnessConfig
from ..schemas.performance import DataSource
from ..storage.store import PerformanceStore


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Health(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


@dataclass(frozen=True)
class SourceStatus:
    source: DataSource
    last_update: Optional[datetime]
    record_count: int
    health: Health


@dataclass(frozen=True)
class DualTrackStatus:
    account_id: str
    push: SourceStatus
    batch: SourceStatus
    last_consistency_check: Optional[datetime]
    overall: Health


def source_health(
    last_update: Optional[datetime], max_age_minutes: int, now: datetime
) -> Health:
    """No data is an error; data older than twice the max age is degraded."""
    if last_update is None:
        return Health.ERROR
    if now - last_update > timedelta(minutes=max_age_minutes * 2):
        return Health.DEGRADED
    return Health.HEALTHY


def overall_health(push: Health, batch: Health) -> Health:
    if push == Health.ERROR and batch == Health.ERROR:
        return Health.ERROR
    if Health.ERROR in (push, batch) or Health.DEGRADED in (push, batch):
        return Health.DEGRADED
    return Health.HEALTHY


class StatusReporter:
    def __init__(
        self,
        store: PerformanceStore,
        config: Optional[FreshnessConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.config = config or FreshnessConfig()
        self.clock = clock

    def get_status(self, account_id: str) -> DualTrackStatus:
        now = self.clock()
        with self.store.snapshot():
            push_count, push_latest = self.store.source_stats(account_id, DataSource.PUSH)
            batch_count, batch_latest = self.store.source_stats(account_id, DataSource.BATCH)
            last_check = self.store.last_consistency_check(account_id)

        push = SourceStatus(
            source=DataSource.PUSH,
            last_update=push_latest,
            record_count=push_count,
            health=source_health(push_latest, self.config.push_max_age_minutes, now),
        )
        batch = SourceStatus(
            source=DataSource.BATCH,
            last_update=batch_latest,
            record_count=batch_count,
            health=source_health(batch_latest, self.config.batch_max_age_minutes, now),
        )

        overall = overall_health(push.health, batch.health)
        if overall != Health.HEALTHY:
            logger.warning(
                "Dual-track status for %s: push=%s, batch=%s",
                account_id,
                push.health.value,
                batch.health.value,
            )

        return DualTrackStatus(
            account_id=account_id,
            push=push,
            batch=batch,
            last_consistency_check=last_check,
            overall=overall,
        )
