"""Reconciliation sweep over a date window, one sweep per account at a time."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.asyncio.lock import Lock as AsyncRedisLock

from ..exceptions import (
    InvalidDateRangeError,
    PersistenceFailureError,
    ReconcileLockedError,
    ReportDownloadError,
)
from ..schemas.performance import BatchRow
from .reconciler import BatchReconciler, ReconcileResult, ReconcileStatus


logger = logging.getLogger(__name__)


RowsProvider = Callable[[str], Awaitable[list[BatchRow]]]


@dataclass
class SweepSummary:
    """Per-status counts for one sweep."""

    account_id: str
    start_date: str
    end_date: str
    results: list[ReconcileResult] = field(default_factory=list)

    def count(self, status: ReconcileStatus) -> int:
        return sum(1 for result in self.results if result.status == status)

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "start_date": self.start_date,
            "end_date": self.end_date,
            **{status.value: self.count(status) for status in ReconcileStatus},
        }


def iter_dates(start_date: str, end_date: str) -> list[str]:
    """Inclusive list of YYYY-MM-DD dates.

    Raises:
        InvalidDateRangeError: If end precedes start
    """
    start = date.fromisoformat(start_date)
    end = date.fromisoformat(end_date)
    if end < start:
        raise InvalidDateRangeError(start_date, end_date)
    return [(start + timedelta(days=offset)).isoformat() for offset in range((end - start).days + 1)]


class ReconciliationSweep:
    """Run the Batch Reconciler over a window of local dates.

    Re-running a window is safe: finalized days are left untouched and
    deferred days are retried. The Redis lock only stops two sweeps of the
    same account from interleaving; it does not block ingestion.
    """

    LOCK_TTL_SECONDS = 1800  # 30 minutes

    def __init__(self, reconciler: BatchReconciler, redis: Redis) -> None:
        self.reconciler = reconciler
        self.redis = redis

    @staticmethod
    def lock_key(account_id: str) -> str:
        return f"adsync:reconcile_lock:{account_id}"

    async def run(
        self,
        account_id: str,
        start_date: str,
        end_date: str,
        rows_for_date: RowsProvider,
        tz_name: Optional[str] = None,
        allow_provisional: bool = False,
    ) -> SweepSummary:
        """Reconcile every local date in [start_date, end_date].

        Args:
            account_id: Account to reconcile
            start_date: First local date (inclusive)
            end_date: Last local date (inclusive)
            rows_for_date: Coroutine returning report rows for a local date
            tz_name: Account timezone (resolved from the profile when omitted)
            allow_provisional: Write pre-window days as provisional rows

        Returns:
            SweepSummary

        Raises:
            InvalidDateRangeError: If end_date precedes start_date
            ReconcileLockedError: If another sweep holds the account lock
        """
        dates = iter_dates(start_date, end_date)
        key = self.lock_key(account_id)

        lock = AsyncRedisLock(
            self.redis,
            name=key,
            timeout=self.LOCK_TTL_SECONDS,
            blocking=False,
        )
        acquired = await lock.acquire(blocking=False)
        if not acquired:
            raise ReconcileLockedError(account_id, key)

        logger.info("Acquired reconcile lock for account=%s", account_id)
        summary = SweepSummary(account_id=account_id, start_date=start_date, end_date=end_date)

        try:
            if tz_name is None:
                tz_name = await asyncio.to_thread(
                    self.reconciler.timezone_for_account, account_id
                )

            for local_date in dates:
                summary.results.append(
                    await self._reconcile_one(
                        account_id, local_date, rows_for_date, tz_name, allow_provisional
                    )
                )
        finally:
            await self._release_lock_best_effort(lock, account_id)

        logger.info("Sweep complete: %s", summary.as_dict())
        return summary

    async def _reconcile_one(
        self,
        account_id: str,
        local_date: str,
        rows_for_date: RowsProvider,
        tz_name: str,
        allow_provisional: bool,
    ) -> ReconcileResult:
        if not allow_provisional and not self.reconciler.is_window_elapsed(local_date, tz_name):
            # Skip the download for days that would only be deferred
            return await asyncio.to_thread(
                self.reconciler.reconcile_day, account_id, local_date, [], tz_name, False
            )

        try:
            rows = await rows_for_date(local_date)
            return await asyncio.to_thread(
                self.reconciler.reconcile_day,
                account_id,
                local_date,
                rows,
                tz_name,
                allow_provisional,
            )
        except (ReportDownloadError, PersistenceFailureError) as exc:
            logger.error(
                "Reconcile failed for account=%s date=%s: %s", account_id, local_date, exc
            )
            return ReconcileResult(
                account_id=account_id,
                local_date=local_date,
                status=ReconcileStatus.FAILED,
            )

    async def _release_lock_best_effort(self, lock: AsyncRedisLock, account_id: str) -> None:
        try:
            await lock.release()
            logger.info("Released reconcile lock for account=%s", account_id)
        except Exception as exc:
            logger.error("Failed to release reconcile lock: %s", exc)
