"""Batch Reconciler: writes the canonical record for a day.

A local day becomes eligible for finalization once the attribution delay has
elapsed after the day's local end (midnight of the following day). Finalization
is one-way: finalized cells are never rewritten or un-finalized, which makes
re-running a day a no-op.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from ..config import ReconcileConfig
from ..exceptions import AttributionWindowOpenError, PersistenceFailureError, UnknownTimezoneError
from ..ingest.timezones import TimezoneResolver, load_zone
from ..schemas.performance import BatchRow
from ..storage.store import PerformanceStore


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconcileStatus(str, Enum):
    """Outcome of reconciling one local day."""

    FINALIZED = "finalized"
    PROVISIONAL = "provisional"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Result of reconciling one (account, local date)."""

    account_id: str
    local_date: str
    status: ReconcileStatus
    written: int = 0
    already_finalized: int = 0
    ignored_rows: int = 0
    eligible_at: Optional[datetime] = None


class BatchReconciler:
    """Write canonical batch rows and finalize them after the attribution window."""

    def __init__(
        self,
        store: PerformanceStore,
        resolver: Optional[TimezoneResolver] = None,
        config: Optional[ReconcileConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.resolver = resolver or TimezoneResolver()
        self.config = config or ReconcileConfig()
        self.clock = clock

    def timezone_for_account(self, account_id: str) -> str:
        profile = self.store.get_account_profile(account_id)
        if profile is None:
            return self.resolver.resolve_timezone(None)
        return self.resolver.resolve_timezone(profile.marketplace, profile.timezone_override)

    def eligible_at(self, local_date: str, tz_name: str) -> datetime:
        """UTC instant after which ``local_date`` may be finalized."""
        try:
            zone = load_zone(tz_name)
        except UnknownTimezoneError:
            logger.warning("Unknown timezone %r, computing window in UTC", tz_name)
            zone = timezone.utc

        day_end = datetime.combine(
            date.fromisoformat(local_date) + timedelta(days=1), time(0), tzinfo=zone
        )
        # Add elapsed hours in UTC; wall-clock arithmetic would drift across DST
        return day_end.astimezone(timezone.utc) + timedelta(
            hours=self.config.attribution_delay_hours
        )

    def is_window_elapsed(
        self, local_date: str, tz_name: str, now: Optional[datetime] = None
    ) -> bool:
        if now is None:
            now = self.clock()
        return now >= self.eligible_at(local_date, tz_name)

    def reconcile_day(
        self,
        account_id: str,
        local_date: str,
        rows: Iterable[BatchRow],
        tz_name: Optional[str] = None,
        allow_provisional: bool = False,
    ) -> ReconcileResult:
        """Write batch rows for one local day.

        Args:
            account_id: Account the report belongs to
            local_date: Marketplace-local date (YYYY-MM-DD) the report covers
            rows: Report rows; rows for other dates are ignored
            tz_name: Account timezone (resolved from the profile when omitted)
            allow_provisional: Write pre-window rows unfinalized instead of deferring

        Returns:
            ReconcileResult

        Raises:
            PersistenceFailureError: If the canonical write fails (retryable)
        """
        if tz_name is None:
            tz_name = self.timezone_for_account(account_id)

        now = self.clock()
        eligible_at = self.eligible_at(local_date, tz_name)

        day_rows: list[BatchRow] = []
        ignored = 0
        for row in rows:
            if row.local_date != local_date:
                ignored += 1
                continue
            day_rows.append(row)

        if ignored:
            logger.warning(
                "Ignored %s report rows outside %s for account %s",
                ignored,
                local_date,
                account_id,
            )

        if now >= eligible_at:
            finalize = True
            status = ReconcileStatus.FINALIZED
        elif allow_provisional:
            finalize = False
            status = ReconcileStatus.PROVISIONAL
        else:
            logger.info(
                "Deferring %s for account %s: attribution window open until %s",
                local_date,
                account_id,
                eligible_at.isoformat(),
            )
            result = ReconcileResult(
                account_id=account_id,
                local_date=local_date,
                status=ReconcileStatus.DEFERRED,
                ignored_rows=ignored,
                eligible_at=eligible_at,
            )
            self._record_run(result, "attribution window open", now)
            return result

        try:
            written, already_finalized = self.store.write_canonical(
                account_id, day_rows, finalize=finalize, now=now
            )
        except PersistenceFailureError as exc:
            failed = ReconcileResult(
                account_id=account_id,
                local_date=local_date,
                status=ReconcileStatus.FAILED,
                ignored_rows=ignored,
                eligible_at=eligible_at,
            )
            self._record_run(failed, str(exc), now)
            raise

        result = ReconcileResult(
            account_id=account_id,
            local_date=local_date,
            status=status,
            written=written,
            already_finalized=already_finalized,
            ignored_rows=ignored,
            eligible_at=eligible_at,
        )
        self._record_run(
            result,
            f"{written} written, {already_finalized} already finalized",
            now,
        )

        logger.info(
            "Reconciled %s for account %s: status=%s, written=%s, already_finalized=%s",
            local_date,
            account_id,
            status.value,
            written,
            already_finalized,
        )
        return result

    def finalize_day(
        self,
        account_id: str,
        local_date: str,
        rows: Iterable[BatchRow],
        tz_name: Optional[str] = None,
    ) -> ReconcileResult:
        """Strict variant of ``reconcile_day`` that refuses open windows.

        Raises:
            AttributionWindowOpenError: If the attribution window has not elapsed
        """
        if tz_name is None:
            tz_name = self.timezone_for_account(account_id)

        eligible_at = self.eligible_at(local_date, tz_name)
        if self.clock() < eligible_at:
            raise AttributionWindowOpenError(local_date, eligible_at)

        return self.reconcile_day(account_id, local_date, rows, tz_name=tz_name)

    def _record_run(self, result: ReconcileResult, details: str, now: datetime) -> None:
        try:
            self.store.record_reconciliation_run(
                result.account_id,
                result.local_date,
                result.status.value,
                result.written,
                details,
                now,
            )
        except Exception as exc:
            logger.error(
                "Failed to record reconciliation run for %s %s: %s",
                result.account_id,
                result.local_date,
                exc,
            )
