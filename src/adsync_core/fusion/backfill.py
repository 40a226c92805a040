"""Backfill Detector: local dates where push is empty but batch has data.

Detection only. The write itself belongs to an external scheduled job.
"""
import logging
import sqlite3
from dataclasses import dataclass

from ..storage.store import PerformanceStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillCheck:
    needs_backfill: bool
    candidate_count: int
    message: str


class BackfillDetector:
    def __init__(self, store: PerformanceStore) -> None:
        self.store = store

    def check_backfill(self, account_id: str, local_date: str) -> BackfillCheck:
        """Report whether ``local_date`` is a backfill candidate.

        Any push record at all means the day is not missing, even if batch
        holds more rows.
        """
        try:
            with self.store.snapshot():
                push_count = self.store.count_push_records(account_id, local_date)
                batch_count = self.store.count_canonical_records(account_id, local_date)
        except sqlite3.Error as exc:
            logger.error(
                "Backfill check failed for account %s on %s: %s",
                account_id,
                local_date,
                exc,
                exc_info=True,
            )
            return BackfillCheck(
                needs_backfill=False,
                candidate_count=0,
                message=f"Backfill check failed for {local_date}: {exc}",
            )

        if push_count > 0:
            return BackfillCheck(
                needs_backfill=False,
                candidate_count=0,
                message=f"Push data present for {local_date} ({push_count} records)",
            )

        if batch_count == 0:
            return BackfillCheck(
                needs_backfill=False,
                candidate_count=0,
                message=f"No data available in either source for {local_date}",
            )

        logger.info(
            "Backfill candidate for account %s on %s: %s batch records",
            account_id,
            local_date,
            batch_count,
        )
        return BackfillCheck(
            needs_backfill=True,
            candidate_count=batch_count,
            message=(
                f"Push data missing for {local_date}; "
                f"{batch_count} batch records available for backfill"
            ),
        )

    def scan(self, account_id: str, local_dates: list[str]) -> list[tuple[str, BackfillCheck]]:
        """Check several dates, keeping only the candidates."""
        candidates = []
        for local_date in local_dates:
            check = self.check_backfill(account_id, local_date)
            if check.needs_backfill:
                candidates.append((local_date, check))
        return candidates
