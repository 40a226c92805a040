"""Persistence layer for push and canonical performance cells.

The push path has exactly one serialization point: the conditional additive
upsert ("write unless finalized"), executed in the same transaction as the
messageId claim so that redelivered messages are no-ops.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Iterator, Optional

from ..exceptions import PersistenceFailureError
from ..schemas.performance import (
    AccountProfile,
    BatchRow,
    BudgetSnapshot,
    DataSource,
    PerformanceRecord,
    PushDelta,
)


logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    """Result of a conditional push write."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    FINALIZED = "finalized"


_PUSH_UPSERT_SQL = """
INSERT INTO push_performance (
    account_id, campaign_id, ad_group_id, local_date,
    impressions, clicks, cost, sales, orders,
    last_event_time, last_update
)
SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
WHERE NOT EXISTS (
    SELECT 1 FROM canonical_performance
    WHERE account_id = ? AND campaign_id = ? AND local_date = ?
    AND is_finalized = 1
)
ON CONFLICT(account_id, campaign_id, ad_group_id, local_date)
DO UPDATE SET
    impressions = push_performance.impressions + excluded.impressions,
    clicks = push_performance.clicks + excluded.clicks,
    cost = push_performance.cost + excluded.cost,
    sales = push_performance.sales + excluded.sales,
    orders = push_performance.orders + excluded.orders,
    last_event_time = MAX(
        COALESCE(push_performance.last_event_time, ''), excluded.last_event_time
    ),
    last_update = excluded.last_update
"""

_CANONICAL_UPSERT_SQL = """
INSERT INTO canonical_performance (
    account_id, campaign_id, local_date,
    impressions, clicks, cost, sales, orders,
    is_finalized, finalized_at, last_update
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(account_id, campaign_id, local_date)
DO UPDATE SET
    impressions = excluded.impressions,
    clicks = excluded.clicks,
    cost = excluded.cost,
    sales = excluded.sales,
    orders = excluded.orders,
    is_finalized = excluded.is_finalized,
    finalized_at = excluded.finalized_at,
    last_update = excluded.last_update
WHERE canonical_performance.is_finalized = 0
"""


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


class PerformanceStore:
    """SQLite-backed store for PerformanceRecord cells."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialize store.

        Args:
            conn: SQLite connection with schema initialized
        """
        self.conn = conn

    @contextmanager
    def snapshot(self) -> Iterator["PerformanceStore"]:
        """Read-only point-in-time view for background sweeps.

        Under WAL, reads inside one transaction see a single snapshot and
        never block (or are blocked by) the ingestion writer.
        """
        if self.conn.in_transaction:
            yield self
            return

        self.conn.execute("BEGIN")
        try:
            yield self
        finally:
            self.conn.rollback()

    # ------------------------------------------------------------------
    # Account profiles
    # ------------------------------------------------------------------

    def upsert_account_profile(self, profile: AccountProfile) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO account_profiles (account_id, marketplace, timezone_override)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id)
                DO UPDATE SET
                    marketplace=excluded.marketplace,
                    timezone_override=excluded.timezone_override,
                    updated_at=CURRENT_TIMESTAMP
                """,
                (profile.account_id, profile.marketplace, profile.timezone_override),
            )

    def get_account_profile(self, account_id: str) -> Optional[AccountProfile]:
        row = self.conn.execute(
            """
            SELECT account_id, marketplace, timezone_override
            FROM account_profiles WHERE account_id=?
            """,
            (account_id,),
        ).fetchone()
        if row is None:
            return None
        return AccountProfile(account_id=row[0], marketplace=row[1], timezone_override=row[2])

    # ------------------------------------------------------------------
    # Push path
    # ------------------------------------------------------------------

    def _claim_message(
        self,
        message_id: str,
        account_id: str,
        category: str,
        local_date: Optional[str],
        now: datetime,
    ) -> bool:
        cursor = self.conn.execute(
            """
            INSERT OR IGNORE INTO processed_messages (
                message_id, account_id, dataset_category, local_date, outcome, processed_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                account_id,
                category,
                local_date,
                WriteOutcome.APPLIED.value,
                _utc_iso(now),
            ),
        )
        return cursor.rowcount == 1

    def _set_message_outcome(self, message_id: str, outcome: WriteOutcome) -> None:
        self.conn.execute(
            "UPDATE processed_messages SET outcome=? WHERE message_id=?",
            (outcome.value, message_id),
        )

    def is_message_processed(self, message_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM processed_messages WHERE message_id=?", (message_id,)
        ).fetchone()
        return row is not None

    def apply_push_delta(
        self,
        message_id: str,
        category: str,
        delta: PushDelta,
        now: datetime,
    ) -> WriteOutcome:
        """Atomically claim ``message_id`` and add ``delta`` unless the cell is finalized.

        Raises:
            PersistenceFailureError: On any SQLite error (transaction rolled back)
        """
        try:
            with self.conn:
                if not self._claim_message(
                    message_id, delta.account_id, category, delta.local_date, now
                ):
                    return WriteOutcome.DUPLICATE

                cursor = self.conn.execute(
                    _PUSH_UPSERT_SQL,
                    (
                        delta.account_id,
                        delta.campaign_id,
                        delta.ad_group_id or "",
                        delta.local_date,
                        delta.impressions,
                        delta.clicks,
                        delta.cost,
                        delta.sales,
                        delta.orders,
                        _utc_iso(delta.event_time),
                        _utc_iso(now),
                        delta.account_id,
                        delta.campaign_id,
                        delta.local_date,
                    ),
                )

                if cursor.rowcount == 0:
                    self._set_message_outcome(message_id, WriteOutcome.FINALIZED)
                    return WriteOutcome.FINALIZED

                return WriteOutcome.APPLIED

        except sqlite3.Error as exc:
            raise PersistenceFailureError(
                f"Push write failed for message {message_id}: {exc}"
            ) from exc

    def record_budget_snapshot(
        self, message_id: str, snapshot: BudgetSnapshot, now: datetime
    ) -> WriteOutcome:
        """Store the latest (by event time) budget usage for a campaign/day.

        Raises:
            PersistenceFailureError: On any SQLite error
        """
        try:
            with self.conn:
                if not self._claim_message(
                    message_id, snapshot.account_id, "budget", snapshot.local_date, now
                ):
                    return WriteOutcome.DUPLICATE

                self.conn.execute(
                    """
                    INSERT INTO budget_usage (
                        account_id, campaign_id, local_date,
                        budget_used, budget_remaining, event_time, last_update
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, campaign_id, local_date)
                    DO UPDATE SET
                        budget_used=excluded.budget_used,
                        budget_remaining=excluded.budget_remaining,
                        event_time=excluded.event_time,
                        last_update=excluded.last_update
                    WHERE excluded.event_time >= budget_usage.event_time
                    """,
                    (
                        snapshot.account_id,
                        snapshot.campaign_id,
                        snapshot.local_date,
                        snapshot.budget_used,
                        snapshot.budget_remaining,
                        _utc_iso(snapshot.event_time),
                        _utc_iso(now),
                    ),
                )
                return WriteOutcome.APPLIED

        except sqlite3.Error as exc:
            raise PersistenceFailureError(
                f"Budget write failed for message {message_id}: {exc}"
            ) from exc

    def get_budget_snapshot(
        self, account_id: str, campaign_id: str, local_date: str
    ) -> Optional[BudgetSnapshot]:
        row = self.conn.execute(
            """
            SELECT budget_used, budget_remaining, event_time
            FROM budget_usage
            WHERE account_id=? AND campaign_id=? AND local_date=?
            """,
            (account_id, campaign_id, local_date),
        ).fetchone()
        if row is None:
            return None
        return BudgetSnapshot(
            account_id=account_id,
            campaign_id=campaign_id,
            local_date=local_date,
            budget_used=row[0],
            budget_remaining=row[1],
            event_time=_parse_iso(row[2]),
        )

    def mark_push_superseded(
        self, account_id: str, campaign_id: str, local_date: str, now: datetime
    ) -> int:
        """Flag push rows of a cell as superseded by the canonical value."""
        try:
            with self.conn:
                cursor = self.conn.execute(
                    """
                    UPDATE push_performance
                    SET superseded=1, superseded_at=?
                    WHERE account_id=? AND campaign_id=? AND local_date=?
                    AND superseded=0
                    """,
                    (_utc_iso(now), account_id, campaign_id, local_date),
                )
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise PersistenceFailureError(
                f"Supersede failed for {account_id}/{campaign_id}/{local_date}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Canonical path
    # ------------------------------------------------------------------

    def write_canonical(
        self,
        account_id: str,
        rows: Iterable[BatchRow],
        finalize: bool,
        now: datetime,
    ) -> tuple[int, int]:
        """Upsert canonical rows; finalized rows are never touched again.

        Args:
            account_id: Account the rows belong to
            rows: Canonical report rows
            finalize: Whether to set is_finalized (one-way)
            now: Write timestamp

        Returns:
            (written, already_finalized)
        """
        written = 0
        already_finalized = 0
        now_iso = _utc_iso(now)

        try:
            with self.conn:
                for row in rows:
                    cursor = self.conn.execute(
                        _CANONICAL_UPSERT_SQL,
                        (
                            account_id,
                            row.campaign_id,
                            row.local_date,
                            row.impressions,
                            row.clicks,
                            row.cost,
                            row.sales,
                            row.orders,
                            1 if finalize else 0,
                            now_iso if finalize else None,
                            now_iso,
                        ),
                    )
                    if cursor.rowcount == 0:
                        already_finalized += 1
                    else:
                        written += 1
        except sqlite3.Error as exc:
            raise PersistenceFailureError(
                f"Canonical write failed for account {account_id}: {exc}"
            ) from exc

        return written, already_finalized

    def is_finalized(self, account_id: str, campaign_id: str, local_date: str) -> bool:
        row = self.conn.execute(
            """
            SELECT is_finalized FROM canonical_performance
            WHERE account_id=? AND campaign_id=? AND local_date=?
            """,
            (account_id, campaign_id, local_date),
        ).fetchone()
        return bool(row and row[0])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_push_records(
        self,
        account_id: str,
        start: str,
        end: str,
        campaign_ids: Optional[list[str]] = None,
    ) -> list[PerformanceRecord]:
        """Push cells aggregated to campaign level, ordered by date/campaign."""
        rows = self.conn.execute(
            """
            SELECT campaign_id, local_date,
                SUM(impressions), SUM(clicks), SUM(cost), SUM(sales), SUM(orders),
                MAX(last_update), MAX(superseded)
            FROM push_performance
            WHERE account_id=? AND local_date >= ? AND local_date <= ?
            GROUP BY campaign_id, local_date
            ORDER BY local_date, campaign_id
            """,
            (account_id, start, end),
        ).fetchall()

        records = [
            PerformanceRecord(
                account_id=account_id,
                campaign_id=row[0],
                local_date=row[1],
                impressions=int(row[2] or 0),
                clicks=int(row[3] or 0),
                cost=float(row[4] or 0.0),
                sales=float(row[5] or 0.0),
                orders=int(row[6] or 0),
                data_source=DataSource.PUSH,
                is_finalized=False,
                last_update=_parse_iso(row[7]),
                superseded=bool(row[8]),
            )
            for row in rows
        ]
        return _filter_campaigns(records, campaign_ids)

    def fetch_canonical_records(
        self,
        account_id: str,
        start: str,
        end: str,
        campaign_ids: Optional[list[str]] = None,
    ) -> list[PerformanceRecord]:
        rows = self.conn.execute(
            """
            SELECT campaign_id, local_date,
                impressions, clicks, cost, sales, orders,
                is_finalized, last_update
            FROM canonical_performance
            WHERE account_id=? AND local_date >= ? AND local_date <= ?
            ORDER BY local_date, campaign_id
            """,
            (account_id, start, end),
        ).fetchall()

        records = [
            PerformanceRecord(
                account_id=account_id,
                campaign_id=row[0],
                local_date=row[1],
                impressions=int(row[2]),
                clicks=int(row[3]),
                cost=float(row[4]),
                sales=float(row[5]),
                orders=int(row[6]),
                data_source=DataSource.BATCH,
                is_finalized=bool(row[7]),
                last_update=_parse_iso(row[8]),
            )
            for row in rows
        ]
        return _filter_campaigns(records, campaign_ids)

    def get_canonical_record(
        self, account_id: str, campaign_id: str, local_date: str
    ) -> Optional[PerformanceRecord]:
        records = self.fetch_canonical_records(
            account_id, local_date, local_date, [campaign_id]
        )
        return records[0] if records else None

    def get_push_record(
        self, account_id: str, campaign_id: str, local_date: str
    ) -> Optional[PerformanceRecord]:
        records = self.fetch_push_records(account_id, local_date, local_date, [campaign_id])
        return records[0] if records else None

    def count_push_records(self, account_id: str, local_date: str) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) FROM push_performance
            WHERE account_id=? AND local_date=?
            """,
            (account_id, local_date),
        ).fetchone()
        return int(row[0] or 0)

    def count_canonical_records(self, account_id: str, local_date: str) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) FROM canonical_performance
            WHERE account_id=? AND local_date=?
            """,
            (account_id, local_date),
        ).fetchone()
        return int(row[0] or 0)

    def source_stats(self, account_id: str, source: DataSource) -> tuple[int, Optional[datetime]]:
        """(record count, latest update) for one source."""
        table = {
            DataSource.PUSH: "push_performance",
            DataSource.BATCH: "canonical_performance",
        }[source]
        row = self.conn.execute(
            f"SELECT COUNT(*), MAX(last_update) FROM {table} WHERE account_id=?",
            (account_id,),
        ).fetchone()
        return int(row[0] or 0), _parse_iso(row[1])

    # ------------------------------------------------------------------
    # Run ledgers
    # ------------------------------------------------------------------

    def record_reconciliation_run(
        self,
        account_id: str,
        local_date: str,
        status: str,
        written: int,
        details: Optional[str],
        now: datetime,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO reconciliation_runs (
                    account_id, local_date, status, written, details, run_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (account_id, local_date, status, written, details, _utc_iso(now)),
            )

    def last_reconciliation_run(self, account_id: str) -> Optional[dict]:
        row = self.conn.execute(
            """
            SELECT local_date, status, written, details, run_at
            FROM reconciliation_runs
            WHERE account_id=?
            ORDER BY run_at DESC, id DESC
            LIMIT 1
            """,
            (account_id,),
        ).fetchone()
        if row is None:
            return None
        return {
            "local_date": row[0],
            "status": row[1],
            "written": row[2],
            "details": row[3],
            "run_at": _parse_iso(row[4]),
        }

    def record_consistency_check(
        self,
        account_id: str,
        window_start: str,
        window_end: str,
        status: str,
        flagged_count: int,
        result: dict,
        now: datetime,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO consistency_checks (
                    account_id, window_start, window_end, status,
                    flagged_count, result_json, checked_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    window_start,
                    window_end,
                    status,
                    flagged_count,
                    json.dumps(result, separators=(",", ":"), default=str),
                    _utc_iso(now),
                ),
            )

    def last_consistency_check(self, account_id: str) -> Optional[datetime]:
        row = self.conn.execute(
            "SELECT MAX(checked_at) FROM consistency_checks WHERE account_id=?",
            (account_id,),
        ).fetchone()
        return _parse_iso(row[0]) if row else None


def _filter_campaigns(
    records: list[PerformanceRecord], campaign_ids: Optional[list[str]]
) -> list[PerformanceRecord]:
    if not campaign_ids:
        return records
    wanted = set(campaign_ids)
    return [record for record in records if record.campaign_id in wanted]
