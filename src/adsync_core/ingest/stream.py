"""Stream Ingestor: push-feed events -> provisional performance cells.

Each event is bucketed by its ``eventTime`` (never the push timestamp) into
the marketplace-local date, then applied through the store's conditional
upsert. Traffic events carry impressions/clicks/cost, conversion events carry
sales/orders; both add into the same cell. Cells that the batch feed has
finalized are left untouched.
"""
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Union

from pydantic import ValidationError

from ..exceptions import (
    FinalizedOverwriteAttempt,
    MalformedTimestampError,
    PersistenceFailureError,
    UnsupportedDatasetCategoryError,
)
from ..schemas.performance import BatchOutcome, BudgetSnapshot, PushDelta
from ..schemas.stream_events import (
    BudgetEvent,
    ConversionEvent,
    DatasetCategory,
    TrafficEvent,
    parse_incoming_event,
)
from ..storage.store import PerformanceStore, WriteOutcome
from .timezones import TimezoneResolver, local_date_of, parse_utc_timestamp


logger = logging.getLogger(__name__)


TypedEvent = Union[TrafficEvent, ConversionEvent, BudgetEvent]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _event_instant(raw_time: str, fallback_date: str, now: datetime) -> datetime:
    try:
        return parse_utc_timestamp(raw_time)
    except MalformedTimestampError:
        pass
    try:
        return datetime.fromisoformat(fallback_date).replace(tzinfo=timezone.utc)
    except ValueError:
        return now


class StreamIngestor:
    """Apply push-feed events to the provisional store."""

    def __init__(
        self,
        store: PerformanceStore,
        resolver: Optional[TimezoneResolver] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize ingestor.

        Args:
            store: Performance store (conditional upsert owner)
            resolver: Timezone resolver for account -> IANA zone
            clock: UTC clock, injectable for tests
        """
        self.store = store
        self.resolver = resolver or TimezoneResolver()
        self.clock = clock

        self._handlers: dict[DatasetCategory, Callable[[TypedEvent, str, str], WriteOutcome]] = {
            DatasetCategory.TRAFFIC: self._apply_traffic,
            DatasetCategory.CONVERSION: self._apply_conversion,
            DatasetCategory.BUDGET: self._apply_budget,
        }
        missing = set(DatasetCategory) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No ingest handler for categories: {sorted(missing)}")

    def timezone_for_account(self, account_id: str) -> str:
        """Resolve the account's timezone via its stored profile."""
        try:
            profile = self.store.get_account_profile(account_id)
        except sqlite3.Error as exc:
            logger.error("Account profile lookup failed for %s: %s", account_id, exc)
            profile = None
        if profile is None:
            logger.warning("No account profile for %s, bucketing in UTC", account_id)
            return self.resolver.resolve_timezone(None)
        return self.resolver.resolve_timezone(profile.marketplace, profile.timezone_override)

    def process_event(self, event: TypedEvent, account_id: str, tz_name: str) -> WriteOutcome:
        """Apply a single typed event.

        Returns:
            WriteOutcome (APPLIED, DUPLICATE or FINALIZED)

        Raises:
            PersistenceFailureError: If the store write fails
        """
        handler = self._handlers[event.dataset_category]
        return handler(event, account_id, tz_name)

    def _apply_traffic(self, event: TrafficEvent, account_id: str, tz_name: str) -> WriteOutcome:
        payload = event.payload
        local_date = local_date_of(payload.event_time, tz_name)
        delta = PushDelta(
            account_id=account_id,
            campaign_id=payload.campaign_id,
            ad_group_id=payload.ad_group_id,
            local_date=local_date,
            event_time=_event_instant(payload.event_time, local_date, self.clock()),
            impressions=payload.impressions,
            clicks=payload.clicks,
            cost=payload.cost,
        )
        return self._write_delta(event, delta)

    def _apply_conversion(
        self, event: ConversionEvent, account_id: str, tz_name: str
    ) -> WriteOutcome:
        payload = event.payload
        local_date = local_date_of(payload.event_time, tz_name)
        delta = PushDelta(
            account_id=account_id,
            campaign_id=payload.campaign_id,
            ad_group_id=payload.ad_group_id,
            local_date=local_date,
            event_time=_event_instant(payload.event_time, local_date, self.clock()),
            sales=payload.attributed_sales,
            orders=payload.attributed_conversions,
        )
        return self._write_delta(event, delta)

    def _apply_budget(self, event: BudgetEvent, account_id: str, tz_name: str) -> WriteOutcome:
        payload = event.payload
        local_date = local_date_of(payload.event_time, tz_name)
        snapshot = BudgetSnapshot(
            account_id=account_id,
            campaign_id=payload.campaign_id,
            local_date=local_date,
            event_time=_event_instant(payload.event_time, local_date, self.clock()),
            budget_used=payload.budget_used,
            budget_remaining=payload.budget_remaining,
        )
        outcome = self.store.record_budget_snapshot(event.message_id, snapshot, self.clock())
        logger.debug(
            "Budget snapshot %s: campaign=%s, date=%s, outcome=%s",
            event.message_id,
            payload.campaign_id,
            local_date,
            outcome.value,
        )
        return outcome

    def _write_delta(self, event: TypedEvent, delta: PushDelta) -> WriteOutcome:
        outcome = self.store.apply_push_delta(
            event.message_id,
            event.dataset_category.value,
            delta,
            self.clock(),
        )

        if outcome == WriteOutcome.FINALIZED:
            notice = FinalizedOverwriteAttempt(
                delta.account_id, delta.campaign_id, delta.local_date
            )
            logger.info("Skipping push write for finalized cell: %s", notice)
        elif outcome == WriteOutcome.DUPLICATE:
            logger.debug("Duplicate message ignored: %s", event.message_id)
        else:
            logger.debug(
                "Applied %s event %s: campaign=%s, date=%s",
                event.dataset_category.value,
                event.message_id,
                delta.campaign_id,
                delta.local_date,
            )
        return outcome

    def process_batch(
        self,
        messages: Iterable[Union[dict, TypedEvent]],
        account_id: str,
        tz_name: Optional[str] = None,
    ) -> BatchOutcome:
        """Process a batch of raw messages or typed events.

        Every event is isolated: parse errors and persistence failures count as
        errors, unsupported categories count as skipped, and the batch always
        runs to the end.

        Args:
            messages: Raw queue messages (dicts) or already-parsed events
            account_id: Account the batch belongs to
            tz_name: Timezone override for this batch (resolved from the
                account profile when omitted)

        Returns:
            BatchOutcome with processed/skipped/errors counts
        """
        if tz_name is None:
            tz_name = self.timezone_for_account(account_id)

        outcome = BatchOutcome()

        for message in messages:
            try:
                event = (
                    parse_incoming_event(message) if isinstance(message, dict) else message
                )
                result = self.process_event(event, account_id, tz_name)
            except UnsupportedDatasetCategoryError as exc:
                logger.warning("Skipping message: %s", exc)
                outcome.skipped += 1
                continue
            except ValidationError as exc:
                logger.error(
                    "Invalid push message %s: %s",
                    _message_id_of(message),
                    exc.errors()[:3],
                )
                outcome.errors += 1
                continue
            except PersistenceFailureError as exc:
                logger.error("Persistence failure (retryable): %s", exc, exc_info=True)
                outcome.errors += 1
                continue
            except Exception as exc:
                logger.error(
                    "Unexpected failure processing message %s: %s",
                    _message_id_of(message),
                    exc,
                    exc_info=True,
                )
                outcome.errors += 1
                continue

            outcome.processed += 1
            if result == WriteOutcome.DUPLICATE:
                outcome.duplicates += 1
            elif result == WriteOutcome.FINALIZED:
                outcome.finalized_skips += 1

        logger.info(
            "Batch complete for account %s: processed=%s, skipped=%s, errors=%s "
            "(duplicates=%s, finalized_skips=%s)",
            account_id,
            outcome.processed,
            outcome.skipped,
            outcome.errors,
            outcome.duplicates,
            outcome.finalized_skips,
        )
        return outcome


def _message_id_of(message: Union[dict, TypedEvent]) -> Optional[str]:
    if isinstance(message, dict):
        return message.get("messageId")
    return getattr(message, "message_id", None)
