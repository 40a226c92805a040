"""Marketplace timezone resolution and UTC -> local date bucketing.

Advertising metrics are recorded in the marketplace's local calendar, not UTC
or server time. Resolution order for an account's timezone:

1. Per-account override stored with the account credentials
2. Static marketplace table (``TimezoneConfig``)
3. UTC fallback

Conversion never raises to the caller: malformed timestamps and unknown zone
names degrade to the raw UTC date and are logged.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import TimezoneConfig
from ..exceptions import MalformedTimestampError, UnknownTimezoneError


logger = logging.getLogger(__name__)


def parse_utc_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Naive values are treated as UTC.

    Raises:
        MalformedTimestampError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise MalformedTimestampError(value)
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise MalformedTimestampError(value) from exc

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def load_zone(tz_name: str) -> ZoneInfo:
    """Load an IANA zone.

    Raises:
        UnknownTimezoneError: If the name is not a known IANA zone
    """
    if not isinstance(tz_name, str) or not tz_name:
        raise UnknownTimezoneError(tz_name)
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise UnknownTimezoneError(tz_name) from exc


def is_valid_timezone(tz_name: str) -> bool:
    try:
        load_zone(tz_name)
    except UnknownTimezoneError:
        return False
    return True


def _raw_utc_date(value: Union[str, datetime]) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date().isoformat()
        return value.astimezone(timezone.utc).date().isoformat()
    return str(value).split("T")[0]


def local_date_of(utc_timestamp: Union[str, datetime], tz_name: str) -> str:
    """Convert a UTC instant to the local calendar date (YYYY-MM-DD) in ``tz_name``.

    DST is handled by the IANA rules: 2024-07-15T07:00:00Z is local midnight
    in America/Los_Angeles (PDT) while 2024-01-16T07:00:00Z is 23:00 on the
    15th (PST).

    Args:
        utc_timestamp: ISO 8601 UTC timestamp or datetime
        tz_name: IANA timezone name

    Returns:
        Local date string; the raw UTC date on malformed input or unknown zone
    """
    try:
        instant = parse_utc_timestamp(utc_timestamp)
    except MalformedTimestampError:
        logger.warning(
            "Malformed timestamp %r, falling back to raw UTC date", utc_timestamp
        )
        return _raw_utc_date(utc_timestamp)

    try:
        zone = load_zone(tz_name)
    except UnknownTimezoneError:
        logger.warning(
            "Unknown timezone %r for %s, falling back to UTC date",
            tz_name,
            utc_timestamp,
        )
        return _raw_utc_date(utc_timestamp)

    return instant.astimezone(zone).date().isoformat()


def current_local_date(tz_name: str, now: Optional[datetime] = None) -> date:
    """Today's date in ``tz_name`` (UTC if the zone is unknown)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return date.fromisoformat(local_date_of(now, tz_name))


def historical_date_range(
    tz_name: str, days_back: int, now: Optional[datetime] = None
) -> tuple[date, date]:
    """Local date range ending yesterday (T-1), ``days_back`` days long.

    The batch feed only covers completed days; today belongs to the push feed.
    """
    end = current_local_date(tz_name, now) - timedelta(days=1)
    start = end - timedelta(days=max(days_back, 1) - 1)
    return start, end


class TimezoneResolver:
    """Resolve marketplace codes (plus optional override) to IANA names."""

    def __init__(self, config: Optional[TimezoneConfig] = None) -> None:
        self.config = config or TimezoneConfig()

    def resolve_timezone(
        self, marketplace_code: Optional[str], account_override: Optional[str] = None
    ) -> str:
        """Resolve the timezone for a marketplace.

        Args:
            marketplace_code: Marketplace code such as 'US' or 'JP'
            account_override: Per-account timezone stored with credentials

        Returns:
            IANA timezone name; never raises
        """
        if account_override:
            if is_valid_timezone(account_override):
                return account_override
            logger.warning(
                "Ignoring unknown timezone override %r for marketplace %s",
                account_override,
                marketplace_code,
            )

        code = (marketplace_code or "").strip().upper()
        mapped = self.config.marketplace_timezones.get(code)
        if mapped:
            return mapped

        logger.info(
            "No timezone mapping for marketplace %r, using %s",
            marketplace_code,
            self.config.fallback_timezone,
        )
        return self.config.fallback_timezone

    def local_date_of(self, utc_timestamp: Union[str, datetime], tz_name: str) -> str:
        return local_date_of(utc_timestamp, tz_name)

    def supported_marketplaces(self) -> list[dict]:
        """List the static marketplace table."""
        return [
            {"marketplace": code, "timezone": tz_name}
            for code, tz_name in sorted(self.config.marketplace_timezones.items())
        ]
