"""Unit tests for marketplace timezone resolution and local date bucketing."""
from datetime import date, datetime, timezone

import pytest

from src.adsync_core.config import TimezoneConfig
from src.adsync_core.exceptions import MalformedTimestampError, UnknownTimezoneError
from src.adsync_core.ingest.timezones import (
    TimezoneResolver,
    current_local_date,
    historical_date_range,
    is_valid_timezone,
    load_zone,
    local_date_of,
    parse_utc_timestamp,
)


@pytest.mark.parametrize(
    "utc_timestamp, tz_name, expected",
    [
        ("2024-01-16T00:00:00Z", "America/Los_Angeles", "2024-01-15"),
        ("2024-01-15T18:00:00Z", "Asia/Tokyo", "2024-01-16"),
        ("2024-07-15T07:00:00Z", "America/Los_Angeles", "2024-07-15"),
        ("2024-01-16T07:00:00Z", "America/Los_Angeles", "2024-01-15"),
        ("2024-01-01T03:00:00Z", "America/New_York", "2023-12-31"),
        ("2024-02-29T23:30:00Z", "Europe/Berlin", "2024-03-01"),
    ],
)
def test_local_date_of_crosses_boundaries(utc_timestamp, tz_name, expected):
    """Test conversion across day/month/year boundaries and DST."""
    assert local_date_of(utc_timestamp, tz_name) == expected


def test_local_date_of_unknown_zone_falls_back_to_raw_date(caplog):
    """Test unknown zone degrades to the raw UTC date and logs a warning."""
    result = local_date_of("2024-01-15T12:00:00Z", "Mars/Olympus_Mons")

    assert result == "2024-01-15"
    assert any(record.levelname == "WARNING" for record in caplog.records)


def test_local_date_of_malformed_timestamp_never_raises():
    """Test malformed timestamp degrades to splitting the raw string."""
    assert local_date_of("2024-01-15Tgarbage", "Asia/Tokyo") == "2024-01-15"


def test_local_date_of_accepts_aware_datetime():
    instant = datetime(2024, 1, 15, 18, 0, tzinfo=timezone.utc)

    assert local_date_of(instant, "Asia/Tokyo") == "2024-01-16"


def test_parse_utc_timestamp_naive_is_utc():
    parsed = parse_utc_timestamp("2024-01-15T12:00:00")

    assert parsed.tzinfo is not None
    assert parsed.utcoffset().total_seconds() == 0


def test_parse_utc_timestamp_rejects_garbage():
    with pytest.raises(MalformedTimestampError):
        parse_utc_timestamp("yesterday")

    with pytest.raises(MalformedTimestampError):
        parse_utc_timestamp("")


def test_load_zone_unknown():
    with pytest.raises(UnknownTimezoneError):
        load_zone("Not/AZone")

    assert is_valid_timezone("Asia/Tokyo")
    assert not is_valid_timezone("Not/AZone")


def test_resolve_timezone_override_wins():
    """Test per-account override takes priority over the marketplace table."""
    resolver = TimezoneResolver()

    assert resolver.resolve_timezone("US", "America/New_York") == "America/New_York"


def test_resolve_timezone_invalid_override_uses_table():
    resolver = TimezoneResolver()

    assert resolver.resolve_timezone("JP", "Bogus/Zone") == "Asia/Tokyo"


def test_resolve_timezone_table_and_fallback():
    """Test mapped codes resolve, unmapped codes fall back to UTC."""
    resolver = TimezoneResolver()

    assert resolver.resolve_timezone("us") == "America/Los_Angeles"
    assert resolver.resolve_timezone("UK") == "Europe/London"
    assert resolver.resolve_timezone("ZZ") == "UTC"
    assert resolver.resolve_timezone(None) == "UTC"


def test_resolver_uses_injected_config():
    """Test a per-test table without touching shared defaults."""
    resolver = TimezoneResolver(
        TimezoneConfig(marketplace_timezones={"XX": "Asia/Kolkata"}, fallback_timezone="Europe/London")
    )

    assert resolver.resolve_timezone("XX") == "Asia/Kolkata"
    assert resolver.resolve_timezone("US") == "Europe/London"
    assert TimezoneResolver().resolve_timezone("XX") == "UTC"


def test_supported_marketplaces_sorted():
    marketplaces = TimezoneResolver().supported_marketplaces()

    codes = [entry["marketplace"] for entry in marketplaces]
    assert codes == sorted(codes)
    assert {"marketplace": "JP", "timezone": "Asia/Tokyo"} in marketplaces


def test_current_local_date_and_historical_range():
    """Test today/yesterday are computed in the marketplace calendar."""
    now = datetime(2024, 1, 15, 18, 0, tzinfo=timezone.utc)

    assert current_local_date("Asia/Tokyo", now) == date(2024, 1, 16)
    assert current_local_date("America/Los_Angeles", now) == date(2024, 1, 15)

    start, end = historical_date_range("Asia/Tokyo", 7, now)
    assert end == date(2024, 1, 15)
    assert start == date(2024, 1, 9)
