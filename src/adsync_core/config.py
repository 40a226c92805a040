"""Immutable configuration values for adsync.

Every service receives its configuration at construction. Tests override
values with ``dataclasses.replace`` instead of patching module state.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional


FALLBACK_TIMEZONE = "UTC"

DEFAULT_MARKETPLACE_TIMEZONES: Mapping[str, str] = MappingProxyType(
    {
        # North America
        "US": "America/Los_Angeles",
        "CA": "America/Toronto",
        "MX": "America/Mexico_City",
        "BR": "America/Sao_Paulo",
        # Europe
        "UK": "Europe/London",
        "GB": "Europe/London",
        "DE": "Europe/Berlin",
        "FR": "Europe/Paris",
        "IT": "Europe/Rome",
        "ES": "Europe/Madrid",
        "NL": "Europe/Amsterdam",
        "SE": "Europe/Stockholm",
        "PL": "Europe/Warsaw",
        "TR": "Europe/Istanbul",
        "BE": "Europe/Brussels",
        # Asia Pacific / Middle East
        "JP": "Asia/Tokyo",
        "AU": "Australia/Sydney",
        "SG": "Asia/Singapore",
        "IN": "Asia/Kolkata",
        "AE": "Asia/Dubai",
        "SA": "Asia/Riyadh",
        "EG": "Africa/Cairo",
    }
)


@dataclass(frozen=True)
class TimezoneConfig:
    """Marketplace code -> IANA timezone table.

    The table takes part in equality but not in the hash (mapping proxies
    are unhashable).
    """

    marketplace_timezones: Mapping[str, str] = field(
        default_factory=lambda: DEFAULT_MARKETPLACE_TIMEZONES, hash=False
    )
    fallback_timezone: str = FALLBACK_TIMEZONE


@dataclass(frozen=True)
class FreshnessConfig:
    """Maximum age (minutes) for a source's latest update to count as fresh."""

    push_max_age_minutes: int = 15
    batch_max_age_minutes: int = 60


@dataclass(frozen=True)
class FusionConfig:
    """Merge policy parameters."""

    algorithm_exclude_days: int = 1
    historical_exclude_days: int = 1
    report_batch_weight: float = 1.0
    report_push_weight: float = 0.8


@dataclass(frozen=True)
class ReconcileConfig:
    """Batch reconciliation parameters."""

    attribution_delay_hours: int = 48


@dataclass(frozen=True)
class ConsistencyConfig:
    """Cross-source divergence thresholds (fractions, compared with strict >)."""

    window_days: int = 7
    traffic_deviation: float = 0.05
    spend_deviation: float = 0.05
    alert_threshold: int = 3


@dataclass(frozen=True)
class AdsyncSettings:
    """Top-level settings bundle."""

    db_path: Path = Path("data/adsync.db")
    raw_dir: Path = Path("data/stream/raw")
    redis_url: str = "redis://localhost:6379"
    timezones: TimezoneConfig = field(default_factory=TimezoneConfig)
    freshness: FreshnessConfig = field(default_factory=FreshnessConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    consistency: ConsistencyConfig = field(default_factory=ConsistencyConfig)

    @classmethod
    def from_env(cls) -> "AdsyncSettings":
        """Build settings from ``ADSYNC_*`` environment variables."""
        return cls(
            db_path=Path(os.getenv("ADSYNC_DB_PATH", "data/adsync.db")),
            raw_dir=Path(os.getenv("ADSYNC_RAW_DIR", "data/stream/raw")),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            freshness=FreshnessConfig(
                push_max_age_minutes=_env_int("ADSYNC_PUSH_MAX_AGE_MINUTES", 15),
                batch_max_age_minutes=_env_int("ADSYNC_BATCH_MAX_AGE_MINUTES", 60),
            ),
            fusion=FusionConfig(
                algorithm_exclude_days=_env_int("ADSYNC_ALGORITHM_EXCLUDE_DAYS", 1),
            ),
            reconcile=ReconcileConfig(
                attribution_delay_hours=_env_int("ADSYNC_ATTRIBUTION_DELAY_HOURS", 48),
            ),
            consistency=ConsistencyConfig(
                window_days=_env_int("ADSYNC_CONSISTENCY_WINDOW_DAYS", 7),
                traffic_deviation=_env_float("ADSYNC_TRAFFIC_DEVIATION", 0.05),
                spend_deviation=_env_float("ADSYNC_SPEND_DEVIATION", 0.05),
            ),
        )


def _env_int(name: str, default: int) -> int:
    value: Optional[str] = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value: Optional[str] = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)
