"""adsync data fusion.

Purpose-driven merged views, timeline aggregates, cross-source consistency
checks, backfill detection and dual-track health.
"""
from .backfill import BackfillCheck, BackfillDetector
from .consistency import ConsistencyChecker, ConsistencyCheckResult, ConsistencyStatus
from .engine import DataFusionEngine
from .policies import DEFAULT_POLICIES, MergePolicy, PurposeRule, build_purpose_table
from .status import DualTrackStatus, Health, StatusReporter

__all__ = [
    "BackfillCheck",
    "BackfillDetector",
    "ConsistencyCheckResult",
    "ConsistencyChecker",
    "ConsistencyStatus",
    "DEFAULT_POLICIES",
    "DataFusionEngine",
    "DualTrackStatus",
    "Health",
    "MergePolicy",
    "PurposeRule",
    "StatusReporter",
    "build_purpose_table",
]
