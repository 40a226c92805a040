"""adsync batch feed.

Report download and parsing, per-day canonical reconciliation with the
attribution-window finalization rule, and Redis-locked sweeps over date windows.
"""
from .reconciler import BatchReconciler, ReconcileResult, ReconcileStatus
from .report_reader import ReportReader, parse_report_rows
from .sweep import ReconciliationSweep, SweepSummary

__all__ = [
    "BatchReconciler",
    "ReconcileResult",
    "ReconcileStatus",
    "ReconciliationSweep",
    "ReportReader",
    "SweepSummary",
    "parse_report_rows",
]
