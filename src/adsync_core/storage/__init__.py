"""adsync persistence layer.

SQLite (WAL) store holding:
- push_performance: provisional push-feed cells (additive, per ad group)
- canonical_performance: batch-feed cells, one per account/campaign/day
- processed_messages: messageId de-duplication ledger
"""
from .schema import connect, init_database
from .store import PerformanceStore, WriteOutcome

__all__ = [
    "PerformanceStore",
    "WriteOutcome",
    "connect",
    "init_database",
]
