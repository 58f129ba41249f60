"""Ledger indexing - cursor tracking, rollback and event polling."""

from vesting_ledger.indexer.poller import IndexerRunState, IndexerStats, LedgerIndexer
from vesting_ledger.indexer.state import IndexerStateTracker, RollbackResult

__all__ = [
    "IndexerRunState",
    "IndexerStateTracker",
    "IndexerStats",
    "LedgerIndexer",
    "RollbackResult",
]
