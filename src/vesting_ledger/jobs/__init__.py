"""Background jobs and their locks."""

from vesting_ledger.jobs.locks import JobLock, JobLocks
from vesting_ledger.jobs.reconciliation import (
    JobState,
    JobStats,
    ReconciliationResult,
    VaultReconciliationJob,
)

__all__ = [
    "JobLock",
    "JobLocks",
    "JobState",
    "JobStats",
    "ReconciliationResult",
    "VaultReconciliationJob",
]
