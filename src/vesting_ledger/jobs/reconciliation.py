"""Periodic vault reconciliation against the ledger.

Background job that compares the number of vaults the factory reports
with the number stored locally. On a mismatch it records an audit row and
backfills the vaults that exist on the ledger but not in the store. It
never touches the ingestion cursor.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from vesting_ledger.errors import JobLockedError, ReconciliationMismatchError
from vesting_ledger.jobs.locks import JobLocks
from vesting_ledger.retry import RetryPolicy, SleepFn, retry_async
from vesting_ledger.storage.repos import (
    ReconciliationEventDTO,
    ReconciliationEventRepository,
    VaultDTO,
    VaultRepository,
)

if TYPE_CHECKING:
    from vesting_ledger.chain.ledger_source import LedgerSource
    from vesting_ledger.chain.models import OnChainVault
    from vesting_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL_SECONDS = 6 * 60 * 60
LOCK_NAME = "reconciliation:vaults"

STATUS_IN_SYNC = "in_sync"
STATUS_BACKFILL_TRIGGERED = "backfill_triggered"
STATUS_BACKFILL_COMPLETED = "backfill_completed"
STATUS_BACKFILL_FAILED = "backfill_failed"


class JobState(str, Enum):
    """State of the reconciliation job."""

    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class JobStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    mismatches_detected: int = 0
    vaults_backfilled: int = 0
    last_run_time: datetime | None = None
    last_run_duration_seconds: float = 0.0
    last_error: str | None = None


@dataclass(frozen=True)
class ReconciliationResult:
    on_chain_count: int
    db_count: int
    status: str
    backfilled_count: int = 0
    failed_addresses: tuple[str, ...] = ()

    @property
    def mismatch(self) -> int:
        return self.on_chain_count - self.db_count


class VaultReconciliationJob:
    """Reconciles vault counts on a fixed interval.

    Scheduled runs log and swallow every error so the loop keeps going;
    `run_manually` shares the same logic but lets errors propagate.
    """

    def __init__(
        self,
        db: DatabaseManager,
        source: LedgerSource,
        *,
        locks: JobLocks | None = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn | None = None,
        dry_run: bool = False,
    ) -> None:
        self._db = db
        self._source = source
        self._locks = locks or JobLocks()
        self._interval = interval_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._dry_run = dry_run

        self._state = JobState.STOPPED
        self._stats = JobStats()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def stats(self) -> JobStats:
        return self._stats

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background loop. The first run happens after one interval."""
        if self._state != JobState.STOPPED:
            logger.warning("Cannot start reconciliation: already in state %s", self._state)
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self._state = JobState.IDLE
        logger.info("Vault reconciliation scheduled every %.0fs", self._interval)

    async def stop(self) -> None:
        if self._state == JobState.STOPPED:
            return
        self._state = JobState.STOPPING
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._state = JobState.STOPPED
        logger.info("Vault reconciliation stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            await self.run_scheduled()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run_scheduled(self) -> ReconciliationResult | None:
        """One scheduled run: skipped when locked, errors logged and swallowed."""
        try:
            return await self._run_locked()
        except JobLockedError:
            self._stats.skipped_runs += 1
            logger.info("Skipping scheduled reconciliation: previous run still in progress")
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error running vault reconciliation")
            self._record_failure(e)
            return None

    async def run_manually(self) -> ReconciliationResult:
        """Operator-triggered run.

        Raises:
            JobLockedError: If a run is already in progress.
            Any error from the ledger source or the store.
        """
        logger.info("Manually triggering vault reconciliation")
        try:
            result = await self._run_locked()
        except JobLockedError:
            raise
        except Exception as e:
            logger.error("Manual reconciliation failed: %s", e)
            self._record_failure(e)
            raise
        logger.info("Manual reconciliation completed: %s", result.status)
        return result

    async def force_run(self) -> ReconciliationResult:
        return await self.run_manually()

    async def _run_locked(self) -> ReconciliationResult:
        async with self._locks.get(LOCK_NAME).hold():
            self._state = JobState.RUNNING
            started = datetime.now(UTC)
            self._stats.total_runs += 1
            try:
                result = await self.reconcile_vaults()
            except BaseException:
                self._state = JobState.ERROR
                raise
            self._stats.successful_runs += 1
            self._stats.last_run_time = started
            self._stats.last_run_duration_seconds = (datetime.now(UTC) - started).total_seconds()
            self._state = JobState.IDLE
            return result

    def _record_failure(self, error: BaseException) -> None:
        self._stats.failed_runs += 1
        self._stats.last_error = str(error)
        self._state = JobState.ERROR

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_vaults(self) -> ReconciliationResult:
        """Compare counts and backfill missing vaults on a mismatch."""
        on_chain_count = await self._with_retry(self._source.get_vault_count, "vault count")
        async with self._db.get_async_session() as session:
            db_count = await VaultRepository(session).count()

        logger.info("Vault counts: on-chain=%d, db=%d", on_chain_count, db_count)
        if on_chain_count == db_count:
            logger.info("Vault counts match. No reconciliation needed.")
            return ReconciliationResult(on_chain_count, db_count, STATUS_IN_SYNC)

        mismatch = ReconciliationMismatchError(on_chain_count, db_count)
        self._stats.mismatches_detected += 1
        logger.warning(
            "%s",
            mismatch,
            extra={
                "on_chain_count": on_chain_count,
                "db_count": db_count,
                "mismatch": mismatch.mismatch,
            },
        )

        if self._dry_run:
            logger.info("[DRY RUN] Would backfill missing vaults")
            return ReconciliationResult(on_chain_count, db_count, STATUS_BACKFILL_TRIGGERED)

        async with self._db.get_async_session() as session:
            event = await ReconciliationEventRepository(session).insert(
                ReconciliationEventDTO(
                    on_chain_count=on_chain_count,
                    db_count=db_count,
                    mismatch=mismatch.mismatch,
                    status=STATUS_BACKFILL_TRIGGERED,
                )
            )

        try:
            backfilled, failed = await self.perform_backfill()
        except Exception as e:
            async with self._db.get_async_session() as session:
                await ReconciliationEventRepository(session).update_status(
                    event.id, status=STATUS_BACKFILL_FAILED, backfilled_count=0, error=str(e)[:1000]
                )
            raise

        status = STATUS_BACKFILL_COMPLETED if not failed else STATUS_BACKFILL_FAILED
        async with self._db.get_async_session() as session:
            await ReconciliationEventRepository(session).update_status(
                event.id,
                status=status,
                backfilled_count=backfilled,
                error=f"failed: {', '.join(failed)}"[:1000] if failed else None,
            )

        self._stats.vaults_backfilled += backfilled
        return ReconciliationResult(
            on_chain_count,
            db_count,
            status,
            backfilled_count=backfilled,
            failed_addresses=tuple(failed),
        )

    async def find_missing_vaults(self) -> list[OnChainVault]:
        on_chain = await self._with_retry(self._source.list_vaults, "vault listing")
        async with self._db.get_async_session() as session:
            known = await VaultRepository(session).list_addresses()
        missing = [v for v in on_chain if v.vault_address.lower() not in known]
        logger.info(
            "Found %d missing vaults out of %d on-chain vaults", len(missing), len(on_chain)
        )
        return missing

    async def perform_backfill(self) -> tuple[int, list[str]]:
        """Insert vaults missing from the store. Per-vault failures are logged and skipped."""
        missing = await self.find_missing_vaults()
        backfilled = 0
        failed: list[str] = []
        for vault in missing:
            try:
                async with self._db.get_async_session() as session:
                    await VaultRepository(session).insert(
                        VaultDTO(
                            vault_address=vault.vault_address,
                            owner_address=vault.owner_address,
                            token_address=vault.token_address,
                            total_amount=vault.total_amount,
                            name=vault.name or f"Backfilled Vault {vault.vault_address[:8]}...",
                            created_block=vault.created_block,
                        )
                    )
            except Exception as e:
                logger.error("Error backfilling vault %s: %s", vault.vault_address, e)
                failed.append(vault.vault_address)
                continue
            backfilled += 1
            logger.info("Backfilled vault %s", vault.vault_address)
        return backfilled, failed

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        kwargs: dict[str, Any] = {"sleep": self._sleep} if self._sleep is not None else {}
        return await retry_async(
            operation, self._retry_policy, context=f"reconciliation {what}", service="ledger", **kwargs
        )
