"""Ingestion cursor and reorg rollback.

The cursor (`indexer_state.last_ingested_ledger`) only moves forward
during normal ingestion. Moving it back is reserved for
`rollback_to_ledger`, which also deletes every claim and top-up recorded
above the target ledger in the same transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vesting_ledger.errors import InvalidVestingInputError, LedgerCursorError, RollbackError
from vesting_ledger.jobs.locks import JobLocks
from vesting_ledger.storage.repos import (
    ClaimRepository,
    IndexerStateDTO,
    IndexerStateRepository,
    SubScheduleRepository,
    VaultRepository,
)

if TYPE_CHECKING:
    from vesting_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "ledger-indexer"


@dataclass(frozen=True)
class RollbackResult:
    deleted_claims: int
    deleted_schedules: int
    new_head: int


class IndexerStateTracker:
    """Reads and moves one indexing service's cursor."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        service_name: str = DEFAULT_SERVICE_NAME,
        locks: JobLocks | None = None,
    ) -> None:
        self._db = db
        self.service_name = service_name
        self._locks = locks or JobLocks()

    @property
    def lock_name(self) -> str:
        return f"indexer:{self.service_name}"

    async def get_state(self) -> IndexerStateDTO | None:
        async with self._db.get_async_session() as session:
            return await IndexerStateRepository(session).get(self.service_name)

    async def get_last_ingested_ledger(self) -> int:
        state = await self.get_state()
        return state.last_ingested_ledger if state else 0

    async def advance_to(self, sequence: int, ledger_hash: str | None = None) -> IndexerStateDTO:
        """Move the cursor forward to `sequence`.

        Re-advancing to the current sequence only refreshes the stored hash.

        Raises:
            LedgerCursorError: If `sequence` is below the current cursor.
        """
        if sequence < 0:
            raise InvalidVestingInputError(f"Ledger sequence must be >= 0, got {sequence}")

        async with self._locks.get(self.lock_name).hold():
            async with self._db.get_async_session() as session:
                repo = IndexerStateRepository(session)
                current = await repo.get(self.service_name, for_update=True)
                if current is not None and sequence < current.last_ingested_ledger:
                    logger.error(
                        "Rejected backward cursor move for %s: %d -> %d",
                        self.service_name,
                        current.last_ingested_ledger,
                        sequence,
                    )
                    raise LedgerCursorError(
                        self.service_name, current.last_ingested_ledger, sequence
                    )
                state = await repo.upsert(
                    self.service_name,
                    last_ingested_ledger=sequence,
                    last_ingested_hash=ledger_hash.lower() if ledger_hash else None,
                )

        logger.debug("Cursor for %s advanced to %d", self.service_name, sequence)
        return state

    async def rollback_to_ledger(self, target_sequence: int) -> RollbackResult:
        """Undo everything ingested above `target_sequence`.

        Claims and sub-schedules from later ledgers are deleted, their
        amounts are taken off the vault totals, and the cursor is set to the
        target. All of it commits together or not at all.

        Raises:
            JobLockedError: If another rollback or advance is in progress.
            RollbackError: If any step failed; nothing was changed.
        """
        if target_sequence < 0:
            raise InvalidVestingInputError(
                f"Rollback target must be >= 0, got {target_sequence}"
            )

        logger.info("Starting rollback of %s to ledger %d", self.service_name, target_sequence)

        async with self._locks.get(self.lock_name).hold():
            try:
                async with self._db.get_async_session() as session:
                    schedules = SubScheduleRepository(session)
                    vaults = VaultRepository(session)

                    deleted_claims = await ClaimRepository(session).delete_after_block(
                        target_sequence
                    )

                    removed_amounts = await schedules.amounts_after_block(target_sequence)
                    deleted_schedules = await schedules.delete_after_block(target_sequence)
                    for vault_id, amount in removed_amounts.items():
                        await vaults.add_to_total(vault_id, -amount)

                    await IndexerStateRepository(session).upsert(
                        self.service_name,
                        last_ingested_ledger=target_sequence,
                        last_ingested_hash=None,
                    )
            except Exception as e:
                logger.error("Rollback to ledger %d failed: %s", target_sequence, e)
                raise RollbackError(target_sequence, e) from e

        logger.info(
            "Rollback complete: %d claims, %d sub-schedules removed; %s now at ledger %d",
            deleted_claims,
            deleted_schedules,
            self.service_name,
            target_sequence,
        )
        return RollbackResult(
            deleted_claims=deleted_claims,
            deleted_schedules=deleted_schedules,
            new_head=target_sequence,
        )
