"""Tests for the ingestion cursor and rollback."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from vesting_ledger.errors import (
    InvalidVestingInputError,
    JobLockedError,
    LedgerCursorError,
    RollbackError,
)
from vesting_ledger.indexer.state import IndexerStateTracker
from vesting_ledger.jobs.locks import JobLocks
from vesting_ledger.storage.database import DatabaseManager
from vesting_ledger.storage.repos import (
    ClaimDTO,
    ClaimRepository,
    IndexerStateRepository,
    SubScheduleRepository,
    VaultRepository,
)
from vesting_ledger.vesting.models import TopUpRequest
from vesting_ledger.vesting.service import VestingService

T0 = datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture
def tracker(db: DatabaseManager) -> IndexerStateTracker:
    return IndexerStateTracker(db, service_name="test-indexer")


async def insert_claim(db: DatabaseManager, block: int) -> None:
    async with db.get_async_session() as session:
        await ClaimRepository(session).insert(
            ClaimDTO(
                user_address="0x" + "b" * 40,
                token_address="0x" + "3" * 40,
                amount_claimed=Decimal("5"),
                claim_timestamp=T0,
                transaction_hash=f"0x{block:064x}",
                block_number=block,
            )
        )


async def seed_vault_history(
    db: DatabaseManager, vault_address: str, owner_address: str, token_address: str
):
    """Top-ups at blocks 90 and 105, claims at blocks 105 and 110."""
    vesting = VestingService(db)
    vault = await vesting.create_vault(vault_address, owner_address, token_address)
    for block, amount in ((90, "1000"), (105, "300")):
        await vesting.create_top_up(
            TopUpRequest(
                vault_address=vault_address,
                amount=Decimal(amount),
                vesting_duration=86400,
                transaction_hash=f"0x{block:064x}",
                block_number=block,
                top_up_timestamp=T0,
            )
        )
    await insert_claim(db, 105)
    await insert_claim(db, 110)
    return vault


class TestCursor:
    @pytest.mark.asyncio
    async def test_defaults_to_zero(self, tracker: IndexerStateTracker) -> None:
        assert await tracker.get_last_ingested_ledger() == 0
        assert await tracker.get_state() is None

    @pytest.mark.asyncio
    async def test_advance_moves_forward(self, tracker: IndexerStateTracker) -> None:
        await tracker.advance_to(10, "0xAB")
        state = await tracker.advance_to(15, "0xcd")

        assert state.last_ingested_ledger == 15
        assert state.last_ingested_hash == "0xcd"
        assert await tracker.get_last_ingested_ledger() == 15

    @pytest.mark.asyncio
    async def test_backward_advance_rejected(self, tracker: IndexerStateTracker) -> None:
        await tracker.advance_to(20)
        with pytest.raises(LedgerCursorError) as exc_info:
            await tracker.advance_to(19)

        assert exc_info.value.current == 20
        assert await tracker.get_last_ingested_ledger() == 20

    @pytest.mark.asyncio
    async def test_same_sequence_refreshes_hash(self, tracker: IndexerStateTracker) -> None:
        await tracker.advance_to(20, "0xaa")
        state = await tracker.advance_to(20, "0xbb")
        assert state.last_ingested_hash == "0xbb"

    @pytest.mark.asyncio
    async def test_services_are_independent(self, db: DatabaseManager) -> None:
        await IndexerStateTracker(db, service_name="a").advance_to(50)
        assert await IndexerStateTracker(db, service_name="b").get_last_ingested_ledger() == 0


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_deletes_later_records(
        self,
        db: DatabaseManager,
        tracker: IndexerStateTracker,
        vault_address: str,
        owner_address: str,
        token_address: str,
    ) -> None:
        vault = await seed_vault_history(db, vault_address, owner_address, token_address)
        await tracker.advance_to(120, "0xfeed")

        result = await tracker.rollback_to_ledger(100)

        assert result.deleted_claims == 2
        assert result.deleted_schedules == 1
        assert result.new_head == 100
        state = await tracker.get_state()
        assert state is not None
        assert state.last_ingested_ledger == 100
        assert state.last_ingested_hash is None
        async with db.get_async_session() as session:
            assert await ClaimRepository(session).count() == 0
            assert vault.id > 0
            schedules = await SubScheduleRepository(session).list_for_vault(vault.id)
            stored = await VaultRepository(session).get_by_address(vault_address)
        assert [s.block_number for s in schedules] == [90]
        assert stored is not None
        assert stored.total_amount == Decimal("1000")

    @pytest.mark.asyncio
    async def test_failed_step_leaves_state_unchanged(
        self,
        db: DatabaseManager,
        tracker: IndexerStateTracker,
        monkeypatch: pytest.MonkeyPatch,
        vault_address: str,
        owner_address: str,
        token_address: str,
    ) -> None:
        vault = await seed_vault_history(db, vault_address, owner_address, token_address)
        await tracker.advance_to(120, "0xfeed")

        async def failing_upsert(self, *args, **kwargs):
            raise RuntimeError("connection lost")

        monkeypatch.setattr(IndexerStateRepository, "upsert", failing_upsert)

        with pytest.raises(RollbackError) as exc_info:
            await tracker.rollback_to_ledger(100)

        assert exc_info.value.target_sequence == 100
        state = await tracker.get_state()
        assert state is not None
        assert state.last_ingested_ledger == 120
        assert state.last_ingested_hash == "0xfeed"
        async with db.get_async_session() as session:
            assert await ClaimRepository(session).count() == 2
            schedules = await SubScheduleRepository(session).list_for_vault(vault.id)
            stored = await VaultRepository(session).get_by_address(vault_address)
        assert sorted(s.block_number for s in schedules) == [90, 105]
        assert stored is not None
        assert stored.total_amount == Decimal("1300")

    @pytest.mark.asyncio
    async def test_rollback_is_idempotent(self, db: DatabaseManager, tracker: IndexerStateTracker) -> None:
        await insert_claim(db, 105)
        await tracker.advance_to(120)

        await tracker.rollback_to_ledger(100)
        again = await tracker.rollback_to_ledger(100)

        assert again.deleted_claims == 0
        assert await tracker.get_last_ingested_ledger() == 100

    @pytest.mark.asyncio
    async def test_then_advance_forward_again(self, tracker: IndexerStateTracker) -> None:
        await tracker.advance_to(120)
        await tracker.rollback_to_ledger(100)
        state = await tracker.advance_to(101)
        assert state.last_ingested_ledger == 101

    @pytest.mark.asyncio
    async def test_negative_target_rejected(self, tracker: IndexerStateTracker) -> None:
        with pytest.raises(InvalidVestingInputError):
            await tracker.rollback_to_ledger(-1)

    @pytest.mark.asyncio
    async def test_rollback_refused_while_locked(self, db: DatabaseManager) -> None:
        locks = JobLocks()
        tracker = IndexerStateTracker(db, service_name="locked", locks=locks)

        async with locks.get(tracker.lock_name).hold():
            with pytest.raises(JobLockedError):
                await tracker.rollback_to_ledger(0)
