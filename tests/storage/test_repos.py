"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vesting_ledger.storage.models import Base
from vesting_ledger.storage.repos import (
    BeneficiaryDTO,
    BeneficiaryRepository,
    ClaimDTO,
    ClaimRepository,
    IndexerStateRepository,
    ReconciliationEventDTO,
    ReconciliationEventRepository,
    SubScheduleDTO,
    SubScheduleRepository,
    VaultDTO,
    VaultRepository,
    ensure_utc,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def stored_vault(async_session: AsyncSession) -> VaultDTO:
    vault = await VaultRepository(async_session).insert(
        VaultDTO(
            vault_address="0x" + "A" * 40,
            owner_address="0x" + "2" * 40,
            token_address="0x" + "3" * 40,
            name="Seed",
        )
    )
    await async_session.commit()
    return vault


def make_claim(tx: str, block: int, *, price: str | None = None, at: datetime = T0) -> ClaimDTO:
    return ClaimDTO(
        user_address="0x" + "B" * 40,
        token_address="0x" + "3" * 40,
        amount_claimed=Decimal("10"),
        claim_timestamp=at,
        transaction_hash=tx,
        block_number=block,
        price_at_claim_usd=Decimal(price) if price is not None else None,
    )


def make_schedule(vault_id: int, tx: str, block: int, amount: str = "100") -> SubScheduleDTO:
    return SubScheduleDTO(
        vault_id=vault_id,
        amount=Decimal(amount),
        top_up_timestamp=T0,
        vesting_start=T0,
        vesting_duration=86400,
        transaction_hash=tx,
        block_number=block,
    )


# ============================================================================
# Helper Tests
# ============================================================================


def test_ensure_utc_attaches_timezone() -> None:
    assert ensure_utc(datetime(2026, 1, 1)) == T0
    assert ensure_utc(None) is None


# ============================================================================
# VaultRepository Tests
# ============================================================================


class TestVaultRepository:
    """Tests for VaultRepository."""

    @pytest.mark.asyncio
    async def test_get_by_address_not_found(self, async_session: AsyncSession) -> None:
        assert await VaultRepository(async_session).get_by_address("0x" + "0" * 40) is None

    @pytest.mark.asyncio
    async def test_insert_lowercases_and_finds_any_case(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        assert stored_vault.vault_address == "0x" + "a" * 40
        found = await VaultRepository(async_session).get_by_address("0x" + "A" * 40)
        assert found is not None
        assert found.id == stored_vault.id

    @pytest.mark.asyncio
    async def test_duplicate_address_rejected(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        with pytest.raises(IntegrityError):
            await VaultRepository(async_session).insert(
                VaultDTO(
                    vault_address=stored_vault.vault_address,
                    owner_address=stored_vault.owner_address,
                    token_address=stored_vault.token_address,
                )
            )

    @pytest.mark.asyncio
    async def test_deactivate_keeps_row_counted(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        repo = VaultRepository(async_session)
        assert await repo.deactivate(stored_vault.vault_address) is True
        assert await repo.deactivate(stored_vault.vault_address) is False
        await async_session.commit()

        assert await repo.get_by_address(stored_vault.vault_address) is None
        assert await repo.get_by_address(stored_vault.vault_address, active_only=False) is not None
        assert await repo.count() == 1
        assert await repo.list_addresses() == {stored_vault.vault_address}

    @pytest.mark.asyncio
    async def test_set_and_clear_delegate(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        repo = VaultRepository(async_session)
        assert stored_vault.delegate_address is None

        await repo.set_delegate(stored_vault.id, "0x" + "E" * 40)
        await async_session.commit()
        async_session.expire_all()
        found = await repo.get_by_address(stored_vault.vault_address)
        assert found is not None
        assert found.delegate_address == "0x" + "e" * 40

        await repo.set_delegate(stored_vault.id, None)
        await async_session.commit()
        async_session.expire_all()
        found = await repo.get_by_address(stored_vault.vault_address)
        assert found is not None
        assert found.delegate_address is None

    @pytest.mark.asyncio
    async def test_total_value_locked_counts_active_only(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        repo = VaultRepository(async_session)
        assert stored_vault.id > 0
        await repo.add_to_total(stored_vault.id, Decimal("250"))
        await repo.insert(
            VaultDTO(
                vault_address="0x" + "c" * 40,
                owner_address="0x" + "2" * 40,
                token_address="0x" + "3" * 40,
                total_amount=Decimal("75"),
                is_active=False,
            )
        )
        await async_session.commit()

        total, active = await repo.total_value_locked()
        assert total == Decimal("250")
        assert active == 1


# ============================================================================
# SubScheduleRepository Tests
# ============================================================================


class TestSubScheduleRepository:
    """Tests for SubScheduleRepository."""

    @pytest.mark.asyncio
    async def test_unique_transaction_hash(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        repo = SubScheduleRepository(async_session)
        assert stored_vault.id > 0
        await repo.insert(make_schedule(stored_vault.id, "0x" + "1" * 64, 10))
        with pytest.raises(IntegrityError):
            await repo.insert(make_schedule(stored_vault.id, "0x" + "1" * 64, 11))

    @pytest.mark.asyncio
    async def test_amounts_and_delete_after_block(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        repo = SubScheduleRepository(async_session)
        assert stored_vault.id > 0
        await repo.insert(make_schedule(stored_vault.id, "0x" + "1" * 64, 90, "100"))
        await repo.insert(make_schedule(stored_vault.id, "0x" + "2" * 64, 105, "40"))
        await repo.insert(make_schedule(stored_vault.id, "0x" + "3" * 64, 110, "2"))
        await async_session.commit()

        assert await repo.amounts_after_block(100) == {stored_vault.id: Decimal("42")}
        assert await repo.delete_after_block(100) == 2
        await async_session.commit()
        remaining = await repo.list_for_vault(stored_vault.id)
        assert [s.block_number for s in remaining] == [90]

    @pytest.mark.asyncio
    async def test_add_released(self, async_session: AsyncSession, stored_vault: VaultDTO) -> None:
        repo = SubScheduleRepository(async_session)
        assert stored_vault.id > 0
        schedule = await repo.insert(make_schedule(stored_vault.id, "0x" + "1" * 64, 10))
        assert schedule.id > 0
        await repo.add_released(schedule.id, Decimal("30"))
        await async_session.commit()

        found = await repo.get_by_transaction_hash("0x" + "1" * 64)
        assert found is not None
        assert found.amount_released == Decimal("30")


# ============================================================================
# BeneficiaryRepository Tests
# ============================================================================


class TestBeneficiaryRepository:
    """Tests for BeneficiaryRepository."""

    @pytest.mark.asyncio
    async def test_get_and_add_withdrawn(
        self, async_session: AsyncSession, stored_vault: VaultDTO
    ) -> None:
        repo = BeneficiaryRepository(async_session)
        assert stored_vault.id > 0
        beneficiary = await repo.insert(
            BeneficiaryDTO(
                vault_id=stored_vault.id, address="0x" + "B" * 40, total_allocated=Decimal("500")
            )
        )
        assert beneficiary.id > 0
        await repo.add_withdrawn(beneficiary.id, Decimal("120"))
        await async_session.commit()

        found = await repo.get(stored_vault.id, "0x" + "b" * 40)
        assert found is not None
        assert found.total_withdrawn == Decimal("120")
        assert len(await repo.list_for_vault(stored_vault.id)) == 1


# ============================================================================
# ClaimRepository Tests
# ============================================================================


class TestClaimRepository:
    """Tests for ClaimRepository."""

    @pytest.mark.asyncio
    async def test_unique_transaction_hash(self, async_session: AsyncSession) -> None:
        repo = ClaimRepository(async_session)
        await repo.insert(make_claim("0x" + "1" * 64, 1))
        with pytest.raises(IntegrityError):
            await repo.insert(make_claim("0x" + "1" * 64, 2))

    @pytest.mark.asyncio
    async def test_set_price_only_once(self, async_session: AsyncSession) -> None:
        repo = ClaimRepository(async_session)
        claim = await repo.insert(make_claim("0x" + "1" * 64, 1))
        assert claim.id > 0

        assert await repo.set_price(claim.id, Decimal("2.5")) is True
        assert await repo.set_price(claim.id, Decimal("9")) is False
        await async_session.commit()

        found = await repo.get_by_transaction_hash("0x" + "1" * 64)
        assert found is not None
        assert found.price_at_claim_usd == Decimal("2.5")
        assert found.value_usd == Decimal("25")

    @pytest.mark.asyncio
    async def test_list_missing_price_oldest_first(self, async_session: AsyncSession) -> None:
        repo = ClaimRepository(async_session)
        await repo.insert(make_claim("0x" + "1" * 64, 1, at=T0 + timedelta(days=2)))
        await repo.insert(make_claim("0x" + "2" * 64, 2, at=T0))
        await repo.insert(make_claim("0x" + "3" * 64, 3, price="1"))
        await async_session.commit()

        pending = await repo.list_missing_price(limit=10)
        assert [c.block_number for c in pending] == [2, 1]
        assert len(await repo.list_missing_price(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_list_priced_for_user_window(self, async_session: AsyncSession) -> None:
        repo = ClaimRepository(async_session)
        await repo.insert(make_claim("0x" + "1" * 64, 1, price="1", at=T0))
        await repo.insert(make_claim("0x" + "2" * 64, 2, price="1", at=T0 + timedelta(days=10)))
        await repo.insert(make_claim("0x" + "3" * 64, 3, at=T0 + timedelta(days=1)))
        await async_session.commit()

        priced = await repo.list_priced_for_user("0x" + "b" * 40)
        assert [c.block_number for c in priced] == [1, 2]
        windowed = await repo.list_priced_for_user(
            "0x" + "b" * 40, start=T0 + timedelta(days=5)
        )
        assert [c.block_number for c in windowed] == [2]


# ============================================================================
# IndexerStateRepository / ReconciliationEventRepository Tests
# ============================================================================


class TestIndexerStateRepository:
    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, async_session: AsyncSession) -> None:
        repo = IndexerStateRepository(async_session)
        assert await repo.get("svc") is None

        await repo.upsert("svc", last_ingested_ledger=10, last_ingested_hash="0xabc")
        await repo.upsert("svc", last_ingested_ledger=12, last_ingested_hash=None)
        await async_session.commit()

        state = await repo.get("svc")
        assert state is not None
        assert state.last_ingested_ledger == 12
        assert state.last_ingested_hash is None


class TestReconciliationEventRepository:
    @pytest.mark.asyncio
    async def test_insert_and_update_status(self, async_session: AsyncSession) -> None:
        repo = ReconciliationEventRepository(async_session)
        event = await repo.insert(
            ReconciliationEventDTO(
                on_chain_count=5, db_count=3, mismatch=2, status="backfill_triggered"
            )
        )
        assert event.id > 0
        await repo.update_status(event.id, status="backfill_completed", backfilled_count=2)
        await async_session.commit()

        recent = await repo.list_recent()
        assert len(recent) == 1
        assert recent[0].status == "backfill_completed"
        assert recent[0].backfilled_count == 2
