"""Repository pattern implementations for data access.

This module provides data access abstractions for vaults, sub-schedules,
beneficiaries, claims, the indexer cursor and reconciliation events. All
repositories work on a caller-supplied AsyncSession so several of them can
share one transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy import delete, select, update

from vesting_ledger.storage.models import (
    BeneficiaryModel,
    ClaimModel,
    IndexerStateModel,
    ReconciliationEventModel,
    SubScheduleModel,
    VaultModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset on round-trip)."""
    return _utc(value) if value is not None else None


# ============================================================================
# DTOs (id is 0 until the row has been inserted)
# ============================================================================


@dataclass
class VaultDTO:
    """Data transfer object for vaults."""

    vault_address: str
    owner_address: str
    token_address: str
    total_amount: Decimal = ZERO
    is_active: bool = True
    name: str | None = None
    created_block: int | None = None
    delegate_address: str | None = None
    id: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: VaultModel) -> VaultDTO:
        return cls(
            id=model.id,
            vault_address=model.vault_address,
            owner_address=model.owner_address,
            token_address=model.token_address,
            total_amount=model.total_amount,
            is_active=model.is_active,
            name=model.name,
            created_block=model.created_block,
            delegate_address=model.delegate_address,
            created_at=ensure_utc(model.created_at),
        )


@dataclass
class SubScheduleDTO:
    """Data transfer object for top-up sub-schedules."""

    vault_id: int
    amount: Decimal
    top_up_timestamp: datetime
    vesting_start: datetime
    vesting_duration: int
    transaction_hash: str
    block_number: int
    cliff_duration: int | None = None
    cliff_date: datetime | None = None
    amount_released: Decimal = ZERO
    id: int = 0

    @classmethod
    def from_model(cls, model: SubScheduleModel) -> SubScheduleDTO:
        return cls(
            id=model.id,
            vault_id=model.vault_id,
            amount=model.amount,
            cliff_duration=model.cliff_duration,
            cliff_date=ensure_utc(model.cliff_date),
            top_up_timestamp=_utc(model.top_up_timestamp),
            vesting_start=_utc(model.vesting_start),
            vesting_duration=model.vesting_duration,
            amount_released=model.amount_released,
            transaction_hash=model.transaction_hash,
            block_number=model.block_number,
        )


@dataclass
class BeneficiaryDTO:
    """Data transfer object for beneficiaries."""

    vault_id: int
    address: str
    total_allocated: Decimal
    total_withdrawn: Decimal = ZERO
    id: int = 0

    @classmethod
    def from_model(cls, model: BeneficiaryModel) -> BeneficiaryDTO:
        return cls(
            id=model.id,
            vault_id=model.vault_id,
            address=model.address,
            total_allocated=model.total_allocated,
            total_withdrawn=model.total_withdrawn,
        )


@dataclass
class ClaimDTO:
    """Data transfer object for claims."""

    user_address: str
    token_address: str
    amount_claimed: Decimal
    claim_timestamp: datetime
    transaction_hash: str
    block_number: int
    price_at_claim_usd: Decimal | None = None
    id: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ClaimModel) -> ClaimDTO:
        return cls(
            id=model.id,
            user_address=model.user_address,
            token_address=model.token_address,
            amount_claimed=model.amount_claimed,
            claim_timestamp=_utc(model.claim_timestamp),
            transaction_hash=model.transaction_hash,
            block_number=model.block_number,
            price_at_claim_usd=model.price_at_claim_usd,
            created_at=ensure_utc(model.created_at),
        )

    @property
    def value_usd(self) -> Decimal | None:
        if self.price_at_claim_usd is None:
            return None
        return self.amount_claimed * self.price_at_claim_usd

    def to_dict(self) -> dict[str, object]:
        return {
            "user_address": self.user_address,
            "token_address": self.token_address,
            "amount_claimed": str(self.amount_claimed),
            "claim_timestamp": self.claim_timestamp.isoformat(),
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "price_at_claim_usd": (
                str(self.price_at_claim_usd) if self.price_at_claim_usd is not None else None
            ),
        }


@dataclass
class IndexerStateDTO:
    """Data transfer object for the indexer cursor."""

    service_name: str
    last_ingested_ledger: int
    last_ingested_hash: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IndexerStateModel) -> IndexerStateDTO:
        return cls(
            service_name=model.service_name,
            last_ingested_ledger=model.last_ingested_ledger,
            last_ingested_hash=model.last_ingested_hash,
            updated_at=ensure_utc(model.updated_at),
        )


@dataclass
class ReconciliationEventDTO:
    """Data transfer object for reconciliation audit rows."""

    on_chain_count: int
    db_count: int
    mismatch: int
    status: str
    backfilled_count: int = 0
    error: str | None = None
    id: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ReconciliationEventModel) -> ReconciliationEventDTO:
        return cls(
            id=model.id,
            on_chain_count=model.on_chain_count,
            db_count=model.db_count,
            mismatch=model.mismatch,
            status=model.status,
            backfilled_count=model.backfilled_count,
            error=model.error,
            created_at=ensure_utc(model.created_at),
        )


# ============================================================================
# Repositories
# ============================================================================


class VaultRepository:
    """Repository for vault data access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_address(
        self, vault_address: str, *, active_only: bool = True, for_update: bool = False
    ) -> VaultDTO | None:
        stmt = select(VaultModel).where(VaultModel.vault_address == vault_address.lower())
        if active_only:
            stmt = stmt.where(VaultModel.is_active.is_(True))
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return VaultDTO.from_model(model) if model else None

    async def get_by_id(self, vault_id: int) -> VaultDTO | None:
        model = await self.session.get(VaultModel, vault_id)
        return VaultDTO.from_model(model) if model else None

    async def insert(self, dto: VaultDTO) -> VaultDTO:
        """Insert a new vault.

        Raises:
            IntegrityError if the vault address already exists.
        """
        model = VaultModel(
            vault_address=dto.vault_address.lower(),
            owner_address=dto.owner_address.lower(),
            token_address=dto.token_address.lower(),
            name=dto.name,
            total_amount=dto.total_amount,
            is_active=dto.is_active,
            created_block=dto.created_block,
        )
        self.session.add(model)
        await self.session.flush()
        return VaultDTO.from_model(model)

    async def add_to_total(self, vault_id: int, delta: Decimal) -> None:
        await self.session.execute(
            update(VaultModel)
            .where(VaultModel.id == vault_id)
            .values(total_amount=VaultModel.total_amount + delta, updated_at=datetime.now(UTC))
        )

    async def set_delegate(self, vault_id: int, delegate_address: str | None) -> None:
        await self.session.execute(
            update(VaultModel)
            .where(VaultModel.id == vault_id)
            .values(
                delegate_address=delegate_address.lower() if delegate_address else None,
                updated_at=datetime.now(UTC),
            )
        )

    async def deactivate(self, vault_address: str) -> bool:
        result = await self.session.execute(
            update(VaultModel)
            .where(VaultModel.vault_address == vault_address.lower())
            .where(VaultModel.is_active.is_(True))
            .values(is_active=False, updated_at=datetime.now(UTC))
        )
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def count(self) -> int:
        """Count every vault, active or not (the ledger never forgets a vault)."""
        result = await self.session.execute(select(sa.func.count()).select_from(VaultModel))
        return int(result.scalar_one())

    async def list_addresses(self) -> set[str]:
        result = await self.session.execute(select(VaultModel.vault_address))
        return {row[0] for row in result.all()}

    async def total_value_locked(self) -> tuple[Decimal, int]:
        """Sum of active vault totals and the number of active vaults."""
        result = await self.session.execute(
            select(
                sa.func.coalesce(sa.func.sum(VaultModel.total_amount), 0),
                sa.func.count(VaultModel.id),
            ).where(VaultModel.is_active.is_(True))
        )
        total, count = result.one()
        return Decimal(str(total)), int(count)


class SubScheduleRepository:
    """Repository for top-up sub-schedules."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: SubScheduleDTO) -> SubScheduleDTO:
        """Insert a sub-schedule.

        Raises:
            IntegrityError if the top-up transaction hash already exists.
        """
        model = SubScheduleModel(
            vault_id=dto.vault_id,
            amount=dto.amount,
            cliff_duration=dto.cliff_duration,
            cliff_date=dto.cliff_date,
            top_up_timestamp=dto.top_up_timestamp,
            vesting_start=dto.vesting_start,
            vesting_duration=dto.vesting_duration,
            amount_released=dto.amount_released,
            transaction_hash=dto.transaction_hash.lower(),
            block_number=dto.block_number,
        )
        self.session.add(model)
        await self.session.flush()
        return SubScheduleDTO.from_model(model)

    async def get_by_transaction_hash(self, transaction_hash: str) -> SubScheduleDTO | None:
        result = await self.session.execute(
            select(SubScheduleModel).where(
                SubScheduleModel.transaction_hash == transaction_hash.lower()
            )
        )
        model = result.scalar_one_or_none()
        return SubScheduleDTO.from_model(model) if model else None

    async def list_for_vault(self, vault_id: int, *, for_update: bool = False) -> list[SubScheduleDTO]:
        """Sub-schedules of a vault in creation order (oldest first)."""
        stmt = (
            select(SubScheduleModel)
            .where(SubScheduleModel.vault_id == vault_id)
            .order_by(SubScheduleModel.top_up_timestamp.asc(), SubScheduleModel.id.asc())
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return [SubScheduleDTO.from_model(m) for m in result.scalars().all()]

    async def add_released(self, schedule_id: int, delta: Decimal) -> None:
        await self.session.execute(
            update(SubScheduleModel)
            .where(SubScheduleModel.id == schedule_id)
            .values(
                amount_released=SubScheduleModel.amount_released + delta,
                updated_at=datetime.now(UTC),
            )
        )

    async def amounts_after_block(self, block_number: int) -> dict[int, Decimal]:
        """Deposited amount per vault for sub-schedules above a block."""
        result = await self.session.execute(
            select(SubScheduleModel.vault_id, SubScheduleModel.amount).where(
                SubScheduleModel.block_number > block_number
            )
        )
        totals: dict[int, Decimal] = defaultdict(lambda: ZERO)
        for vault_id, amount in result.all():
            totals[vault_id] += Decimal(str(amount))
        return dict(totals)

    async def delete_after_block(self, block_number: int) -> int:
        result = await self.session.execute(
            delete(SubScheduleModel).where(SubScheduleModel.block_number > block_number)
        )
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


class BeneficiaryRepository:
    """Repository for vault beneficiaries."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: BeneficiaryDTO) -> BeneficiaryDTO:
        model = BeneficiaryModel(
            vault_id=dto.vault_id,
            address=dto.address.lower(),
            total_allocated=dto.total_allocated,
            total_withdrawn=dto.total_withdrawn,
        )
        self.session.add(model)
        await self.session.flush()
        return BeneficiaryDTO.from_model(model)

    async def get(
        self, vault_id: int, address: str, *, for_update: bool = False
    ) -> BeneficiaryDTO | None:
        stmt = select(BeneficiaryModel).where(
            (BeneficiaryModel.vault_id == vault_id)
            & (BeneficiaryModel.address == address.lower())
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return BeneficiaryDTO.from_model(model) if model else None

    async def list_for_vault(self, vault_id: int) -> list[BeneficiaryDTO]:
        result = await self.session.execute(
            select(BeneficiaryModel)
            .where(BeneficiaryModel.vault_id == vault_id)
            .order_by(BeneficiaryModel.id.asc())
        )
        return [BeneficiaryDTO.from_model(m) for m in result.scalars().all()]

    async def add_withdrawn(self, beneficiary_id: int, amount: Decimal) -> None:
        await self.session.execute(
            update(BeneficiaryModel)
            .where(BeneficiaryModel.id == beneficiary_id)
            .values(
                total_withdrawn=BeneficiaryModel.total_withdrawn + amount,
                updated_at=datetime.now(UTC),
            )
        )


class ClaimRepository:
    """Repository for claim history."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_transaction_hash(self, transaction_hash: str) -> ClaimDTO | None:
        result = await self.session.execute(
            select(ClaimModel).where(ClaimModel.transaction_hash == transaction_hash.lower())
        )
        model = result.scalar_one_or_none()
        return ClaimDTO.from_model(model) if model else None

    async def insert(self, dto: ClaimDTO) -> ClaimDTO:
        """Insert a claim.

        Raises:
            IntegrityError if the transaction hash already exists.
        """
        model = ClaimModel(
            user_address=dto.user_address.lower(),
            token_address=dto.token_address.lower(),
            amount_claimed=dto.amount_claimed,
            claim_timestamp=dto.claim_timestamp,
            transaction_hash=dto.transaction_hash.lower(),
            block_number=dto.block_number,
            price_at_claim_usd=dto.price_at_claim_usd,
        )
        self.session.add(model)
        await self.session.flush()
        return ClaimDTO.from_model(model)

    async def count(self) -> int:
        result = await self.session.execute(select(sa.func.count()).select_from(ClaimModel))
        return int(result.scalar_one())

    async def list_missing_price(self, *, limit: int) -> list[ClaimDTO]:
        result = await self.session.execute(
            select(ClaimModel)
            .where(ClaimModel.price_at_claim_usd.is_(None))
            .order_by(ClaimModel.claim_timestamp.asc())
            .limit(limit)
        )
        return [ClaimDTO.from_model(m) for m in result.scalars().all()]

    async def set_price(self, claim_id: int, price: Decimal) -> bool:
        """Set the price of a claim that has none yet. Priced claims are immutable."""
        result = await self.session.execute(
            update(ClaimModel)
            .where(ClaimModel.id == claim_id)
            .where(ClaimModel.price_at_claim_usd.is_(None))
            .values(price_at_claim_usd=price, updated_at=datetime.now(UTC))
        )
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_priced_for_user(
        self,
        user_address: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ClaimDTO]:
        stmt = select(ClaimModel).where(
            (ClaimModel.user_address == user_address.lower())
            & ClaimModel.price_at_claim_usd.is_not(None)
        )
        if start is not None:
            stmt = stmt.where(ClaimModel.claim_timestamp >= start)
        if end is not None:
            stmt = stmt.where(ClaimModel.claim_timestamp <= end)
        result = await self.session.execute(stmt.order_by(ClaimModel.claim_timestamp.asc()))
        return [ClaimDTO.from_model(m) for m in result.scalars().all()]

    async def delete_after_block(self, block_number: int) -> int:
        result = await self.session.execute(
            delete(ClaimModel).where(ClaimModel.block_number > block_number)
        )
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


class IndexerStateRepository:
    """Repository for the per-service ingestion cursor."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, service_name: str, *, for_update: bool = False) -> IndexerStateDTO | None:
        stmt = select(IndexerStateModel).where(IndexerStateModel.service_name == service_name)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return IndexerStateDTO.from_model(model) if model else None

    async def upsert(
        self, service_name: str, *, last_ingested_ledger: int, last_ingested_hash: str | None
    ) -> IndexerStateDTO:
        model = await self.session.get(IndexerStateModel, service_name)
        if model is None:
            model = IndexerStateModel(
                service_name=service_name,
                last_ingested_ledger=last_ingested_ledger,
                last_ingested_hash=last_ingested_hash,
            )
            self.session.add(model)
        else:
            model.last_ingested_ledger = last_ingested_ledger
            model.last_ingested_hash = last_ingested_hash
            model.updated_at = datetime.now(UTC)
        await self.session.flush()
        return IndexerStateDTO.from_model(model)


class ReconciliationEventRepository:
    """Repository for reconciliation audit rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: ReconciliationEventDTO) -> ReconciliationEventDTO:
        model = ReconciliationEventModel(
            on_chain_count=dto.on_chain_count,
            db_count=dto.db_count,
            mismatch=dto.mismatch,
            status=dto.status,
            backfilled_count=dto.backfilled_count,
            error=dto.error,
        )
        self.session.add(model)
        await self.session.flush()
        return ReconciliationEventDTO.from_model(model)

    async def update_status(
        self, event_id: int, *, status: str, backfilled_count: int, error: str | None = None
    ) -> None:
        await self.session.execute(
            update(ReconciliationEventModel)
            .where(ReconciliationEventModel.id == event_id)
            .values(status=status, backfilled_count=backfilled_count, error=error)
        )

    async def list_recent(self, *, limit: int = 20) -> list[ReconciliationEventDTO]:
        result = await self.session.execute(
            select(ReconciliationEventModel)
            .order_by(ReconciliationEventModel.created_at.desc(), ReconciliationEventModel.id.desc())
            .limit(limit)
        )
        return [ReconciliationEventDTO.from_model(m) for m in result.scalars().all()]
