"""SQLAlchemy models for persistent storage.

This module defines the database schema for vaults, their top-up
sub-schedules and beneficiaries, claim history, the indexer cursor and the
reconciliation audit trail.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Token amounts carry 18 decimals, matching on-chain uint256 fixed point.
AMOUNT = Numeric(36, 18)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class VaultModel(Base):
    """A vesting vault mirrored from the ledger. Never deleted, only deactivated."""

    __tablename__ = "vaults"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vault_address: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    owner_address: Mapped[str] = mapped_column(String(66), nullable=False)
    token_address: Mapped[str] = mapped_column(String(66), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Address the owner authorised to trigger releases on its behalf.
    delegate_address: Mapped[str | None] = mapped_column(String(66), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    sub_schedules: Mapped[list[SubScheduleModel]] = relationship(
        back_populates="vault",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    beneficiaries: Mapped[list[BeneficiaryModel]] = relationship(
        back_populates="vault",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_vaults_owner", "owner_address"),
        Index("idx_vaults_token", "token_address"),
        Index("idx_vaults_delegate", "delegate_address"),
    )


class SubScheduleModel(Base):
    """One top-up deposit with its own cliff and linear vesting terms."""

    __tablename__ = "sub_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vault_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("vaults.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    cliff_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds
    cliff_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    top_up_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    vesting_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    vesting_duration: Mapped[int] = mapped_column(Integer, nullable=False)  # seconds
    amount_released: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))

    transaction_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    vault: Mapped[VaultModel] = relationship(back_populates="sub_schedules")

    __table_args__ = (
        Index("idx_sub_schedules_vault", "vault_id"),
        Index("idx_sub_schedules_block", "block_number"),
    )


class BeneficiaryModel(Base):
    """A beneficiary's allocation from a vault."""

    __tablename__ = "beneficiaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vault_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("vaults.id", ondelete="CASCADE"), nullable=False
    )
    address: Mapped[str] = mapped_column(String(66), nullable=False)
    total_allocated: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))
    total_withdrawn: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    vault: Mapped[VaultModel] = relationship(back_populates="beneficiaries")

    __table_args__ = (
        UniqueConstraint("vault_id", "address", name="uq_beneficiaries_vault_address"),
        Index("idx_beneficiaries_address", "address"),
    )


class ClaimModel(Base):
    """An on-chain claim. The transaction hash is the idempotency key."""

    __tablename__ = "claims_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_address: Mapped[str] = mapped_column(String(66), nullable=False)
    token_address: Mapped[str] = mapped_column(String(66), nullable=False)
    amount_claimed: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    claim_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_at_claim_usd: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_claims_user", "user_address"),
        Index("idx_claims_token", "token_address"),
        Index("idx_claims_timestamp", "claim_timestamp"),
        Index("idx_claims_block", "block_number"),
    )


class IndexerStateModel(Base):
    """Ingestion cursor, one row per indexing service."""

    __tablename__ = "indexer_state"

    service_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_ingested_ledger: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_ingested_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class ReconciliationEventModel(Base):
    """Audit trail of vault-count mismatches and the backfills they triggered."""

    __tablename__ = "reconciliation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    on_chain_count: Mapped[int] = mapped_column(Integer, nullable=False)
    db_count: Mapped[int] = mapped_column(Integer, nullable=False)
    mismatch: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # backfill_triggered|backfill_completed|backfill_failed
    backfilled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_reconciliation_events_created", "created_at"),)
