"""Ledger-side records produced by a LedgerSource."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class OnChainVault:
    """A vault as the vault factory reports it."""

    vault_address: str
    owner_address: str
    token_address: str
    total_amount: Decimal
    created_block: int | None = None
    name: str | None = None


@dataclass(frozen=True)
class LedgerEvent:
    """Common fields of every ingested ledger event."""

    transaction_hash: str
    block_number: int
    log_index: int
    timestamp: datetime

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class VaultCreatedEvent(LedgerEvent):
    vault_address: str
    owner_address: str
    token_address: str


@dataclass(frozen=True)
class TopUpEvent(LedgerEvent):
    vault_address: str
    amount: Decimal
    cliff_duration: int
    vesting_duration: int


@dataclass(frozen=True)
class ClaimEvent(LedgerEvent):
    """A beneficiary claim. The transaction hash identifies it globally."""

    user_address: str
    token_address: str
    amount_claimed: Decimal

    @property
    def claim_timestamp(self) -> datetime:
        return self.timestamp
