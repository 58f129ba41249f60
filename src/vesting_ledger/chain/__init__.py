"""Ledger access - vault factory reads and event decoding."""

from vesting_ledger.chain.ledger_source import LedgerSource, VaultFactoryClient
from vesting_ledger.chain.models import (
    ClaimEvent,
    LedgerEvent,
    OnChainVault,
    TopUpEvent,
    VaultCreatedEvent,
)

__all__ = [
    "ClaimEvent",
    "LedgerEvent",
    "LedgerSource",
    "OnChainVault",
    "TopUpEvent",
    "VaultCreatedEvent",
    "VaultFactoryClient",
]
