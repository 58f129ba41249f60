"""Typed errors raised by the vesting ledger core.

Every error derives from VestingLedgerError so callers at the API layer can
map the whole family to structured responses.
"""

from __future__ import annotations

from decimal import Decimal


class VestingLedgerError(Exception):
    """Base exception for all vesting ledger errors."""


class InvalidVestingInputError(VestingLedgerError):
    """Raised when an address, amount or duration fails validation."""


class DuplicateClaimError(VestingLedgerError):
    """Raised when a claim transaction hash has already been recorded."""

    def __init__(self, transaction_hash: str) -> None:
        super().__init__(f"Claim already recorded for transaction {transaction_hash}")
        self.transaction_hash = transaction_hash


class DuplicateTopUpError(VestingLedgerError):
    """Raised when a top-up transaction hash has already been recorded."""

    def __init__(self, transaction_hash: str) -> None:
        super().__init__(f"Top-up already recorded for transaction {transaction_hash}")
        self.transaction_hash = transaction_hash


class VaultNotFoundError(VestingLedgerError):
    """Raised when a referenced vault does not exist or is inactive."""

    def __init__(self, vault_address: str) -> None:
        super().__init__(f"Vault not found or inactive: {vault_address}")
        self.vault_address = vault_address


class VaultAccessDeniedError(VaultNotFoundError):
    """Raised when the caller is neither the vault owner nor its delegate.

    Subclasses VaultNotFoundError: a missing vault and a foreign caller
    surface the same way.
    """

    def __init__(self, vault_address: str, caller_address: str, role: str) -> None:
        VestingLedgerError.__init__(
            self, f"Vault not found or {role} not authorized: {vault_address}"
        )
        self.vault_address = vault_address
        self.caller_address = caller_address
        self.role = role


class BeneficiaryNotFoundError(VestingLedgerError):
    """Raised when a beneficiary is not registered on the vault."""

    def __init__(self, vault_address: str, beneficiary_address: str) -> None:
        super().__init__(
            f"Beneficiary {beneficiary_address} not found on vault {vault_address}"
        )
        self.vault_address = vault_address
        self.beneficiary_address = beneficiary_address


class InsufficientVestedAmountError(VestingLedgerError):
    """Raised when a withdrawal or release exceeds what is available."""

    def __init__(self, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient vested amount. Available: {available}, Requested: {requested}"
        )
        self.requested = requested
        self.available = available


class ExternalServiceError(VestingLedgerError):
    """Raised when a price oracle or ledger RPC call fails.

    Attributes:
        service: Name of the collaborator that failed.
        status_code: HTTP status code, when the failure carried one.
    """

    def __init__(self, message: str, *, service: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Client errors (4xx) are final, except rate limiting (429)."""
        if self.status_code is None:
            return True
        return not (400 <= self.status_code < 500 and self.status_code != 429)


class RetryExhaustedError(ExternalServiceError):
    """Raised when every attempt allowed by a retry policy has failed."""

    def __init__(
        self,
        message: str,
        *,
        service: str,
        attempts: int,
        last_exception: BaseException | None = None,
    ) -> None:
        status_code = getattr(last_exception, "status_code", None)
        super().__init__(message, service=service, status_code=status_code)
        self.attempts = attempts
        self.last_exception = last_exception


class ReconciliationMismatchError(VestingLedgerError):
    """On-chain and local vault counts differ.

    Not raised to the scheduler: it is logged as a warning and triggers a
    backfill.
    """

    def __init__(self, on_chain_count: int, db_count: int) -> None:
        super().__init__(
            f"Vault count mismatch: on-chain={on_chain_count}, db={db_count}"
        )
        self.on_chain_count = on_chain_count
        self.db_count = db_count

    @property
    def mismatch(self) -> int:
        return self.on_chain_count - self.db_count


class LedgerCursorError(VestingLedgerError):
    """Raised when the ingestion cursor would move backwards outside a rollback."""

    def __init__(self, service_name: str, current: int, requested: int) -> None:
        super().__init__(
            f"Refusing to move {service_name} cursor backwards from {current} to {requested}"
        )
        self.service_name = service_name
        self.current = current
        self.requested = requested


class RollbackError(VestingLedgerError):
    """Raised when a ledger rollback transaction fails and was aborted."""

    def __init__(self, target_sequence: int, cause: BaseException) -> None:
        super().__init__(f"Rollback to ledger {target_sequence} failed: {cause}")
        self.target_sequence = target_sequence


class JobLockedError(VestingLedgerError):
    """Raised when a job of the same type is already running."""

    def __init__(self, lock_name: str) -> None:
        super().__init__(f"Job lock {lock_name} is held by another run")
        self.lock_name = lock_name
