"""Persistent vault ledger operations.

VestingService wraps the pure arithmetic in `vesting.ledger` with the
repositories, running each operation as one database transaction. Rows
that are read to validate a mutation are locked with SELECT ... FOR UPDATE
so concurrent withdrawals or releases against the same vault serialize.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from web3 import AsyncWeb3

from vesting_ledger.errors import (
    BeneficiaryNotFoundError,
    DuplicateTopUpError,
    InsufficientVestedAmountError,
    InvalidVestingInputError,
    VaultAccessDeniedError,
    VaultNotFoundError,
)
from vesting_ledger.storage.repos import (
    BeneficiaryDTO,
    BeneficiaryRepository,
    SubScheduleDTO,
    SubScheduleRepository,
    VaultDTO,
    VaultRepository,
)
from vesting_ledger.vesting.ledger import (
    plan_release,
    releasable_info,
    total_vested,
    withdrawable_info,
)
from vesting_ledger.vesting.models import (
    ReleasableInfo,
    ReleaseAllocation,
    TopUpRequest,
    VaultSummary,
    WithdrawableInfo,
)
from vesting_ledger.vesting.schedule import ZERO, schedule_terms_for_top_up, vesting_end

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from vesting_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def is_valid_address(address: str) -> bool:
    """True for a 0x-prefixed 20-byte hex address, in any letter case."""
    return (
        isinstance(address, str)
        and address.startswith("0x")
        and AsyncWeb3.is_address(address.lower())
    )


def _require_address(address: str, field_name: str) -> str:
    if not is_valid_address(address):
        raise InvalidVestingInputError(f"Invalid {field_name}: {address!r}")
    return address.lower()


def _require_positive(amount: Decimal, field_name: str) -> Decimal:
    amount = Decimal(amount)
    if amount <= ZERO:
        raise InvalidVestingInputError(f"{field_name} must be positive, got {amount}")
    return amount


def _now() -> datetime:
    return datetime.now(UTC)


class VestingService:
    """Vault, top-up, withdrawal and release operations backed by storage."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Vault lifecycle
    # ------------------------------------------------------------------

    async def create_vault(
        self,
        vault_address: str,
        owner_address: str,
        token_address: str,
        *,
        name: str | None = None,
        created_block: int | None = None,
        beneficiaries: Sequence[tuple[str, Decimal]] = (),
    ) -> VaultDTO:
        """Create a vault and optionally register its initial beneficiaries.

        Raises:
            InvalidVestingInputError: On a malformed address or allocation.
            IntegrityError: If the vault already exists.
        """
        vault_address = _require_address(vault_address, "vault_address")
        owner_address = _require_address(owner_address, "owner_address")
        token_address = _require_address(token_address, "token_address")
        validated = [
            (_require_address(addr, "beneficiary_address"), _require_positive(alloc, "allocation"))
            for addr, alloc in beneficiaries
        ]

        async with self._db.get_async_session() as session:
            vault = await VaultRepository(session).insert(
                VaultDTO(
                    vault_address=vault_address,
                    owner_address=owner_address,
                    token_address=token_address,
                    name=name,
                    created_block=created_block,
                )
            )
            beneficiary_repo = BeneficiaryRepository(session)
            for address, allocation in validated:
                await beneficiary_repo.insert(
                    BeneficiaryDTO(vault_id=vault.id, address=address, total_allocated=allocation)
                )

        logger.info(
            "Created vault %s (owner=%s, token=%s, beneficiaries=%d)",
            vault_address,
            owner_address,
            token_address,
            len(validated),
        )
        return vault

    async def add_beneficiary(
        self, vault_address: str, beneficiary_address: str, allocation: Decimal
    ) -> BeneficiaryDTO:
        beneficiary_address = _require_address(beneficiary_address, "beneficiary_address")
        allocation = _require_positive(allocation, "allocation")

        async with self._db.get_async_session() as session:
            vault = await self._get_vault(session, vault_address)
            return await BeneficiaryRepository(session).insert(
                BeneficiaryDTO(
                    vault_id=vault.id,
                    address=beneficiary_address,
                    total_allocated=allocation,
                )
            )

    async def set_delegate(
        self, vault_address: str, owner_address: str, delegate_address: str | None
    ) -> VaultDTO:
        """Authorise `delegate_address` to release from an active vault.

        Passing None revokes the current delegate.

        Raises:
            InvalidVestingInputError: On a malformed address.
            VaultAccessDeniedError: If the vault is missing, inactive or not
                owned by `owner_address`.
        """
        owner = _require_address(owner_address, "owner_address")
        delegate = (
            _require_address(delegate_address, "delegate_address")
            if delegate_address is not None
            else None
        )

        async with self._db.get_async_session() as session:
            vault_repo = VaultRepository(session)
            vault = await vault_repo.get_by_address(vault_address, for_update=True)
            if vault is None or vault.owner_address != owner:
                raise VaultAccessDeniedError(vault_address, owner, "owner")
            await vault_repo.set_delegate(vault.id, delegate)
            vault.delegate_address = delegate

        logger.info("Vault %s delegate set to %s by %s", vault.vault_address, delegate, owner)
        return vault

    async def deactivate_vault(self, vault_address: str) -> None:
        async with self._db.get_async_session() as session:
            if not await VaultRepository(session).deactivate(vault_address):
                raise VaultNotFoundError(vault_address)
        logger.info("Deactivated vault %s", vault_address.lower())

    # ------------------------------------------------------------------
    # Top-ups
    # ------------------------------------------------------------------

    async def create_top_up(self, request: TopUpRequest) -> SubScheduleDTO:
        """Append a top-up to a vault as an independent sub-schedule.

        Raises:
            InvalidVestingInputError: On non-positive amount or duration.
            VaultNotFoundError: If the vault is missing or inactive.
            DuplicateTopUpError: If the transaction hash was already recorded.
        """
        amount = _require_positive(request.amount, "amount")
        if request.vesting_duration <= 0:
            raise InvalidVestingInputError(
                f"vesting_duration must be positive, got {request.vesting_duration}"
            )
        terms = schedule_terms_for_top_up(request.top_up_timestamp, request.cliff_duration)

        try:
            async with self._db.get_async_session() as session:
                schedules = SubScheduleRepository(session)
                if await schedules.get_by_transaction_hash(request.transaction_hash):
                    raise DuplicateTopUpError(request.transaction_hash)

                vault_repo = VaultRepository(session)
                vault = await self._get_vault(session, request.vault_address, for_update=True)

                schedule = await schedules.insert(
                    SubScheduleDTO(
                        vault_id=vault.id,
                        amount=amount,
                        cliff_duration=request.cliff_duration or None,
                        cliff_date=terms.cliff_date,
                        top_up_timestamp=request.top_up_timestamp,
                        vesting_start=terms.vesting_start,
                        vesting_duration=request.vesting_duration,
                        transaction_hash=request.transaction_hash,
                        block_number=request.block_number,
                    )
                )
                await vault_repo.add_to_total(vault.id, amount)
        except IntegrityError as e:
            raise DuplicateTopUpError(request.transaction_hash) from e

        logger.info(
            "Top-up %s on vault %s: amount=%s cliff=%s start=%s",
            request.transaction_hash,
            request.vault_address.lower(),
            amount,
            terms.cliff_date,
            terms.vesting_start,
        )
        return schedule

    # ------------------------------------------------------------------
    # Withdrawals and releases
    # ------------------------------------------------------------------

    async def get_withdrawable(
        self,
        vault_address: str,
        beneficiary_address: str,
        as_of: datetime | None = None,
    ) -> WithdrawableInfo:
        as_of = as_of or _now()
        async with self._db.get_async_session() as session:
            vault = await self._get_vault(session, vault_address)
            beneficiary = await self._get_beneficiary(session, vault, beneficiary_address)
            schedules = await SubScheduleRepository(session).list_for_vault(vault.id)
            return withdrawable_info(beneficiary, schedules, as_of)

    async def process_withdrawal(
        self,
        vault_address: str,
        beneficiary_address: str,
        amount: Decimal,
        as_of: datetime | None = None,
    ) -> WithdrawableInfo:
        """Record a beneficiary withdrawal.

        Returns:
            The beneficiary's withdrawable info after the withdrawal.

        Raises:
            VaultNotFoundError, BeneficiaryNotFoundError: Missing entities.
            InsufficientVestedAmountError: If amount exceeds withdrawable;
                nothing is written in that case.
        """
        amount = _require_positive(amount, "amount")
        as_of = as_of or _now()

        async with self._db.get_async_session() as session:
            vault = await self._get_vault(session, vault_address)
            beneficiary = await self._get_beneficiary(
                session, vault, beneficiary_address, for_update=True
            )
            schedules = await SubScheduleRepository(session).list_for_vault(vault.id)

            info = withdrawable_info(beneficiary, schedules, as_of)
            if amount > info.withdrawable:
                raise InsufficientVestedAmountError(requested=amount, available=info.withdrawable)

            await BeneficiaryRepository(session).add_withdrawn(beneficiary.id, amount)
            beneficiary.total_withdrawn += amount
            updated = withdrawable_info(beneficiary, schedules, as_of)

        logger.info(
            "Withdrawal of %s from vault %s by %s (remaining withdrawable %s)",
            amount,
            vault.vault_address,
            beneficiary.address,
            updated.withdrawable,
        )
        return updated

    async def calculate_releasable(
        self, vault_address: str, as_of: datetime | None = None
    ) -> ReleasableInfo:
        as_of = as_of or _now()
        async with self._db.get_async_session() as session:
            vault = await self._get_vault(session, vault_address)
            schedules = await SubScheduleRepository(session).list_for_vault(vault.id)
            return releasable_info(schedules, as_of)

    async def process_release(
        self,
        vault_address: str,
        amount: Decimal,
        as_of: datetime | None = None,
    ) -> list[ReleaseAllocation]:
        """Release tokens from a vault's sub-schedules, oldest first.

        Either every allocation is applied or none is.
        """
        amount = _require_positive(amount, "amount")
        as_of = as_of or _now()

        async with self._db.get_async_session() as session:
            vault = await self._get_vault(session, vault_address)
            allocations = await self._apply_release(session, vault, amount, as_of)

        logger.info(
            "Released %s from vault %s across %d sub-schedules",
            amount,
            vault.vault_address,
            len(allocations),
        )
        return allocations

    async def release_as_delegate(
        self,
        delegate_address: str,
        vault_address: str,
        amount: Decimal,
        as_of: datetime | None = None,
    ) -> list[ReleaseAllocation]:
        """Release on behalf of the owner, by the vault's authorised delegate.

        Same allocation rules as `process_release`.

        Raises:
            VaultAccessDeniedError: If the vault is missing, inactive or has
                a different delegate.
            InsufficientVestedAmountError: If the schedules cannot cover amount.
        """
        delegate = _require_address(delegate_address, "delegate_address")
        amount = _require_positive(amount, "amount")
        as_of = as_of or _now()

        async with self._db.get_async_session() as session:
            vault = await VaultRepository(session).get_by_address(vault_address)
            if vault is None or vault.delegate_address != delegate:
                raise VaultAccessDeniedError(vault_address, delegate, "delegate")
            allocations = await self._apply_release(session, vault, amount, as_of)

        logger.info(
            "Delegate %s released %s from vault %s across %d sub-schedules",
            delegate,
            amount,
            vault.vault_address,
            len(allocations),
        )
        return allocations

    @staticmethod
    async def _apply_release(
        session: AsyncSession, vault: VaultDTO, amount: Decimal, as_of: datetime
    ) -> list[ReleaseAllocation]:
        schedule_repo = SubScheduleRepository(session)
        schedules = await schedule_repo.list_for_vault(vault.id, for_update=True)
        allocations = plan_release(schedules, amount, as_of)
        for allocation in allocations:
            await schedule_repo.add_released(allocation.schedule_id, allocation.amount)
        return allocations

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_vault_summary(
        self, vault_address: str, as_of: datetime | None = None
    ) -> VaultSummary:
        as_of = as_of or _now()
        async with self._db.get_async_session() as session:
            vault = await self._get_vault(session, vault_address, active_only=False)
            schedules = await SubScheduleRepository(session).list_for_vault(vault.id)
            beneficiaries = await BeneficiaryRepository(session).list_for_vault(vault.id)

        return VaultSummary(
            vault_address=vault.vault_address,
            owner_address=vault.owner_address,
            token_address=vault.token_address,
            name=vault.name,
            is_active=vault.is_active,
            delegate_address=vault.delegate_address,
            total_amount=vault.total_amount,
            total_top_ups=len(schedules),
            total_beneficiaries=len(beneficiaries),
            total_vested=total_vested(schedules, as_of),
            total_released=sum((s.amount_released for s in schedules), ZERO),
            sub_schedules=[
                {
                    "id": s.id,
                    "amount": str(s.amount),
                    "amount_released": str(s.amount_released),
                    "cliff_date": s.cliff_date.isoformat() if s.cliff_date else None,
                    "vesting_start": s.vesting_start.isoformat(),
                    "vesting_end": vesting_end(s).isoformat(),
                    "transaction_hash": s.transaction_hash,
                    "block_number": s.block_number,
                }
                for s in schedules
            ],
            beneficiaries=[
                {
                    "address": b.address,
                    "total_allocated": str(b.total_allocated),
                    "total_withdrawn": str(b.total_withdrawn),
                }
                for b in beneficiaries
            ],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_vault(
        session: AsyncSession,
        vault_address: str,
        *,
        active_only: bool = True,
        for_update: bool = False,
    ) -> VaultDTO:
        vault = await VaultRepository(session).get_by_address(
            vault_address, active_only=active_only, for_update=for_update
        )
        if vault is None:
            raise VaultNotFoundError(vault_address)
        return vault

    @staticmethod
    async def _get_beneficiary(
        session: AsyncSession,
        vault: VaultDTO,
        beneficiary_address: str,
        *,
        for_update: bool = False,
    ) -> BeneficiaryDTO:
        beneficiary = await BeneficiaryRepository(session).get(
            vault.id, beneficiary_address, for_update=for_update
        )
        if beneficiary is None:
            raise BeneficiaryNotFoundError(vault.vault_address, beneficiary_address)
        return beneficiary
