"""Value objects returned by the vault ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class WithdrawableInfo:
    """What a beneficiary may withdraw at a point in time."""

    total_vested: Decimal
    total_allocated: Decimal
    total_withdrawn: Decimal
    withdrawable: Decimal
    remaining: Decimal
    is_fully_vested: bool
    next_vest_event: datetime | None


@dataclass(frozen=True)
class ReleaseAllocation:
    """Amount taken from one sub-schedule by a release."""

    schedule_id: int
    amount: Decimal


@dataclass(frozen=True)
class ScheduleReleasable:
    schedule_id: int
    amount: Decimal
    vested: Decimal
    released: Decimal
    releasable: Decimal


@dataclass(frozen=True)
class ReleasableInfo:
    total_releasable: Decimal
    schedules: list[ScheduleReleasable] = field(default_factory=list)


@dataclass(frozen=True)
class TopUpRequest:
    """A top-up deposit to append to a vault as a new sub-schedule.

    Durations are in seconds; `cliff_duration` of None or 0 means no cliff.
    """

    vault_address: str
    amount: Decimal
    vesting_duration: int
    transaction_hash: str
    block_number: int
    top_up_timestamp: datetime
    cliff_duration: int | None = None


@dataclass(frozen=True)
class VaultSummary:
    vault_address: str
    owner_address: str
    token_address: str
    name: str | None
    is_active: bool
    total_amount: Decimal
    total_top_ups: int
    total_beneficiaries: int
    total_vested: Decimal
    total_released: Decimal
    sub_schedules: list[dict[str, object]]
    beneficiaries: list[dict[str, object]]
    delegate_address: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "vault_address": self.vault_address,
            "owner_address": self.owner_address,
            "token_address": self.token_address,
            "name": self.name,
            "is_active": self.is_active,
            "total_amount": str(self.total_amount),
            "total_top_ups": self.total_top_ups,
            "total_beneficiaries": self.total_beneficiaries,
            "total_vested": str(self.total_vested),
            "total_released": str(self.total_released),
            "sub_schedules": self.sub_schedules,
            "beneficiaries": self.beneficiaries,
            "delegate_address": self.delegate_address,
        }
