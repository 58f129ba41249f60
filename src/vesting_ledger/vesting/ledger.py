"""Vault-level vesting arithmetic.

Aggregates the per-schedule math in `vesting.schedule` over all of a
vault's sub-schedules. Every beneficiary is measured against the vault's
whole vested pool and capped by their own allocation (shared pool); the
pool is not pro-rated between beneficiaries.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from vesting_ledger.errors import InsufficientVestedAmountError, InvalidVestingInputError
from vesting_ledger.vesting.models import (
    ReleasableInfo,
    ReleaseAllocation,
    ScheduleReleasable,
    WithdrawableInfo,
)
from vesting_ledger.vesting.schedule import (
    ZERO,
    VestingSchedule,
    is_fully_vested,
    next_vest_event,
    releasable_amount,
    vested_amount,
)

logger = logging.getLogger(__name__)

POOL_SEMANTICS = "shared"


class AllocationHolder(Protocol):
    total_allocated: Decimal
    total_withdrawn: Decimal


class IdentifiedSchedule(VestingSchedule, Protocol):
    id: int
    top_up_timestamp: datetime


def total_vested(schedules: Iterable[VestingSchedule], as_of: datetime) -> Decimal:
    return sum((vested_amount(s, as_of) for s in schedules), ZERO)


def withdrawable_info(
    beneficiary: AllocationHolder,
    schedules: Sequence[VestingSchedule],
    as_of: datetime,
) -> WithdrawableInfo:
    """Compute what `beneficiary` may withdraw from the vault's pool at `as_of`."""
    vested = total_vested(schedules, as_of)
    capped = min(vested, beneficiary.total_allocated)
    withdrawable = max(ZERO, capped - beneficiary.total_withdrawn)

    upcoming = [e for e in (next_vest_event(s, as_of) for s in schedules) if e is not None]

    return WithdrawableInfo(
        total_vested=vested,
        total_allocated=beneficiary.total_allocated,
        total_withdrawn=beneficiary.total_withdrawn,
        withdrawable=withdrawable,
        remaining=beneficiary.total_allocated - beneficiary.total_withdrawn,
        # A vault with nothing deposited has nothing vested.
        is_fully_vested=bool(schedules) and all(is_fully_vested(s, as_of) for s in schedules),
        next_vest_event=min(upcoming) if upcoming else None,
    )


def _release_order(schedule: IdentifiedSchedule) -> tuple[datetime, int]:
    return (schedule.top_up_timestamp, schedule.id)


def releasable_info(schedules: Sequence[IdentifiedSchedule], as_of: datetime) -> ReleasableInfo:
    details = []
    for schedule in sorted(schedules, key=_release_order):
        vested = vested_amount(schedule, as_of)
        details.append(
            ScheduleReleasable(
                schedule_id=schedule.id,
                amount=schedule.amount,
                vested=vested,
                released=schedule.amount_released,
                releasable=max(ZERO, vested - schedule.amount_released),
            )
        )
    return ReleasableInfo(
        total_releasable=sum((d.releasable for d in details), ZERO),
        schedules=details,
    )


def plan_release(
    schedules: Sequence[IdentifiedSchedule],
    amount: Decimal,
    as_of: datetime,
) -> list[ReleaseAllocation]:
    """Split a release across schedules, oldest top-up first.

    Raises:
        InvalidVestingInputError: If amount is not positive.
        InsufficientVestedAmountError: If the schedules cannot cover amount.
    """
    if amount <= ZERO:
        raise InvalidVestingInputError(f"Release amount must be positive, got {amount}")

    ordered = sorted(schedules, key=_release_order)
    available = sum((releasable_amount(s, as_of) for s in ordered), ZERO)
    if amount > available:
        raise InsufficientVestedAmountError(requested=amount, available=available)

    allocations: list[ReleaseAllocation] = []
    remaining = amount
    for schedule in ordered:
        if remaining <= ZERO:
            break
        take = min(remaining, releasable_amount(schedule, as_of))
        if take <= ZERO:
            continue
        allocations.append(ReleaseAllocation(schedule_id=schedule.id, amount=take))
        remaining -= take

    logger.debug("Planned release of %s across %d schedules", amount, len(allocations))
    return allocations
