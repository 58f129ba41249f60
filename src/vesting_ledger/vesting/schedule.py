"""Vesting schedule math.

Pure functions over a single top-up sub-schedule: cliff gating, linear
vesting between `vesting_start` and `vesting_start + vesting_duration`,
and the releasable remainder. Nothing here touches storage or the clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

from vesting_ledger.errors import InvalidVestingInputError

ZERO = Decimal("0")
_MICROSECONDS = timedelta(microseconds=1)


class VestingSchedule(Protocol):
    """Anything shaped like a sub-schedule (DTOs, test doubles)."""

    amount: Decimal
    cliff_date: datetime | None
    vesting_start: datetime
    vesting_duration: int
    amount_released: Decimal


@dataclass(frozen=True)
class ScheduleTerms:
    """Cliff and vesting start derived for a new top-up."""

    cliff_date: datetime | None
    vesting_start: datetime


def schedule_terms_for_top_up(top_up_timestamp: datetime, cliff_duration: int | None) -> ScheduleTerms:
    """Derive cliff and vesting start for a top-up.

    With a positive cliff the schedule starts vesting when the cliff ends;
    otherwise it starts at the top-up itself.
    """
    if cliff_duration is not None and cliff_duration < 0:
        raise InvalidVestingInputError(f"cliff_duration must be >= 0, got {cliff_duration}")
    if cliff_duration:
        cliff_date = top_up_timestamp + timedelta(seconds=cliff_duration)
        return ScheduleTerms(cliff_date=cliff_date, vesting_start=cliff_date)
    return ScheduleTerms(cliff_date=None, vesting_start=top_up_timestamp)


def vesting_end(schedule: VestingSchedule) -> datetime:
    return schedule.vesting_start + timedelta(seconds=schedule.vesting_duration)


def vested_amount(schedule: VestingSchedule, as_of: datetime) -> Decimal:
    """Amount of `schedule` vested at `as_of`, always within [0, amount]."""
    if schedule.cliff_date is not None and as_of < schedule.cliff_date:
        return ZERO
    if as_of < schedule.vesting_start:
        return ZERO
    # A zero duration vests everything at vesting_start.
    if as_of >= vesting_end(schedule):
        return schedule.amount

    elapsed_us = (as_of - schedule.vesting_start) // _MICROSECONDS
    duration_us = schedule.vesting_duration * 1_000_000
    vested = schedule.amount * Decimal(elapsed_us) / Decimal(duration_us)
    return min(max(vested, ZERO), schedule.amount)


def releasable_amount(schedule: VestingSchedule, as_of: datetime) -> Decimal:
    return max(ZERO, vested_amount(schedule, as_of) - schedule.amount_released)


def is_fully_vested(schedule: VestingSchedule, as_of: datetime) -> bool:
    return as_of >= vesting_end(schedule)


def next_vest_event(schedule: VestingSchedule, as_of: datetime) -> datetime | None:
    """Next cliff end or vesting end strictly after `as_of`, if any."""
    if schedule.cliff_date is not None and as_of < schedule.cliff_date:
        return schedule.cliff_date
    end = vesting_end(schedule)
    if as_of < end:
        return end
    return None
