"""Tests for per-schedule vesting math."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from vesting_ledger.errors import InvalidVestingInputError
from vesting_ledger.storage.repos import SubScheduleDTO
from vesting_ledger.vesting.schedule import (
    is_fully_vested,
    next_vest_event,
    releasable_amount,
    schedule_terms_for_top_up,
    vested_amount,
    vesting_end,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)
DAY = 86400


def make_schedule(
    amount: str = "1000",
    *,
    top_up: datetime = T0,
    duration_days: float = 30,
    cliff_days: float | None = None,
    released: str = "0",
) -> SubScheduleDTO:
    cliff_seconds = int(cliff_days * DAY) if cliff_days else None
    terms = schedule_terms_for_top_up(top_up, cliff_seconds)
    return SubScheduleDTO(
        vault_id=1,
        amount=Decimal(amount),
        top_up_timestamp=top_up,
        vesting_start=terms.vesting_start,
        vesting_duration=int(duration_days * DAY),
        transaction_hash="0x" + "a" * 64,
        block_number=1,
        cliff_duration=cliff_seconds,
        cliff_date=terms.cliff_date,
        amount_released=Decimal(released),
        id=1,
    )


# ============================================================================
# schedule_terms_for_top_up Tests
# ============================================================================


class TestScheduleTerms:
    def test_no_cliff_starts_at_top_up(self) -> None:
        terms = schedule_terms_for_top_up(T0, None)
        assert terms.cliff_date is None
        assert terms.vesting_start == T0

    def test_zero_cliff_is_no_cliff(self) -> None:
        terms = schedule_terms_for_top_up(T0, 0)
        assert terms.cliff_date is None
        assert terms.vesting_start == T0

    def test_cliff_delays_vesting_start(self) -> None:
        terms = schedule_terms_for_top_up(T0, DAY)
        assert terms.cliff_date == T0 + timedelta(days=1)
        assert terms.vesting_start == terms.cliff_date

    def test_negative_cliff_rejected(self) -> None:
        with pytest.raises(InvalidVestingInputError):
            schedule_terms_for_top_up(T0, -1)


# ============================================================================
# vested_amount Tests
# ============================================================================


class TestVestedAmount:
    def test_cliff_example(self) -> None:
        schedule = make_schedule("1000", duration_days=30, cliff_days=1)

        assert vested_amount(schedule, T0 + timedelta(hours=12)) == Decimal("0")
        assert vested_amount(schedule, T0 + timedelta(days=16)) == Decimal("500")
        assert vested_amount(schedule, T0 + timedelta(days=31)) == Decimal("1000")

    def test_nothing_vests_before_start(self) -> None:
        schedule = make_schedule(top_up=T0 + timedelta(days=5))
        assert vested_amount(schedule, T0) == Decimal("0")

    def test_linear_without_cliff(self) -> None:
        schedule = make_schedule("1000", duration_days=10)
        assert vested_amount(schedule, T0 + timedelta(days=1)) == Decimal("100")
        assert vested_amount(schedule, T0 + timedelta(days=5)) == Decimal("500")

    def test_fully_vested_is_stable(self) -> None:
        schedule = make_schedule("1000", duration_days=30)
        end = vesting_end(schedule)
        assert vested_amount(schedule, end) == Decimal("1000")
        assert vested_amount(schedule, end + timedelta(days=3650)) == Decimal("1000")

    def test_zero_duration_vests_at_start(self) -> None:
        schedule = make_schedule("250", duration_days=0)
        assert vested_amount(schedule, T0 - timedelta(seconds=1)) == Decimal("0")
        assert vested_amount(schedule, T0) == Decimal("250")

    def test_monotonic_and_bounded(self) -> None:
        schedule = make_schedule("777", duration_days=7, cliff_days=2)
        previous = Decimal("0")
        for hour in range(0, 24 * 12, 5):
            vested = vested_amount(schedule, T0 + timedelta(hours=hour))
            assert Decimal("0") <= vested <= schedule.amount
            assert vested >= previous
            previous = vested


# ============================================================================
# Helpers
# ============================================================================


class TestScheduleHelpers:
    def test_releasable_subtracts_released(self) -> None:
        schedule = make_schedule("1000", duration_days=10, released="300")
        assert releasable_amount(schedule, T0 + timedelta(days=5)) == Decimal("200")

    def test_releasable_never_negative(self) -> None:
        schedule = make_schedule("1000", duration_days=10, released="300")
        assert releasable_amount(schedule, T0 + timedelta(days=1)) == Decimal("0")

    def test_is_fully_vested(self) -> None:
        schedule = make_schedule(duration_days=30)
        assert not is_fully_vested(schedule, T0 + timedelta(days=29))
        assert is_fully_vested(schedule, T0 + timedelta(days=30))

    def test_next_vest_event(self) -> None:
        schedule = make_schedule(duration_days=30, cliff_days=1)
        assert next_vest_event(schedule, T0) == T0 + timedelta(days=1)
        assert next_vest_event(schedule, T0 + timedelta(days=2)) == T0 + timedelta(days=31)
        assert next_vest_event(schedule, T0 + timedelta(days=40)) is None
