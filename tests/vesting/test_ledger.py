"""Tests for vault-level vesting arithmetic."""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from vesting_ledger.errors import InsufficientVestedAmountError, InvalidVestingInputError
from vesting_ledger.storage.repos import SubScheduleDTO
from vesting_ledger.vesting.ledger import (
    POOL_SEMANTICS,
    plan_release,
    releasable_info,
    total_vested,
    withdrawable_info,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)
DAY = 86400


@dataclass
class Allocation:
    total_allocated: Decimal
    total_withdrawn: Decimal = Decimal("0")


def make_schedule(
    schedule_id: int,
    amount: str,
    *,
    start: datetime = T0,
    duration_days: int = 30,
    released: str = "0",
) -> SubScheduleDTO:
    return SubScheduleDTO(
        id=schedule_id,
        vault_id=1,
        amount=Decimal(amount),
        top_up_timestamp=start,
        vesting_start=start,
        vesting_duration=duration_days * DAY,
        transaction_hash=f"0x{schedule_id:064x}",
        block_number=schedule_id,
        amount_released=Decimal(released),
    )


@pytest.fixture
def two_top_ups() -> list[SubScheduleDTO]:
    return [
        make_schedule(1, "1000", start=T0, duration_days=30),
        make_schedule(2, "500", start=T0 + timedelta(days=15), duration_days=60),
    ]


class TestTotalVested:
    def test_sums_independent_schedules(self, two_top_ups: list[SubScheduleDTO]) -> None:
        vested = total_vested(two_top_ups, T0 + timedelta(days=20))
        assert vested.quantize(Decimal("0.01")) == Decimal("708.33")

    def test_empty_vault(self) -> None:
        assert total_vested([], T0) == Decimal("0")


class TestWithdrawableInfo:
    def test_shared_pool_capped_by_allocation(self) -> None:
        assert POOL_SEMANTICS == "shared"
        schedules = [make_schedule(1, "1000", duration_days=30)]
        info = withdrawable_info(
            Allocation(Decimal("500"), Decimal("100")), schedules, T0 + timedelta(days=60)
        )

        assert info.total_vested == Decimal("1000")
        assert info.withdrawable == Decimal("400")
        assert info.remaining == Decimal("400")
        assert info.is_fully_vested is True
        assert info.next_vest_event is None

    def test_withdrawable_limited_by_vested_pool(self) -> None:
        schedules = [make_schedule(1, "1000", duration_days=10)]
        info = withdrawable_info(
            Allocation(Decimal("800")), schedules, T0 + timedelta(days=5)
        )
        assert info.withdrawable == Decimal("500")
        assert info.is_fully_vested is False
        assert info.next_vest_event == T0 + timedelta(days=10)

    def test_never_negative(self) -> None:
        schedules = [make_schedule(1, "1000", duration_days=10)]
        info = withdrawable_info(
            Allocation(Decimal("800"), Decimal("600")), schedules, T0 + timedelta(days=5)
        )
        assert info.withdrawable == Decimal("0")

    def test_empty_vault_is_not_fully_vested(self) -> None:
        info = withdrawable_info(Allocation(Decimal("100")), [], T0)
        assert info.withdrawable == Decimal("0")
        assert info.is_fully_vested is False


class TestReleasableInfo:
    def test_per_schedule_breakdown(self, two_top_ups: list[SubScheduleDTO]) -> None:
        info = releasable_info(two_top_ups, T0 + timedelta(days=30))
        assert [s.schedule_id for s in info.schedules] == [1, 2]
        assert info.schedules[0].releasable == Decimal("1000")
        assert info.total_releasable == sum(s.releasable for s in info.schedules)


class TestPlanRelease:
    def test_oldest_first(self, two_top_ups: list[SubScheduleDTO]) -> None:
        as_of = T0 + timedelta(days=75)  # both fully vested
        allocations = plan_release(list(reversed(two_top_ups)), Decimal("1200"), as_of)

        assert [(a.schedule_id, a.amount) for a in allocations] == [
            (1, Decimal("1000")),
            (2, Decimal("200")),
        ]

    def test_skips_fully_released_schedules(self) -> None:
        schedules = [
            make_schedule(1, "100", released="100"),
            make_schedule(2, "100", start=T0 + timedelta(days=1)),
        ]
        allocations = plan_release(schedules, Decimal("50"), T0 + timedelta(days=60))
        assert [(a.schedule_id, a.amount) for a in allocations] == [(2, Decimal("50"))]

    def test_insufficient(self, two_top_ups: list[SubScheduleDTO]) -> None:
        with pytest.raises(InsufficientVestedAmountError) as exc_info:
            plan_release(two_top_ups, Decimal("2000"), T0 + timedelta(days=75))
        assert exc_info.value.available == Decimal("1500")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    def test_non_positive_amount(self, two_top_ups: list[SubScheduleDTO], amount: Decimal) -> None:
        with pytest.raises(InvalidVestingInputError):
            plan_release(two_top_ups, amount, T0)
