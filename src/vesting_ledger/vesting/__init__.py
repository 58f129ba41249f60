"""Vesting math and the vault ledger."""

from vesting_ledger.vesting.ledger import (
    POOL_SEMANTICS,
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
from vesting_ledger.vesting.schedule import (
    ScheduleTerms,
    is_fully_vested,
    next_vest_event,
    releasable_amount,
    schedule_terms_for_top_up,
    vested_amount,
    vesting_end,
)
from vesting_ledger.vesting.service import VestingService, is_valid_address

__all__ = [
    "POOL_SEMANTICS",
    "ReleasableInfo",
    "ReleaseAllocation",
    "ScheduleTerms",
    "TopUpRequest",
    "VaultSummary",
    "VestingService",
    "WithdrawableInfo",
    "is_fully_vested",
    "is_valid_address",
    "next_vest_event",
    "plan_release",
    "releasable_amount",
    "releasable_info",
    "schedule_terms_for_top_up",
    "total_vested",
    "vested_amount",
    "vesting_end",
]
