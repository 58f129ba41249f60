"""Alerting - formatting and multi-channel dispatch."""

from vesting_ledger.alerter.dispatcher import AlertChannel, AlertDispatcher, DispatchResult
from vesting_ledger.alerter.formatter import ClaimAlertFormatter, format_usd, truncate_address
from vesting_ledger.alerter.models import FormattedAlert

__all__ = [
    "AlertChannel",
    "AlertDispatcher",
    "ClaimAlertFormatter",
    "DispatchResult",
    "FormattedAlert",
    "format_usd",
    "truncate_address",
]
