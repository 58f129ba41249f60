"""Alert delivery channels."""

from vesting_ledger.alerter.channels.log import LogChannel
from vesting_ledger.alerter.channels.webhook import WebhookChannel

__all__ = ["LogChannel", "WebhookChannel"]
