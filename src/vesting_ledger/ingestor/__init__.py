"""Claim ingestion - idempotent claim recording and its side effects."""

from vesting_ledger.ingestor.claims import BatchResult, ClaimIngestor, RealizedGains
from vesting_ledger.ingestor.events import ClaimEventBus, ClaimProcessed
from vesting_ledger.ingestor.side_effects import (
    AggregateValueHandler,
    CacheInvalidationHandler,
    LargeClaimAlertHandler,
    OrganizationWebhookHandler,
    register_default_handlers,
)

__all__ = [
    "AggregateValueHandler",
    "BatchResult",
    "CacheInvalidationHandler",
    "ClaimEventBus",
    "ClaimIngestor",
    "ClaimProcessed",
    "LargeClaimAlertHandler",
    "OrganizationWebhookHandler",
    "RealizedGains",
    "register_default_handlers",
]
