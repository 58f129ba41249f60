"""Consumers of ClaimProcessed events.

Each handler is an async callable subscribed to the ClaimEventBus. They may
raise freely: the bus isolates and logs failures, and the claim row is
already committed by the time any of them runs.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

import httpx

from vesting_ledger.alerter.formatter import (
    DEFAULT_LARGE_CLAIM_THRESHOLD_USD,
    LARGE_CLAIM_EVENT,
    ClaimAlertFormatter,
    is_large_claim,
)
from vesting_ledger.ingestor.events import ClaimEventBus, ClaimProcessed
from vesting_ledger.storage.repos import VaultRepository

if TYPE_CHECKING:
    from vesting_ledger.alerter.dispatcher import AlertDispatcher
    from vesting_ledger.cache import ClaimantCache
    from vesting_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 5.0


class LargeClaimAlertHandler:
    """Alerts when a claim's USD value exceeds the threshold."""

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        *,
        threshold_usd: Decimal = DEFAULT_LARGE_CLAIM_THRESHOLD_USD,
        dry_run: bool = False,
    ) -> None:
        self._dispatcher = dispatcher
        self._dispatcher.register_renderer(
            LARGE_CLAIM_EVENT, ClaimAlertFormatter(threshold_usd).render
        )
        self._threshold = threshold_usd
        self._dry_run = dry_run

    async def __call__(self, event: ClaimProcessed) -> None:
        claim = event.claim
        value = claim.value_usd
        if value is None or not is_large_claim(value, self._threshold):
            return

        if self._dry_run:
            logger.info("[DRY RUN] Would send large claim alert for %s", claim.transaction_hash)
            return

        result = await self._dispatcher.notify(LARGE_CLAIM_EVENT, claim.to_dict())
        if not result.all_succeeded:
            logger.warning(
                "Large claim alert partially failed: %d/%d channels succeeded",
                result.success_count,
                result.success_count + result.failure_count,
            )


class AggregateValueHandler:
    """Recomputes the total value locked after each claim and caches it."""

    def __init__(self, db: DatabaseManager, cache: ClaimantCache) -> None:
        self._db = db
        self._cache = cache

    async def __call__(self, event: ClaimProcessed) -> None:
        async with self._db.get_async_session() as session:
            total, active_vaults = await VaultRepository(session).total_value_locked()
        await self._cache.set_json(
            self._cache.TVL_KEY,
            {
                "total_value_locked": str(total),
                "active_vaults_count": active_vaults,
                "last_claim": event.claim.transaction_hash,
                "updated_at": event.occurred_at.isoformat(),
            },
        )
        logger.debug("TVL updated: %s across %d active vaults", total, active_vaults)


class CacheInvalidationHandler:
    """Drops the claimant's cached vault list and portfolio."""

    def __init__(self, cache: ClaimantCache) -> None:
        self._cache = cache

    async def __call__(self, event: ClaimProcessed) -> None:
        removed = await self._cache.invalidate_claimant(event.claim.user_address)
        logger.debug("Invalidated %d cache keys for %s", removed, event.claim.user_address)


class OrganizationWebhookHandler:
    """POSTs each claim to an organization's webhook URL."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._client = client

    async def __call__(self, event: ClaimProcessed) -> None:
        payload = {"event": "claim.processed", "claim": event.claim.to_dict()}
        if self._client is not None:
            response = await self._client.post(self._webhook_url, json=payload, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._webhook_url, json=payload)
        response.raise_for_status()


def register_default_handlers(
    bus: ClaimEventBus,
    *,
    db: DatabaseManager,
    cache: ClaimantCache,
    dispatcher: AlertDispatcher,
    threshold_usd: Decimal = DEFAULT_LARGE_CLAIM_THRESHOLD_USD,
    organization_webhook_url: str | None = None,
    dry_run: bool = False,
) -> None:
    bus.subscribe(
        LargeClaimAlertHandler(dispatcher, threshold_usd=threshold_usd, dry_run=dry_run),
        name="large_claim_alert",
    )
    bus.subscribe(AggregateValueHandler(db, cache), name="aggregate_value")
    bus.subscribe(CacheInvalidationHandler(cache), name="cache_invalidation")
    if organization_webhook_url:
        bus.subscribe(
            OrganizationWebhookHandler(organization_webhook_url), name="organization_webhook"
        )
