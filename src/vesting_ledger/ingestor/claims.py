"""Claim ingestion with price-at-claim enrichment.

The unique constraint on `claims_history.transaction_hash` is what makes
ingestion idempotent. The lookup before the insert only saves an oracle
call; a concurrent duplicate that slips past it fails on insert and is
reported as DuplicateClaimError all the same.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from vesting_ledger.chain.models import ClaimEvent
from vesting_ledger.errors import DuplicateClaimError
from vesting_ledger.ingestor.events import ClaimEventBus, ClaimProcessed
from vesting_ledger.storage.repos import ZERO, ClaimDTO, ClaimRepository

if TYPE_CHECKING:
    from vesting_ledger.oracle.price import PriceOracle
    from vesting_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_BATCH_SIZE = 100


@dataclass
class BatchResult:
    processed_count: int = 0
    error_count: int = 0
    results: list[ClaimDTO] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class RealizedGains:
    user_address: str
    total_realized_gains_usd: Decimal
    claims_processed: int
    start: datetime | None = None
    end: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_address": self.user_address,
            "total_realized_gains_usd": str(self.total_realized_gains_usd),
            "claims_processed": self.claims_processed,
            "period": {
                "start_date": self.start.isoformat() if self.start else None,
                "end_date": self.end.isoformat() if self.end else None,
            },
        }


class ClaimIngestor:
    """Records claims exactly once and enriches them with a USD price."""

    def __init__(
        self,
        db: DatabaseManager,
        price_oracle: PriceOracle,
        *,
        event_bus: ClaimEventBus | None = None,
        backfill_batch_size: int = DEFAULT_BACKFILL_BATCH_SIZE,
    ) -> None:
        self._db = db
        self._price_oracle = price_oracle
        self._event_bus = event_bus
        self._backfill_batch_size = backfill_batch_size

    async def process_claim(self, claim: ClaimEvent) -> ClaimDTO:
        """Store a claim with its price at claim time.

        A price that cannot be fetched is stored as None and filled in later
        by `backfill_missing_prices`.

        Raises:
            DuplicateClaimError: If the transaction hash was already recorded.
        """
        tx_hash = claim.transaction_hash.lower()
        async with self._db.get_async_session() as session:
            if await ClaimRepository(session).get_by_transaction_hash(tx_hash):
                raise DuplicateClaimError(tx_hash)

        price = await self._fetch_price(claim.token_address, claim.claim_timestamp, tx_hash)

        try:
            async with self._db.get_async_session() as session:
                stored = await ClaimRepository(session).insert(
                    ClaimDTO(
                        user_address=claim.user_address,
                        token_address=claim.token_address,
                        amount_claimed=claim.amount_claimed,
                        claim_timestamp=claim.claim_timestamp,
                        transaction_hash=tx_hash,
                        block_number=claim.block_number,
                        price_at_claim_usd=price,
                    )
                )
        except IntegrityError as e:
            raise DuplicateClaimError(tx_hash) from e

        logger.info("Processed claim %s with price %s", tx_hash, price)

        if self._event_bus is not None:
            self._event_bus.publish(ClaimProcessed(claim=stored))
        return stored

    async def process_batch_claims(self, claims: Sequence[ClaimEvent]) -> BatchResult:
        """Process claims independently; one failure never stops the rest."""
        result = BatchResult()
        for claim in claims:
            try:
                result.results.append(await self.process_claim(claim))
            except Exception as e:
                logger.warning("Claim %s failed: %s", claim.transaction_hash, e)
                result.errors.append({"transaction_hash": claim.transaction_hash, "error": str(e)})

        result.processed_count = len(result.results)
        result.error_count = len(result.errors)
        return result

    async def backfill_missing_prices(self, batch_size: int | None = None) -> int:
        """Price up to `batch_size` unpriced claims, oldest first.

        Each update commits on its own. Returns the number of claims examined.
        """
        limit = batch_size or self._backfill_batch_size
        async with self._db.get_async_session() as session:
            pending = await ClaimRepository(session).list_missing_price(limit=limit)

        logger.info("Found %d claims without price data", len(pending))

        for claim in pending:
            try:
                price = await self._price_oracle.get_price(
                    claim.token_address, claim.claim_timestamp
                )
                async with self._db.get_async_session() as session:
                    await ClaimRepository(session).set_price(claim.id, price)
            except Exception as e:
                logger.error(
                    "Failed to backfill price for claim %s: %s", claim.transaction_hash, e
                )
                continue
            logger.info("Backfilled price for claim %s: %s", claim.transaction_hash, price)

        return len(pending)

    async def get_realized_gains(
        self,
        user_address: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> RealizedGains:
        """Sum of claimed amount times price-at-claim over priced claims in a window."""
        async with self._db.get_async_session() as session:
            claims = await ClaimRepository(session).list_priced_for_user(
                user_address, start=start, end=end
            )
        total = sum((c.value_usd or ZERO for c in claims), ZERO)
        return RealizedGains(
            user_address=user_address.lower(),
            total_realized_gains_usd=total,
            claims_processed=len(claims),
            start=start,
            end=end,
        )

    async def _fetch_price(
        self, token_address: str, timestamp: datetime, tx_hash: str
    ) -> Decimal | None:
        try:
            return await self._price_oracle.get_price(token_address, timestamp)
        except Exception as e:
            logger.warning(
                "Price unavailable for claim %s (token %s), storing without price: %s",
                tx_hash,
                token_address,
                e,
            )
            return None
