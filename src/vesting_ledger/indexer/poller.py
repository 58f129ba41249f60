"""Ledger event poller.

Background service that follows the ledger head: it checks the stored
cursor hash against the ledger to detect reorgs, fetches events in bounded
ranges after the cursor, applies them through the vault ledger and the
claim ingestor, then advances the cursor.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from vesting_ledger.chain.models import ClaimEvent, LedgerEvent, TopUpEvent, VaultCreatedEvent
from vesting_ledger.errors import (
    DuplicateClaimError,
    DuplicateTopUpError,
    InvalidVestingInputError,
    VaultNotFoundError,
)
from vesting_ledger.vesting.models import TopUpRequest

if TYPE_CHECKING:
    from vesting_ledger.chain.ledger_source import LedgerSource
    from vesting_ledger.indexer.state import IndexerStateTracker
    from vesting_ledger.ingestor.claims import ClaimIngestor
    from vesting_ledger.vesting.service import VestingService

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 15
DEFAULT_MAX_LEDGERS_PER_POLL = 500
DEFAULT_REORG_DEPTH = 20


class IndexerRunState(str, Enum):
    """State of the ledger poller."""

    STOPPED = "stopped"
    RUNNING = "running"
    POLLING = "polling"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class IndexerStats:
    polls: int = 0
    failed_polls: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    reorgs_detected: int = 0
    last_ledger: int = 0
    last_poll_time: datetime | None = None
    last_error: str | None = None


class LedgerIndexer:
    """Applies ledger events to the store and keeps the cursor current."""

    def __init__(
        self,
        source: LedgerSource,
        tracker: IndexerStateTracker,
        vesting: VestingService,
        claims: ClaimIngestor,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_ledgers_per_poll: int = DEFAULT_MAX_LEDGERS_PER_POLL,
        reorg_depth: int = DEFAULT_REORG_DEPTH,
    ) -> None:
        self._source = source
        self._tracker = tracker
        self._vesting = vesting
        self._claims = claims
        self._poll_interval = poll_interval_seconds
        self._max_ledgers = max_ledgers_per_poll
        self._reorg_depth = reorg_depth

        self._state = IndexerRunState.STOPPED
        self._stats = IndexerStats()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> IndexerRunState:
        return self._state

    @property
    def stats(self) -> IndexerStats:
        return self._stats

    async def start(self) -> None:
        if self._state != IndexerRunState.STOPPED:
            logger.warning("Cannot start indexer: already in state %s", self._state)
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop())
        self._state = IndexerRunState.RUNNING
        logger.info("Ledger indexer started (%s)", self._tracker.service_name)

    async def stop(self) -> None:
        if self._state == IndexerRunState.STOPPED:
            return
        self._state = IndexerRunState.STOPPING
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._state = IndexerRunState.STOPPED
        logger.info("Ledger indexer stopped")

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Indexer poll failed: %s", e)
                self._stats.failed_polls += 1
                self._stats.last_error = str(e)
                self._state = IndexerRunState.ERROR

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
                break
            except TimeoutError:
                pass

    async def poll_once(self) -> int:
        """Ingest one bounded range of ledgers. Returns the number of events applied."""
        self._state = IndexerRunState.POLLING
        self._stats.polls += 1
        self._stats.last_poll_time = datetime.now(UTC)

        cursor = await self._check_for_reorg()
        latest = await self._source.get_latest_ledger()
        if latest <= cursor:
            self._state = IndexerRunState.RUNNING
            return 0

        to_ledger = min(latest, cursor + self._max_ledgers)
        events = await self._source.get_events(cursor + 1, to_ledger)
        applied = 0
        for event in events:
            if await self._apply(event):
                applied += 1

        ledger_hash = await self._source.get_ledger_hash(to_ledger)
        await self._tracker.advance_to(to_ledger, ledger_hash)

        self._stats.events_applied += applied
        self._stats.last_ledger = to_ledger
        self._state = IndexerRunState.RUNNING
        logger.info(
            "Ingested ledgers %d-%d: %d events applied of %d",
            cursor + 1,
            to_ledger,
            applied,
            len(events),
        )
        return applied

    async def _check_for_reorg(self) -> int:
        """Return the cursor to resume from, rolling back first if the ledger forked."""
        state = await self._tracker.get_state()
        if state is None:
            return 0
        cursor = state.last_ingested_ledger
        if not state.last_ingested_hash or cursor == 0:
            return cursor

        current_hash = (await self._source.get_ledger_hash(cursor)).lower()
        if current_hash == state.last_ingested_hash:
            return cursor

        target = max(0, cursor - self._reorg_depth)
        logger.warning(
            "Reorg detected at ledger %d (stored %s, ledger %s); rolling back to %d",
            cursor,
            state.last_ingested_hash,
            current_hash,
            target,
        )
        self._stats.reorgs_detected += 1
        await self._tracker.rollback_to_ledger(target)
        return target

    async def _apply(self, event: LedgerEvent) -> bool:
        try:
            if isinstance(event, VaultCreatedEvent):
                await self._vesting.create_vault(
                    event.vault_address,
                    event.owner_address,
                    event.token_address,
                    created_block=event.block_number,
                )
            elif isinstance(event, TopUpEvent):
                await self._vesting.create_top_up(
                    TopUpRequest(
                        vault_address=event.vault_address,
                        amount=event.amount,
                        cliff_duration=event.cliff_duration,
                        vesting_duration=event.vesting_duration,
                        transaction_hash=event.transaction_hash,
                        block_number=event.block_number,
                        top_up_timestamp=event.timestamp,
                    )
                )
            elif isinstance(event, ClaimEvent):
                await self._claims.process_claim(event)
            else:
                logger.debug("Ignoring unsupported event %s", type(event).__name__)
                return False
        except (DuplicateClaimError, DuplicateTopUpError, IntegrityError):
            logger.debug("Already ingested %s at ledger %d", event.transaction_hash, event.block_number)
            self._stats.events_skipped += 1
            return False
        except (VaultNotFoundError, InvalidVestingInputError) as e:
            logger.error(
                "Skipping malformed %s %s: %s",
                type(event).__name__,
                event.transaction_hash,
                e,
            )
            self._stats.events_skipped += 1
            return False
        return True
