"""Runtime wiring for the vesting ledger.

This module provides the Pipeline class that builds every component from
Settings and runs the background services: the claim event bus, the
ledger poller and the periodic vault reconciliation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from vesting_ledger.alerter.channels import LogChannel, WebhookChannel
from vesting_ledger.alerter.dispatcher import AlertChannel, AlertDispatcher
from vesting_ledger.cache import ClaimantCache
from vesting_ledger.chain.ledger_source import LedgerSource, VaultFactoryClient
from vesting_ledger.config import Settings, get_settings
from vesting_ledger.indexer.poller import LedgerIndexer
from vesting_ledger.indexer.state import IndexerStateTracker
from vesting_ledger.ingestor.claims import ClaimIngestor
from vesting_ledger.ingestor.events import ClaimEventBus
from vesting_ledger.ingestor.side_effects import register_default_handlers
from vesting_ledger.jobs.locks import JobLocks
from vesting_ledger.jobs.reconciliation import VaultReconciliationJob
from vesting_ledger.oracle.price import CoinGeckoPriceOracle
from vesting_ledger.retry import RetryPolicy
from vesting_ledger.storage.database import DatabaseManager
from vesting_ledger.vesting.service import VestingService

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    started_at: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Builds and runs the vesting ledger services.

    `initialize()` only builds components, which is what one-shot operator
    commands need; `start()` also launches the background services.

    Example:
        ```python
        async with Pipeline() as pipeline:
            summary = await pipeline.vesting.get_vault_summary("0x...")
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        ledger_source: LedgerSource | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, skip alerts and backfill writes. Overrides settings.dry_run.
            ledger_source: Ledger source to use instead of building a VaultFactoryClient.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()
        self._initialized = False

        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._ledger_source: LedgerSource | None = ledger_source
        self._price_oracle: CoinGeckoPriceOracle | None = None
        self._event_bus: ClaimEventBus | None = None
        self._vesting: VestingService | None = None
        self._claims: ClaimIngestor | None = None
        self._tracker: IndexerStateTracker | None = None
        self._indexer: LedgerIndexer | None = None
        self._reconciliation: VaultReconciliationJob | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def stats(self) -> PipelineStats:
        return self._stats

    @property
    def db(self) -> DatabaseManager:
        return self._require(self._db_manager, "database")

    @property
    def vesting(self) -> VestingService:
        return self._require(self._vesting, "vesting service")

    @property
    def claims(self) -> ClaimIngestor:
        return self._require(self._claims, "claim ingestor")

    @property
    def tracker(self) -> IndexerStateTracker:
        return self._require(self._tracker, "indexer state tracker")

    @property
    def reconciliation(self) -> VaultReconciliationJob:
        return self._require(self._reconciliation, "reconciliation job")

    @staticmethod
    def _require(component: Any, name: str) -> Any:
        if component is None:
            raise RuntimeError(f"Pipeline {name} is not available; call initialize() first")
        return component

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Build all components without starting background services."""
        if self._initialized:
            return
        settings = self._settings
        retry_policy = RetryPolicy.from_settings(settings.retry)

        if settings.redis.url:
            self._redis = Redis.from_url(settings.redis.url)
        self._db_manager = DatabaseManager(settings.database.url)
        locks = JobLocks(redis=self._redis, ttl_seconds=settings.reconciliation.lock_ttl_seconds)

        if self._ledger_source is None and settings.chain.vault_factory_address:
            self._ledger_source = VaultFactoryClient(
                settings.chain.rpc_url,
                settings.chain.vault_factory_address,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                redis=self._redis,
                confirmations=settings.chain.confirmations,
                request_timeout=settings.chain.request_timeout_seconds,
                retry_policy=retry_policy,
            )

        self._price_oracle = CoinGeckoPriceOracle.from_settings(
            settings.price_oracle, retry_policy=retry_policy
        )
        self._event_bus = ClaimEventBus(max_queue_size=settings.ingestion.event_queue_size)
        register_default_handlers(
            self._event_bus,
            db=self._db_manager,
            cache=ClaimantCache(redis=self._redis),
            dispatcher=AlertDispatcher(self._build_alert_channels()),
            threshold_usd=settings.ingestion.large_claim_threshold_usd,
            organization_webhook_url=settings.ingestion.organization_webhook_url,
            dry_run=self._dry_run,
        )

        self._vesting = VestingService(self._db_manager)
        self._claims = ClaimIngestor(
            self._db_manager,
            self._price_oracle,
            event_bus=self._event_bus,
            backfill_batch_size=settings.ingestion.price_backfill_batch_size,
        )
        self._tracker = IndexerStateTracker(
            self._db_manager, service_name=settings.ingestion.service_name, locks=locks
        )

        if self._ledger_source is not None:
            self._indexer = LedgerIndexer(
                self._ledger_source,
                self._tracker,
                self._vesting,
                self._claims,
                poll_interval_seconds=settings.ingestion.poll_interval_seconds,
                max_ledgers_per_poll=settings.ingestion.max_ledgers_per_poll,
                reorg_depth=settings.ingestion.reorg_depth,
            )
            # The factory client already retries each RPC.
            self._reconciliation = VaultReconciliationJob(
                self._db_manager,
                self._ledger_source,
                locks=locks,
                interval_seconds=settings.reconciliation.interval_seconds,
                retry_policy=RetryPolicy.no_retry(),
                dry_run=self._dry_run,
            )

        self._initialized = True
        logger.info("All components initialized")

    def _build_alert_channels(self) -> list[AlertChannel]:
        channels: list[AlertChannel] = [LogChannel()]
        if self._settings.alert.webhook_url:
            channels.append(
                WebhookChannel(
                    self._settings.alert.webhook_url,
                    timeout_seconds=self._settings.alert.timeout_seconds,
                )
            )
            logger.info("Webhook alert channel enabled")
        return channels

    async def start(self) -> None:
        """Initialize components and start the background services.

        Raises:
            RuntimeError: If the pipeline is already running.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self.initialize()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self.close()
            raise

    async def _start_background_services(self) -> None:
        if self._event_bus:
            await self._event_bus.start()
        if self._indexer:
            await self._indexer.start()
        else:
            logger.warning("No ledger source configured; ledger indexing disabled")
        if self._reconciliation and self._settings.reconciliation.enabled:
            await self._reconciliation.start()

    async def stop(self) -> None:
        """Stop background services and release resources."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")
        if self._stop_event:
            self._stop_event.set()

        if self._reconciliation:
            await self._reconciliation.stop()
        if self._indexer:
            await self._indexer.stop()
        if self._event_bus:
            await self._event_bus.stop()
        await self.close()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def close(self) -> None:
        """Release connections held by the components."""
        if self._price_oracle:
            await self._price_oracle.aclose()
            self._price_oracle = None
        if isinstance(self._ledger_source, VaultFactoryClient):
            await self._ledger_source.aclose()
            self._ledger_source = None
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        self._initialized = False
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and block until stopped or cancelled."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
