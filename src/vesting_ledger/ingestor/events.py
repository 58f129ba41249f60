"""In-process event bus for claim side effects.

Publishing puts the event on a bounded asyncio.Queue and returns at once;
a single consumer task hands each event to every subscriber in turn. A
subscriber that raises is logged and skipped, so neither the publisher
nor the other subscribers ever see its failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from vesting_ledger.storage.repos import ClaimDTO

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_DRAIN_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ClaimProcessed:
    """Emitted once a claim row has been committed."""

    claim: ClaimDTO
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


ClaimHandler = Callable[[ClaimProcessed], Awaitable[None]]


@dataclass
class BusStats:
    published: int = 0
    delivered: int = 0
    dropped: int = 0
    handler_failures: int = 0
    last_error: str | None = None


class ClaimEventBus:
    """Fire-and-forget fan-out of ClaimProcessed events to subscribers."""

    def __init__(self, *, max_queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[ClaimProcessed] = asyncio.Queue(maxsize=max_queue_size)
        self._handlers: list[tuple[str, ClaimHandler]] = []
        self._task: asyncio.Task[None] | None = None
        self._stats = BusStats()

    @property
    def stats(self) -> BusStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, handler: ClaimHandler, *, name: str | None = None) -> None:
        label = name or getattr(handler, "__qualname__", None) or type(handler).__name__
        self._handlers.append((label, handler))

    def publish(self, event: ClaimProcessed) -> bool:
        """Queue an event without waiting. Returns False when it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats.dropped += 1
            logger.warning(
                "Claim event queue full, dropping event for %s", event.claim.transaction_hash
            )
            return False
        self._stats.published += 1
        return True

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._consume())
        logger.info("Claim event bus started with %d subscribers", len(self._handlers))

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def stop(self, *, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS) -> None:
        """Drain pending events (bounded by `drain_timeout`), then stop the consumer."""
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except TimeoutError:
            logger.warning(
                "Claim event bus stopped with %d undelivered events", self._queue.qsize()
            )
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Claim event bus stopped")

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                for name, handler in self._handlers:
                    await self._deliver(name, handler, event)
                self._stats.delivered += 1
            finally:
                self._queue.task_done()

    async def _deliver(self, name: str, handler: ClaimHandler, event: ClaimProcessed) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.handler_failures += 1
            self._stats.last_error = f"{name}: {e}"
            logger.exception(
                "Claim side effect %s failed for %s", name, event.claim.transaction_hash
            )
