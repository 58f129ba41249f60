"""Fan-out of formatted alerts to delivery channels."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from vesting_ledger.alerter.models import FormattedAlert

logger = logging.getLogger(__name__)


AlertRenderer = Callable[[dict[str, Any]], FormattedAlert]


class AlertChannel(Protocol):
    """A delivery target. `send` returns False (or raises) on failure."""

    name: str

    async def send(self, alert: FormattedAlert) -> bool: ...


@dataclass
class DispatchResult:
    success_count: int = 0
    failure_count: int = 0
    failed_channels: list[str] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0


class AlertDispatcher:
    """Sends every alert to all channels concurrently.

    A failing channel is logged and counted; it never prevents delivery to
    the others and never raises to the caller. Event types with a registered
    renderer are formatted by it in `notify`; the rest get a plain alert.
    """

    def __init__(
        self,
        channels: list[AlertChannel],
        *,
        renderers: dict[str, AlertRenderer] | None = None,
    ) -> None:
        self._channels = list(channels)
        self._renderers: dict[str, AlertRenderer] = dict(renderers or {})

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    def register_renderer(self, event_type: str, renderer: AlertRenderer) -> None:
        self._renderers[event_type] = renderer

    async def dispatch(self, alert: FormattedAlert) -> DispatchResult:
        result = DispatchResult()
        if not self._channels:
            return result

        outcomes = await asyncio.gather(
            *(channel.send(alert) for channel in self._channels),
            return_exceptions=True,
        )
        for channel, outcome in zip(self._channels, outcomes, strict=True):
            if outcome is True:
                result.success_count += 1
                continue
            result.failure_count += 1
            result.failed_channels.append(channel.name)
            if isinstance(outcome, BaseException):
                logger.error("Alert channel %s raised: %s", channel.name, outcome)
            else:
                logger.warning("Alert channel %s reported failure", channel.name)
        return result

    async def notify(self, event_type: str, payload: dict[str, Any]) -> DispatchResult:
        """Render `payload` for `event_type` and send it to every channel."""
        renderer = self._renderers.get(event_type)
        if renderer is not None:
            return await self.dispatch(renderer(payload))
        alert = FormattedAlert(
            event_type=event_type,
            title=str(payload.get("title", event_type)),
            body=str(payload.get("body", "")),
            data=payload,
        )
        return await self.dispatch(alert)
