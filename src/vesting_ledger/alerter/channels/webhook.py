"""Generic JSON webhook channel (Slack-compatible payloads)."""

from __future__ import annotations

import logging

import httpx

from vesting_ledger.alerter.models import FormattedAlert

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class WebhookChannel:
    """POSTs alerts as JSON to a webhook URL."""

    name = "webhook"

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._client = client

    async def send(self, alert: FormattedAlert) -> bool:
        payload = alert.to_webhook_payload()
        try:
            if self._client is not None:
                response = await self._client.post(
                    self._webhook_url, json=payload, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error("Webhook delivery failed: %s", e)
            return False

        if response.is_success:
            logger.debug("Webhook delivered %s alert", alert.event_type)
            return True
        logger.error("Webhook returned HTTP %s for %s alert", response.status_code, alert.event_type)
        return False
