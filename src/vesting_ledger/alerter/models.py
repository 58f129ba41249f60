"""Alert data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class FormattedAlert:
    """An alert rendered once and delivered to every channel.

    Attributes:
        event_type: Machine-readable kind, e.g. "large_claim".
        title: Short headline.
        body: Plain-text body.
        blocks: Structured webhook payload (Slack-style blocks).
        data: Raw values the alert was built from.
    """

    event_type: str
    title: str
    body: str
    blocks: list[dict[str, Any]] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    def to_webhook_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": self.title, "event_type": self.event_type}
        if self.blocks:
            payload["blocks"] = self.blocks
        if self.data:
            payload["data"] = self.data
        return payload
