"""Alert message formatter for large claims.

Turns a priced claim into a FormattedAlert with a plain-text body and a
Slack-compatible block payload.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from vesting_ledger.alerter.models import FormattedAlert

ETHERSCAN_TX_URL = "https://etherscan.io/tx/{tx_hash}"

DEFAULT_LARGE_CLAIM_THRESHOLD_USD = Decimal("10000")

LARGE_CLAIM_EVENT = "large_claim"


def truncate_address(address: str, head: int = 6, tail: int = 4) -> str:
    """Truncate an address to 0x1234...5678 format."""
    if not address or len(address) < head + tail:
        return address
    return f"{address[:head]}...{address[-tail:]}"


def format_usd(amount: Decimal) -> str:
    """Format a USD amount with commas and 2 decimal places."""
    return f"${amount:,.2f}"


def claim_value_usd(amount: Decimal, price_usd: Decimal | None) -> Decimal:
    if price_usd is None:
        return Decimal("0")
    return amount * price_usd


def is_large_claim(value_usd: Decimal, threshold: Decimal = DEFAULT_LARGE_CLAIM_THRESHOLD_USD) -> bool:
    return value_usd > threshold


class ClaimAlertFormatter:
    """Formats large claims into alert messages."""

    def __init__(self, threshold_usd: Decimal = DEFAULT_LARGE_CLAIM_THRESHOLD_USD) -> None:
        self.threshold_usd = threshold_usd

    def render(self, payload: dict[str, Any]) -> FormattedAlert:
        """Renderer for `AlertDispatcher.notify(LARGE_CLAIM_EVENT, payload)`."""
        return self.format_large_claim(
            user_address=payload["user_address"],
            token_address=payload["token_address"],
            amount_claimed=Decimal(payload["amount_claimed"]),
            price_usd=Decimal(payload["price_at_claim_usd"]),
            transaction_hash=payload["transaction_hash"],
            block_number=int(payload["block_number"]),
        )

    def format_large_claim(
        self,
        *,
        user_address: str,
        token_address: str,
        amount_claimed: Decimal,
        price_usd: Decimal,
        transaction_hash: str,
        block_number: int,
    ) -> FormattedAlert:
        value = claim_value_usd(amount_claimed, price_usd)
        user_short = truncate_address(user_address)
        title = "🚨 Large Claim Alert"
        tx_url = ETHERSCAN_TX_URL.format(tx_hash=transaction_hash)

        body = "\n".join(
            [
                f"User: {user_short}",
                f"Amount: {format_usd(value)}",
                f"Tokens Claimed: {amount_claimed:,}",
                f"Token Price: ${price_usd:.4f}",
                f"Token Address: {token_address}",
                f"Block Number: {block_number}",
                f"Transaction: {tx_url}",
            ]
        )

        blocks: list[dict[str, Any]] = [
            {"type": "header", "text": {"type": "plain_text", "text": title, "emoji": True}},
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*User:*\n{user_short}"},
                    {"type": "mrkdwn", "text": f"*Amount:*\n{format_usd(value)}"},
                    {"type": "mrkdwn", "text": f"*Tokens Claimed:*\n{amount_claimed:,}"},
                    {"type": "mrkdwn", "text": f"*Token Price:*\n${price_usd:.4f}"},
                ],
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Token Address:*\n`{token_address}`"},
                    {"type": "mrkdwn", "text": f"*Block Number:*\n{block_number}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Transaction:*\n<{tx_url}|View on Etherscan>"},
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": (
                            f"Threshold: {format_usd(self.threshold_usd)} | "
                            f"Claim exceeds threshold by {format_usd(value - self.threshold_usd)}"
                        ),
                    }
                ],
            },
        ]

        return FormattedAlert(
            event_type=LARGE_CLAIM_EVENT,
            title=title,
            body=body,
            blocks=blocks,
            data={
                "user_address": user_address,
                "token_address": token_address,
                "amount_claimed": str(amount_claimed),
                "price_at_claim_usd": str(price_usd),
                "value_usd": str(value),
                "transaction_hash": transaction_hash,
                "block_number": block_number,
            },
        )
