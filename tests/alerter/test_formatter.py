"""Tests for large-claim alert formatting."""

from decimal import Decimal

import pytest

from vesting_ledger.alerter.formatter import (
    LARGE_CLAIM_EVENT,
    ClaimAlertFormatter,
    claim_value_usd,
    format_usd,
    is_large_claim,
    truncate_address,
)


class TestHelpers:
    def test_truncate_address(self) -> None:
        assert truncate_address("0x1234567890abcdef1234567890abcdef12345678") == "0x1234...5678"

    def test_truncate_short_address_unchanged(self) -> None:
        assert truncate_address("0x12") == "0x12"

    def test_format_usd(self) -> None:
        assert format_usd(Decimal("1234567.891")) == "$1,234,567.89"

    def test_claim_value_without_price(self) -> None:
        assert claim_value_usd(Decimal("10"), None) == Decimal("0")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(Decimal("10000.01"), True), (Decimal("10000"), False), (Decimal("1"), False)],
    )
    def test_is_large_claim_strictly_above(self, value: Decimal, expected: bool) -> None:
        assert is_large_claim(value, Decimal("10000")) is expected


class TestClaimAlertFormatter:
    def test_format_large_claim(self) -> None:
        alert = ClaimAlertFormatter(Decimal("10000")).format_large_claim(
            user_address="0x" + "b" * 40,
            token_address="0x" + "3" * 40,
            amount_claimed=Decimal("5000"),
            price_usd=Decimal("2.5"),
            transaction_hash="0x" + "e" * 64,
            block_number=42,
        )

        assert alert.event_type == "large_claim"
        assert "User: 0xbbbb...bbbb" in alert.body
        assert "Amount: $12,500.00" in alert.body
        assert alert.data["value_usd"] == "12500.0"
        assert alert.blocks[0]["type"] == "header"
        assert "exceeds threshold by $2,500.00" in alert.blocks[-1]["elements"][0]["text"]

        payload = alert.to_webhook_payload()
        assert payload["text"] == alert.title
        assert payload["blocks"] == alert.blocks

    def test_render_from_claim_payload(self) -> None:
        alert = ClaimAlertFormatter(Decimal("10000")).render(
            {
                "user_address": "0x" + "b" * 40,
                "token_address": "0x" + "3" * 40,
                "amount_claimed": "6000",
                "price_at_claim_usd": "2",
                "transaction_hash": "0x" + "e" * 64,
                "block_number": 42,
            }
        )

        assert alert.event_type == LARGE_CLAIM_EVENT
        assert alert.data["value_usd"] == "12000"
        assert alert.data["block_number"] == 42
