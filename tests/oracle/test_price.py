"""Tests for the CoinGecko price oracle."""

from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from vesting_ledger.cache import TTLCache
from vesting_ledger.errors import ExternalServiceError, RetryExhaustedError
from vesting_ledger.oracle.price import CoinGeckoPriceOracle
from vesting_ledger.retry import RetryPolicy

TOKEN = "0x" + "A" * 40
BASE_URL = "https://api.test/api/v3"


class FakeCoinGecko:
    """Routes CoinGecko paths to canned responses and counts requests."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.contract_status = 200
        self.price_status = 200
        self.history_usd: object = 1.5

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v3")
        if path.startswith("/coins/ethereum/contract/"):
            if self.contract_status != 200:
                return httpx.Response(self.contract_status)
            return httpx.Response(200, json={"id": "token-coin"})
        if path == "/search":
            return httpx.Response(
                200,
                json={
                    "coins": [
                        {"id": "other", "platforms": {"ethereum": "0x" + "0" * 40}},
                        {"id": "searched-coin", "platforms": {"ethereum": TOKEN.lower()}},
                    ]
                },
            )
        if path == "/simple/price":
            if self.price_status != 200:
                return httpx.Response(self.price_status)
            coin_id = request.url.params["ids"]
            return httpx.Response(200, json={coin_id: {"usd": 2.25}})
        if path.endswith("/history"):
            return httpx.Response(
                200, json={"market_data": {"current_price": {"usd": self.history_usd}}}
            )
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [r.url.path.removeprefix("/api/v3") for r in self.requests]


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def api() -> FakeCoinGecko:
    return FakeCoinGecko()


@pytest.fixture
async def oracle(api: FakeCoinGecko):
    async with httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(api)) as client:
        yield CoinGeckoPriceOracle(
            client=client,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0),
            sleep=no_sleep,
        )


class TestGetPrice:
    @pytest.mark.asyncio
    async def test_latest_price(self, oracle: CoinGeckoPriceOracle, api: FakeCoinGecko) -> None:
        price = await oracle.get_price(TOKEN)

        assert price == Decimal("2.25")
        assert api.paths() == [f"/coins/ethereum/contract/{TOKEN.lower()}", "/simple/price"]

    @pytest.mark.asyncio
    async def test_historical_price_uses_day_month_year(
        self, oracle: CoinGeckoPriceOracle, api: FakeCoinGecko
    ) -> None:
        price = await oracle.get_price(TOKEN, datetime(2026, 3, 7, 23, 59, tzinfo=UTC))

        assert price == Decimal("1.5")
        history = api.requests[-1]
        assert history.url.path.endswith("/coins/token-coin/history")
        assert history.url.params["date"] == "07-03-2026"

    @pytest.mark.asyncio
    async def test_prices_and_coin_ids_are_cached(
        self, oracle: CoinGeckoPriceOracle, api: FakeCoinGecko
    ) -> None:
        await oracle.get_price(TOKEN)
        await oracle.get_price(TOKEN.lower())
        await oracle.get_price(TOKEN, datetime(2026, 3, 7, tzinfo=UTC))

        assert api.paths().count(f"/coins/ethereum/contract/{TOKEN.lower()}") == 1
        assert api.paths().count("/simple/price") == 1

        oracle.clear_cache()
        await oracle.get_price(TOKEN)
        assert api.paths().count("/simple/price") == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_search(
        self, oracle: CoinGeckoPriceOracle, api: FakeCoinGecko
    ) -> None:
        api.contract_status = 404

        assert await oracle.get_coin_id(TOKEN) == "searched-coin"
        assert "/search" in api.paths()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_then_raised(
        self, oracle: CoinGeckoPriceOracle, api: FakeCoinGecko
    ) -> None:
        api.price_status = 503

        with pytest.raises(RetryExhaustedError):
            await oracle.get_price(TOKEN)
        assert api.paths().count("/simple/price") == 3

    @pytest.mark.asyncio
    async def test_malformed_price_rejected(
        self, oracle: CoinGeckoPriceOracle, api: FakeCoinGecko
    ) -> None:
        api.history_usd = "not-a-number"
        with pytest.raises(ExternalServiceError):
            await oracle.get_price(TOKEN, datetime(2026, 3, 7, tzinfo=UTC))


class TestConstruction:
    @pytest.mark.asyncio
    async def test_api_key_header_and_owned_client(self) -> None:
        oracle = CoinGeckoPriceOracle(
            api_key="secret",
            price_cache=TTLCache(ttl_seconds=1),
            coin_id_cache=TTLCache(ttl_seconds=1),
        )
        assert oracle._client.headers["x-cg-demo-api-key"] == "secret"
        await oracle.aclose()
        assert oracle._client.is_closed
