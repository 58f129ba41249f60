"""Token price oracle backed by the CoinGecko REST API.

Prices are resolved through the token's contract address: the coin id is
looked up first (contract endpoint, then search as a fallback) and the
latest or historical USD price is fetched for it. Both lookups are cached
in caller-owned TTL caches and every HTTP call goes through `retry_async`.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from vesting_ledger.cache import TTLCache
from vesting_ledger.errors import ExternalServiceError
from vesting_ledger.retry import RetryPolicy, SleepFn, retry_async

if TYPE_CHECKING:
    from vesting_ledger.config import PriceOracleSettings

logger = logging.getLogger(__name__)

SERVICE_NAME = "coingecko"
DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_PRICE_TTL_SECONDS = 60
DEFAULT_COIN_ID_TTL_SECONDS = 3600
API_KEY_HEADER = "x-cg-demo-api-key"


class PriceOracle(Protocol):
    """Anything that can price a token in USD, optionally at a past moment."""

    async def get_price(self, token_address: str, timestamp: datetime | None = None) -> Decimal: ...


def _to_decimal(value: Any, *, what: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ExternalServiceError(f"Malformed {what}: {value!r}", service=SERVICE_NAME) from e
    if not price.is_finite() or price < 0:
        raise ExternalServiceError(f"Malformed {what}: {value!r}", service=SERVICE_NAME)
    return price


class CoinGeckoPriceOracle:
    """CoinGecko price lookups with caching, timeouts and retry.

    Example:
        ```python
        async with CoinGeckoPriceOracle() as oracle:
            price = await oracle.get_price("0xa0b8...", timestamp=claim_time)
        ```
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        platform: str = "ethereum",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        price_cache: TTLCache[str, Decimal] | None = None,
        coin_id_cache: TTLCache[str, str] | None = None,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        """Initialize the oracle.

        Args:
            base_url: CoinGecko API root.
            api_key: Optional API key sent as a header.
            platform: Asset platform the contract addresses live on.
            timeout_seconds: Per-request timeout.
            price_cache: Cache for prices (defaults to a 1 minute TTL).
            coin_id_cache: Cache for coin ids (defaults to a 1 hour TTL).
            retry_policy: Retry policy for HTTP calls.
            client: Optional pre-built httpx client (owned by the caller).
            sleep: Sleep used between retries, injectable for tests.
        """
        self._platform = platform
        self._price_cache = price_cache or TTLCache(ttl_seconds=DEFAULT_PRICE_TTL_SECONDS)
        self._coin_id_cache = coin_id_cache or TTLCache(ttl_seconds=DEFAULT_COIN_ID_TTL_SECONDS)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

        headers = {"accept": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
        )

    @classmethod
    def from_settings(
        cls, settings: PriceOracleSettings, *, retry_policy: RetryPolicy | None = None
    ) -> CoinGeckoPriceOracle:
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key.get_secret_value() if settings.api_key else None,
            platform=settings.platform,
            timeout_seconds=settings.timeout_seconds,
            price_cache=TTLCache(
                ttl_seconds=settings.price_cache_ttl_seconds,
                max_entries=settings.cache_max_entries,
            ),
            coin_id_cache=TTLCache(
                ttl_seconds=settings.coin_id_cache_ttl_seconds,
                max_entries=settings.cache_max_entries,
            ),
            retry_policy=retry_policy,
        )

    async def __aenter__(self) -> CoinGeckoPriceOracle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def clear_cache(self) -> None:
        self._price_cache.clear()
        self._coin_id_cache.clear()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_price(self, token_address: str, timestamp: datetime | None = None) -> Decimal:
        """USD price of a token, latest or on the UTC day of `timestamp`.

        Raises:
            ExternalServiceError: If the price cannot be determined.
        """
        token_address = token_address.lower()
        date_str = self._history_date(timestamp) if timestamp is not None else None
        cache_key = f"{token_address}:{date_str or 'latest'}"

        cached = self._price_cache.get(cache_key)
        if cached is not None:
            return cached

        coin_id = await self.get_coin_id(token_address)
        if date_str is None:
            price = await self._get_latest_price(coin_id)
        else:
            price = await self._get_historical_price(coin_id, date_str)

        self._price_cache.set(cache_key, price)
        return price

    async def get_coin_id(self, token_address: str) -> str:
        """Resolve the CoinGecko coin id for a contract address."""
        token_address = token_address.lower()
        cached = self._coin_id_cache.get(token_address)
        if cached is not None:
            return cached

        coin_id: str | None
        try:
            data = await self._get_json(f"/coins/{self._platform}/contract/{token_address}")
            coin_id = data.get("id")
        except ExternalServiceError as e:
            logger.debug("Contract lookup failed for %s, trying search: %s", token_address, e)
            coin_id = await self._search_coin_id(token_address)

        if not coin_id:
            raise ExternalServiceError(
                f"Could not find coin id for token address {token_address}",
                service=SERVICE_NAME,
                status_code=404,
            )
        self._coin_id_cache.set(token_address, coin_id)
        return coin_id

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _history_date(timestamp: datetime) -> str:
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return timestamp.astimezone(UTC).strftime("%d-%m-%Y")

    async def _search_coin_id(self, token_address: str) -> str | None:
        try:
            data = await self._get_json("/search", params={"query": token_address})
        except ExternalServiceError as e:
            logger.warning("Search failed for token %s: %s", token_address, e)
            return None
        for coin in data.get("coins") or []:
            platforms = coin.get("platforms") or {}
            if str(platforms.get(self._platform, "")).lower() == token_address:
                return str(coin["id"])
        return None

    async def _get_latest_price(self, coin_id: str) -> Decimal:
        data = await self._get_json(
            "/simple/price",
            params={"ids": coin_id, "vs_currencies": "usd", "precision": "18"},
        )
        usd = (data.get(coin_id) or {}).get("usd")
        if usd is None:
            raise ExternalServiceError(f"No USD price found for {coin_id}", service=SERVICE_NAME)
        return _to_decimal(usd, what=f"USD price for {coin_id}")

    async def _get_historical_price(self, coin_id: str, date_str: str) -> Decimal:
        data = await self._get_json(
            f"/coins/{coin_id}/history",
            params={"date": date_str, "localization": "false"},
        )
        usd = ((data.get("market_data") or {}).get("current_price") or {}).get("usd")
        if usd is None:
            raise ExternalServiceError(
                f"No historical USD price found for {coin_id} on {date_str}",
                service=SERVICE_NAME,
            )
        return _to_decimal(usd, what=f"USD price for {coin_id} on {date_str}")

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        async def request() -> dict[str, Any]:
            try:
                response = await self._client.get(path, params=params)
            except httpx.HTTPError as e:
                raise ExternalServiceError(
                    f"GET {path} failed: {e}", service=SERVICE_NAME
                ) from e
            if response.status_code != 200:
                raise ExternalServiceError(
                    f"GET {path} returned HTTP {response.status_code}",
                    service=SERVICE_NAME,
                    status_code=response.status_code,
                )
            payload = response.json()
            if not isinstance(payload, dict):
                raise ExternalServiceError(f"GET {path} returned non-object JSON", service=SERVICE_NAME)
            return payload

        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        operation: Callable[[], Awaitable[dict[str, Any]]] = request
        return await retry_async(
            operation,
            self._retry_policy,
            context=f"coingecko GET {path}",
            service=SERVICE_NAME,
            **kwargs,
        )
