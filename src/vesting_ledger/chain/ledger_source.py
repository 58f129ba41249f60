"""Vault factory client on an EVM ledger.

This module provides the LedgerSource used by the indexer and the
reconciliation job:
- Vault count and vault listing from the factory contract
- Block height and block hashes for reorg detection
- VaultCreated / TopUp / Claimed event decoding
- Retry with backoff and failover to a secondary RPC URL
- Redis caching of immutable block timestamps
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol, TypeVar

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from vesting_ledger.chain.models import (
    ClaimEvent,
    LedgerEvent,
    OnChainVault,
    TopUpEvent,
    VaultCreatedEvent,
)
from vesting_ledger.errors import ExternalServiceError
from vesting_ledger.retry import RetryPolicy, SleepFn, retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_NAME = "ledger-rpc"
TOKEN_DECIMALS = 18
DEFAULT_REQUEST_TIMEOUT = 30
BLOCK_TIMESTAMP_CACHE_TTL_SECONDS = 86400

VAULT_FACTORY_ABI: list[dict[str, Any]] = [
    {
        "name": "vaultCount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "vaultInfo",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "index", "type": "uint256"}],
        "outputs": [
            {"name": "vault", "type": "address"},
            {"name": "owner", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "totalAmount", "type": "uint256"},
            {"name": "createdBlock", "type": "uint256"},
        ],
    },
    {
        "name": "VaultCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "vault", "type": "address", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": True},
        ],
    },
    {
        "name": "TopUp",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "vault", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "cliffDuration", "type": "uint64", "indexed": False},
            {"name": "vestingDuration", "type": "uint64", "indexed": False},
        ],
    },
    {
        "name": "Claimed",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "vault", "type": "address", "indexed": True},
            {"name": "beneficiary", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]


class LedgerSource(Protocol):
    """Read access to the ledger the vault store mirrors."""

    async def get_vault_count(self) -> int: ...

    async def list_vaults(self) -> list[OnChainVault]: ...

    async def get_latest_ledger(self) -> int: ...

    async def get_ledger_hash(self, sequence: int) -> str: ...

    async def get_events(self, from_ledger: int, to_ledger: int) -> list[LedgerEvent]: ...


def from_base_units(value: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    return Decimal(int(value)).scaleb(-decimals)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value)
    return text if text.startswith("0x") else f"0x{text}"


class VaultFactoryClient:
    """LedgerSource implementation over web3's AsyncWeb3.

    Example:
        ```python
        client = VaultFactoryClient(
            rpc_url="https://eth.llamarpc.com",
            factory_address="0x...",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        count = await client.get_vault_count()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        factory_address: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        confirmations: int = 0,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            factory_address: Vault factory contract address.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            confirmations: Blocks below the head considered final.
            request_timeout: Per-request timeout in seconds.
            retry_policy: Retry policy applied to every RPC call.
            sleep: Sleep used between retries, injectable for tests.
        """
        self._factory_address = AsyncWeb3.to_checksum_address(factory_address)
        self._redis = redis
        self._confirmations = confirmations
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

        self._w3 = self._new_web3_client(rpc_url, request_timeout)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url, request_timeout)

        self._cache_prefix = "ledger:"

    @staticmethod
    def _new_web3_client(rpc_url: str, timeout: float) -> AsyncWeb3[AsyncHTTPProvider]:
        return AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    async def aclose(self) -> None:
        """Close the RPC provider sessions."""
        for w3 in self._clients():
            await w3.provider.disconnect()

    def _clients(self) -> list[AsyncWeb3[AsyncHTTPProvider]]:
        return [self._w3] + ([self._w3_fallback] if self._w3_fallback else [])

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _call(self, name: str, fn: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]]) -> T:
        """Run `fn` against the primary RPC, then the fallback, under the retry policy."""

        async def attempt() -> T:
            last_error: Exception | None = None
            for index, w3 in enumerate(self._clients()):
                try:
                    result = await fn(w3)
                    if index > 0:
                        logger.info("Fallback RPC succeeded for %s", name)
                    return result
                except (Web3Exception, OSError, asyncio.TimeoutError) as e:
                    last_error = e
                    logger.debug("RPC %s failed on endpoint %d: %s", name, index, e)
            raise ExternalServiceError(
                f"RPC call {name} failed: {last_error}", service=SERVICE_NAME
            ) from last_error

        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return await retry_async(
            attempt, self._retry_policy, context=f"rpc {name}", service=SERVICE_NAME, **kwargs
        )

    def _factory(self, w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
        return w3.eth.contract(address=self._factory_address, abi=VAULT_FACTORY_ABI)

    # ------------------------------------------------------------------
    # LedgerSource
    # ------------------------------------------------------------------

    async def get_vault_count(self) -> int:
        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await self._factory(w3).functions.vaultCount().call())

        return await self._call("vaultCount", call)

    async def list_vaults(self) -> list[OnChainVault]:
        count = await self.get_vault_count()
        vaults: list[OnChainVault] = []
        for index in range(count):

            async def call(w3: AsyncWeb3[AsyncHTTPProvider], i: int = index) -> Sequence[Any]:
                return await self._factory(w3).functions.vaultInfo(i).call()

            vault, owner, token, total_amount, created_block = await self._call("vaultInfo", call)
            vaults.append(
                OnChainVault(
                    vault_address=str(vault).lower(),
                    owner_address=str(owner).lower(),
                    token_address=str(token).lower(),
                    total_amount=from_base_units(total_amount),
                    created_block=int(created_block) or None,
                )
            )
        return vaults

    async def get_latest_ledger(self) -> int:
        """Latest block considered final (head minus confirmations)."""

        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.block_number)

        head = await self._call("block_number", call)
        return max(0, head - self._confirmations)

    async def get_ledger_hash(self, sequence: int) -> str:
        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            return await w3.eth.get_block(sequence)

        block = await self._call("get_block", call)
        return _hex(block["hash"]).lower()

    async def _block_timestamp(self, block_number: int) -> datetime:
        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is None:

            async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
                return await w3.eth.get_block(block_number)

            block = await self._call("get_block", call)
            cached = str(int(block["timestamp"]))
            await self._set_cached(cache_key, cached, ttl=BLOCK_TIMESTAMP_CACHE_TTL_SECONDS)
        return datetime.fromtimestamp(int(cached), tz=UTC)

    async def get_events(self, from_ledger: int, to_ledger: int) -> list[LedgerEvent]:
        """Decode factory events in [from_ledger, to_ledger], in ledger order."""
        if to_ledger < from_ledger:
            return []

        async def fetch(w3: AsyncWeb3[AsyncHTTPProvider], event_name: str) -> list[Any]:
            event = getattr(self._factory(w3).events, event_name)
            return list(await event.get_logs(from_block=from_ledger, to_block=to_ledger))

        events: list[LedgerEvent] = []
        timestamps: dict[int, datetime] = {}
        for event_name in ("VaultCreated", "TopUp", "Claimed"):

            async def call(w3: AsyncWeb3[AsyncHTTPProvider], name: str = event_name) -> list[Any]:
                return await fetch(w3, name)

            for log in await self._call(f"get_logs:{event_name}", call):
                block_number = int(log["blockNumber"])
                if block_number not in timestamps:
                    timestamps[block_number] = await self._block_timestamp(block_number)
                events.append(self._decode(event_name, log, timestamps[block_number]))

        events.sort(key=lambda e: e.sort_key)
        return events

    @staticmethod
    def _decode(event_name: str, log: Any, timestamp: datetime) -> LedgerEvent:
        args = log["args"]
        common = {
            "transaction_hash": _hex(log["transactionHash"]).lower(),
            "block_number": int(log["blockNumber"]),
            "log_index": int(log["logIndex"]),
            "timestamp": timestamp,
        }
        if event_name == "VaultCreated":
            return VaultCreatedEvent(
                **common,
                vault_address=str(args["vault"]).lower(),
                owner_address=str(args["owner"]).lower(),
                token_address=str(args["token"]).lower(),
            )
        if event_name == "TopUp":
            return TopUpEvent(
                **common,
                vault_address=str(args["vault"]).lower(),
                amount=from_base_units(args["amount"]),
                cliff_duration=int(args["cliffDuration"]),
                vesting_duration=int(args["vestingDuration"]),
            )
        return ClaimEvent(
            **common,
            user_address=str(args["beneficiary"]).lower(),
            token_address=str(args["token"]).lower(),
            amount_claimed=from_base_units(args["amount"]),
        )
