"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime

import pytest

from vesting_ledger.storage.database import DatabaseManager

VAULT_ADDRESS = "0x" + "1" * 40
OWNER_ADDRESS = "0x" + "2" * 40
TOKEN_ADDRESS = "0x" + "3" * 40
BENEFICIARY_ADDRESS = "0x" + "b" * 40


@pytest.fixture
def t0() -> datetime:
    """Fixed reference time used as the first top-up timestamp."""
    return datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture
async def db(tmp_path) -> AsyncIterator[DatabaseManager]:
    """DatabaseManager on a throwaway SQLite file with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def vault_address() -> str:
    return VAULT_ADDRESS


@pytest.fixture
def owner_address() -> str:
    return OWNER_ADDRESS


@pytest.fixture
def token_address() -> str:
    return TOKEN_ADDRESS


@pytest.fixture
def beneficiary_address() -> str:
    return BENEFICIARY_ADDRESS
