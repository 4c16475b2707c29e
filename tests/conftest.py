"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from deposit_sweeper.storage.models import Base
from deposit_sweeper.storage.repos import DepositAddressDTO, DepositAddressRepository

SOLANA_DEPOSIT_ADDRESS = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
BASE_DEPOSIT_ADDRESS = "0x742d35cc6634c0532925a3b844bc9e7595f5eae2"

AddressFactory = Callable[..., Awaitable[DepositAddressDTO]]


@pytest.fixture
async def async_engine(tmp_path) -> AsyncEngine:
    """File-backed SQLite engine so several sessions see the same data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_address(session_factory: async_sessionmaker[AsyncSession]) -> AddressFactory:
    """Insert a deposit address and return it."""

    async def _make(
        *,
        chain: str = "base",
        asset: str = "USDC",
        address: str = BASE_DEPOSIT_ADDRESS,
        user_id: str = "user-1",
        encrypted_private_key: str = "encrypted-blob",
    ) -> DepositAddressDTO:
        async with session_factory() as session:
            dto = await DepositAddressRepository(session).insert(
                DepositAddressDTO(
                    user_id=user_id,
                    chain=chain,
                    asset=asset,
                    address=address,
                    encrypted_private_key=encrypted_private_key,
                )
            )
            await session.commit()
        return dto

    return _make
