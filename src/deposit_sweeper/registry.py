"""Address registry adapter - read-only access to active deposit addresses."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from deposit_sweeper.storage.repos import DepositAddressDTO, DepositAddressRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class AddressRegistry:
    """Lists the deposit addresses a watcher has to check."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_active_addresses(self, chain: str) -> list[DepositAddressDTO]:
        """Active (not disabled) deposit addresses of ``chain``."""
        async with self._session_factory() as session:
            addresses = await DepositAddressRepository(session).list_active(chain)
        logger.debug("Loaded %d active deposit addresses for %s", len(addresses), chain)
        return addresses

    async def get(self, address_id: uuid.UUID) -> DepositAddressDTO | None:
        async with self._session_factory() as session:
            return await DepositAddressRepository(session).get(address_id)
