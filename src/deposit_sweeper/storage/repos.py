"""Repository pattern implementations for data access.

This module provides data access abstractions for deposit addresses,
on-chain deposits and watcher cursors.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from deposit_sweeper.storage.models import (
    DepositAddressModel,
    OnchainDepositModel,
    WatcherCursorModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass
class DepositAddressDTO:
    """Data transfer object for deposit addresses."""

    user_id: str
    chain: str
    asset: str
    address: str
    encrypted_private_key: str = field(repr=False)
    id: uuid.UUID | None = None
    created_at: datetime | None = None
    disabled_at: datetime | None = None

    @classmethod
    def from_model(cls, model: DepositAddressModel) -> DepositAddressDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            chain=model.chain,
            asset=model.asset,
            address=model.address,
            encrypted_private_key=model.encrypted_private_key,
            created_at=model.created_at,
            disabled_at=model.disabled_at,
        )


@dataclass
class OnchainDepositDTO:
    """Data transfer object for on-chain deposits."""

    id: uuid.UUID
    user_id: str
    deposit_address_id: uuid.UUID
    chain: str
    asset: str
    tx_id: str
    amount: Decimal
    from_address: str | None
    block_number: int
    confirmations: int
    required_confirmations: int
    status: str
    first_seen_at: datetime
    confirmed_at: datetime | None = None
    swept_at: datetime | None = None
    sweep_tx_id: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: OnchainDepositModel) -> OnchainDepositDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            deposit_address_id=model.deposit_address_id,
            chain=model.chain,
            asset=model.asset,
            tx_id=model.tx_id,
            amount=model.amount,
            from_address=model.from_address,
            block_number=model.block_number,
            confirmations=model.confirmations,
            required_confirmations=model.required_confirmations,
            status=model.status,
            first_seen_at=model.first_seen_at,
            confirmed_at=model.confirmed_at,
            swept_at=model.swept_at,
            sweep_tx_id=model.sweep_tx_id,
            updated_at=model.updated_at,
        )


class DepositAddressRepository:
    """Repository for deposit addresses."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_active(self, chain: str) -> list[DepositAddressDTO]:
        """All deposit addresses of a chain that are not disabled."""
        result = await self.session.execute(
            select(DepositAddressModel)
            .where(DepositAddressModel.chain == chain)
            .where(DepositAddressModel.disabled_at.is_(None))
            .order_by(DepositAddressModel.created_at)
        )
        return [DepositAddressDTO.from_model(m) for m in result.scalars().all()]

    async def get(self, address_id: uuid.UUID) -> DepositAddressDTO | None:
        model = await self.session.get(DepositAddressModel, address_id)
        return DepositAddressDTO.from_model(model) if model else None

    async def insert(self, dto: DepositAddressDTO) -> DepositAddressDTO:
        model = DepositAddressModel(
            id=dto.id or uuid.uuid4(),
            user_id=dto.user_id,
            chain=dto.chain,
            asset=dto.asset.upper(),
            address=dto.address,
            encrypted_private_key=dto.encrypted_private_key,
            disabled_at=dto.disabled_at,
        )
        self.session.add(model)
        await self.session.flush()
        return DepositAddressDTO.from_model(model)

    async def disable(self, address_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            update(DepositAddressModel)
            .where(DepositAddressModel.id == address_id)
            .where(DepositAddressModel.disabled_at.is_(None))
            .values(disabled_at=datetime.now(UTC))
        )
        return bool(result.rowcount)


class OnchainDepositRepository:
    """Repository for on-chain deposits.

    All state transitions are conditional single-statement updates, so
    concurrent writers can never move a row backwards.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, deposit_id: uuid.UUID) -> OnchainDepositDTO | None:
        result = await self.session.execute(
            select(OnchainDepositModel)
            .where(OnchainDepositModel.id == deposit_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return OnchainDepositDTO.from_model(model) if model else None

    async def get_by_tx(self, chain: str, tx_id: str) -> OnchainDepositDTO | None:
        result = await self.session.execute(
            select(OnchainDepositModel)
            .where(OnchainDepositModel.chain == chain)
            .where(OnchainDepositModel.tx_id == tx_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return OnchainDepositDTO.from_model(model) if model else None

    async def insert_if_absent(self, values: dict[str, Any]) -> bool:
        """Insert a deposit unless (chain, tx_id) already exists.

        Returns:
            True if this call created the row.
        """
        now = datetime.now(UTC)
        row = {
            "id": uuid.uuid4(),
            "first_seen_at": now,
            "updated_at": now,
            **values,
        }
        bind = self.session.get_bind()
        if bind.dialect.name == "postgresql":
            stmt = (
                pg_insert(OnchainDepositModel)
                .values(**row)
                .on_conflict_do_nothing(constraint="uq_onchain_deposits_chain_tx")
                .returning(OnchainDepositModel.id)
            )
        else:
            stmt = (
                sqlite_insert(OnchainDepositModel)
                .values(**row)
                .on_conflict_do_nothing(index_elements=["chain", "tx_id"])
                .returning(OnchainDepositModel.id)
            )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def advance_confirmations(self, deposit_id: uuid.UUID, confirmations: int) -> bool:
        """Raise the stored confirmation count; never lowers it."""
        result = await self.session.execute(
            update(OnchainDepositModel)
            .where(OnchainDepositModel.id == deposit_id)
            .where(OnchainDepositModel.confirmations < confirmations)
            .values(confirmations=confirmations, updated_at=datetime.now(UTC))
        )
        return bool(result.rowcount)

    async def mark_confirmed(self, deposit_id: uuid.UUID) -> bool:
        """Transition ``confirming -> confirmed``; True only for the winning caller."""
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(OnchainDepositModel)
            .where(OnchainDepositModel.id == deposit_id)
            .where(OnchainDepositModel.status == "confirming")
            .values(status="confirmed", confirmed_at=now, updated_at=now)
        )
        return bool(result.rowcount)

    async def mark_swept(self, deposit_id: uuid.UUID, sweep_tx_id: str) -> bool:
        """Transition ``confirmed -> swept``; True only for the winning caller."""
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(OnchainDepositModel)
            .where(OnchainDepositModel.id == deposit_id)
            .where(OnchainDepositModel.status == "confirmed")
            .values(status="swept", swept_at=now, sweep_tx_id=sweep_tx_id, updated_at=now)
        )
        return bool(result.rowcount)

    async def list_by_status(
        self,
        chain: str,
        status: str,
        *,
        limit: int = 1000,
    ) -> list[OnchainDepositDTO]:
        result = await self.session.execute(
            select(OnchainDepositModel)
            .where(OnchainDepositModel.chain == chain)
            .where(OnchainDepositModel.status == status)
            .order_by(OnchainDepositModel.block_number)
            .limit(limit)
        )
        return [OnchainDepositDTO.from_model(m) for m in result.scalars().all()]


class WatcherCursorRepository:
    """Repository for per-chain watcher high-water marks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain: str) -> int | None:
        model = await self.session.get(WatcherCursorModel, chain)
        return int(model.last_processed_height) if model else None

    async def set(self, chain: str, height: int) -> None:
        now = datetime.now(UTC)
        values = {"chain": chain, "last_processed_height": height, "updated_at": now}
        bind = self.session.get_bind()
        if bind.dialect.name == "postgresql":
            stmt = pg_insert(WatcherCursorModel).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["chain"],
                set_={"last_processed_height": stmt.excluded.last_processed_height, "updated_at": now},
            )
            await self.session.execute(stmt)
        else:
            sqlite_stmt = sqlite_insert(WatcherCursorModel).values(**values)
            sqlite_stmt = sqlite_stmt.on_conflict_do_update(
                index_elements=["chain"],
                set_={"last_processed_height": sqlite_stmt.excluded.last_processed_height, "updated_at": now},
            )
            await self.session.execute(sqlite_stmt)
