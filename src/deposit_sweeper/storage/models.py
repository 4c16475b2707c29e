"""SQLAlchemy models for persistent storage.

This module defines the database schema for deposit addresses, observed
on-chain deposits and per-chain watcher cursors.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class DepositAddressModel(Base):
    """Per-user deposit wallet for one asset on one chain."""

    __tablename__ = "deposit_addresses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("chain", "address", "asset", name="uq_deposit_addresses_chain_address_asset"),
        Index("idx_deposit_addresses_chain", "chain"),
        Index("idx_deposit_addresses_user", "user_id"),
    )


class OnchainDepositModel(Base):
    """An inbound transfer observed on chain and its confirmation lifecycle."""

    __tablename__ = "onchain_deposits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deposit_address_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deposit_addresses.id"), nullable=False
    )
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    # Transaction hash (EVM) or signature (Solana).
    tx_id: Mapped[str] = mapped_column(String(128), nullable=False)
    # Display units (e.g. 50.0 USDC), not base units.
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    from_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirming")
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    swept_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sweep_tx_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("chain", "tx_id", name="uq_onchain_deposits_chain_tx"),
        Index("idx_onchain_deposits_chain_status", "chain", "status"),
        Index("idx_onchain_deposits_user", "user_id"),
    )


class WatcherCursorModel(Base):
    """Last fully processed height per chain."""

    __tablename__ = "watcher_cursors"

    chain: Mapped[str] = mapped_column(String(20), primary_key=True)
    last_processed_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
