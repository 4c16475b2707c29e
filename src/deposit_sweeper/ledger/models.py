"""Data models for the deposit ledger."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from deposit_sweeper.storage.repos import OnchainDepositDTO


class DepositStatus(str, Enum):
    """Forward-only deposit lifecycle."""

    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SWEPT = "swept"


@dataclass(frozen=True)
class ObservedDeposit:
    """A transfer to a known deposit address as seen by a watcher tick."""

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


@dataclass(frozen=True)
class DepositRecord:
    """Ledger view of a deposit."""

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
    status: DepositStatus
    first_seen_at: datetime
    confirmed_at: datetime | None = None
    swept_at: datetime | None = None
    sweep_tx_id: str | None = None

    @classmethod
    def from_dto(cls, dto: OnchainDepositDTO) -> DepositRecord:
        return cls(
            id=dto.id,
            user_id=dto.user_id,
            deposit_address_id=dto.deposit_address_id,
            chain=dto.chain,
            asset=dto.asset,
            tx_id=dto.tx_id,
            amount=dto.amount,
            from_address=dto.from_address,
            block_number=dto.block_number,
            confirmations=dto.confirmations,
            required_confirmations=dto.required_confirmations,
            status=DepositStatus(dto.status),
            first_seen_at=dto.first_seen_at,
            confirmed_at=dto.confirmed_at,
            swept_at=dto.swept_at,
            sweep_tx_id=dto.sweep_tx_id,
        )


@dataclass(frozen=True)
class RecordResult:
    """Outcome of ``DepositLedger.record_or_update``.

    Attributes:
        deposit: Current ledger state of the deposit.
        newly_confirmed: True only for the call that moved it into ``confirmed``.
        created: True if this call inserted the row.
    """

    deposit: DepositRecord
    newly_confirmed: bool
    created: bool = False
