"""Deposit ledger - the confirmation state machine for on-chain deposits.

The ledger is the only writer of ``onchain_deposits``. It guarantees:
- at most one row per (chain, tx_id);
- confirmations and status only ever move forward;
- exactly one caller observes the ``confirming -> confirmed`` edge;
- exactly one caller succeeds in ``confirmed -> swept``.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from deposit_sweeper.ledger.models import DepositRecord, DepositStatus, ObservedDeposit, RecordResult
from deposit_sweeper.storage.repos import OnchainDepositRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""


class DepositNotFoundError(LedgerError):
    """Raised when a deposit id does not exist."""


class InvalidStateError(LedgerError):
    """Raised when a transition is requested from the wrong state."""


def compute_confirmations(current_height: int, tx_height: int) -> int:
    """Confirmations of a transaction included at ``tx_height``.

    The including block counts as the first confirmation.
    """
    return max(0, current_height - tx_height + 1)


def status_for(confirmations: int, required_confirmations: int) -> DepositStatus:
    if confirmations >= required_confirmations:
        return DepositStatus.CONFIRMED
    return DepositStatus.CONFIRMING


class DepositLedger:
    """Authoritative record of observed deposits."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_or_update(self, observed: ObservedDeposit) -> RecordResult:
        """Insert a newly observed deposit or advance an existing one.

        Args:
            observed: Deposit as seen in the current tick.

        Returns:
            The current ledger state and whether this call produced the
            first transition into ``confirmed``.
        """
        initial = status_for(observed.confirmations, observed.required_confirmations)
        async with self._session_factory() as session:
            repo = OnchainDepositRepository(session)
            created = await repo.insert_if_absent(
                {
                    "user_id": observed.user_id,
                    "deposit_address_id": observed.deposit_address_id,
                    "chain": observed.chain,
                    "asset": observed.asset,
                    "tx_id": observed.tx_id,
                    "amount": observed.amount,
                    "from_address": observed.from_address,
                    "block_number": observed.block_number,
                    "confirmations": observed.confirmations,
                    "required_confirmations": observed.required_confirmations,
                    "status": DepositStatus.CONFIRMING.value,
                }
            )
            existing = await repo.get_by_tx(observed.chain, observed.tx_id)
            if existing is None:
                raise LedgerError(f"Deposit {observed.chain}:{observed.tx_id} vanished after insert")

            if not created:
                await repo.advance_confirmations(existing.id, observed.confirmations)

            newly_confirmed = False
            if initial == DepositStatus.CONFIRMED:
                newly_confirmed = await repo.mark_confirmed(existing.id)

            dto = await repo.get(existing.id)
            await session.commit()

        if dto is None:
            raise LedgerError(f"Deposit {observed.chain}:{observed.tx_id} vanished before commit")
        record = DepositRecord.from_dto(dto)
        if created:
            logger.info(
                "Recorded %s deposit %s: %s %s (%d/%d confirmations)",
                record.chain,
                record.tx_id,
                record.amount,
                record.asset,
                record.confirmations,
                record.required_confirmations,
            )
        if newly_confirmed:
            logger.info("Deposit %s on %s confirmed", record.tx_id, record.chain)
        return RecordResult(deposit=record, newly_confirmed=newly_confirmed, created=created)

    async def mark_swept(self, deposit_id: uuid.UUID, sweep_tx_id: str) -> DepositRecord:
        """Move a confirmed deposit to ``swept``.

        Raises:
            DepositNotFoundError: If the deposit does not exist.
            InvalidStateError: If the deposit is not ``confirmed``.
        """
        async with self._session_factory() as session:
            repo = OnchainDepositRepository(session)
            updated = await repo.mark_swept(deposit_id, sweep_tx_id)
            dto = await repo.get(deposit_id)
            await session.commit()

        if dto is None:
            raise DepositNotFoundError(f"Deposit {deposit_id} not found")
        if not updated:
            logger.error(
                "Refusing to mark deposit %s swept by %s: status is %s",
                deposit_id,
                sweep_tx_id,
                dto.status,
            )
            raise InvalidStateError(f"Deposit {deposit_id} is {dto.status}, expected confirmed")
        logger.info("Deposit %s swept in %s", deposit_id, sweep_tx_id)
        return DepositRecord.from_dto(dto)

    async def get(self, deposit_id: uuid.UUID) -> DepositRecord | None:
        async with self._session_factory() as session:
            dto = await OnchainDepositRepository(session).get(deposit_id)
        return DepositRecord.from_dto(dto) if dto else None

    async def list_confirming(self, chain: str) -> list[DepositRecord]:
        """Deposits of a chain still waiting for confirmations."""
        return await self._list(chain, DepositStatus.CONFIRMING)

    async def list_unswept(self, chain: str) -> list[DepositRecord]:
        """Confirmed deposits of a chain that have not been swept yet."""
        return await self._list(chain, DepositStatus.CONFIRMED)

    async def _list(self, chain: str, status: DepositStatus) -> list[DepositRecord]:
        async with self._session_factory() as session:
            dtos = await OnchainDepositRepository(session).list_by_status(chain, status.value)
        return [DepositRecord.from_dto(d) for d in dtos]
