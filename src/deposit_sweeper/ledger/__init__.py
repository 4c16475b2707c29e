"""Deposit ledger - deduplicated deposits and their confirmation lifecycle."""

from deposit_sweeper.ledger.deposit_ledger import (
    DepositLedger,
    DepositNotFoundError,
    InvalidStateError,
    LedgerError,
    compute_confirmations,
    status_for,
)
from deposit_sweeper.ledger.models import DepositRecord, DepositStatus, ObservedDeposit, RecordResult

__all__ = [
    "DepositLedger",
    "DepositNotFoundError",
    "DepositRecord",
    "DepositStatus",
    "InvalidStateError",
    "LedgerError",
    "ObservedDeposit",
    "RecordResult",
    "compute_confirmations",
    "status_for",
]
