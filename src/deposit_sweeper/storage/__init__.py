"""Storage layer - Database schemas and repositories."""

from deposit_sweeper.storage.database import DatabaseManager, normalize_async_database_url
from deposit_sweeper.storage.models import (
    Base,
    DepositAddressModel,
    OnchainDepositModel,
    WatcherCursorModel,
)
from deposit_sweeper.storage.repos import (
    DepositAddressDTO,
    DepositAddressRepository,
    OnchainDepositDTO,
    OnchainDepositRepository,
    WatcherCursorRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "DepositAddressDTO",
    "DepositAddressModel",
    "DepositAddressRepository",
    "OnchainDepositDTO",
    "OnchainDepositModel",
    "OnchainDepositRepository",
    "WatcherCursorModel",
    "WatcherCursorRepository",
    "normalize_async_database_url",
]
