"""Types and errors shared by the sweep engine and its chain adapters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from deposit_sweeper.chain.models import SignerPair

if TYPE_CHECKING:
    from deposit_sweeper.ledger.models import DepositRecord
    from deposit_sweeper.storage.repos import DepositAddressDTO


class SweepError(Exception):
    """Base exception for sweep failures. The deposit stays ``confirmed``."""


class SweepFailedError(SweepError):
    """Raised when a sweep transaction could not be built, submitted or confirmed."""


class SweepConfigurationError(SweepError):
    """Raised when a chain, asset or treasury is not configured for sweeping."""


class InsufficientSponsorBalanceError(SweepError):
    """Raised when the sponsor wallet cannot cover the fees of a sweep."""

    def __init__(self, message: str, *, required: int | None = None, available: int | None = None) -> None:
        super().__init__(message)
        self.required = required
        self.available = available


class InsufficientDepositBalanceError(SweepError):
    """Raised when the deposit wallet no longer holds the deposited amount."""


@dataclass(frozen=True)
class SweepOutcome:
    """Result of a completed sweep.

    Attributes:
        tx_id: Transaction that moved the funds to the treasury.
        sponsor_spent: Native base units (wei / lamports) spent by the sponsor.
        funding_tx_id: Separate sponsor top-up transaction, if one was needed.
    """

    tx_id: str
    sponsor_spent: int = 0
    funding_tx_id: str | None = None


class SweepAdapter(Protocol):
    """Chain-specific half of a sponsored sweep."""

    def load_signers(self, address: DepositAddressDTO) -> SignerPair:
        """Decrypt the owner key of ``address`` and the chain's sponsor key."""
        ...

    async def execute(
        self,
        deposit: DepositRecord,
        address: DepositAddressDTO,
        signers: SignerPair,
    ) -> SweepOutcome:
        """Move ``deposit.amount`` from ``address`` to the treasury, fees paid by the sponsor."""
        ...
