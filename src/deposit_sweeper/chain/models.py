"""Data models shared by the chain client adapters."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any


class ChainKind(str, Enum):
    """Closed set of supported chain families."""

    SOLANA = "solana"
    EVM = "evm"


@dataclass(frozen=True)
class AssetSpec:
    """An asset tracked on a chain.

    Attributes:
        symbol: Asset symbol as stored in the ledger (``USDC``, ``SOL``...).
        decimals: Number of decimals between base units and display units.
        contract: Token contract or mint address; ``None`` for the native asset.
    """

    symbol: str
    decimals: int
    contract: str | None = None

    @property
    def is_native(self) -> bool:
        return self.contract is None

    @property
    def contract_address(self) -> str:
        """Token contract or mint address.

        Raises:
            ValueError: If the asset is native.
        """
        if self.contract is None:
            raise ValueError(f"{self.symbol} is a native asset and has no contract")
        return self.contract

    def to_display(self, base_units: int | Decimal) -> Decimal:
        """Convert an integer amount in base units to display units."""
        return Decimal(int(base_units)).scaleb(-self.decimals)

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a display amount to integer base units (truncating)."""
        return int(amount.scaleb(self.decimals))


@dataclass(frozen=True)
class ObservedTransfer:
    """An inbound transfer found on chain."""

    tx_id: str
    amount: Decimal
    from_address: str | None
    height: int


@dataclass(frozen=True)
class TransactionConfirmation:
    """Result of a submitted transaction after it was confirmed."""

    tx_id: str
    height: int | None = None
    fee: int | None = None


@dataclass(frozen=True)
class SignerPair:
    """The two signers of a sponsored sweep.

    ``owner`` authorizes the transfer out of the deposit address,
    ``fee_payer`` pays network fees. The concrete types are chain specific
    (``LocalAccount`` on EVM, ``Keypair`` on Solana).
    """

    owner: Any
    fee_payer: Any
