"""Chain client adapters - Solana and EVM RPC access."""

from deposit_sweeper.chain.base import (
    ChainClient,
    ChainClientError,
    RateLimiter,
    RPCError,
    TransactionFailedError,
)
from deposit_sweeper.chain.models import (
    AssetSpec,
    ChainKind,
    ObservedTransfer,
    SignerPair,
    TransactionConfirmation,
)

__all__ = [
    "AssetSpec",
    "ChainClient",
    "ChainClientError",
    "ChainKind",
    "ObservedTransfer",
    "RPCError",
    "RateLimiter",
    "SignerPair",
    "TransactionConfirmation",
    "TransactionFailedError",
]
