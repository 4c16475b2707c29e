"""Solana sweep adapter: one atomic transaction, sponsor as fee payer."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from deposit_sweeper.chain.models import SignerPair
from deposit_sweeper.chain.solana import LAMPORTS_PER_SOL
from deposit_sweeper.sweeper.models import (
    InsufficientDepositBalanceError,
    InsufficientSponsorBalanceError,
    SweepConfigurationError,
    SweepOutcome,
)

if TYPE_CHECKING:
    from solders.instruction import Instruction

    from deposit_sweeper.chain.solana import SolanaChainClient
    from deposit_sweeper.config import ChainConfig
    from deposit_sweeper.ledger.models import DepositRecord
    from deposit_sweeper.storage.repos import DepositAddressDTO
    from deposit_sweeper.vault.keys import KeyVault

logger = logging.getLogger(__name__)

DEFAULT_SPONSOR_MIN_BALANCE_SOL = Decimal("0.01")
# Rent-exempt deposit of a 165-byte SPL token account.
TOKEN_ACCOUNT_RENT_LAMPORTS = 2_039_280


class SolanaSweepAdapter:
    """Builds a single transaction signed by both the sponsor and the owner.

    The sponsor pays the transaction fee and, when the treasury has no
    associated token account for the mint yet, the rent for creating it.
    """

    def __init__(
        self,
        client: SolanaChainClient,
        vault: KeyVault,
        config: ChainConfig,
        *,
        sponsor_min_balance_sol: Decimal = DEFAULT_SPONSOR_MIN_BALANCE_SOL,
    ) -> None:
        if not config.treasury_address:
            raise SweepConfigurationError(f"Treasury address is not configured for {config.name}")
        self._client = client
        self._vault = vault
        self._config = config
        self._treasury = Pubkey.from_string(config.treasury_address)
        self._sponsor_min_lamports = int(sponsor_min_balance_sol * LAMPORTS_PER_SOL)

    def load_signers(self, address: DepositAddressDTO) -> SignerPair:
        if not self._config.sponsor_encrypted_key:
            raise SweepConfigurationError(f"Sponsor key is not configured for {self._config.name}")
        return SignerPair(
            owner=self._vault.solana_keypair(address.encrypted_private_key),
            fee_payer=self._vault.solana_keypair(self._config.sponsor_encrypted_key),
        )

    async def execute(
        self,
        deposit: DepositRecord,
        address: DepositAddressDTO,
        signers: SignerPair,
    ) -> SweepOutcome:
        asset = self._config.assets.get(deposit.asset)
        if asset is None:
            raise SweepConfigurationError(f"Asset {deposit.asset} is not configured for {self._config.name}")
        owner = signers.owner
        sponsor = signers.fee_payer
        owner_pk = owner.pubkey()
        sponsor_pk = sponsor.pubkey()
        units = asset.to_base_units(deposit.amount)

        sponsor_lamports = await self._client.native_balance(str(sponsor_pk))
        if sponsor_lamports < self._sponsor_min_lamports:
            raise InsufficientSponsorBalanceError(
                f"Sponsor {sponsor_pk} on {self._config.name} has {sponsor_lamports} lamports, "
                f"minimum is {self._sponsor_min_lamports}",
                required=self._sponsor_min_lamports,
                available=sponsor_lamports,
            )

        instructions: list[Instruction] = []
        rent_paid = 0
        if asset.is_native:
            balance = await self._client.native_balance(str(owner_pk))
            if balance < units:
                raise InsufficientDepositBalanceError(
                    f"{address.address} holds {balance} lamports, deposit is {units} lamports"
                )
            remainder = balance - units
            if remainder > 0:
                rent_minimum = await self._client.minimum_balance_for_rent_exemption(0)
                if remainder < rent_minimum:
                    # A leftover below the rent-exempt minimum is rejected by the runtime.
                    logger.info(
                        "Sweeping all %d lamports of %s: %d left over would be below rent exemption (%d)",
                        balance,
                        address.address,
                        remainder,
                        rent_minimum,
                    )
                    units = balance
            instructions.append(
                transfer(TransferParams(from_pubkey=owner_pk, to_pubkey=self._treasury, lamports=units))
            )
        else:
            token_balance = await self._client.token_balance(str(owner_pk), asset)
            if token_balance < deposit.amount:
                raise InsufficientDepositBalanceError(
                    f"{address.address} holds {token_balance} {asset.symbol}, deposit is {deposit.amount}"
                )
            mint = Pubkey.from_string(asset.contract_address)
            source = get_associated_token_address(owner_pk, mint)
            destination = get_associated_token_address(self._treasury, mint)
            if not await self._client.account_exists(str(destination)):
                logger.info("Creating treasury token account %s for mint %s", destination, mint)
                instructions.append(create_associated_token_account(payer=sponsor_pk, owner=self._treasury, mint=mint))
                rent_paid = TOKEN_ACCOUNT_RENT_LAMPORTS
            instructions.append(
                transfer_checked(
                    TransferCheckedParams(
                        program_id=TOKEN_PROGRAM_ID,
                        source=source,
                        mint=mint,
                        dest=destination,
                        owner=owner_pk,
                        amount=units,
                        decimals=asset.decimals,
                    )
                )
            )

        blockhash = await self._client.latest_blockhash()
        message = Message.new_with_blockhash(instructions, sponsor_pk, blockhash)
        fee = await self._client.fee_for_message(message)
        tx = Transaction([sponsor, owner], message, blockhash)

        confirmation = await self._client.submit(bytes(tx))
        logger.info(
            "Swept %s %s from %s to treasury in %s",
            deposit.amount,
            asset.symbol,
            address.address,
            confirmation.tx_id,
        )
        return SweepOutcome(tx_id=confirmation.tx_id, sponsor_spent=fee + rent_paid)
