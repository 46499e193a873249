"""Builders that turn AMM swap instructions into signed Solana transactions."""

from __future__ import annotations

import base64
from typing import Iterable, List, Mapping, Optional, Sequence

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    CloseAccountParams,
    close_account,
    create_idempotent_associated_token_account,
)

from ..config.settings import TradingConfig, get_app_config
from ..core.types import SwapDirection, SwapInstructions
from ..monitoring.logger import get_logger
from .wallet import Wallet


def convert_instructions(entries: Iterable[Mapping]) -> List[Instruction]:
    """Decode JSON instruction descriptors emitted by the Node helpers."""

    instructions: List[Instruction] = []
    for entry in entries:
        program_id = Pubkey.from_string(entry["programId"])
        accounts = [
            AccountMeta(
                pubkey=Pubkey.from_string(meta["pubkey"]),
                is_signer=bool(meta["isSigner"]),
                is_writable=bool(meta["isWritable"]),
            )
            for meta in entry.get("keys", entry.get("accounts", []))
        ]
        data = base64.b64decode(entry.get("data", ""))
        instructions.append(Instruction(program_id, data, accounts))
    return instructions


class SwapTransactionBuilder:
    """Assembles buy and sell swap transactions for the trading wallet.

    Buys create the destination token account idempotently before the swap.
    Sells close the drained source account afterwards so its rent returns to
    the wallet. Compute-budget instructions are only added when the active
    submission channel does not pay for inclusion itself.
    """

    def __init__(self, wallet: Wallet, config: Optional[TradingConfig] = None) -> None:
        self._wallet = wallet
        self._config = config or get_app_config().trading
        self._logger = get_logger(__name__)

    def priority_instructions(self) -> List[Instruction]:
        return [
            set_compute_unit_price(self._config.compute_unit_price),
            set_compute_unit_limit(self._config.compute_unit_limit),
        ]

    def instructions(
        self,
        direction: SwapDirection,
        swap: SwapInstructions,
        *,
        token_account_in: Pubkey,
        mint_out: Pubkey,
        include_priority_fee: bool,
    ) -> List[Instruction]:
        owner = self._wallet.public_key
        instructions: List[Instruction] = []
        if include_priority_fee:
            instructions.extend(self.priority_instructions())
        if direction is SwapDirection.BUY:
            instructions.append(create_idempotent_associated_token_account(owner, owner, mint_out))
        instructions.extend(swap.instructions)
        if direction is SwapDirection.SELL:
            instructions.append(
                close_account(
                    CloseAccountParams(
                        program_id=TOKEN_PROGRAM_ID,
                        account=token_account_in,
                        dest=owner,
                        owner=owner,
                    )
                )
            )
        return instructions

    def build(
        self,
        direction: SwapDirection,
        swap: SwapInstructions,
        *,
        token_account_in: Pubkey,
        mint_out: Pubkey,
        include_priority_fee: bool,
        blockhash: Hash,
        extra_signers: Sequence[Keypair] = (),
    ) -> VersionedTransaction:
        instructions = self.instructions(
            direction,
            swap,
            token_account_in=token_account_in,
            mint_out=mint_out,
            include_priority_fee=include_priority_fee,
        )
        message = MessageV0.try_compile(self._wallet.public_key, instructions, [], blockhash)
        signers = [self._wallet.keypair, *swap.signers, *extra_signers]
        self._logger.debug(
            "Built %s transaction with %d instructions and %d signers",
            direction.value,
            len(instructions),
            len(signers),
        )
        return VersionedTransaction(message, signers)


__all__ = ["SwapTransactionBuilder", "convert_instructions"]
