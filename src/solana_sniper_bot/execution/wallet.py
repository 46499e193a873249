"""Wallet helpers for loading the trading keypair."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from ..config.settings import WalletConfig, get_app_config


@dataclass(slots=True)
class Wallet:
    """Wrapper around a Solana keypair."""

    keypair: Keypair

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    def associated_token_address(self, mint: str | Pubkey) -> Pubkey:
        mint_key = mint if isinstance(mint, Pubkey) else Pubkey.from_string(mint)
        return get_associated_token_address(self.public_key, mint_key)


def load_wallet(config: Optional[WalletConfig] = None) -> Wallet:
    """Load the keypair from a base58 secret or a Solana CLI keypair file."""

    cfg = config or get_app_config().wallet
    secret_key: Optional[bytes] = None
    if cfg.private_key:
        secret_key = base58.b58decode(cfg.private_key.strip())
    elif cfg.keypair_path:
        path = Path(cfg.keypair_path).expanduser()
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if isinstance(data, list):
            secret_key = bytes(data)
    if secret_key is None:
        raise ValueError(
            "Wallet configuration error - set WALLET__PRIVATE_KEY or WALLET__KEYPAIR_PATH"
        )
    if len(secret_key) != 64:
        raise ValueError(f"Wallet secret must be 64 bytes, got {len(secret_key)}")

    return Wallet(keypair=Keypair.from_bytes(secret_key))


__all__ = ["Wallet", "load_wallet"]
