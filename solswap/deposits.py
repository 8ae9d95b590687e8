"""Deposit-address collaborator.

Chain access (key custody, account creation, deposit watching) is out of scope for
this service. ``DepositAddressGenerator`` issues a fresh ed25519 keypair per order
and, for SPL tokens, derives the owner's associated token account for the mint, so
the addresses handed to users are valid Solana accounts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .models import TokenSymbol

logger = logging.getLogger("solswap.deposits")

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# Mainnet mints.
DEFAULT_MINTS: Dict[TokenSymbol, str] = {
    TokenSymbol.USDC: "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    TokenSymbol.USDT: "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
}


@dataclass(frozen=True)
class DepositAddress:
    address: str
    token_account: Optional[str] = None


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Derive the associated token account of ``owner`` for ``mint``."""
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


class DepositAddressGenerator:
    """Issue a fresh deposit address per order; SPL tokens also get their token account."""

    def __init__(self, mints: Optional[Mapping[TokenSymbol, str]] = None) -> None:
        raw = dict(DEFAULT_MINTS)
        raw.update(mints or {})
        self._mints = {token: Pubkey.from_string(mint) for token, mint in raw.items()}

    def get_deposit_address(self, token: TokenSymbol) -> DepositAddress:
        owner = Keypair().pubkey()
        if token == TokenSymbol.SOL:
            logger.info("token=%s deposit address issued", token.value)
            return DepositAddress(address=str(owner))
        token_account = associated_token_address(owner, self._mints[token])
        logger.info("token=%s deposit address and token account issued", token.value)
        return DepositAddress(address=str(owner), token_account=str(token_account))
