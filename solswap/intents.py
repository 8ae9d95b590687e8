"""Rule-based intent classification and entity extraction for chat turns.

Categories overlap (``"help me sell"`` carries both help and sell vocabulary), so
``classify_intent`` walks ``INTENT_RULES`` in a fixed priority order and returns the
first category that matches:

    rate > help > transfer > sell > sent > bank > cancel > status > unknown

Keyword rules run on ``normalize_text`` output with word boundaries; the ``sent``
rule additionally fires on anything shaped like a transaction signature.
"""

from __future__ import annotations

import re
from typing import List, Optional, Pattern, Tuple

from .models import Intent, TokenSymbol
from .utils import normalize_text

INTENT_RULES: List[Tuple[Intent, Pattern[str]]] = [
    (Intent.RATE, re.compile(r"\b(rates?|prices?|pricing|how much)\b")),
    (Intent.HELP, re.compile(r"\b(help|how do|instructions?|what do|explain)\b")),
    (Intent.TRANSFER, re.compile(r"\b(transfer|send|deposit|wallet)\b")),
    (Intent.SELL, re.compile(r"\b(sell|selling|exchange|convert|trade|swap)\b")),
    (Intent.SENT, re.compile(r"\b(sent|transferred|deposited|paid it|done sending)\b")),
    (Intent.BANK, re.compile(r"\b(bank|account|details|ngn|naira)\b")),
    (Intent.CANCEL, re.compile(r"\b(cancel|stop|abort|nevermind|never mind)\b")),
    (Intent.STATUS, re.compile(r"\b(status|check|where|progress)\b")),
]

TOKEN_RE = re.compile(r"\b(SOL|USDC|USDT)\b", re.IGNORECASE)
HEX_SIGNATURE_RE = re.compile(r"(?<![A-Fa-f0-9])[A-Fa-f0-9]{64,128}(?![A-Fa-f0-9])")
BASE58_SIGNATURE_RE = re.compile(r"(?<![1-9A-HJ-NP-Za-km-z])[1-9A-HJ-NP-Za-km-z]{86,88}(?![1-9A-HJ-NP-Za-km-z])")
WALLET_ADDRESS_RE = re.compile(r"(?<![1-9A-HJ-NP-Za-km-z])[1-9A-HJ-NP-Za-km-z]{32,44}(?![1-9A-HJ-NP-Za-km-z])")


def classify_intent(cleaned: str) -> Intent:
    """Purpose: Map sanitized chat text to a coarse intent category.
    Inputs/Outputs: Input is sanitized text; output is an Intent member.
    Side Effects / State: None; pure and stateless.
    Dependencies: Uses normalize_text, INTENT_RULES and extract_tx_signature.
    Failure Modes: Never raises; unmatched text returns Intent.UNKNOWN.
    If Removed: The conversation engine cannot route universal or state intents.
    Testing Notes: "help me sell" must be HELP; a bare 64-hex hash must be SENT.
    """
    # First matching rule wins; the signature shape check belongs to the SENT slot.
    normalized = normalize_text(cleaned)
    for intent, pattern in INTENT_RULES:
        if pattern.search(normalized):
            return intent
        if intent is Intent.SENT and extract_tx_signature(cleaned):
            return intent
    return Intent.UNKNOWN


def resolve_token_symbol(text: str) -> Optional[TokenSymbol]:
    """Return the first whole-word SOL/USDC/USDT mention, case-insensitively."""
    match = TOKEN_RE.search(text or "")
    if not match:
        return None
    return TokenSymbol(match.group(1).upper())


def extract_tx_signature(text: str) -> Optional[str]:
    """Purpose: Pull a transaction signature out of a deposit report.
    Inputs/Outputs: Input is sanitized text; output is the signature or None.
    Side Effects / State: None.
    Dependencies: HEX_SIGNATURE_RE (64-128 hex chars) then BASE58_SIGNATURE_RE.
    Failure Modes: None; returns None when nothing signature-shaped is present.
    If Removed: Duplicate-deposit detection has nothing to compare.
    Testing Notes: Hex hashes embedded in a sentence are extracted intact.
    """
    # Prefer hex hashes; fall back to base58 Solana signatures.
    if not text:
        return None
    match = HEX_SIGNATURE_RE.search(text) or BASE58_SIGNATURE_RE.search(text)
    return match.group(0) if match else None


def extract_wallet_address(text: str) -> Optional[str]:
    match = WALLET_ADDRESS_RE.search(text or "")
    return match.group(0) if match else None
