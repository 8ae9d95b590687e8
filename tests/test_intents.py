"""
Tests for intent classification precedence and entity extraction.
"""

import pytest

from solswap.intents import (
    classify_intent,
    extract_tx_signature,
    extract_wallet_address,
    resolve_token_symbol,
)
from solswap.models import Intent, TokenSymbol
from solswap.utils import mask_digits, normalize_text

HEX_TX = "a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2"
BASE58_SIG = "5" + "K" * 86
WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


class TestClassifyIntent:
    """Keyword rules in fixed priority order"""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("what's the rate today?", Intent.RATE),
            ("help", Intent.HELP),
            ("how do I send from Phantom wallet", Intent.HELP),
            ("how to transfer from my wallet", Intent.TRANSFER),
            ("I want to sell tokens", Intent.SELL),
            ("I've sent it", Intent.SENT),
            ("here are my bank details", Intent.BANK),
            ("cancel", Intent.CANCEL),
            ("status please", Intent.STATUS),
            ("Hi", Intent.UNKNOWN),
        ],
    )
    def test_single_category(self, text, expected):
        assert classify_intent(text) == expected

    def test_rate_beats_sell(self):
        """Overlapping vocabulary resolves by priority"""
        assert classify_intent("what price can I sell at") == Intent.RATE

    def test_help_beats_sell(self):
        assert classify_intent("help me sell") == Intent.HELP

    def test_sell_beats_cancel(self):
        assert classify_intent("stop, I want to sell instead") == Intent.SELL

    def test_bare_signature_is_sent(self):
        """A transaction hash alone counts as a deposit report"""
        assert classify_intent(HEX_TX) == Intent.SENT
        assert classify_intent(BASE58_SIG) == Intent.SENT

    def test_word_boundaries(self):
        """Keywords inside other words do not match"""
        assert classify_intent("absolutely") == Intent.UNKNOWN
        assert classify_intent("resolved") == Intent.UNKNOWN

    def test_punctuation_and_case(self):
        assert classify_intent("SELL!!!") == Intent.SELL


class TestExtraction:
    """Token, signature and address extraction"""

    def test_token_case_insensitive(self):
        assert resolve_token_symbol("usdc") == TokenSymbol.USDC
        assert resolve_token_symbol("I'd like to sell my Sol please") == TokenSymbol.SOL

    def test_unknown_token(self):
        assert resolve_token_symbol("DOGE") is None
        assert resolve_token_symbol("solana") is None

    def test_hex_signature_in_sentence(self):
        assert extract_tx_signature(f"done, hash is {HEX_TX}.") == HEX_TX

    def test_base58_signature(self):
        assert extract_tx_signature(f"sig {BASE58_SIG}") == BASE58_SIG

    def test_no_signature(self):
        assert extract_tx_signature("I've sent it") is None

    def test_wallet_address(self):
        assert extract_wallet_address(f"sent from {WALLET}") == WALLET
        assert extract_wallet_address("sent it") is None


class TestUtils:
    def test_normalize_text(self):
        assert normalize_text("I've SENT it!") == "i ve sent it"
        assert normalize_text("naíra") == "naira"

    def test_mask_digits(self):
        assert mask_digits("0123456789") == "***789"
        assert mask_digits(None) == ""
