"""
Shared fixtures for the SolSwapAI test suite.

Provides a controllable clock, an in-memory store, fake language-model and pricing
collaborators, and a conversation engine wired to them.
"""

import pytest

from solswap.conversation import ConversationEngine
from solswap.deposits import DepositAddressGenerator
from solswap.errors import UpstreamUnavailable
from solswap.idempotency import IdempotencyCache
from solswap.payout import PayoutResult, PaystackProvider
from solswap.pricing import Quote
from solswap.session_store import SessionStore

HEX_TX = "a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2"
OTHER_HEX_TX = "0f" * 32


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeReplier:
    """Language model stand-in; records calls and can be switched to fail."""

    def __init__(self, reply: str = "Sure thing."):
        self.reply = reply
        self.fail = False
        self.calls = []

    def generate_reply(self, message: str, context_summary: str) -> str:
        self.calls.append((message, context_summary))
        if self.fail:
            raise UpstreamUnavailable("Language model unavailable")
        return self.reply


class FakePricing:
    def __init__(self):
        self.quote = Quote(usd_prices={"SOL": 100.0, "USDC": 1.0, "USDT": 1.0}, usd_to_ngn=1500.0)
        self.fail = False
        self.calls = 0

    def get_quote(self, symbols):
        self.calls += 1
        if self.fail:
            raise UpstreamUnavailable("Pricing unavailable")
        return self.quote


class RecordingPayouts(PaystackProvider):
    """Paystack adapter that records transfers and can settle immediately."""

    def __init__(self, status: str = "queued"):
        self.status = status
        self.transfers = []

    def initiate_transfer(self, recipient_code, amount_kobo, reference, narration):
        self.transfers.append((recipient_code, amount_kobo, reference))
        return PayoutResult(reference=f"PS_{reference}", status=self.status)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)


@pytest.fixture
def replier():
    return FakeReplier()


@pytest.fixture
def pricing():
    return FakePricing()


@pytest.fixture
def payouts():
    return RecordingPayouts()


@pytest.fixture
def idempotency(clock):
    return IdempotencyCache(window_sec=300, max_entries=1000, clock=clock)


@pytest.fixture
def engine(store, replier, pricing, payouts, idempotency, clock):
    return ConversationEngine(
        store=store,
        replier=replier,
        pricing=pricing,
        deposits=DepositAddressGenerator(),
        idempotency=idempotency,
        payouts=payouts,
        spread_bps=150,
        clock=clock,
    )


@pytest.fixture
def at_deposit(engine):
    """Drive user u1 to awaiting_deposit with a SOL order and return the result."""
    engine.handle_turn("u1", "Hi")
    engine.handle_turn("u1", "I want to sell tokens")
    return engine.handle_turn("u1", "SOL")


@pytest.fixture
def at_bank(engine, at_deposit):
    """Drive user u1 through a confirmed 2 SOL deposit to awaiting_bank."""
    engine.handle_turn("u1", f"I've sent it, tx {HEX_TX}")
    engine.confirm_deposit(at_deposit.order.id, "2")
    return at_deposit.order.id
