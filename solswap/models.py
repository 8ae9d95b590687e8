from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TokenSymbol(str, Enum):
    SOL = "SOL"
    USDC = "USDC"
    USDT = "USDT"


class SessionState(str, Enum):
    START = "start"
    AWAITING_TOKEN = "awaiting_token"
    AWAITING_DEPOSIT = "awaiting_deposit"
    CONFIRMING = "confirming"
    AWAITING_BANK = "awaiting_bank"
    READY_TO_PAY = "ready_to_pay"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OrderStatus(str, Enum):
    AWAITING_DEPOSIT = "awaiting_deposit"
    CONFIRMING = "confirming"
    AWAITING_BANK = "awaiting_bank"
    READY_TO_PAY = "ready_to_pay"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Intent(str, Enum):
    RATE = "rate"
    HELP = "help"
    TRANSFER = "transfer"
    SELL = "sell"
    SENT = "sent"
    BANK = "bank"
    CANCEL = "cancel"
    STATUS = "status"
    UNKNOWN = "unknown"


# Session states that may hold an order reference.
ORDER_BEARING_STATES = frozenset(
    {
        SessionState.AWAITING_DEPOSIT,
        SessionState.CONFIRMING,
        SessionState.AWAITING_BANK,
        SessionState.READY_TO_PAY,
        SessionState.PAID,
    }
)
TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED})


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting snake_case input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Session(CamelModel):
    """Per-user conversational position."""
    id: str
    user_id: str
    state: SessionState = SessionState.START
    order_id: Optional[str] = None
    created_at: float
    updated_at: float


class Order(CamelModel):
    """Single sell transaction tracked from token selection through payout."""
    id: str
    user_id: str
    token_symbol: TokenSymbol
    deposit_address: str
    deposit_token_account: Optional[str] = None
    status: OrderStatus = OrderStatus.AWAITING_DEPOSIT
    from_address: Optional[str] = None
    tx_signature: Optional[str] = None
    amount_token: Optional[str] = None
    amount_ngn: Optional[str] = None
    price_usd: Optional[str] = None
    ngn_fx: Optional[str] = None
    spread_bps: Optional[int] = None
    bank_account: Optional[str] = None
    payout_reference: Optional[str] = None
    created_at: float
    updated_at: float


class TurnResult(CamelModel):
    """Output of one chat turn: reply text plus session/order snapshots."""
    reply: str
    session: Session
    order: Optional[Order] = None


class ChatRequest(CamelModel):
    """Request payload for the chat API."""
    user_id: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=1000)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)
    metadata: Optional[Dict[str, Any]] = None


class BankDetailsRequest(CamelModel):
    bank_account: str = Field(min_length=1, max_length=100)


class DepositConfirmedRequest(CamelModel):
    amount_token: str = Field(pattern=r"^\d+(\.\d+)?$")


class PayoutWebhookRequest(CamelModel):
    reference: str = Field(min_length=1)
    status: str = Field(pattern=r"^(success|failed)$")


class Analytics(CamelModel):
    """Aggregate counters reported by the store."""
    total_sessions: int
    active_sessions: int
    total_orders: int
    completed_orders: int
    failed_orders: int
