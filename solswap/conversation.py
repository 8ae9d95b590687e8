"""Conversation engine: per-user sell flow driven by chat turns and external events.

Role:
    Owns the decision of what happens next in a user's sale and what gets persisted.
    The language model only phrases the reply; every state change, order mutation and
    factual line of the reply (addresses, rates, statuses) is decided here.

Turn pipeline (TurnRunner steps, in order):
    sanitize        Reject dangerous text with a fixed reply; cap length.
    idempotency     Replay a cached result for a known, unexpired key.
    load_session    Fetch or create the user's session and its active order.
    classify        Map text to an Intent.
    transition      Universal intents first, then the current state's handler.
    phrase          Ask the language model for phrasing; canned fallback on failure.
    compose         Join phrasing with the engine's notice.
    filter          Redact secret-shaped text (always the last text transform).
    finalize        Build the TurnResult and remember it under the idempotency key.

External events (deposit confirmed/failed, bank details via API, payout started or
settled) have their own entry points. Turns and events for one user are serialised
on that user's store lock.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, Optional, Protocol

from .deposits import DepositAddress
from .errors import (
    DuplicateTransaction,
    InputRejected,
    InvalidTransition,
    NotFound,
    ValidationFailed,
    UpstreamUnavailable,
)
from .idempotency import IdempotencyCache
from .intents import classify_intent, extract_tx_signature, extract_wallet_address, resolve_token_symbol
from .models import (
    ORDER_BEARING_STATES,
    TERMINAL_ORDER_STATUSES,
    Intent,
    Order,
    OrderStatus,
    Session,
    SessionState,
    TokenSymbol,
    TurnResult,
)
from .payout import PayoutProvider, has_bank_details_marker, parse_bank_account
from .pricing import Quote, format_rates, quote_ngn
from .safety import REJECTION_REPLY, filter_response, sanitize_input
from .session_store import SessionStore
from .turn_runtime import TurnRunner, TurnStep
from .utils import mask_digits

logger = logging.getLogger("solswap.conversation")

SUPPORTED_TOKENS = [token.value for token in TokenSymbol]

GREETING_REPLY = (
    "Hi! I'm SolSwapAI. I can help you sell SOL, USDC or USDT for Nigerian Naira. "
    "How can I assist you today?"
)
ACKNOWLEDGE_REPLY = "Thanks for your message."
FALLBACK_REPLIES: Dict[Intent, str] = {
    Intent.HELP: (
        "I'd be happy to help! I can assist with selling SOL, USDC, or USDT tokens for "
        "Nigerian Naira. Say \"sell\" to start, \"rate\" for prices, or \"status\" to check a sale."
    ),
    Intent.TRANSFER: (
        "To send tokens from your Phantom wallet, open Phantom, select the token you want "
        "to send, paste the deposit address, enter the amount, and confirm the transaction."
    ),
    Intent.SELL: "Great! I can help you sell your Solana tokens for NGN.",
    Intent.RATE: "Here are the latest rates I have.",
    Intent.CANCEL: "No problem.",
}

ASK_TOKEN_NOTICE = "Which token would you like to sell? (SOL, USDC, USDT)"
CHOOSE_TOKEN_NOTICE = "Please choose one of: SOL, USDC, USDT."
NO_ADDRESS_YET_NOTICE = (
    "I haven't given you a deposit address yet. Tell me you'd like to sell and I'll set one up for you."
)
TRANSFER_BEFORE_ORDER_NOTICE = "Once you start a sale I'll give you a deposit address to send your tokens to."
DEPOSIT_RECEIVED_NOTICE = "Thanks! I'm verifying your deposit on Solana. I'll update you shortly."
DUPLICATE_TX_NOTICE = (
    "This transaction has already been processed. Please check your transaction history "
    "or contact support if you believe this is an error."
)
CONFIRMING_NOTICE = "I'm still confirming your transaction on-chain. I'll notify you once it's finalized."
ASK_BANK_NOTICE = (
    "Please provide your Nigerian bank account details for the payout: your 10-digit account "
    "number and bank code, e.g. 0123456789:058."
)
BAD_BANK_NOTICE = (
    "I couldn't read those bank details. Please send your 10-digit account number and bank "
    "code, e.g. 0123456789:058."
)
READY_TO_PAY_NOTICE = "Your payout is being processed. You should receive the NGN in your bank account shortly."
CANCELLED_NOTICE = "I've cancelled your current transaction. How can I help you today?"
NO_ACTIVE_NOTICE = "You don't have any active transactions. Would you like to start selling tokens?"
RATES_UNAVAILABLE_NOTICE = "Sorry, I could not fetch rates at this time."
STALE_ORDER_NOTICE = "I couldn't find your previous order, so I've reset our conversation. Say \"sell\" to start again."
TERMINAL_NOTICES: Dict[SessionState, str] = {
    SessionState.PAID: "Your last payout has been sent. Say \"sell\" whenever you want to start a new sale.",
    SessionState.FAILED: (
        "Your last transaction could not be completed. Say \"sell\" to start a new one or contact support."
    ),
    SessionState.CANCELLED: "Your last transaction was cancelled. Say \"sell\" to start a new one.",
}


class ReplyGenerator(Protocol):
    def generate_reply(self, message: str, context_summary: str) -> str:
        ...


class QuoteProvider(Protocol):
    def get_quote(self, symbols: Iterable[str]) -> Quote:
        ...


class DepositAddressProvider(Protocol):
    def get_deposit_address(self, token: TokenSymbol) -> DepositAddress:
        ...


@dataclass
class TurnContext:
    """Mutable context passed through each turn step."""
    user_id: str
    raw_message: str
    idempotency_key: Optional[str] = None
    message: str = ""
    rejected: bool = False
    cached: Optional[TurnResult] = None
    intent: Intent = Intent.UNKNOWN
    session: Optional[Session] = None
    order: Optional[Order] = None
    notice: str = ""
    phrasing: str = ""
    reply: str = ""
    result: Optional[TurnResult] = None

    @property
    def short_circuited(self) -> bool:
        return self.rejected or self.cached is not None


class ConversationEngine:
    def __init__(
        self,
        store: SessionStore,
        replier: ReplyGenerator,
        pricing: QuoteProvider,
        deposits: DepositAddressProvider,
        idempotency: Optional[IdempotencyCache] = None,
        payouts: Optional[PayoutProvider] = None,
        spread_bps: int = 150,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Purpose: Wire the engine to its store and collaborators and build the step runner.
        Inputs/Outputs: Inputs are the store, phrasing, pricing, deposit-address and payout
            collaborators plus the idempotency cache and spread; no return value.
        Side Effects / State: Constructs a TurnRunner with ordered steps.
        Dependencies: Uses TurnRunner/TurnStep and the step methods on this class.
        Failure Modes: None at init.
        If Removed: Neither the chat route nor the order routes can act on state.
        Testing Notes: Instantiate with fakes and drive a full sale.
        """
        # Store dependencies; every state must have a handler.
        self._store = store
        self._replier = replier
        self._pricing = pricing
        self._deposits = deposits
        self._idempotency = idempotency if idempotency is not None else IdempotencyCache()
        self._payouts = payouts
        self._spread_bps = spread_bps
        self._clock = clock
        self._state_handlers: Dict[SessionState, Callable[[TurnContext], None]] = {
            SessionState.START: self._handle_start,
            SessionState.AWAITING_TOKEN: self._handle_awaiting_token,
            SessionState.AWAITING_DEPOSIT: self._handle_awaiting_deposit,
            SessionState.CONFIRMING: self._handle_confirming,
            SessionState.AWAITING_BANK: self._handle_awaiting_bank,
            SessionState.READY_TO_PAY: self._handle_ready_to_pay,
            SessionState.PAID: self._handle_terminal,
            SessionState.FAILED: self._handle_terminal,
            SessionState.CANCELLED: self._handle_terminal,
        }
        self._universal_handlers: Dict[Intent, Callable[[TurnContext], None]] = {
            Intent.RATE: self._handle_rate,
            Intent.HELP: self._handle_help,
            Intent.CANCEL: self._handle_cancel,
            Intent.STATUS: self._handle_status,
        }
        skip = lambda ctx: ctx.short_circuited  # noqa: E731
        self._runner = TurnRunner(
            steps=[
                TurnStep("sanitize", self._step_sanitize),
                TurnStep("idempotency", self._step_idempotency, skip_if=skip),
                TurnStep("load_session", self._step_load_session, skip_if=skip),
                TurnStep("classify", self._step_classify, skip_if=skip),
                TurnStep("transition", self._step_transition, skip_if=skip),
                TurnStep("phrase", self._step_phrase, skip_if=skip),
                TurnStep("compose", self._step_compose, skip_if=skip),
                TurnStep("filter", self._step_filter, skip_if=lambda ctx: ctx.cached is not None),
                TurnStep("finalize", self._step_finalize, always_run=True),
            ]
        )

    # ------------------------------------------------------------------ turns

    def handle_turn(self, user_id: str, message: str, idempotency_key: Optional[str] = None) -> TurnResult:
        """Purpose: Process one chat message for a user and return the reply and state.
        Inputs/Outputs: Inputs are user id, raw message and optional idempotency key;
            output is a TurnResult with reply, session and active order.
        Side Effects / State: May create the session, create or mutate the order, and
            cache the result under the idempotency key.
        Dependencies: Runs the TurnRunner under the user's store lock.
        Failure Modes: Rejected input, invalid data, duplicate signatures, language
            model and pricing failures are all answered in the reply; none raise.
        If Removed: The chat API has nothing to call.
        Testing Notes: Drive start -> awaiting_token -> awaiting_deposit -> confirming.
        """
        # One user's turns never interleave.
        with self._store.hold_user(user_id):
            context = TurnContext(user_id=user_id, raw_message=message, idempotency_key=idempotency_key)
            self._runner.run(context)
            return context.result

    def _step_sanitize(self, context: TurnContext) -> None:
        try:
            context.message = sanitize_input(context.raw_message)
        except InputRejected:
            logger.warning("user=%s input rejected", context.user_id)
            context.rejected = True
            context.session = self._store.get_session(context.user_id) or self._transient_session(context.user_id)
            context.order = self._store.get_order(context.session.order_id)
            context.reply = REJECTION_REPLY

    def _step_idempotency(self, context: TurnContext) -> None:
        if not context.idempotency_key:
            return
        cached = self._idempotency.check(_scoped_key(context))
        if cached is not None:
            logger.info("user=%s key=%s idempotent replay", context.user_id, context.idempotency_key)
            context.cached = cached

    def _step_load_session(self, context: TurnContext) -> None:
        """Purpose: Load the user's session and active order into the context.
        Inputs/Outputs: Input is TurnContext; sets session and order.
        Side Effects / State: Creates the session on first contact; a session pointing
            at a missing order is reset to ``start`` so the stale reference is dropped.
        Dependencies: Uses SessionStore.get_or_create_session and get_order.
        Failure Modes: None; a missing order is treated as absent.
        If Removed: Handlers have no state to act on.
        Testing Notes: Delete an order behind a session and verify the reset notice.
        """
        # Resolve the order reference; a dangling one is treated as absent.
        session = self._store.get_or_create_session(context.user_id)
        order = self._store.get_order(session.order_id)
        if order is None and (session.order_id or session.state in ORDER_BEARING_STATES - {SessionState.PAID}):
            logger.warning("user=%s order=%s stale order reference", context.user_id, session.order_id)
            session = self._store.update_session(context.user_id, state=SessionState.START, order_id=None)
            context.notice = STALE_ORDER_NOTICE
        context.session = session
        context.order = order

    def _step_classify(self, context: TurnContext) -> None:
        context.intent = classify_intent(context.message)
        logger.info(
            "user=%s state=%s intent=%s length=%s",
            context.user_id,
            context.session.state.value,
            context.intent.value,
            len(context.message),
        )

    def _step_transition(self, context: TurnContext) -> None:
        # A stale-order notice from load_session stays ahead of the handler's own notice.
        preface = context.notice
        context.notice = ""
        before = context.session.state
        handler = self._universal_handlers.get(context.intent) or self._state_handlers[context.session.state]
        handler(context)
        context.notice = "\n\n".join(part for part in (preface, context.notice) if part)
        if context.session.state != before:
            logger.info(
                "user=%s transition %s -> %s",
                context.user_id,
                before.value,
                context.session.state.value,
            )

    def _step_phrase(self, context: TurnContext) -> None:
        """Purpose: Get conversational phrasing from the language model.
        Inputs/Outputs: Input is TurnContext; sets phrasing.
        Side Effects / State: One call to the reply generator.
        Dependencies: Uses build_context_summary and fallback_phrase.
        Failure Modes: Any generator failure (including timeouts) falls back to canned
            phrasing; the state decided by the transition step is unaffected.
        If Removed: Replies carry only the engine's notice text.
        Testing Notes: Make the generator raise and verify the fallback text.
        """
        # The model sees the post-transition state so it does not re-ask settled questions.
        summary = build_context_summary(context.session, context.order, context.intent)
        try:
            context.phrasing = self._replier.generate_reply(context.message, summary)
        except Exception as exc:
            logger.warning("user=%s phrasing unavailable: %s", context.user_id, exc.__class__.__name__)
            context.phrasing = fallback_phrase(context.intent, context.session.state)

    def _step_compose(self, context: TurnContext) -> None:
        parts = [part for part in (context.phrasing.strip(), context.notice.strip()) if part]
        context.reply = "\n\n".join(parts)

    def _step_filter(self, context: TurnContext) -> None:
        context.reply = filter_response(context.reply)

    def _step_finalize(self, context: TurnContext) -> None:
        if context.cached is not None:
            context.result = context.cached
            return
        context.result = TurnResult(reply=context.reply, session=context.session, order=context.order)
        if context.idempotency_key and not context.rejected:
            self._idempotency.store(_scoped_key(context), context.result)

    # ------------------------------------------------------- universal intents

    def _handle_rate(self, context: TurnContext) -> None:
        try:
            quote = self._pricing.get_quote(SUPPORTED_TOKENS)
        except Exception as exc:
            logger.warning("user=%s rates unavailable: %s", context.user_id, exc.__class__.__name__)
            context.notice = RATES_UNAVAILABLE_NOTICE
            return
        context.notice = format_rates(quote)

    def _handle_help(self, context: TurnContext) -> None:
        context.notice = ""

    def _handle_cancel(self, context: TurnContext) -> None:
        # The order keeps its last status as a historical record.
        if context.order is not None:
            logger.info("user=%s order=%s detached by cancel", context.user_id, context.order.id)
        context.session = self._store.update_session(context.user_id, state=SessionState.START, order_id=None)
        context.order = None
        context.notice = CANCELLED_NOTICE

    def _handle_status(self, context: TurnContext) -> None:
        order = context.order
        if order is None:
            context.notice = NO_ACTIVE_NOTICE
            return
        context.notice = f"Your {order.token_symbol.value} transaction is currently: {order.status.value}"

    # ---------------------------------------------------------- state handlers

    def _handle_start(self, context: TurnContext) -> None:
        if context.intent is Intent.SELL:
            context.session = self._store.update_session(context.user_id, state=SessionState.AWAITING_TOKEN)
            context.notice = ASK_TOKEN_NOTICE
        elif context.intent is Intent.SENT:
            context.notice = NO_ADDRESS_YET_NOTICE
        elif context.intent is Intent.TRANSFER:
            context.notice = TRANSFER_BEFORE_ORDER_NOTICE

    def _handle_awaiting_token(self, context: TurnContext) -> None:
        """Purpose: Create the order once the user names a supported token.
        Inputs/Outputs: Input is TurnContext; sets session/order/notice.
        Side Effects / State: Inserts an Order in ``awaiting_deposit`` and links it to the
            session, which moves to ``awaiting_deposit``.
        Dependencies: Uses resolve_token_symbol and the deposit-address collaborator.
        Failure Modes: Unrecognised tokens re-prompt without changing state.
        If Removed: No order can ever be created from chat.
        Testing Notes: "usdc" creates a USDC order; "DOGE" re-prompts.
        """
        # Whole-word SOL/USDC/USDT anywhere in the message selects the token.
        token = resolve_token_symbol(context.message)
        if token is None:
            context.notice = CHOOSE_TOKEN_NOTICE
            return
        deposit = self._deposits.get_deposit_address(token)
        order = self._store.insert_order(
            Order(
                id=str(uuid.uuid4()),
                user_id=context.user_id,
                token_symbol=token,
                deposit_address=deposit.address,
                deposit_token_account=deposit.token_account,
                status=OrderStatus.AWAITING_DEPOSIT,
                created_at=0.0,
                updated_at=0.0,
            )
        )
        context.session = self._store.update_session(
            context.user_id, state=SessionState.AWAITING_DEPOSIT, order_id=order.id
        )
        context.order = order
        logger.info("user=%s order=%s token=%s created", context.user_id, order.id, token.value)
        context.notice = (
            f"Perfect! I've created an order for {token.value}. "
            f"{deposit_instructions(order)}\n\n"
            "After sending, please reply with the transaction hash or the wallet address you sent from."
        )

    def _handle_awaiting_deposit(self, context: TurnContext) -> None:
        order = context.order
        if context.intent is Intent.SENT:
            tx_signature = extract_tx_signature(context.message)
            from_address = extract_wallet_address(context.message.replace(tx_signature, " ") if tx_signature else context.message)
            if from_address == order.deposit_address:
                from_address = None
            try:
                order = self._store.record_deposit(order.id, tx_signature, from_address)
            except DuplicateTransaction:
                logger.warning("user=%s order=%s duplicate signature rejected", context.user_id, order.id)
                context.notice = DUPLICATE_TX_NOTICE
                return
            context.order = order
            context.session = self._store.update_session(context.user_id, state=SessionState.CONFIRMING)
            context.notice = DEPOSIT_RECEIVED_NOTICE
            return
        context.notice = (
            f"I'm waiting for your {order.token_symbol.value} deposit. {deposit_instructions(order)}\n\n"
            "Let me know once it's sent (include the transaction hash if you have it)."
        )

    def _handle_confirming(self, context: TurnContext) -> None:
        context.notice = CONFIRMING_NOTICE

    def _handle_awaiting_bank(self, context: TurnContext) -> None:
        """Purpose: Collect and validate payout bank details.
        Inputs/Outputs: Input is TurnContext; sets session/order/notice.
        Side Effects / State: On valid details stores ``account:code`` on the order and
            moves order and session to ``ready_to_pay``.
        Dependencies: Uses has_bank_details_marker and parse_bank_account.
        Failure Modes: Details that do not parse get a corrective reply; state unchanged.
        If Removed: Sales stall after deposit confirmation.
        Testing Notes: "0123456789:058" advances; "my bank is GTB" does not.
        """
        # Only bank-flavoured messages are parsed; others get the standing prompt.
        if context.intent is not Intent.BANK and not has_bank_details_marker(context.message):
            context.notice = ASK_BANK_NOTICE
            return
        try:
            account = _require_bank_account(context.message)
        except ValidationFailed:
            context.notice = BAD_BANK_NOTICE
            return
        context.order = self._store.update_order(
            context.order.id, bank_account=account.as_stored(), status=OrderStatus.READY_TO_PAY
        )
        context.session = self._store.update_session(context.user_id, state=SessionState.READY_TO_PAY)
        logger.info(
            "user=%s order=%s bank details accepted account=%s",
            context.user_id,
            context.order.id,
            mask_digits(account.account_number),
        )
        amount = f" of ₦{context.order.amount_ngn}" if context.order.amount_ngn else ""
        context.notice = (
            f"Great! I have your bank details (account ending {account.account_number[-3:]}). "
            f"I'll process your payout{amount} shortly."
        )

    def _handle_ready_to_pay(self, context: TurnContext) -> None:
        context.notice = READY_TO_PAY_NOTICE

    def _handle_terminal(self, context: TurnContext) -> None:
        # A finished sale does not reopen; a new sell intent starts a fresh flow.
        if context.intent is Intent.SELL:
            context.session = self._store.update_session(
                context.user_id, state=SessionState.AWAITING_TOKEN, order_id=None
            )
            context.order = None
            context.notice = ASK_TOKEN_NOTICE
            return
        context.notice = TERMINAL_NOTICES[context.session.state]

    # --------------------------------------------------------- external events

    def confirm_deposit(self, order_id: str, amount_token: str) -> Order:
        """Purpose: Apply an on-chain deposit confirmation to an order.
        Inputs/Outputs: Inputs are order id and the confirmed token amount (decimal
            string); output is the updated Order in ``awaiting_bank``.
        Side Effects / State: Prices the deposit net of spread, stores amounts and rate,
            and moves the linked session to ``awaiting_bank``.
        Dependencies: Uses the pricing collaborator and quote_ngn.
        Failure Modes: NotFound for unknown orders, InvalidTransition unless the order is
            awaiting deposit or confirming, ValidationFailed for a bad amount,
            UpstreamUnavailable when pricing fails (order unchanged).
        If Removed: Confirmed deposits never reach the bank-details step.
        Testing Notes: Confirm 2 SOL at a fake quote and check amount_ngn.
        """
        # Price first so a pricing failure leaves the order untouched.
        amount = _parse_amount(amount_token)
        with self._order_lock(order_id):
            order = self._store.require_order(order_id)
            _require_status(order, OrderStatus.AWAITING_DEPOSIT, OrderStatus.CONFIRMING)
            quote = self._pricing.get_quote([order.token_symbol.value])
            amount_ngn = quote_ngn(amount, order.token_symbol.value, quote, self._spread_bps)
            order = self._store.update_order(
                order_id,
                status=OrderStatus.AWAITING_BANK,
                amount_token=str(amount),
                amount_ngn=str(amount_ngn),
                price_usd=str(quote.usd_prices[order.token_symbol.value]),
                ngn_fx=f"{quote.usd_to_ngn:.2f}",
                spread_bps=self._spread_bps,
            )
            self._sync_session(order, SessionState.AWAITING_BANK)
            logger.info("order=%s deposit confirmed amount=%s ngn=%s", order_id, amount, amount_ngn)
            return order

    def fail_deposit(self, order_id: str) -> Order:
        with self._order_lock(order_id):
            order = self._store.require_order(order_id)
            _require_status(order, OrderStatus.AWAITING_DEPOSIT, OrderStatus.CONFIRMING)
            order = self._store.update_order(order_id, status=OrderStatus.FAILED)
            self._sync_session(order, SessionState.FAILED)
            logger.warning("order=%s deposit failed", order_id)
            return order

    def submit_bank_details(self, order_id: str, raw: str) -> Order:
        with self._order_lock(order_id):
            order = self._store.require_order(order_id)
            _require_status(order, OrderStatus.AWAITING_BANK)
            account = _require_bank_account(raw)
            order = self._store.update_order(
                order_id, bank_account=account.as_stored(), status=OrderStatus.READY_TO_PAY
            )
            self._sync_session(order, SessionState.READY_TO_PAY)
            return order

    def initiate_payout(self, order_id: str) -> Order:
        """Purpose: Start the NGN bank transfer for a ready order.
        Inputs/Outputs: Input is order id; output is the Order with payout_reference set.
        Side Effects / State: Calls the payout provider; a provider ``success`` settles the
            order as paid, ``failed`` fails it, ``queued`` waits for the payout webhook.
        Dependencies: Uses the configured PayoutProvider and parse_bank_account.
        Failure Modes: InvalidTransition unless ready_to_pay with bank details and an NGN
            amount; UpstreamUnavailable when no provider is configured.
        If Removed: Ready orders are never paid.
        Testing Notes: With the stub provider the order keeps ready_to_pay plus a reference.
        """
        # Amount is sent in kobo.
        if self._payouts is None:
            raise UpstreamUnavailable("No payout provider configured")
        with self._order_lock(order_id):
            order = self._store.require_order(order_id)
            _require_status(order, OrderStatus.READY_TO_PAY)
            if order.payout_reference:
                raise InvalidTransition(f"Payout already initiated for order {order_id}")
            account = parse_bank_account(order.bank_account or "")
            if account is None or not order.amount_ngn:
                raise InvalidTransition(f"Order {order_id} is not ready for payout")
            amount_kobo = int(Decimal(order.amount_ngn) * 100)
            recipient = self._payouts.create_recipient(account)
            result = self._payouts.initiate_transfer(
                recipient, amount_kobo, reference=f"solswap-{order.id}", narration=f"Order {order.id}"
            )
            order = self._store.update_order(order_id, payout_reference=result.reference)
            logger.info("order=%s payout initiated reference=%s status=%s", order_id, result.reference, result.status)
            if result.status in ("success", "failed"):
                order = self._settle_payout(order, result.status)
            return order

    def record_payout_result(self, reference: str, status: str) -> Order:
        order = self._store.find_order_by_payout_reference(reference)
        if order is None:
            raise NotFound(f"No order with payout reference {reference}")
        with self._order_lock(order.id):
            order = self._store.require_order(order.id)
            _require_status(order, OrderStatus.READY_TO_PAY)
            return self._settle_payout(order, status)

    def _settle_payout(self, order: Order, status: str) -> Order:
        if status == "success":
            order = self._store.update_order(order.id, status=OrderStatus.PAID)
            self._sync_session(order, SessionState.PAID)
        else:
            order = self._store.update_order(order.id, status=OrderStatus.FAILED)
            self._sync_session(order, SessionState.FAILED)
        logger.info("order=%s payout settled status=%s", order.id, order.status.value)
        return order

    def _order_lock(self, order_id: str):
        order = self._store.require_order(order_id)
        return self._store.hold_user(order.user_id)

    def _sync_session(self, order: Order, state: SessionState) -> None:
        # Sessions that moved on (cancelled, new order) are left alone.
        session = self._store.get_session(order.user_id)
        if session is None or session.order_id != order.id:
            return
        self._store.update_session(order.user_id, state=state)

    def _transient_session(self, user_id: str) -> Session:
        now = self._clock()
        return Session(id=str(uuid.uuid4()), user_id=user_id, state=SessionState.START, created_at=now, updated_at=now)


def build_context_summary(session: Session, order: Optional[Order], intent: Intent) -> str:
    """Describe the conversation position for the language model."""
    lines = [
        f"Current session state: {session.state.value}",
        f"User ID: {session.user_id}",
        f"Detected intent: {intent.value}",
    ]
    if order is not None:
        lines.append(f"Active order ID: {order.id}")
        lines.append(f"Order details: {order.token_symbol.value} token, status: {order.status.value}")
    lines.append("Available actions: rate inquiry, help, transfer instructions, or selling process")
    return "\n".join(lines)


def fallback_phrase(intent: Intent, state: SessionState) -> str:
    """Canned phrasing used when the language model is unavailable."""
    if intent in FALLBACK_REPLIES:
        return FALLBACK_REPLIES[intent]
    if state is SessionState.START:
        return GREETING_REPLY
    return ACKNOWLEDGE_REPLY


def deposit_instructions(order: Order) -> str:
    text = f"Please send your {order.token_symbol.value} to this deposit address: {order.deposit_address}"
    if order.deposit_token_account:
        text += f" (token account: {order.deposit_token_account})"
    return text


def _scoped_key(context: TurnContext) -> str:
    # Keys are chosen by callers, so two users may pick the same one.
    return f"{context.user_id}:{context.idempotency_key}"


def _require_status(order: Order, *allowed: OrderStatus) -> None:
    if order.status in allowed:
        return
    if order.status in TERMINAL_ORDER_STATUSES:
        raise InvalidTransition(f"Order {order.id} is already {order.status.value}")
    raise InvalidTransition(f"Order {order.id} is {order.status.value}, expected one of {[s.value for s in allowed]}")


def _require_bank_account(raw: str):
    account = parse_bank_account(raw)
    if account is None:
        raise ValidationFailed("Bank details must be a 10-digit account number and a 3-6 digit bank code")
    return account


def _parse_amount(amount_token: str) -> Decimal:
    try:
        amount = Decimal(str(amount_token))
    except InvalidOperation as exc:
        raise ValidationFailed(f"Invalid token amount: {amount_token}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailed(f"Invalid token amount: {amount_token}")
    return amount
