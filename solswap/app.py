from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .conversation import ConversationEngine
from .deposits import DepositAddressGenerator
from .errors import SolSwapError
from .gemini_client import GeminiClient
from .idempotency import IdempotencyCache
from .models import (
    Analytics,
    BankDetailsRequest,
    ChatRequest,
    DepositConfirmedRequest,
    Order,
    PayoutWebhookRequest,
    TokenSymbol,
    TurnResult,
)
from .payout import get_payout_provider
from .pricing import PricingClient
from .rate_limiter import RateLimiter
from .session_store import SessionStore

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("solswap").setLevel(log_level)
logger = logging.getLogger("solswap.api")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def build_engine(settings: Settings, store: Optional[SessionStore] = None) -> ConversationEngine:
    """Purpose: Assemble the conversation engine and its collaborators from settings.
    Inputs/Outputs: Input is Settings plus an optional store; output is a ConversationEngine.
    Side Effects / State: Configures the Gemini SDK when an API key is set.
    Dependencies: Uses GeminiClient, PricingClient, DepositAddressGenerator and the
        configured payout provider.
    Failure Modes: Missing prompt files raise at start-up.
    If Removed: The app has no engine to route chat or order events to.
    Testing Notes: Build with default settings and no API key; turns still succeed.
    """
    # Collaborators are created once per process.
    store = store if store is not None else SessionStore(settings.sessions_path)
    return ConversationEngine(
        store=store,
        replier=GeminiClient(settings),
        pricing=PricingClient(cache_sec=settings.price_cache_sec),
        deposits=DepositAddressGenerator(
            mints={TokenSymbol.USDC: settings.usdc_mint, TokenSymbol.USDT: settings.usdt_mint}
        ),
        idempotency=IdempotencyCache(
            window_sec=settings.idempotency_window_sec,
            max_entries=settings.idempotency_max_entries,
        ),
        payouts=get_payout_provider(settings.payout_provider),
        spread_bps=settings.spread_bps,
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SessionStore] = None,
    engine: Optional[ConversationEngine] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Purpose: Create the FastAPI application with chat, order and maintenance routes.
    Inputs/Outputs: Optional settings, store, engine and limiter overrides; returns FastAPI.
    Side Effects / State: Builds default collaborators for anything not supplied.
    Dependencies: Uses build_engine, RateLimiter and the SolSwapError taxonomy.
    Failure Modes: Invalid settings raise ValueError before any route is registered.
    If Removed: The service has no HTTP surface.
    Testing Notes: Pass an engine built on fakes and drive it with TestClient.
    """
    # Resolve collaborators, then register routes against them.
    settings = settings or load_settings()
    store = store if store is not None else SessionStore(settings.sessions_path)
    engine = engine if engine is not None else build_engine(settings, store)
    limiter = rate_limiter or RateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_sec,
    )

    app = FastAPI(title="SolSwapAI Conversation Service")

    @app.exception_handler(SolSwapError)
    def handle_solswap_error(request: Request, exc: SolSwapError) -> JSONResponse:
        logger.warning("path=%s code=%s %s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.post("/chat/message", response_model=TurnResult)
    def chat_message(payload: ChatRequest, request: Request):
        """Purpose: Process one chat message through the conversation engine.
        Inputs/Outputs: Input is ChatRequest; output is {reply, session, order}.
        Side Effects / State: May mutate the user's session/order and idempotency cache.
        Dependencies: Uses RateLimiter and ConversationEngine.handle_turn.
        Failure Modes: 429 with retryAfter once the user/IP window is exhausted; 422 on
            request-shape errors.
        If Removed: Users cannot talk to the service.
        Testing Notes: Send "Hi" and verify session.state == "start".
        """
        # Limit per user and caller address before touching any state.
        client_ip = request.client.host if request.client else "unknown"
        allowed, retry_after = limiter.check_rate_limit(payload.user_id, client_ip)
        if not allowed:
            logger.warning("user=%s ip=%s rate limited", payload.user_id, client_ip)
            return JSONResponse(
                status_code=429,
                headers={"Retry-After": str(retry_after)},
                content={
                    "error": {"code": "RATE_LIMITED", "message": "Too many requests. Please try again later."},
                    "retryAfter": retry_after,
                },
            )
        return engine.handle_turn(payload.user_id, payload.message, payload.idempotency_key)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "analytics": store.get_analytics().model_dump(by_alias=True),
        }

    @app.get("/chat/health")
    def chat_health() -> dict:
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "analytics": store.get_analytics().model_dump(by_alias=True),
        }

    @app.get("/chat/analytics", response_model=Analytics)
    def chat_analytics() -> Analytics:
        return store.get_analytics()

    @app.get("/orders/{order_id}", response_model=Order)
    def get_order(order_id: str) -> Order:
        return store.require_order(order_id)

    @app.post("/orders/{order_id}/bank", response_model=Order)
    def submit_bank_details(order_id: str, payload: BankDetailsRequest) -> Order:
        return engine.submit_bank_details(order_id, payload.bank_account)

    @app.post("/orders/{order_id}/deposit/confirmed", response_model=Order)
    def deposit_confirmed(order_id: str, payload: DepositConfirmedRequest) -> Order:
        """Purpose: Apply an on-chain deposit confirmation reported by the chain watcher.
        Inputs/Outputs: Input is the order id and confirmed amount; output is the Order.
        Side Effects / State: Order and session move to awaiting_bank with NGN amount set.
        Dependencies: Uses ConversationEngine.confirm_deposit.
        Failure Modes: 404 unknown order, 409 wrong status, 503 pricing unavailable.
        If Removed: Deposits can never progress to payout.
        Testing Notes: Confirm a confirming order and check amountNgn.
        """
        # Pricing happens inside the engine under the owner's lock.
        return engine.confirm_deposit(order_id, payload.amount_token)

    @app.post("/orders/{order_id}/deposit/failed", response_model=Order)
    def deposit_failed(order_id: str) -> Order:
        return engine.fail_deposit(order_id)

    @app.post("/orders/{order_id}/payout", response_model=Order)
    def initiate_payout(order_id: str) -> Order:
        return engine.initiate_payout(order_id)

    @app.post("/webhooks/payout", response_model=Order)
    def payout_webhook(payload: PayoutWebhookRequest) -> Order:
        return engine.record_payout_result(payload.reference, payload.status)

    @app.post("/maintenance/cleanup")
    def cleanup() -> dict:
        """Purpose: Reap idle sessions and never-funded orders past their retention windows.
        Inputs/Outputs: No inputs; output is the removed counts.
        Side Effects / State: Deletes records from the store and persists.
        Dependencies: Uses SessionStore cleanup methods and retention settings.
        Failure Modes: Persist IO errors propagate as 500.
        If Removed: Memory grows without bound for abandoned conversations.
        Testing Notes: Advance the store clock past retention and verify counts.
        """
        # Funded orders are never reaped.
        sessions_removed = store.cleanup_expired_sessions(settings.session_retention_sec)
        orders_removed = store.cleanup_expired_orders(settings.order_retention_sec)
        logger.info("cleanup sessions=%s orders=%s", sessions_removed, orders_removed)
        return {"sessionsRemoved": sessions_removed, "ordersRemoved": orders_removed}

    return app


app = create_app()
