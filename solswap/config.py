from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for the language model, caches, limits and payouts."""
    gemini_api_key: str
    gemini_model: str
    gemini_timeout_sec: float
    prompts_dir: Path
    idempotency_window_sec: float
    idempotency_max_entries: int
    rate_limit_max_requests: int
    rate_limit_window_sec: int
    payout_provider: str
    spread_bps: int
    price_cache_sec: float
    session_retention_sec: float
    order_retention_sec: float
    sessions_path: Optional[Path]
    usdc_mint: str
    usdt_mint: str


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables.
    Dependencies: Uses os.getenv and BASE_DIR for the prompts directory.
    Failure Modes: Non-numeric limit/window values raise ValueError; an unknown
        PAYOUT_PROVIDER raises ValueError.
    If Removed: App cannot configure phrasing, caches or payouts and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve optional persistence path, then build Settings.
    sessions_path = os.getenv("SESSIONS_PATH")
    payout_provider = os.getenv("PAYOUT_PROVIDER", "paystack").strip().lower()
    if payout_provider not in ("paystack", "flutterwave"):
        raise ValueError(f"Unsupported PAYOUT_PROVIDER: {payout_provider}")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        gemini_timeout_sec=float(os.getenv("GEMINI_TIMEOUT_SEC", "10")),
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        idempotency_window_sec=float(os.getenv("IDEMPOTENCY_WINDOW_SEC", "300")),
        idempotency_max_entries=int(os.getenv("IDEMPOTENCY_MAX_ENTRIES", "1000")),
        rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "10")),
        rate_limit_window_sec=int(os.getenv("RATE_LIMIT_WINDOW_SEC", "60")),
        payout_provider=payout_provider,
        spread_bps=int(os.getenv("SPREAD_BPS", "150")),
        price_cache_sec=float(os.getenv("PRICE_CACHE_SEC", "30")),
        session_retention_sec=float(os.getenv("SESSION_RETENTION_SEC", str(24 * 60 * 60))),
        order_retention_sec=float(os.getenv("ORDER_RETENTION_SEC", str(7 * 24 * 60 * 60))),
        sessions_path=Path(sessions_path) if sessions_path else None,
        usdc_mint=os.getenv("SPL_USDC_MINT", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"),
        usdt_mint=os.getenv("SPL_USDT_MINT", "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"),
    )
