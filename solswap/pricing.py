from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, Optional

import requests

from .errors import UpstreamUnavailable

logger = logging.getLogger("solswap.pricing")

COINGECKO_IDS = {"SOL": "solana", "USDC": "usd-coin", "USDT": "tether"}


@dataclass(frozen=True)
class Quote:
    usd_prices: Dict[str, float]
    usd_to_ngn: float


class PricingClient:
    """CoinGecko price lookups with a short-lived in-process cache."""

    BASE_URL = "https://api.coingecko.com/api/v3"

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        cache_sec: float = 30.0,
        timeout_sec: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session or requests.Session()
        self._cache_sec = cache_sec
        self._timeout = timeout_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[Quote] = None
        self._fetched_at = 0.0

    def get_quote(self, symbols: Iterable[str]) -> Quote:
        """
        Return USD prices for ``symbols`` and the USD->NGN rate.

        Served from cache while fresh and covering every requested symbol.
        Raises UpstreamUnavailable when CoinGecko cannot be reached or answers
        without the needed fields.
        """
        wanted = [s.upper() for s in symbols]
        with self._lock:
            cached = self._cached
            fresh = cached is not None and self._clock() - self._fetched_at < self._cache_sec
            if fresh and all(s in cached.usd_prices for s in wanted):
                return cached
        try:
            usd_prices = self._fetch_usd_prices(wanted)
            usd_to_ngn = self._fetch_usd_to_ngn()
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            logger.warning("pricing fetch failed: %s", exc)
            raise UpstreamUnavailable("Pricing unavailable") from exc
        quote = Quote(usd_prices=usd_prices, usd_to_ngn=usd_to_ngn)
        with self._lock:
            self._cached = quote
            self._fetched_at = self._clock()
        return quote

    def _fetch_usd_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        ids = [COINGECKO_IDS[s] for s in symbols if s in COINGECKO_IDS]
        resp = self.session.get(
            f"{self.BASE_URL}/simple/price",
            params={"ids": ",".join(ids), "vs_currencies": "usd"},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        prices: Dict[str, float] = {}
        for symbol in symbols:
            usd = (data.get(COINGECKO_IDS.get(symbol, ""), {}) or {}).get("usd")
            if isinstance(usd, (int, float)):
                prices[symbol] = float(usd)
        if not prices:
            raise ValueError("no USD prices in response")
        return prices

    def _fetch_usd_to_ngn(self) -> float:
        # Exchange rates are BTC-denominated; NGN per USD = (ngn/btc) / (usd/btc).
        resp = self.session.get(f"{self.BASE_URL}/exchange_rates", timeout=self._timeout)
        resp.raise_for_status()
        rates = resp.json()["rates"]
        usd_rate = rates["usd"]["value"]
        ngn_rate = rates["ngn"]["value"]
        if not usd_rate or not ngn_rate:
            raise ValueError("FX rates unavailable")
        return float(ngn_rate) / float(usd_rate)


def apply_spread(amount_ngn: Decimal, spread_bps: int) -> Decimal:
    """Deduct ``spread_bps`` basis points and round to kobo (2 dp)."""
    factor = Decimal(1) - Decimal(spread_bps) / Decimal(10_000)
    return (amount_ngn * factor).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def quote_ngn(amount_token: Decimal, symbol: str, quote: Quote, spread_bps: int) -> Decimal:
    """Convert a token amount to NGN at the quoted price, net of spread."""
    price = quote.usd_prices.get(symbol)
    if price is None:
        raise UpstreamUnavailable(f"No price for {symbol}")
    gross = amount_token * Decimal(str(price)) * Decimal(str(quote.usd_to_ngn))
    return apply_spread(gross, spread_bps)


def format_rates(quote: Quote) -> str:
    """Render the rate block appended to ``rate`` replies."""
    parts = " | ".join(f"{symbol}: ${quote.usd_prices[symbol]:g}" for symbol in COINGECKO_IDS if symbol in quote.usd_prices)
    return (
        f"Current rates:\n{parts}\n"
        f"USD/NGN: ₦{quote.usd_to_ngn:.2f} (rates may change, confirm before trading)"
    )
