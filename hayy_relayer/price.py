"""
STX and sBTC prices from CoinGecko.
"""

from typing import Optional

import httpx
import structlog

from .models import STX_DECIMAL_FACTOR, PriceQuote, utcnow

logger = structlog.get_logger()

COINGECKO_API_URL = "https://api.coingecko.com/api/v3"

# Placeholder prices used when the feed is unreachable
FALLBACK_STX_USD = 0.5
FALLBACK_SBTC_USD = 65_000.0

# Loan-to-value ratio applied to collateral
DEFAULT_LTV = 0.7


def fallback_quote() -> PriceQuote:
    return PriceQuote(
        stx_usd=FALLBACK_STX_USD,
        sbtc_usd=FALLBACK_SBTC_USD,
        last_update=utcnow(),
        is_fallback=True,
    )


def calculate_stx_value(amount_micro_stx: int, stx_usd: float) -> float:
    """USD value of an amount given in microSTX."""
    return (amount_micro_stx / STX_DECIMAL_FACTOR) * stx_usd


def calculate_borrowing_power(collateral_usd: float, ltv: float = DEFAULT_LTV) -> float:
    return collateral_usd * ltv


class PriceOracle:
    """Client for the CoinGecko simple price endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = COINGECKO_API_URL,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout)

    def fetch_prices(self) -> PriceQuote:
        """
        Current STX and BTC prices in USD.

        Never raises: on any failure the fallback quote is returned, with
        ``is_fallback`` set.
        """
        params = {"ids": "blockstack,bitcoin", "vs_currencies": "usd"}
        if self.api_key:
            params["x_cg_pro_api_key"] = self.api_key

        try:
            response = self.client.get(f"{self.base_url}/simple/price", params=params)
            response.raise_for_status()
            data = response.json()
            stx_usd = float(data["blockstack"]["usd"])
            sbtc_usd = float((data.get("bitcoin") or {}).get("usd") or 0.0)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("price_fetch_failed", error=str(e))
            return fallback_quote()

        if stx_usd <= 0:
            logger.warning("price_fetch_invalid", stx_usd=stx_usd)
            return fallback_quote()

        quote = PriceQuote(stx_usd=stx_usd, sbtc_usd=sbtc_usd, last_update=utcnow())
        logger.debug("prices_fetched", stx_usd=quote.stx_usd, sbtc_usd=quote.sbtc_usd)
        return quote

    def close(self) -> None:
        self.client.close()
