"""
Price Feed
==========

Spot USD price of the funding asset from CoinGecko.

A failed lookup raises PriceFeedError; the caller never receives a stale
price unless a cache window is explicitly configured.
"""

import asyncio
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from bump_bot.utils import PriceFeedError, logger

COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"

# Funding asset -> CoinGecko id
ASSET_IDS = {
    "0x4200000000000000000000000000000000000006": "ethereum",
    "eth": "ethereum",
    "weth": "ethereum",
}


class CoinGeckoPriceFeed:
    """USD prices via the CoinGecko ``simple/price`` endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: str = COINGECKO_API_BASE,
        cache_seconds: float = 0.0,
        request_timeout: float = 10.0,
    ):
        self.api_base = api_base.rstrip("/")
        self.cache_seconds = cache_seconds
        self.request_timeout = request_timeout
        self.headers = {"Accept": "application/json"}
        if api_key:
            self.headers["x-cg-pro-api-key"] = api_key
        self._cache: Dict[str, Tuple[Decimal, float]] = {}

    @staticmethod
    def coin_id(asset: str) -> str:
        return ASSET_IDS.get(asset.lower(), asset.lower())

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        reraise=True,
    )
    def _fetch(self, coin_id: str) -> Decimal:
        response = requests.get(
            f"{self.api_base}/simple/price",
            params={"ids": coin_id, "vs_currencies": "usd"},
            headers=self.headers,
            timeout=self.request_timeout,
        )
        if response.status_code != 200:
            error_text = response.text[:200] if response.text else "Unknown error"
            raise PriceFeedError(f"CoinGecko error {response.status_code}: {error_text}")

        try:
            value = Decimal(str(response.json()[coin_id]["usd"]))
        except (KeyError, TypeError, ValueError, InvalidOperation):
            raise PriceFeedError(f"CoinGecko returned no USD price for {coin_id}")
        if value <= 0:
            raise PriceFeedError(f"CoinGecko returned non-positive price for {coin_id}: {value}")
        return value

    def get_price(self, asset: str) -> Decimal:
        """Blocking price lookup."""
        coin_id = self.coin_id(asset)
        if self.cache_seconds > 0:
            cached = self._cache.get(coin_id)
            if cached and time.monotonic() - cached[1] < self.cache_seconds:
                return cached[0]

        try:
            value = self._fetch(coin_id)
        except requests.RequestException as e:
            raise PriceFeedError(f"CoinGecko request failed: {e.__class__.__name__}") from e

        self._cache[coin_id] = (value, time.monotonic())
        logger.debug(f"Price {coin_id}: ${value}")
        return value

    async def price(self, asset: str) -> Decimal:
        return await asyncio.to_thread(self.get_price, asset)
