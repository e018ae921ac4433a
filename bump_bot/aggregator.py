#!/usr/bin/env python3
"""
0x Aggregator Integration
=========================
Swap quotes from the 0x v2 allowance-holder API on Base.

Thin-liquidity tokens often have no route at tight slippage, so quotes walk
a slippage ladder (5% then 10% by default) before giving up. Transient HTTP
failures are retried with backoff at each rung.

API Docs: https://0x.org/docs/api#tag/Swap/operation/swap::allowanceHolder::getQuote
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from web3 import Web3

from bump_bot.erc20 import encode_approve
from bump_bot.models import ContractCall
from bump_bot.utils import QuoteError, format_address, logger

ZEROX_API_BASE = "https://api.0x.org"
ZEROX_CHAIN_ID = 8453

NO_ROUTE_MARKERS = ("no Route matched", "No route found", "INSUFFICIENT_ASSET_LIQUIDITY")


class TransientQuoteError(QuoteError):
    """Rate limit, server error or network failure; worth retrying."""
    pass


class NoRouteError(QuoteError):
    """No liquidity path at the requested slippage."""
    pass


@dataclass
class SwapQuote:
    sell_token: str
    buy_token: str
    sell_amount: int
    target: str
    call_data: str
    value: int
    estimated_out: int
    allowance_target: Optional[str]
    needs_approval: bool
    slippage_bps: int

    def calls(self) -> List[ContractCall]:
        """Approval (when required) followed by the swap call."""
        calls = []
        if self.needs_approval and self.allowance_target:
            calls.append(ContractCall(target=self.sell_token, data=encode_approve(self.allowance_target)))
        calls.append(ContractCall(target=self.target, data=self.call_data, value=self.value))
        return calls


class ZeroXAggregator:
    """0x v2 aggregator for swap routing on Base."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: str = ZEROX_API_BASE,
        chain_id: int = ZEROX_CHAIN_ID,
        slippage_bps: Sequence[int] = (500, 1000),
        request_timeout: float = 30.0,
    ):
        self.api_base = api_base.rstrip("/")
        self.chain_id = chain_id
        self.slippage_bps = list(slippage_bps)
        self.request_timeout = request_timeout

        # v2 API requires version header
        self.headers = {
            "Accept": "application/json",
            "0x-version": "v2"
        }
        if api_key:
            self.headers["0x-api-key"] = api_key

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(TransientQuoteError),
        reraise=True,
    )
    def _request_quote(self, sell_token: str, buy_token: str, sell_amount: int,
                       taker: str, slippage_bps: int) -> Dict[str, Any]:
        params = {
            "chainId": self.chain_id,
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmount": str(sell_amount),
            "taker": taker,
            "slippageBps": str(slippage_bps),
        }
        try:
            response = requests.get(
                f"{self.api_base}/swap/allowance-holder/quote",
                params=params,
                headers=self.headers,
                timeout=self.request_timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientQuoteError(f"0x API request failed: {e.__class__.__name__}") from e

        error_text = response.text[:300] if response.text else "Unknown error"
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientQuoteError(f"0x API error: {response.status_code} - {error_text}")
        if response.status_code != 200:
            if any(marker in error_text for marker in NO_ROUTE_MARKERS):
                raise NoRouteError(f"No route for {format_address(buy_token)}: {error_text}")
            raise QuoteError(f"0x API error: {response.status_code} - {error_text}")

        quote = response.json()
        if quote.get("liquidityAvailable") is False:
            raise NoRouteError(f"No route for {format_address(buy_token)}: liquidity unavailable")
        return quote

    def get_quote(self, sell_token: str, buy_token: str, sell_amount: int, taker: str) -> SwapQuote:
        """Blocking quote walking the slippage ladder."""
        if sell_amount <= 0:
            raise QuoteError("Sell amount must be positive")

        last_error: Optional[QuoteError] = None
        for slippage in self.slippage_bps:
            try:
                quote = self._request_quote(sell_token, buy_token, sell_amount, taker, slippage)
            except NoRouteError as e:
                logger.info(f"0x: no route at {slippage} bps, widening slippage")
                last_error = e
                continue
            return self._parse_quote(quote, sell_token, buy_token, sell_amount, slippage)

        raise NoRouteError(
            f"Insufficient liquidity or no route for {format_address(buy_token)}"
        ) from last_error

    def _parse_quote(self, quote: Dict[str, Any], sell_token: str, buy_token: str,
                     sell_amount: int, slippage: int) -> SwapQuote:
        transaction = quote.get("transaction") or {}
        if not transaction.get("to") or not transaction.get("data"):
            raise QuoteError("No transaction data in quote")

        issues = quote.get("issues") or {}
        allowance_issue = issues.get("allowance")
        allowance_target = quote.get("allowanceTarget")
        if allowance_issue and allowance_issue.get("spender"):
            allowance_target = allowance_issue["spender"]
        if not allowance_target:
            allowance_target = transaction["to"]

        return SwapQuote(
            sell_token=Web3.to_checksum_address(sell_token),
            buy_token=Web3.to_checksum_address(buy_token),
            sell_amount=sell_amount,
            target=Web3.to_checksum_address(transaction["to"]),
            call_data=transaction["data"],
            value=int(transaction.get("value") or 0),
            estimated_out=int(quote.get("buyAmount") or 0),
            allowance_target=Web3.to_checksum_address(allowance_target),
            needs_approval=bool(allowance_issue),
            slippage_bps=slippage,
        )

    async def quote(self, sell_token: str, buy_token: str, sell_amount: int, taker: str) -> SwapQuote:
        return await asyncio.to_thread(self.get_quote, sell_token, buy_token, sell_amount, taker)
