"""
Jupiter aggregator client: quotes, swap transaction builds and reference prices.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from .errors import NoRouteError, QuoteError, RateLimitedError, SwapBuildError
from .models import Quote, SwapTransaction
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

NO_ROUTE_CODES = {"COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND", "TOKEN_NOT_TRADABLE"}


def _transient(exc: BaseException) -> bool:
    return bool(getattr(exc, "transient", False))


def _error_code(body: Any, text: str) -> Optional[str]:
    if isinstance(body, dict):
        code = body.get("errorCode") or body.get("error_code")
        if code:
            return str(code)
    for code in NO_ROUTE_CODES:
        if code in text:
            return code
    return None


class JupiterClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = "https://quote-api.jup.ag/v6",
        slippage_bps: int = 50,
        timeout: float = 15.0,
        attempts: int = 3,
        retry: Optional[RetryPolicy] = None,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.slippage_bps = slippage_bps
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.retry = retry or RetryPolicy(attempts=attempts, base_delay=1.0, predicate=_transient)

    async def get_quote(self, input_mint: str, output_mint: str, amount: int) -> Quote:
        """Quote swapping `amount` raw units of input_mint into output_mint."""
        return await self.retry.run(
            self._fetch_quote, input_mint, output_mint, int(amount), label=f"quote {input_mint[:6]}->{output_mint[:6]}"
        )

    async def _fetch_quote(self, input_mint: str, output_mint: str, amount: int) -> Quote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(self.slippage_bps),
        }
        try:
            async with self.session.get(f"{self.base_url}/quote", params=params, timeout=self.timeout) as resp:
                text = await resp.text()
                body = _safe_json(resp, text)
                if resp.status != 200:
                    code = _error_code(body, text)
                    if code in NO_ROUTE_CODES:
                        raise NoRouteError(f"No route: {code}", status=resp.status, code=code)
                    if resp.status == 429:
                        raise RateLimitedError("Quote rate limited", status=429)
                    raise QuoteError(f"Quote error {resp.status}: {text[:200]}", status=resp.status, code=code)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise QuoteError(f"Quote request failed: {e}") from e

        if not isinstance(body, dict):
            raise QuoteError("Quote response is not a JSON object", status=200)
        code = _error_code(body, "")
        if body.get("error") or code:
            if code in NO_ROUTE_CODES:
                raise NoRouteError(f"No route: {code}", status=200, code=code)
            raise QuoteError(f"Quote error: {body.get('error')}", status=200, code=code)
        return parse_quote(body)

    async def get_swap_transaction(self, quote: Quote, wallet: str) -> SwapTransaction:
        return await self.retry.run(self._build_swap, quote, wallet, label="swap build")

    async def _build_swap(self, quote: Quote, wallet: str) -> SwapTransaction:
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": wallet,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        try:
            async with self.session.post(f"{self.base_url}/swap", json=payload, timeout=self.timeout) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise SwapBuildError(f"Jupiter swap build error: {resp.status} {text[:200]}", status=resp.status)
                body = _safe_json(resp, text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SwapBuildError(f"Swap request failed: {e}") from e

        tx_b64 = body.get("swapTransaction") if isinstance(body, dict) else None
        if not tx_b64:
            raise SwapBuildError("No swapTransaction field in response", status=200)
        height = body.get("lastValidBlockHeight")
        return SwapTransaction(
            transaction_b64=tx_b64,
            last_valid_block_height=int(height) if height is not None else None,
        )

    async def reference_price(self, mint: str, decimals: int, quote_mint: str, quote_decimals: int) -> float:
        """Price of one whole token, in quote currency, from a 1-token sell quote."""
        quote = await self.get_quote(mint, quote_mint, 10 ** decimals)
        return quote.out_amount / 10 ** quote_decimals


def parse_quote(body: Dict[str, Any]) -> Quote:
    try:
        out_amount = int(body.get("outAmount") or 0)
        in_amount = int(body.get("inAmount") or 0)
        impact = float(body.get("priceImpactPct") or 0) * 100
    except (TypeError, ValueError) as e:
        raise QuoteError(f"Malformed quote: {e}", status=200) from e
    if out_amount <= 0:
        raise NoRouteError("Quote returned zero output", status=200, code="ZERO_OUTPUT")
    return Quote(
        input_mint=body.get("inputMint", ""),
        output_mint=body.get("outputMint", ""),
        in_amount=in_amount,
        out_amount=out_amount,
        price_impact_pct=impact,
        raw=body,
    )


def _safe_json(resp: aiohttp.ClientResponse, text: str) -> Any:
    try:
        return json.loads(text) if text else None
    except ValueError:
        logger.debug(f"[JUPITER] Non-JSON response ({resp.status}): {text[:120]}")
        return None
