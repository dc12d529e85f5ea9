import json
from unittest.mock import AsyncMock

import pytest

from tradebot.errors import NoRouteError, QuoteError, SwapBuildError
from tradebot.jupiter import JupiterClient
from tradebot.models import Quote

USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
MINT = "TokenMint111111111111111111111111111111111"


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._text = body if isinstance(body, str) else json.dumps(body)

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self, method, url, kwargs):
        self.requests.append((method, url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)


def quote_body(out_amount="2500000", impact="0.006"):
    return {
        "inputMint": USDC,
        "outputMint": MINT,
        "inAmount": "100000000",
        "outAmount": out_amount,
        "priceImpactPct": impact,
    }


def make_client(responses):
    session = FakeSession(responses)
    client = JupiterClient(session, base_url="https://jup.test/v6", slippage_bps=50, attempts=3)
    client.retry.sleep = AsyncMock()
    return client, session


@pytest.mark.asyncio
async def test_quote_parses_amounts_and_impact_percent():
    client, session = make_client([FakeResponse(200, quote_body())])
    quote = await client.get_quote(USDC, MINT, 100_000_000)

    assert quote.in_amount == 100_000_000
    assert quote.out_amount == 2_500_000
    assert quote.price_impact_pct == pytest.approx(0.6)
    method, url, kwargs = session.requests[0]
    assert url == "https://jup.test/v6/quote"
    assert kwargs["params"]["slippageBps"] == "50"
    assert kwargs["params"]["amount"] == "100000000"


@pytest.mark.asyncio
async def test_no_route_is_classified_and_not_retried():
    body = {"error": "Could not find any route", "errorCode": "COULD_NOT_FIND_ANY_ROUTE"}
    client, session = make_client([FakeResponse(400, body)])

    with pytest.raises(NoRouteError) as info:
        await client.get_quote(USDC, MINT, 100)
    assert info.value.code == "COULD_NOT_FIND_ANY_ROUTE"
    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_zero_output_counts_as_no_route():
    client, _ = make_client([FakeResponse(200, quote_body(out_amount="0"))])
    with pytest.raises(NoRouteError):
        await client.get_quote(USDC, MINT, 100)


@pytest.mark.asyncio
async def test_rate_limit_and_server_errors_are_retried():
    client, session = make_client(
        [FakeResponse(429, "slow down"), FakeResponse(502, "bad gateway"), FakeResponse(200, quote_body())]
    )
    quote = await client.get_quote(USDC, MINT, 100_000_000)
    assert quote.out_amount == 2_500_000
    assert len(session.requests) == 3


@pytest.mark.asyncio
async def test_client_error_status_is_not_retried():
    client, session = make_client([FakeResponse(400, {"error": "bad amount"})])
    with pytest.raises(QuoteError):
        await client.get_quote(USDC, MINT, -1)
    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_swap_build_posts_quote_response():
    raw = quote_body()
    client, session = make_client(
        [FakeResponse(200, {"swapTransaction": "AAAA", "lastValidBlockHeight": 123456})]
    )
    quote = Quote(USDC, MINT, 100_000_000, 2_500_000, 0.6, raw=raw)
    swap = await client.get_swap_transaction(quote, "Wallet111")

    assert swap.transaction_b64 == "AAAA"
    assert swap.last_valid_block_height == 123456
    method, url, kwargs = session.requests[0]
    assert method == "POST"
    assert url == "https://jup.test/v6/swap"
    assert kwargs["json"]["quoteResponse"] == raw
    assert kwargs["json"]["userPublicKey"] == "Wallet111"
    assert kwargs["json"]["wrapAndUnwrapSol"] is True


@pytest.mark.asyncio
async def test_swap_build_without_transaction_fails():
    client, _ = make_client([FakeResponse(200, {"foo": "bar"})])
    quote = Quote(USDC, MINT, 1, 1, 0.0, raw={})
    with pytest.raises(SwapBuildError):
        await client.get_swap_transaction(quote, "Wallet111")


@pytest.mark.asyncio
async def test_reference_price_quotes_one_whole_token():
    body = {"inputMint": MINT, "outputMint": USDC, "inAmount": "1000000000", "outAmount": "250000", "priceImpactPct": "0"}
    client, session = make_client([FakeResponse(200, body)])

    price = await client.reference_price(MINT, 9, USDC, 6)

    assert price == pytest.approx(0.25)
    assert session.requests[0][2]["params"]["amount"] == str(10 ** 9)
