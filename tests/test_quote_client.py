"""Tests for the 0x price/quote client using an in-process HTTP transport."""

import httpx
import pytest

from flasharb.dex.zerox import PRICE_PATH, QUOTE_PATH, ZeroXQuoteClient

SELL = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
BUY = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
TAKER = "0x00000000000000000000000000000000000000aa"
TARGET = "0xdef1c0ded9bec7f1a1670819833240f027b25eff"


def _client(handler, **kwargs) -> ZeroXQuoteClient:
    transport = httpx.MockTransport(handler)
    return ZeroXQuoteClient(
        api_key="test-key",
        taker=TAKER,
        slippage_percent=1.0,
        client=httpx.AsyncClient(transport=transport),
        **kwargs,
    )


def _responder(price: dict | None, quote: dict | None, seen: list[httpx.Request] | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == PRICE_PATH:
            if price is None:
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json=price)
        if request.url.path == QUOTE_PATH:
            if quote is None:
                return httpx.Response(400, json={"reason": "no route"})
            return httpx.Response(200, json=quote)
        return httpx.Response(404)

    return handler


@pytest.mark.asyncio
async def test_get_quote_reads_nested_transaction() -> None:
    seen: list[httpx.Request] = []
    client = _client(
        _responder(
            {"buyAmount": "1005"},
            {"buyAmount": "1004", "transaction": {"to": TARGET, "data": "0xabcd"}},
            seen,
        )
    )

    quote = await client.get_quote(SELL, BUY, 1000)

    assert quote is not None
    assert quote.output_amount == 1004
    assert quote.call_data == b"\xab\xcd"
    assert quote.target_address == TARGET
    assert quote.sell_amount == 1000

    price_request, quote_request = seen
    assert price_request.url.path == PRICE_PATH
    assert "taker" not in price_request.url.params
    assert quote_request.url.params["taker"] == TAKER
    assert quote_request.url.params["slippagePercentage"] == "0.01"
    assert quote_request.url.params["sellAmount"] == "1000"
    assert quote_request.url.params["chainId"] == "1"
    assert quote_request.headers["0x-api-key"] == "test-key"
    assert quote_request.headers["0x-version"] == "v2"
    await client.close()


@pytest.mark.asyncio
async def test_get_quote_accepts_top_level_call_fields() -> None:
    client = _client(
        _responder({"buyAmount": 2000}, {"buyAmount": 1999, "to": TARGET, "data": "0x01"})
    )

    quote = await client.get_quote(SELL, BUY, 1000)

    assert quote is not None
    assert quote.call_data == b"\x01"
    assert quote.output_amount == 1999


@pytest.mark.asyncio
async def test_get_quote_falls_back_to_indicative_amount() -> None:
    client = _client(
        _responder({"buyAmount": "1500"}, {"transaction": {"to": TARGET, "data": "0x02"}})
    )

    quote = await client.get_quote(SELL, BUY, 1000)

    assert quote is not None
    assert quote.output_amount == 1500


@pytest.mark.asyncio
async def test_failed_price_call_skips_quote_call() -> None:
    seen: list[httpx.Request] = []
    client = _client(_responder(None, {"buyAmount": "1", "to": TARGET, "data": "0x01"}, seen))

    assert await client.get_quote(SELL, BUY, 1000) is None
    assert len(seen) == 1
    assert client.get_stats()["failed"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "quote_payload",
    [
        None,
        {"buyAmount": "0", "transaction": {"to": TARGET, "data": "0x01"}},
        {"buyAmount": "-5", "transaction": {"to": TARGET, "data": "0x01"}},
        {"buyAmount": "100", "transaction": {"to": TARGET}},
        {"buyAmount": "100", "transaction": {"data": "0x01"}},
        {"buyAmount": "100", "transaction": {"to": TARGET, "data": "0x"}},
        {"buyAmount": "abc", "transaction": {"to": TARGET, "data": "0x01"}},
    ],
)
async def test_unusable_quotes_are_absent(quote_payload: dict | None) -> None:
    client = _client(_responder({"buyAmount": "0"}, quote_payload))
    assert await client.get_quote(SELL, BUY, 1000) is None


@pytest.mark.asyncio
async def test_transport_errors_are_absent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    client = _client(handler)

    assert await client.get_quote(SELL, BUY, 1000) is None
    assert await client.get_price(SELL, BUY, 1000) is None


@pytest.mark.asyncio
async def test_get_price_parses_string_amounts() -> None:
    client = _client(_responder({"buyAmount": "3500000000"}, None))
    assert await client.get_price(SELL, BUY, 10**18) == 3_500_000_000


@pytest.mark.asyncio
async def test_get_price_rejects_malformed_json() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"not json")

    client = _client(handler)

    assert await client.get_price(SELL, BUY, 1000) is None


@pytest.mark.asyncio
async def test_non_positive_sell_amount_makes_no_request() -> None:
    seen: list[httpx.Request] = []
    client = _client(_responder({"buyAmount": "1"}, None, seen))

    assert await client.get_price(SELL, BUY, 0) is None
    assert await client.get_quote(SELL, BUY, -1) is None
    assert seen == []
