"""0x Swap API v2 client for indicative prices and executable quotes.

A quote is a two-step exchange: an indicative ``/price`` call followed by a
binding ``/quote`` call that carries the taker, slippage and swap calldata.
Every failure collapses to ``None``; callers never see transport errors.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from flasharb.core.types import SwapQuote

log = structlog.get_logger()

PRICE_PATH = "/swap/permit2/price"
QUOTE_PATH = "/swap/permit2/quote"


def _as_int(value: Any) -> int | None:
    """Parse an integer amount that may be encoded as a decimal string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_bytes(value: Any) -> bytes | None:
    if not isinstance(value, str) or not value:
        return None
    hex_data = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        data = bytes.fromhex(hex_data)
    except ValueError:
        return None
    return data or None


class ZeroXQuoteClient:
    """Async client for the 0x permit2 price/quote endpoints.

    Example:
        >>> client = ZeroXQuoteClient(api_key="...", taker=settlement_address)
        >>> quote = await client.get_quote(USDC.address, WETH.address, 10_000 * 10**6)
        >>> quote.output_amount if quote else None
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        taker: str | None = None,
        chain_id: int = 1,
        base_url: str = "https://api.0x.org",
        slippage_percent: float = 1.0,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize quote client.

        Args:
            api_key: 0x API key sent as ``0x-api-key``
            taker: Address that will execute the swaps (the settlement contract)
            chain_id: Chain to quote on
            base_url: API root
            slippage_percent: Allowed slippage in percent (1.0 == 1%)
            timeout_seconds: Per-request timeout
            client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        self.api_key = api_key
        self.taker = taker
        self.chain_id = chain_id
        self.base_url = base_url.rstrip("/")
        self.slippage_percent = slippage_percent
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

        self.stats = {
            "requests": 0,
            "success": 0,
            "failed": 0,
        }

    @classmethod
    def from_settings(cls, settings, client: httpx.AsyncClient | None = None) -> ZeroXQuoteClient:
        api_key = settings.zx_api_key.get_secret_value() if settings.zx_api_key else None
        return cls(
            api_key=api_key,
            taker=settings.settlement_address,
            chain_id=settings.chain_id,
            base_url=settings.zx_base_url,
            slippage_percent=settings.max_slippage_percent,
            timeout_seconds=settings.quote_timeout_seconds,
            client=client,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"0x-version": "v2"}
        if self.api_key:
            headers["0x-api-key"] = self.api_key
        return headers

    def _base_params(self, sell_token: str, buy_token: str, sell_amount: int) -> dict[str, str]:
        return {
            "chainId": str(self.chain_id),
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmount": str(int(sell_amount)),
        }

    async def _fetch(self, path: str, params: dict[str, str]) -> dict[str, Any] | None:
        """GET ``path``; returns the decoded JSON object or None on any failure."""
        self.stats["requests"] += 1
        try:
            response = await self.client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            self.stats["failed"] += 1
            log.warning("zerox.request_error", path=path, error=str(e))
            return None

        if response.status_code != 200:
            self.stats["failed"] += 1
            log.warning(
                "zerox.bad_status",
                path=path,
                status=response.status_code,
                response=response.text[:200],
            )
            return None

        try:
            data = response.json()
        except ValueError as e:
            self.stats["failed"] += 1
            log.warning("zerox.malformed_json", path=path, error=str(e))
            return None

        if not isinstance(data, dict):
            self.stats["failed"] += 1
            log.warning("zerox.malformed_payload", path=path)
            return None

        self.stats["success"] += 1
        return data

    async def get_price(self, sell_token: str, buy_token: str, sell_amount: int) -> int | None:
        """Indicative output amount for selling ``sell_amount`` of ``sell_token``.

        Returns:
            Output amount in ``buy_token`` base units, or None if unavailable
        """
        if sell_amount <= 0:
            return None
        data = await self._fetch(PRICE_PATH, self._base_params(sell_token, buy_token, sell_amount))
        if data is None:
            return None
        amount = _as_int(data.get("buyAmount"))
        if amount is None or amount <= 0:
            log.debug("zerox.no_liquidity", sell_token=sell_token, buy_token=buy_token)
            return None
        return amount

    async def get_quote(self, sell_token: str, buy_token: str, sell_amount: int) -> SwapQuote | None:
        """Executable quote for one hop.

        Returns:
            SwapQuote with a positive output amount and calldata, or None
        """
        if sell_amount <= 0:
            return None

        params = self._base_params(sell_token, buy_token, sell_amount)
        price = await self._fetch(PRICE_PATH, params)
        if price is None:
            return None

        quote_params = dict(params)
        quote_params["slippagePercentage"] = str(self.slippage_percent / 100)
        if self.taker:
            quote_params["taker"] = self.taker

        quote = await self._fetch(QUOTE_PATH, quote_params)
        if quote is None:
            return None

        parsed = self._parse_quote(sell_token, buy_token, sell_amount, price, quote)
        if parsed is None:
            log.warning("zerox.unusable_quote", sell_token=sell_token, buy_token=buy_token)
            return None

        log.debug(
            "zerox.quote_received",
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=sell_amount,
            output_amount=parsed.output_amount,
            target=parsed.target_address,
        )
        return parsed

    def _parse_quote(
        self,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        price: dict[str, Any],
        quote: dict[str, Any],
    ) -> SwapQuote | None:
        # v2 nests the call under "transaction"; v1 put data/to at the top level
        transaction = quote.get("transaction")
        if not isinstance(transaction, dict):
            transaction = {}

        call_data = _as_bytes(transaction.get("data")) or _as_bytes(quote.get("data"))
        target = transaction.get("to") or quote.get("to")

        output = _as_int(quote.get("buyAmount"))
        if output is None:
            output = _as_int(price.get("buyAmount"))

        if call_data is None or not isinstance(target, str) or not target:
            return None
        if output is None or output <= 0:
            return None

        return SwapQuote(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=int(sell_amount),
            output_amount=output,
            call_data=call_data,
            target_address=target,
        )

    def get_stats(self) -> dict[str, int]:
        return dict(self.stats)

    async def close(self) -> None:
        await self.client.aclose()
