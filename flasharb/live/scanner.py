"""Opportunity scanner: prices cyclic paths hop by hop against the quote service.

Each hop sells the previous hop's output, so the final amount already
includes every hop's slippage. Paths whose quotes fail are skipped; a scan
never raises because of one path.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

import msgspec
import structlog

from flasharb.core.types import (
    ArbitragePath,
    Opportunity,
    PriceImpactProbe,
    Strategy,
    SwapQuote,
    Token,
)
from flasharb.dex.tokens import FALLBACK_USD_PRICES, get_token
from flasharb.dex.zerox import ZeroXQuoteClient
from flasharb.utils.rate_limiter import AdaptiveRateLimiter

if TYPE_CHECKING:
    from flasharb.config import ArbSettings
    from flasharb.core.cache import CacheManager

log = structlog.get_logger()

CONFIDENCE: dict[Strategy, float] = {
    Strategy.ROUND_TRIP: 0.8,
    Strategy.ALTERNATIVE: 0.8,
    Strategy.TRIANGULAR: 0.75,
    Strategy.PRICE_IMPACT: 0.7,
    Strategy.LARGE_AMOUNT: 0.8,
}

# Share of a measured price impact assumed to be capturable
PRICE_IMPACT_CAPTURE = 0.6


class OpportunityScanner:
    """Finds profitable cycles among configured paths."""

    def __init__(
        self,
        quotes: ZeroXQuoteClient,
        cache: CacheManager,
        settings: ArbSettings,
        *,
        limiter: AdaptiveRateLimiter | None = None,
    ) -> None:
        """Initialize scanner.

        Args:
            quotes: Quote client for prices and executable quotes
            cache: Shared cache for USD prices and short-lived quotes
            settings: Thresholds, pacing and cache TTLs
            limiter: Pacer between quote-service calls (defaults to one call
                per ``inter_call_delay_seconds``)
        """
        self.quotes = quotes
        self.cache = cache
        self.settings = settings
        self.limiter = limiter or AdaptiveRateLimiter(
            max_requests=1,
            time_window=settings.inter_call_delay_seconds,
            name="quote-service",
        )
        self.paths_scanned = 0
        self.paths_skipped = 0

    def threshold_for(self, path: ArbitragePath) -> float:
        """Minimum profit percent a path must exceed to be reported."""
        match path.kind:
            case Strategy.TRIANGULAR:
                return self.settings.min_profit_percent_triangular
            case Strategy.ALTERNATIVE:
                return self.settings.min_profit_percent_alternative
            case Strategy.LARGE_AMOUNT:
                return self.settings.min_profit_percent_large_amount
            case _:
                if path.volatile:
                    return self.settings.min_profit_percent_volatile
                return self.settings.profit_profile().min_profit_percent_stable

    async def scan(self, paths: Iterable[ArbitragePath]) -> list[Opportunity]:
        """Price every path; returns the ones above their threshold."""
        opportunities: list[Opportunity] = []
        for path in paths:
            self.paths_scanned += 1
            try:
                opportunity = await self.evaluate(path)
            except Exception as e:
                self.paths_skipped += 1
                log.warning("scanner.path_error", path=path.name, error=str(e))
                continue
            if opportunity is not None:
                opportunities.append(opportunity)

        log.info(
            "scanner.scan_complete",
            opportunities=len(opportunities),
            total_paths=self.paths_scanned,
            total_skipped=self.paths_skipped,
        )
        return opportunities

    async def evaluate(self, path: ArbitragePath) -> Opportunity | None:
        """Quote each hop in sequence and apply the path's threshold."""
        amount = path.borrow_amount
        legs: list[SwapQuote] = []
        for sell, buy in path.hops():
            quote = await self._quote(sell, buy, amount)
            if quote is None:
                self.paths_skipped += 1
                log.info("scanner.path_skipped", path=path.name, hop=f"{sell.symbol}->{buy.symbol}")
                return None
            legs.append(quote)
            amount = quote.output_amount

        initial = path.borrow_amount
        final = amount
        profit = final - initial
        if profit <= 0:
            log.debug("scanner.unprofitable", path=path.name, initial=initial, final=final)
            return None

        profit_percent = profit / initial * 100
        threshold = self.threshold_for(path)
        if profit_percent <= threshold:
            log.debug(
                "scanner.below_threshold",
                path=path.name,
                profit_percent=profit_percent,
                threshold=threshold,
            )
            return None

        usd_price = await self.usd_price(path.origin)
        estimated_profit_usd = path.origin.whole(initial) * usd_price * profit_percent / 100

        opportunity = Opportunity(
            path=path,
            strategy=path.kind,
            profit_percent=profit_percent,
            estimated_profit_usd=estimated_profit_usd,
            confidence=CONFIDENCE[path.kind],
            initial_amount=initial,
            final_amount=final,
            legs=tuple(legs),
        )
        log.info(
            "scanner.opportunity",
            path=path.name,
            strategy=opportunity.strategy,
            profit_percent=round(profit_percent, 4),
            estimated_profit_usd=round(estimated_profit_usd, 2),
        )
        return opportunity

    async def detect_price_impact(self, probes: Iterable[PriceImpactProbe]) -> list[Opportunity]:
        """Compare small vs large trade rates on one pair.

        Reported opportunities are informational: they carry no legs and are
        never executed.
        """
        opportunities: list[Opportunity] = []
        for probe in probes:
            small_out = await self._price(probe.sell.address, probe.buy.address, probe.small_amount)
            large_out = await self._price(probe.sell.address, probe.buy.address, probe.large_amount)
            if small_out is None or large_out is None:
                log.info("scanner.probe_skipped", pair=f"{probe.sell.symbol}->{probe.buy.symbol}")
                continue

            small_rate = small_out / probe.small_amount
            large_rate = large_out / probe.large_amount
            if small_rate <= 0:
                continue

            impact = abs(large_rate - small_rate) / small_rate
            if impact * 100 <= self.settings.min_price_impact_percent:
                continue

            captured = impact * PRICE_IMPACT_CAPTURE
            usd_price = await self.usd_price(probe.sell)
            path = ArbitragePath(
                name=f"{probe.sell.symbol}->{probe.buy.symbol}",
                tokens=(probe.sell, probe.buy),
                borrow_amount=probe.large_amount,
                strategy=Strategy.PRICE_IMPACT,
            )
            opportunities.append(
                Opportunity(
                    path=path,
                    strategy=Strategy.PRICE_IMPACT,
                    profit_percent=captured * 100,
                    estimated_profit_usd=probe.sell.whole(probe.large_amount) * usd_price * captured,
                    confidence=CONFIDENCE[Strategy.PRICE_IMPACT],
                    initial_amount=probe.large_amount,
                    final_amount=probe.large_amount + int(probe.large_amount * captured),
                )
            )
            log.info(
                "scanner.price_impact",
                pair=path.name,
                impact_percent=round(impact * 100, 4),
            )
        return opportunities

    async def sized_paths(
        self,
        pairs: Iterable[tuple[Token, Token]],
        usd_sizes: Sequence[float],
    ) -> list[ArbitragePath]:
        """Round trips for every pair at every USD notional.

        Each origin token is priced once per call. Pairs whose origin has no
        usable USD price are left out.

        Example:
            >>> paths = await scanner.sized_paths([(USDC, WETH)], [5_000.0, 25_000.0])
            >>> opportunities = await scanner.scan(paths)
        """
        prices: dict[str, float] = {}
        paths: list[ArbitragePath] = []
        for usd in usd_sizes:
            label = f"{usd / 1000:g}K USD"
            for origin, via in pairs:
                price = prices.get(origin.address)
                if price is None:
                    price = prices[origin.address] = await self.usd_price(origin)
                if price <= 0:
                    log.info("scanner.sized_path_unpriced", token=origin.symbol, usd=usd)
                    continue
                amount = origin.units(usd / price)
                if amount <= 0:
                    continue
                paths.append(
                    ArbitragePath(
                        name=f"{label} {origin.symbol}->{via.symbol}->{origin.symbol}",
                        tokens=(origin, via),
                        borrow_amount=amount,
                        strategy=Strategy.LARGE_AMOUNT,
                    )
                )
        return paths

    async def usd_price(self, token: Token) -> float:
        """USD value of one whole ``token``.

        Cached under ``price:<address>``. The static fallback table is used
        only when the reference quote fails, and is never cached.
        """
        cached = await self.cache.get_price_usd(token.address)
        if cached is not None:
            return cached

        reference = self.settings.usd_reference_token
        if token.address.lower() == reference.lower():
            return 1.0

        reference_token = get_token(reference)
        reference_decimals = reference_token.decimals if reference_token else 6

        out = await self._price(token.address, reference, 10**token.decimals)
        if out is not None:
            price = out / 10**reference_decimals
            await self.cache.set_price_usd(token.address, price, self.settings.cache_ttl_seconds)
            return price

        fallback = FALLBACK_USD_PRICES.get(token.address.lower(), 0.0)
        log.warning("scanner.usd_price_fallback", token=token.symbol, price=fallback)
        return fallback

    @staticmethod
    def best(opportunities: Sequence[Opportunity]) -> Opportunity | None:
        """Highest profit percent, or None for an empty list."""
        if not opportunities:
            return None
        return max(opportunities, key=lambda o: o.profit_percent)

    async def _quote(self, sell: Token, buy: Token, amount: int) -> SwapQuote | None:
        key = f"quote:{sell.address.lower()}:{buy.address.lower()}:{amount}"
        cached = await self.cache.get(key)
        if cached is not None:
            try:
                return msgspec.convert(cached, SwapQuote)
            except msgspec.ValidationError as e:
                log.debug("scanner.bad_cached_quote", key=key, error=str(e))

        async with self.limiter:
            quote = await self.quotes.get_quote(sell.address, buy.address, amount)
        if quote is not None:
            await self.cache.set(key, quote, self.settings.quote_cache_ttl_seconds)
        return quote

    async def _price(self, sell: str, buy: str, amount: int) -> int | None:
        async with self.limiter:
            return await self.quotes.get_price(sell, buy, amount)
