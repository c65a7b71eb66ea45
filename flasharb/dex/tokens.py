"""Mainnet token registry and the default path sets scanned each cycle."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flasharb.core.types import ArbitragePath, PriceImpactProbe, Strategy, Token

if TYPE_CHECKING:
    from flasharb.config import ArbSettings

USDC = Token(symbol="USDC", address="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", decimals=6)
USDT = Token(symbol="USDT", address="0xdAC17F958D2ee523a2206206994597C13D831ec7", decimals=6)
DAI = Token(symbol="DAI", address="0x6B175474E89094C44Da98b954EedeAC495271d0F", decimals=18)
WETH = Token(symbol="WETH", address="0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", decimals=18)
WBTC = Token(symbol="WBTC", address="0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", decimals=8)
LINK = Token(symbol="LINK", address="0x514910771AF9Ca656af840dff83E8264EcF986CA", decimals=18)
UNI = Token(symbol="UNI", address="0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", decimals=18)
AAVE = Token(symbol="AAVE", address="0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9", decimals=18)
PEPE = Token(symbol="PEPE", address="0x6982508145454Ce325dDbE47a25d4ec3d2311933", decimals=18, volatile=True)
SHIB = Token(symbol="SHIB", address="0x95aD61b0a150d79219dCF64E1E6Cc01f0B64C4cE", decimals=18, volatile=True)

TOKENS: dict[str, Token] = {
    t.symbol: t for t in (USDC, USDT, DAI, WETH, WBTC, LINK, UNI, AAVE, PEPE, SHIB)
}

# Used only when the USD reference quote cannot be obtained
FALLBACK_USD_PRICES: dict[str, float] = {
    USDC.address.lower(): 1.0,
    DAI.address.lower(): 1.0,
    USDT.address.lower(): 1.0,
    WETH.address.lower(): 3000.0,
    WBTC.address.lower(): 60000.0,
}


def get_token(symbol_or_address: str) -> Token | None:
    """Look a token up by symbol or by address (case-insensitive)."""
    token = TOKENS.get(symbol_or_address.upper())
    if token is not None:
        return token
    needle = symbol_or_address.lower()
    for candidate in TOKENS.values():
        if candidate.address.lower() == needle:
            return candidate
    return None


def _round_trip(origin: Token, via: Token, amount: int, strategy: Strategy | None = None) -> ArbitragePath:
    return ArbitragePath(
        name=f"{origin.symbol}->{via.symbol}->{origin.symbol}",
        tokens=(origin, via),
        borrow_amount=amount,
        strategy=strategy,
    )


def _triangle(a: Token, b: Token, c: Token, amount: int) -> ArbitragePath:
    return ArbitragePath(
        name=f"{a.symbol}->{b.symbol}->{c.symbol}->{a.symbol}",
        tokens=(a, b, c),
        borrow_amount=amount,
    )


def default_paths(settings: ArbSettings | None = None) -> list[ArbitragePath]:
    """Round trips, alternative-token round trips and efficient triangles.

    Borrow sizes are 10k for stablecoin origins and 3 WETH for WETH origins.
    Volatile meme-token round trips are included; they are judged against the
    volatile threshold by the scanner.
    """
    usdc_10k = USDC.units(10_000)
    dai_10k = DAI.units(10_000)
    weth_3 = WETH.units(3)

    paths = [
        _round_trip(USDC, WETH, usdc_10k),
        _round_trip(USDC, DAI, usdc_10k),
        _round_trip(USDC, USDT, usdc_10k),
        _round_trip(USDC, PEPE, usdc_10k),
        _round_trip(USDC, SHIB, usdc_10k),
        _round_trip(DAI, WETH, dai_10k),
        _round_trip(DAI, USDC, dai_10k),
        _round_trip(PEPE, SHIB, PEPE.units(100_000_000)),
        _round_trip(USDC, LINK, usdc_10k, Strategy.ALTERNATIVE),
        _round_trip(USDC, UNI, usdc_10k, Strategy.ALTERNATIVE),
        _round_trip(USDC, AAVE, usdc_10k, Strategy.ALTERNATIVE),
        _round_trip(WETH, LINK, weth_3, Strategy.ALTERNATIVE),
        _round_trip(WETH, UNI, weth_3, Strategy.ALTERNATIVE),
        _triangle(USDC, WETH, WBTC, usdc_10k),
        _triangle(USDC, WETH, DAI, usdc_10k),
        _triangle(USDC, WBTC, WETH, usdc_10k),
        _triangle(WETH, USDC, DAI, weth_3),
        _triangle(WETH, USDT, USDC, weth_3),
        _triangle(USDC, LINK, WETH, usdc_10k),
        _triangle(USDC, UNI, WETH, usdc_10k),
    ]
    if settings is not None and settings.is_fork:
        # Local forks price plain round trips without meme tokens only
        return [p for p in paths if not p.volatile and p.kind == Strategy.ROUND_TRIP]
    return paths


def default_sized_pairs(settings: ArbSettings | None = None) -> list[tuple[Token, Token]]:
    """Deep-liquidity pairs re-sized from USD notionals each cycle; none on forks."""
    if settings is not None and settings.is_fork:
        return []
    return [(USDC, WETH), (USDC, WBTC), (USDC, DAI), (WETH, USDT)]


def default_impact_probes() -> list[PriceImpactProbe]:
    """Consecutive size pairs for USDC->WETH and WETH->USDC."""
    usdc_sizes = [USDC.units(100_000), USDC.units(500_000), USDC.units(1_000_000)]
    weth_sizes = [WETH.units(50), WETH.units(100)]
    probes = [
        PriceImpactProbe(sell=USDC, buy=WETH, small_amount=small, large_amount=large)
        for small, large in zip(usdc_sizes, usdc_sizes[1:])
    ]
    probes.extend(
        PriceImpactProbe(sell=WETH, buy=USDC, small_amount=small, large_amount=large)
        for small, large in zip(weth_sizes, weth_sizes[1:])
    )
    return probes
