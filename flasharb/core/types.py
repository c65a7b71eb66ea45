"""Shared domain types for the arbitrage pipeline.

Everything that crosses a component boundary is an immutable msgspec.Struct
so it can be cached (msgspec.to_builtins / msgspec.convert) and logged
without copying.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import msgspec

# Type aliases using PEP 695 syntax
type Address = str
type Wei = int
type Gwei = float
type BlockNumber = int


class Strategy(StrEnum):
    """Arbitrage strategy that produced an opportunity."""

    ROUND_TRIP = "round_trip"
    TRIANGULAR = "triangular"
    ALTERNATIVE = "alternative"
    PRICE_IMPACT = "price_impact"
    LARGE_AMOUNT = "large_amount"


class FailureKind(StrEnum):
    """Why a submission did not end in a successful inclusion."""

    UNTRUSTED_TARGET = "untrusted_target"
    INSUFFICIENT_PROFIT = "insufficient_profit"
    SWAP_FAILED = "swap_failed"
    REVERTED = "reverted"
    PAUSED = "paused"
    NOT_OWNER = "not_owner"
    RELAY_ERROR = "relay_error"
    TIMEOUT = "timeout"
    BUILD_FAILED = "build_failed"
    FEE_UNACCEPTABLE = "fee_unacceptable"
    NOT_EXECUTABLE = "not_executable"


class Token(msgspec.Struct, frozen=True, kw_only=True):
    """ERC-20 token identity.

    Attributes:
        symbol: Display symbol ("USDC")
        address: Checksummed contract address
        decimals: Token decimals
        volatile: True for meme tokens judged against the volatile threshold
    """

    symbol: str
    address: Address
    decimals: int
    volatile: bool = False

    def units(self, amount: float) -> int:
        """Convert a whole-token amount to base units."""
        return int(amount * 10**self.decimals)

    def whole(self, units: int) -> float:
        """Convert base units to a whole-token amount."""
        return units / 10**self.decimals


class SwapQuote(msgspec.Struct, frozen=True, kw_only=True):
    """Executable swap quote for a single hop.

    Attributes:
        sell_token: Address sold
        buy_token: Address bought
        sell_amount: Input amount in base units
        output_amount: Output amount in base units (always > 0)
        call_data: Swap calldata to forward to the target
        target_address: Contract the calldata must be sent to
    """

    sell_token: Address
    buy_token: Address
    sell_amount: int
    output_amount: int
    call_data: bytes
    target_address: Address


class ArbitragePath(msgspec.Struct, frozen=True, kw_only=True):
    """Cyclic token sequence priced by the scanner.

    The cycle implicitly closes back to ``tokens[0]``: two tokens form a
    round trip, three form a triangle.
    """

    name: str
    tokens: tuple[Token, ...]
    borrow_amount: int
    strategy: Strategy | None = None

    def __post_init__(self) -> None:
        if len(self.tokens) < 2:
            msg = f"Path {self.name} needs at least two tokens"
            raise ValueError(msg)
        if self.borrow_amount <= 0:
            msg = f"Path {self.name} needs a positive borrow amount"
            raise ValueError(msg)

    @property
    def kind(self) -> Strategy:
        """Strategy implied by the path shape unless set explicitly."""
        if self.strategy is not None:
            return self.strategy
        if len(self.tokens) == 3:
            return Strategy.TRIANGULAR
        return Strategy.ROUND_TRIP

    @property
    def origin(self) -> Token:
        return self.tokens[0]

    @property
    def volatile(self) -> bool:
        return any(t.volatile for t in self.tokens)

    def hops(self) -> list[tuple[Token, Token]]:
        """Consecutive (sell, buy) pairs, closing the cycle."""
        cycle = (*self.tokens, self.tokens[0])
        return list(zip(cycle[:-1], cycle[1:], strict=True))


class PriceImpactProbe(msgspec.Struct, frozen=True, kw_only=True):
    """Small/large probe pair used to detect price impact on one pair."""

    sell: Token
    buy: Token
    small_amount: int
    large_amount: int


class Opportunity(msgspec.Struct, frozen=True, kw_only=True):
    """A priced arbitrage candidate.

    Attributes:
        path: Path that was priced
        strategy: Strategy that detected it
        profit_percent: (final - initial) / initial * 100
        estimated_profit_usd: Profit valued with the USD reference
        confidence: Heuristic confidence in [0, 1]
        initial_amount: Borrowed amount in origin base units
        final_amount: Amount returned by the last hop
        legs: Executable quote for every hop, in order
    """

    path: ArbitragePath
    strategy: Strategy
    profit_percent: float
    estimated_profit_usd: float
    confidence: float
    initial_amount: int
    final_amount: int
    legs: tuple[SwapQuote, ...] = ()

    @property
    def executable(self) -> bool:
        return bool(self.legs) and self.strategy != Strategy.PRICE_IMPACT

    @property
    def profit_amount(self) -> int:
        return self.final_amount - self.initial_amount


class FeeSample(msgspec.Struct, frozen=True, kw_only=True):
    """Base fee observed for one block."""

    block_number: BlockNumber
    base_fee_gwei: Gwei


class FeeBid(msgspec.Struct, frozen=True, kw_only=True):
    """EIP-1559 fee bid in wei plus the acceptability verdict."""

    max_fee_per_gas: Wei
    max_priority_fee_per_gas: Wei
    acceptable: bool
    ceiling_gwei: Gwei


class Bundle(msgspec.Struct, frozen=True, kw_only=True):
    """Signed, ordered transactions targeting one block."""

    signed_transactions: tuple[str, ...]
    tx_hashes: tuple[str, ...]
    target_block: BlockNumber
    nonce: int


class CacheEntry(msgspec.Struct, kw_only=True):
    """Cached value with its write time and lifetime in milliseconds."""

    data: Any
    written_at_ms: int
    ttl_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms - self.written_at_ms > self.ttl_ms


class ExecutionResult(msgspec.Struct, frozen=True, kw_only=True):
    """Outcome of one submission attempt.

    Attributes:
        success: True only when the arbitrage transaction was included and succeeded
        handle: Bundle hash or public transaction hash
        via: Relay name or "public"
        failure: Failure category when not successful
        error: Human readable error detail
        tx_hashes: Hashes of the signed transactions
        included_block: Block that included the arbitrage transaction
        simulation_error: Advisory simulation failure, if any
    """

    success: bool
    handle: str | None = None
    via: str | None = None
    failure: FailureKind | None = None
    error: str | None = None
    tx_hashes: tuple[str, ...] = ()
    included_block: BlockNumber | None = None
    simulation_error: str | None = None
