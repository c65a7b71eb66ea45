"""Statistical gas ceiling from recent base fees.

The ceiling is ``mean + k * stddev`` over a sliding window of base fees,
clamped to ``[floor, max]``. The window is re-fetched wholesale on every new
block height. No method here raises: failures degrade to the last good window
or to the configured maximum.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Any

import msgspec
import numpy as np
import structlog
from web3 import AsyncWeb3

from flasharb.core.types import FeeBid, FeeSample

if TYPE_CHECKING:
    from flasharb.config import ArbSettings
    from flasharb.core.cache import CacheManager

log = structlog.get_logger()

GWEI = 10**9
FEE_PERCENTILES = [25, 50, 75]
WINDOW_CACHE_KEY = "fee:window"


def to_wei(gwei: float) -> int:
    return int(round(gwei * GWEI))


class FeeEstimator:
    """Owns the base-fee window and derives fee bids from it."""

    def __init__(
        self,
        w3: AsyncWeb3,
        settings: ArbSettings,
        cache: CacheManager | None = None,
    ) -> None:
        self.w3 = w3
        self.settings = settings
        self.cache = cache
        self.window_size = settings.fee_window
        self._samples: deque[FeeSample] = deque(maxlen=self.window_size)
        self._last_block: int | None = None
        self.refresh_failures = 0

    @property
    def samples(self) -> list[FeeSample]:
        return list(self._samples)

    @property
    def last_block(self) -> int | None:
        return self._last_block

    async def refresh(self, block_number: int | None = None) -> bool:
        """Re-fetch the fee window if ``block_number`` is a new height.

        Returns:
            True when the window was replaced
        """
        try:
            if block_number is None:
                block_number = await self.w3.eth.block_number
            if self._last_block is not None and block_number <= self._last_block:
                return False

            history = await self.w3.eth.fee_history(self.window_size, "latest", FEE_PERCENTILES)
            samples = self._parse_history(history)
        except Exception as e:
            self.refresh_failures += 1
            log.warning(
                "fee_estimator.refresh_failed",
                block=block_number,
                failures=self.refresh_failures,
                error=str(e),
            )
            if not self._samples:
                await self.restore_from_cache()
            return False

        if not samples:
            log.warning("fee_estimator.empty_history", block=block_number)
            return False

        self._samples = deque(samples, maxlen=self.window_size)
        self._last_block = block_number
        self.refresh_failures = 0

        if self.cache is not None:
            await self.cache.set(
                WINDOW_CACHE_KEY,
                list(self._samples),
                ttl_seconds=self.settings.block_time_seconds * self.window_size,
            )

        log.debug(
            "fee_estimator.refreshed",
            block=block_number,
            samples=len(self._samples),
            ceiling_gwei=self.current_ceiling_gwei(),
        )
        return True

    def _parse_history(self, history: Any) -> list[FeeSample]:
        base_fees = history["baseFeePerGas"]
        oldest = int(history["oldestBlock"])
        return [
            FeeSample(block_number=oldest + offset, base_fee_gwei=int(fee) / GWEI)
            for offset, fee in enumerate(base_fees)
        ]

    async def restore_from_cache(self) -> bool:
        """Seed an empty window from a window cached by an earlier run."""
        if self.cache is None or self._samples:
            return False
        cached = await self.cache.get(WINDOW_CACHE_KEY)
        if not cached:
            return False
        try:
            samples = msgspec.convert(cached, list[FeeSample])
        except msgspec.ValidationError as e:
            log.warning("fee_estimator.bad_cached_window", error=str(e))
            return False
        self._samples = deque(samples, maxlen=self.window_size)
        log.info("fee_estimator.restored_from_cache", samples=len(self._samples))
        return True

    def current_ceiling_gwei(self) -> float:
        """Dynamic gas ceiling, always within ``[floor, max]``."""
        configured_max = self.settings.max_gas_price_gwei
        if not self.settings.dynamic_ceiling or not self._samples:
            return configured_max

        fees = np.fromiter((s.base_fee_gwei for s in self._samples), dtype=float)
        if not np.any(fees):
            return configured_max

        mean = float(np.mean(fees))
        std = float(np.std(fees))
        ceiling = mean + std * self.settings.ceiling_multiplier
        if not np.isfinite(ceiling):
            return configured_max
        return max(min(ceiling, configured_max), self.settings.floor_gas_price_gwei)

    def is_acceptable(self, gas_price_gwei: float) -> bool:
        return gas_price_gwei <= self.current_ceiling_gwei()

    async def optimal_fee_bid(self) -> FeeBid:
        """EIP-1559 bid capped at the ceiling.

        ``max_fee = min(2 * base + priority, ceiling)``; the priority fee is
        halved against ``max_fee`` when it would exceed it. The bid is
        acceptable only if ``base + priority`` fits under the ceiling.
        """
        ceiling_gwei = self.current_ceiling_gwei()
        ceiling_wei = to_wei(ceiling_gwei)
        configured_priority = to_wei(self.settings.priority_fee_gwei)

        try:
            block = await self.w3.eth.get_block("latest")
            base_fee = int(block["baseFeePerGas"])
        except Exception as e:
            log.warning("fee_estimator.bid_fallback", error=str(e))
            return FeeBid(
                max_fee_per_gas=to_wei(self.settings.max_gas_price_gwei),
                max_priority_fee_per_gas=configured_priority,
                acceptable=False,
                ceiling_gwei=ceiling_gwei,
            )

        try:
            priority_fee = int(await self.w3.eth.max_priority_fee)
        except Exception as e:
            log.debug("fee_estimator.priority_fee_unavailable", error=str(e))
            priority_fee = configured_priority

        max_fee = min(2 * base_fee + priority_fee, ceiling_wei)
        if priority_fee > max_fee:
            priority_fee = max_fee // 2

        acceptable = base_fee + priority_fee <= ceiling_wei
        if not acceptable:
            log.info(
                "fee_estimator.bid_above_ceiling",
                base_fee_gwei=base_fee / GWEI,
                priority_fee_gwei=priority_fee / GWEI,
                ceiling_gwei=ceiling_gwei,
            )

        return FeeBid(
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority_fee,
            acceptable=acceptable,
            ceiling_gwei=ceiling_gwei,
        )

    def statistics(self) -> dict[str, float | int]:
        if not self._samples:
            return {
                "samples": 0,
                "mean": 0.0,
                "min": 0.0,
                "max": 0.0,
                "ceiling": self.current_ceiling_gwei(),
            }
        fees = np.fromiter((s.base_fee_gwei for s in self._samples), dtype=float)
        return {
            "samples": len(fees),
            "mean": float(np.mean(fees)),
            "min": float(np.min(fees)),
            "max": float(np.max(fees)),
            "ceiling": self.current_ceiling_gwei(),
        }
