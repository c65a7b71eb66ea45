"""Block-driven arbitrage runner.

Every ``check_interval_blocks`` new blocks one cycle runs to completion:
refresh fees, scan paths, pick the best opportunity, apply the profit gate
and, when execution is enabled, hand it to the submission manager. Cycles
never overlap.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
import inspect
import logging
from typing import TextIO

from eth_account import Account
import structlog
from web3 import AsyncWeb3

from flasharb.config import ArbSettings
from flasharb.core.cache import CacheManager
from flasharb.core.types import ArbitragePath, ExecutionResult, PriceImpactProbe, Token
from flasharb.dex.relays import RelayClient
from flasharb.dex.settlement import SettlementContract
from flasharb.dex.submission import SubmissionManager
from flasharb.dex.tokens import WETH, default_impact_probes, default_paths, default_sized_pairs
from flasharb.dex.zerox import ZeroXQuoteClient
from flasharb.live.fee_estimator import FeeEstimator
from flasharb.live.scanner import OpportunityScanner

log = structlog.get_logger()


class CycleOutcome(StrEnum):
    SKIPPED = "skipped"
    NO_OPPORTUNITY = "no_opportunity"
    PROFITABLE = "profitable"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass
class CycleReport:
    """What one scan cycle saw and decided."""

    block: int
    outcome: CycleOutcome
    reason: str | None = None
    opportunities: int = 0
    best_path: str | None = None
    profit_percent: float | None = None
    net_profit_usd: float | None = None
    ceiling_gwei: float | None = None
    result: ExecutionResult | None = None


@dataclass
class ArbitrageRunner:
    """Polls block height and runs serialized scan/execute cycles."""

    w3: AsyncWeb3
    settings: ArbSettings
    scanner: OpportunityScanner
    fee_estimator: FeeEstimator
    submission: SubmissionManager | None = None
    cache: CacheManager | None = None
    paths: list[ArbitragePath] = field(default_factory=list)
    probes: list[PriceImpactProbe] = field(default_factory=list)
    sized_pairs: list[tuple[Token, Token]] = field(default_factory=list)
    on_report: Callable[[CycleReport], Awaitable[None] | None] | None = None

    cycles: int = 0
    executions: int = 0
    failures: int = 0
    last_scanned_block: int | None = None

    def __post_init__(self) -> None:
        self._stop = asyncio.Event()
        self._cycle_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: ArbSettings) -> ArbitrageRunner:
        """Wire every component from configuration.

        Raises:
            ConfigurationError: If live credentials are missing
        """
        settings.ensure_ready()

        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))
        signer = Account.from_key(settings.private_key.get_secret_value())
        cache = CacheManager.from_settings(settings)
        quotes = ZeroXQuoteClient.from_settings(settings)
        relays = [
            RelayClient(name, url, signer, timeout_seconds=settings.relay_timeout_seconds)
            for name, url in settings.relay_urls.items()
        ]
        submission = SubmissionManager(
            w3,
            signer,
            SettlementContract(settings.settlement_address, w3),
            relays,
            settings,
        )
        return cls(
            w3=w3,
            settings=settings,
            scanner=OpportunityScanner(quotes, cache, settings),
            fee_estimator=FeeEstimator(w3, settings, cache),
            submission=submission,
            cache=cache,
            paths=default_paths(settings),
            probes=default_impact_probes(),
            sized_pairs=default_sized_pairs(settings),
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[ArbitrageRunner]:
        """Open the cache for the duration and release clients afterwards.

        Example:
            >>> async with runner.lifecycle():
            ...     await runner.run()
        """
        log.info(
            "runner.starting",
            paths=len(self.paths),
            execution_enabled=self.settings.enable_execution,
            fork=self.settings.is_fork,
        )
        if self.cache is not None:
            await self.cache.open()
        try:
            yield self
        finally:
            log.info("runner.shutting_down", cycles=self.cycles, executions=self.executions)
            self._stop.set()
            if self.submission is not None:
                await self.submission.close()
            await self.scanner.quotes.close()
            if self.cache is not None:
                await self.cache.close()

    async def run(self) -> None:
        """Poll block height until ``stop`` is called."""
        try:
            while not self._stop.is_set():
                try:
                    block = await self.w3.eth.block_number
                except Exception as e:
                    log.warning("runner.block_poll_failed", error=str(e))
                    block = None

                if block is not None and self._due(block):
                    await self.run_cycle(block)

                try:
                    await asyncio.wait_for(
                        self._stop.wait(), timeout=self.settings.block_poll_interval
                    )
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            log.info("runner.run_cancelled")
            raise

    def _due(self, block: int) -> bool:
        if self.last_scanned_block is None:
            return True
        return block - self.last_scanned_block >= self.settings.check_interval_blocks

    async def run_cycle(self, block: int) -> CycleReport:
        """Run one full cycle for ``block``; waits for any cycle in progress."""
        async with self._cycle_lock:
            self.cycles += 1
            self.last_scanned_block = block
            try:
                report = await self._cycle(block)
            except Exception as e:
                self.failures += 1
                log.exception("runner.cycle_failed", block=block)
                report = CycleReport(block=block, outcome=CycleOutcome.FAILED, reason=str(e))

            log.info(
                "runner.cycle_report",
                block=report.block,
                outcome=report.outcome,
                reason=report.reason,
                opportunities=report.opportunities,
                best_path=report.best_path,
                profit_percent=report.profit_percent,
                net_profit_usd=report.net_profit_usd,
                ceiling_gwei=report.ceiling_gwei,
            )
            await self._emit(report)
            return report

    async def _cycle(self, block: int) -> CycleReport:
        await self.fee_estimator.refresh(block)

        paths = list(self.paths)
        if self.sized_pairs:
            sized = await self.scanner.sized_paths(
                self.sized_pairs, self.settings.large_amount_usd_sizes
            )
            paths.extend(sized)
        opportunities = await self.scanner.scan(paths)
        if self.probes:
            opportunities.extend(await self.scanner.detect_price_impact(self.probes))

        best = self.scanner.best([o for o in opportunities if o.executable])
        if best is None:
            return CycleReport(
                block=block,
                outcome=CycleOutcome.NO_OPPORTUNITY,
                opportunities=len(opportunities),
            )

        profile = self.settings.profit_profile()
        ceiling = self.fee_estimator.current_ceiling_gwei()
        eth_usd = await self.scanner.usd_price(WETH)
        gas_cost_usd = self.settings.gas_limit * ceiling * 1e-9 * eth_usd
        net_profit_usd = best.estimated_profit_usd - gas_cost_usd * profile.gas_cost_multiplier

        report = CycleReport(
            block=block,
            outcome=CycleOutcome.SKIPPED,
            opportunities=len(opportunities),
            best_path=best.path.name,
            profit_percent=best.profit_percent,
            net_profit_usd=net_profit_usd,
            ceiling_gwei=ceiling,
        )

        if net_profit_usd < profile.min_profit_usd:
            report.reason = "below_min_profit_usd"
            return report

        fee_bid = await self.fee_estimator.optimal_fee_bid()
        if not fee_bid.acceptable:
            report.reason = "fee_above_ceiling"
            return report

        if not self.settings.enable_execution or self.submission is None:
            report.outcome = CycleOutcome.PROFITABLE
            report.reason = "dry_run"
            return report

        result = await self.submission.execute(best, fee_bid)
        report.result = result
        if result.success:
            self.executions += 1
            report.outcome = CycleOutcome.EXECUTED
        else:
            self.failures += 1
            report.outcome = CycleOutcome.FAILED
            report.reason = result.failure
        return report

    async def _emit(self, report: CycleReport) -> None:
        if self.on_report is None:
            return
        try:
            maybe = self.on_report(report)
            if inspect.isawaitable(maybe):
                await maybe
        except Exception:
            log.exception("runner.report_hook_failed")

    def stop(self) -> None:
        log.info("runner.stop_requested")
        self._stop.set()

    def get_stats(self) -> dict[str, int | None]:
        return {
            "cycles": self.cycles,
            "executions": self.executions,
            "failures": self.failures,
            "last_scanned_block": self.last_scanned_block,
        }


def configure_logging(
    *,
    json_output: bool = True,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Route structlog events to ``stream`` (stdout by default).

    Args:
        json_output: Render one JSON object per line; otherwise console format
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        stream: File-like object the events are written to
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

