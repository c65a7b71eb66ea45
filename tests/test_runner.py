"""Unit tests for the runner's cycle gating and block-driven loop."""

import asyncio
import io
import json

import pytest
import structlog

from flasharb.config import ArbSettings
from flasharb.core.errors import ConfigurationError
from flasharb.core.types import (
    ArbitragePath,
    ExecutionResult,
    FailureKind,
    FeeBid,
    Opportunity,
    PriceImpactProbe,
    Strategy,
    SwapQuote,
    Token,
)
from flasharb.dex.tokens import USDC, WETH
from flasharb.live.fee_estimator import GWEI
from flasharb.live.runner import ArbitrageRunner, CycleOutcome, CycleReport, configure_logging
from flasharb.live.scanner import OpportunityScanner

PATH = ArbitragePath(name="USDC->WETH->USDC", tokens=(USDC, WETH), borrow_amount=10**10)
LEG = SwapQuote(
    sell_token=USDC.address,
    buy_token=WETH.address,
    sell_amount=10**10,
    output_amount=4 * 10**18,
    call_data=b"\x01",
    target_address="0xdef1c0ded9bec7f1a1670819833240f027b25eff",
)


def _opportunity(profit_percent: float, estimated_profit_usd: float, *, legs: bool = True) -> Opportunity:
    return Opportunity(
        path=PATH,
        strategy=Strategy.ROUND_TRIP if legs else Strategy.PRICE_IMPACT,
        profit_percent=profit_percent,
        estimated_profit_usd=estimated_profit_usd,
        confidence=0.8,
        initial_amount=10**10,
        final_amount=10**10 + 1,
        legs=(LEG, LEG) if legs else (),
    )


class DummyQuotes:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class DummyScanner:
    best = staticmethod(OpportunityScanner.best)

    def __init__(self, opportunities=None, impact=None, *, eth_usd: float = 3000.0) -> None:
        self.opportunities = opportunities or []
        self.impact = impact or []
        self.eth_usd = eth_usd
        self.quotes = DummyQuotes()
        self.fail = False
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.scanned: list[ArbitragePath] = []
        self.sized_requests: list[tuple[list, list[float]]] = []

    async def sized_paths(self, pairs, usd_sizes):
        self.sized_requests.append((list(pairs), list(usd_sizes)))
        return [
            ArbitragePath(
                name=f"{usd / 1000:g}K USD {a.symbol}->{b.symbol}->{a.symbol}",
                tokens=(a, b),
                borrow_amount=a.units(usd),
                strategy=Strategy.LARGE_AMOUNT,
            )
            for usd in usd_sizes
            for a, b in pairs
        ]

    async def scan(self, paths):
        self.scanned = list(paths)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError("scanner exploded")
            return list(self.opportunities)
        finally:
            self.active -= 1

    async def detect_price_impact(self, probes):
        return list(self.impact)

    async def usd_price(self, token: Token) -> float:
        return self.eth_usd


class DummyFeeEstimator:
    def __init__(self, ceiling: float = 10.0, acceptable: bool = True) -> None:
        self.ceiling = ceiling
        self.acceptable = acceptable
        self.refreshed: list[int] = []

    async def refresh(self, block: int | None = None) -> bool:
        self.refreshed.append(block)
        return True

    def current_ceiling_gwei(self) -> float:
        return self.ceiling

    async def optimal_fee_bid(self) -> FeeBid:
        return FeeBid(
            max_fee_per_gas=int(self.ceiling * GWEI),
            max_priority_fee_per_gas=GWEI,
            acceptable=self.acceptable,
            ceiling_gwei=self.ceiling,
        )


class DummySubmission:
    def __init__(self, result: ExecutionResult | None = None) -> None:
        self.result = result or ExecutionResult(success=True, handle="0xbundle", via="flashbots")
        self.executed: list[Opportunity] = []
        self.closed = False

    async def execute(self, opportunity: Opportunity, fee_bid: FeeBid) -> ExecutionResult:
        self.executed.append(opportunity)
        return self.result

    async def close(self) -> None:
        self.closed = True


class FakeEth:
    def __init__(self, start: int = 100) -> None:
        self.block = start

    @property
    def block_number(self):
        async def _read() -> int:
            current = self.block
            self.block += 1
            return current

        return _read()


class FakeWeb3:
    def __init__(self, eth: FakeEth | None = None) -> None:
        self.eth = eth or FakeEth()


def _runner(
    scanner: DummyScanner,
    *,
    fee: DummyFeeEstimator | None = None,
    submission: DummySubmission | None = None,
    probes: list[PriceImpactProbe] | None = None,
    sized_pairs: list[tuple[Token, Token]] | None = None,
    w3: FakeWeb3 | None = None,
    **overrides,
) -> ArbitrageRunner:
    values = {"enable_execution": True, "block_poll_interval": 0.0}
    values.update(overrides)
    return ArbitrageRunner(
        w3=w3 or FakeWeb3(),  # type: ignore[arg-type]
        settings=ArbSettings(_env_file=None, **values),
        scanner=scanner,  # type: ignore[arg-type]
        fee_estimator=fee or DummyFeeEstimator(),  # type: ignore[arg-type]
        submission=submission,  # type: ignore[arg-type]
        paths=[PATH],
        probes=probes or [],
        sized_pairs=sized_pairs or [],
    )


@pytest.mark.asyncio
async def test_cycle_without_opportunities() -> None:
    fee = DummyFeeEstimator()
    runner = _runner(DummyScanner(), fee=fee)

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.NO_OPPORTUNITY
    assert fee.refreshed == [100]
    assert runner.last_scanned_block == 100


@pytest.mark.asyncio
async def test_cycle_skips_when_gas_eats_the_profit() -> None:
    # gas: 400k * 10 gwei * 3000 USD = 12 USD, doubled by the cost multiplier
    submission = DummySubmission()
    runner = _runner(DummyScanner([_opportunity(0.5, 110.0)]), submission=submission)

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.SKIPPED
    assert report.reason == "below_min_profit_usd"
    assert report.net_profit_usd == pytest.approx(86.0)
    assert submission.executed == []


@pytest.mark.asyncio
async def test_cycle_skips_when_fee_above_ceiling() -> None:
    submission = DummySubmission()
    runner = _runner(
        DummyScanner([_opportunity(0.5, 500.0)]),
        fee=DummyFeeEstimator(acceptable=False),
        submission=submission,
    )

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.SKIPPED
    assert report.reason == "fee_above_ceiling"
    assert submission.executed == []


@pytest.mark.asyncio
async def test_dry_run_reports_profitable_without_submitting() -> None:
    submission = DummySubmission()
    runner = _runner(
        DummyScanner([_opportunity(0.5, 500.0)]),
        submission=submission,
        enable_execution=False,
    )

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.PROFITABLE
    assert report.reason == "dry_run"
    assert submission.executed == []


@pytest.mark.asyncio
async def test_cycle_executes_best_opportunity() -> None:
    low = _opportunity(0.4, 500.0)
    high = _opportunity(0.9, 500.0)
    submission = DummySubmission()
    runner = _runner(DummyScanner([low, high]), submission=submission)

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.EXECUTED
    assert report.opportunities == 2
    assert report.profit_percent == 0.9
    assert submission.executed == [high]
    assert runner.executions == 1


@pytest.mark.asyncio
async def test_failed_submission_is_reported() -> None:
    submission = DummySubmission(
        ExecutionResult(success=False, failure=FailureKind.INSUFFICIENT_PROFIT, included_block=101)
    )
    runner = _runner(DummyScanner([_opportunity(0.9, 500.0)]), submission=submission)

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.FAILED
    assert report.reason == FailureKind.INSUFFICIENT_PROFIT
    assert runner.failures == 1


@pytest.mark.asyncio
async def test_price_impact_findings_are_never_executed() -> None:
    submission = DummySubmission()
    probe = PriceImpactProbe(sell=USDC, buy=WETH, small_amount=10**11, large_amount=5 * 10**11)
    runner = _runner(
        DummyScanner(impact=[_opportunity(5.0, 10_000.0, legs=False)]),
        submission=submission,
        probes=[probe],
    )

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.NO_OPPORTUNITY
    assert report.opportunities == 1
    assert submission.executed == []


@pytest.mark.asyncio
async def test_cycles_never_overlap() -> None:
    scanner = DummyScanner()
    scanner.delay = 0.01
    runner = _runner(scanner)

    await asyncio.gather(runner.run_cycle(100), runner.run_cycle(101), runner.run_cycle(102))

    assert scanner.max_active == 1
    assert runner.cycles == 3


@pytest.mark.asyncio
async def test_cycle_exception_is_reported_as_failure() -> None:
    scanner = DummyScanner()
    scanner.fail = True
    runner = _runner(scanner)

    report = await runner.run_cycle(100)

    assert report.outcome == CycleOutcome.FAILED
    assert report.reason == "scanner exploded"
    assert runner.failures == 1


@pytest.mark.asyncio
async def test_run_scans_every_check_interval_blocks() -> None:
    reports: list[CycleReport] = []
    runner = _runner(DummyScanner(), check_interval_blocks=3)

    def on_report(report: CycleReport) -> None:
        reports.append(report)
        if len(reports) == 2:
            runner.stop()

    runner.on_report = on_report

    await asyncio.wait_for(runner.run(), timeout=5)

    assert [r.block for r in reports] == [100, 103]


@pytest.mark.asyncio
async def test_lifecycle_releases_clients() -> None:
    scanner = DummyScanner()
    submission = DummySubmission()
    runner = _runner(scanner, submission=submission)

    async with runner.lifecycle():
        await runner.run_cycle(100)

    assert scanner.quotes.closed
    assert submission.closed


def test_from_settings_requires_live_credentials() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        ArbitrageRunner.from_settings(ArbSettings(_env_file=None))
    assert "MAINNET_RPC" in excinfo.value.missing


@pytest.mark.asyncio
async def test_cycle_scans_usd_sized_round_trips_alongside_fixed_paths() -> None:
    scanner = DummyScanner()
    runner = _runner(
        scanner,
        sized_pairs=[(USDC, WETH)],
        large_amount_usd_sizes=[5_000.0, 25_000.0],
    )

    await runner.run_cycle(100)

    assert scanner.sized_requests == [([(USDC, WETH)], [5_000.0, 25_000.0])]
    assert [p.name for p in scanner.scanned] == [
        PATH.name,
        "5K USD USDC->WETH->USDC",
        "25K USD USDC->WETH->USDC",
    ]


def test_configure_logging_writes_json_lines_at_level() -> None:
    stream = io.StringIO()
    try:
        configure_logging(json_output=True, level="info", stream=stream)
        logger = structlog.get_logger()
        logger.debug("runner.hidden")
        logger.info("runner.cycle_report", block=100, outcome="skipped")
    finally:
        structlog.reset_defaults()

    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    event = json.loads(lines[0])
    assert event["event"] == "runner.cycle_report"
    assert event["level"] == "info"
    assert event["block"] == 100
    assert "timestamp" in event
