"""Block-driven scanning loop, fee estimation and opportunity detection."""

from flasharb.live.fee_estimator import FeeEstimator
from flasharb.live.runner import ArbitrageRunner, CycleOutcome, CycleReport, configure_logging
from flasharb.live.scanner import OpportunityScanner

__all__ = [
    "ArbitrageRunner",
    "CycleOutcome",
    "CycleReport",
    "FeeEstimator",
    "OpportunityScanner",
    "configure_logging",
]
