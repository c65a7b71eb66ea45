"""Core types, errors and the shared two-tier cache."""

from flasharb.core.cache import CacheManager
from flasharb.core.errors import ConfigurationError, RelayError
from flasharb.core.types import (
    ArbitragePath,
    Bundle,
    ExecutionResult,
    FailureKind,
    FeeBid,
    FeeSample,
    Opportunity,
    PriceImpactProbe,
    Strategy,
    SwapQuote,
    Token,
)

__all__ = [
    "ArbitragePath",
    "Bundle",
    "CacheManager",
    "ConfigurationError",
    "ExecutionResult",
    "FailureKind",
    "FeeBid",
    "FeeSample",
    "Opportunity",
    "PriceImpactProbe",
    "RelayError",
    "Strategy",
    "SwapQuote",
    "Token",
]
