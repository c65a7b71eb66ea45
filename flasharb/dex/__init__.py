"""On-chain and aggregator connectors: 0x quotes, settlement contract, private relays."""

from flasharb.dex.relays import RelayClient, SimulationResult
from flasharb.dex.settlement import SettlementContract, classify_revert, encode_user_data
from flasharb.dex.submission import Phase, SubmissionManager
from flasharb.dex.zerox import ZeroXQuoteClient

__all__ = [
    "Phase",
    "RelayClient",
    "SettlementContract",
    "SimulationResult",
    "SubmissionManager",
    "ZeroXQuoteClient",
    "classify_revert",
    "encode_user_data",
]
