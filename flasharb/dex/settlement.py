"""Settlement contract boundary: calldata encoding, preflight reads, revert decoding.

The contract borrows via flash loan, forwards each leg's calldata to its swap
target, repays the loan and keeps the profit. Only its external interface is
modelled here.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from eth_typing import ChecksumAddress
import structlog
from web3 import AsyncWeb3, Web3
from web3.logs import DISCARD

from flasharb.core.types import FailureKind, Opportunity, SwapQuote

log = structlog.get_logger()

SETTLEMENT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "address[]", "name": "tokens", "type": "address[]"},
            {"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"},
            {"internalType": "bytes", "name": "userData", "type": "bytes"},
        ],
        "name": "executeFlashLoan",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "token", "type": "address"}],
        "name": "withdraw",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "paused",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "", "type": "address"}],
        "name": "trustedSpenders",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "token", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "amount", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "feeAmount", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "profit", "type": "uint256"},
        ],
        "name": "FlashLoanExecuted",
        "type": "event",
    },
]

# Substrings of revert messages mapped to failure categories, checked in order
REVERT_MARKERS: tuple[tuple[str, FailureKind], ...] = (
    ("UntrustedSpender", FailureKind.UNTRUSTED_TARGET),
    ("InsufficientProfit", FailureKind.INSUFFICIENT_PROFIT),
    ("SwapFailed", FailureKind.SWAP_FAILED),
    ("EnforcedPause", FailureKind.PAUSED),
    ("Pausable: paused", FailureKind.PAUSED),
    ("OwnableUnauthorizedAccount", FailureKind.NOT_OWNER),
    ("Ownable: caller is not the owner", FailureKind.NOT_OWNER),
)


def classify_revert(message: str | None) -> FailureKind:
    """Map a revert reason or RPC error message to a failure category."""
    if message:
        for marker, kind in REVERT_MARKERS:
            if marker in message:
                return kind
    return FailureKind.REVERTED


def encode_user_data(legs: Sequence[SwapQuote]) -> bytes:
    """ABI-encode ``(address[] targets, bytes[] calldata)`` with one entry per leg."""
    if not legs:
        raise ValueError("At least one leg is required")
    targets = [Web3.to_checksum_address(leg.target_address) for leg in legs]
    payloads = [leg.call_data for leg in legs]
    return Web3().codec.encode(["address[]", "bytes[]"], [targets, payloads])


class SettlementContract:
    """Encodes calls to the settlement contract and reads its state.

    Calldata is built on a provider-less Web3 instance so encoding never
    touches the network; reads go through the async connection.
    """

    def __init__(self, address: str, w3: AsyncWeb3 | None = None) -> None:
        self.address: ChecksumAddress = Web3.to_checksum_address(address)
        self._encoder = Web3().eth.contract(address=self.address, abi=SETTLEMENT_ABI)
        self._w3 = w3
        self._contract = (
            w3.eth.contract(address=self.address, abi=SETTLEMENT_ABI) if w3 is not None else None
        )

    def execute_calldata(self, opportunity: Opportunity) -> bytes:
        """Calldata for ``executeFlashLoan`` borrowing the path's origin token."""
        if not opportunity.legs:
            raise ValueError(f"Opportunity {opportunity.path.name} has no executable legs")
        origin = opportunity.path.origin
        data = self._encoder.functions.executeFlashLoan(
            [Web3.to_checksum_address(origin.address)],
            [opportunity.initial_amount],
            encode_user_data(opportunity.legs),
        )._encode_transaction_data()
        return Web3.to_bytes(hexstr=data)

    def withdraw_calldata(self, token: str) -> bytes:
        data = self._encoder.functions.withdraw(
            Web3.to_checksum_address(token)
        )._encode_transaction_data()
        return Web3.to_bytes(hexstr=data)

    async def preflight(self, signer: str, legs: Sequence[SwapQuote] = ()) -> FailureKind | None:
        """Advisory state checks before signing.

        Returns the first blocking condition found (paused, wrong owner,
        untrusted swap target). Reads that fail are logged and skipped.
        """
        if self._contract is None:
            return None

        functions = self._contract.functions

        try:
            if await functions.paused().call():
                log.warning("settlement.paused", contract=self.address)
                return FailureKind.PAUSED
        except Exception as e:
            log.debug("settlement.paused_read_failed", error=str(e))

        try:
            owner = await functions.owner().call()
            if owner.lower() != signer.lower():
                log.warning("settlement.not_owner", contract=self.address, owner=owner, signer=signer)
                return FailureKind.NOT_OWNER
        except Exception as e:
            log.debug("settlement.owner_read_failed", error=str(e))

        for target in {leg.target_address for leg in legs}:
            try:
                trusted = await functions.trustedSpenders(Web3.to_checksum_address(target)).call()
            except Exception as e:
                log.debug("settlement.trust_read_failed", target=target, error=str(e))
                continue
            if not trusted:
                log.warning("settlement.untrusted_target", contract=self.address, target=target)
                return FailureKind.UNTRUSTED_TARGET

        return None

    def parse_execution_events(self, receipt: Any) -> list[dict[str, Any]]:
        """Decode ``FlashLoanExecuted`` events from a transaction receipt."""
        events = self._encoder.events.FlashLoanExecuted().process_receipt(receipt, errors=DISCARD)
        return [
            {
                "token": event["args"]["token"],
                "amount": event["args"]["amount"],
                "fee": event["args"]["feeAmount"],
                "profit": event["args"]["profit"],
            }
            for event in events
        ]
