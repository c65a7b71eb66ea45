"""Private relay JSON-RPC client (bundle simulation and submission).

Requests are authenticated with an ``X-Flashbots-Signature`` header: the
signer's address and its signature over the keccak hash of the exact body.
"""

from __future__ import annotations

from dataclasses import dataclass
import itertools
import json
from typing import Any

from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
import httpx
import structlog
from web3 import Web3

from flasharb.core.errors import RelayError
from flasharb.core.types import Bundle

log = structlog.get_logger()

_request_ids = itertools.count(1)


@dataclass
class SimulationResult:
    """Outcome of ``eth_callBundle``."""

    success: bool
    error: str | None = None
    failed_tx: str | None = None
    raw: dict[str, Any] | None = None


class RelayClient:
    """Client for one private relay endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        signer: LocalAccount,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self.signer = signer
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    def _signed_request(self, method: str, params: list[Any]) -> tuple[str, dict[str, str]]:
        payload = {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
            "params": params,
        }
        body = json.dumps(payload, separators=(",", ":"))
        message = encode_defunct(text=Web3.to_hex(Web3.keccak(text=body)))
        signature = Web3.to_hex(self.signer.sign_message(message).signature)
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": f"{self.signer.address}:{signature}",
        }
        return body, headers

    async def _call(self, method: str, params: list[Any]) -> Any:
        body, headers = self._signed_request(method, params)
        try:
            response = await self.client.post(self.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise RelayError(self.name, f"transport error: {e}") from e

        if response.status_code != 200:
            raise RelayError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise RelayError(self.name, "malformed JSON reply") from e

        if not isinstance(data, dict):
            raise RelayError(self.name, "malformed JSON-RPC reply")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RelayError(self.name, message or "unknown relay error")
        return data.get("result")

    async def simulate(self, bundle: Bundle) -> SimulationResult:
        """Dry-run the bundle against the latest state.

        Raises:
            RelayError: If the relay could not run the simulation or replied
                with an unusable payload
        """
        result = await self._call(
            "eth_callBundle",
            [
                {
                    "txs": list(bundle.signed_transactions),
                    "blockNumber": hex(bundle.target_block),
                    "stateBlockNumber": "latest",
                }
            ],
        )
        if not isinstance(result, dict):
            raise RelayError(self.name, "simulation returned no result")

        tx_results = result.get("results") or []
        if not isinstance(tx_results, list):
            raise RelayError(self.name, "simulation results are not a list")

        for tx_result in tx_results:
            if not isinstance(tx_result, dict):
                raise RelayError(self.name, f"malformed simulation entry: {tx_result!r}")
            error = tx_result.get("error") or tx_result.get("revert")
            if error:
                return SimulationResult(
                    success=False,
                    error=str(error),
                    failed_tx=tx_result.get("txHash"),
                    raw=result,
                )
        return SimulationResult(success=True, raw=result)

    async def send(self, bundle: Bundle) -> str:
        """Submit the bundle for ``bundle.target_block``.

        Returns:
            Bundle hash assigned by the relay

        Raises:
            RelayError: On rejection or when no bundle hash is returned
        """
        result = await self._call(
            "eth_sendBundle",
            [
                {
                    "txs": list(bundle.signed_transactions),
                    "blockNumber": hex(bundle.target_block),
                }
            ],
        )
        bundle_hash = result.get("bundleHash") if isinstance(result, dict) else result
        if not isinstance(bundle_hash, str) or not bundle_hash:
            raise RelayError(self.name, "no bundle hash in reply")
        log.debug("relay.bundle_accepted", relay=self.name, bundle_hash=bundle_hash)
        return bundle_hash

    async def close(self) -> None:
        await self.client.aclose()
