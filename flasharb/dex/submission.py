"""Bundle submission: build, simulate, race private relays, watch, fall back.

One call to ``SubmissionManager.execute`` walks a single opportunity through

    BUILD -> SIMULATE -> RACE_PRIVATE_RELAYS -> WATCH -> FALLBACK_PUBLIC -> DONE

and always returns an ``ExecutionResult``. Simulation is advisory, relay
rejections are isolated per relay, and the public mempool is used at most
once per bundle. A reverted inclusion is reported, never resubmitted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from eth_account.signers.local import LocalAccount
import structlog
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from flasharb.core.errors import RelayError
from flasharb.core.types import (
    Bundle,
    ExecutionResult,
    FailureKind,
    FeeBid,
    Opportunity,
)
from flasharb.dex.relays import RelayClient
from flasharb.dex.settlement import SettlementContract, classify_revert
from flasharb.utils.resilience import retry_async, with_timeout

if TYPE_CHECKING:
    from flasharb.config import ArbSettings

log = structlog.get_logger()

PUBLIC = "public"


class Phase(StrEnum):
    BUILD = "build"
    SIMULATE = "simulate"
    RACE_PRIVATE_RELAYS = "race_private_relays"
    WATCH = "watch"
    FALLBACK_PUBLIC = "fallback_public"
    DONE = "done"


@dataclass
class SubmissionStats:
    """Counters across all submissions."""

    attempts: int = 0
    included: int = 0
    reverted: int = 0
    failed: int = 0
    fallbacks: int = 0
    relay_rejections: int = 0
    simulation_failures: int = 0


@dataclass
class _SignedTx:
    raw: str
    tx_hash: str


class SubmissionManager:
    """Turns an opportunity and a fee bid into an included (or failed) bundle."""

    def __init__(
        self,
        w3: AsyncWeb3,
        signer: LocalAccount,
        settlement: SettlementContract,
        relays: list[RelayClient],
        settings: ArbSettings,
        *,
        poll_interval: float | None = None,
    ) -> None:
        """Initialize submission manager.

        Args:
            w3: Async connection used for nonces, receipts and public broadcast
            signer: Account that owns the settlement contract
            settlement: Settlement contract encoder/reader
            relays: Private relays raced on every submission
            settings: Gas limits, retry, grace window and fallback switches
            poll_interval: Seconds between receipt polls (defaults to settings)
        """
        self.w3 = w3
        self.signer = signer
        self.settlement = settlement
        self.relays = relays
        self.settings = settings
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.block_poll_interval
        )
        self.stats = SubmissionStats()
        self._background: set[asyncio.Task[Any]] = set()

    async def execute(self, opportunity: Opportunity, fee_bid: FeeBid) -> ExecutionResult:
        """Submit one opportunity; never raises."""
        self.stats.attempts += 1
        result = await self._execute(opportunity, fee_bid)
        if result.success:
            self.stats.included += 1
        elif result.included_block is not None:
            self.stats.reverted += 1
        else:
            self.stats.failed += 1

        log.info(
            "submission.result",
            path=opportunity.path.name,
            success=result.success,
            failure=result.failure,
            via=result.via,
            handle=result.handle,
            included_block=result.included_block,
            error=result.error,
        )
        return result

    async def _execute(self, opportunity: Opportunity, fee_bid: FeeBid) -> ExecutionResult:
        if not opportunity.executable:
            return ExecutionResult(
                success=False,
                failure=FailureKind.NOT_EXECUTABLE,
                error=f"{opportunity.strategy} opportunity carries no executable legs",
            )
        if not fee_bid.acceptable:
            return ExecutionResult(
                success=False,
                failure=FailureKind.FEE_UNACCEPTABLE,
                error=f"fee ceiling {fee_bid.ceiling_gwei:.2f} gwei exceeded",
            )

        if self.settings.preflight_checks:
            blocked = await self.settlement.preflight(self.signer.address, opportunity.legs)
            if blocked is not None:
                return ExecutionResult(success=False, failure=blocked, error=f"preflight: {blocked}")

        self._enter(Phase.BUILD, opportunity)
        try:
            bundle = await self._build_bundle(opportunity, fee_bid)
        except Exception as e:
            log.warning("submission.build_failed", path=opportunity.path.name, error=str(e))
            return ExecutionResult(success=False, failure=FailureKind.BUILD_FAILED, error=str(e))

        simulation_error = None
        if self.settings.enable_simulation and self.relays:
            self._enter(Phase.SIMULATE, opportunity, target_block=bundle.target_block)
            simulation_error = await self._simulate(bundle)

        handle: str | None = None
        via: str | None = None
        if self.relays:
            self._enter(Phase.RACE_PRIVATE_RELAYS, opportunity, relays=[r.name for r in self.relays])
            winner = await self._race(bundle)
            if winner is not None:
                via, handle = winner
                self._enter(Phase.WATCH, opportunity, via=via, handle=handle)
                receipt = await self._watch(
                    bundle.tx_hashes[0], bundle.target_block + self.settings.grace_blocks
                )
                if receipt is not None:
                    return await self._settle(receipt, bundle, via, handle, simulation_error)
                log.warning(
                    "submission.bundle_not_included",
                    handle=handle,
                    target_block=bundle.target_block,
                    grace_blocks=self.settings.grace_blocks,
                )

        if not self.settings.public_fallback:
            self._enter(Phase.DONE, opportunity)
            return ExecutionResult(
                success=False,
                handle=handle,
                via=via,
                failure=FailureKind.TIMEOUT if handle else FailureKind.RELAY_ERROR,
                error="not included via private relays",
                tx_hashes=bundle.tx_hashes,
                simulation_error=simulation_error,
            )

        self._enter(Phase.FALLBACK_PUBLIC, opportunity)
        return await self._public_fallback(bundle, simulation_error)

    def _enter(self, phase: Phase, opportunity: Opportunity, **context: Any) -> None:
        log.info("submission.phase", phase=phase, path=opportunity.path.name, **context)

    async def _chain_read(self, name: str, operation) -> Any:
        return await retry_async(
            operation,
            max_attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            name=name,
        )

    async def _build_bundle(self, opportunity: Opportunity, fee_bid: FeeBid) -> Bundle:
        """Sign the arbitrage tx (and withdrawal) against a single nonce read."""
        current_block = await self._chain_read("block_number", lambda: self.w3.eth.block_number)
        nonce = await self._chain_read(
            "nonce",
            lambda: self.w3.eth.get_transaction_count(self.signer.address, "pending"),
        )

        transactions = [
            self._sign(
                self.settlement.execute_calldata(opportunity),
                nonce,
                self.settings.gas_limit,
                fee_bid,
            )
        ]
        if self.settings.atomic_withdrawal:
            transactions.append(
                self._sign(
                    self.settlement.withdraw_calldata(opportunity.path.origin.address),
                    nonce + 1,
                    self.settings.withdraw_gas_limit,
                    fee_bid,
                )
            )

        bundle = Bundle(
            signed_transactions=tuple(tx.raw for tx in transactions),
            tx_hashes=tuple(tx.tx_hash for tx in transactions),
            target_block=current_block + 1,
            nonce=nonce,
        )
        log.info(
            "submission.bundle_built",
            target_block=bundle.target_block,
            nonce=nonce,
            txs=len(transactions),
            legs=len(opportunity.legs),
        )
        return bundle

    def _sign(self, data: bytes, nonce: int, gas: int, fee_bid: FeeBid) -> _SignedTx:
        tx = {
            "type": 2,
            "chainId": self.settings.chain_id,
            "to": self.settlement.address,
            "data": Web3.to_hex(data),
            "value": 0,
            "gas": gas,
            "nonce": nonce,
            "maxFeePerGas": fee_bid.max_fee_per_gas,
            "maxPriorityFeePerGas": fee_bid.max_priority_fee_per_gas,
        }
        signed = self.signer.sign_transaction(tx)
        return _SignedTx(raw=Web3.to_hex(signed.raw_transaction), tx_hash=Web3.to_hex(signed.hash))

    async def _simulate(self, bundle: Bundle) -> str | None:
        """Run the bundle simulation on the first relay able to do it.

        Returns the simulated failure message, if any. Never blocks submission.
        """
        for relay in self.relays:
            try:
                simulation = await relay.simulate(bundle)
            except RelayError as e:
                log.warning("submission.simulation_unavailable", relay=relay.name, error=str(e))
                continue
            except Exception as e:
                log.warning("submission.simulation_error", relay=relay.name, error=str(e))
                continue

            if simulation.success:
                log.info("submission.simulation_ok", relay=relay.name)
                return None

            self.stats.simulation_failures += 1
            log.warning(
                "submission.simulation_failed",
                relay=relay.name,
                error=simulation.error,
                failed_tx=simulation.failed_tx,
                failure=classify_revert(simulation.error),
            )
            return simulation.error
        return None

    async def _send_to(self, relay: RelayClient, bundle: Bundle) -> tuple[str, str]:
        return relay.name, await relay.send(bundle)

    async def _race(self, bundle: Bundle) -> tuple[str, str] | None:
        """Send to every relay concurrently; the first accepted handle wins.

        Sends still pending when a winner is found keep running and are only
        logged when they finish.
        """
        tasks = [
            asyncio.create_task(self._send_to(relay, bundle), name=f"relay-{relay.name}")
            for relay in self.relays
        ]
        winner: tuple[str, str] | None = None
        try:
            async with asyncio.timeout(self.settings.relay_timeout_seconds):
                for next_done in asyncio.as_completed(tasks):
                    try:
                        winner = await next_done
                    except RelayError as e:
                        self.stats.relay_rejections += 1
                        log.warning("submission.relay_failed", relay=e.relay, error=str(e))
                        continue
                    except Exception as e:
                        self.stats.relay_rejections += 1
                        log.warning("submission.relay_failed", error=str(e))
                        continue
                    log.info("submission.relay_accepted", relay=winner[0], handle=winner[1])
                    break
        except TimeoutError:
            log.warning("submission.relay_race_timeout", timeout=self.settings.relay_timeout_seconds)

        for task in tasks:
            if not task.done():
                self._background.add(task)
                task.add_done_callback(self._on_late_relay)
            elif not task.cancelled() and task.exception() is not None:
                log.debug("submission.relay_task_failed", task=task.get_name())
        return winner

    def _on_late_relay(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.info("submission.late_relay_failed", task=task.get_name(), error=str(error))
        else:
            relay, handle = task.result()
            log.info("submission.late_relay_accepted", relay=relay, handle=handle)

    async def _receipt(self, tx_hash: str) -> Any | None:
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            log.debug("submission.receipt_read_failed", tx_hash=tx_hash, error=str(e))
            return None

    async def _watch(self, tx_hash: str, deadline_block: int) -> Any | None:
        """Poll for a receipt until the chain moves past ``deadline_block``."""
        while True:
            receipt = await self._receipt(tx_hash)
            if receipt is not None:
                return receipt

            try:
                current = await self._chain_read("block_number", lambda: self.w3.eth.block_number)
            except Exception as e:
                log.warning("submission.watch_aborted", tx_hash=tx_hash, error=str(e))
                return None
            if current > deadline_block:
                return None
            await asyncio.sleep(self.poll_interval)

    async def _revert_reason(self, receipt: Any) -> str | None:
        """Replay a reverted transaction with eth_call to recover its reason."""
        try:
            tx = await self.w3.eth.get_transaction(receipt["transactionHash"])
            await self.w3.eth.call(
                {
                    "from": tx["from"],
                    "to": tx["to"],
                    "data": tx["input"],
                    "gas": tx["gas"],
                },
                receipt["blockNumber"] - 1,
            )
        except Exception as e:
            return str(e)
        return None

    async def _settle(
        self,
        receipt: Any,
        bundle: Bundle,
        via: str,
        handle: str,
        simulation_error: str | None,
    ) -> ExecutionResult:
        block = receipt["blockNumber"]
        if receipt["status"] == 1:
            events = self.settlement.parse_execution_events(receipt)
            log.info("submission.included", via=via, handle=handle, block=block, events=events)
            return ExecutionResult(
                success=True,
                handle=handle,
                via=via,
                tx_hashes=bundle.tx_hashes,
                included_block=block,
                simulation_error=simulation_error,
            )

        reason = await self._revert_reason(receipt)
        failure = classify_revert(reason)
        log.warning("submission.reverted", via=via, handle=handle, block=block, failure=failure, reason=reason)
        return ExecutionResult(
            success=False,
            handle=handle,
            via=via,
            failure=failure,
            error=reason or "transaction reverted",
            tx_hashes=bundle.tx_hashes,
            included_block=block,
            simulation_error=simulation_error,
        )

    async def _public_fallback(self, bundle: Bundle, simulation_error: str | None) -> ExecutionResult:
        """Broadcast the signed arbitrage transaction once on the public mempool."""
        self.stats.fallbacks += 1
        try:
            tx_hash = Web3.to_hex(await self._broadcast(bundle.signed_transactions[0]))
            current = await self._chain_read("block_number", lambda: self.w3.eth.block_number)
        except TimeoutError as e:
            log.warning("submission.public_broadcast_timeout", error=str(e))
            return ExecutionResult(
                success=False,
                via=PUBLIC,
                failure=FailureKind.TIMEOUT,
                error=str(e),
                tx_hashes=bundle.tx_hashes,
                simulation_error=simulation_error,
            )
        except Exception as e:
            log.warning("submission.public_broadcast_failed", error=str(e))
            return ExecutionResult(
                success=False,
                via=PUBLIC,
                failure=FailureKind.RELAY_ERROR,
                error=str(e),
                tx_hashes=bundle.tx_hashes,
                simulation_error=simulation_error,
            )

        log.info("submission.public_broadcast", tx_hash=tx_hash, block=current)
        receipt = await self._watch(tx_hash, current + self.settings.grace_blocks)
        if receipt is None:
            return ExecutionResult(
                success=False,
                handle=tx_hash,
                via=PUBLIC,
                failure=FailureKind.TIMEOUT,
                error="not included within grace window",
                tx_hashes=bundle.tx_hashes,
                simulation_error=simulation_error,
            )

        result = await self._settle(receipt, bundle, PUBLIC, tx_hash, simulation_error)
        if result.success and len(bundle.signed_transactions) > 1:
            try:
                await self._broadcast(bundle.signed_transactions[1])
                log.info("submission.withdrawal_broadcast", tx_hash=bundle.tx_hashes[1])
            except Exception as e:
                log.warning("submission.withdrawal_broadcast_failed", error=str(e))
        return result

    async def _broadcast(self, raw: str) -> Any:
        return await with_timeout(
            self.w3.eth.send_raw_transaction(raw),
            timeout=self.settings.relay_timeout_seconds,
            error_message="public broadcast timed out",
        )

    async def close(self) -> None:
        """Wait for relay sends still running in the background."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        for relay in self.relays:
            await relay.close()
