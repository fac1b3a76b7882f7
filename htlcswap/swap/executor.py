"""
Swap orchestrator for htlcswap.

Drives one swap leg from order creation to EVM settlement:

1. Resolve a working Bitcoin provider (failover, or simulation)
2. EVM -> BTC legs: fund the escrow first
3. Fund the HTLC (when we hold the funding key) and wait for confirmation
4. Detect funding at the HTLC address (polling, then manual confirmation)
5. Verify the funding output pays our script, then claim it with the secret
6. Release the counter-asset via escrow.completeSwap (at most once per swap)

Failures at any step end the swap in FAILED with the error recorded; the
orchestrator never retries a step on its own.
"""

import asyncio
import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import SwapConfig
from ..core import (
    SwapOrder, SwapPhase, SwapStatus, Utxo, DUST_THRESHOLD, LOCKTIME_THRESHOLD,
    generate_secret, generate_order_hash, generate_swap_id,
)
from ..errors import (
    InputError, NetworkError, ScriptMismatchError, SettlementError, SwapError,
    SwapTimeoutError,
)
from ..htlc.btc import HtlcContract, HtlcParams, HtlcVariant, verify_funding_output
from ..htlc.signer import BtcKey, TransactionBuilder
from .detector import ConfirmationCallback, FundingDetector
from .failover import BitcoinProvider, RpcFailoverProvider
from .registry import SwapRegistry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegDescriptor:
    """Shape of one swap direction."""
    name: str
    variant: HtlcVariant
    prefund_escrow: bool = False    # EVM side is locked before the BTC HTLC
    settle: bool = True             # call completeSwap after the claim


BTC_TO_EVM = LegDescriptor("btc_to_evm", HtlcVariant.GENERIC)
BTC_TO_EVM_PINNED = LegDescriptor("btc_to_evm_pinned", HtlcVariant.RECIPIENT_PINNED)
EVM_TO_BTC = LegDescriptor("evm_to_btc", HtlcVariant.DESTINATION, prefund_escrow=True)


@dataclass
class SwapParties:
    """Keys and addresses taking part in a leg."""
    claimer: BtcKey                         # signs the claim, receives the BTC
    refund_pubkey: bytes                    # key of the timelocked refund branch
    funder: Optional[BtcKey] = None         # None = HTLC is funded externally
    refunder: Optional[BtcKey] = None       # defaults to funder
    claim_destination: Optional[str] = None
    recipient_address: Optional[str] = None # pinned legs; defaults to claimer


class SwapOrchestrator:
    """
    Executes swap legs against a Bitcoin provider and an EVM escrow.

    Args:
        config: Swap configuration
        leg: Direction / HTLC variant
        parties: Keys involved on the Bitcoin side
        escrow: EscrowClient or SimulatedEscrow
        failover: Provider resolver (built from config if omitted)
        confirm_callback: Manual funding confirmation, see FundingDetector
        registry: Shared swap registry (a private one if omitted)
        builder: Transaction builder (built from config if omitted)
    """

    def __init__(self, config: SwapConfig, leg: LegDescriptor, parties: SwapParties,
                 escrow, *,
                 failover: Optional[RpcFailoverProvider] = None,
                 confirm_callback: Optional[ConfirmationCallback] = None,
                 registry: Optional[SwapRegistry] = None,
                 builder: Optional[TransactionBuilder] = None):
        self.config = config.validate()
        self.leg = leg
        self.parties = parties
        self.escrow = escrow
        self.failover = failover or RpcFailoverProvider.from_config(config)
        self.confirm_callback = confirm_callback
        self.registry = registry if registry is not None else SwapRegistry()
        self.builder = builder or TransactionBuilder(config.network, config.fee_sats)
        # Swap ids whose claim tx (and so the secret) has left this process
        self._revealed = set()

    # =========================================================================
    # Orders
    # =========================================================================

    def create_order(self, making_amount: int, taking_amount: int,
                     swap_id: Optional[str] = None) -> SwapOrder:
        """
        Create a fresh order with a new secret. No network access.

        Relative legs carry the configured delays; CLTV legs turn them into
        absolute unix timestamps from now.
        """
        if making_amount <= DUST_THRESHOLD + self.config.fee_sats:
            raise InputError(
                f"making_amount {making_amount} does not cover fee and dust limit"
            )
        if taking_amount <= 0:
            raise InputError("taking_amount must be positive")

        now = int(time.time())
        withdrawal = self.config.withdrawal_delay
        cancellation = self.config.cancellation_delay
        if self.leg.variant.absolute:
            withdrawal += now
            cancellation += now

        secret, hash_lock = generate_secret()
        order = SwapOrder(
            swap_id=swap_id or generate_swap_id(),
            order_hash=generate_order_hash(),
            secret=secret,
            hash_lock=hash_lock,
            making_amount=making_amount,
            taking_amount=taking_amount,
            src_chain_id=self.config.src_chain_id,
            dst_chain_id=self.config.dst_chain_id,
            withdrawal_timelock=withdrawal,
            cancellation_timelock=cancellation,
            created_at=now,
        )
        log.info(f"Created order {order.swap_id} ({self.leg.name}): "
                 f"{making_amount} sats for {taking_amount}, "
                 f"hashlock={hash_lock.sha256.hex()}")
        return order

    def htlc_for(self, order: SwapOrder) -> HtlcContract:
        """The HTLC contract of an order. Same order, same script and address."""
        parties = self.parties
        pinned = self.leg.variant is HtlcVariant.RECIPIENT_PINNED
        params = HtlcParams(
            order_hash=order.order_hash,
            hashlock=order.hash_lock.sha256,
            withdrawal_delay=order.withdrawal_timelock,
            cancellation_delay=order.cancellation_timelock,
            refund_pubkey=parties.refund_pubkey,
            claim_pubkey=None if pinned else parties.claimer.pubkey,
            recipient_address=((parties.recipient_address or parties.claimer.address)
                               if pinned else None),
            variant=self.leg.variant,
            lock_till_withdrawal=self.config.lock_till_withdrawal,
            network=self.config.network,
        )
        return HtlcContract.build(params)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_swap(self, order: SwapOrder,
                           cancel_event: Optional[asyncio.Event] = None) -> SwapStatus:
        """
        Run the leg to completion.

        Returns the swap status; errors are recorded on it (phase FAILED)
        rather than raised. A swap that already reached a terminal phase is
        returned unchanged. An interrupted swap resumes: transactions already
        recorded in `status.tx_hashes` are never sent again.
        """
        status = self.registry.add(order)
        if status.phase.is_terminal:
            log.info(f"Swap {order.swap_id} already {status.phase.value}; nothing to do")
            return status

        htlc = self.htlc_for(order)
        if status.phase is SwapPhase.CREATED:
            log.info(f"Executing swap {order.swap_id}: HTLC {htlc.address}")
        else:
            log.info(f"Resuming swap {order.swap_id} from {status.phase.value}: "
                     f"HTLC {htlc.address}")

        provider = None
        try:
            provider = await self.failover.get_working_provider(cancel_event)
            if provider.simulated:
                status.simulated = True
                log.warning(f"Swap {order.swap_id} is running against a "
                            f"SIMULATED Bitcoin provider")

            if self.leg.prefund_escrow and "evm_funding" not in status.tx_hashes:
                await self._prefund_escrow(order, status)

            if "btc" in status.tx_hashes:
                await self._confirm_claim(provider, order, status,
                                          status.tx_hashes["btc"], cancel_event)
            else:
                if "btc_funding" in status.tx_hashes:
                    log.info(f"Swap {order.swap_id}: funding "
                             f"{status.tx_hashes['btc_funding']} already broadcast")
                elif self.parties.funder is not None:
                    await self._fund_htlc(provider, order, htlc, status, cancel_event)
                else:
                    log.info(f"Waiting for external funding of {htlc.address}")

                utxo = await self._await_funding(provider, order, htlc, status,
                                                 cancel_event)
                await self._claim(provider, order, htlc, utxo, status, cancel_event)

            await self._settle(order, status)

        except Exception as e:
            self._fail(order, status, e)

        finally:
            if provider is not None:
                await provider.aclose()

        return status

    async def _prefund_escrow(self, order: SwapOrder, status: SwapStatus):
        result = await asyncio.to_thread(self.escrow.fund_escrow, order.taking_amount)
        if not result.success:
            raise SettlementError(f"fundEscrow failed: {result.error}")
        status.tx_hashes["evm_funding"] = result.tx_hash
        log.info(f"Swap {order.swap_id}: escrow funded ({result.tx_hash})")

    async def _fund_htlc(self, provider: BitcoinProvider, order: SwapOrder,
                         htlc: HtlcContract, status: SwapStatus,
                         cancel_event: Optional[asyncio.Event]):
        funder = self.parties.funder
        utxos = await provider.get_utxos(funder.address)
        funding = self.builder.build_funding_tx(funder, utxos, htlc, order.making_amount)

        txid = await provider.broadcast_tx(funding.hex)
        status.tx_hashes["btc_funding"] = txid
        self._advance(order, status, SwapPhase.HTLC_FUNDED,
                      f"Funding tx {txid} broadcast")

        await provider.wait_for_confirmation(
            txid,
            timeout=self.config.confirmation_timeout,
            poll_interval=self.config.confirmation_poll_interval,
            cancel_event=cancel_event,
        )

    async def _await_funding(self, provider: BitcoinProvider, order: SwapOrder,
                             htlc: HtlcContract, status: SwapStatus,
                             cancel_event: Optional[asyncio.Event]) -> Utxo:
        detector = FundingDetector(
            provider,
            max_attempts=self.config.max_attempts,
            poll_interval=self.config.poll_interval,
            confirm_callback=self.confirm_callback,
            manual_timeout=self.config.manual_confirmation_timeout,
            allow_simulated=self.config.accept_simulated_funding,
            simulated_amount=order.making_amount,
        )
        result = await detector.detect_funding(htlc.address, cancel_event)
        if not result.is_funded:
            raise SwapTimeoutError(
                f"HTLC {htlc.address} not funded after {result.attempts} polls"
            )

        self._advance(order, status, SwapPhase.HTLC_FUNDED,
                      f"Funding seen at {htlc.address} ({result.method})")

        if result.simulated:
            if not provider.simulated:
                raise SwapError(
                    f"Funding of {htlc.address} could not be verified on-chain"
                )
            status.simulated = True
            utxo = result.utxos[0]
        else:
            utxo = await self._verify_funding(provider, order, htlc, result.utxos, status)

        self._advance(order, status, SwapPhase.FUNDING_CONFIRMED,
                      f"{utxo.value} sats at {utxo.outpoint} ({result.method})")
        return utxo

    async def _verify_funding(self, provider: BitcoinProvider, order: SwapOrder,
                              htlc: HtlcContract, utxos: List[Utxo],
                              status: SwapStatus) -> Utxo:
        """Pick the largest UTXO and check it really pays the HTLC script."""
        utxo = max(utxos, key=lambda u: u.value)

        try:
            raw = await provider.get_raw_transaction_hex(utxo.txid)
        except NetworkError as e:
            if not provider.simulated:
                raise
            log.warning(f"Cannot verify simulated UTXO {utxo.outpoint}: {e}")
            status.simulated = True
            return utxo

        value = verify_funding_output(raw, utxo.vout, htlc.script)
        if value != utxo.value:
            raise ScriptMismatchError(
                f"Indexer reports {utxo.value} sats at {utxo.outpoint}, "
                f"transaction has {value}"
            )
        if value < order.making_amount:
            raise SwapError(
                f"HTLC underfunded: {value} sats, expected {order.making_amount}"
            )
        return utxo

    async def _claim(self, provider: BitcoinProvider, order: SwapOrder,
                     htlc: HtlcContract, utxo: Utxo, status: SwapStatus,
                     cancel_event: Optional[asyncio.Event]):
        claim = self.builder.build_claim_tx(
            utxo, htlc, order.secret, self.parties.claimer,
            destination=self.parties.claim_destination,
        )

        # Once broadcast is attempted the secret must be treated as public
        self._revealed.add(order.swap_id)
        txid = await provider.broadcast_tx(claim.hex)
        status.tx_hashes["btc"] = txid
        log.info(f"Swap {order.swap_id}: claim {txid} broadcast, "
                 f"{claim.output_value} sats to be paid out")

        await self._confirm_claim(provider, order, status, txid, cancel_event)

    async def _confirm_claim(self, provider: BitcoinProvider, order: SwapOrder,
                             status: SwapStatus, txid: str,
                             cancel_event: Optional[asyncio.Event]):
        await provider.wait_for_confirmation(
            txid,
            timeout=self.config.confirmation_timeout,
            poll_interval=self.config.confirmation_poll_interval,
            cancel_event=cancel_event,
        )
        self._advance(order, status, SwapPhase.COUNTERPARTY_CLAIMED,
                      f"Claim {txid} confirmed")

    async def _settle(self, order: SwapOrder, status: SwapStatus):
        if not self.leg.settle:
            self._advance(order, status, SwapPhase.SETTLEMENT_COMPLETE,
                          "Completed (no EVM settlement for this leg)")
            return

        tx_hash = self.registry.settlement(order.swap_id)
        if tx_hash is not None:
            log.info(f"Swap {order.swap_id} already settled on EVM: {tx_hash}")
        else:
            result = await asyncio.to_thread(
                self.escrow.complete_swap, order.taking_amount, order.swap_id
            )
            if not result.success:
                raise SettlementError(f"completeSwap failed: {result.error}")
            tx_hash = result.tx_hash
            self.registry.record_settlement(order.swap_id, tx_hash)

        status.tx_hashes["evm"] = tx_hash
        self._advance(order, status, SwapPhase.SETTLEMENT_COMPLETE,
                      f"Settled on EVM: {tx_hash}")

    # =========================================================================
    # Refund
    # =========================================================================

    async def refund(self, order: SwapOrder,
                     cancel_event: Optional[asyncio.Event] = None) -> SwapStatus:
        """
        Reclaim the HTLC output through the timelocked branch.

        Raises:
            InputError if no refund key is configured or nothing is locked
            TimelockNotElapsed if the cancellation timelock is still running
        """
        refunder = self.parties.refunder or self.parties.funder
        if refunder is None:
            raise InputError("No refund key configured")

        status = self.registry.add(order)
        htlc = self.htlc_for(order)

        provider = await self.failover.get_working_provider(cancel_event)
        try:
            utxos = await provider.get_utxos(htlc.address)
            if not utxos:
                raise InputError(f"Nothing locked at {htlc.address}")
            utxo = max(utxos, key=lambda u: u.value)

            current_height = None
            funding_confirmed_at = None
            median_time_past = None
            if htlc.params.variant.absolute:
                if htlc.params.cancellation_delay < LOCKTIME_THRESHOLD:
                    current_height = await provider.get_tip_height()
                else:
                    median_time_past = await provider.get_median_time_past()
            else:
                tx_status = await provider.get_tx_status(utxo.txid)
                if tx_status.get("confirmed"):
                    funding_confirmed_at = tx_status.get("block_time")

            refund = self.builder.build_refund_tx(
                utxo, htlc, refunder,
                current_height=current_height,
                funding_confirmed_at=funding_confirmed_at,
                median_time_past=median_time_past,
            )
            txid = await provider.broadcast_tx(refund.hex)
            status.tx_hashes["btc_refund"] = txid
            self._advance(order, status, SwapPhase.REFUNDED,
                          f"Refund {txid} broadcast")
            return status

        finally:
            await provider.aclose()

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self, swap_id: str) -> Optional[SwapStatus]:
        return self.registry.status(swap_id)

    def status_payload(self, order: SwapOrder) -> Dict[str, Any]:
        """Status view for callers. The secret only appears once revealed."""
        status = self.registry.status(order.swap_id) or SwapStatus()
        htlc = self.htlc_for(order)
        revealed = order.swap_id in self._revealed or "btc" in status.tx_hashes

        payload = status.to_dict()
        payload.update({
            "swapId": order.swap_id,
            "leg": self.leg.name,
            "htlcAddress": htlc.address,
            "htlcScriptHex": htlc.script_hex,
            "secretHashHex": order.hash_lock.sha256.hex(),
            "keccakHashHex": order.hash_lock.keccak256.hex(),
            "secretHex": order.secret.hex() if revealed else None,
            "makingAmount": order.making_amount,
            "takingAmount": order.taking_amount,
        })
        return payload

    # =========================================================================
    # Internal
    # =========================================================================

    def _advance(self, order: SwapOrder, status: SwapStatus, phase: SwapPhase,
                 message: str):
        if phase in status.history:
            log.debug(f"Swap {order.swap_id}: {phase.value} already recorded")
            return
        status.advance(phase, message)
        log.info(f"Swap {order.swap_id}: {phase.value} - {message}")

    def _fail(self, order: SwapOrder, status: SwapStatus, error: Exception):
        status.error = str(error) or type(error).__name__
        status.advance(SwapPhase.FAILED, status.error)
        if isinstance(error, SwapError):
            log.error(f"Swap {order.swap_id} failed: {status.error}")
        else:
            log.exception(f"Swap {order.swap_id} failed unexpectedly")
