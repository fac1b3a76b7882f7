"""
Hybrid HTLC funding detection.

    IDLE -> POLLING -> FUNDED
                    -> EXHAUSTED -> MANUAL_WAIT -> FUNDED_MANUAL
                                                -> FUNDED_SIMULATED

Polling queries the HTLC address every `poll_interval` seconds, up to
`max_attempts` times. An unreachable indexer (timeout, 5xx) ends polling early
instead of burning the remaining attempts; any other provider error counts as
a failed poll. The manual path awaits an injected async confirmation callback,
checks once more, and if the address is still empty returns a flagged
simulated record (method "manual").
"""

import asyncio
import secrets
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from ..core import Utxo, check_cancelled, sleep_or_cancel
from ..chains.btc import MOCK_UTXO_VALUE
from ..errors import NetworkError, SwapTimeoutError

log = logging.getLogger(__name__)

# Awaited with the HTLC address; returns once an operator confirms funding
ConfirmationCallback = Callable[[str], Awaitable[None]]


class DetectionState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    FUNDED = "funded"
    EXHAUSTED = "exhausted"
    MANUAL_WAIT = "manual_wait"
    FUNDED_MANUAL = "funded_manual"
    FUNDED_SIMULATED = "funded_simulated"
    NOT_FUNDED = "not_funded"


@dataclass
class FundingResult:
    """Outcome of funding detection."""
    is_funded: bool
    utxos: List[Utxo] = field(default_factory=list)
    tx_hash: Optional[str] = None
    amount: Optional[int] = None
    method: str = "automatic"       # automatic or manual
    simulated: bool = False         # True = no UTXO was actually observed
    attempts: int = 0

    def to_dict(self):
        return {
            "isFunded": self.is_funded,
            "utxos": [u.to_dict() for u in self.utxos],
            "txHash": self.tx_hash,
            "amount": self.amount,
            "method": self.method,
            "simulated": self.simulated,
        }


class FundingDetector:
    """
    Detects funding of one HTLC address.

    Args:
        provider: Object with `async get_utxos(address)`
        max_attempts: Automatic polls before giving up
        poll_interval: Seconds between polls
        confirm_callback: Awaited on the manual path; None skips the wait
        manual_timeout: Ceiling for the confirmation callback
        allow_simulated: Return a simulated record when the manual path still
            finds nothing; otherwise report not funded
    """

    def __init__(self, provider, max_attempts: int = 20, poll_interval: float = 30.0,
                 confirm_callback: Optional[ConfirmationCallback] = None,
                 manual_timeout: float = 600.0,
                 allow_simulated: bool = True,
                 simulated_amount: int = MOCK_UTXO_VALUE):
        self.provider = provider
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.confirm_callback = confirm_callback
        self.manual_timeout = manual_timeout
        self.allow_simulated = allow_simulated
        self.simulated_amount = simulated_amount
        self.state = DetectionState.IDLE
        self.attempts = 0

    @staticmethod
    def _funded(utxos: List[Utxo], method: str, attempts: int) -> FundingResult:
        return FundingResult(
            is_funded=True,
            utxos=utxos,
            tx_hash=utxos[0].txid,
            amount=sum(u.value for u in utxos),
            method=method,
            attempts=attempts,
        )

    async def detect_funding(self, address: str,
                             cancel_event: Optional[asyncio.Event] = None
                             ) -> FundingResult:
        """Run polling, then the manual path if needed."""
        utxos = await self._poll(address, cancel_event)
        if utxos:
            self.state = DetectionState.FUNDED
            log.info(f"HTLC {address} funded after {self.attempts} polls")
            return self._funded(utxos, "automatic", self.attempts)

        self.state = DetectionState.EXHAUSTED
        return await self._manual(address, cancel_event)

    async def _poll(self, address: str,
                    cancel_event: Optional[asyncio.Event]) -> List[Utxo]:
        self.state = DetectionState.POLLING
        self.attempts = 0

        while self.attempts < self.max_attempts:
            check_cancelled(cancel_event)
            self.attempts += 1
            try:
                utxos = await self.provider.get_utxos(address)
            except NetworkError as e:
                if e.unreachable:
                    log.warning(f"Indexer unreachable on poll {self.attempts}, "
                                f"switching to manual confirmation: {e}")
                    return []
                log.warning(f"Poll {self.attempts}/{self.max_attempts} failed: {e}")
            except Exception as e:
                log.warning(f"Poll {self.attempts}/{self.max_attempts} failed: {e!r}")
            else:
                if utxos:
                    return utxos
                log.info(f"Poll {self.attempts}/{self.max_attempts}: "
                         f"no funds at {address} yet")

            if self.attempts < self.max_attempts:
                await sleep_or_cancel(self.poll_interval, cancel_event)

        log.warning(f"No funding seen at {address} after {self.attempts} polls")
        return []

    async def _manual(self, address: str,
                      cancel_event: Optional[asyncio.Event]) -> FundingResult:
        self.state = DetectionState.MANUAL_WAIT

        if self.confirm_callback is not None:
            log.info(f"Waiting for manual funding confirmation of {address}")
            try:
                await asyncio.wait_for(self.confirm_callback(address),
                                       timeout=self.manual_timeout)
            except asyncio.TimeoutError:
                raise SwapTimeoutError(
                    f"No manual funding confirmation within {self.manual_timeout:.0f}s"
                )
        check_cancelled(cancel_event)

        try:
            utxos = await self.provider.get_utxos(address)
        except Exception as e:
            log.warning(f"Final funding check failed: {e!r}")
            utxos = []

        if utxos:
            self.state = DetectionState.FUNDED_MANUAL
            log.info(f"HTLC {address} funded (confirmed manually)")
            return self._funded(utxos, "manual", self.attempts)

        if not self.allow_simulated:
            self.state = DetectionState.NOT_FUNDED
            log.warning(f"HTLC {address} still empty after manual confirmation")
            return FundingResult(is_funded=False, method="manual",
                                 attempts=self.attempts)

        self.state = DetectionState.FUNDED_SIMULATED
        txid = secrets.token_hex(32)
        log.warning(f"HTLC {address} not observable on-chain; returning SIMULATED "
                    f"funding record {txid}")
        return FundingResult(
            is_funded=True,
            utxos=[Utxo(txid=txid, vout=0, value=self.simulated_amount)],
            tx_hash=txid,
            amount=self.simulated_amount,
            method="manual",
            simulated=True,
            attempts=self.attempts,
        )
