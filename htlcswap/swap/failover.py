"""
Endpoint failover for the Bitcoin indexer.

Public block explorers come and go; RpcFailoverProvider walks an ordered list
of endpoints, probing each with a cheap UTXO lookup, and hands back a client
bound to the first one that answers. When every endpoint fails it returns a
SimulatedBTCClient (if allowed) instead of aborting the swap.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Union

from ..config import NetworkMode, DEFAULT_PROBE_ADDRESS
from ..core import check_cancelled, sleep_or_cancel
from ..chains.btc import BTCClient, SimulatedBTCClient, MOCK_WALLET_VALUE
from ..errors import NetworkError, InputError

log = logging.getLogger(__name__)

BitcoinProvider = Union[BTCClient, SimulatedBTCClient]


class RpcFailoverProvider:
    """
    Ordered endpoint list with a rotation cursor.

    The endpoint list is never mutated; only the cursor moves.
    """

    def __init__(self, endpoints: List[str], network: str = "testnet",
                 mode: NetworkMode = NetworkMode.LIVE,
                 probe_address: str = DEFAULT_PROBE_ADDRESS,
                 allow_simulation: bool = True,
                 timeout: float = 30.0,
                 backoff: float = 0.0,
                 simulated_wallet_value: int = MOCK_WALLET_VALUE,
                 client_factory: Optional[Callable[[str], BTCClient]] = None):
        if mode == NetworkMode.LIVE and not endpoints:
            raise InputError("At least one endpoint is required in live mode")
        self.endpoints = tuple(endpoints)
        self.network = network
        self.mode = mode
        self.probe_address = probe_address
        self.allow_simulation = allow_simulation
        self.timeout = timeout
        self.backoff = backoff
        self.simulated_wallet_value = simulated_wallet_value
        self.client_factory = client_factory or self._default_factory
        self._cursor = 0

    @classmethod
    def from_config(cls, config, **kwargs) -> "RpcFailoverProvider":
        return cls(
            config.rpc_endpoints,
            network=config.network,
            mode=config.mode,
            probe_address=config.probe_address,
            allow_simulation=config.allow_simulation_fallback,
            timeout=config.request_timeout,
            backoff=config.failover_backoff,
            simulated_wallet_value=config.simulated_wallet_value,
            **kwargs,
        )

    def _default_factory(self, endpoint: str) -> BTCClient:
        return BTCClient(endpoint, network=self.network, timeout=self.timeout)

    def _simulated(self) -> SimulatedBTCClient:
        return SimulatedBTCClient(network=self.network,
                                  wallet_value=self.simulated_wallet_value)

    def get_current_endpoint(self) -> Optional[str]:
        if not self.endpoints:
            return None
        return self.endpoints[self._cursor]

    def rotate_endpoint(self) -> Optional[str]:
        """Advance the cursor and return the new current endpoint."""
        if not self.endpoints:
            return None
        self._cursor = (self._cursor + 1) % len(self.endpoints)
        endpoint = self.endpoints[self._cursor]
        log.info(f"Rotated to endpoint {endpoint}")
        return endpoint

    async def get_working_provider(self, cancel_event: Optional[asyncio.Event] = None
                                   ) -> BitcoinProvider:
        """
        Probe endpoints from the cursor onwards until one answers.

        Any error from a probe counts as a failed endpoint.

        Returns:
            BTCClient bound to the working endpoint (the cursor stays on it),
            or SimulatedBTCClient in simulated mode / after full exhaustion

        Raises:
            NetworkError if all endpoints fail and simulation is not allowed
        """
        if self.mode == NetworkMode.SIMULATED:
            log.info("Simulated network mode: using in-memory Bitcoin client")
            return self._simulated()

        errors = []
        for attempt in range(len(self.endpoints)):
            check_cancelled(cancel_event)
            endpoint = self.get_current_endpoint()
            client = self.client_factory(endpoint)
            working = False
            try:
                await client.get_utxos(self.probe_address)
                working = True
            except Exception as e:
                log.warning(f"Endpoint {endpoint} failed: {e!r}")
                errors.append(f"{endpoint}: {e}")
            finally:
                if not working:
                    await client.aclose()

            if working:
                log.info(f"Using Bitcoin endpoint {endpoint}")
                return client

            self.rotate_endpoint()
            if self.backoff and attempt < len(self.endpoints) - 1:
                await sleep_or_cancel(self.backoff, cancel_event)

        if not self.allow_simulation:
            raise NetworkError("All Bitcoin endpoints failed: " + "; ".join(errors))

        log.warning("All Bitcoin endpoints failed; degrading to simulation client")
        return self._simulated()
