"""
Bitcoin indexer client for htlcswap.

Talks to any Esplora-compatible REST API (blockstream.info, mempool.space, ...):

    GET  /address/{address}/utxo
    GET  /address/{address}
    GET  /tx/{txid}
    GET  /tx/{txid}/hex
    GET  /tx/{txid}/status
    GET  /blocks/tip/height
    GET  /blocks/tip/hash, /block/{hash}   (mediantime)
    POST /tx                     (raw hex, text/plain)

SimulatedBTCClient offers the same interface without any network access.
"""

import asyncio
import time
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Set, Tuple

import httpx
from bitcoin.core import CTransaction, b2lx

from ..core import Utxo, check_cancelled, sleep_or_cancel
from ..errors import NetworkError, SwapTimeoutError
from ..htlc.btc import OP_EQUAL, OP_HASH160, address_to_script_pubkey

log = logging.getLogger(__name__)

# Fixed-shape responses of the simulation client
MOCK_TXID = "1234567890abcdef" * 4
MOCK_UTXO_VALUE = 100000
MOCK_WALLET_TXID = "fedcba0987654321" * 4
MOCK_WALLET_VALUE = 10_000_000
MOCK_BLOCK_HEIGHT = 123456


@dataclass
class Confirmation:
    """Where and when a transaction was mined."""
    txid: str
    confirmed_at: int       # block time (unix)
    block_height: int


class BTCClient:
    """
    Async Esplora REST client.

    All transport problems surface as NetworkError; `unreachable` is set for
    timeouts, connection failures and 5xx responses.
    """

    simulated = False

    def __init__(self, endpoint: str, network: str = "testnet",
                 timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = endpoint.rstrip("/")
        self.network = network
        self._client = httpx.AsyncClient(
            base_url=self.endpoint, timeout=timeout, transport=transport
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException:
            raise NetworkError(f"Timeout: {method} {self.endpoint}{path}",
                               endpoint=self.endpoint, unreachable=True)
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise NetworkError(
                f"HTTP {code} from {self.endpoint}{path}: {e.response.text[:200]}",
                endpoint=self.endpoint, status_code=code, unreachable=code >= 500,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__} calling {self.endpoint}{path}: {e}",
                               endpoint=self.endpoint, unreachable=True)
        return response

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        try:
            return response.json()
        except ValueError:
            raise NetworkError(f"Malformed JSON from {self.endpoint}{path}",
                               endpoint=self.endpoint)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_utxos(self, address: str) -> List[Utxo]:
        """Unspent outputs of an address (confirmed and mempool)."""
        data = await self._get_json(f"/address/{address}/utxo")
        try:
            return [Utxo(txid=u["txid"], vout=int(u["vout"]), value=int(u["value"]))
                    for u in data]
        except (KeyError, TypeError, ValueError):
            raise NetworkError(f"Malformed UTXO list from {self.endpoint}",
                               endpoint=self.endpoint)

    async def get_balance(self, address: str) -> int:
        """Confirmed + unconfirmed balance in sats."""
        data = await self._get_json(f"/address/{address}")
        try:
            chain = data["chain_stats"]
            mempool = data.get("mempool_stats", {})
            return (chain["funded_txo_sum"] - chain["spent_txo_sum"] +
                    mempool.get("funded_txo_sum", 0) - mempool.get("spent_txo_sum", 0))
        except (KeyError, TypeError):
            raise NetworkError(f"Malformed address stats from {self.endpoint}",
                               endpoint=self.endpoint)

    async def get_raw_transaction_hex(self, txid: str) -> str:
        response = await self._request("GET", f"/tx/{txid}/hex")
        return response.text.strip()

    async def get_tx_status(self, txid: str) -> Dict[str, Any]:
        """{confirmed, block_height, block_time}"""
        return await self._get_json(f"/tx/{txid}/status")

    async def get_utxos_from_txid(self, txid: str,
                                  address: Optional[str] = None) -> List[Utxo]:
        """Outputs of a transaction, optionally only those paying `address`."""
        data = await self._get_json(f"/tx/{txid}")
        utxos = []
        for i, out in enumerate(data.get("vout", [])):
            if address and out.get("scriptpubkey_address") != address:
                continue
            utxos.append(Utxo(txid=txid, vout=i, value=int(out["value"])))
        return utxos

    async def get_tip_height(self) -> int:
        response = await self._request("GET", "/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError:
            raise NetworkError(f"Malformed tip height from {self.endpoint}",
                               endpoint=self.endpoint)

    async def get_median_time_past(self) -> int:
        """Median time past of the chain tip (the `mediantime` of its header)."""
        response = await self._request("GET", "/blocks/tip/hash")
        block_hash = response.text.strip()
        data = await self._get_json(f"/block/{block_hash}")
        try:
            return int(data["mediantime"])
        except (KeyError, TypeError, ValueError):
            raise NetworkError(f"Malformed block header from {self.endpoint}",
                               endpoint=self.endpoint)

    # =========================================================================
    # Writes
    # =========================================================================

    async def broadcast_tx(self, raw_hex: str) -> str:
        """Broadcast a signed transaction. Returns the txid."""
        response = await self._request(
            "POST", "/tx", content=raw_hex, headers={"Content-Type": "text/plain"}
        )
        txid = response.text.strip()
        log.info(f"Broadcast via {self.endpoint}: {txid}")
        return txid

    # =========================================================================
    # Waits
    # =========================================================================

    async def wait_for_confirmation(self, txid: str, timeout: float = 300.0,
                                    poll_interval: float = 10.0,
                                    cancel_event: Optional[asyncio.Event] = None
                                    ) -> Confirmation:
        """
        Poll until `txid` is mined.

        Raises:
            SwapTimeoutError after `timeout` seconds
            SwapCancelled if `cancel_event` is set
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            check_cancelled(cancel_event)
            try:
                status = await self.get_tx_status(txid)
            except NetworkError as e:
                # 404 until the indexer has seen the tx
                log.debug(f"Status of {txid} unavailable: {e}")
            else:
                if status.get("confirmed"):
                    confirmation = Confirmation(
                        txid=txid,
                        confirmed_at=int(status.get("block_time") or time.time()),
                        block_height=int(status.get("block_height") or 0),
                    )
                    log.info(f"{txid} confirmed at height {confirmation.block_height}")
                    return confirmation

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise SwapTimeoutError(
                    f"Transaction {txid} not confirmed within {timeout:.0f}s"
                )
            await sleep_or_cancel(min(poll_interval, remaining), cancel_event)

    async def wait_for_utxo(self, address: str, timeout: float = 300.0,
                            poll_interval: float = 10.0,
                            cancel_event: Optional[asyncio.Event] = None
                            ) -> List[Utxo]:
        """Poll until `address` holds at least one UTXO."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            check_cancelled(cancel_event)
            utxos = await self.get_utxos(address)
            if utxos:
                return utxos
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise SwapTimeoutError(f"No UTXO at {address} within {timeout:.0f}s")
            await sleep_or_cancel(min(poll_interval, remaining), cancel_event)


class SimulatedBTCClient:
    """
    In-memory stand-in for BTCClient.

    Broadcast transactions are kept in a ledger so their outputs become
    spendable UTXOs. Addresses the ledger has never seen report one mock UTXO:
    `mock_value` sats for script-hash (HTLC) addresses and `wallet_value`
    sats for key addresses, so a simulated payer can fund an HTLC.
    """

    simulated = True
    endpoint = "simulated"

    def __init__(self, network: str = "testnet", mock_value: int = MOCK_UTXO_VALUE,
                 wallet_value: int = MOCK_WALLET_VALUE,
                 block_height: int = MOCK_BLOCK_HEIGHT):
        self.network = network
        self.mock_value = mock_value
        self.wallet_value = wallet_value
        self.block_height = block_height
        self._txs: Dict[str, str] = {}
        self._outputs: Dict[bytes, List[Utxo]] = {}
        self._spent: Set[Tuple[str, int]] = set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        pass

    async def get_utxos(self, address: str) -> List[Utxo]:
        spk = address_to_script_pubkey(address, self.network)
        if spk not in self._outputs:
            if len(spk) == 23 and spk[0] == OP_HASH160 and spk[-1] == OP_EQUAL:
                return [Utxo(txid=MOCK_TXID, vout=0, value=self.mock_value)]
            return [Utxo(txid=MOCK_WALLET_TXID, vout=0, value=self.wallet_value)]
        return [u for u in self._outputs[spk] if (u.txid, u.vout) not in self._spent]

    async def get_balance(self, address: str) -> int:
        return sum(u.value for u in await self.get_utxos(address))

    async def get_raw_transaction_hex(self, txid: str) -> str:
        try:
            return self._txs[txid]
        except KeyError:
            raise NetworkError(f"Transaction not found: {txid}",
                               endpoint=self.endpoint, status_code=404)

    async def get_tx_status(self, txid: str) -> Dict[str, Any]:
        return {
            "confirmed": True,
            "block_height": self.block_height,
            "block_time": int(time.time()),
        }

    async def get_utxos_from_txid(self, txid: str,
                                  address: Optional[str] = None) -> List[Utxo]:
        tx = CTransaction.deserialize(bytes.fromhex(await self.get_raw_transaction_hex(txid)))
        wanted = address_to_script_pubkey(address, self.network) if address else None
        return [
            Utxo(txid=txid, vout=i, value=out.nValue)
            for i, out in enumerate(tx.vout)
            if wanted is None or bytes(out.scriptPubKey) == wanted
        ]

    async def get_tip_height(self) -> int:
        return self.block_height

    async def get_median_time_past(self) -> int:
        return int(time.time())

    async def broadcast_tx(self, raw_hex: str) -> str:
        try:
            tx = CTransaction.deserialize(bytes.fromhex(raw_hex))
        except Exception as e:
            raise NetworkError(f"Rejected transaction: {e}",
                               endpoint=self.endpoint, status_code=400)

        txid = b2lx(tx.GetTxid())
        for txin in tx.vin:
            self._spent.add((b2lx(txin.prevout.hash), txin.prevout.n))
        for i, out in enumerate(tx.vout):
            self._outputs.setdefault(bytes(out.scriptPubKey), []).append(
                Utxo(txid=txid, vout=i, value=out.nValue)
            )
        self._txs[txid] = raw_hex
        log.info(f"[simulated] Broadcast {txid}")
        return txid

    async def wait_for_confirmation(self, txid: str, timeout: float = 300.0,
                                    poll_interval: float = 10.0,
                                    cancel_event: Optional[asyncio.Event] = None
                                    ) -> Confirmation:
        check_cancelled(cancel_event)
        return Confirmation(txid=txid, confirmed_at=int(time.time()),
                            block_height=self.block_height)

    async def wait_for_utxo(self, address: str, timeout: float = 300.0,
                            poll_interval: float = 10.0,
                            cancel_event: Optional[asyncio.Event] = None
                            ) -> List[Utxo]:
        check_cancelled(cancel_event)
        return await self.get_utxos(address)
