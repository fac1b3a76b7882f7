"""
Chain clients for htlcswap.

- BTC: Esplora REST indexer (plus an in-memory simulation)
- EVM: escrow contract via web3.py
"""

from .btc import BTCClient, SimulatedBTCClient
from .evm import EscrowClient, SimulatedEscrow

__all__ = ["BTCClient", "SimulatedBTCClient", "EscrowClient", "SimulatedEscrow"]
