"""
htlcswap - Bitcoin HTLC atomic swaps against an EVM escrow

Locks BTC in a P2SH hash time-locked contract, claims it with the swap secret
and releases the counter-asset from an EVM escrow contract.

Usage:
    from htlcswap import SwapConfig, SwapOrchestrator, SwapParties, BTC_TO_EVM
    from htlcswap import SimulatedEscrow, load_key

    config = SwapConfig.from_env()
    claimer = load_key(wif, network=config.network)
    parties = SwapParties(claimer=claimer, refund_pubkey=maker_pubkey)

    orchestrator = SwapOrchestrator(config, BTC_TO_EVM, parties, SimulatedEscrow(10**9))
    order = orchestrator.create_order(100000, 50_000_000)   # sats, token units
    status = await orchestrator.execute_swap(order)
"""

from .core import (
    SwapPhase,
    SwapOrder,
    SwapStatus,
    HashLock,
    Utxo,
    generate_secret,
    verify_preimage,
    btc_to_sats,
    sats_to_btc,
)
from .config import SwapConfig, NetworkMode
from .errors import (
    SwapError,
    InputError,
    InsufficientFunds,
    TimelockNotElapsed,
    NetworkError,
    SwapTimeoutError,
    ScriptMismatchError,
    SettlementError,
    SwapCancelled,
)

from .chains.btc import BTCClient, SimulatedBTCClient
from .chains.evm import EVMConfig, EscrowClient, SimulatedEscrow

from .htlc.btc import HtlcParams, HtlcContract, HtlcVariant, build_htlc_script
from .htlc.signer import BtcKey, TransactionBuilder, load_key, extract_secret_from_tx

from .swap.failover import RpcFailoverProvider
from .swap.detector import FundingDetector, FundingResult
from .swap.registry import SwapRegistry
from .swap.executor import (
    SwapOrchestrator, SwapParties, LegDescriptor,
    BTC_TO_EVM, BTC_TO_EVM_PINNED, EVM_TO_BTC,
)

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapPhase",
    "SwapOrder",
    "SwapStatus",
    "HashLock",
    "Utxo",
    "SwapConfig",
    "NetworkMode",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "btc_to_sats",
    "sats_to_btc",
    # Errors
    "SwapError",
    "InputError",
    "InsufficientFunds",
    "TimelockNotElapsed",
    "NetworkError",
    "SwapTimeoutError",
    "ScriptMismatchError",
    "SettlementError",
    "SwapCancelled",
    # Clients
    "BTCClient",
    "SimulatedBTCClient",
    "EVMConfig",
    "EscrowClient",
    "SimulatedEscrow",
    # HTLC
    "HtlcParams",
    "HtlcContract",
    "HtlcVariant",
    "build_htlc_script",
    "BtcKey",
    "TransactionBuilder",
    "load_key",
    "extract_secret_from_tx",
    # Swap
    "RpcFailoverProvider",
    "FundingDetector",
    "FundingResult",
    "SwapRegistry",
    "SwapOrchestrator",
    "SwapParties",
    "LegDescriptor",
    "BTC_TO_EVM",
    "BTC_TO_EVM_PINNED",
    "EVM_TO_BTC",
]
