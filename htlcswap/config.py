"""
Configuration for htlcswap.

One SwapConfig is built by the host (directly or via from_env) and injected into
the orchestrator. Nothing here is read from process-wide state at call time.
"""

import os
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Dict

from .core import (
    DEFAULT_FEE_SATS, BIP68_GRANULARITY,
    BTC_TESTNET_CHAIN_ID, SEPOLIA_CHAIN_ID,
)
from .errors import InputError


class NetworkMode(Enum):
    """Chosen at construction time; never switched by probing mid-flow."""
    LIVE = "live"
    SIMULATED = "simulated"


# Public Esplora-compatible testnet indexers
DEFAULT_TESTNET_ENDPOINTS = [
    "https://blockstream.info/testnet/api",
    "https://mempool.space/testnet/api",
    "https://api.blockcypher.com/v1/btc/test3",
    "https://btc.com/testnet/api",
]

DEFAULT_MAINNET_ENDPOINTS = [
    "https://blockstream.info/api",
    "https://mempool.space/api",
]

# Known address used for the cheap liveness probe
DEFAULT_PROBE_ADDRESS = "tb1qc8whyxx6x637j6328weljzw4clgq9sffcu5c43"

NETWORKS = ("mainnet", "testnet", "signet", "regtest")


@dataclass
class SwapConfig:
    """Swap engine configuration."""
    rpc_endpoints: List[str] = field(
        default_factory=lambda: list(DEFAULT_TESTNET_ENDPOINTS))
    network: str = "testnet"
    mode: NetworkMode = NetworkMode.LIVE

    # Fees (flat, no fee-market estimation)
    fee_sats: int = DEFAULT_FEE_SATS

    # Funding detection
    poll_interval: float = 30.0         # seconds
    max_attempts: int = 20
    manual_confirmation_timeout: float = 600.0

    # Indexer access
    request_timeout: float = 30.0
    confirmation_timeout: float = 300.0
    confirmation_poll_interval: float = 10.0
    probe_address: str = DEFAULT_PROBE_ADDRESS
    failover_backoff: float = 0.0       # seconds between endpoint probes

    # Degraded mode
    allow_simulation_fallback: bool = True
    accept_simulated_funding: bool = True
    simulated_wallet_value: int = 10_000_000   # sats the simulated payer wallet holds

    # HTLC timelocks (seconds for relative legs, height/timestamp for CLTV legs)
    withdrawal_delay: int = 512
    cancellation_delay: int = 1024
    lock_till_withdrawal: bool = False

    src_chain_id: int = BTC_TESTNET_CHAIN_ID
    dst_chain_id: int = SEPOLIA_CHAIN_ID

    def validate(self) -> "SwapConfig":
        """Raise InputError on inconsistent settings."""
        if self.network not in NETWORKS:
            raise InputError(f"Unknown network: {self.network}")
        if not self.rpc_endpoints and self.mode == NetworkMode.LIVE:
            raise InputError("rpc_endpoints must not be empty in live mode")
        if self.fee_sats < 0:
            raise InputError("fee_sats must be >= 0")
        if self.simulated_wallet_value < 0:
            raise InputError("simulated_wallet_value must be >= 0")
        if self.max_attempts < 1:
            raise InputError("max_attempts must be >= 1")
        for name in ("poll_interval", "request_timeout", "confirmation_timeout",
                     "confirmation_poll_interval", "manual_confirmation_timeout"):
            if getattr(self, name) <= 0:
                raise InputError(f"{name} must be positive")
        for name in ("withdrawal_delay", "cancellation_delay"):
            value = getattr(self, name)
            if value <= 0 or value % BIP68_GRANULARITY:
                raise InputError(
                    f"{name} must be a positive multiple of {BIP68_GRANULARITY} seconds"
                )
        return self

    @classmethod
    def from_env(cls, prefix: str = "HTLCSWAP_",
                 environ: Dict[str, str] = None) -> "SwapConfig":
        """
        Build a config from environment variables.

        HTLCSWAP_RPC_ENDPOINTS is comma separated; other variables map to the
        field of the same (upper-cased) name.
        """
        env = os.environ if environ is None else environ
        config = cls()

        endpoints = env.get(f"{prefix}RPC_ENDPOINTS", "")
        if endpoints:
            config.rpc_endpoints = [e.strip() for e in endpoints.split(",") if e.strip()]

        network = env.get(f"{prefix}NETWORK")
        if network:
            config.network = network.lower()
            if config.network == "mainnet" and not endpoints:
                config.rpc_endpoints = list(DEFAULT_MAINNET_ENDPOINTS)

        mode = env.get(f"{prefix}MODE")
        if mode:
            try:
                config.mode = NetworkMode(mode.lower())
            except ValueError:
                raise InputError(f"Unknown mode: {mode}")

        casts = {
            "fee_sats": int,
            "poll_interval": float,
            "max_attempts": int,
            "manual_confirmation_timeout": float,
            "request_timeout": float,
            "confirmation_timeout": float,
            "confirmation_poll_interval": float,
            "failover_backoff": float,
            "simulated_wallet_value": int,
            "withdrawal_delay": int,
            "cancellation_delay": int,
            "src_chain_id": int,
            "dst_chain_id": int,
        }
        for name, cast in casts.items():
            raw = env.get(f"{prefix}{name.upper()}")
            if raw is None or raw == "":
                continue
            try:
                setattr(config, name, cast(raw))
            except ValueError:
                raise InputError(f"{prefix}{name.upper()} is not a valid {cast.__name__}")

        for name in ("allow_simulation_fallback", "accept_simulated_funding",
                     "lock_till_withdrawal"):
            raw = env.get(f"{prefix}{name.upper()}")
            if raw:
                setattr(config, name, raw.lower() in ("1", "true", "yes"))

        probe = env.get(f"{prefix}PROBE_ADDRESS")
        if probe:
            config.probe_address = probe

        return config.validate()
