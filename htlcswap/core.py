"""
Core types and helpers for htlcswap.
"""

import asyncio
import hashlib
import secrets
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple

from Crypto.Hash import keccak

from .errors import InputError, SwapCancelled


class SwapPhase(Enum):
    """Swap lifecycle phases."""
    CREATED = "created"                         # Order exists, nothing on-chain
    HTLC_FUNDED = "htlc_funded"                 # BTC locked at the HTLC address
    FUNDING_CONFIRMED = "funding_confirmed"     # Funding detected and verified
    COUNTERPARTY_CLAIMED = "counterparty_claimed"  # Claim tx revealed the secret
    SETTLEMENT_COMPLETE = "completed"           # EVM counter-asset released
    REFUNDED = "refunded"                       # Refund path taken after timeout
    FAILED = "failed"                           # Terminal error

    @property
    def is_terminal(self) -> bool:
        return self in (SwapPhase.SETTLEMENT_COMPLETE, SwapPhase.REFUNDED,
                        SwapPhase.FAILED)


@dataclass(frozen=True)
class HashLock:
    """Both digests of one secret: SHA-256 for Bitcoin, Keccak-256 for EVM."""
    sha256: bytes
    keccak256: bytes

    @classmethod
    def from_secret(cls, secret: bytes) -> "HashLock":
        return cls(sha256=sha256(secret), keccak256=keccak256(secret))


@dataclass(frozen=True)
class SwapOrder:
    """One cross-chain exchange, bound to a single secret and order hash."""
    swap_id: str
    order_hash: bytes
    secret: bytes = field(repr=False)
    hash_lock: HashLock
    making_amount: int      # sats locked on the Bitcoin side
    taking_amount: int      # smallest unit of the EVM asset
    src_chain_id: Optional[int] = None
    dst_chain_id: Optional[int] = None
    # Seconds for relative legs; absolute locktimes for CLTV legs
    withdrawal_timelock: int = 0
    cancellation_timelock: int = 0
    created_at: int = 0


@dataclass(frozen=True)
class Utxo:
    """Unspent output reference."""
    txid: str
    vout: int
    value: int              # sats

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    def to_dict(self) -> Dict[str, Any]:
        return {"txid": self.txid, "vout": self.vout, "value": self.value}


@dataclass
class SwapStatus:
    """Mutable progress record for one swap, owned by its orchestrator."""
    phase: SwapPhase = SwapPhase.CREATED
    message: str = ""
    tx_hashes: Dict[str, str] = field(default_factory=dict)
    history: List[SwapPhase] = field(default_factory=lambda: [SwapPhase.CREATED])
    error: Optional[str] = None
    simulated: bool = False

    def advance(self, phase: SwapPhase, message: str = ""):
        self.phase = phase
        self.message = message
        self.history.append(phase)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "txHashes": dict(self.tx_hashes),
            "history": [p.value for p in self.history],
            "error": self.error,
            "simulated": self.simulated,
        }


# =============================================================================
# Hashing / Secrets
# =============================================================================

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def generate_secret() -> Tuple[bytes, HashLock]:
    """
    Generate a random 32-byte secret and its hashlock.

    Returns:
        (secret, HashLock)
    """
    secret = secrets.token_bytes(SECRET_SIZE)
    return secret, HashLock.from_secret(secret)


def generate_order_hash() -> bytes:
    """Random 32-byte uniqueness tag embedded in the HTLC script."""
    return secrets.token_bytes(32)


def generate_swap_id() -> str:
    return f"swap_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def verify_preimage(preimage: bytes, hashlock: bytes) -> bool:
    """True if SHA256(preimage) == hashlock."""
    return sha256(preimage) == hashlock


def parse_hex32(value, name: str = "value") -> bytes:
    """Accept 32 raw bytes or a hex string (optionally 0x-prefixed)."""
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        try:
            value = bytes.fromhex(text)
        except ValueError:
            raise InputError(f"{name} is not valid hex")
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise InputError(f"{name} must be 32 bytes")
    return bytes(value)


def sats_to_btc(sats: int) -> float:
    """Convert satoshis to BTC."""
    return sats / SATS_PER_BTC


def btc_to_sats(btc: float) -> int:
    """Convert BTC to satoshis."""
    return int(round(btc * SATS_PER_BTC))


# =============================================================================
# Cooperative cancellation
# =============================================================================

def check_cancelled(cancel_event: Optional[asyncio.Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise SwapCancelled("Cancelled by caller")


async def sleep_or_cancel(seconds: float,
                          cancel_event: Optional[asyncio.Event] = None):
    """Sleep for `seconds`, waking early with SwapCancelled if the event is set."""
    check_cancelled(cancel_event)
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise SwapCancelled("Cancelled by caller")


# =============================================================================
# Constants
# =============================================================================

SATS_PER_BTC = 100_000_000
SECRET_SIZE = 32

DUST_THRESHOLD = 546                # sats
DEFAULT_FEE_SATS = 1000             # flat fee per transaction

# Chain ids used in orders
BTC_TESTNET_CHAIN_ID = 99999
SEPOLIA_CHAIN_ID = 11155111

# BIP68 time-based relative locks are counted in 512 second units
BIP68_GRANULARITY = 512

# nLockTime values below this are block heights, above are unix timestamps
LOCKTIME_THRESHOLD = 500_000_000

# Timestamp locktimes are final against median-time-past, roughly an hour behind
MEDIAN_TIME_PAST_LAG = 3600
