"""
Bitcoin HTLC scripts and P2SH address derivation for htlcswap.

Every script starts with the order hash as an anti-replay tag:

    <order_hash> OP_DROP
    [<withdrawal> OP_CHECKSEQUENCEVERIFY OP_DROP]       # optional gate
    OP_IF
        OP_SHA256 <hashlock> OP_EQUALVERIFY
        <claim_pubkey> OP_CHECKSIG
    OP_ELSE
        <cancellation> OP_CHECKSEQUENCEVERIFY OP_DROP
        <refund_pubkey> OP_CHECKSIG
    OP_ENDIF

Variants:
    GENERIC           - source leg, relative (BIP68 seconds) timelocks
    RECIPIENT_PINNED  - IF branch checks OP_DUP OP_HASH160 <pkh> instead of a
                        fixed pubkey, so the claim can only pay one address owner
    DESTINATION       - destination leg, absolute OP_CHECKLOCKTIMEVERIFY timelocks

The script is wrapped in P2SH. To claim (with preimage):
    <signature> <preimage> OP_TRUE <redeemScript>
    <signature> <pubkey> <preimage> OP_TRUE <redeemScript>   (recipient-pinned)

To refund (after timeout):
    <signature> OP_FALSE <redeemScript>
"""

import hashlib
import struct
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional, List, Tuple

import base58
import bech32
from Crypto.Hash import RIPEMD160
from bitcoin.core import CTransaction

from ..core import BIP68_GRANULARITY, LOCKTIME_THRESHOLD
from ..errors import InputError, ScriptMismatchError

log = logging.getLogger(__name__)


# Bitcoin Script opcodes
OP_0 = 0x00
OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_TRUE = 0x51
OP_1 = 0x51
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKLOCKTIMEVERIFY = 0xb1
OP_CHECKSEQUENCEVERIFY = 0xb2

# BIP68
SEQUENCE_TYPE_FLAG = 1 << 22
SEQUENCE_LOCKTIME_MASK = 0x0000ffff

# Version bytes / prefixes per network
NETWORK_PARAMS = {
    "mainnet": {"p2pkh": 0x00, "p2sh": 0x05, "wif": 0x80, "hrp": "bc"},
    "testnet": {"p2pkh": 0x6f, "p2sh": 0xc4, "wif": 0xef, "hrp": "tb"},
    "signet": {"p2pkh": 0x6f, "p2sh": 0xc4, "wif": 0xef, "hrp": "tb"},
    "regtest": {"p2pkh": 0x6f, "p2sh": 0xc4, "wif": 0xef, "hrp": "bcrt"},
}


def network_params(network: str) -> dict:
    try:
        return NETWORK_PARAMS[network]
    except KeyError:
        raise InputError(f"Unknown network: {network}")


def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([OP_PUSHDATA1, length]) + data
    elif length <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack('<H', length) + data
    else:
        return bytes([OP_PUSHDATA4]) + struct.pack('<I', length) + data


def push_int(n: int) -> bytes:
    """Push integer to script as a minimally encoded script number."""
    if n == 0:
        return bytes([OP_0])
    elif 1 <= n <= 16:
        return bytes([0x50 + n])  # OP_1 through OP_16
    negative = n < 0
    abs_n = abs(n)
    result = []
    while abs_n:
        result.append(abs_n & 0xff)
        abs_n >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return push_data(bytes(result))


def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    return RIPEMD160.new(sha256(data)).digest()


def bip68_sequence(seconds: int) -> int:
    """
    Encode a relative time lock as a BIP68 sequence value.

    Only whole 512 second units are representable; anything else is rejected
    rather than silently rounded.
    """
    if seconds <= 0 or seconds % BIP68_GRANULARITY:
        raise InputError(
            f"Relative timelock must be a positive multiple of "
            f"{BIP68_GRANULARITY} seconds, got {seconds}"
        )
    units = seconds // BIP68_GRANULARITY
    if units > SEQUENCE_LOCKTIME_MASK:
        raise InputError(f"Relative timelock too large: {seconds}s")
    return SEQUENCE_TYPE_FLAG | units


def _check_pubkey(pubkey: bytes, name: str):
    if len(pubkey) != 33 or pubkey[0] not in (0x02, 0x03):
        raise InputError(f"{name} must be a 33-byte compressed public key")


def _check_hash32(value: bytes, name: str):
    if len(value) != 32:
        raise InputError(f"{name} must be 32 bytes, got {len(value)}")


# =============================================================================
# Script builders
# =============================================================================

def create_src_htlc_script(order_hash: bytes, hashlock: bytes,
                           withdrawal_delay: int, cancellation_delay: int,
                           claim_pubkey: bytes, refund_pubkey: bytes,
                           lock_till_withdrawal: bool = True) -> bytes:
    """
    Generic (source leg) HTLC with relative timelocks.

    Args:
        order_hash: 32-byte anti-replay tag
        hashlock: SHA256(secret)
        withdrawal_delay: Seconds before the claim path opens (gate)
        cancellation_delay: Seconds before the refund path opens
        claim_pubkey: Compressed pubkey for the hashlock branch
        refund_pubkey: Compressed pubkey for the refund branch
        lock_till_withdrawal: Emit the CSV gate in front of OP_IF

    Returns:
        Redeem script bytes
    """
    _check_hash32(order_hash, "order_hash")
    _check_hash32(hashlock, "hashlock")
    _check_pubkey(claim_pubkey, "claim_pubkey")
    _check_pubkey(refund_pubkey, "refund_pubkey")

    script = push_data(order_hash) + bytes([OP_DROP])
    if lock_till_withdrawal:
        script += push_int(bip68_sequence(withdrawal_delay))
        script += bytes([OP_CHECKSEQUENCEVERIFY, OP_DROP])

    script += bytes([OP_IF, OP_SHA256])
    script += push_data(hashlock)
    script += bytes([OP_EQUALVERIFY])
    script += push_data(claim_pubkey)
    script += bytes([OP_CHECKSIG])

    script += bytes([OP_ELSE])
    script += push_int(bip68_sequence(cancellation_delay))
    script += bytes([OP_CHECKSEQUENCEVERIFY, OP_DROP])
    script += push_data(refund_pubkey)
    script += bytes([OP_CHECKSIG, OP_ENDIF])

    return script


def create_recipient_pinned_script(order_hash: bytes, hashlock: bytes,
                                   withdrawal_delay: int, cancellation_delay: int,
                                   recipient_address: str, refund_pubkey: bytes,
                                   network: str = "testnet",
                                   lock_till_withdrawal: bool = True) -> bytes:
    """
    HTLC whose hashlock branch pays only the owner of `recipient_address`.

    The IF branch checks OP_DUP OP_HASH160 <pkh> OP_EQUALVERIFY OP_CHECKSIG
    against the 20-byte pubkey hash of a P2PKH or P2WPKH address.
    """
    _check_hash32(order_hash, "order_hash")
    _check_hash32(hashlock, "hashlock")
    _check_pubkey(refund_pubkey, "refund_pubkey")
    recipient_hash = pubkey_hash_from_address(recipient_address, network)

    script = push_data(order_hash) + bytes([OP_DROP])
    if lock_till_withdrawal:
        script += push_int(bip68_sequence(withdrawal_delay))
        script += bytes([OP_CHECKSEQUENCEVERIFY, OP_DROP])

    script += bytes([OP_IF, OP_SHA256])
    script += push_data(hashlock)
    script += bytes([OP_EQUALVERIFY, OP_DUP, OP_HASH160])
    script += push_data(recipient_hash)
    script += bytes([OP_EQUALVERIFY, OP_CHECKSIG])

    script += bytes([OP_ELSE])
    script += push_int(bip68_sequence(cancellation_delay))
    script += bytes([OP_CHECKSEQUENCEVERIFY, OP_DROP])
    script += push_data(refund_pubkey)
    script += bytes([OP_CHECKSIG, OP_ENDIF])

    return script


def create_dst_htlc_script(order_hash: bytes, hashlock: bytes,
                           withdrawal_locktime: int, cancellation_locktime: int,
                           claim_pubkey: bytes, refund_pubkey: bytes,
                           lock_till_withdrawal: bool = True) -> bytes:
    """
    Destination leg HTLC with absolute (CLTV) timelocks.

    Locktimes below 500,000,000 are block heights, above are unix timestamps.
    """
    _check_hash32(order_hash, "order_hash")
    _check_hash32(hashlock, "hashlock")
    _check_pubkey(claim_pubkey, "claim_pubkey")
    _check_pubkey(refund_pubkey, "refund_pubkey")
    for name, value in (("withdrawal_locktime", withdrawal_locktime),
                        ("cancellation_locktime", cancellation_locktime)):
        if not 0 <= value <= 0xffffffff:
            raise InputError(f"{name} out of range: {value}")

    script = push_data(order_hash) + bytes([OP_DROP])
    if lock_till_withdrawal:
        script += push_int(withdrawal_locktime)
        script += bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])

    script += bytes([OP_IF, OP_SHA256])
    script += push_data(hashlock)
    script += bytes([OP_EQUALVERIFY])
    script += push_data(claim_pubkey)
    script += bytes([OP_CHECKSIG])

    script += bytes([OP_ELSE])
    script += push_int(cancellation_locktime)
    script += bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])
    script += push_data(refund_pubkey)
    script += bytes([OP_CHECKSIG, OP_ENDIF])

    return script


class HtlcVariant(Enum):
    """Script shape for one swap leg."""
    GENERIC = "generic"
    RECIPIENT_PINNED = "recipient_pinned"
    DESTINATION = "destination"

    @property
    def absolute(self) -> bool:
        return self is HtlcVariant.DESTINATION


@dataclass(frozen=True)
class HtlcParams:
    """Everything that determines an HTLC script (and therefore its address)."""
    order_hash: bytes
    hashlock: bytes                 # SHA256(secret)
    withdrawal_delay: int           # seconds (relative) or locktime (absolute)
    cancellation_delay: int
    refund_pubkey: bytes
    claim_pubkey: Optional[bytes] = None
    recipient_address: Optional[str] = None
    variant: HtlcVariant = HtlcVariant.GENERIC
    lock_till_withdrawal: bool = True
    network: str = "testnet"

    def validate(self):
        if self.variant is HtlcVariant.RECIPIENT_PINNED:
            if not self.recipient_address:
                raise InputError("recipient_address required for pinned HTLC")
        elif self.claim_pubkey is None:
            raise InputError("claim_pubkey required")

        if self.lock_till_withdrawal:
            if self.variant.absolute:
                if ((self.withdrawal_delay < LOCKTIME_THRESHOLD) !=
                        (self.cancellation_delay < LOCKTIME_THRESHOLD)):
                    raise InputError("Withdrawal and cancellation locktimes must "
                                     "both be heights or both be timestamps")
            # The refund spend has to satisfy the gate too
            if self.cancellation_delay < self.withdrawal_delay:
                raise InputError("cancellation_delay must be >= withdrawal_delay")


def build_htlc_script(params: HtlcParams) -> bytes:
    """Compile the redeem script for `params`. Pure and deterministic."""
    params.validate()

    if params.variant is HtlcVariant.RECIPIENT_PINNED:
        return create_recipient_pinned_script(
            params.order_hash, params.hashlock,
            params.withdrawal_delay, params.cancellation_delay,
            params.recipient_address, params.refund_pubkey,
            network=params.network,
            lock_till_withdrawal=params.lock_till_withdrawal,
        )
    if params.variant is HtlcVariant.DESTINATION:
        return create_dst_htlc_script(
            params.order_hash, params.hashlock,
            params.withdrawal_delay, params.cancellation_delay,
            params.claim_pubkey, params.refund_pubkey,
            lock_till_withdrawal=params.lock_till_withdrawal,
        )
    return create_src_htlc_script(
        params.order_hash, params.hashlock,
        params.withdrawal_delay, params.cancellation_delay,
        params.claim_pubkey, params.refund_pubkey,
        lock_till_withdrawal=params.lock_till_withdrawal,
    )


@dataclass(frozen=True)
class HtlcContract:
    """A compiled HTLC together with its P2SH address."""
    params: HtlcParams
    script: bytes
    address: str

    @classmethod
    def build(cls, params: HtlcParams) -> "HtlcContract":
        script = build_htlc_script(params)
        address = script_to_p2sh_address(script, params.network)
        log.debug(f"Derived HTLC {address} ({params.variant.value})")
        return cls(params=params, script=script, address=address)

    @property
    def script_hex(self) -> str:
        return self.script.hex()

    @property
    def script_pubkey(self) -> bytes:
        return p2sh_script_pubkey(self.script)


# =============================================================================
# Address derivation
# =============================================================================

def p2sh_script_pubkey(script: bytes) -> bytes:
    """OP_HASH160 <HASH160(script)> OP_EQUAL"""
    return bytes([OP_HASH160]) + push_data(hash160(script)) + bytes([OP_EQUAL])


def script_to_p2sh_address(script: bytes, network: str = "testnet") -> str:
    """
    Convert redeem script to P2SH address.

    Args:
        script: Redeem script bytes
        network: mainnet, testnet, signet or regtest

    Returns:
        Base58check P2SH address
    """
    version = network_params(network)["p2sh"]
    return base58.b58encode_check(bytes([version]) + hash160(script)).decode()


def pubkey_to_p2pkh_address(pubkey: bytes, network: str = "testnet") -> str:
    version = network_params(network)["p2pkh"]
    return base58.b58encode_check(bytes([version]) + hash160(pubkey)).decode()


def pubkey_to_p2wpkh_address(pubkey: bytes, network: str = "testnet") -> str:
    hrp = network_params(network)["hrp"]
    return bech32.encode(hrp, 0, hash160(pubkey))


def p2pkh_script_pubkey(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <pkh> OP_EQUALVERIFY OP_CHECKSIG"""
    return (bytes([OP_DUP, OP_HASH160]) + push_data(pubkey_hash) +
            bytes([OP_EQUALVERIFY, OP_CHECKSIG]))


def address_to_script_pubkey(address: str, network: str = "testnet") -> bytes:
    """
    Decode a P2PKH, P2SH or segwit v0 address into its output script.

    Raises InputError for malformed addresses or addresses of another network.
    """
    params = network_params(network)
    hrp = params["hrp"]

    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None:
            raise InputError(f"Invalid bech32 address: {address}")
        program = bytes(witprog)
        if witver != 0 or len(program) not in (20, 32):
            raise InputError(f"Unsupported witness program in {address}")
        return bytes([OP_0]) + push_data(program)

    try:
        decoded = base58.b58decode_check(address)
    except ValueError:
        raise InputError(f"Invalid address: {address}")
    if len(decoded) != 21:
        raise InputError(f"Invalid address length: {address}")

    version, payload = decoded[0], decoded[1:]
    if version == params["p2pkh"]:
        return p2pkh_script_pubkey(payload)
    if version == params["p2sh"]:
        return bytes([OP_HASH160]) + push_data(payload) + bytes([OP_EQUAL])
    raise InputError(f"Address {address} is not a {network} address")


def pubkey_hash_from_address(address: str, network: str = "testnet") -> bytes:
    """20-byte pubkey hash of a P2PKH or P2WPKH address."""
    spk = address_to_script_pubkey(address, network)
    if len(spk) == 25 and spk[:3] == bytes([OP_DUP, OP_HASH160, 20]):
        return spk[3:23]
    if len(spk) == 22 and spk[:2] == bytes([OP_0, 20]):
        return spk[2:]
    raise InputError(f"{address} is not a single-key address")


# =============================================================================
# On-chain verification
# =============================================================================

def verify_on_chain_output(output_script: bytes, script: bytes) -> bool:
    """True if `output_script` pays to the P2SH of `script`."""
    return bytes(output_script) == p2sh_script_pubkey(script)


def _deserialize(tx_hex: str) -> CTransaction:
    try:
        return CTransaction.deserialize(bytes.fromhex(tx_hex))
    except Exception as e:
        raise InputError(f"Malformed transaction hex: {e}")


def find_htlc_outputs(tx_hex: str, script: bytes) -> List[Tuple[int, int]]:
    """All (vout, value) pairs of a raw tx that pay to the HTLC."""
    tx = _deserialize(tx_hex)
    return [
        (i, out.nValue) for i, out in enumerate(tx.vout)
        if verify_on_chain_output(out.scriptPubKey, script)
    ]


def verify_funding_output(tx_hex: str, vout: int, script: bytes) -> int:
    """
    Check that output `vout` of a funding tx pays to `script`.

    Returns:
        Output value in sats

    Raises:
        ScriptMismatchError if the output is missing or pays elsewhere
    """
    tx = _deserialize(tx_hex)
    if vout >= len(tx.vout):
        raise ScriptMismatchError(f"Funding tx has no output {vout}")
    out = tx.vout[vout]
    if not verify_on_chain_output(out.scriptPubKey, script):
        raise ScriptMismatchError(
            f"Output {vout} pays {bytes(out.scriptPubKey).hex()}, "
            f"expected {p2sh_script_pubkey(script).hex()}"
        )
    return out.nValue
