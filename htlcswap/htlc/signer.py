"""
BTC HTLC transaction builder and signer.

Builds the three transactions of a swap leg:

    funding  payer UTXOs -> P2SH(HTLC) + change
    claim    P2SH(HTLC)  -> claimer,  scriptSig <sig> <secret> OP_TRUE <script>
    refund   P2SH(HTLC)  -> refunder, scriptSig <sig> OP_FALSE <script>

Keys are plain secp256k1 private keys (WIF or hex). Signing uses ecdsa with
RFC6979 nonces and low-S canonical DER; sighashes come from python-bitcoinlib.
A transaction is only signed once its full input/output structure is final.
"""

import hashlib
import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import base58
from ecdsa import SigningKey, SECP256k1
from ecdsa.util import sigencode_der_canonize
from bitcoin.core import (
    CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint,
    CTransaction, CTxInWitness, CTxWitness, lx, b2x, b2lx,
)
from bitcoin.core.script import (
    CScript, CScriptWitness, CScriptInvalidError, SignatureHash,
    SIGHASH_ALL, SIGVERSION_BASE, SIGVERSION_WITNESS_V0, OP_TRUE, OP_FALSE,
)

from ..core import (
    Utxo, DUST_THRESHOLD, DEFAULT_FEE_SATS, LOCKTIME_THRESHOLD, MEDIAN_TIME_PAST_LAG,
    verify_preimage, sha256,
)
from ..errors import InputError, InsufficientFunds, TimelockNotElapsed
from .btc import (
    HtlcContract, HtlcVariant, bip68_sequence, hash160, network_params,
    address_to_script_pubkey, pubkey_hash_from_address, p2pkh_script_pubkey,
    pubkey_to_p2pkh_address, pubkey_to_p2wpkh_address,
)

log = logging.getLogger(__name__)

SEQUENCE_FINAL = 0xffffffff
SEQUENCE_LOCKTIME_ENABLED = 0xfffffffe
TX_VERSION = 2


# =============================================================================
# Keys
# =============================================================================

def decode_wif(wif: str) -> Tuple[bytes, bool, int]:
    """
    Decode WIF to private key bytes.

    Returns:
        (privkey, compressed, version_byte)
    """
    try:
        decoded = base58.b58decode_check(wif)
    except ValueError:
        raise InputError("Invalid WIF checksum or encoding")

    if decoded[0] not in (0x80, 0xef):  # Mainnet or Testnet
        raise InputError(f"Invalid WIF prefix: {decoded[0]:#x}")
    if len(decoded) == 34 and decoded[-1] == 0x01:
        return decoded[1:33], True, decoded[0]
    if len(decoded) == 33:
        return decoded[1:33], False, decoded[0]
    raise InputError("Invalid WIF length")


def encode_wif(privkey: bytes, network: str = "testnet", compressed: bool = True) -> str:
    payload = bytes([network_params(network)["wif"]]) + privkey
    if compressed:
        payload += b'\x01'
    return base58.b58encode_check(payload).decode()


def privkey_to_pubkey(privkey: bytes) -> bytes:
    """Compressed public key for a 32-byte private key."""
    sk = SigningKey.from_string(privkey, curve=SECP256k1)
    return sk.get_verifying_key().to_string("compressed")


def sign_hash(privkey: bytes, sighash: bytes) -> bytes:
    """Sign a 32-byte digest (deterministic nonce, low-S DER)."""
    sk = SigningKey.from_string(privkey, curve=SECP256k1)
    return sk.sign_digest_deterministic(
        sighash, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
    )


@dataclass(frozen=True)
class BtcKey:
    """A single-key wallet: private key, compressed pubkey, address type."""
    privkey: bytes = field(repr=False)
    pubkey: bytes
    network: str = "testnet"
    address_type: str = "p2wpkh"        # p2wpkh or p2pkh

    @property
    def pubkey_hash(self) -> bytes:
        return hash160(self.pubkey)

    @property
    def address(self) -> str:
        if self.address_type == "p2pkh":
            return pubkey_to_p2pkh_address(self.pubkey, self.network)
        return pubkey_to_p2wpkh_address(self.pubkey, self.network)

    @property
    def script_pubkey(self) -> bytes:
        return address_to_script_pubkey(self.address, self.network)


def load_key(private_key: str, network: str = "testnet",
             address_type: str = "p2wpkh") -> BtcKey:
    """
    Load a private key given as WIF or 64 hex characters.

    Raises InputError for malformed keys, uncompressed WIF, or a WIF encoded
    for a different network.
    """
    if address_type not in ("p2wpkh", "p2pkh"):
        raise InputError(f"Unsupported address type: {address_type}")

    text = private_key.strip()
    if text.startswith("0x"):
        text = text[2:]

    if len(text) == 64:
        try:
            privkey = bytes.fromhex(text)
        except ValueError:
            raise InputError("Private key is not valid hex")
    else:
        privkey, compressed, version = decode_wif(text)
        if not compressed:
            raise InputError("Uncompressed WIF keys are not supported")
        if version != network_params(network)["wif"]:
            raise InputError(f"WIF key is not for {network}")

    try:
        pubkey = privkey_to_pubkey(privkey)
    except Exception as e:
        raise InputError(f"Invalid private key: {e}")

    return BtcKey(privkey=privkey, pubkey=pubkey, network=network,
                  address_type=address_type)


# =============================================================================
# Transactions
# =============================================================================

@dataclass
class BuiltTransaction:
    """A fully signed transaction ready for broadcast."""
    hex: str
    txid: str
    fee: int
    inputs: List[Utxo]
    outputs: List[Tuple[bytes, int]]    # (scriptPubKey, value)
    change: int = 0

    @property
    def output_value(self) -> int:
        return sum(value for _, value in self.outputs)


def _outpoint(utxo: Utxo) -> COutPoint:
    try:
        return COutPoint(lx(utxo.txid), utxo.vout)
    except (ValueError, TypeError):
        raise InputError(f"Malformed UTXO reference: {utxo.outpoint}")


def _finish(tx: CMutableTransaction, inputs: List[Utxo], fee: int,
            change: int = 0) -> BuiltTransaction:
    return BuiltTransaction(
        hex=b2x(tx.serialize()),
        txid=b2lx(tx.GetTxid()),
        fee=fee,
        inputs=list(inputs),
        outputs=[(bytes(out.scriptPubKey), out.nValue) for out in tx.vout],
        change=change,
    )


class TransactionBuilder:
    """
    Builds and signs funding, claim and refund transactions.

    All fees are flat (`fee_sats` per transaction).
    """

    def __init__(self, network: str = "testnet", fee_sats: int = DEFAULT_FEE_SATS):
        network_params(network)
        self.network = network
        self.fee_sats = fee_sats

    # =========================================================================
    # Funding
    # =========================================================================

    def select_utxos(self, utxos: List[Utxo], target: int) -> Tuple[List[Utxo], int]:
        """
        Greedy largest-first selection until `target` sats are covered.

        Raises:
            InsufficientFunds if all UTXOs together fall short
        """
        selected = []
        total = 0
        for utxo in sorted(utxos, key=lambda u: u.value, reverse=True):
            if total >= target:
                break
            selected.append(utxo)
            total += utxo.value

        if total < target:
            raise InsufficientFunds(total, target)
        return selected, total

    def build_funding_tx(self, payer: BtcKey, utxos: List[Utxo],
                         htlc: HtlcContract, amount: int,
                         change_address: Optional[str] = None) -> BuiltTransaction:
        """
        Lock `amount` sats at the HTLC address.

        Args:
            payer: Key owning `utxos` (P2WPKH or P2PKH)
            utxos: Spendable outputs of the payer
            htlc: Target contract
            amount: Sats to lock
            change_address: Defaults to the payer's address

        Returns:
            BuiltTransaction (signed, not broadcast)
        """
        if amount <= DUST_THRESHOLD:
            raise InputError(f"Amount {amount} below dust threshold")

        fee = self.fee_sats
        selected, total = self.select_utxos(utxos, amount + fee)
        change = total - amount - fee

        vout = [CMutableTxOut(amount, CScript(htlc.script_pubkey))]
        if change > DUST_THRESHOLD:
            change_spk = (address_to_script_pubkey(change_address, self.network)
                          if change_address else payer.script_pubkey)
            vout.append(CMutableTxOut(change, CScript(change_spk)))
        else:
            # Too small to be worth an output
            fee += change
            change = 0

        vin = [CMutableTxIn(_outpoint(u), nSequence=SEQUENCE_FINAL) for u in selected]
        tx = CMutableTransaction(vin, vout, nLockTime=0, nVersion=TX_VERSION)

        # Structure is final; sign every input
        script_code = CScript(p2pkh_script_pubkey(payer.pubkey_hash))
        segwit = payer.address_type == "p2wpkh"
        signatures = []
        for i, utxo in enumerate(selected):
            if segwit:
                sighash = SignatureHash(script_code, tx, i, SIGHASH_ALL,
                                        amount=utxo.value,
                                        sigversion=SIGVERSION_WITNESS_V0)
            else:
                sighash = SignatureHash(script_code, tx, i, SIGHASH_ALL,
                                        sigversion=SIGVERSION_BASE)
            signatures.append(sign_hash(payer.privkey, sighash) + bytes([SIGHASH_ALL]))

        if segwit:
            tx.wit = CTxWitness([
                CTxInWitness(CScriptWitness([sig, payer.pubkey]))
                for sig in signatures
            ])
        else:
            for txin, sig in zip(tx.vin, signatures):
                txin.scriptSig = CScript([sig, payer.pubkey])

        built = _finish(tx, selected, fee, change)
        log.info(f"Built funding tx {built.txid}: {amount} sats -> {htlc.address}, "
                 f"{len(selected)} inputs, change={change}, fee={fee}")
        return built

    # =========================================================================
    # Claim
    # =========================================================================

    def build_claim_tx(self, utxo: Utxo, htlc: HtlcContract, secret: bytes,
                       claimer: BtcKey,
                       destination: Optional[str] = None) -> BuiltTransaction:
        """
        Spend the HTLC through the hashlock branch.

        Args:
            utxo: The HTLC output
            htlc: Contract the UTXO pays to
            secret: Preimage of the hashlock
            claimer: Key for the claim signature
            destination: Payout address (pinned HTLCs default to the recipient,
                         others to the claimer's address)

        Raises:
            InputError if the preimage or claimer key do not fit the script,
            or the claim output would be dust
        """
        params = htlc.params
        if not verify_preimage(secret, params.hashlock):
            raise InputError("Preimage does not match hashlock")

        if params.variant is HtlcVariant.RECIPIENT_PINNED:
            expected = pubkey_hash_from_address(params.recipient_address, self.network)
            if claimer.pubkey_hash != expected:
                raise InputError("Claimer key does not match pinned recipient")
            destination = destination or params.recipient_address
        else:
            if claimer.pubkey != params.claim_pubkey:
                raise InputError("Claimer key does not match HTLC claim pubkey")
            destination = destination or claimer.address

        value = utxo.value - self.fee_sats
        if value <= DUST_THRESHOLD:
            raise InputError(f"Output amount {value} below dust threshold")

        sequence, locktime = SEQUENCE_FINAL, 0
        if params.lock_till_withdrawal:
            if params.variant.absolute:
                sequence, locktime = SEQUENCE_LOCKTIME_ENABLED, params.withdrawal_delay
            else:
                sequence = bip68_sequence(params.withdrawal_delay)

        tx = CMutableTransaction(
            [CMutableTxIn(_outpoint(utxo), nSequence=sequence)],
            [CMutableTxOut(value, CScript(address_to_script_pubkey(destination, self.network)))],
            nLockTime=locktime, nVersion=TX_VERSION,
        )

        redeem_script = CScript(htlc.script)
        sighash = SignatureHash(redeem_script, tx, 0, SIGHASH_ALL)
        sig = sign_hash(claimer.privkey, sighash) + bytes([SIGHASH_ALL])

        if params.variant is HtlcVariant.RECIPIENT_PINNED:
            tx.vin[0].scriptSig = CScript([sig, claimer.pubkey, secret, OP_TRUE, htlc.script])
        else:
            tx.vin[0].scriptSig = CScript([sig, secret, OP_TRUE, htlc.script])

        built = _finish(tx, [utxo], self.fee_sats)
        log.info(f"Built claim tx {built.txid}: {utxo.outpoint} -> {destination}, "
                 f"{value} sats")
        return built

    # =========================================================================
    # Refund
    # =========================================================================

    def check_refund_timelock(self, htlc: HtlcContract,
                              current_time: Optional[int] = None,
                              current_height: Optional[int] = None,
                              funding_confirmed_at: Optional[int] = None,
                              median_time_past: Optional[int] = None):
        """
        Raise TimelockNotElapsed unless the refund branch is spendable now.

        Timestamp locktimes are compared with `median_time_past` (the tip's
        mediantime); without it, wall time less MEDIAN_TIME_PAST_LAG is used.
        """
        params = htlc.params
        now = int(time.time()) if current_time is None else current_time

        if params.variant.absolute:
            locktime = params.cancellation_delay
            if locktime < LOCKTIME_THRESHOLD:
                if current_height is None:
                    raise InputError("current_height required for height-based locktime")
                if current_height < locktime:
                    raise TimelockNotElapsed(
                        f"Cannot refund yet. Current height {current_height}, "
                        f"timelock {locktime}. Wait {locktime - current_height} more blocks."
                    )
                return

            mtp = now - MEDIAN_TIME_PAST_LAG if median_time_past is None else median_time_past
            # nLockTime is final once it is strictly below median-time-past
            if mtp <= locktime:
                raise TimelockNotElapsed(
                    f"Cannot refund yet. Median time past {mtp}, timelock {locktime}. "
                    f"Wait {locktime - mtp + 1} more seconds."
                )
            return

        if funding_confirmed_at is None:
            raise TimelockNotElapsed("Funding is unconfirmed; relative timelock not started")
        elapsed = now - funding_confirmed_at
        if elapsed < params.cancellation_delay:
            raise TimelockNotElapsed(
                f"Cannot refund yet. {elapsed}s elapsed of "
                f"{params.cancellation_delay}s cancellation delay."
            )

    def build_refund_tx(self, utxo: Utxo, htlc: HtlcContract, refunder: BtcKey,
                        destination: Optional[str] = None, *,
                        current_time: Optional[int] = None,
                        current_height: Optional[int] = None,
                        funding_confirmed_at: Optional[int] = None,
                        median_time_past: Optional[int] = None) -> BuiltTransaction:
        """
        Spend the HTLC through the timelocked refund branch.

        Relative legs need `funding_confirmed_at` (block time of the funding
        confirmation); absolute legs need `current_height` for height locktimes
        and take `median_time_past` for timestamp locktimes.
        """
        params = htlc.params
        if refunder.pubkey != params.refund_pubkey:
            raise InputError("Refund key does not match HTLC refund pubkey")

        self.check_refund_timelock(htlc, current_time=current_time,
                                   current_height=current_height,
                                   funding_confirmed_at=funding_confirmed_at,
                                   median_time_past=median_time_past)

        destination = destination or refunder.address
        value = utxo.value - self.fee_sats
        if value <= DUST_THRESHOLD:
            raise InputError(f"Output amount {value} below dust threshold")

        if params.variant.absolute:
            sequence, locktime = SEQUENCE_LOCKTIME_ENABLED, params.cancellation_delay
        else:
            sequence, locktime = bip68_sequence(params.cancellation_delay), 0

        tx = CMutableTransaction(
            [CMutableTxIn(_outpoint(utxo), nSequence=sequence)],
            [CMutableTxOut(value, CScript(address_to_script_pubkey(destination, self.network)))],
            nLockTime=locktime, nVersion=TX_VERSION,
        )

        sighash = SignatureHash(CScript(htlc.script), tx, 0, SIGHASH_ALL)
        sig = sign_hash(refunder.privkey, sighash) + bytes([SIGHASH_ALL])
        tx.vin[0].scriptSig = CScript([sig, OP_FALSE, htlc.script])

        built = _finish(tx, [utxo], self.fee_sats)
        log.info(f"Built refund tx {built.txid}: {utxo.outpoint} -> {destination}")
        return built


# =============================================================================
# Secret extraction
# =============================================================================

def extract_secret_from_tx(tx_hex: str, hashlock: bytes) -> Optional[bytes]:
    """
    Find the preimage of `hashlock` in a claim transaction.

    Looks at every scriptSig push and witness item. Returns None if the
    transaction does not reveal it.
    """
    try:
        tx = CTransaction.deserialize(bytes.fromhex(tx_hex))
    except Exception as e:
        raise InputError(f"Malformed transaction hex: {e}")

    for i, txin in enumerate(tx.vin):
        try:
            items = [item for item in txin.scriptSig if isinstance(item, bytes)]
        except CScriptInvalidError:
            items = []
        if i < len(tx.wit.vtxinwit):
            items += list(tx.wit.vtxinwit[i].scriptWitness.stack)
        for item in items:
            if len(item) == 32 and sha256(item) == hashlock:
                return bytes(item)
    return None
