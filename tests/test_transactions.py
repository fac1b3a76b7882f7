#!/usr/bin/env python3
"""
Transaction builder tests

Covers funding (coin selection, change, dust), claim (preimage and key checks,
signature validity, timelock fields), refund (timelock enforcement) and secret
extraction from a broadcast claim.

Usage:
    python -m pytest tests/test_transactions.py
"""

import sys
import os
import unittest

from bitcoin.core import CMutableTransaction, CTransaction, ValidationError
from bitcoin.core.script import CScript, SignatureHash, SIGHASH_ALL, OP_0
from bitcoin.core.scripteval import VerifyScript, SCRIPT_VERIFY_P2SH
from ecdsa import VerifyingKey, SECP256k1
from ecdsa.util import sigdecode_der

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.core import Utxo, generate_secret, generate_order_hash
from htlcswap.errors import (
    InputError, InsufficientFunds, TimelockNotElapsed, ScriptMismatchError,
)
from htlcswap.htlc.btc import (
    HtlcParams, HtlcContract, HtlcVariant, bip68_sequence,
    find_htlc_outputs, verify_funding_output,
)
from htlcswap.htlc.signer import (
    TransactionBuilder, load_key, decode_wif, encode_wif, extract_secret_from_tx,
    SEQUENCE_FINAL, SEQUENCE_LOCKTIME_ENABLED, TX_VERSION,
)

PAYER = load_key("%064x" % 1)
CLAIMER = load_key("%064x" % 2)
REFUNDER = load_key("%064x" % 3)

HTLC_TXID = "cd" * 32


def make_htlc(secret_hash, variant=HtlcVariant.GENERIC, lock_till_withdrawal=False,
              withdrawal=512, cancellation=1024):
    pinned = variant is HtlcVariant.RECIPIENT_PINNED
    return HtlcContract.build(HtlcParams(
        order_hash=generate_order_hash(),
        hashlock=secret_hash,
        withdrawal_delay=withdrawal,
        cancellation_delay=cancellation,
        refund_pubkey=REFUNDER.pubkey,
        claim_pubkey=None if pinned else CLAIMER.pubkey,
        recipient_address=CLAIMER.address if pinned else None,
        variant=variant,
        lock_till_withdrawal=lock_till_withdrawal,
    ))


def verify_signature(tx, script, sig, pubkey):
    sighash = SignatureHash(CScript(script), tx, 0, SIGHASH_ALL)
    vk = VerifyingKey.from_string(pubkey, curve=SECP256k1)
    return vk.verify_digest(sig[:-1], sighash, sigdecode=sigdecode_der)


def verify_input_script(tx, htlc):
    """Run the P2SH spend of input 0 through the script interpreter."""
    VerifyScript(tx.vin[0].scriptSig, CScript(htlc.script_pubkey), tx, 0,
                 (SCRIPT_VERIFY_P2SH,))


def with_other_preimage(tx, secret, other):
    """Copy of `tx` whose scriptSig pushes `other` in place of `secret`."""
    tampered = CMutableTransaction.from_tx(tx)
    script_sig = bytes(tx.vin[0].scriptSig)
    tampered.vin[0].scriptSig = CScript(
        script_sig.replace(bytes([32]) + secret, bytes([32]) + other))
    return tampered


class TestKeys(unittest.TestCase):

    def test_wif_round_trip(self):
        wif = encode_wif(CLAIMER.privkey, "testnet")
        privkey, compressed, version = decode_wif(wif)
        self.assertEqual(privkey, CLAIMER.privkey)
        self.assertTrue(compressed)
        self.assertEqual(version, 0xef)
        self.assertEqual(load_key(wif).pubkey, CLAIMER.pubkey)

    def test_wif_network_mismatch(self):
        wif = encode_wif(CLAIMER.privkey, "mainnet")
        with self.assertRaises(InputError):
            load_key(wif, network="testnet")

    def test_known_pubkey(self):
        self.assertEqual(
            PAYER.pubkey.hex(),
            "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798",
        )

    def test_malformed_key(self):
        for bad in ("zz" * 32, "00" * 32, "not a key"):
            with self.assertRaises(InputError):
                load_key(bad)

    def test_privkey_hidden_from_repr(self):
        self.assertNotIn(PAYER.privkey.hex(), repr(PAYER))


class TestFunding(unittest.TestCase):

    def setUp(self):
        self.builder = TransactionBuilder("testnet", fee_sats=1000)
        _, hash_lock = generate_secret()
        self.htlc = make_htlc(hash_lock.sha256)

    def test_largest_first_with_change(self):
        utxos = [Utxo("aa" * 32, 0, 60000), Utxo("bb" * 32, 1, 70000),
                 Utxo("ee" * 32, 2, 5000)]
        built = self.builder.build_funding_tx(PAYER, utxos, self.htlc, 100000)

        self.assertEqual([u.value for u in built.inputs], [70000, 60000])
        self.assertEqual(built.outputs[0], (self.htlc.script_pubkey, 100000))
        self.assertEqual(built.outputs[1], (PAYER.script_pubkey, 29000))
        self.assertEqual(built.change, 29000)
        self.assertEqual(built.fee, 1000)

        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        self.assertEqual(tx.nVersion, TX_VERSION)
        self.assertEqual(len(tx.wit.vtxinwit), 2)
        self.assertEqual(list(tx.wit.vtxinwit[0].scriptWitness.stack)[1], PAYER.pubkey)

    def test_dust_change_goes_to_fee(self):
        utxos = [Utxo("aa" * 32, 0, 101300)]
        built = self.builder.build_funding_tx(PAYER, utxos, self.htlc, 100000)
        self.assertEqual(len(built.outputs), 1)
        self.assertEqual(built.fee, 1300)
        self.assertEqual(built.change, 0)

    def test_insufficient_funds(self):
        with self.assertRaises(InsufficientFunds) as ctx:
            self.builder.build_funding_tx(PAYER, [Utxo("aa" * 32, 0, 50000)],
                                          self.htlc, 100000)
        self.assertEqual(ctx.exception.available, 50000)
        self.assertEqual(ctx.exception.required, 101000)

    def test_no_utxos(self):
        with self.assertRaises(InsufficientFunds):
            self.builder.build_funding_tx(PAYER, [], self.htlc, 100000)

    def test_p2pkh_payer_signs_script_sig(self):
        payer = load_key("%064x" % 1, address_type="p2pkh")
        built = self.builder.build_funding_tx(payer, [Utxo("aa" * 32, 0, 200000)],
                                              self.htlc, 100000)
        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        items = list(tx.vin[0].scriptSig)
        self.assertEqual(items[1], payer.pubkey)
        self.assertEqual(built.outputs[1][0], payer.script_pubkey)

    def test_funding_output_verification(self):
        built = self.builder.build_funding_tx(PAYER, [Utxo("aa" * 32, 0, 200000)],
                                              self.htlc, 100000)
        self.assertEqual(find_htlc_outputs(built.hex, self.htlc.script), [(0, 100000)])
        self.assertEqual(verify_funding_output(built.hex, 0, self.htlc.script), 100000)
        with self.assertRaises(ScriptMismatchError):
            verify_funding_output(built.hex, 1, self.htlc.script)
        with self.assertRaises(ScriptMismatchError):
            verify_funding_output(built.hex, 5, self.htlc.script)


class TestClaim(unittest.TestCase):

    def setUp(self):
        self.builder = TransactionBuilder("testnet", fee_sats=1000)
        self.secret, hash_lock = generate_secret()
        self.htlc = make_htlc(hash_lock.sha256)
        self.utxo = Utxo(HTLC_TXID, 0, 100000)

    def test_claim_output_and_witness(self):
        built = self.builder.build_claim_tx(self.utxo, self.htlc, self.secret, CLAIMER)
        self.assertEqual(built.outputs, [(CLAIMER.script_pubkey, 99000)])

        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        sig, secret, branch, script = list(tx.vin[0].scriptSig)
        self.assertEqual(secret, self.secret)
        self.assertEqual(branch, 1)
        self.assertEqual(script, self.htlc.script)
        self.assertTrue(verify_signature(tx, self.htlc.script, sig, CLAIMER.pubkey))
        self.assertEqual(tx.vin[0].nSequence, SEQUENCE_FINAL)
        self.assertEqual(tx.nLockTime, 0)

    def test_claim_passes_script_evaluation(self):
        built = self.builder.build_claim_tx(self.utxo, self.htlc, self.secret, CLAIMER)
        verify_input_script(CTransaction.deserialize(bytes.fromhex(built.hex)), self.htlc)

    def test_other_preimage_fails_script_evaluation(self):
        built = self.builder.build_claim_tx(self.utxo, self.htlc, self.secret, CLAIMER)
        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        tampered = with_other_preimage(tx, self.secret, b"\x11" * 32)
        self.assertNotEqual(tampered.vin[0].scriptSig, tx.vin[0].scriptSig)
        with self.assertRaises(ValidationError):
            verify_input_script(tampered, self.htlc)

    def test_pinned_claim_passes_script_evaluation(self):
        secret, hash_lock = generate_secret()
        htlc = make_htlc(hash_lock.sha256, variant=HtlcVariant.RECIPIENT_PINNED)
        built = self.builder.build_claim_tx(self.utxo, htlc, secret, CLAIMER)
        tx = CTransaction.deserialize(bytes.fromhex(built.hex))

        verify_input_script(tx, htlc)
        with self.assertRaises(ValidationError):
            verify_input_script(with_other_preimage(tx, secret, b"\x22" * 32), htlc)

    def test_wrong_preimage(self):
        with self.assertRaises(InputError):
            self.builder.build_claim_tx(self.utxo, self.htlc, b"\x00" * 32, CLAIMER)

    def test_wrong_key(self):
        with self.assertRaises(InputError):
            self.builder.build_claim_tx(self.utxo, self.htlc, self.secret, PAYER)

    def test_dust_output(self):
        with self.assertRaises(InputError):
            self.builder.build_claim_tx(Utxo(HTLC_TXID, 0, 1500), self.htlc,
                                        self.secret, CLAIMER)

    def test_custom_destination(self):
        built = self.builder.build_claim_tx(self.utxo, self.htlc, self.secret, CLAIMER,
                                            destination=PAYER.address)
        self.assertEqual(built.outputs[0][0], PAYER.script_pubkey)

    def test_gated_claim_sets_sequence(self):
        secret, hash_lock = generate_secret()
        htlc = make_htlc(hash_lock.sha256, lock_till_withdrawal=True)
        built = self.builder.build_claim_tx(self.utxo, htlc, secret, CLAIMER)
        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        self.assertEqual(tx.vin[0].nSequence, bip68_sequence(512))
        self.assertEqual(tx.nVersion, 2)

    def test_pinned_claim_pushes_pubkey(self):
        secret, hash_lock = generate_secret()
        htlc = make_htlc(hash_lock.sha256, variant=HtlcVariant.RECIPIENT_PINNED)
        built = self.builder.build_claim_tx(self.utxo, htlc, secret, CLAIMER)

        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        sig, pubkey, revealed, branch, script = list(tx.vin[0].scriptSig)
        self.assertEqual(pubkey, CLAIMER.pubkey)
        self.assertEqual(revealed, secret)
        self.assertTrue(verify_signature(tx, htlc.script, sig, CLAIMER.pubkey))
        self.assertEqual(built.outputs[0][0], CLAIMER.script_pubkey)

    def test_pinned_claim_rejects_other_key(self):
        secret, hash_lock = generate_secret()
        htlc = make_htlc(hash_lock.sha256, variant=HtlcVariant.RECIPIENT_PINNED)
        with self.assertRaises(InputError):
            self.builder.build_claim_tx(self.utxo, htlc, secret, PAYER)


class TestRefund(unittest.TestCase):

    def setUp(self):
        self.builder = TransactionBuilder("testnet", fee_sats=1000)
        self.secret, hash_lock = generate_secret()
        self.hashlock = hash_lock.sha256
        self.utxo = Utxo(HTLC_TXID, 0, 100000)

    def test_relative_refund_too_early(self):
        htlc = make_htlc(self.hashlock)
        with self.assertRaises(TimelockNotElapsed):
            self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                         current_time=1_000_500,
                                         funding_confirmed_at=1_000_000)

    def test_relative_refund_unconfirmed(self):
        htlc = make_htlc(self.hashlock)
        with self.assertRaises(TimelockNotElapsed):
            self.builder.build_refund_tx(self.utxo, htlc, REFUNDER)

    def test_relative_refund(self):
        htlc = make_htlc(self.hashlock)
        built = self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                             current_time=1_001_024,
                                             funding_confirmed_at=1_000_000)
        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        sig, _, script = list(tx.vin[0].scriptSig)
        opcodes = [op for op, _, _ in tx.vin[0].scriptSig.raw_iter()]
        self.assertEqual(opcodes[1], OP_0)
        self.assertEqual(script, htlc.script)
        self.assertEqual(tx.vin[0].nSequence, bip68_sequence(1024))
        self.assertTrue(verify_signature(tx, htlc.script, sig, REFUNDER.pubkey))
        self.assertEqual(built.outputs, [(REFUNDER.script_pubkey, 99000)])

    def test_absolute_refund(self):
        htlc = make_htlc(self.hashlock, variant=HtlcVariant.DESTINATION,
                         withdrawal=1_700_000_000, cancellation=1_700_003_600)
        with self.assertRaises(TimelockNotElapsed):
            self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                         median_time_past=1_700_000_000)

        built = self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                             median_time_past=1_700_003_601)
        tx = CTransaction.deserialize(bytes.fromhex(built.hex))
        self.assertEqual(tx.nLockTime, 1_700_003_600)
        self.assertEqual(tx.vin[0].nSequence, SEQUENCE_LOCKTIME_ENABLED)

    def test_timestamp_locktime_needs_median_time_past_beyond_it(self):
        htlc = make_htlc(self.hashlock, variant=HtlcVariant.DESTINATION,
                         withdrawal=1_700_000_000, cancellation=1_700_003_600)
        # Final only once median-time-past is strictly greater than nLockTime
        with self.assertRaises(TimelockNotElapsed):
            self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                         median_time_past=1_700_003_600)
        # Wall time at the locktime is still an hour ahead of median-time-past
        with self.assertRaises(TimelockNotElapsed):
            self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                         current_time=1_700_003_600)
        self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                     current_time=1_700_003_600 + 3601)

    def test_height_locktime_needs_height(self):
        htlc = make_htlc(self.hashlock, variant=HtlcVariant.DESTINATION,
                         withdrawal=800_000, cancellation=800_144)
        with self.assertRaises(InputError):
            self.builder.build_refund_tx(self.utxo, htlc, REFUNDER)
        with self.assertRaises(TimelockNotElapsed):
            self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                         current_height=800_100)
        built = self.builder.build_refund_tx(self.utxo, htlc, REFUNDER,
                                             current_height=800_144)
        self.assertEqual(CTransaction.deserialize(bytes.fromhex(built.hex)).nLockTime,
                         800_144)

    def test_wrong_refund_key(self):
        htlc = make_htlc(self.hashlock)
        with self.assertRaises(InputError):
            self.builder.build_refund_tx(self.utxo, htlc, CLAIMER,
                                         current_time=2_000_000,
                                         funding_confirmed_at=1_000_000)


class TestSecretExtraction(unittest.TestCase):

    def test_extract_from_claim(self):
        builder = TransactionBuilder("testnet")
        secret, hash_lock = generate_secret()
        htlc = make_htlc(hash_lock.sha256)
        claim = builder.build_claim_tx(Utxo(HTLC_TXID, 0, 100000), htlc, secret, CLAIMER)
        self.assertEqual(extract_secret_from_tx(claim.hex, hash_lock.sha256), secret)

    def test_refund_reveals_nothing(self):
        builder = TransactionBuilder("testnet")
        _, hash_lock = generate_secret()
        htlc = make_htlc(hash_lock.sha256)
        refund = builder.build_refund_tx(Utxo(HTLC_TXID, 0, 100000), htlc, REFUNDER,
                                         current_time=2_000_000,
                                         funding_confirmed_at=1_000_000)
        self.assertIsNone(extract_secret_from_tx(refund.hex, hash_lock.sha256))

    def test_malformed_hex(self):
        with self.assertRaises(InputError):
            extract_secret_from_tx("zz", b"\x00" * 32)


if __name__ == "__main__":
    unittest.main(verbosity=2)
