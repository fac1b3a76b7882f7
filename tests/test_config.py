#!/usr/bin/env python3
"""
Configuration, core type and registry tests

Usage:
    python -m pytest tests/test_config.py
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.config import (
    NetworkMode, SwapConfig, DEFAULT_TESTNET_ENDPOINTS, DEFAULT_MAINNET_ENDPOINTS,
)
from htlcswap.core import (
    SwapOrder, SwapPhase, SwapStatus, HashLock,
    generate_secret, verify_preimage, parse_hex32, btc_to_sats, sats_to_btc,
    keccak256,
)
from htlcswap.errors import InputError
from htlcswap.swap.registry import SwapRegistry


class TestSwapConfig(unittest.TestCase):

    def test_defaults(self):
        config = SwapConfig().validate()
        self.assertEqual(config.rpc_endpoints, DEFAULT_TESTNET_ENDPOINTS)
        self.assertEqual(config.mode, NetworkMode.LIVE)
        self.assertEqual(config.max_attempts, 20)
        self.assertEqual(config.poll_interval, 30)

    def test_from_env(self):
        config = SwapConfig.from_env(environ={
            "HTLCSWAP_RPC_ENDPOINTS": "https://one.test/api, https://two.test/api",
            "HTLCSWAP_MODE": "simulated",
            "HTLCSWAP_MAX_ATTEMPTS": "5",
            "HTLCSWAP_POLL_INTERVAL": "2.5",
            "HTLCSWAP_ALLOW_SIMULATION_FALLBACK": "false",
            "HTLCSWAP_SIMULATED_WALLET_VALUE": "250000",
        })
        self.assertEqual(config.rpc_endpoints,
                         ["https://one.test/api", "https://two.test/api"])
        self.assertEqual(config.mode, NetworkMode.SIMULATED)
        self.assertEqual(config.max_attempts, 5)
        self.assertEqual(config.poll_interval, 2.5)
        self.assertFalse(config.allow_simulation_fallback)
        self.assertEqual(config.simulated_wallet_value, 250000)

    def test_mainnet_switches_default_endpoints(self):
        config = SwapConfig.from_env(environ={"HTLCSWAP_NETWORK": "mainnet"})
        self.assertEqual(config.rpc_endpoints, DEFAULT_MAINNET_ENDPOINTS)

    def test_invalid_values(self):
        for environ in ({"HTLCSWAP_MAX_ATTEMPTS": "many"},
                        {"HTLCSWAP_MODE": "turbo"},
                        {"HTLCSWAP_NETWORK": "moonnet"},
                        {"HTLCSWAP_WITHDRAWAL_DELAY": "600"}):
            with self.assertRaises(InputError, msg=str(environ)):
                SwapConfig.from_env(environ=environ)

    def test_live_mode_needs_endpoints(self):
        with self.assertRaises(InputError):
            SwapConfig(rpc_endpoints=[]).validate()
        SwapConfig(rpc_endpoints=[], mode=NetworkMode.SIMULATED).validate()


class TestCoreTypes(unittest.TestCase):

    def test_hash_lock(self):
        secret, hash_lock = generate_secret()
        self.assertEqual(len(secret), 32)
        self.assertTrue(verify_preimage(secret, hash_lock.sha256))
        self.assertEqual(hash_lock, HashLock.from_secret(secret))
        self.assertEqual(hash_lock.keccak256, keccak256(secret))

    def test_keccak_known_vector(self):
        self.assertEqual(
            keccak256(b"").hex(),
            "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470",
        )

    def test_parse_hex32(self):
        raw = bytes(range(32))
        self.assertEqual(parse_hex32("0x" + raw.hex()), raw)
        self.assertEqual(parse_hex32(raw), raw)
        for bad in ("abc", "zz" * 32, b"\x00" * 31):
            with self.assertRaises(InputError):
                parse_hex32(bad)

    def test_amount_conversion(self):
        self.assertEqual(btc_to_sats(0.001), 100000)
        self.assertEqual(sats_to_btc(100000), 0.001)

    def test_status_history(self):
        status = SwapStatus()
        status.advance(SwapPhase.HTLC_FUNDED, "funded")
        status.advance(SwapPhase.FAILED, "boom")
        payload = status.to_dict()
        self.assertEqual(payload["history"], ["created", "htlc_funded", "failed"])
        self.assertEqual(payload["phase"], "failed")
        self.assertTrue(status.phase.is_terminal)
        self.assertFalse(SwapPhase.FUNDING_CONFIRMED.is_terminal)


class TestSwapRegistry(unittest.TestCase):

    def make_order(self, swap_id):
        secret, hash_lock = generate_secret()
        return SwapOrder(swap_id=swap_id, order_hash=b"\x00" * 32, secret=secret,
                         hash_lock=hash_lock, making_amount=100000, taking_amount=1)

    def test_add_is_idempotent(self):
        registry = SwapRegistry()
        order = self.make_order("swap_1")
        first = registry.add(order)
        self.assertIs(registry.add(order), first)
        self.assertEqual(len(registry), 1)
        self.assertIn("swap_1", registry)

    def test_active(self):
        registry = SwapRegistry()
        registry.add(self.make_order("a"))
        registry.add(self.make_order("b")).advance(SwapPhase.SETTLEMENT_COMPLETE)
        self.assertEqual(registry.active(), ["a"])

    def test_first_settlement_wins(self):
        registry = SwapRegistry()
        registry.record_settlement("a", "0x1")
        registry.record_settlement("a", "0x2")
        self.assertEqual(registry.settlement("a"), "0x1")
        self.assertIsNone(registry.settlement("b"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
