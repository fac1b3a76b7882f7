#!/usr/bin/env python3
"""
Funding detection tests

Automatic polling, early exit on an unreachable indexer, and the manual
confirmation path with its simulated fallback.

Usage:
    python -m pytest tests/test_detector.py
"""

import sys
import os
import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.core import Utxo
from htlcswap.errors import NetworkError, SwapCancelled, SwapTimeoutError
from htlcswap.swap.detector import DetectionState, FundingDetector

ADDRESS = "2N1htlc"
FUNDED = [Utxo("aa" * 32, 0, 100000)]


def provider_returning(*results):
    provider = MagicMock()
    provider.get_utxos = AsyncMock(side_effect=list(results))
    return provider


class TestAutomaticDetection(unittest.IsolatedAsyncioTestCase):

    async def test_funded_on_third_poll(self):
        provider = provider_returning([], [], FUNDED)
        detector = FundingDetector(provider, max_attempts=5, poll_interval=0)

        result = await detector.detect_funding(ADDRESS)

        self.assertTrue(result.is_funded)
        self.assertEqual(result.method, "automatic")
        self.assertFalse(result.simulated)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.amount, 100000)
        self.assertEqual(result.tx_hash, "aa" * 32)
        self.assertEqual(detector.state, DetectionState.FUNDED)
        self.assertEqual(provider.get_utxos.await_count, 3)

    async def test_transient_errors_keep_polling(self):
        provider = provider_returning(NetworkError("404", status_code=404), FUNDED)
        detector = FundingDetector(provider, max_attempts=3, poll_interval=0)
        result = await detector.detect_funding(ADDRESS)
        self.assertTrue(result.is_funded)
        self.assertEqual(result.attempts, 2)

    async def test_provider_that_always_errors_goes_manual(self):
        provider = MagicMock()
        provider.get_utxos = AsyncMock(side_effect=ConnectionError("boom"))
        detector = FundingDetector(provider, max_attempts=3, poll_interval=0)

        result = await detector.detect_funding(ADDRESS)

        self.assertEqual(detector.attempts, 3)
        self.assertEqual(provider.get_utxos.await_count, 4)
        self.assertTrue(result.is_funded)
        self.assertTrue(result.simulated)
        self.assertEqual(result.method, "manual")
        self.assertEqual(detector.state, DetectionState.FUNDED_SIMULATED)

    async def test_unreachable_ends_polling_early(self):
        provider = provider_returning(
            NetworkError("timeout", unreachable=True),
            [],                                     # final manual check
        )
        detector = FundingDetector(provider, max_attempts=20, poll_interval=0,
                                   simulated_amount=5000)

        result = await detector.detect_funding(ADDRESS)

        self.assertEqual(detector.attempts, 1)
        self.assertTrue(result.is_funded)
        self.assertTrue(result.simulated)
        self.assertEqual(result.method, "manual")
        self.assertEqual(result.amount, 5000)
        self.assertEqual(len(result.tx_hash), 64)
        self.assertEqual(detector.state, DetectionState.FUNDED_SIMULATED)

    async def test_sleeps_between_polls_only(self):
        provider = provider_returning([], [], [], [])
        detector = FundingDetector(provider, max_attempts=3, poll_interval=0.01,
                                   allow_simulated=False)
        result = await detector.detect_funding(ADDRESS)
        self.assertFalse(result.is_funded)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(detector.state, DetectionState.NOT_FUNDED)

    async def test_cancellation(self):
        event = asyncio.Event()
        event.set()
        detector = FundingDetector(provider_returning([]), max_attempts=3,
                                   poll_interval=0)
        with self.assertRaises(SwapCancelled):
            await detector.detect_funding(ADDRESS, cancel_event=event)


class TestManualConfirmation(unittest.IsolatedAsyncioTestCase):

    async def test_callback_then_funds_seen(self):
        provider = provider_returning([], FUNDED)
        callback = AsyncMock()
        detector = FundingDetector(provider, max_attempts=1, poll_interval=0,
                                   confirm_callback=callback)

        result = await detector.detect_funding(ADDRESS)

        callback.assert_awaited_once_with(ADDRESS)
        self.assertTrue(result.is_funded)
        self.assertFalse(result.simulated)
        self.assertEqual(result.method, "manual")
        self.assertEqual(detector.state, DetectionState.FUNDED_MANUAL)

    async def test_callback_timeout(self):
        async def never(address):
            await asyncio.sleep(10)

        detector = FundingDetector(provider_returning([]), max_attempts=1,
                                   poll_interval=0, confirm_callback=never,
                                   manual_timeout=0.01)
        with self.assertRaises(SwapTimeoutError):
            await detector.detect_funding(ADDRESS)

    async def test_final_check_error_falls_back(self):
        provider = provider_returning([], NetworkError("down", unreachable=True))
        detector = FundingDetector(provider, max_attempts=1, poll_interval=0)
        result = await detector.detect_funding(ADDRESS)
        self.assertTrue(result.simulated)

    async def test_to_dict(self):
        detector = FundingDetector(provider_returning(FUNDED), poll_interval=0)
        payload = (await detector.detect_funding(ADDRESS)).to_dict()
        self.assertEqual(payload["isFunded"], True)
        self.assertEqual(payload["utxos"], [{"txid": "aa" * 32, "vout": 0,
                                             "value": 100000}])


if __name__ == "__main__":
    unittest.main(verbosity=2)
