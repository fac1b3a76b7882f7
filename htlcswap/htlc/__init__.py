"""
Bitcoin HTLC scripts and transactions.

Every HTLC commits to an order hash, a SHA256 hashlock and a refund timelock:
1. Funds can only be claimed with knowledge of the secret (preimage)
2. Funds can be refunded after the cancellation timelock
"""

from .btc import HtlcParams, HtlcContract, HtlcVariant, build_htlc_script
from .signer import BtcKey, TransactionBuilder, load_key, extract_secret_from_tx

__all__ = [
    "HtlcParams",
    "HtlcContract",
    "HtlcVariant",
    "build_htlc_script",
    "BtcKey",
    "TransactionBuilder",
    "load_key",
    "extract_secret_from_tx",
]
