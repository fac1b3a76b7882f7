"""
Exception taxonomy for htlcswap.

Every error raised by the library derives from SwapError. Input and network
errors also derive from ValueError / RuntimeError so callers written against
plain built-in exceptions keep working.
"""

from typing import Optional


class SwapError(Exception):
    """Base class for all swap errors."""


class InputError(SwapError, ValueError):
    """Malformed address, key, amount or parameter. Raised before any I/O."""


class InsufficientFunds(InputError):
    """Selected UTXOs do not cover amount + fee."""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient funds: have {available} sats, need {required} sats"
        )


class TimelockNotElapsed(InputError):
    """Refund attempted before the cancellation timelock."""


class NetworkError(SwapError, RuntimeError):
    """Upstream indexer/RPC failure."""

    def __init__(self, message: str, endpoint: Optional[str] = None,
                 status_code: Optional[int] = None, unreachable: bool = False):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code
        # timeouts, connection errors and 5xx
        self.unreachable = unreachable


class SwapTimeoutError(SwapError, TimeoutError):
    """Confirmation or detection deadline exceeded."""


class ScriptMismatchError(SwapError):
    """Funding output does not pay to the expected redeem script."""


class SettlementError(SwapError):
    """EVM escrow settlement call failed."""


class SwapCancelled(SwapError):
    """Caller signalled cancellation."""
