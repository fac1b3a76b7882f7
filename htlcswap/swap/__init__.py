"""
Swap coordination for htlcswap.
"""

from .executor import SwapOrchestrator
from .detector import FundingDetector
from .failover import RpcFailoverProvider

__all__ = ["SwapOrchestrator", "FundingDetector", "RpcFailoverProvider"]
