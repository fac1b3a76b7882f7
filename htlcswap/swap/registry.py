"""
Host-level registry of swaps.

Many orchestrators may insert and read concurrently; each swap id is only ever
mutated by the one task driving it, so a single lock around the map suffices.
"""

import threading
from typing import Dict, List, Optional, Tuple

from ..core import SwapOrder, SwapStatus


class SwapRegistry:
    """swap id -> (SwapOrder, SwapStatus), plus the EVM settlement record."""

    def __init__(self):
        self._lock = threading.Lock()
        self._swaps: Dict[str, Tuple[SwapOrder, SwapStatus]] = {}
        self._settlements: Dict[str, str] = {}

    def add(self, order: SwapOrder, status: Optional[SwapStatus] = None) -> SwapStatus:
        """Register an order. Re-adding a known swap id returns its status."""
        with self._lock:
            if order.swap_id in self._swaps:
                return self._swaps[order.swap_id][1]
            status = status or SwapStatus()
            self._swaps[order.swap_id] = (order, status)
            return status

    def get(self, swap_id: str) -> Optional[Tuple[SwapOrder, SwapStatus]]:
        with self._lock:
            return self._swaps.get(swap_id)

    def status(self, swap_id: str) -> Optional[SwapStatus]:
        entry = self.get(swap_id)
        return entry[1] if entry else None

    def active(self) -> List[str]:
        """Swap ids not yet in a terminal phase."""
        with self._lock:
            return [sid for sid, (_, status) in self._swaps.items()
                    if not status.phase.is_terminal]

    def record_settlement(self, swap_id: str, tx_hash: str):
        with self._lock:
            self._settlements.setdefault(swap_id, tx_hash)

    def settlement(self, swap_id: str) -> Optional[str]:
        with self._lock:
            return self._settlements.get(swap_id)

    def __len__(self):
        with self._lock:
            return len(self._swaps)

    def __contains__(self, swap_id: str):
        with self._lock:
            return swap_id in self._swaps
