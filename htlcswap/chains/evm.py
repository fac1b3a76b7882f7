"""
EVM escrow client for htlcswap.

The escrow contract holds the counter-asset (an ERC-20 stablecoin such as
PYUSD, 6 decimals) and releases it to the maker once the Bitcoin side is done:

    fundEscrow(uint256 amount)
    completeSwap(uint256 amount, string swapId)
    getEscrowBalance() -> uint256
    getContractInfo() -> (owner, token, maker, balance)

completeSwap is guarded per swap id on this side as well, so one client never
sends two releases for the same swap.
"""

import os
import secrets
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, Any

from eth_account import Account
from web3 import Web3

from ..core import SEPOLIA_CHAIN_ID

log = logging.getLogger(__name__)

SEPOLIA_RPC_URL = "https://ethereum-sepolia-rpc.publicnode.com"

ESCROW_ABI = [
    {
        "name": "fundEscrow",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": []
    },
    {
        "name": "completeSwap",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "swapId", "type": "string"}
        ],
        "outputs": []
    },
    {
        "name": "getEscrowBalance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "getContractInfo",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "owner", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "maker", "type": "address"},
            {"name": "balance", "type": "uint256"}
        ]
    }
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]


@dataclass
class EVMConfig:
    """EVM chain + escrow configuration."""
    rpc_url: str = SEPOLIA_RPC_URL
    chain_id: int = SEPOLIA_CHAIN_ID
    private_key: str = ""
    escrow_address: str = ""
    token_address: str = ""         # ERC-20 pulled by fundEscrow
    token_decimals: int = 6
    gas_limit: int = 200000
    approve_gas_limit: int = 100000
    receipt_timeout: int = 120      # seconds

    @classmethod
    def from_env(cls, prefix: str = "HTLCSWAP_EVM_") -> "EVMConfig":
        return cls(
            rpc_url=os.environ.get(f"{prefix}RPC_URL", SEPOLIA_RPC_URL),
            chain_id=int(os.environ.get(f"{prefix}CHAIN_ID", SEPOLIA_CHAIN_ID)),
            private_key=os.environ.get(f"{prefix}PRIVATE_KEY", ""),
            escrow_address=os.environ.get(f"{prefix}ESCROW_ADDRESS", ""),
            token_address=os.environ.get(f"{prefix}TOKEN_ADDRESS", ""),
            token_decimals=int(os.environ.get(f"{prefix}TOKEN_DECIMALS", 6)),
        )


@dataclass
class EscrowResult:
    """Result from an escrow operation."""
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    swap_id: Optional[str] = None
    already_settled: bool = False


class SettlementLedger:
    """Thread-safe swap id -> settlement tx hash, with in-flight tracking."""

    def __init__(self):
        self._lock = threading.Lock()
        self._settled: Dict[str, str] = {}
        self._inflight = set()

    def begin(self, swap_id: str) -> Optional[EscrowResult]:
        """Claim the right to settle `swap_id`, or return why not."""
        with self._lock:
            if swap_id in self._settled:
                return EscrowResult(success=True, tx_hash=self._settled[swap_id],
                                    swap_id=swap_id, already_settled=True)
            if swap_id in self._inflight:
                return EscrowResult(success=False, swap_id=swap_id,
                                    error="Settlement already in progress")
            self._inflight.add(swap_id)
        return None

    def finish(self, swap_id: str, tx_hash: Optional[str]):
        with self._lock:
            self._inflight.discard(swap_id)
            if tx_hash:
                self._settled[swap_id] = tx_hash

    def get(self, swap_id: str) -> Optional[str]:
        with self._lock:
            return self._settled.get(swap_id)


class EscrowClient:
    """
    Escrow contract wrapper using web3.py.

    Methods are synchronous (web3 HTTP provider); async callers run them in a
    worker thread.
    """

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None):
        self.config = config
        self._web3 = web3
        self._ledger = SettlementLedger()

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def account(self):
        key = self.config.private_key
        if not key.startswith("0x"):
            key = "0x" + key
        return Account.from_key(key)

    def _escrow(self):
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.escrow_address),
            abi=ESCROW_ABI
        )

    def _send(self, call, gas: int) -> str:
        """Build, sign, send and wait for a contract call. Returns the tx hash."""
        w3 = self.web3
        account = self.account
        tx = call.build_transaction({
            'from': account.address,
            'nonce': w3.eth.get_transaction_count(account.address, 'pending'),
            'gas': gas,
            'gasPrice': int(w3.eth.gas_price * 1.1),
            'chainId': self.config.chain_id
        })
        signed = account.sign_transaction(tx)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.config.receipt_timeout
        )
        tx_hex = Web3.to_hex(tx_hash)
        if receipt['status'] != 1:
            raise RuntimeError(f"Transaction reverted: {tx_hex}")
        return tx_hex

    def fund_escrow(self, amount: int) -> EscrowResult:
        """
        Deposit `amount` token units into the escrow.

        Approves the escrow first if the current allowance is too low.
        """
        try:
            escrow_address = Web3.to_checksum_address(self.config.escrow_address)
            if self.config.token_address:
                token = self.web3.eth.contract(
                    address=Web3.to_checksum_address(self.config.token_address),
                    abi=ERC20_ABI
                )
                allowance = token.functions.allowance(
                    self.account.address, escrow_address
                ).call()
                if allowance < amount:
                    log.info(f"Approving escrow for {amount} token units...")
                    self._send(token.functions.approve(escrow_address, amount),
                               self.config.approve_gas_limit)

            tx_hash = self._send(self._escrow().functions.fundEscrow(amount),
                                 self.config.gas_limit)
            log.info(f"Escrow funded with {amount}: {tx_hash}")
            return EscrowResult(success=True, tx_hash=tx_hash)

        except Exception as e:
            log.exception("Failed to fund escrow")
            return EscrowResult(success=False, error=str(e))

    def complete_swap(self, amount: int, swap_id: str) -> EscrowResult:
        """
        Release `amount` to the maker for `swap_id`.

        A swap id that already settled returns the recorded tx hash without
        sending anything.
        """
        blocked = self._ledger.begin(swap_id)
        if blocked is not None:
            log.info(f"completeSwap skipped for {swap_id}: "
                     f"{'already settled' if blocked.success else blocked.error}")
            return blocked

        tx_hash = None
        try:
            tx_hash = self._send(
                self._escrow().functions.completeSwap(amount, swap_id),
                self.config.gas_limit
            )
            log.info(f"Swap {swap_id} settled on EVM: {tx_hash}")
            return EscrowResult(success=True, tx_hash=tx_hash, swap_id=swap_id)

        except Exception as e:
            log.exception(f"completeSwap failed for {swap_id}")
            return EscrowResult(success=False, error=str(e), swap_id=swap_id)

        finally:
            self._ledger.finish(swap_id, tx_hash)

    def get_balance(self) -> int:
        """Escrowed token units."""
        return self._escrow().functions.getEscrowBalance().call()

    def get_contract_info(self) -> Dict[str, Any]:
        owner, token, maker, balance = self._escrow().functions.getContractInfo().call()
        return {
            "owner": owner,
            "token": token,
            "maker": maker,
            "balance": balance,
            "balance_display": balance / 10 ** self.config.token_decimals,
        }


class SimulatedEscrow:
    """In-memory escrow with the same interface and settlement guarantees."""

    def __init__(self, initial_balance: int = 0):
        self._lock = threading.Lock()
        self.balance = initial_balance
        self.transfers: Dict[str, int] = {}
        self._ledger = SettlementLedger()

    def fund_escrow(self, amount: int) -> EscrowResult:
        with self._lock:
            self.balance += amount
        return EscrowResult(success=True, tx_hash="0x" + secrets.token_hex(32))

    def complete_swap(self, amount: int, swap_id: str) -> EscrowResult:
        blocked = self._ledger.begin(swap_id)
        if blocked is not None:
            return blocked

        tx_hash = None
        try:
            with self._lock:
                if amount > self.balance:
                    return EscrowResult(
                        success=False, swap_id=swap_id,
                        error=f"Escrow balance {self.balance} below {amount}"
                    )
                self.balance -= amount
                self.transfers[swap_id] = amount
            tx_hash = "0x" + secrets.token_hex(32)
            log.info(f"[simulated] Swap {swap_id} settled: {amount}")
            return EscrowResult(success=True, tx_hash=tx_hash, swap_id=swap_id)
        finally:
            self._ledger.finish(swap_id, tx_hash)

    def get_balance(self) -> int:
        with self._lock:
            return self.balance
