"""
On-Chain USDC Balance Checker for Polymarket Trading

Direct on-chain queries and transfers using web3.py. py-clob-client's
get_balance_allowance is unreliable for proxy wallets, so the engine reads
the USDC contract itself.

Features:
- Query USDC balance from Polygon chain
- 30-second caching to avoid excessive RPC calls
- Thread-safe implementation
- Allowance reads and re-approval for the exchange contracts
- USDC transfers for cashout (requires a signing key)

USDC on Polygon: 0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174
"""
import logging
import threading
import time
from typing import Optional

from web3 import Web3
from web3.exceptions import Web3Exception

from ..config import POLYGON_RPC_URL

logger = logging.getLogger(__name__)

# USDC contract on Polygon (6 decimals)
USDC_CONTRACT_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
USDC_DECIMALS = 6

# Exchange contracts that spend USDC on behalf of the wallet
CTF_EXCHANGE_ADDRESS = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"
NEG_RISK_EXCHANGE_ADDRESS = "0xC5d563A36AE78145C45a50134d48A1215220f80a"

# Cache TTL in seconds
BALANCE_CACHE_TTL = 30

# Approvals are set to the max uint256
MAX_ALLOWANCE = 2**256 - 1

# Minimal ERC20 ABI
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "_owner", "type": "address"},
            {"name": "_spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "remaining", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_spender", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "success", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "success", "type": "bool"}],
        "type": "function",
    },
]


def to_usdc(raw_amount: int) -> float:
    """Convert 6-decimal base units to USDC."""
    return raw_amount / (10**USDC_DECIMALS)


def to_base_units(amount: float) -> int:
    """Convert USDC to 6-decimal base units, rounding down."""
    return int(amount * (10**USDC_DECIMALS))


class BalanceChecker:
    """
    On-chain USDC balance checker with caching.

    Read operations need only an RPC endpoint. ``approve`` and ``transfer``
    need a private key whose address owns the funds.

    Example:
        checker = BalanceChecker()
        balance = checker.get_balance("0xYourProxyWallet...")
        print(f"Available: ${balance:.2f}")
    """

    def __init__(
        self,
        rpc_url: str = POLYGON_RPC_URL,
        cache_ttl: int = BALANCE_CACHE_TTL,
        usdc_address: str = USDC_CONTRACT_ADDRESS,
        private_key: str = "",
        web3: Optional[Web3] = None,
    ):
        """
        Initialize the balance checker.

        Args:
            rpc_url: Polygon RPC endpoint URL
            cache_ttl: Cache time-to-live in seconds (default 30)
            usdc_address: USDC contract address on Polygon
            private_key: Optional signing key for approve/transfer
            web3: Optional preconfigured Web3 instance
        """
        self.rpc_url = rpc_url
        self.cache_ttl = cache_ttl
        self.usdc_address = Web3.to_checksum_address(usdc_address)
        self._private_key = private_key

        self._web3: Optional[Web3] = web3 or Web3(Web3.HTTPProvider(rpc_url))
        self._contract = self._web3.eth.contract(address=self.usdc_address, abi=ERC20_ABI)

        # Cache storage: {address: (balance, timestamp)}
        self._cache: dict[str, tuple[float, float]] = {}
        self._cache_lock = threading.Lock()
        # Serializes nonce use for signed transactions
        self._tx_lock = threading.Lock()

    @property
    def can_sign(self) -> bool:
        return bool(self._private_key)

    @property
    def signer_address(self) -> Optional[str]:
        if not self._private_key:
            return None
        return self._web3.eth.account.from_key(self._private_key).address

    def _checksum(self, address: str) -> str:
        if not Web3.is_address(address):
            raise ValueError(f"Invalid Ethereum address: {address}")
        return Web3.to_checksum_address(address)

    def _get_cached_balance(self, address: str) -> Optional[float]:
        with self._cache_lock:
            if address in self._cache:
                balance, timestamp = self._cache[address]
                if time.time() - timestamp < self.cache_ttl:
                    return balance
        return None

    def _set_cached_balance(self, address: str, balance: float) -> None:
        with self._cache_lock:
            self._cache[address] = (balance, time.time())

    def clear_cache(self) -> None:
        """Clear all cached balances."""
        with self._cache_lock:
            self._cache.clear()

    def get_balance(self, address: str, use_cache: bool = True) -> float:
        """
        Get USDC balance for an address.

        Args:
            address: Wallet address (proxy wallet for Polymarket)
            use_cache: Serve from the 30s cache when fresh

        Returns:
            Balance in USDC.

        Raises:
            ValueError: If address is invalid
            Web3Exception: If the RPC call fails
        """
        checksum_address = self._checksum(address)

        if use_cache:
            cached = self._get_cached_balance(checksum_address)
            if cached is not None:
                return cached

        raw_balance = self._contract.functions.balanceOf(checksum_address).call()
        balance = to_usdc(raw_balance)
        self._set_cached_balance(checksum_address, balance)
        return balance

    def get_allowance(self, owner: str, spender: str = CTF_EXCHANGE_ADDRESS) -> float:
        """Get the USDC amount ``spender`` may move from ``owner``."""
        raw = self._contract.functions.allowance(
            self._checksum(owner), self._checksum(spender)
        ).call()
        return to_usdc(raw)

    def _send(self, function) -> str:
        if not self._private_key:
            raise Web3Exception("No signing key configured")

        account = self._web3.eth.account.from_key(self._private_key)
        with self._tx_lock:
            tx = function.build_transaction(
                {
                    "from": account.address,
                    "nonce": self._web3.eth.get_transaction_count(account.address),
                    "chainId": self._web3.eth.chain_id,
                }
            )
            signed = account.sign_transaction(tx)
            tx_hash = self._web3.eth.send_raw_transaction(signed.raw_transaction)

        receipt = self._web3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
        if receipt.status != 1:
            raise Web3Exception(f"Transaction reverted: {tx_hash.hex()}")
        self.clear_cache()
        return tx_hash.hex()

    def approve(self, spender: str = CTF_EXCHANGE_ADDRESS, amount: int = MAX_ALLOWANCE) -> str:
        """
        Approve ``spender`` to move USDC from the signer's wallet.

        Returns:
            Transaction hash.
        """
        logger.info(f"Approving USDC spend for {spender}")
        return self._send(self._contract.functions.approve(self._checksum(spender), amount))

    def ensure_allowance(self, required: float, spender: str = CTF_EXCHANGE_ADDRESS) -> Optional[str]:
        """
        Re-approve ``spender`` if its allowance is below ``required``.

        Returns:
            Approval transaction hash, or None if the allowance was sufficient.
        """
        owner = self.signer_address
        if owner is None:
            raise Web3Exception("No signing key configured")
        if self.get_allowance(owner, spender) >= required:
            return None
        return self.approve(spender)

    def transfer(self, destination: str, amount: float) -> str:
        """
        Transfer USDC from the signer's wallet.

        Args:
            destination: Recipient address.
            amount: USDC amount.

        Returns:
            Transaction hash.
        """
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive: {amount}")
        logger.info(f"Transferring ${amount:.2f} USDC to {destination}")
        return self._send(
            self._contract.functions.transfer(self._checksum(destination), to_base_units(amount))
        )
