"""
EVM HTLC adapter.

Talks to a HashedTimelockERC20-style contract (create / withdraw / refund /
getHTLC) through web3. web3 calls are blocking, so each one runs in a worker
thread.

lock_ref format: "<htlcId>:<create tx hash>", both 0x-prefixed. The tx hash
is kept so confirmation counts can be read from the create receipt.
"""

import asyncio
import logging
import time
from typing import Optional, Tuple

from ..errors import LedgerError, LockFailed, ClaimFailed, RefundFailed
from .base import LedgerAdapter

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

# Contract ABI (minimal - only functions we use)
HTLC_ABI = [
    {
        "name": "create",
        "type": "function",
        "inputs": [
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"}
        ],
        "outputs": [{"name": "htlcId", "type": "bytes32"}]
    },
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [
            {"name": "htlcId", "type": "bytes32"},
            {"name": "preimage", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getHTLC",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": [
            {"name": "sender", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
            {"name": "withdrawn", "type": "bool"},
            {"name": "refunded", "type": "bool"},
            {"name": "preimage", "type": "bytes32"}
        ]
    },
]

# ERC20 approve ABI
ERC20_APPROVE_ABI = [
    {
        "name": "approve",
        "type": "function",
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
    },
]


def _hex32(value: str) -> bytes:
    if value.startswith("0x"):
        value = value[2:]
    return bytes.fromhex(value)


def _0x(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else "0x" + text


def split_lock_ref(lock_ref: str) -> Tuple[str, Optional[str]]:
    htlc_id, _, tx_hash = lock_ref.partition(":")
    return htlc_id, tx_hash or None


class EVMLedgerAdapter(LedgerAdapter):
    """LedgerAdapter over an EVM HTLC contract."""

    def __init__(self, chain_id: str, rpc_url: str, contract_address: str,
                 private_key: Optional[str] = None, network_id: int = 0,
                 token_address: str = "", gas_limit: int = 300000,
                 receipt_timeout: float = 120, web3=None, account=None):
        super().__init__(chain_id)
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.network_id = network_id
        self.token_address = token_address
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self._web3 = web3
        self._account = account
        self._private_key = private_key

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            from web3 import Web3
            self._web3 = Web3(Web3.HTTPProvider(self.rpc_url))
        return self._web3

    @property
    def account(self):
        if self._account is None:
            from eth_account import Account
            if not self._private_key:
                raise LedgerError("No signing key configured", chain=self.chain_id,
                                  recoverable=False)
            key = self._private_key
            if not key.startswith("0x"):
                key = "0x" + key
            self._account = Account.from_key(key)
        return self._account

    def _contract(self):
        from web3 import Web3
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.contract_address),
            abi=HTLC_ABI
        )

    # -- transaction plumbing -------------------------------------------------

    def _send(self, fn, gas: int) -> dict:
        """Sign, send and wait for a contract call. Returns the receipt."""
        w3 = self.web3
        account = self.account
        nonce = w3.eth.get_transaction_count(account.address, 'pending')
        gas_price = int(w3.eth.gas_price * 1.1)

        tx = fn.build_transaction({
            'from': account.address,
            'nonce': nonce,
            'gas': gas,
            'gasPrice': gas_price,
            'chainId': self.network_id
        })
        signed = account.sign_transaction(tx)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        log.info(f"[{self.chain_id}] TX sent: {_0x(tx_hash)}")

        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt['status'] != 1:
            raise LedgerError(f"Transaction {_0x(tx_hash)} reverted", chain=self.chain_id,
                              recoverable=False)
        return receipt

    def _ensure_allowance(self, amount: int):
        from web3 import Web3

        token = self.web3.eth.contract(
            address=Web3.to_checksum_address(self.token_address),
            abi=ERC20_APPROVE_ABI
        )
        spender = Web3.to_checksum_address(self.contract_address)
        allowance = token.functions.allowance(self.account.address, spender).call()
        if allowance < amount:
            log.info(f"[{self.chain_id}] Approving token spending...")
            self._send(token.functions.approve(spender, 2**256 - 1), gas=100000)

    def _lock_sync(self, secret_hash: str, recipient: str, amount: int, timelock: int) -> str:
        from web3 import Web3

        if not self.web3.is_connected():
            raise LockFailed("Cannot connect to RPC", chain=self.chain_id)

        token = self.token_address or ZERO_ADDRESS
        if self.token_address:
            self._ensure_allowance(amount)

        fn = self._contract().functions.create(
            Web3.to_checksum_address(recipient),
            Web3.to_checksum_address(token),
            amount,
            _hex32(secret_hash),
            timelock
        )
        receipt = self._send(fn, gas=self.gas_limit)

        # htlcId is the first indexed topic of the contract's creation event
        contract_lower = self.contract_address.lower()
        for entry in receipt['logs']:
            if entry['address'].lower() == contract_lower and len(entry['topics']) >= 2:
                htlc_id = _0x(entry['topics'][1])
                return f"{htlc_id}:{_0x(receipt['transactionHash'])}"
        raise LockFailed("Could not extract htlcId", chain=self.chain_id, recoverable=False)

    def _claim_sync(self, lock_ref: str, secret: str) -> str:
        htlc_id, _ = split_lock_ref(lock_ref)
        fn = self._contract().functions.withdraw(_hex32(htlc_id), _hex32(secret))
        receipt = self._send(fn, gas=200000)
        return _0x(receipt['transactionHash'])

    def _refund_sync(self, lock_ref: str) -> str:
        htlc_id, _ = split_lock_ref(lock_ref)
        fn = self._contract().functions.refund(_hex32(htlc_id))
        receipt = self._send(fn, gas=150000)
        return _0x(receipt['transactionHash'])

    def _is_expired_sync(self, lock_ref: str) -> bool:
        htlc_id, _ = split_lock_ref(lock_ref)
        htlc = self._contract().functions.getHTLC(_hex32(htlc_id)).call()
        sender, timelock = htlc[0], htlc[5]
        if sender == ZERO_ADDRESS:
            raise LedgerError(f"HTLC {htlc_id} not found", chain=self.chain_id,
                              recoverable=False)
        block = self.web3.eth.get_block('latest')
        now = block['timestamp'] if block else int(time.time())
        return now >= timelock

    def _confirmations_sync(self, lock_ref: str) -> int:
        _, tx_hash = split_lock_ref(lock_ref)
        if not tx_hash:
            return 0
        receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        if receipt is None or receipt['blockNumber'] is None:
            return 0
        return max(0, self.web3.eth.block_number - receipt['blockNumber'] + 1)

    async def _run(self, error_cls, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except LedgerError as e:
            if isinstance(e, error_cls):
                raise
            raise error_cls(e.message, chain=self.chain_id, recoverable=e.recoverable)
        except Exception as e:
            from web3.exceptions import ContractLogicError
            recoverable = not isinstance(e, (ContractLogicError, ValueError))
            raise error_cls(f"{type(e).__name__}: {e}", chain=self.chain_id,
                            recoverable=recoverable)

    # -- LedgerAdapter --------------------------------------------------------

    async def lock(self, secret_hash: str, recipient: str, amount: int,
                   timelock: int, asset_id: str = "") -> str:
        log.info(f"[{self.chain_id}] Creating HTLC: {amount} {asset_id} to {recipient[:10]}...")
        return await self._run(LockFailed, self._lock_sync, secret_hash, recipient,
                               amount, timelock)

    async def claim(self, lock_ref: str, secret: str) -> str:
        return await self._run(ClaimFailed, self._claim_sync, lock_ref, secret)

    async def refund(self, lock_ref: str) -> str:
        return await self._run(RefundFailed, self._refund_sync, lock_ref)

    async def is_expired(self, lock_ref: str) -> bool:
        return await self._run(LedgerError, self._is_expired_sync, lock_ref)

    async def get_confirmation_count(self, lock_ref: str) -> int:
        return await self._run(LedgerError, self._confirmations_sync, lock_ref)
