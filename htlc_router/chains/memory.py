"""
In-process HTLC ledger.

Keeps locks in a dict and enforces the same rules an on-chain HTLC does:
claim needs the preimage and must happen before the timelock, refund only
after it. Fault switches let tests script slow or failing ledgers.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Dict, List, Tuple

from ..core import verify_preimage
from ..errors import LedgerError, LockFailed, ClaimFailed, RefundFailed
from .base import LedgerAdapter

log = logging.getLogger(__name__)


@dataclass
class MemoryLock:
    lock_ref: str
    secret_hash: str
    recipient: str
    amount: int
    timelock: int
    asset_id: str
    confirmations: int = 0
    claimed: bool = False
    refunded: bool = False
    claim_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    preimage: Optional[str] = None


class MemoryLedgerAdapter(LedgerAdapter):
    """
    In-memory LedgerAdapter.

    Fault switches:
        lock_error: raised by every lock() call
        hang_lock: lock() never returns (caller must time it out)
        lock_delay: seconds lock() takes before returning
        max_confirmations: confirmations stop growing at this count
        confirmations_per_check: growth per get_confirmation_count() call
        claim_error: raised by every claim() call
        refund_error: raised by refund() while refund_failures > 0
                      (or always when refund_failures is None)
    """

    def __init__(self, chain_id: str, confirmations_per_check: int = 1,
                 max_confirmations: Optional[int] = None):
        super().__init__(chain_id)
        self.locks: Dict[str, MemoryLock] = {}
        self.calls: List[Tuple[str, str]] = []
        self.confirmations_per_check = confirmations_per_check
        self.max_confirmations = max_confirmations

        self.lock_error: Optional[LedgerError] = None
        self.hang_lock = False
        self.lock_delay = 0.0
        self.claim_error: Optional[LedgerError] = None
        self.refund_error: Optional[LedgerError] = None
        self.refund_failures: Optional[int] = None
        self.closed = False

    def _get(self, lock_ref: str) -> MemoryLock:
        lock = self.locks.get(lock_ref)
        if lock is None:
            raise LedgerError(f"Unknown lock {lock_ref}", chain=self.chain_id,
                              recoverable=False)
        return lock

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    async def lock(self, secret_hash: str, recipient: str, amount: int,
                   timelock: int, asset_id: str = "") -> str:
        self.calls.append(("lock", secret_hash))
        if self.hang_lock:
            await asyncio.Event().wait()
        if self.lock_delay:
            await asyncio.sleep(self.lock_delay)
        if self.lock_error is not None:
            raise self.lock_error
        if amount <= 0:
            raise LockFailed(f"Invalid amount {amount}", chain=self.chain_id,
                             recoverable=False)
        if not recipient:
            raise LockFailed("Invalid destination address", chain=self.chain_id,
                             recoverable=False)

        lock_ref = f"{self.chain_id}_lock_{uuid.uuid4().hex[:12]}"
        self.locks[lock_ref] = MemoryLock(
            lock_ref=lock_ref,
            secret_hash=secret_hash,
            recipient=recipient,
            amount=amount,
            timelock=timelock,
            asset_id=asset_id,
        )
        log.info(f"[{self.chain_id}] Locked {amount} {asset_id} for {recipient} ({lock_ref})")
        return lock_ref

    async def claim(self, lock_ref: str, secret: str) -> str:
        self.calls.append(("claim", lock_ref))
        if self.claim_error is not None:
            raise self.claim_error
        lock = self._get(lock_ref)
        if lock.claimed:
            return lock.claim_ref
        if lock.refunded:
            raise ClaimFailed(f"Lock {lock_ref} already refunded", chain=self.chain_id,
                              recoverable=False)
        if time.time() >= lock.timelock:
            raise ClaimFailed(f"Lock {lock_ref} expired", chain=self.chain_id,
                              recoverable=False)
        if not verify_preimage(secret, lock.secret_hash):
            raise ClaimFailed("Preimage does not match hashlock", chain=self.chain_id,
                              recoverable=False)

        lock.claimed = True
        lock.preimage = secret
        lock.claim_ref = f"{self.chain_id}_claim_{uuid.uuid4().hex[:12]}"
        return lock.claim_ref

    async def refund(self, lock_ref: str) -> str:
        self.calls.append(("refund", lock_ref))
        if self.refund_error is not None:
            if self.refund_failures is None:
                raise self.refund_error
            if self.refund_failures > 0:
                self.refund_failures -= 1
                raise self.refund_error
        lock = self._get(lock_ref)
        if lock.refunded:
            return lock.refund_ref
        if lock.claimed:
            raise RefundFailed(f"Lock {lock_ref} already claimed", chain=self.chain_id,
                               recoverable=False)
        if time.time() < lock.timelock:
            raise RefundFailed(f"Lock {lock_ref} not expired yet", chain=self.chain_id,
                               recoverable=True)

        lock.refunded = True
        lock.refund_ref = f"{self.chain_id}_refund_{uuid.uuid4().hex[:12]}"
        return lock.refund_ref

    async def is_expired(self, lock_ref: str) -> bool:
        return time.time() >= self._get(lock_ref).timelock

    async def get_confirmation_count(self, lock_ref: str) -> int:
        lock = self._get(lock_ref)
        grown = lock.confirmations + self.confirmations_per_check
        if self.max_confirmations is not None:
            grown = min(grown, self.max_confirmations)
        lock.confirmations = max(lock.confirmations, grown)
        return lock.confirmations

    async def close(self):
        self.closed = True
