"""
LedgerAdapter interface.

One implementation per ledger flavor. Every call may be slow and may fail;
implementations raise LedgerError (or a subclass) with `recoverable` set for
transport-level failures and cleared for rejections the ledger will repeat.
"""

from abc import ABC, abstractmethod


class LedgerAdapter(ABC):
    """HTLC primitives on a single ledger."""

    def __init__(self, chain_id: str):
        self.chain_id = chain_id

    @abstractmethod
    async def lock(self, secret_hash: str, recipient: str, amount: int,
                   timelock: int, asset_id: str = "") -> str:
        """Lock `amount` for `recipient` behind `secret_hash` until `timelock`.

        Returns:
            lock_ref identifying the HTLC on this ledger
        """

    @abstractmethod
    async def claim(self, lock_ref: str, secret: str) -> str:
        """Claim a lock with its preimage. Returns claim_ref."""

    @abstractmethod
    async def refund(self, lock_ref: str) -> str:
        """Refund an expired lock to its sender. Returns refund_ref."""

    @abstractmethod
    async def is_expired(self, lock_ref: str) -> bool:
        """True once the lock's timelock has passed on this ledger."""

    @abstractmethod
    async def get_confirmation_count(self, lock_ref: str) -> int:
        """Confirmations observed for the lock transaction."""

    async def close(self):
        """Release connections. Default: nothing to release."""

    def __repr__(self):
        return f"{type(self).__name__}({self.chain_id!r})"
