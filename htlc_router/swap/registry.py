"""
Swap registry.

Owns every SwapRecord keyed by swap id. Mutation happens under the swap's own
asyncio.Lock (see `locked`), so swaps never block each other and each swap
has a single writer at a time.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Dict, List, Any, Iterable, Tuple

from ..core import SwapRecord, SwapState, TERMINAL_STATES
from ..errors import SwapNotFound

log = logging.getLogger(__name__)


class SwapRegistry:
    """In-memory store of SwapRecords with per-swap locks."""

    def __init__(self):
        self._swaps: Dict[str, SwapRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._closed = False

    def create(self, record: SwapRecord) -> SwapRecord:
        if self._closed:
            raise RuntimeError("SwapRegistry is closed")
        if record.swap_id in self._swaps:
            raise ValueError(f"Swap {record.swap_id} already exists")
        self._swaps[record.swap_id] = record
        self._locks[record.swap_id] = asyncio.Lock()
        return record

    def get(self, swap_id: str) -> SwapRecord:
        record = self._swaps.get(swap_id)
        if record is None:
            raise SwapNotFound(f"Swap {swap_id} not found", swap_id=swap_id)
        return record

    def __contains__(self, swap_id: str) -> bool:
        return swap_id in self._swaps

    def __len__(self) -> int:
        return len(self._swaps)

    @asynccontextmanager
    async def locked(self, swap_id: str):
        """Hold the swap's lock and yield its record."""
        record = self.get(swap_id)
        async with self._locks[swap_id]:
            yield record

    def list(self, state: Optional[SwapState] = None) -> List[SwapRecord]:
        records = sorted(self._swaps.values(), key=lambda r: r.created_at)
        if state is not None:
            records = [r for r in records if r.state == state]
        return records

    def open_swaps(self) -> List[SwapRecord]:
        return [r for r in self._swaps.values() if r.state not in TERMINAL_STATES]

    def due_for_timeout(self, now_monotonic: float) -> List[Tuple[str, SwapState]]:
        """(swap_id, observed state) pairs the scheduler should act on.

        - locking past the lock deadline
        - locked past the claim deadline, when auto_rollback is set
        - expired, when auto_rollback is set
        """
        due = []
        for record in list(self._swaps.values()):
            state = record.state
            if state == SwapState.LOCKING:
                if now_monotonic >= record.deadline_monotonic:
                    due.append((record.swap_id, state))
            elif state == SwapState.LOCKED:
                if record.request.auto_rollback and \
                        now_monotonic >= record.claim_deadline_monotonic:
                    due.append((record.swap_id, state))
            elif state == SwapState.EXPIRED:
                if record.request.auto_rollback:
                    due.append((record.swap_id, state))
        return due

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in self._swaps.values():
            counts[record.state.value] = counts.get(record.state.value, 0) + 1
        return counts

    def drain(self) -> List[SwapRecord]:
        """Close for new swaps and return the ones still open."""
        self._closed = True
        return self.open_swaps()

    # -- persistence ----------------------------------------------------------

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        return {sid: r.to_dict(include_secret=include_secrets)
                for sid, r in self._swaps.items()}

    def load(self, data: Dict[str, Any]) -> List[SwapRecord]:
        loaded = []
        for entry in data.values():
            record = SwapRecord.from_dict(entry)
            record.sync_monotonic()
            self._swaps[record.swap_id] = record
            self._locks[record.swap_id] = asyncio.Lock()
            loaded.append(record)
        log.info(f"Loaded {len(loaded)} swaps")
        return loaded
