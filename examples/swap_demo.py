#!/usr/bin/env python3
"""
Example: chain-a <-> chain-b Atomic Swap

Runs two swaps against in-memory ledgers and narrates each one from its
event log:

1. Happy path: both legs lock, confirm, and are claimed with the secret
2. Timeout: chain-b never locks, chain-a's lock is refunded

Usage:
    python swap_demo.py
"""

import sys
import asyncio
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from htlc_router.authority import AuthorityRegistry
from htlc_router.chains.memory import MemoryLedgerAdapter
from htlc_router.config import CoordinatorConfig
from htlc_router.confirmations import ConfirmationLedger
from htlc_router.core import SwapAsset, SwapRequest, TERMINAL_STATES, SwapState
from htlc_router.swap import AtomicSwapCoordinator, SwapRegistry, TimeoutScheduler

logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)


def narrate(status: dict):
    """Print a swap's story from its status document."""
    print(f"\n=== {status['swap_id']} ({status['status']}, {status['progress']}%) ===")
    start = status["events"][0]["timestamp"] if status["events"] else 0
    for event in status["events"]:
        offset = event["timestamp"] - start
        where = f" [{event['chain']}]" if event["chain"] else ""
        print(f"  +{offset:6.2f}s {event['type']:<14}{where} {event['message']}")
    for role, leg in status["legs"].items():
        print(f"  {role:<9} lock={leg['lock_ref']} claim={leg['claim_ref']} "
              f"refund={leg['refund_ref']}")
    print(f"  dual confirmation: {status['confirmation']['status']}")


async def wait_for(coordinator, swap_id: str, states, timeout: float = 30):
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        status = coordinator.get_atomic_swap_status(swap_id)
        if SwapState(status["status"]) in states:
            return status
        await asyncio.sleep(0.05)
    raise TimeoutError(f"{swap_id} did not reach {states}")


async def main():
    # =================================================================
    # 1. Wire up ledgers, registries and the coordinator
    # =================================================================
    chain_a = MemoryLedgerAdapter("chain-a")
    chain_b = MemoryLedgerAdapter("chain-b")

    config = CoordinatorConfig(
        router_id="router-a",
        tick_interval=0.1,
        confirmation_poll_interval=0.05,
        claim_window_seconds=0.5,
        backoff_base_seconds=0.05,
    )
    authority = AuthorityRegistry()
    authority.register_asset("usdc", "router-a", ["router-b"])
    authority.register_asset("hbar", "router-b")

    registry = SwapRegistry()
    coordinator = AtomicSwapCoordinator(
        adapters={"chain-a": chain_a, "chain-b": chain_b},
        authority=authority,
        confirmations=ConfirmationLedger("router-a"),
        registry=registry,
        config=config,
    )
    scheduler = TimeoutScheduler(registry, coordinator, tick_interval=config.tick_interval)
    scheduler.start()

    def request(timeout_minutes: float) -> SwapRequest:
        return SwapRequest(
            initiator_id="router-a",
            responder_id="router-b",
            initiator_asset=SwapAsset("chain-a", "usdc", 100_000_000, "0xB0b"),
            responder_asset=SwapAsset("chain-b", "hbar", 1_000_000_000, "0.0.1001"),
            timeout_minutes=timeout_minutes,
            required_confirmations={"chain-a": 3, "chain-b": 2},
        )

    # =================================================================
    # 2. Happy path
    # =================================================================
    started = await coordinator.execute_atomic_swap(request(timeout_minutes=0.05))
    await wait_for(coordinator, started["swap_id"], {SwapState.LOCKED} | TERMINAL_STATES)
    await coordinator.complete_atomic_swap(started["swap_id"], completion_ref="demo-1")
    narrate(coordinator.get_atomic_swap_status(started["swap_id"]))

    # =================================================================
    # 3. Responder chain never locks: unwind chain-a
    # =================================================================
    chain_b.hang_lock = True
    started = await coordinator.execute_atomic_swap(request(timeout_minutes=0.01))
    status = await wait_for(coordinator, started["swap_id"], TERMINAL_STATES)
    narrate(status)

    await scheduler.stop()
    await coordinator.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
