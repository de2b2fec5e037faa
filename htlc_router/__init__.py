"""
htlc_router - Atomic swap coordination between independent ledgers.

Hash-time-locked swaps across two chains, gated by per-asset router
authority and mirrored into a dual confirmation ledger.

Usage:
    from htlc_router import RouterService, SwapRequest, SwapAsset

    service = RouterService()
    await service.start()

    service.authority.register_asset("usdc", "router-a")
    service.authority.register_asset("hbar", "router-b")

    started = await service.coordinator.execute_atomic_swap(SwapRequest(
        initiator_id="router-a",
        responder_id="router-b",
        initiator_asset=SwapAsset("chain-a", "usdc", 100_000_000, "0xBob..."),
        responder_asset=SwapAsset("chain-b", "hbar", 1_000_000_000, "0.0.1234"),
        timeout_minutes=5,
        required_confirmations={"chain-a": 3, "chain-b": 2},
    ))

    # once status is "locked"
    result = await service.coordinator.complete_atomic_swap(started["swap_id"])
"""

__version__ = "0.1.0"

from .core import (
    SwapState,
    SwapAsset,
    SwapRequest,
    SwapRecord,
    ConfirmationStatus,
    DualStatus,
    AuthorityRole,
    generate_secret,
    hash_secret,
    verify_preimage,
)
from .errors import RouterError
from .authority import AuthorityRegistry
from .confirmations import ConfirmationLedger
from .swap import AtomicSwapCoordinator, SwapRegistry, TimeoutScheduler
from .service import RouterService

__all__ = [
    "SwapState",
    "SwapAsset",
    "SwapRequest",
    "SwapRecord",
    "ConfirmationStatus",
    "DualStatus",
    "AuthorityRole",
    "generate_secret",
    "hash_secret",
    "verify_preimage",
    "RouterError",
    "AuthorityRegistry",
    "ConfirmationLedger",
    "AtomicSwapCoordinator",
    "SwapRegistry",
    "TimeoutScheduler",
    "RouterService",
]
