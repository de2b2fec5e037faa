"""
Swap orchestration: registry, coordinator and timeout scheduler.
"""

from .registry import SwapRegistry
from .coordinator import AtomicSwapCoordinator
from .scheduler import TimeoutScheduler

__all__ = [
    "SwapRegistry",
    "AtomicSwapCoordinator",
    "TimeoutScheduler",
]
