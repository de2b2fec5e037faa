"""
Router service: one coordinator with its registries, adapters, store and
scheduler, and their start/stop lifecycle.
"""

import logging
from typing import Optional, Dict

from .authority import AuthorityRegistry
from .chains import LedgerAdapter, create_adapters
from .config import CoordinatorConfig, load_config, validate_chains
from .confirmations import ConfirmationLedger
from .store import StateStore
from .swap import AtomicSwapCoordinator, SwapRegistry, TimeoutScheduler

log = logging.getLogger(__name__)


class RouterService:
    """Owns everything one router process needs."""

    def __init__(self, config: Optional[CoordinatorConfig] = None,
                 adapters: Optional[Dict[str, LedgerAdapter]] = None):
        self.config = config or load_config()
        self.adapters = adapters if adapters is not None else create_adapters(self.config)
        if self.config.chains:
            validate_chains(self.config, self.adapters)

        self.authority = AuthorityRegistry(
            backup_requires_primary_down=self.config.backup_requires_primary_down,
            heartbeat_ttl=self.config.heartbeat_ttl,
        )
        self.confirmations = ConfirmationLedger(
            router_id=self.config.router_id,
            signing_key=self.config.signing_key(),
        )
        self.registry = SwapRegistry()

        state_path = self.config.resolved_state_path
        self.store = StateStore(state_path, self.config.persist_secrets) if state_path else None

        self.coordinator = AtomicSwapCoordinator(
            adapters=self.adapters,
            authority=self.authority,
            confirmations=self.confirmations,
            registry=self.registry,
            config=self.config,
            store=self.store,
        )
        self.scheduler = TimeoutScheduler(self.registry, self.coordinator,
                                          tick_interval=self.config.tick_interval)
        self.started = False

    async def start(self):
        if self.started:
            return
        await self.coordinator.start()
        self.scheduler.start()
        self.started = True
        log.info(f"Router {self.config.router_id} started with chains {sorted(self.adapters)}")

    async def stop(self):
        if not self.started:
            return
        await self.scheduler.stop()
        await self.coordinator.shutdown()
        self.started = False
        log.info(f"Router {self.config.router_id} stopped")

    def status(self) -> Dict:
        stats = self.coordinator.stats()
        stats["scheduler_running"] = self.scheduler.running
        stats["scheduler_ticks"] = self.scheduler.ticks
        stats["assets"] = len(self.authority.list_assets())
        return stats
