"""
Ledger adapters.

One LedgerAdapter per configured chain, chosen by the chain's `kind`.
"""

import os
from typing import Dict

from ..config import ChainConfig, CoordinatorConfig
from ..errors import ConfigError
from .base import LedgerAdapter
from .evm import EVMLedgerAdapter
from .gateway import GatewayLedgerAdapter
from .memory import MemoryLedgerAdapter


def create_adapter(chain: ChainConfig) -> LedgerAdapter:
    """Build the adapter for one chain config."""
    if chain.kind == "memory":
        return MemoryLedgerAdapter(chain.chain_id)
    if chain.kind == "evm":
        private_key = os.environ.get(chain.private_key_env, "") if chain.private_key_env else ""
        return EVMLedgerAdapter(
            chain.chain_id,
            rpc_url=chain.rpc_url,
            contract_address=chain.contract_address,
            private_key=private_key or None,
            network_id=chain.network_id,
            token_address=chain.token_address,
            gas_limit=chain.gas_limit,
            receipt_timeout=chain.request_timeout,
        )
    if chain.kind == "gateway":
        api_key = os.environ.get(chain.api_key_env, "") if chain.api_key_env else ""
        return GatewayLedgerAdapter(
            chain.chain_id,
            base_url=chain.gateway_url,
            api_key=api_key or None,
            timeout=chain.request_timeout,
        )
    raise ConfigError(f"Chain {chain.chain_id}: unknown adapter kind '{chain.kind}'")


def create_adapters(config: CoordinatorConfig) -> Dict[str, LedgerAdapter]:
    return {chain_id: create_adapter(chain) for chain_id, chain in config.chains.items()}


__all__ = [
    "LedgerAdapter",
    "EVMLedgerAdapter",
    "GatewayLedgerAdapter",
    "MemoryLedgerAdapter",
    "create_adapter",
    "create_adapters",
]
