"""
Router configuration.

Loaded from a JSON file (HTLC_ROUTER_CONFIG, default ~/.htlc_router/config.json)
with environment overrides for the router id and the state file. Signing keys
are never stored in the file, only the names of the env vars that hold them.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, Iterable

from .core import (
    DEFAULT_REQUIRED_CONFIRMATIONS,
    DEFAULT_CLAIM_WINDOW_SECONDS,
    DEFAULT_TIMELOCK_GAP_SECONDS,
)
from .errors import ConfigError

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.htlc_router/config.json"
DEFAULT_STATE_PATH = "~/.htlc_router/state_{router_id}.json"

ADAPTER_KINDS = ("evm", "gateway", "memory")

# Fields each adapter kind cannot run without
REQUIRED_FIELDS = {
    "evm": ("rpc_url", "contract_address", "private_key_env"),
    "gateway": ("gateway_url",),
    "memory": (),
}


@dataclass
class ChainConfig:
    """One ledger the router can lock on."""
    chain_id: str
    kind: str = "memory"
    rpc_url: str = ""
    contract_address: str = ""
    token_address: str = ""             # ERC20 locked by the HTLC ("" = native)
    network_id: int = 0                 # Numeric EVM chain id
    private_key_env: str = ""
    gateway_url: str = ""
    api_key_env: str = ""
    request_timeout: float = 30.0
    gas_limit: int = 300000

    def missing_fields(self) -> list:
        return [name for name in REQUIRED_FIELDS.get(self.kind, ())
                if not getattr(self, name)]

    @classmethod
    def from_dict(cls, chain_id: str, data: Dict[str, Any]) -> "ChainConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["chain_id"] = chain_id
        return cls(**known)


@dataclass
class CoordinatorConfig:
    """Coordinator, scheduler and retry settings."""
    router_id: str = "router-a"
    tick_interval: float = 1.0
    confirmation_poll_interval: float = 2.0
    claim_window_seconds: float = DEFAULT_CLAIM_WINDOW_SECONDS
    timelock_gap_seconds: float = DEFAULT_TIMELOCK_GAP_SECONDS
    default_required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS

    # Retry policy for adapter calls
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0
    call_timeout: float = 60.0

    auto_complete: bool = False
    backup_requires_primary_down: bool = False
    heartbeat_ttl: float = 30.0

    state_path: Optional[str] = None
    persist_secrets: bool = False
    drain_timeout: float = 10.0
    signing_key_env: str = "HTLC_ROUTER_SIGNING_KEY"

    chains: Dict[str, ChainConfig] = field(default_factory=dict)

    @property
    def resolved_state_path(self) -> Optional[str]:
        if not self.state_path:
            return None
        return os.path.expanduser(self.state_path.format(router_id=self.router_id))

    def signing_key(self) -> bytes:
        """Key used to sign confirmation records (falls back to the router id)."""
        value = os.environ.get(self.signing_key_env, "")
        return (value or self.router_id).encode()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["chains"] = {cid: asdict(c) for cid, c in self.chains.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoordinatorConfig":
        chains = {
            cid: ChainConfig.from_dict(cid, cdata)
            for cid, cdata in (data.get("chains") or {}).items()
        }
        known = {k: v for k, v in data.items()
                 if k in cls.__dataclass_fields__ and k != "chains"}
        return cls(chains=chains, **known)


def load_config(path: Optional[str] = None) -> CoordinatorConfig:
    """Load config from JSON, then apply ROUTER_ID / HTLC_ROUTER_STATE overrides.

    A missing file yields the defaults with a single in-memory chain pair so
    the server can boot for local testing.
    """
    path = os.path.expanduser(path or os.environ.get("HTLC_ROUTER_CONFIG", DEFAULT_CONFIG_PATH))
    data: Dict[str, Any] = {}
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}")
        log.info(f"Loaded router config from {path}")
    else:
        log.warning(f"No config at {path}, using in-memory chains")
        data = {"chains": {"chain-a": {"kind": "memory"}, "chain-b": {"kind": "memory"}}}

    try:
        config = CoordinatorConfig.from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid config {path}: {e}")

    config.router_id = os.environ.get("ROUTER_ID", config.router_id)
    config.state_path = os.environ.get(
        "HTLC_ROUTER_STATE", config.state_path or DEFAULT_STATE_PATH
    )
    validate_config(config)
    return config


def validate_config(config: CoordinatorConfig):
    if not config.router_id:
        raise ConfigError("router_id is required")
    if config.tick_interval <= 0 or config.confirmation_poll_interval <= 0:
        raise ConfigError("tick_interval and confirmation_poll_interval must be positive")
    if config.claim_window_seconds < 0 or config.timelock_gap_seconds < 0:
        raise ConfigError("claim_window_seconds and timelock_gap_seconds must be >= 0")
    if config.max_retries < 0:
        raise ConfigError("max_retries must be >= 0")
    for chain_id, chain in config.chains.items():
        if chain.kind not in ADAPTER_KINDS:
            raise ConfigError(f"Chain {chain_id}: unknown adapter kind '{chain.kind}'")


def validate_chains(config: CoordinatorConfig, adapters: Iterable[str]):
    """Check configured chains against the constructed adapters.

    Raises ConfigError unless both sets match and every chain has the fields
    its adapter kind needs.
    """
    configured = set(config.chains)
    constructed = set(adapters)
    if configured != constructed:
        missing = sorted(configured - constructed)
        extra = sorted(constructed - configured)
        raise ConfigError(
            f"Chain/adapter mismatch: no adapter for {missing}, unconfigured adapters {extra}"
        )
    for chain_id, chain in config.chains.items():
        missing_fields = chain.missing_fields()
        if missing_fields:
            raise ConfigError(f"Chain {chain_id} ({chain.kind}) missing {missing_fields}")
