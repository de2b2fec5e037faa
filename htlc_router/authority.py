"""
Primary Router Authority.

Maps each asset to the router that may originate transfers of it, plus an
ordered list of backups. The coordinator asks validate_authority() before any
ledger call; a negative answer aborts the swap with no side effects.
"""

import logging
import threading
import time
from typing import Optional, Dict, List, Any, Callable, Set

from .core import AssetAuthority, AuthorityValidation, AuthorityRole
from .errors import (
    AssetAlreadyRegistered,
    AssetInUse,
    NotAuthorized,
    UnsupportedAsset,
)

log = logging.getLogger(__name__)

HEARTBEAT_TTL = 30.0


class AuthorityRegistry:
    """
    Asset authority registry.

    Args:
        backup_requires_primary_down: only authorize backups while the
            primary's heartbeat is stale
        heartbeat_ttl: seconds a heartbeat keeps a router "available"
    """

    def __init__(self, backup_requires_primary_down: bool = False,
                 heartbeat_ttl: float = HEARTBEAT_TTL,
                 clock: Callable[[], float] = time.time):
        self.backup_requires_primary_down = backup_requires_primary_down
        self.heartbeat_ttl = heartbeat_ttl
        self._clock = clock
        self._assets: Dict[str, AssetAuthority] = {}
        self._heartbeats: Dict[str, float] = {}
        self._references: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    # -- registration ---------------------------------------------------------

    def register_asset(self, asset_id: str, primary_router_id: str,
                       backup_router_ids: Optional[List[str]] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> AssetAuthority:
        if not asset_id or not primary_router_id:
            raise ValueError("asset_id and primary_router_id are required")

        backups = []
        for router_id in backup_router_ids or []:
            if router_id != primary_router_id and router_id not in backups:
                backups.append(router_id)

        with self._lock:
            if asset_id in self._assets:
                raise AssetAlreadyRegistered(f"Asset {asset_id} is already registered",
                                             asset_id=asset_id)
            now = self._clock()
            authority = AssetAuthority(
                asset_id=asset_id,
                primary_router_id=primary_router_id,
                backup_router_ids=backups,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            self._assets[asset_id] = authority

        log.info(f"Asset {asset_id} registered: primary={primary_router_id} backups={backups}")
        return authority

    def unregister_asset(self, asset_id: str):
        with self._lock:
            if asset_id not in self._assets:
                raise UnsupportedAsset(f"Asset {asset_id} is not registered", asset_id=asset_id)
            refs = self._references.get(asset_id)
            if refs:
                raise AssetInUse(f"Asset {asset_id} is referenced by {len(refs)} swap(s)",
                                 asset_id=asset_id, swaps=sorted(refs))
            del self._assets[asset_id]
            self._references.pop(asset_id, None)
        log.info(f"Asset {asset_id} unregistered")

    # -- validation -----------------------------------------------------------

    def validate_authority(self, asset_id: str, router_id: str) -> AuthorityValidation:
        """Check whether router_id may originate transfers of asset_id. Read-only."""
        with self._lock:
            authority = self._assets.get(asset_id)
            if authority is None:
                return AuthorityValidation(
                    authorized=False,
                    role=AuthorityRole.NONE,
                    reason=f"Asset {asset_id} is not registered",
                )
            primary = authority.primary_router_id
            backups = list(authority.backup_router_ids)

        if router_id == primary:
            return AuthorityValidation(True, AuthorityRole.PRIMARY, "Primary router authority",
                                       primary, backups)

        if router_id in backups:
            if self.backup_requires_primary_down and self.is_router_available(primary):
                return AuthorityValidation(False, AuthorityRole.BACKUP,
                                           "Primary router is available",
                                           primary, backups)
            return AuthorityValidation(True, AuthorityRole.BACKUP, "Backup router authority",
                                       primary, backups)

        return AuthorityValidation(False, AuthorityRole.NONE, "No authority for this asset",
                                   primary, backups)

    def transfer_authority(self, asset_id: str, new_primary_router_id: str,
                           requesting_router_id: str) -> AssetAuthority:
        """Hand primary authority to another router. Only the current primary may."""
        with self._lock:
            authority = self._assets.get(asset_id)
            if authority is None:
                raise UnsupportedAsset(f"Asset {asset_id} is not registered", asset_id=asset_id)
            old_primary = authority.primary_router_id
            if requesting_router_id != old_primary:
                raise NotAuthorized(
                    f"Router {requesting_router_id} is not the primary for {asset_id}",
                    asset_id=asset_id,
                )
            if new_primary_router_id == old_primary:
                return authority

            backups = [r for r in authority.backup_router_ids
                       if r not in (new_primary_router_id, old_primary)]
            backups.insert(0, old_primary)

            now = self._clock()
            authority.primary_router_id = new_primary_router_id
            authority.backup_router_ids = backups
            authority.updated_at = now
            authority.history.append({
                "from": old_primary,
                "to": new_primary_router_id,
                "requested_by": requesting_router_id,
                "timestamp": now,
            })

        log.info(f"Authority for {asset_id} transferred: {old_primary} -> {new_primary_router_id}")
        return authority

    # -- heartbeats -----------------------------------------------------------

    def record_heartbeat(self, router_id: str, timestamp: Optional[float] = None) -> float:
        ts = timestamp if timestamp is not None else self._clock()
        with self._lock:
            self._heartbeats[router_id] = ts
        return ts

    def is_router_available(self, router_id: str) -> bool:
        with self._lock:
            last = self._heartbeats.get(router_id)
        if last is None:
            return False
        return self._clock() - last <= self.heartbeat_ttl

    # -- swap references ------------------------------------------------------

    def add_reference(self, asset_id: str, swap_id: str):
        with self._lock:
            self._references.setdefault(asset_id, set()).add(swap_id)

    def remove_reference(self, asset_id: str, swap_id: str):
        with self._lock:
            refs = self._references.get(asset_id)
            if refs:
                refs.discard(swap_id)
                if not refs:
                    del self._references[asset_id]

    def references(self, asset_id: str) -> List[str]:
        with self._lock:
            return sorted(self._references.get(asset_id, ()))

    # -- queries --------------------------------------------------------------

    def get_asset(self, asset_id: str) -> Optional[AssetAuthority]:
        with self._lock:
            return self._assets.get(asset_id)

    def list_assets(self) -> List[AssetAuthority]:
        with self._lock:
            return list(self._assets.values())

    def get_router_assets(self, router_id: str) -> Dict[str, List[str]]:
        """Assets this router is primary or backup for."""
        with self._lock:
            primary = [a.asset_id for a in self._assets.values()
                       if a.primary_router_id == router_id]
            backup = [a.asset_id for a in self._assets.values()
                      if router_id in a.backup_router_ids]
        return {"primary": primary, "backup": backup}

    def get_history(self, asset_id: str) -> List[Dict[str, Any]]:
        authority = self.get_asset(asset_id)
        if authority is None:
            raise UnsupportedAsset(f"Asset {asset_id} is not registered", asset_id=asset_id)
        return list(authority.history)

    def __contains__(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._assets

    # -- persistence ----------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {asset_id: a.to_dict() for asset_id, a in self._assets.items()}

    def load(self, data: Dict[str, Any]):
        with self._lock:
            for asset_id, entry in data.items():
                self._assets[asset_id] = AssetAuthority.from_dict(entry)
        log.info(f"Loaded {len(data)} asset authorities")
