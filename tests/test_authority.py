#!/usr/bin/env python3
"""
Primary Router Authority tests.
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlc_router.authority import AuthorityRegistry
from htlc_router.core import AuthorityRole
from htlc_router.errors import (
    AssetAlreadyRegistered, AssetInUse, NotAuthorized, UnsupportedAsset,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRegistration(unittest.TestCase):

    def setUp(self):
        self.registry = AuthorityRegistry()

    def test_register(self):
        authority = self.registry.register_asset("asset-x", "router-a", ["router-b"],
                                                 {"symbol": "X"})
        self.assertEqual(authority.primary_router_id, "router-a")
        self.assertEqual(authority.backup_router_ids, ["router-b"])
        self.assertEqual(authority.metadata, {"symbol": "X"})
        self.assertIn("asset-x", self.registry)

    def test_duplicate_rejected(self):
        self.registry.register_asset("asset-x", "router-a")
        with self.assertRaises(AssetAlreadyRegistered):
            self.registry.register_asset("asset-x", "router-b")
        self.assertEqual(self.registry.get_asset("asset-x").primary_router_id, "router-a")

    def test_backups_deduplicated(self):
        authority = self.registry.register_asset(
            "asset-x", "router-a", ["router-b", "router-a", "router-b", "router-c"])
        self.assertEqual(authority.backup_router_ids, ["router-b", "router-c"])

    def test_unregister_guarded_by_references(self):
        self.registry.register_asset("asset-x", "router-a")
        self.registry.add_reference("asset-x", "swap_1")
        with self.assertRaises(AssetInUse):
            self.registry.unregister_asset("asset-x")
        self.registry.remove_reference("asset-x", "swap_1")
        self.registry.unregister_asset("asset-x")
        self.assertIsNone(self.registry.get_asset("asset-x"))

    def test_unregister_unknown(self):
        with self.assertRaises(UnsupportedAsset):
            self.registry.unregister_asset("nope")


class TestValidation(unittest.TestCase):

    def setUp(self):
        self.registry = AuthorityRegistry()
        self.registry.register_asset("asset-x", "router-a", ["router-b"])

    def test_primary(self):
        result = self.registry.validate_authority("asset-x", "router-a")
        self.assertTrue(result.authorized)
        self.assertEqual(result.role, AuthorityRole.PRIMARY)

    def test_backup(self):
        result = self.registry.validate_authority("asset-x", "router-b")
        self.assertTrue(result.authorized)
        self.assertEqual(result.role, AuthorityRole.BACKUP)

    def test_unrelated_router(self):
        result = self.registry.validate_authority("asset-x", "router-c")
        self.assertFalse(result.authorized)
        self.assertEqual(result.role, AuthorityRole.NONE)
        self.assertEqual(result.reason, "No authority for this asset")

    def test_unknown_asset(self):
        result = self.registry.validate_authority("asset-y", "router-a")
        self.assertFalse(result.authorized)
        self.assertIn("not registered", result.reason)

    def test_validation_does_not_mutate(self):
        before = self.registry.to_dict()
        for router in ("router-a", "router-b", "router-c"):
            self.registry.validate_authority("asset-x", router)
        self.assertEqual(self.registry.to_dict(), before)

    def test_to_dict(self):
        data = self.registry.validate_authority("asset-x", "router-b").to_dict()
        self.assertEqual(data["role"], "backup")
        self.assertEqual(data["primary_router_id"], "router-a")


class TestBackupFailover(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.registry = AuthorityRegistry(backup_requires_primary_down=True,
                                          heartbeat_ttl=30, clock=self.clock)
        self.registry.register_asset("asset-x", "router-a", ["router-b"])

    def test_backup_rejected_while_primary_alive(self):
        self.registry.record_heartbeat("router-a")
        result = self.registry.validate_authority("asset-x", "router-b")
        self.assertFalse(result.authorized)
        self.assertEqual(result.role, AuthorityRole.BACKUP)

    def test_backup_allowed_after_primary_goes_quiet(self):
        self.registry.record_heartbeat("router-a")
        self.clock.now += 31
        self.assertFalse(self.registry.is_router_available("router-a"))
        self.assertTrue(self.registry.validate_authority("asset-x", "router-b").authorized)

    def test_router_without_heartbeat_is_unavailable(self):
        self.assertFalse(self.registry.is_router_available("router-z"))


class TestTransfer(unittest.TestCase):

    def setUp(self):
        self.registry = AuthorityRegistry()
        self.registry.register_asset("asset-x", "router-a", ["router-b", "router-c"])

    def test_transfer_by_primary(self):
        authority = self.registry.transfer_authority("asset-x", "router-c", "router-a")
        self.assertEqual(authority.primary_router_id, "router-c")
        self.assertEqual(authority.backup_router_ids, ["router-a", "router-b"])
        history = self.registry.get_history("asset-x")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["from"], "router-a")
        self.assertEqual(history[0]["to"], "router-c")

    def test_old_primary_becomes_backup(self):
        self.registry.transfer_authority("asset-x", "router-b", "router-a")
        result = self.registry.validate_authority("asset-x", "router-a")
        self.assertTrue(result.authorized)
        self.assertEqual(result.role, AuthorityRole.BACKUP)

    def test_transfer_by_backup_rejected(self):
        with self.assertRaises(NotAuthorized):
            self.registry.transfer_authority("asset-x", "router-b", "router-b")
        self.assertEqual(self.registry.get_asset("asset-x").primary_router_id, "router-a")

    def test_transfer_unknown_asset(self):
        with self.assertRaises(UnsupportedAsset):
            self.registry.transfer_authority("asset-y", "router-b", "router-a")

    def test_single_primary_after_transfers(self):
        self.registry.transfer_authority("asset-x", "router-b", "router-a")
        self.registry.transfer_authority("asset-x", "router-c", "router-b")
        authority = self.registry.get_asset("asset-x")
        self.assertEqual(authority.primary_router_id, "router-c")
        self.assertNotIn("router-c", authority.backup_router_ids)
        self.assertEqual(len(self.registry.get_history("asset-x")), 2)


class TestQueries(unittest.TestCase):

    def test_router_assets(self):
        registry = AuthorityRegistry()
        registry.register_asset("asset-x", "router-a", ["router-b"])
        registry.register_asset("asset-y", "router-b")
        self.assertEqual(registry.get_router_assets("router-b"),
                         {"primary": ["asset-y"], "backup": ["asset-x"]})
        self.assertEqual(len(registry.list_assets()), 2)

    def test_persistence_round_trip(self):
        registry = AuthorityRegistry()
        registry.register_asset("asset-x", "router-a", ["router-b"])
        registry.transfer_authority("asset-x", "router-b", "router-a")

        restored = AuthorityRegistry()
        restored.load(registry.to_dict())
        authority = restored.get_asset("asset-x")
        self.assertEqual(authority.primary_router_id, "router-b")
        self.assertEqual(len(authority.history), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
