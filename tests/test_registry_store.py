#!/usr/bin/env python3
"""
SwapRegistry, TimeoutScheduler and StateStore tests.
"""

import sys
import os
import json
import tempfile
import time
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlc_router.authority import AuthorityRegistry
from htlc_router.confirmations import ConfirmationLedger
from htlc_router.core import (
    SwapAsset, SwapRequest, SwapRecord, SwapLeg, SwapState, LegRole, generate_secret,
)
from htlc_router.errors import SwapNotFound
from htlc_router.store import StateStore
from htlc_router.swap import SwapRegistry, TimeoutScheduler


def make_record(swap_id="swap_1", state=SwapState.PENDING, deadline_in=60.0,
                claim_window=30.0, auto_rollback=True) -> SwapRecord:
    req = SwapRequest(
        initiator_id="router-a",
        responder_id="router-b",
        initiator_asset=SwapAsset("chain-a", "usdc", 10, "0xB0b"),
        responder_asset=SwapAsset("chain-b", "hbar", 20, "0.0.1001"),
        timeout_minutes=1,
        auto_rollback=auto_rollback,
    )
    now = time.time()
    secret, hashlock = generate_secret()
    timelock = now + deadline_in + claim_window
    return SwapRecord(
        swap_id=swap_id, request=req, secret_hash=hashlock, secret=secret, state=state,
        initiator=SwapLeg(LegRole.INITIATOR, "chain-a", "usdc", 10, "0xB0b",
                          "router-a", 1, timelock),
        responder=SwapLeg(LegRole.RESPONDER, "chain-b", "hbar", 20, "0.0.1001",
                          "router-b", 1, timelock),
        created_at=now, deadline=now + deadline_in,
        claim_deadline=now + deadline_in + claim_window,
    )


class FakeCoordinator:
    """Records handle_deadline calls; acts only if the state still matches."""

    def __init__(self, registry):
        self.registry = registry
        self.calls = []

    async def handle_deadline(self, swap_id, observed, now=None):
        self.calls.append((swap_id, observed))
        return self.registry.get(swap_id).state == observed


class TestSwapRegistry(unittest.IsolatedAsyncioTestCase):

    async def test_create_and_get(self):
        registry = SwapRegistry()
        record = registry.create(make_record())
        self.assertIs(registry.get("swap_1"), record)
        self.assertIn("swap_1", registry)
        self.assertEqual(len(registry), 1)

    async def test_unknown_swap(self):
        with self.assertRaises(SwapNotFound):
            SwapRegistry().get("swap_missing")

    async def test_duplicate_id_rejected(self):
        registry = SwapRegistry()
        registry.create(make_record())
        with self.assertRaises(ValueError):
            registry.create(make_record())

    async def test_locked_yields_record(self):
        registry = SwapRegistry()
        registry.create(make_record())
        async with registry.locked("swap_1") as record:
            record.state = SwapState.LOCKING
        self.assertEqual(registry.get("swap_1").state, SwapState.LOCKING)

    async def test_list_by_state(self):
        registry = SwapRegistry()
        registry.create(make_record("swap_1", SwapState.LOCKED))
        registry.create(make_record("swap_2", SwapState.COMPLETED))
        self.assertEqual([r.swap_id for r in registry.list(SwapState.LOCKED)], ["swap_1"])
        self.assertEqual(len(registry.list()), 2)
        self.assertEqual(registry.counts(), {"locked": 1, "completed": 1})

    async def test_drain_closes_registry(self):
        registry = SwapRegistry()
        registry.create(make_record("swap_1", SwapState.LOCKED))
        registry.create(make_record("swap_2", SwapState.ROLLED_BACK))
        self.assertEqual([r.swap_id for r in registry.drain()], ["swap_1"])
        with self.assertRaises(RuntimeError):
            registry.create(make_record("swap_3"))

    async def test_due_for_timeout(self):
        registry = SwapRegistry()
        registry.create(make_record("locking_late", SwapState.LOCKING, deadline_in=-1))
        registry.create(make_record("locking_ok", SwapState.LOCKING, deadline_in=60))
        registry.create(make_record("locked_late", SwapState.LOCKED, deadline_in=-10,
                                    claim_window=5))
        registry.create(make_record("locked_in_window", SwapState.LOCKED, deadline_in=-1,
                                    claim_window=60))
        registry.create(make_record("locked_manual", SwapState.LOCKED, deadline_in=-10,
                                    claim_window=5, auto_rollback=False))
        registry.create(make_record("expired", SwapState.EXPIRED))
        registry.create(make_record("expired_manual", SwapState.EXPIRED, auto_rollback=False))
        registry.create(make_record("done", SwapState.COMPLETED, deadline_in=-10))

        due = dict(registry.due_for_timeout(time.monotonic()))
        self.assertEqual(due, {
            "locking_late": SwapState.LOCKING,
            "locked_late": SwapState.LOCKED,
            "expired": SwapState.EXPIRED,
        })

    async def test_load_restores_monotonic_deadlines(self):
        registry = SwapRegistry()
        registry.create(make_record("swap_1", SwapState.LOCKED, deadline_in=120))

        restored = SwapRegistry()
        records = restored.load(registry.to_dict(include_secrets=True))
        self.assertEqual(len(records), 1)
        remaining = restored.get("swap_1").deadline_monotonic - time.monotonic()
        self.assertAlmostEqual(remaining, 120, delta=2)
        async with restored.locked("swap_1") as record:
            self.assertIsNotNone(record.secret)


class TestTimeoutScheduler(unittest.IsolatedAsyncioTestCase):

    async def test_tick_with_explicit_now(self):
        registry = SwapRegistry()
        registry.create(make_record("swap_1", SwapState.LOCKING, deadline_in=30))
        coordinator = FakeCoordinator(registry)
        scheduler = TimeoutScheduler(registry, coordinator)

        self.assertEqual(await scheduler.tick(time.monotonic()), [])
        acted = await scheduler.tick(time.monotonic() + 31)
        self.assertEqual(acted, ["swap_1"])
        self.assertEqual(coordinator.calls, [("swap_1", SwapState.LOCKING)])
        self.assertEqual(scheduler.ticks, 2)

    async def test_moved_swap_is_skipped(self):
        registry = SwapRegistry()
        registry.create(make_record("swap_1", SwapState.LOCKING, deadline_in=-1))

        class MovingCoordinator(FakeCoordinator):
            async def handle_deadline(self, swap_id, observed, now=None):
                self.registry.get(swap_id).state = SwapState.LOCKED
                return await super().handle_deadline(swap_id, observed, now)

        scheduler = TimeoutScheduler(registry, MovingCoordinator(registry))
        self.assertEqual(await scheduler.tick(), [])

    async def test_errors_do_not_stop_the_sweep(self):
        registry = SwapRegistry()
        registry.create(make_record("swap_1", SwapState.EXPIRED))
        registry.create(make_record("swap_2", SwapState.EXPIRED))

        class BrokenCoordinator(FakeCoordinator):
            async def handle_deadline(self, swap_id, observed, now=None):
                if swap_id == "swap_1":
                    raise RuntimeError("boom")
                return True

        scheduler = TimeoutScheduler(registry, BrokenCoordinator(registry))
        self.assertEqual(await scheduler.tick(), ["swap_2"])

    async def test_start_stop(self):
        registry = SwapRegistry()
        scheduler = TimeoutScheduler(registry, FakeCoordinator(registry), tick_interval=0.01)
        scheduler.start()
        self.assertTrue(scheduler.running)
        await scheduler.stop()
        self.assertFalse(scheduler.running)
        await scheduler.stop()


class TestStateStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.path = os.path.join(self.tmp, "nested", "state.json")
        self.registry = SwapRegistry()
        self.registry.create(make_record("swap_1", SwapState.LOCKED))
        self.authority = AuthorityRegistry()
        self.authority.register_asset("usdc", "router-a", ["router-b"])
        self.ledger = ConfirmationLedger("router-a", b"key")
        self.ledger.record("swap_1", "router-a", "pending")

    def test_missing_file(self):
        self.assertEqual(StateStore(self.path).load(), {})

    def test_secrets_stripped_by_default(self):
        StateStore(self.path).save(self.registry, self.authority, self.ledger)
        with open(self.path) as f:
            state = json.load(f)
        self.assertIsNone(state["swaps"]["swap_1"]["secret"])
        self.assertIn("usdc", json.dumps(state["assets"]))
        self.assertEqual(state["version"], 1)

    def test_secrets_kept_on_request(self):
        store = StateStore(self.path, persist_secrets=True)
        store.save(self.registry, self.authority, self.ledger)
        state = store.load()
        self.assertEqual(state["swaps"]["swap_1"]["secret"],
                         self.registry.get("swap_1").secret)

    def test_round_trip(self):
        store = StateStore(self.path)
        store.save(self.registry, self.authority, self.ledger)
        state = store.load()

        registry = SwapRegistry()
        registry.load(state["swaps"])
        authority = AuthorityRegistry()
        authority.load(state["assets"])
        ledger = ConfirmationLedger("router-a", b"key")
        ledger.load(state["confirmations"])

        self.assertEqual(registry.get("swap_1").state, SwapState.LOCKED)
        self.assertEqual(authority.get_asset("usdc").primary_router_id, "router-a")
        self.assertEqual(len(ledger.records_for("swap_1")), 1)

    def test_corrupt_file(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w") as f:
            f.write("{not json")
        self.assertEqual(StateStore(self.path).load(), {})

    def test_wrong_version(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w") as f:
            json.dump({"version": 99, "swaps": {}}, f)
        self.assertEqual(StateStore(self.path).load(), {})


if __name__ == "__main__":
    unittest.main(verbosity=2)
