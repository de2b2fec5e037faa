#!/usr/bin/env python3
"""
HTTP API tests (FastAPI TestClient over in-memory ledgers).
"""

import sys
import os
import time
import unittest

from fastapi.testclient import TestClient

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlc_router.chains.memory import MemoryLedgerAdapter
from htlc_router.config import CoordinatorConfig
from htlc_router.service import RouterService
from server import create_app


def swap_body(**overrides):
    body = {
        "initiatorId": "router-a",
        "responderId": "router-b",
        "initiatorAsset": {"chain": "chain-a", "assetId": "usdc",
                           "amount": 100_000_000, "recipient": "0xB0b"},
        "responderAsset": {"chain": "chain-b", "assetId": "hbar",
                           "amount": 1_000_000_000, "recipient": "0.0.1001"},
        "timeoutMinutes": 0.05,
        "requiredConfirmations": {"chain-a": 3, "chain-b": 2},
    }
    body.update(overrides)
    return body


class APITestCase(unittest.TestCase):

    def setUp(self):
        config = CoordinatorConfig(
            router_id="router-a",
            tick_interval=0.02,
            confirmation_poll_interval=0.01,
            claim_window_seconds=0.2,
            backoff_base_seconds=0.01,
            backoff_max_seconds=0.05,
            drain_timeout=1,
        )
        self.chain_a = MemoryLedgerAdapter("chain-a")
        self.chain_b = MemoryLedgerAdapter("chain-b")
        self.service = RouterService(config, adapters={"chain-a": self.chain_a,
                                                       "chain-b": self.chain_b})
        self.client = TestClient(create_app(self.service))
        self.client.__enter__()
        self.register("usdc", "router-a", ["router-b"])
        self.register("hbar", "router-b")

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def register(self, asset_id, primary, backups=()):
        r = self.client.post("/api/assets", json={
            "assetId": asset_id, "primaryRouterId": primary, "backupRouterIds": list(backups),
        })
        self.assertEqual(r.status_code, 200, r.text)
        return r.json()

    def wait_for_status(self, swap_id, statuses, timeout=10.0):
        end = time.monotonic() + timeout
        data = {}
        while time.monotonic() < end:
            data = self.client.get(f"/api/swaps/{swap_id}").json()
            if data["status"] in statuses:
                return data
            time.sleep(0.02)
        self.fail(f"{swap_id} stuck in {data.get('status')}, wanted {statuses}")


class TestStatus(APITestCase):

    def test_status(self):
        data = self.client.get("/api/status").json()
        self.assertEqual(data["status"], "ok")
        self.assertEqual(data["router_id"], "router-a")
        self.assertEqual(data["chains"], ["chain-a", "chain-b"])
        self.assertTrue(data["scheduler_running"])
        self.assertEqual(data["assets"], 2)


class TestSwapEndpoints(APITestCase):

    def test_happy_path(self):
        r = self.client.post("/api/swaps", json=swap_body())
        self.assertEqual(r.status_code, 200, r.text)
        swap_id = r.json()["swap_id"]
        self.assertEqual(r.json()["status"], "locking")

        self.wait_for_status(swap_id, {"locked"})
        r = self.client.post("/api/swaps/complete",
                             json={"swapId": swap_id, "completionRef": "ref-1"})
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()
        self.assertEqual(data["status"], "completed")
        self.assertEqual(data["result"]["completion_ref"], "ref-1")
        self.assertEqual(data["confirmation"]["status"], "dual_confirmed")

        listed = self.client.get("/api/swaps", params={"status": "completed"}).json()
        self.assertEqual(listed["count"], 1)

    def test_unauthorized_router(self):
        r = self.client.post("/api/swaps", json=swap_body(initiatorId="router-c"))
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.json()["error"], "unauthorized_router")
        self.assertEqual(self.client.get("/api/swaps").json()["count"], 0)

    def test_invalid_request(self):
        r = self.client.post("/api/swaps", json=swap_body(responderId="router-a"))
        self.assertEqual(r.status_code, 422)
        self.assertEqual(r.json()["error"], "invalid_swap_request")

    def test_schema_validation(self):
        body = swap_body()
        body["initiatorAsset"]["amount"] = 0
        r = self.client.post("/api/swaps", json=body)
        self.assertEqual(r.status_code, 422)

    def test_unknown_swap(self):
        r = self.client.get("/api/swaps/swap_missing")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["error"], "swap_not_found")

    def test_complete_before_locked(self):
        self.chain_b.max_confirmations = 0
        swap_id = self.client.post("/api/swaps", json=swap_body()).json()["swap_id"]
        r = self.client.post("/api/swaps/complete", json={"swapId": swap_id})
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["error"], "swap_not_ready")

    def test_wrong_secret(self):
        swap_id = self.client.post("/api/swaps", json=swap_body()).json()["swap_id"]
        self.wait_for_status(swap_id, {"locked"})
        r = self.client.post("/api/swaps/complete",
                             json={"swapId": swap_id, "secret": "00" * 32})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"], "invalid_secret")

    def test_rollback(self):
        swap_id = self.client.post(
            "/api/swaps", json=swap_body(timeoutMinutes=0.01)).json()["swap_id"]
        self.wait_for_status(swap_id, {"locked"})
        r = self.client.post(f"/api/swaps/{swap_id}/rollback", json={"reason": "ops"})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["status"], "rolling_back")

        data = self.wait_for_status(swap_id, {"rolled_back", "failed"})
        self.assertEqual(data["status"], "rolled_back")
        self.assertEqual(data["rollback"]["reason"], "ops")

        r = self.client.post(f"/api/swaps/{swap_id}/rollback")
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["error"], "already_finalized")

    def test_cancel_rejected_after_lock(self):
        swap_id = self.client.post("/api/swaps", json=swap_body()).json()["swap_id"]
        self.wait_for_status(swap_id, {"locked"})
        r = self.client.post(f"/api/swaps/{swap_id}/cancel")
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["error"], "cancellation_rejected")


class TestAuthorityEndpoints(APITestCase):

    def test_duplicate_registration(self):
        r = self.client.post("/api/assets", json={"assetId": "usdc",
                                                  "primaryRouterId": "router-z"})
        self.assertEqual(r.status_code, 409)

    def test_get_and_list(self):
        self.assertEqual(self.client.get("/api/assets").json()["count"], 2)
        data = self.client.get("/api/assets/usdc").json()
        self.assertEqual(data["primary_router_id"], "router-a")
        self.assertEqual(self.client.get("/api/assets/doge").status_code, 404)

    def test_validate(self):
        r = self.client.post("/api/authority/validate",
                             json={"assetId": "usdc", "routerId": "router-c"})
        data = r.json()
        self.assertFalse(data["authorized"])
        self.assertEqual(data["reason"], "No authority for this asset")

    def test_transfer_by_serving_router(self):
        r = self.client.post("/api/authority/transfer",
                             json={"assetId": "usdc", "newPrimaryRouterId": "router-b"})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["authority"]["primary_router_id"], "router-b")

        r = self.client.post("/api/authority/transfer",
                             json={"assetId": "hbar", "newPrimaryRouterId": "router-c"})
        self.assertEqual(r.status_code, 403)

    def test_transfer_requester_is_serving_router(self):
        self.register("dai", "router-z")
        r = self.client.post("/api/authority/transfer", json={
            "assetId": "dai", "newPrimaryRouterId": "router-c",
            "requestingRouterId": "router-z",
        })
        self.assertEqual(r.status_code, 403)
        self.assertEqual(self.client.get("/api/assets/dai").json()["primary_router_id"],
                         "router-z")

    def test_router_assets(self):
        data = self.client.get("/api/routers/router-b/assets").json()
        self.assertEqual(data, {"primary": ["hbar"], "backup": ["usdc"]})

    def test_heartbeat(self):
        data = self.client.post("/api/routers/router-b/heartbeat").json()
        self.assertTrue(data["available"])


class TestConfirmationEndpoints(APITestCase):

    def test_record_and_reconcile(self):
        r = self.client.post("/api/confirmations", json={
            "transferId": "tx-1", "routerId": "router-a", "status": "confirmed",
            "metadata": {"from_account": "alice", "asset": "usdc", "amount": "5"},
        })
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["dual"]["status"], "partial_confirmed")
        confirmation_id = r.json()["confirmation"]["confirmation_id"]

        r = self.client.post("/api/confirmations", json={
            "transferId": "tx-1", "routerId": "router-b", "status": "failed",
        })
        self.assertEqual(r.json()["dual"]["status"], "failed")

        r = self.client.post(f"/api/confirmations/{confirmation_id}/rollback",
                             json={"reason": "counterparty failed"})
        self.assertEqual(r.json()["status"], "rolled_back")
        self.assertEqual(self.client.get("/api/confirmations/tx-1").json()["status"], "failed")

    def test_report(self):
        self.client.post("/api/confirmations", json={
            "transferId": "tx-1", "routerId": "router-a", "status": "confirmed",
            "metadata": {"from_account": "alice", "asset": "usdc", "amount": "5"},
        })
        report = self.client.get("/api/confirmations/report").json()
        self.assertEqual(report["summary"]["total_transfers"], 1)
        self.assertEqual(report["summary"]["total_volume"], {"usdc": 5})

    def test_rollback_unknown(self):
        r = self.client.post("/api/confirmations/conf_missing/rollback", json={"reason": "x"})
        self.assertEqual(r.status_code, 404)

    def test_terminal_record_rejected(self):
        body = {"transferId": "tx-1", "routerId": "router-a", "status": "confirmed"}
        self.client.post("/api/confirmations", json=body)
        r = self.client.post("/api/confirmations", json=dict(body, status="failed"))
        self.assertEqual(r.status_code, 409)


if __name__ == "__main__":
    unittest.main(verbosity=2)
