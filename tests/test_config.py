#!/usr/bin/env python3
"""
Router configuration tests.
"""

import sys
import os
import json
import tempfile
import unittest
from unittest import mock

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlc_router.chains import create_adapter, create_adapters
from htlc_router.chains.evm import EVMLedgerAdapter
from htlc_router.chains.gateway import GatewayLedgerAdapter
from htlc_router.chains.memory import MemoryLedgerAdapter
from htlc_router.config import (
    ChainConfig, CoordinatorConfig, load_config, validate_chains, validate_config,
)
from htlc_router.errors import ConfigError


def write_config(data) -> str:
    fd, path = tempfile.mkstemp(suffix=".json")
    with os.fdopen(fd, "w") as f:
        json.dump(data, f)
    return path


class TestLoadConfig(unittest.TestCase):

    def test_missing_file_uses_memory_chains(self):
        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ROUTER_ID", None)
            os.environ.pop("HTLC_ROUTER_STATE", None)
            config = load_config("/nonexistent/config.json")
        self.assertEqual(set(config.chains), {"chain-a", "chain-b"})
        self.assertEqual(config.chains["chain-a"].kind, "memory")
        self.assertEqual(config.router_id, "router-a")
        self.assertTrue(config.resolved_state_path.endswith("state_router-a.json"))

    def test_file_values(self):
        path = write_config({
            "router_id": "router-x",
            "claim_window_seconds": 120,
            "max_retries": 5,
            "unknown_key": "ignored",
            "chains": {
                "sepolia": {
                    "kind": "evm",
                    "rpc_url": "http://localhost:8545",
                    "contract_address": "0x" + "11" * 20,
                    "private_key_env": "SEPOLIA_KEY",
                    "network_id": 11155111,
                },
                "hedera": {"kind": "gateway", "gateway_url": "http://gw"},
            },
        })
        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ROUTER_ID", None)
            config = load_config(path)
        self.assertEqual(config.router_id, "router-x")
        self.assertEqual(config.claim_window_seconds, 120)
        self.assertEqual(config.max_retries, 5)
        self.assertEqual(config.chains["sepolia"].network_id, 11155111)
        self.assertEqual(config.chains["hedera"].chain_id, "hedera")

    def test_env_overrides(self):
        path = write_config({"router_id": "router-x"})
        env = {"ROUTER_ID": "router-env", "HTLC_ROUTER_STATE": "/tmp/{router_id}.json"}
        with mock.patch.dict(os.environ, env):
            config = load_config(path)
        self.assertEqual(config.router_id, "router-env")
        self.assertEqual(config.resolved_state_path, "/tmp/router-env.json")

    def test_config_path_from_env(self):
        path = write_config({"router_id": "router-y"})
        with mock.patch.dict(os.environ, {"HTLC_ROUTER_CONFIG": path}):
            os.environ.pop("ROUTER_ID", None)
            self.assertEqual(load_config().router_id, "router-y")

    def test_unreadable_file(self):
        fd, path = tempfile.mkstemp(suffix=".json")
        with os.fdopen(fd, "w") as f:
            f.write("{broken")
        with self.assertRaises(ConfigError):
            load_config(path)

    def test_unknown_adapter_kind(self):
        path = write_config({"chains": {"x": {"kind": "carrier-pigeon"}}})
        with self.assertRaises(ConfigError):
            load_config(path)

    def test_signing_key(self):
        config = CoordinatorConfig(router_id="router-a", signing_key_env="TEST_SIGNING_KEY")
        with mock.patch.dict(os.environ, {"TEST_SIGNING_KEY": "s3cret"}):
            self.assertEqual(config.signing_key(), b"s3cret")
        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("TEST_SIGNING_KEY", None)
            self.assertEqual(config.signing_key(), b"router-a")

    def test_dict_round_trip(self):
        config = CoordinatorConfig(router_id="router-b",
                                   chains={"chain-a": ChainConfig("chain-a")})
        restored = CoordinatorConfig.from_dict(config.to_dict())
        self.assertEqual(restored, config)


class TestValidation(unittest.TestCase):

    def test_negative_claim_window(self):
        with self.assertRaises(ConfigError):
            validate_config(CoordinatorConfig(claim_window_seconds=-1))

    def test_zero_tick(self):
        with self.assertRaises(ConfigError):
            validate_config(CoordinatorConfig(tick_interval=0))

    def test_chains_match_adapters(self):
        config = CoordinatorConfig(chains={"chain-a": ChainConfig("chain-a"),
                                           "chain-b": ChainConfig("chain-b")})
        validate_chains(config, ["chain-a", "chain-b"])

    def test_missing_adapter(self):
        config = CoordinatorConfig(chains={"chain-a": ChainConfig("chain-a"),
                                           "chain-b": ChainConfig("chain-b")})
        with self.assertRaises(ConfigError) as ctx:
            validate_chains(config, ["chain-a"])
        self.assertIn("chain-b", str(ctx.exception))

    def test_unconfigured_adapter(self):
        config = CoordinatorConfig(chains={"chain-a": ChainConfig("chain-a")})
        with self.assertRaises(ConfigError):
            validate_chains(config, ["chain-a", "chain-z"])

    def test_evm_chain_missing_fields(self):
        config = CoordinatorConfig(chains={"sepolia": ChainConfig("sepolia", kind="evm",
                                                                  rpc_url="http://x")})
        with self.assertRaises(ConfigError) as ctx:
            validate_chains(config, ["sepolia"])
        self.assertIn("contract_address", str(ctx.exception))


class TestCreateAdapters(unittest.TestCase):

    def test_kinds(self):
        config = CoordinatorConfig(chains={
            "mem": ChainConfig("mem"),
            "gw": ChainConfig("gw", kind="gateway", gateway_url="http://gw/",
                              api_key_env="GW_KEY"),
            "evm": ChainConfig("evm", kind="evm", rpc_url="http://localhost:8545",
                               contract_address="0x" + "11" * 20,
                               private_key_env="EVM_KEY", network_id=31337),
        })
        with mock.patch.dict(os.environ, {"GW_KEY": "k", "EVM_KEY": "ab" * 32}):
            adapters = create_adapters(config)
        self.assertIsInstance(adapters["mem"], MemoryLedgerAdapter)
        self.assertIsInstance(adapters["gw"], GatewayLedgerAdapter)
        self.assertEqual(adapters["gw"].api_key, "k")
        self.assertEqual(adapters["gw"].base_url, "http://gw")
        self.assertIsInstance(adapters["evm"], EVMLedgerAdapter)
        self.assertEqual(adapters["evm"].network_id, 31337)

    def test_unknown_kind(self):
        with self.assertRaises(ConfigError):
            create_adapter(ChainConfig("x", kind="carrier-pigeon"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
