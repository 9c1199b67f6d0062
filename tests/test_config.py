#!/usr/bin/env python3
"""
Configuration Tests

Missing endpoints or credentials are fatal at startup and every missing
variable is reported at once.
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xrelay.config import load_config, SuiConfig, DEFAULT_STORE_PATH
from xrelay.errors import ConfigError

FULL_ENV = {
    "ETH_RPC_URL": "https://sepolia.example",
    "ETH_PRIVATE_KEY": "0x" + "11" * 32,
    "SUI_RPC_URL": "https://fullnode.testnet.sui.io",
    "SUI_KEY": "[" + ",".join(["1"] * 32) + "]",
    "FUSION_LOCKER_PACKAGE": "0x" + "5a" * 32,
}


class TestLoadConfig(unittest.TestCase):

    def test_full_env(self):
        config = load_config(dict(FULL_ENV, SUI_ADDRESS="0xabc", RELAYER_WORKERS="8"))
        self.assertEqual(config.evm.rpc_url, "https://sepolia.example")
        self.assertEqual(config.sui.package_id, "0x" + "5a" * 32)
        self.assertEqual(config.sui.recipient, "0xabc")
        self.assertEqual(config.workers, 8)
        self.assertEqual(config.ledger_ids(), ["ethereum", "sui"])
        self.assertEqual(config.store_path, os.path.expanduser(DEFAULT_STORE_PATH))
        self.assertIsNone(config.evm.chain_id)

    def test_legacy_names(self):
        """Variable names used by the maker / resolver scripts still work."""
        env = {
            "SEPOLIA_RPC": "https://legacy.example",
            "PRIVATE_KEY": "22" * 32,
            "SUI_RPC": "https://sui.example",
            "SUI_KEYPAIR": "AAAA",
            "FUSION_LOCKER_PACKAGE": "0x1",
        }
        config = load_config(env)
        self.assertEqual(config.evm.rpc_url, "https://legacy.example")
        self.assertEqual(config.evm.private_key, "22" * 32)
        self.assertEqual(config.sui.rpc_url, "https://sui.example")
        self.assertEqual(config.sui.keypair, "AAAA")

    def test_all_missing_reported(self):
        with self.assertRaises(ConfigError) as ctx:
            load_config({})
        self.assertEqual(ctx.exception.missing, [
            "ETH_RPC_URL", "ETH_PRIVATE_KEY", "SUI_RPC_URL", "SUI_KEY", "FUSION_LOCKER_PACKAGE",
        ])

    def test_one_missing(self):
        env = dict(FULL_ENV)
        del env["ETH_PRIVATE_KEY"]
        with self.assertRaises(ConfigError) as ctx:
            load_config(env)
        self.assertEqual(ctx.exception.missing, ["ETH_PRIVATE_KEY"])
        self.assertIn("ETH_PRIVATE_KEY", str(ctx.exception))

    def test_bad_number(self):
        with self.assertRaises(ConfigError):
            load_config(dict(FULL_ENV, RELAYER_WORKERS="many"))

    def test_numeric_overrides(self):
        config = load_config(dict(FULL_ENV, ETH_CHAIN_ID="11155111", EVM_CONFIRMATIONS="3",
                                  SUI_POLL_INTERVAL="0.5", RELAYER_STORE="/tmp/x.json"))
        self.assertEqual(config.evm.chain_id, 11155111)
        self.assertEqual(config.evm.confirmations, 3)
        self.assertEqual(config.sui_watcher.poll_interval, 0.5)
        self.assertEqual(config.store_path, "/tmp/x.json")

    def test_sui_event_type(self):
        config = SuiConfig(package_id="0xpkg")
        self.assertEqual(config.event_type, "0xpkg::shared_locker::SrcSecretRevealed")


if __name__ == "__main__":
    unittest.main(verbosity=2)
