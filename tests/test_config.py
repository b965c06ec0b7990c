"""
Tests for stakeflow_core.config — TOML configuration and environment overrides.

Covers:
  - Default values for all dataclass sections
  - TOML parsing and section merging (including [bootstrap])
  - Environment variable overrides (precedence over TOML)
  - _merge helper edge cases
  - Missing TOML file
"""

from __future__ import annotations

import os
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from stakeflow_core.config import (
    AdminConfig,
    APIConfig,
    EngineConfig,
    StakeFlowConfig,
    StorageConfig,
    _merge,
    load_config,
)


def _write_toml(body: str) -> str:
    fd, path = tempfile.mkstemp(suffix=".toml")
    with os.fdopen(fd, "w") as f:
        f.write(textwrap.dedent(body))
    return path


class TestDefaults(unittest.TestCase):

    def test_engine_defaults(self):
        e = EngineConfig()
        self.assertEqual(e.min_stake, 1)
        self.assertFalse(e.check_invariants)

    def test_admin_defaults(self):
        a = AdminConfig()
        self.assertEqual(a.owner, "owner")
        self.assertEqual(a.owner_public_key, "")
        self.assertEqual(a.nonce_window, 300)
        self.assertEqual(StakeFlowConfig().accounts.public_keys, {})

    def test_api_defaults(self):
        a = APIConfig()
        self.assertFalse(a.enabled)
        self.assertEqual(a.port, 8080)
        self.assertEqual(a.rate_limit_rpm, 120)
        self.assertEqual(a.cors_origins, [])

    def test_storage_defaults(self):
        s = StorageConfig()
        self.assertFalse(s.enabled)
        self.assertEqual(s.path, "data/stakeflow.db")

    def test_sections_are_independent(self):
        a, b = StakeFlowConfig(), StakeFlowConfig()
        a.api.cors_origins.append("http://x")
        self.assertEqual(b.api.cors_origins, [])


class TestMerge(unittest.TestCase):

    def test_hyphenated_keys(self):
        api = APIConfig()
        _merge(api, {"rate-limit-rpm": 5, "api-key": "k"})
        self.assertEqual(api.rate_limit_rpm, 5)
        self.assertEqual(api.api_key, "k")

    def test_unknown_keys_ignored(self):
        e = EngineConfig()
        _merge(e, {"nonsense": 1})
        self.assertFalse(hasattr(e, "nonsense"))


@patch.dict(os.environ, {}, clear=True)
class TestLoadConfig(unittest.TestCase):

    def test_missing_file_gives_defaults(self):
        cfg = load_config("/nonexistent/stakeflow.toml")
        self.assertEqual(cfg.engine.min_stake, 1)

    def test_no_path(self):
        self.assertEqual(load_config().admin.owner, "owner")

    def test_toml_sections(self):
        path = _write_toml("""
            [engine]
            min_stake = 10
            check_invariants = true

            [admin]
            owner = "treasury"

            [api]
            enabled = true
            port = 9100
            cors-origins = ["http://localhost:3000"]

            [[bootstrap.pools]]
            staking_asset = "STK"
            reward_asset = "RWD"
            reward_rate = 5
            capacity = 1000000

            [bootstrap.balances]
            "STK:alice" = 500

            [bootstrap.reward_reserves]
            RWD = 100000
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.engine.min_stake, 10)
        self.assertTrue(cfg.engine.check_invariants)
        self.assertEqual(cfg.admin.owner, "treasury")
        self.assertEqual(cfg.api.port, 9100)
        self.assertEqual(cfg.api.cors_origins, ["http://localhost:3000"])
        self.assertEqual(cfg.bootstrap.pools[0]["reward_rate"], 5)
        self.assertEqual(cfg.bootstrap.balances, {"STK:alice": 500})
        self.assertEqual(cfg.bootstrap.reward_reserves, {"RWD": 100000})

    def test_accounts_and_nonce_window(self):
        path = _write_toml("""
            [admin]
            nonce_window = 30

            [accounts.public_keys]
            alice = "04abcd"
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.admin.nonce_window, 30)
        self.assertEqual(cfg.accounts.public_keys, {"alice": "04abcd"})

    def test_env_overrides_toml(self):
        path = _write_toml("""
            [engine]
            min_stake = 10
            [admin]
            owner = "treasury"
        """)
        env = {
            "STAKEFLOW_MIN_STAKE": "3",
            "STAKEFLOW_OWNER": "ops",
            "STAKEFLOW_CHECK_INVARIANTS": "yes",
        }
        try:
            with patch.dict(os.environ, env):
                cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.engine.min_stake, 3)
        self.assertEqual(cfg.admin.owner, "ops")
        self.assertTrue(cfg.engine.check_invariants)

    def test_env_enables_api_and_storage(self):
        env = {
            "STAKEFLOW_API_PORT": "8181",
            "STAKEFLOW_DB_PATH": "/tmp/sf.db",
            "STAKEFLOW_CORS_ORIGINS": "http://a, http://b,",
            "STAKEFLOW_LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env):
            cfg = load_config()
        self.assertTrue(cfg.api.enabled)
        self.assertEqual(cfg.api.port, 8181)
        self.assertTrue(cfg.storage.enabled)
        self.assertEqual(cfg.storage.path, "/tmp/sf.db")
        self.assertEqual(cfg.api.cors_origins, ["http://a", "http://b"])
        self.assertEqual(cfg.logging.level, "DEBUG")


if __name__ == "__main__":
    unittest.main()
