"""
TOML-based configuration for StakeFlow services.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from stakeflow_core.config import load_config
    cfg = load_config("stakeflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class EngineConfig:
    """Accounting rules shared by every pool."""
    min_stake: int = 1
    # Re-check pool invariants after every operation (O(pool members)).
    check_invariants: bool = False
    max_events: int = 10_000


@dataclass
class AdminConfig:
    """Owner identity.

    ``owner_public_key`` is a hex secp256k1 key; when set, admin HTTP
    requests must carry ``X-Admin-Signature`` and ``X-Admin-Nonce``.
    Signed requests whose nonce is more than ``nonce_window`` seconds away
    from server time are refused.
    """
    owner: str = "owner"
    owner_public_key: str = ""
    nonce_window: int = 300


@dataclass
class AccountsConfig:
    """User signing keys: ``public_keys`` maps a user id to a hex secp256k1 key."""
    public_keys: dict[str, str] = field(default_factory=dict)


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 1_048_576


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    backend: str = "sqlite"
    path: str = "data/stakeflow.db"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class BootstrapConfig:
    """
    Pools, strategies and balances created on first start.

    ``pools`` entries: ``{staking_asset, reward_asset, reward_rate,
    capacity}``.  ``strategies`` entries: ``{name, allocations:
    [[pool_id, bps], ...]}``.  ``balances`` maps ``"asset:holder"`` to an
    amount minted into the in-memory custody; ``reward_reserves`` maps an
    asset to the amount pre-funded in the vault.
    """
    pools: list[dict[str, Any]] = field(default_factory=list)
    strategies: list[dict[str, Any]] = field(default_factory=list)
    balances: dict[str, int] = field(default_factory=dict)
    reward_reserves: dict[str, int] = field(default_factory=dict)


@dataclass
class StakeFlowConfig:
    """Top-level configuration container."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    accounts: AccountsConfig = field(default_factory=AccountsConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> StakeFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        STAKEFLOW_MIN_STAKE     -> engine.min_stake
        STAKEFLOW_CHECK_INVARIANTS -> engine.check_invariants ("1"/"true")
        STAKEFLOW_OWNER         -> admin.owner
        STAKEFLOW_OWNER_PUBKEY  -> admin.owner_public_key
        STAKEFLOW_API_PORT      -> api.port (also enables the API)
        STAKEFLOW_API_KEY       -> api.api_key
        STAKEFLOW_CORS_ORIGINS  -> api.cors_origins (comma-separated)
        STAKEFLOW_LOG_LEVEL     -> logging.level
        STAKEFLOW_LOG_FMT       -> logging.format
        STAKEFLOW_DB_PATH       -> storage.path (also enables storage)
    """
    cfg = StakeFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("engine", cfg.engine),
                ("admin", cfg.admin),
                ("accounts", cfg.accounts),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
                ("bootstrap", cfg.bootstrap),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("STAKEFLOW_MIN_STAKE"):
        cfg.engine.min_stake = int(v)
    if v := os.environ.get("STAKEFLOW_CHECK_INVARIANTS"):
        cfg.engine.check_invariants = v.strip().lower() in ("1", "true", "yes")
    if v := os.environ.get("STAKEFLOW_OWNER"):
        cfg.admin.owner = v
    if v := os.environ.get("STAKEFLOW_OWNER_PUBKEY"):
        cfg.admin.owner_public_key = v
    if v := os.environ.get("STAKEFLOW_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("STAKEFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("STAKEFLOW_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("STAKEFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("STAKEFLOW_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("STAKEFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True

    return cfg
