#!/usr/bin/env python3
"""
StakeFlow Node Runner — starts a staking service with:
  - StakingEngine over an in-memory custody
  - Optional SQLite persistence (write-through on every committed event)
  - Optional REST API
  - Interactive CLI for staking by hand

Usage:
    python run_node.py --config stakeflow.toml
    python run_node.py --api-port 8080 --db data/stakeflow.db --no-cli

Environment variables (alternative to flags): see ``stakeflow_core.config``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from stakeflow_core.access import AccessController  # noqa: E402
from stakeflow_core.admin import AdminControls  # noqa: E402
from stakeflow_core.config import StakeFlowConfig, load_config  # noqa: E402
from stakeflow_core.custody import InMemoryCustody  # noqa: E402
from stakeflow_core.engine import StakingEngine  # noqa: E402
from stakeflow_core.errors import StakingError  # noqa: E402
from stakeflow_core.logging_config import setup_from_config  # noqa: E402
from stakeflow_core.storage import LedgerStore  # noqa: E402

logger = logging.getLogger("node")


# ===================================================================
#  StakeFlow Node
# ===================================================================

class StakeFlowNode:
    """Wires engine, admin controls, custody, storage and API together."""

    def __init__(self, config: StakeFlowConfig | None = None):
        self.config = config or StakeFlowConfig()
        cfg = self.config

        self.store: LedgerStore | None = None
        state = None
        if cfg.storage.enabled:
            self.store = LedgerStore(cfg.storage.path)
            if not self.store.is_empty():
                state = self.store.load_state()
                logger.info(
                    f"Restored {len(state.pools)} pools, {len(state.positions)} positions, "
                    f"{len(state.strategies)} strategies from {cfg.storage.path}"
                )

        self.custody = InMemoryCustody()
        self.access = AccessController(
            cfg.admin.owner,
            cfg.admin.owner_public_key,
            user_public_keys=cfg.accounts.public_keys,
            nonce_window=cfg.admin.nonce_window,
        )
        self.engine = StakingEngine(
            state=state,
            custody=self.custody,
            access=self.access,
            config=cfg.engine,
        )
        self.admin = AdminControls(self.engine)
        self._api = None

    # ---- bootstrap ----

    def bootstrap(self) -> None:
        """Apply ``[bootstrap]``: balances always, pools/strategies on an empty ledger."""
        boot = self.config.bootstrap
        for key, amount in boot.balances.items():
            asset, _, holder = key.partition(":")
            if not holder:
                raise ValueError(f"bootstrap balance key must be 'asset:holder', got {key!r}")
            self.custody.mint(asset, holder, int(amount))
        for asset, amount in boot.reward_reserves.items():
            self.custody.fund_rewards(asset, int(amount))

        state = self.engine.state
        for pool in state.pools.values():
            self.custody.authorize(pool.staking_asset)

        if state.pools or state.strategies:
            return
        owner = self.access.owner
        for entry in boot.pools:
            pool = self.admin.create_pool(
                owner,
                entry["staking_asset"],
                entry["reward_asset"],
                int(entry["reward_rate"]),
                int(entry["capacity"]),
            )
            self.custody.authorize(pool.staking_asset)
        for entry in boot.strategies:
            self.admin.create_strategy(
                owner,
                [(int(pid), int(bps)) for pid, bps in entry["allocations"]],
                name=entry.get("name", ""),
            )
        logger.info(
            f"Bootstrapped {len(boot.pools)} pools and {len(boot.strategies)} strategies"
        )

    # ---- lifecycle ----

    async def start(self) -> None:
        self.bootstrap()
        if self.store is not None:
            self.store.save_state(self.engine.state)
            self.store.attach(self.engine)

        if self.config.api.enabled:
            from stakeflow_core.api import APIServer
            self._api = APIServer(
                self.engine,
                self.admin,
                host=self.config.api.host,
                port=self.config.api.port,
                api_config=self.config.api,
            )
            await self._api.start()

        if not self.access.owner_public_key:
            logger.warning(
                "No owner public key configured; admin API endpoints are disabled. "
                "Set [admin] owner_public_key in stakeflow.toml to enable them."
            )
        logger.info(f"StakeFlow started | owner={self.access.owner} | {self.engine.stats()}")

    async def stop(self) -> None:
        if self._api is not None:
            await self._api.stop()
        if self.store is not None:
            logger.info("Saving ledger state to database...")
            self.store.save_state(self.engine.state)
            self.store.close()
            self.store = None

    def status(self) -> dict:
        return {
            **self.engine.stats(),
            "owner": self.access.owner,
            "api": self._api is not None,
            "storage": self.config.storage.path if self.store is not None else None,
        }


# ===================================================================
#  Interactive CLI
# ===================================================================

async def interactive_cli(node: StakeFlowNode):
    """Simple async CLI for driving the engine by hand."""
    loop = asyncio.get_event_loop()
    engine = node.engine

    def print_help():
        print("""
╔══════════════════════════════════════════════════════════════╗
║  StakeFlow CLI                                               ║
╠══════════════════════════════════════════════════════════════╣
║  status                        - Show service status         ║
║  pool <id>                     - Show pool                   ║
║  user <pool> <user>            - Show position               ║
║  stake <pool> <user> <amt>     - Stake                       ║
║  withdraw <pool> <user> [amt]  - Withdraw (all if no amount) ║
║  harvest <pool> <user>         - Claim rewards               ║
║  restake <pool> <user>         - Compound rewards            ║
║  emergency <pool> <user>       - Emergency withdraw          ║
║  strategy <id> <user> <amt>    - Execute a strategy          ║
║  mint <asset> <user> <amt>     - Credit custody balance      ║
║  help                          - Show this help              ║
║  quit                          - Shutdown                    ║
╚══════════════════════════════════════════════════════════════╝
""")

    def show(obj) -> None:
        print(json.dumps(obj, indent=2, default=str))

    print_help()

    while True:
        try:
            line = await loop.run_in_executor(None, lambda: input("\n[stakeflow] > "))
            parts = line.strip().split()
            if not parts:
                continue

            cmd, args = parts[0].lower(), parts[1:]

            if cmd == "help":
                print_help()
            elif cmd == "status":
                show(node.status())
            elif cmd == "pool" and len(args) == 1:
                show(engine.pool_info(int(args[0])))
            elif cmd == "user" and len(args) == 2:
                show(engine.user_info(int(args[0]), args[1]))
            elif cmd == "stake" and len(args) == 3:
                show(engine.stake(int(args[0]), args[1], int(args[2])).to_dict())
            elif cmd == "withdraw" and len(args) in (2, 3):
                amount = int(args[2]) if len(args) == 3 else 0
                show(engine.withdraw(int(args[0]), args[1], amount).to_dict())
            elif cmd == "harvest" and len(args) == 2:
                show(engine.harvest(int(args[0]), args[1]).to_dict())
            elif cmd == "restake" and len(args) == 2:
                show(engine.restake(int(args[0]), args[1]).to_dict())
            elif cmd == "emergency" and len(args) == 2:
                show(engine.emergency_withdraw(int(args[0]), args[1]).to_dict())
            elif cmd == "strategy" and len(args) == 3:
                show(engine.execute_strategy(int(args[0]), int(args[2]), args[1]).to_dict())
            elif cmd == "mint" and len(args) == 3:
                node.custody.mint(args[0], args[1], int(args[2]))
                print(f"  {args[1]}: {node.custody.balance_of(args[0], args[1])} {args[0]}")
            elif cmd in ("quit", "exit", "q"):
                print("Shutting down...")
                await node.stop()
                break
            else:
                print(f"  Unknown command or wrong arguments: {line.strip()}. Type 'help'.")

        except (EOFError, KeyboardInterrupt):
            print("\nShutting down...")
            await node.stop()
            break
        except StakingError as e:
            print(f"  Rejected [{e.code}]: {e}")
        except ValueError as e:
            print(f"  Error: {e}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="StakeFlow staking service")
    p.add_argument("--config", default=os.environ.get("STAKEFLOW_CONFIG"),
                   help="Path to stakeflow.toml config file")
    p.add_argument("--api-host", default=None, help="REST API listen host")
    p.add_argument("--api-port", type=int, default=None,
                   help="REST API port (enables the API)")
    p.add_argument("--db", default=None, help="SQLite path (enables persistence)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--no-cli", action="store_true",
                   help="Run without interactive CLI")
    return p.parse_args(argv)


def build_config(args) -> StakeFlowConfig:
    """Load config (TOML + env overrides), then apply CLI flags."""
    cfg = load_config(args.config)
    if args.api_host:
        cfg.api.host = args.api_host
    if args.api_port is not None:
        cfg.api.port = args.api_port
        cfg.api.enabled = True
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    return cfg


async def main(argv: list[str] | None = None):
    args = parse_args(argv)
    cfg = build_config(args)
    setup_from_config(cfg.logging)

    node = StakeFlowNode(cfg)
    await node.start()

    if args.no_cli:
        # Run forever without CLI
        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            await node.stop()
    else:
        await interactive_cli(node)


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
