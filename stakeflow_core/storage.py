"""
SQLite-based persistence layer for StakeFlow ledger state.

Stores pools, user positions, strategies and the aggregate counters so a
service can recover after restart.  Accumulator values routinely exceed
SQLite's 64-bit INTEGER range, so every amount column is TEXT holding a
decimal integer.

Usage:
    store = LedgerStore("data/stakeflow.db")
    store.save_state(engine.state)      # full snapshot
    store.attach(engine)                # then write-through on every event
    ...
    state = store.load_state()
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stakeflow_core.events import StakingEvent
from stakeflow_core.pool import Pool
from stakeflow_core.position import UserPosition
from stakeflow_core.store import LedgerState
from stakeflow_core.strategy import Strategy

if TYPE_CHECKING:
    from stakeflow_core.engine import StakingEngine

logger = logging.getLogger("stakeflow_storage")


class LedgerStore:
    """Thin SQLite wrapper for persisting ledger state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/stakeflow.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS pools (
                pool_id                 INTEGER PRIMARY KEY,
                staking_asset           TEXT NOT NULL,
                reward_asset            TEXT NOT NULL,
                reward_rate             TEXT NOT NULL,
                capacity                TEXT NOT NULL,
                last_update_time        INTEGER NOT NULL,
                total_staked            TEXT NOT NULL,
                reward_per_share_stored TEXT NOT NULL,
                active                  INTEGER NOT NULL DEFAULT 1,
                total_rewards_paid      TEXT NOT NULL DEFAULT '0',
                created_at              REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                pool_id              INTEGER NOT NULL,
                user_id              TEXT NOT NULL,
                staked_amount        TEXT NOT NULL,
                reward_debt          TEXT NOT NULL,
                pending_rewards      TEXT NOT NULL,
                last_stake_time      INTEGER NOT NULL DEFAULT 0,
                total_rewards_earned TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (pool_id, user_id)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS strategies (
                strategy_id INTEGER PRIMARY KEY,
                name        TEXT NOT NULL DEFAULT '',
                allocations TEXT NOT NULL,
                active      INTEGER NOT NULL DEFAULT 1,
                created_at  REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS counters (
                name  TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade StakeFlow."
            )

    # ── writes ───────────────────────────────────────────────────

    def _put_pool(self, pool: Pool) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO pools
               (pool_id, staking_asset, reward_asset, reward_rate, capacity,
                last_update_time, total_staked, reward_per_share_stored,
                active, total_rewards_paid, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                pool.pool_id, pool.staking_asset, pool.reward_asset,
                str(pool.reward_rate), str(pool.capacity), pool.last_update_time,
                str(pool.total_staked), str(pool.reward_per_share_stored),
                int(pool.active), str(pool.total_rewards_paid), pool.created_at,
            ),
        )

    def _put_position(self, pos: UserPosition) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO positions
               (pool_id, user_id, staked_amount, reward_debt, pending_rewards,
                last_stake_time, total_rewards_earned)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                pos.pool_id, pos.user_id, str(pos.staked_amount),
                str(pos.reward_debt), str(pos.pending_rewards),
                pos.last_stake_time, str(pos.total_rewards_earned),
            ),
        )

    def _put_strategy(self, strategy: Strategy) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO strategies
               (strategy_id, name, allocations, active, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                strategy.strategy_id, strategy.name,
                json.dumps([list(a) for a in strategy.allocations]),
                int(strategy.active), strategy.created_at,
            ),
        )

    def _put_counters(self, state: LedgerState) -> None:
        self._conn.executemany(
            "INSERT OR REPLACE INTO counters (name, value) VALUES (?, ?)",
            [
                ("next_pool_id", str(state.next_pool_id)),
                ("next_strategy_id", str(state.next_strategy_id)),
                ("total_value_locked", str(state.total_value_locked)),
                ("total_rewards_paid", str(state.total_rewards_paid)),
            ],
        )

    def save_state(self, state: LedgerState) -> None:
        """Write a full snapshot in one SQLite transaction."""
        with self._conn:
            for pool in state.pools.values():
                self._put_pool(pool)
            for pos in state.positions.values():
                self._put_position(pos)
            for strategy in state.strategies.values():
                self._put_strategy(strategy)
            self._put_counters(state)
        logger.info(
            f"Saved {len(state.pools)} pools, {len(state.positions)} positions, "
            f"{len(state.strategies)} strategies"
        )

    def save_touched(self, state: LedgerState, event: StakingEvent) -> None:
        """Persist only the records an event refers to."""
        with self._conn:
            if event.pool_id is not None and event.pool_id in state.pools:
                self._put_pool(state.pools[event.pool_id])
                pos = state.find_position(event.pool_id, event.user_id)
                if pos is not None:
                    self._put_position(pos)
            strategy_id = event.data.get("strategy_id")
            if strategy_id in state.strategies:
                self._put_strategy(state.strategies[strategy_id])
            if event.event_type == "strategy_executed":
                for pool_id in state.get_strategy(strategy_id).pool_ids:
                    self._put_pool(state.pools[pool_id])
                    pos = state.find_position(pool_id, event.user_id)
                    if pos is not None:
                        self._put_position(pos)
            self._put_counters(state)

    def attach(self, engine: StakingEngine) -> None:
        """Write through every committed engine event."""
        engine.events.subscribe(lambda event: self.save_touched(engine.state, event))

    # ── reads ────────────────────────────────────────────────────

    def load_state(self) -> LedgerState:
        state = LedgerState()
        for row in self._conn.execute("SELECT * FROM pools ORDER BY pool_id"):
            state.add_pool(Pool(
                pool_id=row["pool_id"],
                staking_asset=row["staking_asset"],
                reward_asset=row["reward_asset"],
                reward_rate=int(row["reward_rate"]),
                capacity=int(row["capacity"]),
                last_update_time=row["last_update_time"],
                total_staked=int(row["total_staked"]),
                reward_per_share_stored=int(row["reward_per_share_stored"]),
                active=bool(row["active"]),
                total_rewards_paid=int(row["total_rewards_paid"]),
                created_at=row["created_at"],
            ))
        for row in self._conn.execute("SELECT * FROM positions"):
            state.add_position(UserPosition(
                pool_id=row["pool_id"],
                user_id=row["user_id"],
                staked_amount=int(row["staked_amount"]),
                reward_debt=int(row["reward_debt"]),
                pending_rewards=int(row["pending_rewards"]),
                last_stake_time=row["last_stake_time"],
                total_rewards_earned=int(row["total_rewards_earned"]),
            ))
        for row in self._conn.execute("SELECT * FROM strategies ORDER BY strategy_id"):
            state.add_strategy(Strategy(
                strategy_id=row["strategy_id"],
                allocations=[(int(p), int(b)) for p, b in json.loads(row["allocations"])],
                name=row["name"],
                active=bool(row["active"]),
                created_at=row["created_at"],
            ))
        counters = self._load_counters()
        state.next_pool_id = max(state.next_pool_id, int(counters.get("next_pool_id", 1)))
        state.next_strategy_id = max(
            state.next_strategy_id, int(counters.get("next_strategy_id", 1)),
        )
        state.total_value_locked = int(counters.get("total_value_locked", 0))
        state.total_rewards_paid = int(counters.get("total_rewards_paid", 0))
        return state

    def _load_counters(self) -> dict[str, Any]:
        rows = self._conn.execute("SELECT name, value FROM counters").fetchall()
        return {r["name"]: r["value"] for r in rows}

    def is_empty(self) -> bool:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM pools").fetchone()
        return row["n"] == 0

    def close(self) -> None:
        self._conn.close()
