"""
Explicit ledger state for StakeFlow.

``LedgerState`` owns every pool, position and strategy record plus the
aggregate counters.  Nothing in the package keeps module-level state; the
engine receives a ``LedgerState`` and every operation reads and writes it
through a ``StateTransaction``.

A ``StateTransaction`` copies each record the first time it is touched,
so rolling back costs O(records touched), not O(ledger size).

Usage:
    tx = state.begin()
    pool = tx.pool(1)
    pool.total_staked += 10
    tx.rollback()            # pool 1 is back to its previous value
"""

from __future__ import annotations

import dataclasses
from typing import Optional

from stakeflow_core.errors import ValidationError
from stakeflow_core.pool import Pool
from stakeflow_core.position import UserPosition
from stakeflow_core.precision import checked_sub
from stakeflow_core.strategy import Strategy

PositionKey = tuple[int, str]


def _restore(live: object, original: object) -> None:
    """Copy *original*'s fields back so outstanding references stay valid."""
    vars(live).update(vars(original))


class LedgerState:
    """All pools, positions and strategies known to one engine."""

    def __init__(self) -> None:
        self.pools: dict[int, Pool] = {}
        self.positions: dict[PositionKey, UserPosition] = {}
        self.strategies: dict[int, Strategy] = {}
        self.pool_members: dict[int, set[str]] = {}
        self.next_pool_id: int = 1
        self.next_strategy_id: int = 1
        self.total_value_locked: int = 0
        self.total_rewards_paid: int = 0

    # ── lookups ─────────────────────────────────────────────────────

    def get_pool(self, pool_id: int) -> Pool:
        pool = self.pools.get(pool_id)
        if pool is None:
            raise ValidationError(f"Pool {pool_id} not found", code="unknown_pool")
        return pool

    def get_strategy(self, strategy_id: int) -> Strategy:
        strategy = self.strategies.get(strategy_id)
        if strategy is None:
            raise ValidationError(
                f"Strategy {strategy_id} not found", code="unknown_strategy",
            )
        return strategy

    def find_position(self, pool_id: int, user_id: str) -> Optional[UserPosition]:
        return self.positions.get((pool_id, user_id))

    def positions_in_pool(self, pool_id: int) -> list[UserPosition]:
        return [
            self.positions[(pool_id, uid)]
            for uid in sorted(self.pool_members.get(pool_id, ()))
        ]

    def positions_for_user(self, user_id: str) -> list[UserPosition]:
        return [p for (_, uid), p in sorted(self.positions.items()) if uid == user_id]

    # ── record insertion ────────────────────────────────────────────

    def add_pool(self, pool: Pool) -> None:
        self.pools[pool.pool_id] = pool
        self.pool_members.setdefault(pool.pool_id, set())
        self.next_pool_id = max(self.next_pool_id, pool.pool_id + 1)

    def add_strategy(self, strategy: Strategy) -> None:
        self.strategies[strategy.strategy_id] = strategy
        self.next_strategy_id = max(self.next_strategy_id, strategy.strategy_id + 1)

    def add_position(self, position: UserPosition) -> None:
        self.positions[(position.pool_id, position.user_id)] = position
        self.pool_members.setdefault(position.pool_id, set()).add(position.user_id)

    # ── transactions ────────────────────────────────────────────────

    def begin(self) -> StateTransaction:
        return StateTransaction(self)

    def summary(self) -> dict:
        return {
            "pools": len(self.pools),
            "active_pools": sum(1 for p in self.pools.values() if p.active),
            "strategies": len(self.strategies),
            "positions": len(self.positions),
            "total_value_locked": self.total_value_locked,
            "total_rewards_paid": self.total_rewards_paid,
        }


class StateTransaction:
    """Copy-on-first-touch journal over a ``LedgerState``."""

    def __init__(self, state: LedgerState):
        self.state = state
        self._pools: dict[int, Pool] = {}
        self._positions: dict[PositionKey, Optional[UserPosition]] = {}
        self._strategies: dict[int, Strategy] = {}
        self._counters = (
            state.next_pool_id,
            state.next_strategy_id,
            state.total_value_locked,
            state.total_rewards_paid,
        )
        self._new_pools: list[int] = []
        self._new_strategies: list[int] = []

    # ── touched records ─────────────────────────────────────────────

    def pool(self, pool_id: int) -> Pool:
        pool = self.state.get_pool(pool_id)
        if pool_id not in self._pools and pool_id not in self._new_pools:
            self._pools[pool_id] = dataclasses.replace(pool)
        return pool

    def strategy(self, strategy_id: int) -> Strategy:
        strategy = self.state.get_strategy(strategy_id)
        if strategy_id not in self._strategies and strategy_id not in self._new_strategies:
            self._strategies[strategy_id] = dataclasses.replace(
                strategy, allocations=list(strategy.allocations),
            )
        return strategy

    def position(self, pool_id: int, user_id: str) -> UserPosition:
        """Position for (pool, user), created empty if the user is new."""
        key = (pool_id, user_id)
        existing = self.state.positions.get(key)
        if key not in self._positions:
            self._positions[key] = (
                dataclasses.replace(existing) if existing is not None else None
            )
        if existing is None:
            existing = UserPosition(pool_id=pool_id, user_id=user_id)
            self.state.add_position(existing)
        return existing

    def touched_pools(self) -> list[Pool]:
        return [self.state.pools[pid] for pid in [*self._pools, *self._new_pools]]

    def pool_before(self, pool_id: int) -> Optional[Pool]:
        return self._pools.get(pool_id)

    # ── inserts ─────────────────────────────────────────────────────

    def create_pool(self, pool: Pool) -> Pool:
        self.state.add_pool(pool)
        self._new_pools.append(pool.pool_id)
        return pool

    def create_strategy(self, strategy: Strategy) -> Strategy:
        self.state.add_strategy(strategy)
        self._new_strategies.append(strategy.strategy_id)
        return strategy

    # ── counters ────────────────────────────────────────────────────

    def adjust_tvl(self, delta: int) -> None:
        if delta < 0:
            self.state.total_value_locked = checked_sub(
                self.state.total_value_locked, -delta, "total_value_locked",
            )
        else:
            self.state.total_value_locked += delta

    def record_rewards_paid(self, amount: int) -> None:
        self.state.total_rewards_paid += amount

    # ── rollback ────────────────────────────────────────────────────

    def rollback(self) -> None:
        state = self.state
        for pid, original in self._pools.items():
            _restore(state.pools[pid], original)
        for sid, original_strategy in self._strategies.items():
            _restore(state.strategies[sid], original_strategy)
        for key, original_pos in self._positions.items():
            if original_pos is None:
                state.positions.pop(key, None)
                members = state.pool_members.get(key[0])
                if members is not None:
                    members.discard(key[1])
            else:
                _restore(state.positions[key], original_pos)
        for pid in self._new_pools:
            state.pools.pop(pid, None)
            state.pool_members.pop(pid, None)
        for sid in self._new_strategies:
            state.strategies.pop(sid, None)
        (
            state.next_pool_id,
            state.next_strategy_id,
            state.total_value_locked,
            state.total_rewards_paid,
        ) = self._counters
        self._pools.clear()
        self._positions.clear()
        self._strategies.clear()
        self._new_pools.clear()
        self._new_strategies.clear()
