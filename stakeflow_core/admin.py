"""
Owner-only pool and strategy administration.

These are plain record mutations except for one ordering rule: a rate
change advances the pool accumulator *first*, so the time elapsed before
the change accrues at the old rate.  Every method takes the caller's
identity and checks it with the engine's ``AccessController``; each runs
inside the engine's guarded operation scope like any user mutation.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from stakeflow_core.engine import StakingEngine
from stakeflow_core.errors import ValidationError
from stakeflow_core.events import StakingEvent
from stakeflow_core.pool import Pool, advance
from stakeflow_core.precision import require_uint
from stakeflow_core.strategy import Strategy, validate_allocations

logger = logging.getLogger("stakeflow_admin")


def _require_asset(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string", code="bad_asset")
    return value.strip()


class AdminControls:

    def __init__(self, engine: StakingEngine):
        self.engine = engine

    @property
    def access(self):
        return self.engine.access

    # ── pools ───────────────────────────────────────────────────────

    def create_pool(
        self,
        caller: str,
        staking_asset: str,
        reward_asset: str,
        reward_rate: int,
        capacity: int,
        now: Optional[int] = None,
    ) -> Pool:
        self.access.require_owner(caller)
        staking_asset = _require_asset(staking_asset, "staking_asset")
        reward_asset = _require_asset(reward_asset, "reward_asset")
        reward_rate = require_uint(reward_rate, "reward_rate")
        capacity = require_uint(capacity, "capacity")
        if capacity == 0:
            raise ValidationError("capacity must be positive", code="bad_capacity")
        ts = self.engine.now(now)

        with self.engine.operation("create_pool") as batch:
            pool = batch.tx.create_pool(Pool(
                pool_id=self.engine.state.next_pool_id,
                staking_asset=staking_asset,
                reward_asset=reward_asset,
                reward_rate=reward_rate,
                capacity=capacity,
                last_update_time=ts,
            ))
            batch.emit(StakingEvent("pool_created", pool.pool_id, caller, 0, {
                "staking_asset": staking_asset,
                "reward_asset": reward_asset,
                "reward_rate": reward_rate,
                "capacity": capacity,
            }))

        logger.info(
            f"Pool {pool.pool_id} created: stake {staking_asset}, reward "
            f"{reward_asset} at {reward_rate}/s, capacity {capacity}",
            extra={"op": "create_pool", "pool_id": pool.pool_id},
        )
        return pool

    def update_pool_rate(
        self, caller: str, pool_id: int, new_rate: int, now: Optional[int] = None,
    ) -> Pool:
        self.access.require_owner(caller)
        new_rate = require_uint(new_rate, "reward_rate")
        ts = self.engine.now(now)
        with self.engine.operation("update_pool_rate") as batch:
            pool = batch.tx.pool(pool_id)
            advance(pool, ts)
            old_rate = pool.reward_rate
            pool.reward_rate = new_rate
            batch.emit(StakingEvent("pool_rate_updated", pool_id, caller, 0, {
                "old_rate": old_rate, "new_rate": new_rate,
            }))
        logger.info(
            f"Pool {pool_id} rate {old_rate} -> {new_rate}",
            extra={"op": "update_pool_rate", "pool_id": pool_id},
        )
        return pool

    def toggle_pool_active(self, caller: str, pool_id: int) -> bool:
        """Flip the deposit gate; withdrawals and harvests are unaffected."""
        self.access.require_owner(caller)
        with self.engine.operation("toggle_pool_active") as batch:
            pool = batch.tx.pool(pool_id)
            pool.active = not pool.active
            batch.emit(StakingEvent("pool_toggled", pool_id, caller, 0, {"active": pool.active}))
        logger.info(
            f"Pool {pool_id} {'activated' if pool.active else 'deactivated'}",
            extra={"op": "toggle_pool_active", "pool_id": pool_id},
        )
        return pool.active

    def set_pool_capacity(self, caller: str, pool_id: int, capacity: int) -> Pool:
        self.access.require_owner(caller)
        capacity = require_uint(capacity, "capacity")
        with self.engine.operation("set_pool_capacity") as batch:
            pool = batch.tx.pool(pool_id)
            if capacity < pool.total_staked:
                raise ValidationError(
                    f"Capacity {capacity} is below the {pool.total_staked} already staked",
                    code="bad_capacity",
                )
            pool.capacity = capacity
            batch.emit(StakingEvent(
                "pool_capacity_updated", pool_id, caller, 0, {"capacity": capacity},
            ))
        return pool

    # ── strategies ──────────────────────────────────────────────────

    def create_strategy(
        self,
        caller: str,
        allocations: Iterable[tuple[int, int]],
        name: str = "",
    ) -> Strategy:
        self.access.require_owner(caller)
        allocs = [(require_uint(pid, "pool_id"), bps) for pid, bps in allocations]
        validate_allocations(allocs)
        for pool_id, _ in allocs:
            self.engine.state.get_pool(pool_id)

        with self.engine.operation("create_strategy") as batch:
            strategy = batch.tx.create_strategy(Strategy(
                strategy_id=self.engine.state.next_strategy_id,
                allocations=allocs,
                name=name,
            ))
            batch.emit(StakingEvent("strategy_created", None, caller, 0, {
                "strategy_id": strategy.strategy_id,
                "allocations": [list(a) for a in allocs],
            }))
        logger.info(
            f"Strategy {strategy.strategy_id} created over pools {strategy.pool_ids}",
            extra={"op": "create_strategy", "strategy_id": strategy.strategy_id},
        )
        return strategy

    def toggle_strategy_active(self, caller: str, strategy_id: int) -> bool:
        self.access.require_owner(caller)
        with self.engine.operation("toggle_strategy_active") as batch:
            strategy = batch.tx.strategy(strategy_id)
            strategy.active = not strategy.active
            batch.emit(StakingEvent("strategy_toggled", None, caller, 0, {
                "strategy_id": strategy_id, "active": strategy.active,
            }))
        return strategy.active

    # ── system ──────────────────────────────────────────────────────

    def pause(self, caller: str) -> None:
        self._set_paused(caller, True)

    def unpause(self, caller: str) -> None:
        self._set_paused(caller, False)

    def _set_paused(self, caller: str, paused: bool) -> None:
        self.access.require_owner(caller)
        name = "pause" if paused else "unpause"
        with self.engine.operation(name) as batch:
            self.access.set_paused(caller, paused)
            batch.emit(StakingEvent("paused" if paused else "unpaused", None, caller))

    def transfer_ownership(self, caller: str, new_owner: str, new_public_key: str = "") -> None:
        self.access.require_owner(caller)
        if not isinstance(new_owner, str) or not new_owner.strip():
            raise ValidationError("new owner must be a non-empty string", code="bad_owner")
        with self.engine.operation("transfer_ownership") as batch:
            self.access.transfer_ownership(caller, new_owner.strip(), new_public_key)
            batch.emit(StakingEvent(
                "ownership_transferred", None, caller, 0, {"new_owner": new_owner.strip()},
            ))
