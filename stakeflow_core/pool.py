"""
Per-pool reward-per-share accumulator.

A pool mints ``reward_rate`` reward units per second, shared pro rata by
every unit currently staked.  Instead of crediting each staker on every
tick, the pool integrates the reward earned by *one* staked unit:

    reward_per_share_stored += elapsed × reward_rate × PRECISION / total_staked

A staker's earnings between two instants are then
``staked × Δreward_per_share / PRECISION``, independent of how many other
stakers exist.

Ordering contract
─────────────────
``advance()`` must run *before* anything that changes ``total_staked`` or
``reward_rate``; otherwise the elapsed interval would be integrated at the
new values.  Every mutating path in ``engine`` and ``admin`` goes through
``advance()`` first.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from stakeflow_core.precision import PRECISION, mul_div


@dataclass
class Pool:
    """A staking pool and its accumulator state."""
    pool_id: int
    staking_asset: str
    reward_asset: str
    reward_rate: int                 # reward units per second
    capacity: int                    # ceiling on total_staked
    last_update_time: int            # seconds; never decreases
    total_staked: int = 0
    reward_per_share_stored: int = 0  # scaled by PRECISION; never decreases
    active: bool = True
    total_rewards_paid: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def compoundable(self) -> bool:
        """True when rewards can be restaked in place."""
        return self.staking_asset == self.reward_asset

    @property
    def remaining_capacity(self) -> int:
        return max(0, self.capacity - self.total_staked)

    def to_dict(self) -> dict:
        return {
            "pool_id": self.pool_id,
            "staking_asset": self.staking_asset,
            "reward_asset": self.reward_asset,
            "reward_rate": self.reward_rate,
            "capacity": self.capacity,
            "remaining_capacity": self.remaining_capacity,
            "total_staked": self.total_staked,
            "reward_per_share_stored": self.reward_per_share_stored,
            "last_update_time": self.last_update_time,
            "active": self.active,
            "compoundable": self.compoundable,
            "total_rewards_paid": self.total_rewards_paid,
            "created_at": self.created_at,
        }


def _accrued_per_share(pool: Pool, now: int) -> int:
    if now <= pool.last_update_time or pool.total_staked == 0:
        return 0
    elapsed = now - pool.last_update_time
    return mul_div(elapsed * pool.reward_rate, PRECISION, pool.total_staked)


def advance(pool: Pool, now: int) -> int:
    """
    Bring the accumulator forward to *now*.

    Returns the increase of ``reward_per_share_stored``.  With nobody
    staked nothing accrues (the interval is skipped, not deferred).  An
    earlier *now* than ``last_update_time`` is tolerated and leaves the
    pool untouched, so calling twice with the same timestamp is the same
    as calling once.
    """
    delta = _accrued_per_share(pool, now)
    pool.reward_per_share_stored += delta
    if now > pool.last_update_time:
        pool.last_update_time = now
    return delta


def preview_reward_per_share(pool: Pool, now: int) -> int:
    """Accumulator value ``advance(pool, now)`` would produce, without mutating."""
    return pool.reward_per_share_stored + _accrued_per_share(pool, now)
