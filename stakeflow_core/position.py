"""
Per-(pool, user) stake and reward-debt bookkeeping.

``reward_debt`` is the slice of the accumulator a position has already
been credited for.  Settling folds everything earned since then into the
amount owed, and ``rebase`` re-anchors the debt after ``staked_amount``
changes.  Between two settlements

    earned = staked_amount × reward_per_share_stored / PRECISION − reward_debt

is never negative because the accumulator only grows and the debt was
taken from an earlier accumulator value with the same ``staked_amount``.
"""

from __future__ import annotations

from dataclasses import dataclass

from stakeflow_core.errors import InvariantViolation
from stakeflow_core.pool import Pool
from stakeflow_core.precision import PRECISION, mul_div


@dataclass
class UserPosition:
    pool_id: int
    user_id: str
    staked_amount: int = 0
    reward_debt: int = 0
    pending_rewards: int = 0
    last_stake_time: int = 0
    total_rewards_earned: int = 0

    @property
    def is_empty(self) -> bool:
        return self.staked_amount == 0 and self.pending_rewards == 0

    def to_dict(self) -> dict:
        return {
            "pool_id": self.pool_id,
            "user_id": self.user_id,
            "staked_amount": self.staked_amount,
            "reward_debt": self.reward_debt,
            "pending_rewards": self.pending_rewards,
            "last_stake_time": self.last_stake_time,
            "total_rewards_earned": self.total_rewards_earned,
        }


def earned(position: UserPosition, reward_per_share: int) -> int:
    """Reward accrued since the last rebase against *reward_per_share*."""
    if position.staked_amount == 0:
        return 0
    gross = mul_div(position.staked_amount, reward_per_share, PRECISION)
    if gross < position.reward_debt:
        raise InvariantViolation(
            f"Negative earning for {position.user_id} in pool {position.pool_id}: "
            f"{gross} < debt {position.reward_debt}"
        )
    return gross - position.reward_debt


def settle(pool: Pool, position: UserPosition) -> int:
    """
    Move everything the position is owed into the return value.

    The pool accumulator must already be advanced.  ``pending_rewards`` is
    cleared and ``total_rewards_earned`` grows by the returned amount; the
    caller pays it out (or puts it back with ``restore_pending``).  The
    debt is re-anchored for the current stake; call ``rebase`` again once
    a stake change is applied.
    """
    owed = position.pending_rewards + earned(position, pool.reward_per_share_stored)
    position.pending_rewards = 0
    position.total_rewards_earned += owed
    position.reward_debt = mul_div(
        position.staked_amount, pool.reward_per_share_stored, PRECISION,
    )
    return owed


def rebase(pool: Pool, position: UserPosition) -> None:
    """Anchor ``reward_debt`` at the current accumulator for the current stake."""
    position.reward_debt = mul_div(
        position.staked_amount, pool.reward_per_share_stored, PRECISION,
    )


def restore_pending(position: UserPosition, amount: int) -> None:
    """Put an unpaid settlement back so the next settlement retries it."""
    position.pending_rewards += amount
    position.total_rewards_earned -= amount
