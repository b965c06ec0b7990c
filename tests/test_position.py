"""
Tests for reward-debt bookkeeping (settle / rebase / restore_pending).
"""

import pytest

from stakeflow_core.errors import InvariantViolation
from stakeflow_core.pool import Pool, advance
from stakeflow_core.position import UserPosition, earned, rebase, restore_pending, settle
from stakeflow_core.precision import PRECISION


@pytest.fixture
def pool():
    return Pool(
        pool_id=1, staking_asset="STK", reward_asset="RWD",
        reward_rate=10, capacity=10_000, last_update_time=0, total_staked=100,
    )


@pytest.fixture
def position():
    return UserPosition(pool_id=1, user_id="alice", staked_amount=100)


class TestEarned:
    def test_nothing_staked(self):
        assert earned(UserPosition(1, "alice", pending_rewards=7), 10 * PRECISION) == 0

    def test_gross_minus_debt(self, position):
        position.reward_debt = 400
        assert earned(position, 10 * PRECISION) == 600

    def test_negative_is_a_fault(self, position):
        position.reward_debt = 2_000
        with pytest.raises(InvariantViolation):
            earned(position, 10 * PRECISION)


class TestSettle:
    def test_moves_everything_owed(self, pool, position):
        advance(pool, 100)
        position.pending_rewards = 5
        owed = settle(pool, position)
        assert owed == 1_005
        assert position.pending_rewards == 0
        assert position.total_rewards_earned == 1_005
        assert position.reward_debt == 1_000
        assert earned(position, pool.reward_per_share_stored) == 0

    def test_twice_pays_once(self, pool, position):
        advance(pool, 100)
        assert settle(pool, position) == 1_000
        assert settle(pool, position) == 0

    def test_zero_stake_returns_pending(self, pool):
        empty = UserPosition(pool_id=1, user_id="bob", pending_rewards=42)
        advance(pool, 100)
        assert settle(pool, empty) == 42
        assert empty.reward_debt == 0


class TestRebase:
    def test_after_stake_change(self, pool, position):
        advance(pool, 100)
        settle(pool, position)
        position.staked_amount = 150
        rebase(pool, position)
        assert position.reward_debt == 1_500
        advance(pool, 200)
        # 100 s at 10/s shared over total_staked=100 -> 10 per unit
        assert earned(position, pool.reward_per_share_stored) == 1_500


class TestRestorePending:
    def test_reverses_settlement_bookkeeping(self, pool, position):
        advance(pool, 100)
        owed = settle(pool, position)
        restore_pending(position, owed)
        assert position.pending_rewards == 1_000
        assert position.total_rewards_earned == 0
        assert settle(pool, position) == 1_000
