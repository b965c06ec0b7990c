"""
Tests for the per-pool reward-per-share accumulator.

Covers:
  - Accrual formula and truncation
  - Idempotent advance at the same timestamp
  - Zero-staked intervals are skipped, not deferred
  - Earlier timestamps leave the pool untouched
  - preview_reward_per_share does not mutate
"""

import pytest

from stakeflow_core.pool import Pool, advance, preview_reward_per_share
from stakeflow_core.precision import PRECISION


def _pool(**overrides):
    fields = dict(
        pool_id=1, staking_asset="STK", reward_asset="RWD",
        reward_rate=10, capacity=10_000, last_update_time=0,
    )
    fields.update(overrides)
    return Pool(**fields)


class TestAdvance:
    def test_accrues_rate_over_stake(self):
        p = _pool(total_staked=100)
        delta = advance(p, 100)
        assert delta == 100 * 10 * PRECISION // 100
        assert p.reward_per_share_stored == 10 * PRECISION
        assert p.last_update_time == 100

    def test_same_timestamp_is_noop(self):
        p = _pool(total_staked=100)
        advance(p, 50)
        snapshot = (p.reward_per_share_stored, p.last_update_time)
        assert advance(p, 50) == 0
        assert (p.reward_per_share_stored, p.last_update_time) == snapshot

    def test_two_steps_equal_one(self):
        a = _pool(total_staked=7)
        b = _pool(total_staked=7)
        advance(a, 30)
        advance(a, 90)
        advance(b, 90)
        # truncation can only lose, never gain
        assert a.reward_per_share_stored <= b.reward_per_share_stored
        assert b.reward_per_share_stored - a.reward_per_share_stored <= 1

    def test_nobody_staked_skips_interval(self):
        p = _pool()
        advance(p, 500)
        assert p.reward_per_share_stored == 0
        assert p.last_update_time == 500
        p.total_staked = 100
        advance(p, 600)
        assert p.reward_per_share_stored == 10 * PRECISION

    def test_earlier_time_ignored(self):
        p = _pool(total_staked=100, last_update_time=100)
        assert advance(p, 40) == 0
        assert p.last_update_time == 100

    def test_zero_rate(self):
        p = _pool(total_staked=100, reward_rate=0)
        advance(p, 1_000)
        assert p.reward_per_share_stored == 0
        assert p.last_update_time == 1_000

    def test_monotone(self):
        p = _pool(total_staked=3)
        seen = []
        for t in (1, 2, 2, 5, 4, 9):
            advance(p, t)
            seen.append((p.reward_per_share_stored, p.last_update_time))
        assert seen == sorted(seen)


class TestPreview:
    def test_does_not_mutate(self):
        p = _pool(total_staked=100)
        assert preview_reward_per_share(p, 100) == 10 * PRECISION
        assert p.reward_per_share_stored == 0
        assert p.last_update_time == 0


class TestPoolRecord:
    def test_compoundable(self):
        assert _pool(reward_asset="STK").compoundable
        assert not _pool().compoundable

    @pytest.mark.parametrize("staked,remaining", [(0, 10_000), (9_000, 1_000), (10_000, 0)])
    def test_remaining_capacity(self, staked, remaining):
        assert _pool(total_staked=staked).remaining_capacity == remaining

    def test_to_dict(self):
        d = _pool(total_staked=5).to_dict()
        assert d["pool_id"] == 1
        assert d["total_staked"] == 5
        assert d["compoundable"] is False
