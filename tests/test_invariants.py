"""
Tests for stakeflow_core.invariants — ledger audits.
"""

import pytest

from stakeflow_core.errors import InvariantViolation
from stakeflow_core.invariants import InvariantChecker

OWNER = "owner"


@pytest.fixture
def checker():
    return InvariantChecker()


class TestFullAudit:
    def test_clean_ledger(self, checker, engine, admin, pool):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        admin.create_strategy(OWNER, [(pool.pool_id, 10_000)])
        assert checker.verify(engine.state) == (True, "")

    def test_total_staked_mismatch(self, checker, engine, pool):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        engine.state.find_position(pool.pool_id, "alice").staked_amount = 90
        ok, msg = checker.verify(engine.state)
        assert not ok
        assert "mismatch" in msg

    def test_tvl_mismatch(self, checker, engine, pool):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        engine.state.total_value_locked = 5
        ok, msg = checker.verify(engine.state)
        assert not ok
        assert "TVL" in msg

    def test_debt_above_accrued(self, checker, engine, pool):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        engine.state.find_position(pool.pool_id, "alice").reward_debt = 1
        ok, msg = checker.verify(engine.state)
        assert not ok
        assert "debt" in msg

    def test_strategy_sum(self, checker, engine, admin, pool):
        s = admin.create_strategy(OWNER, [(pool.pool_id, 10_000)])
        s.allocations = [(pool.pool_id, 9_000)]
        ok, msg = checker.verify(engine.state)
        assert not ok
        assert "Strategy" in msg


class TestTransactionCheck:
    def test_accumulator_decrease(self, checker, engine, pool):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        engine.harvest(pool.pool_id, "alice", now=10)
        tx = engine.state.begin()
        tx.pool(pool.pool_id).reward_per_share_stored -= 1
        ok, msg = checker.verify_transaction(tx)
        assert not ok
        assert "decreased" in msg
        tx.rollback()

    def test_time_backwards(self, checker, engine, pool):
        tx = engine.state.begin()
        p = tx.pool(pool.pool_id)
        p.last_update_time = 50
        tx2 = engine.state.begin()
        tx2.pool(pool.pool_id).last_update_time = 10
        ok, msg = checker.verify_transaction(tx2)
        assert not ok
        assert "backwards" in msg
        tx2.rollback()
        tx.rollback()


class TestEngineIntegration:
    def test_corrupt_ledger_aborts_operation(self, engine, pool, custody):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        engine.state.pools[pool.pool_id].total_staked += 5
        with pytest.raises(InvariantViolation):
            engine.stake(pool.pool_id, "bob", 10, now=1)
        assert engine.state.find_position(pool.pool_id, "bob") is None
        assert custody.balance_of("STK", "bob") == 1_000_000

    def test_checks_off_by_default(self, custody):
        from stakeflow_core.engine import StakingEngine
        assert StakingEngine(custody=custody).config.check_invariants is False
