"""
Tests for owner-only administration (pools, strategies, pause, ownership).
"""

import pytest

from stakeflow_core.errors import NotOwnerError, ReentrancyError, ValidationError

OWNER = "owner"


class TestOwnerGate:
    @pytest.mark.parametrize("call", [
        lambda a, p: a.create_pool("mallory", "STK", "RWD", 1, 10),
        lambda a, p: a.update_pool_rate("mallory", p.pool_id, 5),
        lambda a, p: a.toggle_pool_active("mallory", p.pool_id),
        lambda a, p: a.set_pool_capacity("mallory", p.pool_id, 5),
        lambda a, p: a.create_strategy("mallory", [(p.pool_id, 10_000)]),
        lambda a, p: a.pause("mallory"),
        lambda a, p: a.unpause("mallory"),
        lambda a, p: a.transfer_ownership("mallory", "mallory"),
    ])
    def test_non_owner_rejected(self, admin, pool, call):
        with pytest.raises(NotOwnerError) as exc:
            call(admin, pool)
        assert exc.value.code == "not_owner"


class TestCreatePool:
    def test_sequential_ids(self, admin):
        first = admin.create_pool(OWNER, "STK", "RWD", 1, 10, now=0)
        second = admin.create_pool(OWNER, "STK", "STK", 1, 10, now=0)
        assert second.pool_id == first.pool_id + 1
        assert second.compoundable

    def test_initial_state(self, engine, admin):
        p = admin.create_pool(OWNER, " STK ", "RWD", 7, 500, now=42)
        assert p.staking_asset == "STK"
        assert p.last_update_time == 42
        assert p.total_staked == 0
        assert p.reward_per_share_stored == 0
        assert p.active
        event = engine.events.recent(event_type="pool_created")[-1]
        assert event.pool_id == p.pool_id
        assert event.data["reward_rate"] == 7

    @pytest.mark.parametrize("args,code", [
        (("", "RWD", 1, 10), "bad_asset"),
        (("STK", None, 1, 10), "bad_asset"),
        (("STK", "RWD", -1, 10), "bad_amount"),
        (("STK", "RWD", 1, 0), "bad_capacity"),
    ])
    def test_rejects(self, engine, admin, args, code):
        with pytest.raises(ValidationError) as exc:
            admin.create_pool(OWNER, *args, now=0)
        assert exc.value.code == code
        assert engine.state.pools == {}
        assert engine.state.next_pool_id == 1


class TestPoolSettings:
    def test_toggle(self, admin, pool):
        assert admin.toggle_pool_active(OWNER, pool.pool_id) is False
        assert admin.toggle_pool_active(OWNER, pool.pool_id) is True

    def test_rate_update_advances_first(self, engine, admin, pool):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        updated = admin.update_pool_rate(OWNER, pool.pool_id, 0, now=50)
        assert updated.reward_rate == 0
        assert updated.last_update_time == 50
        assert updated.reward_per_share_stored == 5 * 10 ** 18
        assert engine.pending_rewards(pool.pool_id, "alice", now=1_000) == 500

    def test_capacity_cannot_drop_below_staked(self, engine, admin, pool):
        engine.stake(pool.pool_id, "alice", 100, now=0)
        with pytest.raises(ValidationError) as exc:
            admin.set_pool_capacity(OWNER, pool.pool_id, 99)
        assert exc.value.code == "bad_capacity"
        assert admin.set_pool_capacity(OWNER, pool.pool_id, 100).capacity == 100

    def test_unknown_pool(self, admin):
        with pytest.raises(ValidationError) as exc:
            admin.toggle_pool_active(OWNER, 77)
        assert exc.value.code == "unknown_pool"


class TestCreateStrategy:
    def test_creates(self, engine, admin, pool, compound_pool):
        s = admin.create_strategy(
            OWNER, [(pool.pool_id, 6000), (compound_pool.pool_id, 4000)], name="mix",
        )
        assert s.strategy_id == 1
        assert s.pool_ids == [pool.pool_id, compound_pool.pool_id]
        assert engine.strategy_info(s.strategy_id)["name"] == "mix"

    def test_unknown_pool(self, admin, pool):
        with pytest.raises(ValidationError) as exc:
            admin.create_strategy(OWNER, [(pool.pool_id, 5000), (99, 5000)])
        assert exc.value.code == "unknown_pool"

    def test_bad_sum(self, engine, admin, pool):
        with pytest.raises(ValidationError) as exc:
            admin.create_strategy(OWNER, [(pool.pool_id, 9999)])
        assert exc.value.code == "bad_allocation"
        assert engine.state.strategies == {}

    def test_toggle(self, admin, pool):
        s = admin.create_strategy(OWNER, [(pool.pool_id, 10_000)])
        assert admin.toggle_strategy_active(OWNER, s.strategy_id) is False


class TestOwnership:
    def test_transfer(self, engine, admin):
        admin.transfer_ownership(OWNER, "new-owner")
        assert engine.access.owner == "new-owner"
        with pytest.raises(NotOwnerError):
            admin.pause(OWNER)
        admin.pause("new-owner")
        assert engine.access.paused

    def test_rejects_empty_new_owner(self, engine, admin):
        with pytest.raises(ValidationError) as exc:
            admin.transfer_ownership(OWNER, " ")
        assert exc.value.code == "bad_owner"
        assert engine.access.owner == OWNER

    def test_events(self, engine, admin):
        admin.pause(OWNER)
        admin.unpause(OWNER)
        admin.transfer_ownership(OWNER, "new-owner")
        types = [e.event_type for e in engine.events.recent()]
        assert types[-3:] == ["paused", "unpaused", "ownership_transferred"]
        assert engine.events.recent()[-1].data == {"new_owner": "new-owner"}


class TestSystemControlsGuarded:
    @pytest.mark.parametrize("call", [
        lambda a: a.pause(OWNER),
        lambda a: a.unpause(OWNER),
        lambda a: a.transfer_ownership(OWNER, "mallory"),
    ])
    def test_rejected_while_operation_in_flight(self, engine, admin, call):
        with engine.guard.session("stake"):
            with pytest.raises(ReentrancyError):
                call(admin)
        assert not engine.access.paused
        assert engine.access.owner == OWNER
