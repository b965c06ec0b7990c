"""
Tests for the staking event log.
"""

import logging

import pytest

from stakeflow_core.events import EventLog, StakingEvent


class TestEventLog:
    def test_emit_and_recent(self):
        log = EventLog()
        log.emit(StakingEvent("stake", 1, "alice", 10))
        log.emit(StakingEvent("harvest", 1, "bob", 3))
        log.emit(StakingEvent("stake", 2, "bob", 7))
        assert log.sequence == 3
        assert [e.amount for e in log.recent(event_type="stake")] == [10, 7]
        assert [e.event_type for e in log.recent(user_id="bob")] == ["harvest", "stake"]
        assert [e.amount for e in log.recent(limit=1)] == [7]
        assert log.recent(limit=0) == []

    def test_bounded(self):
        log = EventLog(max_events=2)
        for i in range(5):
            log.emit(StakingEvent("stake", 1, "alice", i))
        assert len(log) == 2
        assert log.sequence == 5
        assert [e.amount for e in log.recent()] == [3, 4]

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            EventLog().emit(StakingEvent("mint"))

    def test_subscribers_notified(self):
        log = EventLog()
        seen = []
        log.subscribe(seen.append)
        event = StakingEvent("withdraw", 1, "alice", 5)
        log.emit(event)
        assert seen == [event]

    def test_failing_subscriber_is_logged(self, caplog):
        log = EventLog()
        seen = []

        def broken(_event):
            raise RuntimeError("disk full")

        log.subscribe(broken)
        log.subscribe(seen.append)
        with caplog.at_level(logging.ERROR, logger="stakeflow_events"):
            log.emit(StakingEvent("stake", 1, "alice", 1))
        assert len(seen) == 1
        assert "subscriber failed" in caplog.text

    def test_to_dict(self):
        d = StakingEvent("restake", 3, "carol", 9, {"x": 1}, timestamp=1.0).to_dict()
        assert d == {
            "type": "restake", "pool_id": 3, "user_id": "carol",
            "amount": 9, "data": {"x": 1}, "timestamp": 1.0,
        }


class TestEngineEvents:
    def test_one_event_per_operation(self, engine, pool):
        start = engine.events.sequence
        engine.stake(pool.pool_id, "alice", 100, now=0)
        engine.harvest(pool.pool_id, "alice", now=10)
        engine.withdraw(pool.pool_id, "alice", now=20)
        types = [e.event_type for e in engine.events.recent(limit=3)]
        assert types == ["stake", "harvest", "withdraw"]
        assert engine.events.sequence == start + 3
