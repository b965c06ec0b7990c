"""
Shared pytest fixtures for the StakeFlow test suite.
"""

import pytest

from stakeflow_core.access import AccessController
from stakeflow_core.admin import AdminControls
from stakeflow_core.config import EngineConfig
from stakeflow_core.custody import InMemoryCustody
from stakeflow_core.engine import StakingEngine

OWNER = "owner"
USERS = ("alice", "bob", "carol")
USER_FUNDS = 1_000_000
RESERVES = 10 ** 12


@pytest.fixture
def custody():
    """Custody with STK/RWD authorized, funded users and reward reserves."""
    c = InMemoryCustody(authorized={"STK", "RWD"})
    for user in USERS:
        c.mint("STK", user, USER_FUNDS)
    c.fund_rewards("RWD", RESERVES)
    c.fund_rewards("STK", RESERVES)
    return c


@pytest.fixture
def engine(custody):
    """Engine with invariant checks on after every operation."""
    return StakingEngine(
        custody=custody,
        access=AccessController(OWNER),
        config=EngineConfig(check_invariants=True),
    )


@pytest.fixture
def admin(engine):
    return AdminControls(engine)


@pytest.fixture
def pool(admin):
    """STK -> RWD pool, 10 reward units/s, created at t=0."""
    return admin.create_pool(OWNER, "STK", "RWD", 10, 1_000_000, now=0)


@pytest.fixture
def compound_pool(admin):
    """STK -> STK pool (restakable), 10 units/s, created at t=0."""
    return admin.create_pool(OWNER, "STK", "STK", 10, 1_000_000, now=0)
