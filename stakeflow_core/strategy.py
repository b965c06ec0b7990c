"""
Strategies: one deposit split across several pools by fixed weights.

A strategy is an ordered list of ``(pool_id, allocation_bps)`` whose
allocations sum to exactly 10 000 basis points.  Executing it stakes
``total_amount × bps // 10 000`` in each pool, in stored order, as one
all-or-nothing operation.

Rounding
────────
Each share truncates, so up to ``len(allocations) - 1`` units of the
requested amount may be left over.  That dust is never pulled from the
user; ``StrategyResult.dust`` reports it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from stakeflow_core.errors import ValidationError
from stakeflow_core.events import StakingEvent
from stakeflow_core.precision import BPS_DENOMINATOR, bps_share, require_uint

if TYPE_CHECKING:
    from stakeflow_core.engine import OperationResult, StakingEngine

logger = logging.getLogger("stakeflow_strategy")


@dataclass
class Strategy:
    strategy_id: int
    allocations: list[tuple[int, int]]   # (pool_id, bps) in execution order
    name: str = ""
    active: bool = True
    created_at: float = field(default_factory=time.time)

    @property
    def pool_ids(self) -> list[int]:
        return [pid for pid, _ in self.allocations]

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "name": self.name,
            "allocations": [
                {"pool_id": pid, "bps": bps} for pid, bps in self.allocations
            ],
            "active": self.active,
            "created_at": self.created_at,
        }


def validate_allocations(allocations: list[tuple[int, int]]) -> None:
    """Raise ``ValidationError`` unless *allocations* form a complete split."""
    if not allocations:
        raise ValidationError("Strategy needs at least one pool", code="bad_allocation")
    seen: set[int] = set()
    total = 0
    for pool_id, bps in allocations:
        if pool_id in seen:
            raise ValidationError(f"Pool {pool_id} listed twice", code="bad_allocation")
        seen.add(pool_id)
        if not isinstance(bps, int) or isinstance(bps, bool) or bps <= 0:
            raise ValidationError(
                f"Allocation for pool {pool_id} must be a positive integer",
                code="bad_allocation",
            )
        total += bps
    if total != BPS_DENOMINATOR:
        raise ValidationError(
            f"Allocations sum to {total} bps, expected {BPS_DENOMINATOR}",
            code="bad_allocation",
        )


def compute_shares(strategy: Strategy, total_amount: int) -> list[tuple[int, int]]:
    """
    Per-pool amounts for *total_amount*, in execution order.

    >>> s = Strategy(1, [(1, 5000), (2, 3000), (3, 2000)])
    >>> compute_shares(s, 1001)
    [(1, 500), (2, 300), (3, 200)]
    """
    return [(pid, bps_share(total_amount, bps)) for pid, bps in strategy.allocations]


@dataclass
class StrategyResult:
    strategy_id: int
    user_id: str
    requested: int
    deposited: int
    dust: int
    legs: list[OperationResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "user_id": self.user_id,
            "requested": self.requested,
            "deposited": self.deposited,
            "dust": self.dust,
            "legs": [leg.to_dict() for leg in self.legs],
        }


class StrategyAllocator:
    """Drives the engine's stake path once per strategy leg."""

    def __init__(self, engine: StakingEngine):
        self.engine = engine

    def execute_strategy(
        self,
        strategy_id: int,
        total_amount: int,
        user_id: str,
        now: Optional[int] = None,
    ) -> StrategyResult:
        """
        Stake ``total_amount`` across the strategy's pools as one operation.

        Any leg failing (validation, capacity, declined transfer) rolls back
        every leg and refunds amounts already pulled.
        """
        engine = self.engine
        total_amount = require_uint(total_amount, "total_amount")
        ts = engine.now(now)
        legs: list[OperationResult] = []
        with engine.operation("execute_strategy", pause_gated=True) as batch:
            strategy = engine.state.get_strategy(strategy_id)
            if not strategy.active:
                raise ValidationError(
                    f"Strategy {strategy_id} is inactive", code="strategy_inactive",
                )
            validate_allocations(strategy.allocations)
            if total_amount == 0:
                raise ValidationError("total_amount must be positive", code="bad_amount")

            shares = compute_shares(strategy, total_amount)
            for pool_id, share in shares:
                if share == 0:
                    continue
                legs.append(engine.stake_in_batch(batch, pool_id, user_id, share, ts))

            deposited = sum(share for _, share in shares)
            batch.emit(StakingEvent(
                "strategy_executed", None, user_id, deposited,
                {"strategy_id": strategy_id, "requested": total_amount,
                 "dust": total_amount - deposited},
            ))

        result = StrategyResult(
            strategy_id=strategy_id,
            user_id=user_id,
            requested=total_amount,
            deposited=deposited,
            dust=total_amount - deposited,
            legs=legs,
        )
        logger.info(
            f"Strategy {strategy_id} executed for {user_id}: "
            f"{deposited}/{total_amount} deposited across {len(legs)} pools",
            extra={"op": "execute_strategy", "strategy_id": strategy_id,
                   "user_id": user_id, "amount": deposited},
        )
        return result
