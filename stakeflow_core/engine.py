"""
StakingEngine — stake, withdraw, harvest, restake and emergency withdraw.

Every mutating operation runs the same pipeline:

    guard ─► validate ─► advance(pool) ─► settle(position) ─► mutate ─► rebase ─► commit

``_sync_position`` is the only place that advances and settles, so no
path can change ``total_staked`` before the accumulator has caught up.

Commit and custody
──────────────────
Ledger records are mutated inside a ``Batch`` whose ``StateTransaction``
remembers the original of every record it touches.  Asset movements are
queued and executed by ``Batch.commit()`` in this order:

  1. inbound pulls (stake)          declined → refund earlier pulls, roll back, TransferFailure
  2. principal returns (withdraw)   declined → refund pulls, roll back, TransferFailure
  3. reward payouts                 declined or raised → amount goes back into pending_rewards

Reward payouts never abort an operation: a declined payout is restored
into ``pending_rewards`` (and out of ``total_rewards_earned``) so the next
settlement retries it, and the result reports it as ``rewards_deferred``.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from stakeflow_core.access import AccessController, SessionGuard
from stakeflow_core.config import EngineConfig
from stakeflow_core.custody import AssetCustody, InMemoryCustody
from stakeflow_core.errors import (
    InvariantViolation,
    StakingError,
    TransferFailure,
    ValidationError,
)
from stakeflow_core.events import EventLog, StakingEvent
from stakeflow_core.invariants import InvariantChecker
from stakeflow_core.pool import Pool, advance, preview_reward_per_share
from stakeflow_core.position import UserPosition, earned, rebase, restore_pending, settle
from stakeflow_core.precision import checked_sub, require_uint
from stakeflow_core.store import LedgerState, StateTransaction
from stakeflow_core.strategy import StrategyAllocator, StrategyResult

logger = logging.getLogger("stakeflow_engine")


@dataclass
class OperationResult:
    """Outcome of one committed mutation on one pool."""
    operation: str
    pool_id: int
    user_id: str
    amount: int = 0            # principal moved (or rewards compounded for restake)
    rewards_paid: int = 0
    rewards_deferred: int = 0  # payout declined, kept in pending_rewards
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "pool_id": self.pool_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "rewards_paid": self.rewards_paid,
            "rewards_deferred": self.rewards_deferred,
            "timestamp": self.timestamp,
        }


@dataclass
class _Transfer:
    asset: str
    user_id: str
    amount: int


@dataclass
class _Payout:
    pool_id: int
    user_id: str
    asset: str
    amount: int
    result: OperationResult


class Batch:
    """Ledger mutations plus the asset movements that must accompany them."""

    def __init__(self, engine: StakingEngine):
        self.engine = engine
        self.tx: StateTransaction = engine.state.begin()
        self._inbound: list[_Transfer] = []
        self._outbound: list[_Transfer] = []
        self._payouts: list[_Payout] = []
        self._events: list[StakingEvent] = []
        self.committed = False

    def pull(self, asset: str, user_id: str, amount: int) -> None:
        self._inbound.append(_Transfer(asset, user_id, amount))

    def send_principal(self, asset: str, user_id: str, amount: int) -> None:
        self._outbound.append(_Transfer(asset, user_id, amount))

    def pay_reward(self, pool: Pool, user_id: str, amount: int, result: OperationResult) -> None:
        if amount > 0:
            self._payouts.append(
                _Payout(pool.pool_id, user_id, pool.reward_asset, amount, result)
            )

    def emit(self, event: StakingEvent) -> None:
        self._events.append(event)

    def commit(self) -> None:
        engine = self.engine
        if engine.config.check_invariants:
            ok, msg = engine.checker.verify_transaction(self.tx)
            if not ok:
                raise InvariantViolation(msg)

        custody = engine.custody
        pulled: list[_Transfer] = []
        try:
            for t in self._inbound:
                if not custody.transfer_in(t.asset, t.user_id, t.amount):
                    raise TransferFailure(
                        f"Inbound transfer of {t.amount} {t.asset} from {t.user_id} declined",
                        asset=t.asset, amount=t.amount,
                    )
                pulled.append(t)
            for t in self._outbound:
                if not custody.transfer_out(t.asset, t.user_id, t.amount):
                    raise TransferFailure(
                        f"Principal transfer of {t.amount} {t.asset} to {t.user_id} declined",
                        asset=t.asset, amount=t.amount,
                    )
        except Exception:
            self._refund(pulled)
            raise

        self.committed = True
        for payout in self._payouts:
            self._pay(payout)
        for event in self._events:
            engine.events.emit(event)

    def rollback(self) -> None:
        if not self.committed:
            self.tx.rollback()

    def _refund(self, pulled: list[_Transfer]) -> None:
        for t in reversed(pulled):
            if not self.engine.custody.transfer_out(t.asset, t.user_id, t.amount):
                logger.error(
                    f"Refund of {t.amount} {t.asset} to {t.user_id} declined; "
                    f"custody must reconcile manually",
                    extra={"user_id": t.user_id, "amount": t.amount},
                )

    def _pay(self, payout: _Payout) -> None:
        state = self.engine.state
        try:
            paid = self.engine.custody.transfer_out(
                payout.asset, payout.user_id, payout.amount,
            )
        except Exception as exc:
            # the payout phase never raises; a raising custody counts as a decline
            logger.warning(
                f"Reward payout to {payout.user_id} raised {type(exc).__name__}: {exc}",
                extra={"op": payout.result.operation, "pool_id": payout.pool_id,
                       "user_id": payout.user_id},
            )
            paid = False
        if paid:
            pool = state.pools[payout.pool_id]
            pool.total_rewards_paid += payout.amount
            self.tx.record_rewards_paid(payout.amount)
            payout.result.rewards_paid += payout.amount
            return

        position = state.positions[(payout.pool_id, payout.user_id)]
        restore_pending(position, payout.amount)
        payout.result.rewards_deferred += payout.amount
        logger.warning(
            f"Reward payout of {payout.amount} {payout.asset} to {payout.user_id} "
            f"declined; kept as pending",
            extra={"op": payout.result.operation, "pool_id": payout.pool_id,
                   "user_id": payout.user_id, "amount": payout.amount},
        )
        self._events.append(StakingEvent(
            "reward_deferred", payout.pool_id, payout.user_id, payout.amount,
        ))


class StakingEngine:
    """
    Owns a ``LedgerState`` and applies staking operations to it.

    Collaborators default to the in-memory reference implementations so
    the engine is usable standalone:

        engine = StakingEngine(custody=custody, access=AccessController("admin"))
        engine.stake(pool_id=1, user_id="alice", amount=100)
    """

    def __init__(
        self,
        state: Optional[LedgerState] = None,
        custody: Optional[AssetCustody] = None,
        access: Optional[AccessController] = None,
        events: Optional[EventLog] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or EngineConfig()
        self.state = state if state is not None else LedgerState()
        self.custody: AssetCustody = custody if custody is not None else InMemoryCustody()
        self.access = access or AccessController(owner="owner")
        self.events = events if events is not None else EventLog(self.config.max_events)
        self.guard = SessionGuard()
        self.checker = InvariantChecker()
        self.allocator = StrategyAllocator(self)
        self._clock = clock or time.time

    # ── plumbing ────────────────────────────────────────────────────

    def now(self, now: Optional[int] = None) -> int:
        if now is None:
            return int(self._clock())
        return require_uint(now, "now")

    @contextmanager
    def operation(self, name: str, pause_gated: bool = False) -> Iterator[Batch]:
        """Guarded, all-or-nothing scope for one externally reachable mutation."""
        with self.guard.session(name):
            if pause_gated:
                self.access.require_not_paused()
            batch = Batch(self)
            try:
                yield batch
                batch.commit()
            except StakingError as exc:
                batch.rollback()
                logger.warning(f"{name} aborted: {exc}", extra={"op": name, "code": exc.code})
                raise
            except Exception:
                batch.rollback()
                raise

    def _sync_position(self, pool: Pool, position: UserPosition, ts: int) -> int:
        """Advance the pool to *ts* and settle *position*; returns the amount owed."""
        advance(pool, ts)
        return settle(pool, position)

    def _existing_position(self, pool_id: int, user_id: str) -> UserPosition:
        position = self.state.find_position(pool_id, user_id)
        if position is None:
            raise ValidationError(
                f"{user_id} has no position in pool {pool_id}", code="no_position",
            )
        return position

    # ── stake ───────────────────────────────────────────────────────

    def stake(
        self, pool_id: int, user_id: str, amount: int, now: Optional[int] = None,
    ) -> OperationResult:
        amount = require_uint(amount, "amount")
        ts = self.now(now)
        with self.operation("stake", pause_gated=True) as batch:
            result = self.stake_in_batch(batch, pool_id, user_id, amount, ts)
        logger.info(
            f"{user_id} staked {amount} in pool {pool_id}",
            extra={"op": "stake", "pool_id": pool_id, "user_id": user_id, "amount": amount},
        )
        return result

    def stake_in_batch(
        self, batch: Batch, pool_id: int, user_id: str, amount: int, ts: int,
    ) -> OperationResult:
        """Stake sequence inside an open batch (shared with strategy execution)."""
        current = self.state.get_pool(pool_id)
        if not current.active:
            raise ValidationError(f"Pool {pool_id} is inactive", code="pool_inactive")
        if amount == 0 or amount < self.config.min_stake:
            raise ValidationError(
                f"Stake of {amount} is below the minimum of {self.config.min_stake}",
                code="below_minimum",
            )
        if current.total_staked + amount > current.capacity:
            raise ValidationError(
                f"Pool {pool_id} capacity exceeded: {current.total_staked} + {amount} "
                f"> {current.capacity}",
                code="capacity_exceeded",
            )
        if not self.custody.is_authorized(current.staking_asset):
            raise ValidationError(
                f"Asset {current.staking_asset} is not authorized", code="asset_not_authorized",
            )

        pool = batch.tx.pool(pool_id)
        position = batch.tx.position(pool_id, user_id)
        owed = self._sync_position(pool, position, ts)

        result = OperationResult("stake", pool_id, user_id, amount=amount, timestamp=ts)
        batch.pay_reward(pool, user_id, owed, result)
        batch.pull(pool.staking_asset, user_id, amount)

        position.staked_amount += amount
        position.last_stake_time = ts
        rebase(pool, position)
        pool.total_staked += amount
        batch.tx.adjust_tvl(amount)
        batch.emit(StakingEvent("stake", pool_id, user_id, amount, {"settled": owed}))
        return result

    # ── withdraw / harvest ──────────────────────────────────────────

    def withdraw(
        self, pool_id: int, user_id: str, amount: int = 0, now: Optional[int] = None,
    ) -> OperationResult:
        """Withdraw *amount* of principal (0 = everything) and claim rewards."""
        amount = require_uint(amount, "amount")
        ts = self.now(now)
        with self.operation("withdraw") as batch:
            self.state.get_pool(pool_id)
            current = self._existing_position(pool_id, user_id)
            if current.staked_amount == 0:
                raise ValidationError(f"{user_id} has nothing staked", code="nothing_staked")
            if amount == 0:
                amount = current.staked_amount
            if amount > current.staked_amount:
                raise ValidationError(
                    f"Withdraw of {amount} exceeds stake of {current.staked_amount}",
                    code="insufficient_stake",
                )

            pool = batch.tx.pool(pool_id)
            position = batch.tx.position(pool_id, user_id)
            owed = self._sync_position(pool, position, ts)

            result = OperationResult("withdraw", pool_id, user_id, amount=amount, timestamp=ts)
            batch.pay_reward(pool, user_id, owed, result)

            position.staked_amount = checked_sub(position.staked_amount, amount, "staked_amount")
            rebase(pool, position)
            pool.total_staked = checked_sub(pool.total_staked, amount, "total_staked")
            batch.tx.adjust_tvl(-amount)
            batch.send_principal(pool.staking_asset, user_id, amount)
            batch.emit(StakingEvent("withdraw", pool_id, user_id, amount, {"settled": owed}))

        logger.info(
            f"{user_id} withdrew {amount} from pool {pool_id}",
            extra={"op": "withdraw", "pool_id": pool_id, "user_id": user_id, "amount": amount},
        )
        return result

    def harvest(
        self, pool_id: int, user_id: str, now: Optional[int] = None,
    ) -> OperationResult:
        """Pay out accrued rewards without touching principal."""
        ts = self.now(now)
        with self.operation("harvest") as batch:
            self.state.get_pool(pool_id)
            self._existing_position(pool_id, user_id)

            pool = batch.tx.pool(pool_id)
            position = batch.tx.position(pool_id, user_id)
            owed = self._sync_position(pool, position, ts)

            result = OperationResult("harvest", pool_id, user_id, timestamp=ts)
            batch.pay_reward(pool, user_id, owed, result)
            batch.emit(StakingEvent("harvest", pool_id, user_id, owed))

        logger.info(
            f"{user_id} harvested {result.rewards_paid} from pool {pool_id}",
            extra={"op": "harvest", "pool_id": pool_id, "user_id": user_id,
                   "amount": result.rewards_paid},
        )
        return result

    # ── restake ─────────────────────────────────────────────────────

    def restake(
        self, pool_id: int, user_id: str, now: Optional[int] = None,
    ) -> OperationResult:
        """Compound accrued rewards into principal (same-asset pools only)."""
        ts = self.now(now)
        with self.operation("restake", pause_gated=True) as batch:
            current = self.state.get_pool(pool_id)
            if not current.compoundable:
                raise ValidationError(
                    f"Pool {pool_id} pays {current.reward_asset}, stakes "
                    f"{current.staking_asset}; cannot restake",
                    code="restake_asset_mismatch",
                )
            if not current.active:
                raise ValidationError(f"Pool {pool_id} is inactive", code="pool_inactive")
            self._existing_position(pool_id, user_id)

            pool = batch.tx.pool(pool_id)
            position = batch.tx.position(pool_id, user_id)
            owed = self._sync_position(pool, position, ts)
            if owed == 0 or owed < self.config.min_stake:
                raise ValidationError(
                    f"Rewards of {owed} are below the minimum stake of "
                    f"{self.config.min_stake}",
                    code="below_minimum",
                )
            if pool.total_staked + owed > pool.capacity:
                raise ValidationError(
                    f"Pool {pool_id} capacity exceeded by restake of {owed}",
                    code="capacity_exceeded",
                )

            position.staked_amount += owed
            position.last_stake_time = ts
            rebase(pool, position)
            pool.total_staked += owed
            batch.tx.adjust_tvl(owed)
            result = OperationResult("restake", pool_id, user_id, amount=owed, timestamp=ts)
            batch.emit(StakingEvent("restake", pool_id, user_id, owed))

        logger.info(
            f"{user_id} restaked {result.amount} in pool {pool_id}",
            extra={"op": "restake", "pool_id": pool_id, "user_id": user_id,
                   "amount": result.amount},
        )
        return result

    # ── emergency withdraw ──────────────────────────────────────────

    def emergency_withdraw(
        self, pool_id: int, user_id: str, now: Optional[int] = None,
    ) -> OperationResult:
        """Return principal only; every unpaid reward is forfeited."""
        ts = self.now(now)
        with self.operation("emergency_withdraw") as batch:
            self.state.get_pool(pool_id)
            current = self._existing_position(pool_id, user_id)
            if current.staked_amount == 0:
                raise ValidationError(f"{user_id} has nothing staked", code="nothing_staked")

            pool = batch.tx.pool(pool_id)
            position = batch.tx.position(pool_id, user_id)
            # other stakers' interval is still owed at the old total_staked
            advance(pool, ts)

            amount = position.staked_amount
            forfeited = (
                position.pending_rewards + earned(position, pool.reward_per_share_stored)
            )
            pool.total_staked = checked_sub(pool.total_staked, amount, "total_staked")
            position.staked_amount = 0
            position.reward_debt = 0
            position.pending_rewards = 0
            batch.tx.adjust_tvl(-amount)
            batch.send_principal(pool.staking_asset, user_id, amount)

            result = OperationResult(
                "emergency_withdraw", pool_id, user_id, amount=amount, timestamp=ts,
            )
            batch.emit(StakingEvent(
                "emergency_withdraw", pool_id, user_id, amount, {"forfeited": forfeited},
            ))

        logger.warning(
            f"{user_id} emergency-withdrew {amount} from pool {pool_id}, "
            f"forfeiting {forfeited}",
            extra={"op": "emergency_withdraw", "pool_id": pool_id, "user_id": user_id,
                   "amount": amount},
        )
        return result

    # ── strategies ──────────────────────────────────────────────────

    def execute_strategy(
        self,
        strategy_id: int,
        total_amount: int,
        user_id: str,
        now: Optional[int] = None,
    ) -> StrategyResult:
        return self.allocator.execute_strategy(strategy_id, total_amount, user_id, now)

    # ── reads ───────────────────────────────────────────────────────

    def pending_rewards(
        self, pool_id: int, user_id: str, now: Optional[int] = None,
    ) -> int:
        """Rewards *user_id* would receive if settled at *now*; mutates nothing."""
        pool = self.state.get_pool(pool_id)
        position = self.state.find_position(pool_id, user_id)
        if position is None:
            return 0
        rps = preview_reward_per_share(pool, self.now(now))
        return position.pending_rewards + earned(position, rps)

    def pool_info(self, pool_id: int, now: Optional[int] = None) -> dict:
        pool = self.state.get_pool(pool_id)
        info = pool.to_dict()
        info["reward_per_share_current"] = preview_reward_per_share(pool, self.now(now))
        info["stakers"] = len(self.state.pool_members.get(pool_id, ()))
        return info

    def user_info(self, pool_id: int, user_id: str, now: Optional[int] = None) -> dict:
        self.state.get_pool(pool_id)
        position = self.state.find_position(pool_id, user_id)
        if position is None:
            position = UserPosition(pool_id=pool_id, user_id=user_id)
        info = position.to_dict()
        info["claimable_rewards"] = self.pending_rewards(pool_id, user_id, now)
        return info

    def strategy_info(self, strategy_id: int) -> dict:
        return self.state.get_strategy(strategy_id).to_dict()

    def user_positions(self, user_id: str, now: Optional[int] = None) -> list[dict]:
        return [
            self.user_info(p.pool_id, user_id, now)
            for p in self.state.positions_for_user(user_id)
        ]

    def stats(self) -> dict:
        summary = self.state.summary()
        summary["paused"] = self.access.paused
        summary["events"] = self.events.sequence
        return summary
