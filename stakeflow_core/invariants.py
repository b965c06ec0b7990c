"""
Ledger invariant checks for StakeFlow.

  P1  pool.total_staked equals the sum of its positions' staked_amount
  P2  pool.last_update_time never decreases
  P3  pool.reward_per_share_stored never decreases
  U1  no position is owed a negative amount (debt <= stake × accumulator)
  S1  every strategy's allocations sum to 10 000 bps
  TVL total_value_locked equals the sum of all pools' total_staked

``verify_transaction`` checks only the pools an operation touched (P1
sums that pool's positions); ``verify`` audits the whole ledger.  Both
return ``(passed, error_message)``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from stakeflow_core.pool import Pool
from stakeflow_core.precision import BPS_DENOMINATOR, PRECISION, mul_div

if TYPE_CHECKING:
    from stakeflow_core.store import LedgerState, StateTransaction


class InvariantChecker:

    def verify_transaction(self, tx: StateTransaction) -> tuple[bool, str]:
        """Check the pools touched by *tx* against their pre-transaction copies."""
        errors: list[str] = []
        for pool in tx.touched_pools():
            errors.extend(self._check_pool(tx.state, pool, tx.pool_before(pool.pool_id)))
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def verify(self, state: LedgerState) -> tuple[bool, str]:
        """Audit every pool, strategy and the aggregate counters."""
        errors: list[str] = []
        for pool in state.pools.values():
            errors.extend(self._check_pool(state, pool, None))

        ok, msg = self._check_tvl(state)
        if not ok:
            errors.append(msg)

        for strategy in state.strategies.values():
            total = sum(bps for _, bps in strategy.allocations)
            if total != BPS_DENOMINATOR:
                errors.append(
                    f"Strategy {strategy.strategy_id} allocations sum to {total}"
                )
        if errors:
            return False, "; ".join(errors)
        return True, ""

    # ── individual checks ───────────────────────────────────────────

    def _check_pool(
        self, state: LedgerState, pool: Pool, before: Optional[Pool],
    ) -> list[str]:
        errors: list[str] = []
        pid = pool.pool_id

        if pool.total_staked < 0:
            errors.append(f"Pool {pid} total_staked is negative: {pool.total_staked}")

        positions = state.positions_in_pool(pid)
        staked_sum = sum(p.staked_amount for p in positions)
        if staked_sum != pool.total_staked:
            errors.append(
                f"Pool {pid} mismatch: total_staked={pool.total_staked} "
                f"but position sum={staked_sum}"
            )

        for p in positions:
            if p.staked_amount < 0 or p.pending_rewards < 0:
                errors.append(f"Position ({pid}, {p.user_id}) has negative fields")
                continue
            gross = mul_div(p.staked_amount, pool.reward_per_share_stored, PRECISION)
            if p.reward_debt > gross:
                errors.append(
                    f"Position ({pid}, {p.user_id}) debt {p.reward_debt} exceeds "
                    f"accrued {gross}"
                )

        if before is not None:
            if pool.last_update_time < before.last_update_time:
                errors.append(
                    f"Pool {pid} last_update_time went backwards: "
                    f"{before.last_update_time} -> {pool.last_update_time}"
                )
            if pool.reward_per_share_stored < before.reward_per_share_stored:
                errors.append(
                    f"Pool {pid} accumulator decreased: "
                    f"{before.reward_per_share_stored} -> {pool.reward_per_share_stored}"
                )
        return errors

    def _check_tvl(self, state: LedgerState) -> tuple[bool, str]:
        total = sum(p.total_staked for p in state.pools.values())
        if total != state.total_value_locked:
            return (False,
                    f"TVL mismatch: counter={state.total_value_locked} "
                    f"but pools sum to {total}")
        return True, ""
