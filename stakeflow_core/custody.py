"""
Asset custody collaborator.

The engine never holds value itself; it asks an ``AssetCustody`` to move
staking and reward assets between users and the pool vault.  Both
directions may decline (return ``False``), and the engine decides what
that means for the operation in flight.

``InMemoryCustody`` is the reference implementation used by the node
runner and the tests: integer balances per ``(asset, holder)`` plus a
vault account, an authorization list, and knobs for declining transfers.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol, runtime_checkable

logger = logging.getLogger("stakeflow_custody")

VAULT = "__vault__"


@runtime_checkable
class AssetCustody(Protocol):
    def is_authorized(self, asset: str) -> bool: ...

    def transfer_in(self, asset: str, from_user: str, amount: int) -> bool: ...

    def transfer_out(self, asset: str, to_user: str, amount: int) -> bool: ...


class InMemoryCustody:
    """Integer balances held in a dict, keyed by ``(asset, holder)``."""

    def __init__(self, authorized: Optional[set[str]] = None):
        self.balances: dict[tuple[str, str], int] = {}
        self.authorized: set[str] = set(authorized or ())
        # holders whose transfers in either direction are declined
        self.frozen: set[str] = set()
        self.fail_outbound: bool = False
        # called before every movement; lets tests model side-effecting tokens
        self.on_transfer: Optional[Callable[[str, str, str, int], None]] = None
        self.transfers: list[tuple[str, str, str, int]] = []

    # ── setup helpers ───────────────────────────────────────────────

    def authorize(self, asset: str) -> None:
        self.authorized.add(asset)

    def mint(self, asset: str, holder: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("mint amount must be non-negative")
        key = (asset, holder)
        self.balances[key] = self.balances.get(key, 0) + amount

    def fund_rewards(self, asset: str, amount: int) -> None:
        """Credit the vault with reward reserves."""
        self.mint(asset, VAULT, amount)

    def balance_of(self, asset: str, holder: str) -> int:
        return self.balances.get((asset, holder), 0)

    def vault_balance(self, asset: str) -> int:
        return self.balance_of(asset, VAULT)

    # ── AssetCustody ────────────────────────────────────────────────

    def is_authorized(self, asset: str) -> bool:
        return asset in self.authorized

    def transfer_in(self, asset: str, from_user: str, amount: int) -> bool:
        if self.on_transfer is not None:
            self.on_transfer("in", asset, from_user, amount)
        if from_user in self.frozen or not self.is_authorized(asset):
            return False
        return self._move(asset, from_user, VAULT, amount)

    def transfer_out(self, asset: str, to_user: str, amount: int) -> bool:
        if self.on_transfer is not None:
            self.on_transfer("out", asset, to_user, amount)
        if self.fail_outbound or to_user in self.frozen:
            return False
        return self._move(asset, VAULT, to_user, amount)

    def _move(self, asset: str, src: str, dst: str, amount: int) -> bool:
        if amount < 0:
            return False
        if self.balance_of(asset, src) < amount:
            logger.debug(f"Insufficient {asset} on {src} for {amount}")
            return False
        self.balances[(asset, src)] = self.balance_of(asset, src) - amount
        self.balances[(asset, dst)] = self.balance_of(asset, dst) + amount
        self.transfers.append((asset, src, dst, amount))
        return True
