"""
Error taxonomy for StakeFlow.

Every failure surfaced by a mutating operation is a ``StakingError``
subclass carrying a stable ``code`` string that the HTTP layer and the
event log can report without leaking internal state.

    ValidationError     rejected before any state mutation
    TransferFailure     custody declined a movement (operation rolled back)
    InvariantViolation  programming fault (operation rolled back)
    ReentrancyError     mutating operation invoked from inside another
"""

from __future__ import annotations


class StakingError(Exception):
    """Base class for every engine failure."""

    code: str = "staking_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ValidationError(StakingError, ValueError):
    code = "validation_error"


class NotOwnerError(ValidationError):
    code = "not_owner"


class PausedError(ValidationError):
    code = "paused"


class TransferFailure(StakingError):
    code = "transfer_failed"

    def __init__(self, message: str, asset: str = "", amount: int = 0):
        super().__init__(message)
        self.asset = asset
        self.amount = amount


class InvariantViolation(StakingError):
    code = "invariant_violation"


class ReentrancyError(StakingError):
    code = "reentrant_call"
