"""
Staking events.

The engine emits one ``StakingEvent`` per committed mutation.  ``EventLog``
keeps a bounded in-memory history (served by ``GET /events``) and fans
events out to subscribers, e.g. a persistence hook.  Events are only
emitted after an operation commits; rolled-back operations leave no
trace here.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger("stakeflow_events")

EVENT_TYPES = (
    "stake",
    "withdraw",
    "harvest",
    "restake",
    "emergency_withdraw",
    "reward_deferred",
    "strategy_executed",
    "pool_created",
    "pool_rate_updated",
    "pool_toggled",
    "pool_capacity_updated",
    "strategy_created",
    "strategy_toggled",
    "paused",
    "unpaused",
    "ownership_transferred",
)


@dataclass
class StakingEvent:
    event_type: str
    pool_id: Optional[int] = None
    user_id: str = ""
    amount: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.event_type,
            "pool_id": self.pool_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class EventLog:
    def __init__(self, max_events: int = 10_000):
        self._events: deque[StakingEvent] = deque(maxlen=max_events)
        self._subscribers: list[Callable[[StakingEvent], None]] = []
        self.sequence: int = 0

    def subscribe(self, callback: Callable[[StakingEvent], None]) -> None:
        self._subscribers.append(callback)

    def emit(self, event: StakingEvent) -> None:
        if event.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event.event_type}")
        self.sequence += 1
        self._events.append(event)
        logger.debug(
            f"#{self.sequence} {event.event_type} pool={event.pool_id} "
            f"user={event.user_id} amount={event.amount}"
        )
        # the operation has already committed; a broken subscriber must not undo it
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {event.event_type}")

    def recent(
        self,
        limit: int = 100,
        event_type: str | None = None,
        user_id: str | None = None,
    ) -> list[StakingEvent]:
        items = [
            e for e in self._events
            if (event_type is None or e.event_type == event_type)
            and (user_id is None or e.user_id == user_id)
        ]
        return items[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        return len(self._events)
