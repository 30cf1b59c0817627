"""Per-user data lock registry.

A user may freeze history up to a lock date.  While the lock is enabled no
field of any day record dated on or before the lock date can change,
whatever the source or recency.  Every change is appended to an audit trail.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from uuid import UUID

from src.reconcile.base import UNLOCKED, LockState

logger = logging.getLogger("healthsync.reconcile.locks")


@dataclass(frozen=True)
class LockEvent:
    """One audited lock change.

    Attributes:
        user_id:     Internal HealthSync user UUID.
        action:      'set', 'extended', 'moved' or 'unlocked'.
        lock_date:   New lock date (None after unlock).
        previous:    Lock date before the change.
        occurred_at: UTC time of the change.
    """

    user_id: UUID
    action: str
    lock_date: date | None
    previous: date | None
    occurred_at: datetime


class LockRegistry:
    """Thread-safe map of user → LockState with an audit trail."""

    def __init__(self) -> None:
        self._states: dict[UUID, LockState] = {}
        self._events: list[LockEvent] = []
        self._lock = threading.Lock()

    def get(self, user_id: UUID) -> LockState:
        with self._lock:
            return self._states.get(user_id, UNLOCKED)

    def set(self, user_id: UUID, lock_date: date) -> LockEvent:
        """Enable (or move) the lock for a user.

        Returns:
            The audit event, whose action is 'set' for a new lock, 'extended'
            when the new date is later than the old one, and 'moved' otherwise.
        """
        with self._lock:
            current = self._states.get(user_id, UNLOCKED)
            previous = current.lock_date if current.enabled else None
            if previous is None:
                action = "set"
            elif lock_date > previous:
                action = "extended"
            else:
                action = "moved"
            self._states[user_id] = LockState(enabled=True, lock_date=lock_date)
            event = LockEvent(user_id, action, lock_date, previous, datetime.now(timezone.utc))
            self._events.append(event)
        logger.info("Data lock %s for %s: %s → %s", action, user_id, previous, lock_date)
        return event

    def unlock(self, user_id: UUID) -> LockEvent:
        with self._lock:
            current = self._states.pop(user_id, UNLOCKED)
            event = LockEvent(
                user_id, "unlocked", None,
                current.lock_date if current.enabled else None,
                datetime.now(timezone.utc),
            )
            self._events.append(event)
        logger.warning("Data lock removed for %s (was %s)", user_id, event.previous)
        return event

    def is_date_protected(self, user_id: UUID, target: date) -> bool:
        return self.get(user_id).protects(target)

    def history(self, user_id: UUID) -> list[LockEvent]:
        with self._lock:
            return [e for e in self._events if e.user_id == user_id]
