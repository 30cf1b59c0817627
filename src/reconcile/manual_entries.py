"""Manual heart-rate entries.

Users can type in same-day values (resting HR, HRV, calories and a few HR
summaries).  These always outrank computed and device values on read.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from uuid import UUID

logger = logging.getLogger("healthsync.reconcile.manual_entries")


@dataclass
class ManualEntry:
    """User-entered values for one day.

    Attributes:
        user_id:        Internal HealthSync user UUID.
        date:           Local calendar date.
        resting_hr:     Resting heart rate (bpm).
        min_hr:         Minimum heart rate (bpm).
        avg_hr_sleeping: Average sleeping heart rate (bpm).
        max_hr:         Maximum heart rate (bpm).
        avg_hr_awake:   Average awake heart rate (bpm).
        hrv:            Heart rate variability (ms).
        calories:       Active calories (kcal).
        updated_at:     UTC time of the last edit.
    """

    user_id: UUID
    date: date
    resting_hr: int | None = None
    min_hr: int | None = None
    avg_hr_sleeping: int | None = None
    max_hr: int | None = None
    avg_hr_awake: int | None = None
    hrv: int | None = None
    calories: int | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in _VALUE_FIELDS)


_VALUE_FIELDS = tuple(
    f.name for f in fields(ManualEntry) if f.name not in ("user_id", "date", "updated_at")
)


class ManualEntryStore:
    """Create-or-update store of manual entries keyed by (user, date)."""

    def __init__(self) -> None:
        self._entries: dict[tuple[UUID, date], ManualEntry] = {}
        self._lock = threading.Lock()

    def upsert(self, user_id: UUID, day: date, **values: int | None) -> ManualEntry:
        """Create the entry for a day or update the given fields of an existing one.

        Fields passed as None are left as they were.

        Raises:
            ValueError: If an unknown field is passed.
        """
        unknown = set(values) - set(_VALUE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown manual entry fields: {sorted(unknown)}")
        changes = {k: v for k, v in values.items() if v is not None}
        with self._lock:
            current = self._entries.get((user_id, day)) or ManualEntry(user_id=user_id, date=day)
            updated = replace(current, updated_at=datetime.now(timezone.utc), **changes)
            self._entries[(user_id, day)] = updated
        logger.info("Manual entry saved for %s on %s: %s", user_id, day, changes)
        return updated

    def get(self, user_id: UUID, day: date) -> ManualEntry | None:
        with self._lock:
            return self._entries.get((user_id, day))

    def delete(self, user_id: UUID, day: date) -> bool:
        with self._lock:
            return self._entries.pop((user_id, day), None) is not None

    def clear(self, user_id: UUID) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k[0] == user_id]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def count(self, user_id: UUID) -> int:
        with self._lock:
            return sum(1 for k in self._entries if k[0] == user_id)
