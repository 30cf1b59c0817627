"""Canonical per-day record store and granular data-point log.

Writes are partial merges.  Each present field of an incoming partial is
installed only when the FreshnessArbiter approves it, and fields absent
from the partial are never touched.  The read-arbitrate-write sequence for
one (user, date) runs under that key's lock, so concurrent adapters cannot
lose each other's updates.

Reads can be enriched with per-field historical fallback: slow-changing
fields unknown on the requested date are copied from the most recent
earlier record, bounded by a lookback window and never from the future.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from uuid import UUID

from src.reconcile.arbiter import FieldValue, FreshnessArbiter
from src.reconcile.base import DataPoint, DayRecord, PartialDayRecord
from src.reconcile.config_loader import ReconcileConfig, get_reconcile_config
from src.reconcile.errors import FreshnessRejected, LockViolationAttempt, StorageConflict
from src.reconcile.locks import LockRegistry
from src.reconcile.sync.dedup import data_point_key

logger = logging.getLogger("healthsync.reconcile.day_store")

DAY_RECORDS_TABLE = "day_records"
DATA_POINTS_TABLE = "data_points"


@dataclass
class UpsertOutcome:
    """Result of one merge-upsert.

    Attributes:
        record:   The stored record after the merge (None if nothing was stored).
        changed:  Fields installed by this merge.
        rejected: Fields the arbiter refused.
        created:  True if this merge created the record.
    """

    record: DayRecord | None
    changed: list[str] = field(default_factory=list)
    rejected: list[FreshnessRejected] = field(default_factory=list)
    created: bool = False


@dataclass
class _Slot:
    record: DayRecord
    version: int = 0


class DayStore:
    """In-process store of DayRecords and DataPoints, keyed by user."""

    def __init__(
        self,
        arbiter: FreshnessArbiter | None = None,
        locks: LockRegistry | None = None,
        config: ReconcileConfig | None = None,
    ) -> None:
        self._config = config or get_reconcile_config()
        self._arbiter = arbiter or FreshnessArbiter(self._config)
        self._locks = locks or LockRegistry()
        self._records: dict[UUID, dict[date, _Slot]] = {}
        self._points: dict[UUID, dict[str, DataPoint]] = {}
        self._key_locks: dict[tuple[UUID, date], threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._points_lock = threading.Lock()

    @property
    def locks(self) -> LockRegistry:
        return self._locks

    @property
    def config(self) -> ReconcileConfig:
        return self._config

    # ------------------------------------------------------------------
    # Internal slot access
    # ------------------------------------------------------------------

    def _key_lock(self, user_id: UUID, day: date) -> threading.Lock:
        with self._registry_lock:
            return self._key_locks.setdefault((user_id, day), threading.Lock())

    def _read(self, user_id: UUID, day: date) -> tuple[DayRecord | None, int]:
        with self._registry_lock:
            slot = self._records.get(user_id, {}).get(day)
            if slot is None:
                return None, 0
            return slot.record.copy(), slot.version

    def _commit(self, record: DayRecord, expected_version: int) -> None:
        with self._registry_lock:
            user_records = self._records.setdefault(record.user_id, {})
            slot = user_records.get(record.date)
            current = slot.version if slot else 0
            if current != expected_version:
                raise StorageConflict(
                    f"{record.user_id}/{record.date} changed (version {expected_version} → {current})"
                )
            user_records[record.date] = _Slot(record=record, version=current + 1)

    def _snapshot(self, user_id: UUID) -> list[DayRecord]:
        """Return the user's records, newest date first."""
        with self._registry_lock:
            slots = list(self._records.get(user_id, {}).values())
        return sorted((s.record for s in slots), key=lambda r: r.date, reverse=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, partial: PartialDayRecord) -> DayRecord | None:
        """Merge a partial into the stored record for (user, date).

        Returns:
            The stored record after the merge, or None when nothing was
            stored (an empty partial for a date with no record).

        Raises:
            LockViolationAttempt: If the date is protected by the user's lock.
            StorageConflict:      If a conflicting write persists after one retry.
        """
        return self.merge(partial).record

    def merge(self, partial: PartialDayRecord) -> UpsertOutcome:
        """Merge a partial and report which fields changed or were rejected.

        See ``upsert`` for the raised exceptions.
        """
        with self._key_lock(partial.user_id, partial.date):
            try:
                return self._merge_once(partial)
            except StorageConflict as exc:
                logger.warning("Storage conflict, retrying once against a fresh read: %s", exc)
                return self._merge_once(partial)

    def _merge_once(self, partial: PartialDayRecord) -> UpsertOutcome:
        lock_state = self._locks.get(partial.user_id)
        existing, version = self._read(partial.user_id, partial.date)
        record = existing or DayRecord(user_id=partial.user_id, date=partial.date)
        provenance = partial.provenance()
        outcome = UpsertOutcome(record=existing, created=existing is None)

        for name, value in partial.values.items():
            if value is None:
                # unknown never erases a known value
                continue
            stored = getattr(record, name)
            current = FieldValue(name, stored, record.provenance.get(name)) if stored is not None else None
            decision = self._arbiter.decide(
                current, FieldValue(name, value, provenance), partial.date, lock_state
            )
            if decision.overwrite:
                setattr(record, name, value)
                record.provenance[name] = provenance
                outcome.changed.append(name)
            else:
                outcome.rejected.append(decision.rejection(partial.source))

        if lock_state.protects(partial.date) and partial.values:
            raise LockViolationAttempt(partial.user_id, partial.date, lock_state.lock_date)

        if not outcome.changed:
            outcome.created = False
            return outcome

        self._commit(record, version)
        outcome.record = record.copy()
        logger.debug(
            "Upserted %s/%s from %s: changed=%s rejected=%d",
            partial.user_id, partial.date, partial.source, outcome.changed, len(outcome.rejected),
        )
        return outcome

    def delete_for_date(self, user_id: UUID, day: date) -> int:
        """Delete the record for one date.  Returns the number of records removed (0 or 1)."""
        with self._key_lock(user_id, day):
            with self._registry_lock:
                removed = self._records.get(user_id, {}).pop(day, None)
        if removed is not None:
            logger.warning("Deleted day record %s/%s", user_id, day)
            return 1
        return 0

    def wipe_user(self, user_id: UUID) -> dict[str, int]:
        """Remove every record and data point of a user.

        Holds every one of the user's key locks while the records go, so a
        merge already in progress finishes first and is wiped with the rest.

        Returns:
            Table name → rows removed.
        """
        with self._registry_lock:
            key_locks = sorted(
                ((k, lock) for k, lock in self._key_locks.items() if k[0] == user_id), key=lambda item: item[0][1]
            )
        with ExitStack() as held:
            for _, lock in key_locks:
                held.enter_context(lock)
            with self._registry_lock:
                records = self._records.pop(user_id, {})
        with self._points_lock:
            points = self._points.pop(user_id, {})
        logger.warning(
            "Wiped %d day records and %d data points for %s", len(records), len(points), user_id
        )
        return {DAY_RECORDS_TABLE: len(records), DATA_POINTS_TABLE: len(points)}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_for_date(self, user_id: UUID, day: date) -> DayRecord | None:
        record, _ = self._read(user_id, day)
        return record

    def list_for_range(self, user_id: UUID, start: date, end: date) -> list[DayRecord]:
        """Return stored records with start ≤ date ≤ end, newest first."""
        return [r.copy() for r in self._snapshot(user_id) if start <= r.date <= end]

    def dates(self, user_id: UUID) -> list[date]:
        """Return all stored dates for a user, oldest first."""
        with self._registry_lock:
            return sorted(self._records.get(user_id, {}))

    def count_records(self, user_id: UUID) -> int:
        with self._registry_lock:
            return len(self._records.get(user_id, {}))

    def count_protected(self, user_id: UUID, lock_date: date) -> int:
        """Count records dated on or before ``lock_date``."""
        with self._registry_lock:
            return sum(1 for d in self._records.get(user_id, {}) if d <= lock_date)

    def recent_values(self, user_id: UUID, field_name: str, before: date, days: int) -> list:
        """Return known values of one field from the ``days`` dates preceding ``before``."""
        earliest = before - timedelta(days=days)
        return [
            getattr(r, field_name)
            for r in self._snapshot(user_id)
            if earliest <= r.date < before and getattr(r, field_name) is not None
        ]

    def fill_from_history(
        self,
        record: DayRecord,
        field_names: list[str] | None = None,
        lookback_days: int | None = None,
    ) -> DayRecord:
        """Fill unknown slow-changing fields from earlier records.

        Each field is searched independently, most recent first, from the
        record's own date back ``lookback_days``.  Values dated after the
        record are never used.  The scan stops once every field is filled.

        Args:
            record:        Record to enrich (not modified).
            field_names:   Fields eligible for fallback (defaults to config).
            lookback_days: Search bound (defaults to config).

        Returns:
            An enriched copy; ``fallback_dates`` names each borrowed field.
        """
        enriched = record.copy()
        targets = field_names if field_names is not None else self._config.fallback_fields
        missing = [name for name in targets if getattr(enriched, name) is None]
        if not missing:
            return enriched

        limit = lookback_days if lookback_days is not None else self._config.lookback.fallback_days
        earliest = record.date - timedelta(days=limit)

        for past in self._snapshot(record.user_id):
            if past.date > record.date:
                continue
            if past.date < earliest:
                break
            for name in list(missing):
                value = getattr(past, name)
                if value is None:
                    continue
                setattr(enriched, name, value)
                if name in past.provenance:
                    enriched.provenance[name] = past.provenance[name]
                if past.date != record.date:
                    enriched.fallback_dates[name] = past.date
                missing.remove(name)
            if not missing:
                break
        return enriched

    def get_with_fallback(self, user_id: UUID, day: date) -> DayRecord | None:
        """Return the record for ``day`` with slow fields filled from history.

        When no record exists for the date, one is assembled from history
        alone.  Returns None if nothing is known at all.
        """
        base = self.get_for_date(user_id, day) or DayRecord(user_id=user_id, date=day)
        enriched = self.fill_from_history(base)
        return enriched if enriched.has_data else None

    # ------------------------------------------------------------------
    # Data points
    # ------------------------------------------------------------------

    def append_data_point(self, point: DataPoint) -> bool:
        """Store a point unless one with the same natural key exists.

        Returns:
            True if the point was added, False if it was a duplicate.
        """
        key = data_point_key(point)
        with self._points_lock:
            user_points = self._points.setdefault(point.user_id, {})
            if key in user_points:
                return False
            user_points[key] = point
            return True

    def append_data_points(self, points: list[DataPoint]) -> int:
        return sum(1 for p in points if self.append_data_point(p))

    def get_data_points(
        self,
        user_id: UUID,
        start: datetime,
        end: datetime,
        data_type: str | None = None,
    ) -> list[DataPoint]:
        """Return points with start ≤ start_time ≤ end, newest first."""
        with self._points_lock:
            points = list(self._points.get(user_id, {}).values())
        selected = [
            p for p in points
            if start <= p.start_time <= end and (data_type is None or p.data_type == data_type)
        ]
        return sorted(selected, key=lambda p: p.start_time, reverse=True)

    def count_data_points(self, user_id: UUID) -> int:
        with self._points_lock:
            return len(self._points.get(user_id, {}))
