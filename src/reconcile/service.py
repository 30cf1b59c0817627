"""HealthMetricsService: the operations exposed to the API, UI and coaching layers.

One service instance owns the DayStore, the lock registry, the manual
entries, the import log and an explicit MetricsCache.  Any write that can
change what a read returns (upsert, import, backfill, manual entry,
deletion, wipe) invalidates that user's cache entries.

Read path for one date:
    1. Manual same-day values
    2. The stored day record
    3. Resting HR from heart-rate data points when still unknown
       (lowest valid reading of the most recent day with readings,
       searched day by day backwards over a bounded window)
    4. Slow-field historical fallback
    5. Sleep-stage totals from sleep-stage data points when missing
    6. Calculator fill-in of unknown derived fields
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

from src.config import get_settings
from src.reconcile.base import DataPoint, DayRecord, FieldProvenance, PartialDayRecord, RawRecord, SourceAdapter
from src.reconcile.config_loader import ReconcileConfig, get_reconcile_config
from src.reconcile.day_store import DayStore
from src.reconcile.errors import LockViolationAttempt
from src.reconcile.field_mapper import FieldMapper
from src.reconcile.import_log import ImportLogStore, ImportSummary
from src.reconcile.locks import LockRegistry
from src.reconcile.manual_entries import ManualEntry, ManualEntryStore
from src.reconcile.metrics_calculator import MetricsCalculator
from src.reconcile.sleep_attribution import StageSegment, group_sleep_nights, local_day_bounds
from src.reconcile.sync.backfill import BackfillProgress, BackfillState, DerivedMetricsBackfill
from src.reconcile.sync.ingest import IngestPipeline

logger = logging.getLogger("healthsync.reconcile.service")

MANUAL_ENTRIES_TABLE = "manual_heart_rate_entries"
IMPORT_LOGS_TABLE = "import_logs"

DEFAULT_RANGE_DAYS = 30


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class LockResult:
    success: bool
    message: str
    lock_date: date | None = None
    protected_records_count: int = 0


@dataclass
class LockStatus:
    enabled: bool
    lock_date: date | None
    protected_records_count: int


@dataclass
class WipeResult:
    """What a full wipe removed.

    Attributes:
        tables_cleared:  Tables that had rows removed.
        records_deleted: Total rows removed.
        details:         Table → rows removed.
    """

    tables_cleared: list[str] = field(default_factory=list)
    records_deleted: int = 0
    details: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class MetricsCache:
    """Per-user cache of assembled read results.

    Entries are keyed by (user, key) and dropped wholesale for a user by
    ``invalidate``.  Stored and returned values are copies.

    Every ``invalidate`` bumps the user's generation; a ``put`` made for an
    older generation is discarded, so a read that raced a write never
    caches what it assembled before the write landed.
    """

    def __init__(self) -> None:
        self._entries: dict[UUID, dict[Any, Any]] = {}
        self._generations: dict[UUID, int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _copy(value: Any) -> Any:
        if isinstance(value, DayRecord):
            return value.copy()
        if isinstance(value, list):
            return [r.copy() for r in value]
        return value

    def get(self, user_id: UUID, key: Any) -> tuple[bool, Any]:
        with self._lock:
            user_entries = self._entries.get(user_id, {})
            if key in user_entries:
                self.hits += 1
                return True, self._copy(user_entries[key])
            self.misses += 1
            return False, None

    def generation(self, user_id: UUID) -> int:
        with self._lock:
            return self._generations.get(user_id, 0)

    def put(self, user_id: UUID, key: Any, value: Any, generation: int | None = None) -> bool:
        """Store ``value`` unless the user was invalidated since ``generation``."""
        with self._lock:
            if generation is not None and generation != self._generations.get(user_id, 0):
                logger.debug("Discarding stale read %s for %s", key, user_id)
                return False
            self._entries.setdefault(user_id, {})[key] = self._copy(value)
            return True

    def invalidate(self, user_id: UUID) -> None:
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            dropped = len(self._entries.pop(user_id, {}))
        if dropped:
            logger.debug("Invalidated %d cached reads for %s", dropped, user_id)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._entries.values())


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class HealthMetricsService:
    """Reconciled health metrics for every user of one process."""

    def __init__(
        self,
        config: ReconcileConfig | None = None,
        timezone_name: str | None = None,
        store: DayStore | None = None,
    ) -> None:
        settings = get_settings()
        self._config = config or get_reconcile_config()
        self._tz = ZoneInfo(timezone_name or settings.user_timezone)
        self._store = store or DayStore(config=self._config)
        self._mapper = FieldMapper(self._config, self._tz.key)
        self._calculator = MetricsCalculator(self._config)
        self._manual = ManualEntryStore()
        self._imports = ImportLogStore()
        self._cache = MetricsCache()
        self._ages: dict[UUID, int] = {}
        self._default_age = settings.default_user_age

    @property
    def store(self) -> DayStore:
        return self._store

    @property
    def locks(self) -> LockRegistry:
        return self._store.locks

    @property
    def cache(self) -> MetricsCache:
        return self._cache

    def today(self) -> date:
        return datetime.now(self._tz).date()

    def set_user_age(self, user_id: UUID, age: int) -> None:
        self._ages[user_id] = age
        self._cache.invalidate(user_id)

    def _age(self, user_id: UUID) -> int:
        return self._ages.get(user_id, self._default_age)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_health_metrics(
        self,
        user_id: UUID,
        days: int | None = None,
        on_date: date | None = None,
    ) -> list[DayRecord] | DayRecord | None:
        """Return reconciled metrics with fallback and calculator applied.

        Args:
            user_id: Internal HealthSync user UUID.
            days:    Number of most recent days (ignored when ``on_date`` is given).
            on_date: A single local date.

        Returns:
            The record for ``on_date`` (or None), else the records of the
            last ``days`` days that hold any data, newest first.
        """
        if on_date is not None:
            return self._cached(user_id, ("day", on_date), lambda: self._assemble(user_id, on_date))

        span = days or DEFAULT_RANGE_DAYS
        end = self.today()
        start = end - timedelta(days=span - 1)

        def build() -> list[DayRecord]:
            records = []
            for stored in self._store.list_for_range(user_id, start, end):
                assembled = self._assemble(user_id, stored.date)
                if assembled is not None:
                    records.append(assembled)
            return records

        return self._cached(user_id, ("range", start, end), build)

    def _cached(self, user_id: UUID, key: Any, build: Any) -> Any:
        found, value = self._cache.get(user_id, key)
        if found:
            return value
        generation = self._cache.generation(user_id)
        value = build()
        self._cache.put(user_id, key, value, generation)
        return value

    def _assemble(self, user_id: UUID, day: date) -> DayRecord | None:
        manual = self._manual.get(user_id, day)
        record = self._store.get_for_date(user_id, day) or DayRecord(user_id=user_id, date=day)

        if record.resting_heart_rate is None and not (manual and manual.resting_hr):
            self._apply_rhr_from_points(record)
        record = self._store.fill_from_history(record)
        if record.deep_sleep is None and record.rem_sleep is None and record.light_sleep is None:
            self._apply_sleep_stages(record)

        if not record.has_data and (manual is None or manual.is_empty):
            return None

        baseline = self._calculator.rhr_baseline(
            self._store.recent_values(
                user_id, "resting_heart_rate", day, self._config.lookback.rhr_baseline_days
            )
        )
        return self._calculator.enrich(record, self._age(user_id), manual, baseline)

    def _apply_rhr_from_points(self, record: DayRecord) -> None:
        """Set resting HR to the lowest valid heart-rate reading of the most recent day with readings."""
        hr_cfg = self._config.heart_rate
        for offset in range(self._config.lookback.heart_rate_search_days):
            day = record.date - timedelta(days=offset)
            start, end = local_day_bounds(day, self._tz)
            points = self._store.get_data_points(
                record.user_id, start, end - timedelta(microseconds=1), "heart_rate"
            )
            valid = [p for p in points if hr_cfg.valid_min_bpm < p.value < hr_cfg.valid_max_bpm]
            if not valid:
                continue
            lowest = min(valid, key=lambda p: p.value)
            record.resting_heart_rate = round(lowest.value)
            record.provenance["resting_heart_rate"] = FieldProvenance(
                source=lowest.source_app or "unknown",
                recorded_at=lowest.start_time,
                device_id=lowest.device_id,
            )
            if day != record.date:
                record.fallback_dates["resting_heart_rate"] = day
            logger.debug("Resting HR for %s from %d heart-rate points on %s", record.date, len(valid), day)
            return

    def _apply_sleep_stages(self, record: DayRecord) -> None:
        """Fill sleep totals from sleep-stage points attributed to the record's night."""
        sleep_cfg = self._config.sleep
        start, _ = local_day_bounds(record.date - timedelta(days=1), self._tz)
        _, end = local_day_bounds(record.date, self._tz)
        points = self._store.get_data_points(
            record.user_id, start, end - timedelta(microseconds=1), "sleep_stage"
        )
        segments = [
            StageSegment(
                start=p.start_time,
                end=p.end_time or p.start_time + timedelta(minutes=p.value),
                stage=str(p.metadata.get("stage", "sleep")),
            )
            for p in points
        ]
        night = group_sleep_nights(segments, self._tz, sleep_cfg.day_cutoff_hour).get(record.date)
        if night is None:
            return
        totals = {
            "deep_sleep": round(night.stage_minutes.get("deep", 0)),
            "rem_sleep": round(night.stage_minutes.get("rem", 0)),
            "light_sleep": round(night.stage_minutes.get("light", 0)),
            "sleep_duration": night.asleep_minutes(sleep_cfg.asleep_stages),
            "sleep_efficiency": night.efficiency(sleep_cfg.asleep_stages),
            "wake_events": night.wake_events(),
        }
        for name, value in totals.items():
            if getattr(record, name) is None and value is not None:
                setattr(record, name, value)
                record.provenance[name] = FieldProvenance(source="sleep_stages", recorded_at=night.start)

    def get_health_data_points(
        self,
        user_id: UUID,
        data_type: str | None,
        start: datetime,
        end: datetime,
    ) -> list[DataPoint]:
        """Return granular points in [start, end], newest first."""
        return self._store.get_data_points(user_id, start, end, data_type)

    def import_history(self, user_id: UUID, limit: int | None = None) -> list[ImportSummary]:
        return self._imports.for_user(user_id, limit)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_health_metrics(self, record: PartialDayRecord | RawRecord) -> DayRecord | None:
        """Merge-upsert one partial (or raw record, mapped first).

        Manual writes without a measurement time are stamped now.

        Returns:
            The stored record after the merge, or None when the input
            carried no canonical fields.

        Raises:
            ParseError:           If a raw record cannot be mapped.
            LockViolationAttempt: If the date is locked.
        """
        partial = self._mapper.normalize(record) if isinstance(record, RawRecord) else record
        if partial is None:
            return None
        if partial.source == "manual" and partial.recorded_at is None:
            partial = replace(partial, recorded_at=datetime.now(timezone.utc))
        try:
            return self._store.upsert(partial)
        finally:
            self._cache.invalidate(partial.user_id)

    def set_manual_entry(self, user_id: UUID, day: date, **values: int | None) -> ManualEntry:
        if self._store.locks.is_date_protected(user_id, day):
            raise LockViolationAttempt(user_id, day, self._store.locks.get(user_id).lock_date)
        entry = self._manual.upsert(user_id, day, **values)
        self._cache.invalidate(user_id)
        return entry

    def get_manual_entry(self, user_id: UUID, day: date) -> ManualEntry | None:
        return self._manual.get(user_id, day)

    async def import_from(self, adapter: SourceAdapter, user_id: UUID, origin: Any) -> ImportSummary:
        """Run one adapter import and keep its summary."""
        pipeline = IngestPipeline(self._store, self._mapper, on_changed=self._cache.invalidate)
        summary = await pipeline.run(adapter, user_id, origin)
        self._imports.add(summary)
        return summary

    async def import_source(
        self, source_id: str, user_id: UUID, origin: Any, **adapter_kwargs: Any
    ) -> ImportSummary:
        """Resolve a source slug to its adapter and run one import.

        Args:
            source_id:      Registered source slug ('health_connect', 'renpho', ...).
            user_id:        Internal HealthSync user UUID.
            origin:         Adapter-specific origin.
            adapter_kwargs: Extra adapter constructor arguments (client, tokens, ...).

        Raises:
            KeyError: If no adapter is registered for ``source_id``.
        """
        from src.reconcile.adapters import get_adapter

        adapter = get_adapter(source_id)(self._config, self._tz.key, **adapter_kwargs)
        return await self.import_from(adapter, user_id, origin)

    async def backfill_derived_metrics(
        self,
        user_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        existing_state: BackfillState | None = None,
    ) -> BackfillProgress | None:
        """Run the derived-metrics backfill to completion and return the final progress."""
        backfill = DerivedMetricsBackfill(
            self._store, self._calculator, self._manual, on_changed=self._cache.invalidate
        )
        last = None
        async for progress in backfill.run(
            user_id, self._age(user_id), start_date, end_date or self.today(), existing_state
        ):
            last = progress
        return last

    # ------------------------------------------------------------------
    # Data lock
    # ------------------------------------------------------------------

    def set_data_lock(self, user_id: UUID, lock_date: date) -> LockResult:
        event = self._store.locks.set(user_id, lock_date)
        if event.action == "extended":
            message = f"Data lock extended to {lock_date.isoformat()}"
        else:
            message = f"Data locked through {lock_date.isoformat()}"
        return LockResult(
            success=True,
            message=message,
            lock_date=lock_date,
            protected_records_count=self._store.count_protected(user_id, lock_date),
        )

    def unlock_all_data(self, user_id: UUID) -> LockResult:
        event = self._store.locks.unlock(user_id)
        if event.previous is None:
            return LockResult(success=True, message="No data lock was set")
        return LockResult(success=True, message="All data unlocked")

    def get_data_lock_status(self, user_id: UUID) -> LockStatus:
        state = self._store.locks.get(user_id)
        protected = self._store.count_protected(user_id, state.lock_date) if state.enabled else 0
        return LockStatus(enabled=state.enabled, lock_date=state.lock_date, protected_records_count=protected)

    # ------------------------------------------------------------------
    # Destructive operations
    # ------------------------------------------------------------------

    def delete_for_date(self, user_id: UUID, day: date) -> int:
        """Delete one day's record.  Returns the number of records removed.

        Raises:
            LockViolationAttempt: If the date is locked.
        """
        lock_state = self._store.locks.get(user_id)
        if lock_state.protects(day):
            raise LockViolationAttempt(user_id, day, lock_state.lock_date)
        removed = self._store.delete_for_date(user_id, day)
        self._cache.invalidate(user_id)
        return removed

    def wipe_all_data(self, user_id: UUID, preserve_manual_heart_rate: bool = False) -> WipeResult:
        """Remove every stored record, data point and import log of a user.

        Idempotent: a second call removes nothing and reports zero.

        Args:
            user_id:                    Internal HealthSync user UUID.
            preserve_manual_heart_rate: Keep manual heart-rate entries.
        """
        logger.warning(
            "Wiping all data for %s (preserve_manual_heart_rate=%s)", user_id, preserve_manual_heart_rate
        )
        details = self._store.wipe_user(user_id)
        if not preserve_manual_heart_rate:
            details[MANUAL_ENTRIES_TABLE] = self._manual.clear(user_id)
        details[IMPORT_LOGS_TABLE] = self._imports.clear(user_id)
        self._cache.invalidate(user_id)

        result = WipeResult(
            tables_cleared=[table for table, count in details.items() if count],
            records_deleted=sum(details.values()),
            details=details,
        )
        logger.warning(
            "Wipe for %s removed %d rows from %s", user_id, result.records_deleted, result.tables_cleared
        )
        return result
