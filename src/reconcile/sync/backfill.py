"""Derived-metrics backfill for HealthSync.

Walks a user's stored dates and writes back every derived metric the
calculator can now compute but the day record does not yet hold.  Designed
to:
- Resume from where it left off (``BackfillState.last_backfilled_date``)
- Process in configurable batch sizes (default 30 days)
- Go through the normal arbitrated upsert as source ``calculated``, so a
  device or manual value is never replaced by a computed one
- Report progress as it goes

Usage::

    backfill = DerivedMetricsBackfill(store)
    async for progress in backfill.run(user_id, age=42):
        logger.info("Backfill progress: %s%%", progress.pct_complete)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import AsyncIterator, Callable
from uuid import UUID

from src.reconcile.base import PartialDayRecord
from src.reconcile.day_store import DayStore
from src.reconcile.errors import LockViolationAttempt, StorageConflict
from src.reconcile.manual_entries import ManualEntryStore
from src.reconcile.metrics_calculator import CALCULATED_SOURCE, MetricsCalculator

logger = logging.getLogger("healthsync.reconcile.sync.backfill")


@dataclass
class BackfillProgress:
    """Progress update emitted during a backfill run.

    Attributes:
        user_id:        Internal HealthSync user UUID.
        current_date:   Last date processed.
        processed_days: Stored dates processed so far.
        total_days:     Stored dates to process.
        records_saved:  Day records that gained at least one derived field.
        errors:         Error messages encountered.
        is_complete:    True when the backfill finishes.
    """

    user_id: UUID
    current_date: date | None
    processed_days: int
    total_days: int
    records_saved: int
    errors: list[str] = field(default_factory=list)
    is_complete: bool = False

    @property
    def pct_complete(self) -> float:
        if self.total_days == 0:
            return 100.0
        return round(self.processed_days / self.total_days * 100, 1)


@dataclass
class BackfillState:
    """Resumable state for a backfill.

    Attributes:
        last_backfilled_date: The most recently processed date.
        total_records:        Running count of updated records.
        errors:               Accumulated error log.
    """

    last_backfilled_date: date | None = None
    total_records: int = 0
    errors: list[str] = field(default_factory=list)

    def to_json(self) -> dict:
        return {
            "last_backfilled_date": (
                self.last_backfilled_date.isoformat() if self.last_backfilled_date else None
            ),
            "total_records": self.total_records,
            "errors": self.errors[-50:],
        }

    @classmethod
    def from_json(cls, data: dict) -> "BackfillState":
        state = cls()
        if last := data.get("last_backfilled_date"):
            try:
                state.last_backfilled_date = date.fromisoformat(last)
            except ValueError:
                logger.warning("Ignoring malformed backfill cursor %r", last)
        state.total_records = int(data.get("total_records", 0))
        state.errors = list(data.get("errors", []))
        return state


class DerivedMetricsBackfill:
    """Fill derived metrics into stored day records, batch by batch.

    Args:
        store:      DayStore holding the user's records.
        calculator: MetricsCalculator (defaults to one on the default config).
        manual:     Manual entries to take into account.
        on_changed: Called with the user id after a batch stored something.
    """

    def __init__(
        self,
        store: DayStore,
        calculator: MetricsCalculator | None = None,
        manual: ManualEntryStore | None = None,
        on_changed: Callable[[UUID], None] | None = None,
    ) -> None:
        self._store = store
        self._calculator = calculator or MetricsCalculator()
        self._manual = manual
        self._on_changed = on_changed
        self._config = store.config

    def _dates_to_process(self, user_id: UUID, start: date, end: date) -> list[date]:
        return [d for d in self._store.dates(user_id) if start <= d <= end]

    def backfill_date(self, user_id: UUID, day: date, age: int | None = None) -> list[str]:
        """Compute and store the missing derived metrics of one date.

        Returns:
            The fields written.

        Raises:
            LockViolationAttempt: If the date is locked and something would change.
        """
        stored = self._store.get_for_date(user_id, day)
        if stored is None:
            return []
        record = self._store.fill_from_history(stored)
        manual = self._manual.get(user_id, day) if self._manual else None
        baseline = self._calculator.rhr_baseline(
            self._store.recent_values(
                user_id, "resting_heart_rate", day, self._config.lookback.rhr_baseline_days
            )
        )
        derived = self._calculator.derive(record, age, manual, baseline)
        # Only what the stored row itself lacks; fallback values stay read-only
        values = {k: v for k, v in derived.items() if getattr(stored, k) is None}
        if not values:
            return []
        partial = PartialDayRecord(
            user_id=user_id,
            date=day,
            source=CALCULATED_SOURCE,
            values=values,
            recorded_at=datetime.now(timezone.utc),
        )
        return self._store.merge(partial).changed

    async def run(
        self,
        user_id: UUID,
        age: int | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        existing_state: BackfillState | None = None,
    ) -> AsyncIterator[BackfillProgress]:
        """Run a backfill for a user.

        This is an async generator.  It yields one BackfillProgress per
        batch and a final one with ``is_complete`` set.

        Args:
            user_id:        Internal HealthSync user UUID.
            age:            User age for age-normed metrics.
            start_date:     Earliest date (defaults to ``backfill.max_days`` ago).
            end_date:       Latest date (defaults to today).
            existing_state: Resume state from a previous run.
        """
        cfg = self._config.backfill
        end = end_date or date.today()
        start = start_date or end - timedelta(days=cfg.max_days)

        state = existing_state or BackfillState()
        if state.last_backfilled_date and state.last_backfilled_date >= start:
            start = state.last_backfilled_date + timedelta(days=1)
            logger.info("Backfill resuming from %s for %s", start, user_id)

        pending = self._dates_to_process(user_id, start, end)
        total = len(pending)
        processed = 0
        if not pending:
            logger.info("Backfill has nothing to do for %s", user_id)
            yield BackfillProgress(
                user_id=user_id, current_date=state.last_backfilled_date,
                processed_days=0, total_days=0, records_saved=state.total_records,
                is_complete=True,
            )
            return

        for offset in range(0, total, cfg.batch_size_days):
            batch = pending[offset:offset + cfg.batch_size_days]
            saved_in_batch = 0
            for day in batch:
                try:
                    changed = self.backfill_date(user_id, day, age)
                except LockViolationAttempt as exc:
                    logger.debug("Backfill skipped locked date: %s", exc)
                    changed = []
                except StorageConflict as exc:
                    logger.warning("Backfill error for %s on %s: %s", user_id, day, exc)
                    state.errors.append(f"Error on {day}: {exc}")
                    changed = []
                if changed:
                    saved_in_batch += 1
                state.last_backfilled_date = day
                processed += 1
            state.total_records += saved_in_batch
            if saved_in_batch and self._on_changed:
                self._on_changed(user_id)
            # yield control between batches
            await asyncio.sleep(0)

            yield BackfillProgress(
                user_id=user_id,
                current_date=state.last_backfilled_date,
                processed_days=processed,
                total_days=total,
                records_saved=state.total_records,
                errors=state.errors[-5:],
                is_complete=processed >= total,
            )

        logger.info(
            "Backfill for %s finished: %d dates, %d records updated", user_id, processed, state.total_records
        )
