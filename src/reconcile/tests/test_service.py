"""Tests for HealthMetricsService — read path, cache, locks, destructive operations."""

from __future__ import annotations

from datetime import date, timedelta
from uuid import UUID

import pytest

from src.reconcile.adapters.renpho import RenphoAdapter
from src.reconcile.base import DataPoint, RawRecord, RecordShape
from src.reconcile.config_loader import ReconcileConfig
from src.reconcile.day_store import DATA_POINTS_TABLE, DAY_RECORDS_TABLE
from src.reconcile.errors import LockViolationAttempt
from src.reconcile.service import IMPORT_LOGS_TABLE, MANUAL_ENTRIES_TABLE, HealthMetricsService, MetricsCache
from src.reconcile.tests.conftest import TEST_DATE, TEST_TZ, TEST_USER_ID, heart_rate_point, partial, utc


@pytest.fixture
def service(reconcile_config: ReconcileConfig) -> HealthMetricsService:
    return HealthMetricsService(reconcile_config, TEST_TZ)


# ---------------------------------------------------------------------------
# Reads and cache
# ---------------------------------------------------------------------------


class TestReads:
    def test_unknown_date_returns_none(self, service: HealthMetricsService) -> None:
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE) is None

    def test_single_date_is_enriched(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(
            partial(TEST_DATE, "health_connect", utc(2026, 2, 24, 1), steps=2000, calories_burned=150)
        )
        record = service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert record.steps == 2000
        assert record.strain_score == 20.0
        assert record.provenance["strain_score"].source == "calculated"

    def test_stored_record_is_not_modified_by_reads(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(
            partial(TEST_DATE, "health_connect", utc(2026, 2, 24, 1), steps=2000, calories_burned=150)
        )
        service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert service.store.get_for_date(TEST_USER_ID, TEST_DATE).strain_score is None

    def test_range_newest_first(self, service: HealthMetricsService) -> None:
        today = service.today()
        for offset in (0, 2, 40):
            day = today - timedelta(days=offset)
            service.upsert_health_metrics(partial(day, "mi_fitness", utc(2026, 1, 1), steps=1000 + offset))
        records = service.get_health_metrics(TEST_USER_ID, days=30)
        assert [r.date for r in records] == [today, today - timedelta(days=2)]

    def test_weight_fallback_on_read(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE - timedelta(days=5), "renpho", utc(2026, 2, 18, 12), weight=82.0))
        record = service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert record.weight == 82.0
        assert record.fallback_dates["weight"] == TEST_DATE - timedelta(days=5)

    def test_cache_hit_and_invalidation(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 20), steps=8000))
        first = service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        second = service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert service.cache.hits == 1
        assert first == second

        service.upsert_health_metrics(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 23), steps=9000))
        assert len(service.cache) == 0
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE).steps == 9000

    def test_cached_value_is_a_copy(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 20), steps=8000))
        service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE).steps = 1
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE).steps == 8000

    def test_write_during_read_is_not_hidden_by_cache(
        self, service: HealthMetricsService, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        original = service.store.get_for_date
        pending = [partial(TEST_DATE, "renpho", utc(2026, 2, 23, 14), weight=70.0)]

        def read_then_write(user_id, day):
            record = original(user_id, day)
            if pending:
                service.upsert_health_metrics(pending.pop())
            return record

        monkeypatch.setattr(service.store, "get_for_date", read_then_write)
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE).weight == 80.0
        monkeypatch.undo()

        assert service.store.get_for_date(TEST_USER_ID, TEST_DATE).weight == 70.0
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE).weight == 70.0


class TestMetricsCache:
    def test_put_after_invalidate_is_discarded(self) -> None:
        cache = MetricsCache()
        generation = cache.generation(TEST_USER_ID)
        cache.invalidate(TEST_USER_ID)

        assert not cache.put(TEST_USER_ID, "key", None, generation)
        assert cache.get(TEST_USER_ID, "key") == (False, None)

    def test_put_for_current_generation_is_kept(self) -> None:
        cache = MetricsCache()
        cache.invalidate(TEST_USER_ID)
        assert cache.put(TEST_USER_ID, "key", None, cache.generation(TEST_USER_ID))
        assert cache.get(TEST_USER_ID, "key") == (True, None)

    def test_other_users_unaffected(self) -> None:
        cache = MetricsCache()
        generation = cache.generation(TEST_USER_ID)
        cache.invalidate(UUID(int=7))
        assert cache.put(TEST_USER_ID, "key", 1, generation)


class TestHeartRateFromPoints:
    def test_lowest_valid_reading_of_most_recent_day(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 20), steps=8000))
        service.store.append_data_points([
            heart_rate_point(utc(2026, 2, 21, 14), 64),
            heart_rate_point(utc(2026, 2, 21, 15), 58),
            heart_rate_point(utc(2026, 2, 21, 16), 25),  # below the valid band
            heart_rate_point(utc(2026, 2, 15, 14), 50),
        ])
        record = service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert record.resting_heart_rate == 58
        assert record.fallback_dates["resting_heart_rate"] == date(2026, 2, 21)
        assert record.provenance["resting_heart_rate"].source == "health_connect"

    def test_stored_value_wins_over_points(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "mi_fitness", utc(2026, 2, 23, 20), resting_heart_rate=61))
        service.store.append_data_point(heart_rate_point(utc(2026, 2, 23, 15), 50))
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE).resting_heart_rate == 61

    def test_manual_value_wins(self, service: HealthMetricsService) -> None:
        service.store.append_data_point(heart_rate_point(utc(2026, 2, 23, 15), 50))
        service.set_manual_entry(TEST_USER_ID, TEST_DATE, resting_hr=55)
        record = service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert record.resting_heart_rate == 55
        assert record.provenance["resting_heart_rate"].source == "manual"


class TestSleepFromStages:
    def test_stage_totals_filled(self, service: HealthMetricsService) -> None:
        stages = [
            (utc(2026, 2, 23, 3), utc(2026, 2, 23, 4), "light"),
            (utc(2026, 2, 23, 4), utc(2026, 2, 23, 5, 30), "deep"),
            (utc(2026, 2, 23, 5, 30), utc(2026, 2, 23, 5, 40), "awake"),
            (utc(2026, 2, 23, 5, 40), utc(2026, 2, 23, 7), "rem"),
            (utc(2026, 2, 23, 7), utc(2026, 2, 23, 11), "light"),
        ]
        service.store.append_data_points([
            DataPoint(
                TEST_USER_ID, "sleep_stage", start, (end - start).total_seconds() / 60, "minutes",
                end_time=end, metadata={"stage": stage},
            )
            for start, end, stage in stages
        ])
        record = service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert record.deep_sleep == 90
        assert record.rem_sleep == 80
        assert record.light_sleep == 300
        assert record.sleep_duration == 470
        assert record.wake_events == 1
        assert record.provenance["deep_sleep"].source == "sleep_stages"


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    def test_raw_record_is_mapped(self, service: HealthMetricsService) -> None:
        raw = RawRecord(TEST_USER_ID, "mi_fitness", RecordShape.DAILY_ACTIVITY, {"date": "2026-02-23", "stepCount": 4321})
        record = service.upsert_health_metrics(raw)
        assert record.steps == 4321

    def test_raw_record_without_fields_stores_nothing(self, service: HealthMetricsService) -> None:
        raw = RawRecord(TEST_USER_ID, "mi_fitness", RecordShape.DAILY_ACTIVITY, {"date": "2026-02-23"})
        assert service.upsert_health_metrics(raw) is None

    def test_manual_write_is_stamped(self, service: HealthMetricsService) -> None:
        record = service.upsert_health_metrics(partial(TEST_DATE, "manual", weight=79.0))
        assert record.provenance["weight"].recorded_at is not None

    def test_locked_upsert_raises_and_invalidates(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(date(2025, 1, 5), "renpho", utc(2025, 1, 5, 12), weight=75.0))
        service.get_health_metrics(TEST_USER_ID, on_date=date(2025, 1, 5))
        service.set_data_lock(TEST_USER_ID, date(2025, 1, 10))

        with pytest.raises(LockViolationAttempt):
            service.upsert_health_metrics(partial(date(2025, 1, 5), "manual", utc(2025, 1, 6), weight=80.0))
        assert service.get_health_metrics(TEST_USER_ID, on_date=date(2025, 1, 5)).weight == 75.0

    def test_manual_entry_on_locked_date_raises(self, service: HealthMetricsService) -> None:
        service.set_data_lock(TEST_USER_ID, date(2025, 1, 10))
        with pytest.raises(LockViolationAttempt):
            service.set_manual_entry(TEST_USER_ID, date(2025, 1, 9), resting_hr=50)

    @pytest.mark.asyncio
    async def test_import_invalidates_cache_and_logs(
        self, service: HealthMetricsService, reconcile_config: ReconcileConfig, renpho_csv: bytes
    ) -> None:
        day = date(2026, 2, 20)
        assert service.get_health_metrics(TEST_USER_ID, on_date=day) is None

        adapter = RenphoAdapter(reconcile_config, TEST_TZ, today=date(2026, 3, 1))
        summary = await service.import_from(adapter, TEST_USER_ID, renpho_csv)

        assert summary.records_imported == 3
        assert service.import_history(TEST_USER_ID) == [summary]
        assert service.get_health_metrics(TEST_USER_ID, on_date=day).weight == pytest.approx(81.65)

    @pytest.mark.asyncio
    async def test_import_by_source_slug(self, service: HealthMetricsService, renpho_csv: bytes) -> None:
        summary = await service.import_source("renpho", TEST_USER_ID, renpho_csv, today=date(2026, 3, 1))

        assert summary.source == "renpho"
        assert summary.records_imported == 3
        assert service.import_history(TEST_USER_ID) == [summary]

    @pytest.mark.asyncio
    async def test_import_unknown_source(self, service: HealthMetricsService) -> None:
        with pytest.raises(KeyError):
            await service.import_source("garmin", TEST_USER_ID, b"")

    @pytest.mark.asyncio
    async def test_backfill_derived_metrics(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(
            partial(TEST_DATE, "health_connect", utc(2026, 2, 24, 1), steps=2000, calories_burned=150)
        )
        progress = await service.backfill_derived_metrics(
            TEST_USER_ID, start_date=TEST_DATE - timedelta(days=5), end_date=TEST_DATE
        )
        assert progress.is_complete
        assert progress.records_saved == 1
        assert service.store.get_for_date(TEST_USER_ID, TEST_DATE).strain_score == 20.0


# ---------------------------------------------------------------------------
# Data lock
# ---------------------------------------------------------------------------


class TestDataLock:
    def test_set_and_extend(self, service: HealthMetricsService) -> None:
        for day in (date(2025, 1, 1), date(2025, 1, 9), date(2025, 1, 20)):
            service.upsert_health_metrics(partial(day, "renpho", utc(2025, 1, 1), weight=80.0))

        first = service.set_data_lock(TEST_USER_ID, date(2025, 1, 10))
        assert first.message == "Data locked through 2025-01-10"
        assert first.protected_records_count == 2

        extended = service.set_data_lock(TEST_USER_ID, date(2025, 1, 31))
        assert extended.message == "Data lock extended to 2025-01-31"
        assert extended.protected_records_count == 3

    def test_status(self, service: HealthMetricsService) -> None:
        assert not service.get_data_lock_status(TEST_USER_ID).enabled
        service.set_data_lock(TEST_USER_ID, date(2025, 1, 10))
        status = service.get_data_lock_status(TEST_USER_ID)
        assert status.enabled
        assert status.lock_date == date(2025, 1, 10)

    def test_unlock(self, service: HealthMetricsService) -> None:
        assert service.unlock_all_data(TEST_USER_ID).message == "No data lock was set"
        service.set_data_lock(TEST_USER_ID, date(2025, 1, 10))
        assert service.unlock_all_data(TEST_USER_ID).message == "All data unlocked"
        status = service.get_data_lock_status(TEST_USER_ID)
        assert not status.enabled
        assert status.protected_records_count == 0


# ---------------------------------------------------------------------------
# Destructive operations
# ---------------------------------------------------------------------------


class TestDestructive:
    def test_delete_for_date(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE)
        assert service.delete_for_date(TEST_USER_ID, TEST_DATE) == 1
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE) is None

    def test_delete_locked_date_raises(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        service.set_data_lock(TEST_USER_ID, TEST_DATE)
        with pytest.raises(LockViolationAttempt):
            service.delete_for_date(TEST_USER_ID, TEST_DATE)

    def test_wipe_is_idempotent(self, service: HealthMetricsService) -> None:
        service.upsert_health_metrics(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        service.store.append_data_point(heart_rate_point(utc(2026, 2, 23, 8), 61))
        service.set_manual_entry(TEST_USER_ID, TEST_DATE, resting_hr=55)

        first = service.wipe_all_data(TEST_USER_ID)
        assert set(first.tables_cleared) == {DAY_RECORDS_TABLE, DATA_POINTS_TABLE, MANUAL_ENTRIES_TABLE}
        assert first.records_deleted == 3

        second = service.wipe_all_data(TEST_USER_ID)
        assert second.tables_cleared == []
        assert second.records_deleted == 0
        assert service.get_health_metrics(TEST_USER_ID, on_date=TEST_DATE) is None

    def test_wipe_can_preserve_manual_entries(self, service: HealthMetricsService) -> None:
        service.set_manual_entry(TEST_USER_ID, TEST_DATE, resting_hr=55)
        result = service.wipe_all_data(TEST_USER_ID, preserve_manual_heart_rate=True)
        assert MANUAL_ENTRIES_TABLE not in result.details
        assert service.get_manual_entry(TEST_USER_ID, TEST_DATE).resting_hr == 55

    @pytest.mark.asyncio
    async def test_wipe_clears_import_logs(
        self, service: HealthMetricsService, reconcile_config: ReconcileConfig, renpho_csv: bytes
    ) -> None:
        adapter = RenphoAdapter(reconcile_config, TEST_TZ, today=date(2026, 3, 1))
        await service.import_from(adapter, TEST_USER_ID, renpho_csv)
        result = service.wipe_all_data(TEST_USER_ID)
        assert result.details[IMPORT_LOGS_TABLE] == 1
        assert service.import_history(TEST_USER_ID) == []
