"""Tests for the day store — partial merges, locks, fallback, data points."""

from __future__ import annotations

import threading
import time
from datetime import date, timedelta
from unittest.mock import patch

import pytest

from src.reconcile.base import DataPoint
from src.reconcile.day_store import DATA_POINTS_TABLE, DAY_RECORDS_TABLE, DayStore
from src.reconcile.errors import LockViolationAttempt, StorageConflict
from src.reconcile.tests.conftest import TEST_DATE, TEST_USER_ID, heart_rate_point, partial, utc


class TestPartialMerge:
    def test_successive_partials_accumulate(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 20), steps=8000))
        store.upsert(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 21), sleep_score=70))

        record = store.get_for_date(TEST_USER_ID, TEST_DATE)
        assert record.steps == 8000
        assert record.sleep_score == 70

    def test_absent_fields_are_untouched(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0, bmi=24.1))
        store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 13), weight=79.8))

        record = store.get_for_date(TEST_USER_ID, TEST_DATE)
        assert record.weight == 79.8
        assert record.bmi == 24.1
        assert record.provenance["bmi"].recorded_at == utc(2026, 2, 23, 12)

    def test_unknown_never_erases_known(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        store.upsert(partial(TEST_DATE, "manual", utc(2026, 2, 23, 13), weight=None, steps=100))
        assert store.get_for_date(TEST_USER_ID, TEST_DATE).weight == 80.0

    def test_merge_reports_changes_and_rejections(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "manual", utc(2026, 2, 23, 12), weight=81.0))
        outcome = store.merge(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 18), weight=80.0, bmi=24.0))
        assert outcome.changed == ["bmi"]
        assert [r.field_name for r in outcome.rejected] == ["weight"]
        assert outcome.record.weight == 81.0

    def test_provenance_recorded(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "mi_fitness", utc(2026, 2, 23, 9), steps=1234))
        prov = store.get_for_date(TEST_USER_ID, TEST_DATE).provenance["steps"]
        assert prov.source == "mi_fitness"
        assert prov.recorded_at == utc(2026, 2, 23, 9)

    def test_empty_partial_on_new_date_stores_nothing(self, store: DayStore) -> None:
        assert store.upsert(partial(TEST_DATE, "renpho")) is None
        assert store.count_records(TEST_USER_ID) == 0

    def test_returned_record_is_a_copy(self, store: DayStore) -> None:
        record = store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        record.weight = 1.0
        assert store.get_for_date(TEST_USER_ID, TEST_DATE).weight == 80.0


class TestLockedWrites:
    def test_locked_date_rejects_write(self, store: DayStore) -> None:
        day = date(2025, 1, 5)
        store.upsert(partial(day, "renpho", utc(2025, 1, 5, 12), weight=75.0))
        store.locks.set(TEST_USER_ID, date(2025, 1, 10))

        with pytest.raises(LockViolationAttempt):
            store.upsert(partial(day, "manual", utc(2025, 1, 6, 12), weight=80.0))
        assert store.get_for_date(TEST_USER_ID, day).weight == 75.0

    def test_dates_after_lock_accept_writes(self, store: DayStore) -> None:
        store.locks.set(TEST_USER_ID, date(2025, 1, 10))
        record = store.upsert(partial(date(2025, 1, 11), "renpho", utc(2025, 1, 11, 12), weight=80.0))
        assert record.weight == 80.0

    def test_count_protected(self, store: DayStore) -> None:
        for offset in range(5):
            day = date(2025, 1, 8) + timedelta(days=offset)
            store.upsert(partial(day, "renpho", utc(2025, 1, 8, 12), weight=80.0))
        assert store.count_protected(TEST_USER_ID, date(2025, 1, 10)) == 3


class TestStorageConflict:
    def test_conflict_retried_once(self, store: DayStore) -> None:
        original = store._commit
        calls: list[int] = []

        def flaky(record, version):
            calls.append(version)
            if len(calls) == 1:
                raise StorageConflict("concurrent write")
            return original(record, version)

        with patch.object(store, "_commit", side_effect=flaky):
            record = store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        assert len(calls) == 2
        assert record.weight == 80.0

    def test_persistent_conflict_raises(self, store: DayStore) -> None:
        with patch.object(store, "_commit", side_effect=StorageConflict("always")):
            with pytest.raises(StorageConflict):
                store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))


class TestConcurrentWriters:
    FIELDS = {
        "steps": 8000, "distance": 6100.0, "calories_burned": 410, "sleep_score": 72,
        "resting_heart_rate": 57, "weight": 80.4, "bmi": 24.1, "body_fat_percentage": 18.2,
        "oxygen_saturation": 97.0, "respiratory_rate": 14, "bmr": 1750, "visceral_fat": 9,
    }

    def _run_together(self, workers: list) -> None:
        barrier = threading.Barrier(len(workers))

        def start(work) -> None:
            barrier.wait()
            work()

        threads = [threading.Thread(target=start, args=(work,)) for work in workers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        assert not any(thread.is_alive() for thread in threads)

    def test_no_field_lost_between_threads(self, store: DayStore) -> None:
        workers = [
            (lambda name=name, value=value: store.upsert(
                partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 20), **{name: value})
            ))
            for name, value in self.FIELDS.items()
        ]
        self._run_together(workers)

        record = store.get_for_date(TEST_USER_ID, TEST_DATE)
        assert {name: getattr(record, name) for name in self.FIELDS} == self.FIELDS
        assert set(record.provenance) == set(self.FIELDS)

    def test_same_point_from_many_threads_stored_once(self, store: DayStore) -> None:
        added: list[bool] = []
        point = heart_rate_point(utc(2026, 2, 23, 8), 61)
        self._run_together([lambda: added.append(store.append_data_point(point)) for _ in range(16)])

        assert added.count(True) == 1
        assert store.count_data_points(TEST_USER_ID) == 1

    def test_wipe_waits_for_merge_in_progress(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        original = store._read
        reading = threading.Event()

        def slow_read(user_id, day):
            found = original(user_id, day)
            reading.set()
            time.sleep(0.2)
            return found

        wiped: list[dict] = []
        with patch.object(store, "_read", side_effect=slow_read):
            writer = threading.Thread(
                target=store.upsert, args=(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 13), weight=79.5),)
            )
            writer.start()
            assert reading.wait(timeout=5)
            wiper = threading.Thread(target=lambda: wiped.append(store.wipe_user(TEST_USER_ID)))
            wiper.start()
            writer.join(timeout=10)
            wiper.join(timeout=10)

        assert wiped == [{DAY_RECORDS_TABLE: 1, DATA_POINTS_TABLE: 0}]
        assert store.count_records(TEST_USER_ID) == 0


class TestHistoricalFallback:
    def test_fallback_from_five_days_earlier(self, store: DayStore) -> None:
        earlier = TEST_DATE - timedelta(days=5)
        store.upsert(partial(earlier, "renpho", utc(2026, 2, 18, 12), weight=82.0))
        store.upsert(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 20), steps=5000))

        record = store.get_with_fallback(TEST_USER_ID, TEST_DATE)
        assert record.weight == 82.0
        assert record.fallback_dates == {"weight": earlier}
        assert record.provenance["weight"].source == "renpho"

    def test_fallback_assembles_missing_day(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE - timedelta(days=5), "renpho", utc(2026, 2, 18, 12), weight=82.0))
        record = store.get_with_fallback(TEST_USER_ID, TEST_DATE)
        assert record is not None
        assert record.weight == 82.0

    def test_never_uses_future_values(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE + timedelta(days=1), "renpho", utc(2026, 2, 24, 12), weight=90.0))
        assert store.get_with_fallback(TEST_USER_ID, TEST_DATE) is None

    def test_nearest_earlier_value_wins(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE - timedelta(days=10), "renpho", utc(2026, 2, 13, 12), weight=85.0))
        store.upsert(partial(TEST_DATE - timedelta(days=2), "renpho", utc(2026, 2, 21, 12), weight=83.0))
        assert store.get_with_fallback(TEST_USER_ID, TEST_DATE).weight == 83.0

    def test_fields_searched_independently(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE - timedelta(days=7), "renpho", utc(2026, 2, 16, 12), body_fat_percentage=18.0))
        store.upsert(partial(TEST_DATE - timedelta(days=1), "renpho", utc(2026, 2, 22, 12), weight=80.0))
        record = store.get_with_fallback(TEST_USER_ID, TEST_DATE)
        assert record.weight == 80.0
        assert record.body_fat_percentage == 18.0

    def test_lookback_is_bounded(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE - timedelta(days=40), "renpho", utc(2026, 1, 14, 12), weight=85.0))
        today = store.upsert(partial(TEST_DATE, "health_connect", utc(2026, 2, 23, 20), steps=10))

        assert store.fill_from_history(today, lookback_days=30).weight is None
        assert store.fill_from_history(today, lookback_days=60).weight == 85.0

    def test_non_fallback_fields_stay_unknown(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE - timedelta(days=1), "health_connect", utc(2026, 2, 22, 20), steps=9000))
        assert store.get_with_fallback(TEST_USER_ID, TEST_DATE) is None

    def test_recent_values_window(self, store: DayStore) -> None:
        for offset, rhr in ((1, 55), (3, 57), (9, 70)):
            day = TEST_DATE - timedelta(days=offset)
            store.upsert(partial(day, "health_connect", utc(2026, 2, 10, 12), resting_heart_rate=rhr))
        assert sorted(store.recent_values(TEST_USER_ID, "resting_heart_rate", TEST_DATE, 7)) == [55, 57]


class TestDataPoints:
    def test_identical_points_stored_once(self, store: DayStore) -> None:
        t0 = utc(2026, 2, 23, 8)
        assert store.append_data_point(heart_rate_point(t0, 61))
        assert not store.append_data_point(heart_rate_point(t0, 61))
        assert store.count_data_points(TEST_USER_ID) == 1

    def test_different_values_are_distinct(self, store: DayStore) -> None:
        t0 = utc(2026, 2, 23, 8)
        assert store.append_data_points([heart_rate_point(t0, 61), heart_rate_point(t0, 62)]) == 2

    def test_range_query_newest_first(self, store: DayStore) -> None:
        store.append_data_points([
            heart_rate_point(utc(2026, 2, 23, 8), 61),
            heart_rate_point(utc(2026, 2, 23, 9), 64),
            heart_rate_point(utc(2026, 2, 24, 9), 70),
            DataPoint(TEST_USER_ID, "steps", utc(2026, 2, 23, 9), 500, "count"),
        ])
        points = store.get_data_points(TEST_USER_ID, utc(2026, 2, 23), utc(2026, 2, 23, 23, 59), "heart_rate")
        assert [p.value for p in points] == [64, 61]


class TestDeletion:
    def test_delete_for_date(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        assert store.delete_for_date(TEST_USER_ID, TEST_DATE) == 1
        assert store.delete_for_date(TEST_USER_ID, TEST_DATE) == 0

    def test_wipe_user_counts(self, store: DayStore) -> None:
        store.upsert(partial(TEST_DATE, "renpho", utc(2026, 2, 23, 12), weight=80.0))
        store.append_data_point(heart_rate_point(utc(2026, 2, 23, 8), 61))
        assert store.wipe_user(TEST_USER_ID) == {DAY_RECORDS_TABLE: 1, DATA_POINTS_TABLE: 1}
        assert store.wipe_user(TEST_USER_ID) == {DAY_RECORDS_TABLE: 0, DATA_POINTS_TABLE: 0}
