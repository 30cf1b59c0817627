"""Tests for dedup keys and the imported-file cache."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.reconcile.base import DataPoint
from src.reconcile.sync.dedup import InMemoryDedupCache, data_point_key, import_file_key
from src.reconcile.tests.conftest import TEST_USER_ID, heart_rate_point, utc


class TestDataPointKey:
    def test_same_instant_different_offsets(self) -> None:
        eastern = timezone(timedelta(hours=-5))
        local = heart_rate_point(datetime(2026, 2, 23, 3, tzinfo=eastern), 61)
        assert data_point_key(local) == data_point_key(heart_rate_point(utc(2026, 2, 23, 8), 61))

    def test_naive_time_read_as_utc(self) -> None:
        naive = DataPoint(TEST_USER_ID, "heart_rate", datetime(2026, 2, 23, 8), 61.0, "bpm")
        assert data_point_key(naive) == data_point_key(heart_rate_point(utc(2026, 2, 23, 8), 61))

    def test_int_and_float_values_match(self) -> None:
        assert data_point_key(heart_rate_point(utc(2026, 2, 23, 8), 61)) == data_point_key(
            heart_rate_point(utc(2026, 2, 23, 8), 61.0)
        )

    def test_source_is_not_part_of_key(self) -> None:
        a = heart_rate_point(utc(2026, 2, 23, 8), 61, source="health_connect")
        b = heart_rate_point(utc(2026, 2, 23, 8), 61, source="mi_fitness")
        assert data_point_key(a) == data_point_key(b)

    def test_different_value_different_key(self) -> None:
        assert data_point_key(heart_rate_point(utc(2026, 2, 23, 8), 61)) != data_point_key(
            heart_rate_point(utc(2026, 2, 23, 8), 62)
        )


class TestImportFileKey:
    def test_modified_time_distinguishes_versions(self) -> None:
        first = import_file_key(TEST_USER_ID, "google_drive", "renpho.csv", utc(2026, 2, 1))
        second = import_file_key(TEST_USER_ID, "google_drive", "renpho.csv", utc(2026, 2, 25))
        assert first != second

    def test_unknown_modified_time(self) -> None:
        assert import_file_key(TEST_USER_ID, "google_drive", "renpho.csv", None).endswith(":unknown")


class TestInMemoryDedupCache:
    def test_mark_and_check(self) -> None:
        cache = InMemoryDedupCache()
        assert not cache.is_seen("a")
        cache.mark_seen("a")
        cache.mark_seen("a")
        assert cache.is_seen("a")
        assert len(cache) == 1

    def test_oldest_key_evicted(self) -> None:
        cache = InMemoryDedupCache(max_entries=2)
        for key in ("a", "b", "c"):
            cache.mark_seen(key)
        assert not cache.is_seen("a")
        assert cache.is_seen("b") and cache.is_seen("c")

    def test_remarking_refreshes_key(self) -> None:
        cache = InMemoryDedupCache(max_entries=2)
        cache.mark_seen("a")
        cache.mark_seen("b")
        cache.mark_seen("a")
        cache.mark_seen("c")
        assert cache.is_seen("a")
        assert not cache.is_seen("b")
