"""Tests for the per-user data lock registry."""

from __future__ import annotations

from datetime import date
from uuid import uuid4

from src.reconcile.base import UNLOCKED
from src.reconcile.locks import LockRegistry
from src.reconcile.tests.conftest import TEST_USER_ID


class TestLockRegistry:
    def test_default_is_unlocked(self) -> None:
        assert LockRegistry().get(TEST_USER_ID) is UNLOCKED

    def test_set_lock(self) -> None:
        registry = LockRegistry()
        event = registry.set(TEST_USER_ID, date(2025, 1, 10))
        assert event.action == "set"
        assert event.previous is None
        assert registry.get(TEST_USER_ID).lock_date == date(2025, 1, 10)

    def test_extend_and_move(self) -> None:
        registry = LockRegistry()
        registry.set(TEST_USER_ID, date(2025, 1, 10))
        assert registry.set(TEST_USER_ID, date(2025, 2, 1)).action == "extended"
        moved = registry.set(TEST_USER_ID, date(2025, 1, 15))
        assert moved.action == "moved"
        assert moved.previous == date(2025, 2, 1)

    def test_protection_is_inclusive(self) -> None:
        registry = LockRegistry()
        registry.set(TEST_USER_ID, date(2025, 1, 10))
        assert registry.is_date_protected(TEST_USER_ID, date(2025, 1, 10))
        assert registry.is_date_protected(TEST_USER_ID, date(2024, 12, 31))
        assert not registry.is_date_protected(TEST_USER_ID, date(2025, 1, 11))

    def test_locks_are_per_user(self) -> None:
        registry = LockRegistry()
        registry.set(TEST_USER_ID, date(2025, 1, 10))
        assert not registry.is_date_protected(uuid4(), date(2025, 1, 1))

    def test_unlock(self) -> None:
        registry = LockRegistry()
        registry.set(TEST_USER_ID, date(2025, 1, 10))
        event = registry.unlock(TEST_USER_ID)
        assert event.action == "unlocked"
        assert event.previous == date(2025, 1, 10)
        assert not registry.is_date_protected(TEST_USER_ID, date(2025, 1, 1))

    def test_history_is_audited_in_order(self) -> None:
        registry = LockRegistry()
        registry.set(TEST_USER_ID, date(2025, 1, 10))
        registry.set(TEST_USER_ID, date(2025, 3, 1))
        registry.unlock(TEST_USER_ID)
        registry.set(uuid4(), date(2025, 1, 1))
        assert [e.action for e in registry.history(TEST_USER_ID)] == ["set", "extended", "unlocked"]
