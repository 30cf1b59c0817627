"""Shared fixtures for reconciliation engine tests."""

from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path
from uuid import UUID

import pytest

from src.reconcile.base import DataPoint, PartialDayRecord
from src.reconcile.config_loader import ReconcileConfig, load_reconcile_config
from src.reconcile.day_store import DayStore

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
TEST_DATE = date(2026, 2, 23)
TEST_TZ = "America/New_York"


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def partial(
    day: date,
    source: str,
    recorded_at: datetime | None = None,
    user_id: UUID = TEST_USER_ID,
    **values: object,
) -> PartialDayRecord:
    """Build a PartialDayRecord for ``day`` carrying ``values``."""
    return PartialDayRecord(
        user_id=user_id,
        date=day,
        source=source,
        values=dict(values),
        recorded_at=recorded_at,
    )


def heart_rate_point(moment: datetime, bpm: float, source: str = "health_connect") -> DataPoint:
    return DataPoint(TEST_USER_ID, "heart_rate", moment, bpm, "bpm", source_app=source)


# ---------------------------------------------------------------------------
# Config / store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def reconcile_config() -> ReconcileConfig:
    """Load the real reconcile config for tests."""
    return load_reconcile_config()


@pytest.fixture
def store(reconcile_config: ReconcileConfig) -> DayStore:
    return DayStore(config=reconcile_config)


# ---------------------------------------------------------------------------
# File fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def renpho_csv() -> bytes:
    return (FIXTURES_DIR / "renpho_export.csv").read_bytes()
