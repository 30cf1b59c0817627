"""Base classes and canonical data models for the HealthSync reconciliation engine.

Every source adapter must subclass SourceAdapter and emit RawRecord /
DataPoint instances.  The DayRecord defined here is the single canonical
per-user, per-day schema consumed by the day store, the calculator and the
service layer.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator
from uuid import UUID
from zoneinfo import ZoneInfo

from src.config import get_settings
from src.reconcile.config_loader import ReconcileConfig, get_reconcile_config
from src.reconcile.errors import UnitAmbiguityWarning
from src.reconcile.sleep_attribution import local_date, sleep_night_date

if TYPE_CHECKING:
    from src.reconcile.field_mapper import FieldMapper

logger = logging.getLogger("healthsync.reconcile")


# ---------------------------------------------------------------------------
# Provenance
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldProvenance:
    """Where a stored field value came from.

    Attributes:
        source:      Source slug ('manual', 'health_connect', 'renpho', ...).
        recorded_at: UTC time the value was measured, when the source knows it.
        device_id:   Originating device, if reported.
    """

    source: str
    recorded_at: datetime | None = None
    device_id: str | None = None


# ---------------------------------------------------------------------------
# Canonical day record
# ---------------------------------------------------------------------------


@dataclass
class DayRecord:
    """Canonical one-row-per-user-per-day health summary.

    ``None`` means unknown, which is distinct from zero.  ``date`` is the
    user's local calendar date and is the authoritative key.

    Attributes:
        provenance:     Field name → FieldProvenance for every stored value.
        fallback_dates: Field name → date the value was borrowed from, for
                        values filled by historical fallback on read.
    """

    user_id: UUID
    date: date

    # ── Sleep ──
    sleep_score: int | None = None
    sleep_duration: int | None = None  # minutes
    deep_sleep: int | None = None
    rem_sleep: int | None = None
    light_sleep: int | None = None
    sleep_efficiency: float | None = None
    wake_events: int | None = None
    sleep_debt: int | None = None

    # ── Cardio / readiness ──
    recovery_score: int | None = None
    strain_score: float | None = None
    readiness_score: int | None = None
    training_load: float | None = None
    stress_level: int | None = None
    resting_heart_rate: int | None = None
    heart_rate_variability: int | None = None
    blood_pressure_systolic: int | None = None
    blood_pressure_diastolic: int | None = None
    oxygen_saturation: float | None = None
    skin_temperature: float | None = None
    respiratory_rate: int | None = None

    # ── Body composition ──
    weight: float | None = None  # kg
    body_fat_percentage: float | None = None
    muscle_mass: float | None = None
    bmi: float | None = None
    bmr: int | None = None
    visceral_fat: int | None = None
    water_percentage: float | None = None
    bone_mass: float | None = None
    protein_percentage: float | None = None
    subcutaneous_fat: float | None = None
    lean_body_mass: float | None = None
    body_score: int | None = None
    body_type: str | None = None

    # ── Activity ──
    steps: int | None = None
    distance: float | None = None
    calories_burned: int | None = None
    activity_ring_completion: float | None = None

    # ── Advanced ──
    metabolic_age: int | None = None
    fitness_age: int | None = None
    vo2_max: float | None = None
    healthspan: int | None = None
    menstrual_cycle_day: int | None = None
    cycle_phase: str | None = None

    provenance: dict[str, FieldProvenance] = field(default_factory=dict)
    fallback_dates: dict[str, date] = field(default_factory=dict)

    def get(self, name: str) -> Any:
        return getattr(self, name)

    def known_values(self) -> dict[str, Any]:
        """Return every metric field whose value is known."""
        return {name: getattr(self, name) for name in METRIC_FIELDS if getattr(self, name) is not None}

    @property
    def has_data(self) -> bool:
        return any(getattr(self, name) is not None for name in METRIC_FIELDS)

    def copy(self) -> "DayRecord":
        return replace(
            self,
            provenance=dict(self.provenance),
            fallback_dates=dict(self.fallback_dates),
        )


_NON_METRIC_FIELDS = {"user_id", "date", "provenance", "fallback_dates"}

#: Every canonical metric field, in declaration order.
METRIC_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(DayRecord) if f.name not in _NON_METRIC_FIELDS
)


@dataclass
class PartialDayRecord:
    """A partial DayRecord produced by the field mapper.

    Only the fields present in ``values`` are written; every other field of
    the stored record is left untouched.

    Attributes:
        user_id:     Internal HealthSync user UUID.
        date:        Local calendar date the values belong to.
        source:      Source slug of the producing adapter.
        values:      Canonical field name → value.
        recorded_at: UTC measurement time, if known.
        device_id:   Originating device, if known.
        start_time:  Optional sub-day start timestamp (UTC).
        end_time:    Optional sub-day end timestamp (UTC).
        warnings:    Unit repairs applied while mapping.
    """

    user_id: UUID
    date: date
    source: str
    values: dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime | None = None
    device_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    warnings: list[UnitAmbiguityWarning] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.values

    def provenance(self) -> FieldProvenance:
        return FieldProvenance(
            source=self.source,
            recorded_at=self.recorded_at,
            device_id=self.device_id,
        )


# ---------------------------------------------------------------------------
# Granular data points
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DataPoint:
    """Immutable granular timestamped reading.

    Attributes:
        user_id:    Internal HealthSync user UUID.
        data_type:  'steps', 'heart_rate', 'sleep_stage', 'weight', ...
        start_time: UTC start of the reading.
        value:      Numeric value.
        unit:       Unit string ('count', 'bpm', 'minutes', ...).
        end_time:   UTC end of the reading, for intervals.
        metadata:   Extra attributes (stage, activity type, confidence).
        source_app: Producing app, if known.
        device_id:  Producing device, if known.
    """

    user_id: UUID
    data_type: str
    start_time: datetime
    value: float
    unit: str | None = None
    end_time: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    source_app: str | None = None
    device_id: str | None = None

    @property
    def natural_key(self) -> tuple[UUID, str, datetime, float]:
        """Dedup key: (user_id, data_type, start_time, value)."""
        return (self.user_id, self.data_type, self.start_time, self.value)


# ---------------------------------------------------------------------------
# Lock state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LockState:
    """Per-user data lock.  Dates on or before ``lock_date`` are read-only."""

    enabled: bool = False
    lock_date: date | None = None

    def protects(self, target: date) -> bool:
        return self.enabled and self.lock_date is not None and target <= self.lock_date


UNLOCKED = LockState()


# ---------------------------------------------------------------------------
# Raw records
# ---------------------------------------------------------------------------


class RecordShape(str, Enum):
    """The known shapes of source-native records fed to the field mapper."""

    DAILY_ACTIVITY = "daily_activity"
    SLEEP_SESSION = "sleep_session"
    BODY_COMPOSITION = "body_composition"
    VITALS = "vitals"
    DAILY_SUMMARY = "daily_summary"
    MANUAL = "manual"


@dataclass
class RawRecord:
    """Transient, adapter-produced record using source-native key names.

    Never persisted; consumed once by the field mapper.

    Attributes:
        user_id:     Internal HealthSync user UUID.
        source:      Source slug.
        shape:       Which kind of record this is.
        fields:      Source-native key → value.
        recorded_at: UTC measurement time, if known.
        origin:      File name or endpoint the record came from.
    """

    user_id: UUID
    source: str
    shape: RecordShape
    fields: dict[str, Any]
    recorded_at: datetime | None = None
    origin: str | None = None


@dataclass
class Extraction:
    """One raw record plus the granular points extracted alongside it."""

    raw: RawRecord
    points: list[DataPoint] = field(default_factory=list)


@dataclass
class ExtractionResult:
    """Everything one adapter run produced, including per-file failures.

    Iterating yields the Extraction items, so the result can be consumed as
    the plain list of (raw record, points) pairs.

    Attributes:
        source:          Source slug of the adapter.
        items:           Extracted records.
        files_processed: Files or endpoints successfully read.
        errors:          Per-file error messages.
    """

    source: str
    items: list[Extraction] = field(default_factory=list)
    files_processed: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, raw: RawRecord, points: list[DataPoint] | None = None) -> None:
        self.items.append(Extraction(raw=raw, points=list(points or [])))

    def merge(self, other: "ExtractionResult") -> None:
        self.items.extend(other.items)
        self.files_processed += other.files_processed
        self.errors.extend(other.errors)

    def __iter__(self) -> Iterator[Extraction]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class SourceAdapter(ABC):
    """Abstract base class for all source adapters.

    Each adapter parses one origin format into RawRecords (plus DataPoints
    where the origin carries granular readings) and resolves every reading
    to the user's local calendar day.  Mapping, arbitration and storage are
    the ingest pipeline's job, not the adapter's.

    Subclasses must implement:
        - extract()
    """

    #: Unique slug matching a key of source_priorities (e.g. 'renpho').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Source"

    def __init__(
        self,
        config: ReconcileConfig | None = None,
        timezone_name: str | None = None,
    ) -> None:
        self._config = config or get_reconcile_config()
        self._tz = ZoneInfo(timezone_name or get_settings().user_timezone)
        self._mapper: FieldMapper | None = None

    @property
    def mapper(self) -> FieldMapper:
        """Field mapper for this adapter's points, built on first use."""
        if self._mapper is None:
            from src.reconcile.field_mapper import FieldMapper

            self._mapper = FieldMapper(self._config, self._tz.key)
        return self._mapper

    @abstractmethod
    async def extract(self, user_id: UUID, origin: Any) -> ExtractionResult:
        """Extract raw records and data points from an origin.

        Args:
            user_id: Internal HealthSync user UUID.
            origin:  Adapter-specific origin (path, bytes, folder id, date range).

        Returns:
            ExtractionResult.  Per-file failures are reported in ``errors``
            rather than raised.
        """

    # ------------------------------------------------------------------
    # Shared helpers for all adapters
    # ------------------------------------------------------------------

    def _local_date(self, moment: datetime) -> date:
        return local_date(moment, self._tz)

    def _sleep_night(self, sleep_start: datetime) -> date:
        return sleep_night_date(sleep_start, self._tz, self._config.sleep.day_cutoff_hour)

    def _raw(self, user_id: UUID, shape: RecordShape, values: dict[str, Any], **kwargs: Any) -> RawRecord:
        return RawRecord(user_id=user_id, source=self.SOURCE_ID, shape=shape, fields=values, **kwargs)

    def _point(
        self,
        user_id: UUID,
        shape: RecordShape,
        data_type: str,
        start: datetime,
        value: float,
        end: datetime | None = None,
        unit: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DataPoint:
        """Build a DataPoint through the field mapper (default unit, metadata, source app)."""
        fields = {"start_time": start, "end_time": end, "unit": unit, "source_app": self.SOURCE_ID}
        return self.mapper.normalize_point(self._raw(user_id, shape, fields), data_type, value, metadata)

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None or value == "":
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None

    @staticmethod
    def _from_epoch(value: float | int) -> datetime:
        """Convert an epoch in seconds or milliseconds to an aware UTC datetime."""
        seconds = value / 1000.0 if abs(value) >= 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if the value is
        None or unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
