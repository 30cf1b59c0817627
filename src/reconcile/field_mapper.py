"""Normalize source-native raw records into the canonical DayRecord schema.

Every canonical field has an ordered alias list covering the naming
conventions of all supported sources.  Resolution is first-match: aliases
are scanned in order and the first present, non-empty, parseable value
wins; later aliases for that field are ignored even when present.

The mapper is pure.  The same RawRecord always maps to the same output.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from src.config import get_settings
from src.reconcile.base import METRIC_FIELDS, DataPoint, PartialDayRecord, RawRecord
from src.reconcile.config_loader import ReconcileConfig, get_reconcile_config
from src.reconcile.errors import ParseError, UnitAmbiguityWarning
from src.reconcile.sleep_attribution import local_date

logger = logging.getLogger("healthsync.reconcile.field_mapper")

# ---------------------------------------------------------------------------
# Alias tables
# Each entry: canonical_field → ordered list[alias]
# ---------------------------------------------------------------------------

FIELD_ALIASES: dict[str, list[str]] = {
    # ── Sleep ────────────────────────────────────────────────────────────────
    "sleep_score": ["sleepScore", "sleep_score", "SleepScore", "sleep_performance_percentage"],
    "sleep_duration": [
        "sleepDuration", "sleep_duration", "minutesAsleep", "sleep_minutes",
        "durationMinutes", "duration_minutes", "sleep_duration_minutes",
    ],
    "deep_sleep": [
        "deepSleep", "deep_sleep", "deepSleepMinutes", "deep_sleep_minutes",
        "slow_wave_sleep_minutes", "sws_minutes",
    ],
    "rem_sleep": ["remSleep", "rem_sleep", "remSleepMinutes", "rem_sleep_minutes"],
    "light_sleep": ["lightSleep", "light_sleep", "lightSleepMinutes", "light_sleep_minutes"],
    "sleep_efficiency": ["sleepEfficiency", "sleep_efficiency", "efficiency", "sleep_efficiency_percentage"],
    "wake_events": ["wakeEvents", "wake_events", "awakenings", "interruptions", "wake_count"],
    "sleep_debt": ["sleepDebt", "sleep_debt", "debt_minutes", "sleep_debt_minutes"],
    # ── Recovery / strain ────────────────────────────────────────────────────
    "recovery_score": ["recoveryScore", "recovery_score", "recovery", "recovery_percentage"],
    "strain_score": ["strainScore", "strain_score", "strain", "strain_level"],
    "readiness_score": ["readinessScore", "readiness_score", "readiness", "readiness_percentage"],
    "training_load": ["trainingLoad", "training_load", "load", "workout_load"],
    # ── Heart ────────────────────────────────────────────────────────────────
    "resting_heart_rate": [
        "restingHeartRate", "resting_heart_rate", "rhr", "rest_heart_rate", "beats_per_minute",
    ],
    "heart_rate_variability": [
        "heartRateVariability", "heart_rate_variability", "hrv", "hrv_rmssd", "rmssd",
    ],
    # ── Body composition ─────────────────────────────────────────────────────
    "weight": ["weight", "weightKg", "weight_kg", "body_weight", "Weight", "WeightKg"],
    "body_fat_percentage": [
        "bodyFatPercentage", "body_fat_percentage", "bodyFat", "fat_percentage",
        "body_fat", "bodyfat", "BodyFat",
    ],
    "muscle_mass": ["muscleMass", "muscle_mass", "lean_mass", "muscle_kg", "muscle", "MuscleMass"],
    "bmi": ["bmi", "BMI", "body_mass_index", "bodyMassIndex"],
    "bmr": ["bmr", "BMR", "basal_metabolic_rate", "basalMetabolicRate", "basal_metabolism"],
    "visceral_fat": ["visceralFat", "visceral_fat", "VisceralFat", "visceral"],
    "water_percentage": [
        "waterPercentage", "water_percentage", "body_water", "WaterPercentage", "water", "water_percent",
    ],
    "bone_mass": ["boneMass", "bone_mass", "BoneMass", "bone_kg", "bone", "bone_weight"],
    "protein_percentage": [
        "proteinPercentage", "protein_percentage", "ProteinPercentage", "protein", "protein_percent",
    ],
    "subcutaneous_fat": [
        "subcutaneousFat", "subcutaneous_fat", "SubcutaneousFat", "subcutaneous", "sfat",
    ],
    "lean_body_mass": [
        "leanBodyMass", "lean_body_mass", "LeanBodyMass", "ffm", "fat_free_mass", "lean_mass_total",
    ],
    "body_score": ["bodyScore", "body_score", "BodyScore", "rating", "body_rating", "score"],
    "body_type": ["bodyType", "body_type", "BodyType", "type", "Type"],
    # ── Vitals ───────────────────────────────────────────────────────────────
    "blood_pressure_systolic": [
        "bloodPressureSystolic", "blood_pressure_systolic", "systolic", "bp_systolic",
        "sys", "systolic_pressure",
    ],
    "blood_pressure_diastolic": [
        "bloodPressureDiastolic", "blood_pressure_diastolic", "diastolic", "bp_diastolic",
        "dia", "diastolic_pressure",
    ],
    "oxygen_saturation": ["oxygenSaturation", "oxygen_saturation", "spo2", "SpO2", "oxygen", "percentage"],
    "skin_temperature": ["skinTemperature", "skin_temperature", "temp", "temperature", "skin_temp"],
    "respiratory_rate": [
        "respiratoryRate", "respiratory_rate", "breathing_rate", "breath_rate", "respiration_rate",
    ],
    "stress_level": ["stressLevel", "stress_level", "stress", "stress_score"],
    # ── Activity ─────────────────────────────────────────────────────────────
    "steps": ["steps", "stepCount", "daily_steps", "step_count", "Steps", "count"],
    "distance": ["distance", "distanceKm", "distance_km", "total_distance", "Distance"],
    "calories_burned": [
        "caloriesBurned", "calories", "calories_burned", "active_calories", "cal", "Calories",
    ],
    "activity_ring_completion": [
        "activityRingCompletion", "activity_ring_completion", "ring_completion", "completion",
    ],
    # ── Advanced ─────────────────────────────────────────────────────────────
    "metabolic_age": ["metabolicAge", "metabolic_age", "MetabolicAge", "meta_age"],
    "fitness_age": ["fitnessAge", "fitness_age", "FitnessAge", "cardio_age"],
    "vo2_max": ["vo2Max", "vo2_max", "VO2Max", "vo2max", "cardio_fitness", "aerobic_capacity"],
    "healthspan": ["healthspan", "healthspan_score", "biological_age", "health_age"],
    # ── Cycle ────────────────────────────────────────────────────────────────
    "menstrual_cycle_day": ["menstrualCycleDay", "menstrual_cycle_day", "cycle_day", "day_of_cycle"],
    "cycle_phase": ["cyclePhase", "cycle_phase", "menstrual_phase", "phase"],
}

# Durations, scores and counts are stored as integers
INTEGER_FIELDS: frozenset[str] = frozenset({
    "sleep_score", "sleep_duration", "deep_sleep", "rem_sleep", "light_sleep",
    "recovery_score", "readiness_score", "resting_heart_rate", "heart_rate_variability",
    "metabolic_age", "fitness_age", "bmr", "visceral_fat", "blood_pressure_systolic",
    "blood_pressure_diastolic", "respiratory_rate", "stress_level", "steps",
    "calories_burned", "wake_events", "sleep_debt", "body_score", "healthspan",
    "menstrual_cycle_day",
})

# Copied verbatim
TEXT_FIELDS: frozenset[str] = frozenset({"cycle_phase", "body_type"})

DATE_ALIASES: list[str] = [
    "date", "Date", "datetime", "DateTime", "timestamp", "Timestamp",
    "startTime", "start_time", "time", "Time", "created_at", "createdAt",
]

START_TIME_ALIASES: list[str] = [
    "startTime", "start_time", "beginTime", "begin_time", "fromTime", "from_time",
    "epoch_millis", "sample_time", "stage_start_time",
]

END_TIME_ALIASES: list[str] = [
    "endTime", "end_time", "finishTime", "finish_time", "toTime", "to_time",
    "until_time", "stop_time", "stage_end_time",
]

DEFAULT_UNITS: dict[str, str] = {
    "steps": "count",
    "heart_rate": "bpm",
    "sleep_stage": "minutes",
    "calories": "kcal",
    "distance": "meters",
    "oxygen_saturation": "percentage",
    "weight": "kg",
    "body_fat": "percentage",
}

_METADATA_ALIASES: dict[str, list[str]] = {
    "stage": ["stage", "sleep_stage", "stage_type"],
    "activity_type": ["activity_type", "exerciseType"],
    "confidence": ["confidence", "accuracy"],
}


def _check_alias_coverage() -> None:
    """Every canonical field must have an alias list, and nothing else may."""
    missing = set(METRIC_FIELDS) - set(FIELD_ALIASES)
    extra = set(FIELD_ALIASES) - set(METRIC_FIELDS)
    if missing or extra:
        raise RuntimeError(
            f"FIELD_ALIASES out of sync with DayRecord: missing={sorted(missing)} extra={sorted(extra)}"
        )


_check_alias_coverage()


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value) if isinstance(value, (int, float)) else float(str(value).strip())
    except (ValueError, OverflowError):
        return None
    # NaN and infinity are never measurements
    return number if math.isfinite(number) else None


def repair_bmi(value: float, threshold: float = 100.0) -> float:
    """Unit-repair rule: a BMI above ``threshold`` was computed from weight in grams.

    Heuristic, not a guarantee: divides by 1000 and rounds to one decimal.
    Values at or below the threshold pass through unchanged.
    """
    if value > threshold:
        return round(value / 1000.0, 1)
    return value


def _epoch_to_utc(value: float) -> datetime:
    seconds = value / 1000.0 if abs(value) >= 1e11 else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_timestamp(value: Any) -> datetime | date | None:
    """Parse a timestamp-ish value.

    Returns a ``date`` for plain calendar dates, an aware UTC ``datetime``
    for instants, or None if the value cannot be interpreted.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return value
    number = _parse_number(value)
    if number is not None:
        return _epoch_to_utc(number)
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            try:
                return date.fromisoformat(text)
            except ValueError:
                pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


class FieldMapper:
    """Stateless normalizer from RawRecord to PartialDayRecord / DataPoint."""

    def __init__(
        self,
        config: ReconcileConfig | None = None,
        timezone_name: str | None = None,
    ) -> None:
        self._config = config or get_reconcile_config()
        self._tz = ZoneInfo(timezone_name or get_settings().user_timezone)

    # ------------------------------------------------------------------
    # Field resolution
    # ------------------------------------------------------------------

    def resolve_field(self, raw_fields: dict[str, Any], field_name: str) -> Any:
        """Return the first present, parseable value for a canonical field, or None."""
        for alias in FIELD_ALIASES[field_name]:
            value = raw_fields.get(alias)
            if not _is_present(value):
                continue
            if field_name in TEXT_FIELDS:
                return str(value)
            number = _parse_number(value)
            if number is None:
                continue
            if field_name in INTEGER_FIELDS:
                return int(round(number))
            return number
        return None

    def _resolve_first(self, raw_fields: dict[str, Any], aliases: list[str]) -> datetime | date | None:
        for alias in aliases:
            value = raw_fields.get(alias)
            if not _is_present(value):
                continue
            parsed = parse_timestamp(value)
            if parsed is not None:
                return parsed
        return None

    def resolve_date(self, raw_fields: dict[str, Any]) -> tuple[date | None, datetime | None]:
        """Resolve the record's local calendar date.

        Returns:
            (local date, instant) where instant is None for plain dates.
        """
        parsed = self._resolve_first(raw_fields, DATE_ALIASES)
        if parsed is None:
            return None, None
        if isinstance(parsed, datetime):
            return local_date(parsed, self._tz), parsed
        return parsed, None

    def _as_instant(self, value: datetime | date | None) -> datetime | None:
        if value is None or isinstance(value, datetime):
            return value
        return datetime(value.year, value.month, value.day, tzinfo=self._tz).astimezone(timezone.utc)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def normalize(self, raw: RawRecord) -> PartialDayRecord | None:
        """Map one raw record onto the canonical schema.

        Args:
            raw: Source-native record.

        Returns:
            PartialDayRecord, or None when the record yields no canonical
            fields (such records are never persisted).

        Raises:
            ParseError: If the record has fields but no resolvable date.
        """
        values: dict[str, Any] = {}
        warnings: list[UnitAmbiguityWarning] = []
        threshold = self._config.unit_guards.bmi_grams_threshold

        for field_name in FIELD_ALIASES:
            value = self.resolve_field(raw.fields, field_name)
            if value is None:
                continue
            if field_name == "bmi" and value > threshold:
                repaired = repair_bmi(value, threshold)
                warnings.append(UnitAmbiguityWarning("bmi", value, repaired))
                logger.warning(
                    "BMI %.1f from %s looks gram-based, repaired to %.1f", value, raw.source, repaired
                )
                value = repaired
            values[field_name] = value

        if not values:
            return None

        record_date, instant = self.resolve_date(raw.fields)
        if record_date is None:
            raise ParseError(
                f"Record from {raw.source} has no resolvable date", source=raw.source, origin=raw.origin
            )

        start = self._as_instant(self._resolve_first(raw.fields, START_TIME_ALIASES))
        end = self._as_instant(self._resolve_first(raw.fields, END_TIME_ALIASES))
        device_id = raw.fields.get("device_id") or raw.fields.get("deviceId")

        return PartialDayRecord(
            user_id=raw.user_id,
            date=record_date,
            source=raw.source,
            values=values,
            recorded_at=raw.recorded_at or start or instant,
            device_id=str(device_id) if device_id else None,
            start_time=start,
            end_time=end,
            warnings=warnings,
        )

    def normalize_point(
        self, raw: RawRecord, data_type: str, value: float, metadata: dict[str, Any] | None = None
    ) -> DataPoint:
        """Convert a raw record into a granular DataPoint.

        Args:
            raw:       Source-native record.
            data_type: Point type ('heart_rate', 'steps', 'sleep_stage', ...).
            value:     Numeric reading.
            metadata:  Source-specific attributes kept beside the aliased ones.

        Returns:
            DataPoint with start/end preserved at full precision.

        Raises:
            ParseError: If no start time or date can be resolved.
        """
        start = self._resolve_first(raw.fields, START_TIME_ALIASES)
        if start is None:
            start = self._resolve_first(raw.fields, DATE_ALIASES)
        if start is None:
            raise ParseError(
                f"{data_type} point from {raw.source} has no timestamp", source=raw.source, origin=raw.origin
            )
        end = self._resolve_first(raw.fields, END_TIME_ALIASES)

        unit = raw.fields.get("unit") or raw.fields.get("Unit") or DEFAULT_UNITS.get(data_type)
        point_metadata: dict[str, Any] = {}
        for key, aliases in _METADATA_ALIASES.items():
            for alias in aliases:
                if _is_present(raw.fields.get(alias)):
                    point_metadata[key] = raw.fields[alias]
                    break
        point_metadata.update(metadata or {})
        source_app = raw.fields.get("source_app") or raw.fields.get("sourceApp") or raw.source
        device_id = raw.fields.get("device_id") or raw.fields.get("deviceId")

        return DataPoint(
            user_id=raw.user_id,
            data_type=data_type,
            start_time=self._as_instant(start),
            end_time=self._as_instant(end),
            value=float(value),
            unit=unit,
            metadata=point_metadata,
            source_app=source_app,
            device_id=str(device_id) if device_id else None,
        )
