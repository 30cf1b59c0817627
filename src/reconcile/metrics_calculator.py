"""Derived wellness metrics.

Pure, deterministic functions over a DayRecord plus optional same-day
manual overrides.  Every metric returns None when a required input is
unknown; nothing is silently defaulted except where a neutral component
score is documented in reconcile_config.yaml.

Metrics:
    - VO2max           15.3 × (220 − age) / resting HR
    - Muscle mass      weight_kg × (1 − body_fat% / 100)
    - Strain (0–21)    100 − proxy recovery, where proxy recovery blends
                       sleep (50%), activity (30%) and an RHR adjustment (20%)
    - Recovery (0–100) equal-thirds blend of HRV, RHR and sleep quality
    - Sleep score, stress level, metabolic age, fitness age, ring completion
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from statistics import mean
from typing import Any, Sequence

from src.reconcile.base import DayRecord, FieldProvenance
from src.reconcile.config_loader import ReconcileConfig, get_reconcile_config
from src.reconcile.manual_entries import ManualEntry

logger = logging.getLogger("healthsync.reconcile.metrics")

CALCULATED_SOURCE = "calculated"

# Target sleep duration for the enhanced sleep score (minutes)
_TARGET_SLEEP_MINUTES = 480
# Quality component used when no stage data exists
_DEFAULT_STAGE_QUALITY = 70.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class HeartRateZone:
    """One heart-rate training zone.

    Attributes:
        zone:   1–5.
        name:   Display name.
        min_hr: Lower bound (bpm).
        max_hr: Upper bound (bpm).
    """

    zone: int
    name: str
    min_hr: int
    max_hr: int


class MetricsCalculator:
    """Compute derived metrics from whatever subset of inputs is known."""

    def __init__(self, config: ReconcileConfig | None = None) -> None:
        self._config = config or get_reconcile_config()

    # ------------------------------------------------------------------
    # Unit guard and body composition
    # ------------------------------------------------------------------

    def weight_kg(self, weight: float | None) -> float | None:
        """Return weight in kilograms; values above the grams threshold are divided by 1000."""
        if weight is None:
            return None
        if weight > self._config.unit_guards.weight_grams_threshold:
            logger.warning("Weight %.1f treated as grams", weight)
            return weight / 1000.0
        return weight

    def muscle_mass(self, weight: float | None, body_fat_percentage: float | None) -> float | None:
        kg = self.weight_kg(weight)
        if kg is None or body_fat_percentage is None:
            return None
        return round(kg * (1 - body_fat_percentage / 100), 1)

    def vo2_max(self, resting_heart_rate: float | None, age: int) -> float | None:
        """Non-exercise VO2max estimate.  Requires a positive resting HR."""
        if not resting_heart_rate or resting_heart_rate <= 0:
            return None
        hr_max = 220 - age
        return round(15.3 * hr_max / resting_heart_rate, 1)

    # ------------------------------------------------------------------
    # Activity and strain
    # ------------------------------------------------------------------

    def steps_score(self, steps: float | None) -> float | None:
        if steps is None:
            return None
        return self._config.activity.steps.score(steps)

    def calories_score(self, calories: float | None) -> float | None:
        if calories is None:
            return None
        return self._config.activity.calories.score(calories)

    def activity_score(
        self,
        steps: float | None,
        calories: float | None,
        manual_calories: float | None = None,
    ) -> float | None:
        """Blend steps and calories scores (decreasing curves, 50/50).

        Manual calories, when positive, replace device calories.  A missing
        component scores ``missing_component_score``; with neither input
        the activity score is unknown.
        """
        cfg = self._config.activity
        if manual_calories is not None and manual_calories > 0:
            calories = manual_calories
        if steps is None and calories is None:
            return None
        steps_part = self.steps_score(steps)
        calories_part = self.calories_score(calories)
        if steps_part is None:
            steps_part = cfg.missing_component_score
        if calories_part is None:
            calories_part = cfg.missing_component_score
        return round(steps_part * cfg.steps_weight + calories_part * cfg.calories_weight)

    def rhr_adjustment(self, resting_heart_rate: float | None, baseline: float | None) -> float:
        """Score resting HR against a short-term baseline (100 = at or below baseline)."""
        cfg = self._config.proxy_recovery
        if not resting_heart_rate:
            return cfg.default_rhr_adjustment
        if baseline is None:
            baseline = resting_heart_rate
        if resting_heart_rate < baseline:
            return 100.0
        if resting_heart_rate > baseline + cfg.rhr_penalty_range_bpm:
            return 50.0
        return 100.0 - ((resting_heart_rate - baseline) / cfg.rhr_penalty_range_bpm) * 50.0

    def proxy_recovery(
        self,
        sleep_score: float | None,
        activity_score: float,
        rhr_adjustment: float,
    ) -> float:
        cfg = self._config.proxy_recovery
        sleep = sleep_score if sleep_score is not None else cfg.default_sleep_score
        return sleep * cfg.sleep_weight + activity_score * cfg.activity_weight + rhr_adjustment * cfg.rhr_weight

    def strain(
        self,
        steps: float | None,
        calories: float | None,
        sleep_score: float | None = None,
        resting_heart_rate: float | None = None,
        rhr_baseline: float | None = None,
        manual_calories: float | None = None,
    ) -> float | None:
        """Strain on a 0–21 scale: 100 minus the proxy recovery, clamped."""
        activity = self.activity_score(steps, calories, manual_calories)
        if activity is None:
            return None
        proxy = self.proxy_recovery(
            sleep_score, activity, self.rhr_adjustment(resting_heart_rate, rhr_baseline)
        )
        return round(_clamp(100 - proxy, 0.0, self._config.proxy_recovery.max_strain), 1)

    # ------------------------------------------------------------------
    # Sleep
    # ------------------------------------------------------------------

    def enhanced_sleep_score(
        self,
        duration: float | None,
        deep: float | None = None,
        rem: float | None = None,
    ) -> float | None:
        """Sleep quality: 60% duration vs an 8h target, 40% deep+REM share."""
        if not duration:
            return None
        duration_score = min(duration / _TARGET_SLEEP_MINUTES * 100, 100.0)
        quality = _DEFAULT_STAGE_QUALITY
        if deep is not None and rem is not None:
            quality = min((deep + rem) / duration * 100, 100.0)
        return _clamp(duration_score * 0.6 + quality * 0.4, 0.0, 100.0)

    def sleep_score(
        self,
        duration: float | None,
        deep: float | None = None,
        efficiency: float | None = None,
        wake_events: int | None = None,
        systolic: float | None = None,
    ) -> int | None:
        """Sleep score (0–100) from duration, deep-sleep ratio, efficiency and interruptions."""
        if not duration:
            return None
        hours = duration / 60
        if 7 <= hours <= 9:
            score = 40.0
        else:
            score = 40.0 - min(abs(hours - 8), 3) * 10
        score += (deep / duration) * 30 if deep else 20
        if efficiency:
            score += (efficiency - 80) * 0.5
        if wake_events:
            score -= min(wake_events * 5, 20)
        if systolic and systolic > 140:
            score -= 10
        return round(_clamp(score, 0, 100))

    # ------------------------------------------------------------------
    # Recovery and stress
    # ------------------------------------------------------------------

    def hrv_score(self, hrv: float, age: float) -> float:
        return min(100.0, hrv / self._config.norms.expected_hrv(age) * 100)

    def rhr_score(self, resting_heart_rate: float, age: float) -> float:
        norms = self._config.norms
        deviation = resting_heart_rate - norms.expected_rhr(age)
        return _clamp(100 - deviation * norms.rhr_score_factor, 0.0, 100.0)

    def recovery(
        self,
        hrv: float | None,
        resting_heart_rate: float | None,
        sleep_quality: float | None,
        age: int,
    ) -> int | None:
        """Recovery (0–100): weighted blend of HRV, RHR and sleep quality scores.

        Components with unknown inputs are dropped and the remaining weights
        renormalized; below ``min_available_weight`` the score is unknown.
        """
        cfg = self._config.recovery
        parts: list[tuple[float, float]] = []
        if hrv:
            parts.append((self.hrv_score(hrv, age), cfg.hrv_weight))
        if resting_heart_rate:
            parts.append((self.rhr_score(resting_heart_rate, age), cfg.rhr_weight))
        if sleep_quality is not None:
            parts.append((sleep_quality, cfg.sleep_weight))
        total_weight = sum(w for _, w in parts)
        if not parts or total_weight < cfg.min_available_weight:
            return None
        score = sum(s * w for s, w in parts) / total_weight
        return round(_clamp(score, 0, 100))

    def stress_level(
        self,
        resting_heart_rate: float | None,
        hrv: float | None,
        duration: float | None,
        efficiency: float | None,
        wake_events: int | None,
        strain: float | None,
        systolic: float | None,
        age: int,
    ) -> int | None:
        """Stress level (1–100) from a baseline of 50 with physiological adjustments."""
        if not resting_heart_rate and not duration:
            return None
        cfg = self._config.stress
        norms = self._config.norms
        score = cfg.baseline

        if resting_heart_rate:
            deviation = resting_heart_rate - norms.expected_rhr(age)
            score += _clamp(deviation * cfg.rhr_factor, cfg.rhr_min_adjustment, cfg.rhr_max_adjustment)
        if hrv:
            score -= (hrv / norms.expected_hrv(age) - 1) * cfg.hrv_factor
        if duration:
            hours = duration / 60
            if hours < cfg.severe_short_sleep_hours:
                score += cfg.severe_short_sleep_adjust
            elif hours < cfg.short_sleep_hours:
                score += cfg.short_sleep_adjust
            elif hours > cfg.long_sleep_hours:
                score += cfg.long_sleep_adjust
            else:
                score += cfg.good_sleep_adjust
        if efficiency and efficiency < cfg.efficiency_floor:
            score += (cfg.efficiency_floor - efficiency) * cfg.efficiency_factor
        if wake_events and wake_events > cfg.free_wake_events:
            score += min((wake_events - cfg.free_wake_events) * cfg.wake_event_factor, cfg.wake_event_cap)
        if strain and strain > cfg.strain_threshold:
            score += min((strain - cfg.strain_threshold) * cfg.strain_factor, cfg.strain_cap)
        if systolic:
            if systolic > cfg.high_systolic:
                score += min((systolic - cfg.high_systolic) * cfg.systolic_factor, cfg.systolic_cap)
            elif systolic < cfg.low_systolic:
                score += cfg.low_systolic_adjust
        return round(_clamp(score, 1, 100))

    # ------------------------------------------------------------------
    # Ages and misc
    # ------------------------------------------------------------------

    def metabolic_age(self, age: int, **inputs: float | None) -> int | None:
        """Chronological age adjusted by tier tables per available input.

        Keyword inputs are DayRecord field names matching the
        ``metabolic_age`` tables (heart_rate_variability, recovery_score,
        sleep_score, vo2_max, body_fat_percentage, resting_heart_rate).
        Unknown inputs skip their adjustment; with none known the result
        is unknown.
        """
        total = float(age)
        applied = 0
        for name, rules in self._config.metabolic_age.items():
            value = inputs.get(name)
            if value is None:
                continue
            for rule in rules:
                if rule.matches(value):
                    total += rule.adjust
                    break
            applied += 1
        if not applied:
            return None
        return round(total)

    def fitness_age(
        self,
        resting_heart_rate: float | None,
        weight: float | None,
        steps: float | None,
        age: int,
        systolic: float | None = None,
    ) -> int | None:
        if not resting_heart_rate or not weight:
            return None
        estimated = self.vo2_max(resting_heart_rate, age)
        if estimated is None:
            return None
        if steps:
            if steps > 12000:
                estimated *= 1.1
            elif steps < 5000:
                estimated *= 0.9
        expected = 50 - (age - 20) * 0.5
        ratio = estimated / expected if expected > 0 else 1.0
        fitness = float(age)
        if ratio > 1.1:
            fitness -= 5
        elif ratio > 1.05:
            fitness -= 2
        elif ratio < 0.9:
            fitness += 5
        elif ratio < 0.95:
            fitness += 2
        if systolic:
            if systolic > 140:
                fitness += 5
            elif systolic < 120:
                fitness -= 2
        return round(_clamp(fitness, 18, 80))

    def activity_ring_completion(self, steps: float | None) -> float | None:
        if steps is None:
            return None
        return min(1.0, steps / self._config.activity.daily_step_goal)

    @staticmethod
    def heart_rate_zones(age: int) -> list[HeartRateZone]:
        max_hr = 220 - age
        bounds = (0.5, 0.6, 0.7, 0.8, 0.9, 1.0)
        return [
            HeartRateZone(
                zone=i + 1,
                name=f"Zone {i + 1}",
                min_hr=round(max_hr * bounds[i]),
                max_hr=round(max_hr * bounds[i + 1]),
            )
            for i in range(5)
        ]

    @staticmethod
    def rhr_baseline(history: Sequence[float | None]) -> float | None:
        values = [v for v in history if v and v > 0]
        return mean(values) if values else None

    # ------------------------------------------------------------------
    # Record-level
    # ------------------------------------------------------------------

    def derive(
        self,
        record: DayRecord,
        age: int | None = None,
        manual: ManualEntry | None = None,
        rhr_baseline: float | None = None,
    ) -> dict[str, Any]:
        """Compute derived metrics the record does not already carry.

        Stored values are kept, except that recovery, stress and metabolic
        age are recomputed when a manual RHR or HRV override is present.

        Returns:
            Field name → computed value, for known results only.
        """
        age = age if age is not None else self._config.default_age
        rhr = record.resting_heart_rate
        hrv = record.heart_rate_variability
        manual_calories = None
        has_manual_hr = False
        if manual is not None:
            if manual.resting_hr:
                rhr = manual.resting_hr
                has_manual_hr = True
            if manual.hrv:
                hrv = manual.hrv
                has_manual_hr = True
            manual_calories = manual.calories

        derived: dict[str, Any] = {}

        def current(name: str) -> Any:
            return derived.get(name, getattr(record, name))

        def offer(name: str, value: Any, force: bool = False) -> None:
            if value is not None and (force or getattr(record, name) is None):
                derived[name] = value

        offer("muscle_mass", self.muscle_mass(record.weight, record.body_fat_percentage))
        offer("vo2_max", self.vo2_max(rhr, age))
        offer(
            "sleep_score",
            self.sleep_score(
                record.sleep_duration, record.deep_sleep, record.sleep_efficiency,
                record.wake_events, record.blood_pressure_systolic,
            ),
        )
        offer(
            "strain_score",
            self.strain(
                record.steps, record.calories_burned, current("sleep_score"),
                rhr, rhr_baseline, manual_calories,
            ),
        )
        sleep_quality = current("sleep_score")
        if sleep_quality is None:
            sleep_quality = self.enhanced_sleep_score(record.sleep_duration, record.deep_sleep, record.rem_sleep)
        offer("recovery_score", self.recovery(hrv, rhr, sleep_quality, age), force=has_manual_hr)
        offer(
            "stress_level",
            self.stress_level(
                rhr, hrv, record.sleep_duration, record.sleep_efficiency, record.wake_events,
                current("strain_score"), record.blood_pressure_systolic, age,
            ),
            force=has_manual_hr,
        )
        offer(
            "metabolic_age",
            self.metabolic_age(
                age,
                heart_rate_variability=hrv,
                recovery_score=current("recovery_score"),
                sleep_score=current("sleep_score"),
                vo2_max=current("vo2_max"),
                body_fat_percentage=record.body_fat_percentage,
                resting_heart_rate=rhr,
            ),
            force=has_manual_hr,
        )
        offer(
            "fitness_age",
            self.fitness_age(rhr, record.weight, record.steps, age, record.blood_pressure_systolic),
        )
        offer("activity_ring_completion", self.activity_ring_completion(record.steps))
        return derived

    def enrich(
        self,
        record: DayRecord,
        age: int | None = None,
        manual: ManualEntry | None = None,
        rhr_baseline: float | None = None,
    ) -> DayRecord:
        """Return a copy with manual overrides applied and derived metrics layered on."""
        enriched = record.copy()
        if manual is not None:
            manual_source = FieldProvenance(source="manual", recorded_at=manual.updated_at)
            if manual.resting_hr:
                enriched.resting_heart_rate = manual.resting_hr
                enriched.provenance["resting_heart_rate"] = manual_source
                enriched.fallback_dates.pop("resting_heart_rate", None)
            if manual.hrv:
                enriched.heart_rate_variability = manual.hrv
                enriched.provenance["heart_rate_variability"] = manual_source
        calculated = FieldProvenance(source=CALCULATED_SOURCE)
        for name, value in self.derive(record, age, manual, rhr_baseline).items():
            setattr(enriched, name, value)
            enriched.provenance[name] = calculated
        return enriched
