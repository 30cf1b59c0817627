"""Load, validate, and hot-reload the HealthSync reconciliation policy.

The policy lives in ``reconcile_config.yaml`` alongside this module.  It is
loaded once and cached.  Call ``reload_reconcile_config()`` to re-read from
disk after an edit; no restart required.

Usage::

    from src.reconcile.config_loader import get_reconcile_config

    config = get_reconcile_config()
    rank = config.priority("weight", "renpho")       # 4.0
    cutoff = config.sleep.day_cutoff_hour            # 18
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from src.config import get_settings

logger = logging.getLogger("healthsync.reconcile.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "reconcile_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class SleepConfig:
    """Sleep-night attribution and stage decoding."""

    day_cutoff_hour: int
    stage_codes: dict[int, str]
    asleep_stages: list[str]

    def stage_name(self, code: int) -> str:
        return self.stage_codes.get(code, "unknown")


@dataclass
class LookbackConfig:
    """Explicit maxima for history scans."""

    fallback_days: int = 365
    heart_rate_search_days: int = 30
    rhr_baseline_days: int = 7


@dataclass
class UnitGuardConfig:
    bmi_grams_threshold: float = 100.0
    weight_grams_threshold: float = 1000.0
    pounds_to_kg: float = 0.45359237


@dataclass
class HeartRateConfig:
    valid_min_bpm: float = 30.0
    valid_max_bpm: float = 200.0


@dataclass
class CurveConfig:
    """A decreasing piecewise-linear curve: ``low``→``low_score``, ``high``→``high_score``."""

    low: float
    high: float
    low_score: float
    high_score: float

    def score(self, value: float) -> float:
        if value < self.low:
            return self.low_score
        if value > self.high:
            return self.high_score
        span = self.high - self.low
        return self.low_score - ((value - self.low) / span) * (self.low_score - self.high_score)


@dataclass
class ActivityConfig:
    steps: CurveConfig
    calories: CurveConfig
    steps_weight: float = 0.5
    calories_weight: float = 0.5
    missing_component_score: float = 50.0
    daily_step_goal: int = 10000


@dataclass
class ProxyRecoveryConfig:
    """Sleep/activity/RHR blend used only to derive strain."""

    sleep_weight: float = 0.5
    activity_weight: float = 0.3
    rhr_weight: float = 0.2
    default_sleep_score: float = 70.0
    default_rhr_adjustment: float = 75.0
    rhr_penalty_range_bpm: float = 10.0
    max_strain: float = 21.0


@dataclass
class RecoveryConfig:
    """Canonical recovery: HRV, RHR and sleep quality blend."""

    hrv_weight: float = 1 / 3
    rhr_weight: float = 1 / 3
    sleep_weight: float = 1 / 3
    min_available_weight: float = 0.6


@dataclass
class NormsConfig:
    reference_age: float = 25.0
    hrv_base_ms: float = 60.0
    hrv_decline_per_year: float = 0.5
    hrv_floor_ms: float = 20.0
    rhr_base_bpm: float = 65.0
    rhr_rise_per_year: float = 0.2
    rhr_score_factor: float = 2.0

    def expected_hrv(self, age: float) -> float:
        return max(self.hrv_floor_ms, self.hrv_base_ms - (age - self.reference_age) * self.hrv_decline_per_year)

    def expected_rhr(self, age: float) -> float:
        return self.rhr_base_bpm + (age - self.reference_age) * self.rhr_rise_per_year


@dataclass
class StressConfig:
    baseline: float = 50.0
    rhr_factor: float = 1.5
    rhr_min_adjustment: float = -20.0
    rhr_max_adjustment: float = 30.0
    hrv_factor: float = 25.0
    severe_short_sleep_hours: float = 6.0
    severe_short_sleep_adjust: float = 20.0
    short_sleep_hours: float = 7.0
    short_sleep_adjust: float = 10.0
    long_sleep_hours: float = 9.0
    long_sleep_adjust: float = 5.0
    good_sleep_adjust: float = -10.0
    efficiency_floor: float = 80.0
    efficiency_factor: float = 0.5
    free_wake_events: float = 3.0
    wake_event_factor: float = 3.0
    wake_event_cap: float = 15.0
    strain_threshold: float = 15.0
    strain_factor: float = 2.0
    strain_cap: float = 10.0
    high_systolic: float = 130.0
    systolic_factor: float = 0.5
    systolic_cap: float = 15.0
    low_systolic: float = 110.0
    low_systolic_adjust: float = -5.0


@dataclass
class TierRule:
    """One row of a metabolic-age tier table.

    Attributes:
        adjust:  Years added (positive) or removed (negative).
        below:   Exclusive upper bound, or None.
        at_most: Inclusive upper bound, or None.
    """

    adjust: float
    below: float | None = None
    at_most: float | None = None

    def matches(self, value: float) -> bool:
        if self.below is not None:
            return value < self.below
        if self.at_most is not None:
            return value <= self.at_most
        return True


@dataclass
class BackfillConfig:
    batch_size_days: int = 30
    max_days: int = 365


@dataclass
class ReconcileConfig:
    """Complete, validated reconciliation policy.

    This is the single in-memory representation of reconcile_config.yaml.
    The arbiter, day store, calculator and adapters all read from it.

    Attributes:
        version:                 Config schema version string.
        source_priorities:       Source slug → rank (lower wins).
        field_priorities:        Field → source → rank overrides.
        unknown_source_priority: Rank for values stored without provenance.
        min_recency_gap_hours:   Gap required between equal-rank sources.
        sleep:                   Sleep attribution settings.
        lookback:                History scan maxima.
        fallback_fields:         Slow-changing fields eligible for fallback.
        unit_guards:             Unit-repair thresholds.
        heart_rate:              Valid heart-rate band.
        default_age:             Age used when a user has no profile age.
        activity:                Activity score curves.
        proxy_recovery:          Proxy recovery weights (strain only).
        recovery:                Canonical recovery weights.
        norms:                   Age-adjusted HRV/RHR norms.
        stress:                  Stress level constants.
        metabolic_age:           Input field → ordered tier rules.
        backfill:                Derived-metrics backfill settings.
    """

    version: str
    source_priorities: dict[str, float]
    field_priorities: dict[str, dict[str, float]]
    unknown_source_priority: float
    min_recency_gap_hours: float
    sleep: SleepConfig
    lookback: LookbackConfig
    fallback_fields: list[str]
    unit_guards: UnitGuardConfig
    heart_rate: HeartRateConfig
    default_age: int
    activity: ActivityConfig
    proxy_recovery: ProxyRecoveryConfig
    recovery: RecoveryConfig
    norms: NormsConfig
    stress: StressConfig
    metabolic_age: dict[str, list[TierRule]]
    backfill: BackfillConfig
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def priority(self, field_name: str, source: str | None) -> float:
        """Return the rank of ``source`` for ``field_name`` (lower wins).

        Per-field overrides take precedence over the global table.  Unknown
        or missing sources rank as ``unknown_source_priority``.

        Args:
            field_name: Canonical DayRecord field (e.g. 'weight').
            source:     Source slug (e.g. 'renpho'), or None.

        Returns:
            Numeric rank.
        """
        if source is None:
            return self.unknown_source_priority
        override = self.field_priorities.get(field_name, {})
        if source in override:
            return override[source]
        return self.source_priorities.get(source, self.unknown_source_priority)

    def sources_by_priority(self) -> list[str]:
        """Return configured sources, highest priority first."""
        return sorted(self.source_priorities, key=lambda s: self.source_priorities[s])


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when reconcile_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Reconcile config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _build_section(cls: type, raw: Any, section: str, errors: list[str]) -> Any:
    """Build a flat numeric dataclass section, coercing each value to the default's type."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        errors.append(f"'{section}' must be a mapping")
        return cls()
    known = {f.name: f for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, val in raw.items():
        if key not in known:
            errors.append(f"Unknown key '{key}' in section '{section}'")
            continue
        target = int if known[key].type in ("int", int) else float
        try:
            kwargs[key] = target(val)
        except (TypeError, ValueError):
            errors.append(f"{section}.{key} must be a number, got {val!r}")
    return cls(**kwargs)


def _build_curve(raw: Any, section: str, errors: list[str]) -> CurveConfig:
    raw = raw or {}
    try:
        curve = CurveConfig(
            low=float(raw["low"]),
            high=float(raw["high"]),
            low_score=float(raw["low_score"]),
            high_score=float(raw["high_score"]),
        )
    except KeyError as exc:
        errors.append(f"Missing required key {exc} in section '{section}'")
        return CurveConfig(low=0.0, high=1.0, low_score=0.0, high_score=0.0)
    except (TypeError, ValueError):
        errors.append(f"'{section}' values must be numbers")
        return CurveConfig(low=0.0, high=1.0, low_score=0.0, high_score=0.0)
    if curve.high <= curve.low:
        errors.append(f"{section}.high must be greater than {section}.low")
    return curve


def _build_tiers(raw: Any, errors: list[str]) -> dict[str, list[TierRule]]:
    tables: dict[str, list[TierRule]] = {}
    for metric, rules_raw in (raw or {}).items():
        if not isinstance(rules_raw, list) or not rules_raw:
            errors.append(f"metabolic_age.{metric} must be a non-empty list of rules")
            continue
        rules: list[TierRule] = []
        for idx, rule in enumerate(rules_raw):
            if not isinstance(rule, dict) or "adjust" not in rule:
                errors.append(f"metabolic_age.{metric}[{idx}] needs an 'adjust' value")
                continue
            try:
                rules.append(
                    TierRule(
                        adjust=float(rule["adjust"]),
                        below=float(rule["below"]) if "below" in rule else None,
                        at_most=float(rule["at_most"]) if "at_most" in rule else None,
                    )
                )
            except (TypeError, ValueError):
                errors.append(f"metabolic_age.{metric}[{idx}] has a non-numeric bound")
        if rules and (rules[-1].below is not None or rules[-1].at_most is not None):
            errors.append(f"metabolic_age.{metric} must end with an unbounded rule")
        tables[metric] = rules
    return tables


def _validate_and_build(raw: dict) -> ReconcileConfig:
    """Validate the raw YAML dict and construct a ReconcileConfig.

    Performs structural validation and applies defaults for optional fields.

    Args:
        raw: Parsed YAML dict.

    Returns:
        Validated ReconcileConfig instance.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Source priorities ──
    priorities_raw = raw.get("source_priorities", {})
    if not priorities_raw:
        errors.append("'source_priorities' section is missing or empty")
    source_priorities: dict[str, float] = {}
    for source, rank in (priorities_raw or {}).items():
        try:
            source_priorities[source] = float(rank)
        except (TypeError, ValueError):
            errors.append(f"source_priorities.{source} must be a number, got {rank!r}")
    if source_priorities and source_priorities.get("manual") != min(source_priorities.values()):
        errors.append("source_priorities.manual must hold the best (lowest) rank")

    field_priorities: dict[str, dict[str, float]] = {}
    for field_name, sources in (raw.get("field_priorities") or {}).items():
        if not isinstance(sources, dict):
            errors.append(f"field_priorities.{field_name} must be a mapping of source→rank")
            continue
        field_priorities[field_name] = {}
        for source, rank in sources.items():
            try:
                field_priorities[field_name][source] = float(rank)
            except (TypeError, ValueError):
                errors.append(
                    f"field_priorities.{field_name}.{source} must be a number, got {rank!r}"
                )

    unknown_priority = float(raw.get("unknown_source_priority", 99))
    min_gap = float((raw.get("freshness") or {}).get("min_recency_gap_hours", 2))
    if min_gap < 0:
        errors.append("freshness.min_recency_gap_hours must be >= 0")

    # ── Sleep ──
    sleep_raw = raw.get("sleep") or {}
    cutoff = int(sleep_raw.get("day_cutoff_hour", 18))
    if not 0 <= cutoff <= 23:
        errors.append(f"sleep.day_cutoff_hour = {cutoff} is out of range [0, 23]")
    stage_codes: dict[int, str] = {}
    for code, name in (sleep_raw.get("stage_codes") or {}).items():
        try:
            stage_codes[int(code)] = str(name)
        except (TypeError, ValueError):
            errors.append(f"sleep.stage_codes key {code!r} must be an integer")
    if not stage_codes:
        errors.append("'sleep.stage_codes' is missing or empty")
    sleep = SleepConfig(
        day_cutoff_hour=cutoff,
        stage_codes=stage_codes,
        asleep_stages=list(sleep_raw.get("asleep_stages", ["sleep", "light", "deep", "rem"])),
    )

    # ── Scans, guards ──
    lookback = _build_section(LookbackConfig, raw.get("lookback"), "lookback", errors)
    if lookback.fallback_days <= 0 or lookback.heart_rate_search_days <= 0:
        errors.append("lookback windows must be positive")
    fallback_fields = list(raw.get("fallback_fields") or [])
    unit_guards = _build_section(UnitGuardConfig, raw.get("unit_guards"), "unit_guards", errors)
    heart_rate = _build_section(HeartRateConfig, raw.get("heart_rate"), "heart_rate", errors)

    # ── Calculator ──
    default_age = int((raw.get("calculator") or {}).get("default_age", 35))

    activity_raw = raw.get("activity") or {}
    activity = ActivityConfig(
        steps=_build_curve(activity_raw.get("steps"), "activity.steps", errors),
        calories=_build_curve(activity_raw.get("calories"), "activity.calories", errors),
        steps_weight=float(activity_raw.get("steps_weight", 0.5)),
        calories_weight=float(activity_raw.get("calories_weight", 0.5)),
        missing_component_score=float(activity_raw.get("missing_component_score", 50)),
        daily_step_goal=int(activity_raw.get("daily_step_goal", 10000)),
    )
    proxy = _build_section(ProxyRecoveryConfig, raw.get("proxy_recovery"), "proxy_recovery", errors)
    recovery = _build_section(RecoveryConfig, raw.get("recovery"), "recovery", errors)
    norms = _build_section(NormsConfig, raw.get("norms"), "norms", errors)
    stress = _build_section(StressConfig, raw.get("stress"), "stress", errors)
    metabolic_age = _build_tiers(raw.get("metabolic_age"), errors)
    backfill = _build_section(BackfillConfig, raw.get("backfill"), "backfill", errors)

    # Weights should sum to ~1.0 (warn only)
    for name, total in (
        ("proxy_recovery", proxy.sleep_weight + proxy.activity_weight + proxy.rhr_weight),
        ("recovery", recovery.hrv_weight + recovery.rhr_weight + recovery.sleep_weight),
        ("activity", activity.steps_weight + activity.calories_weight),
    ):
        if not 0.95 <= total <= 1.05:
            logger.warning("%s weights sum to %.3f (expected ~1.0)", name, total)

    if errors:
        raise ConfigValidationError(
            f"reconcile_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ReconcileConfig(
        version=version,
        source_priorities=source_priorities,
        field_priorities=field_priorities,
        unknown_source_priority=unknown_priority,
        min_recency_gap_hours=min_gap,
        sleep=sleep,
        lookback=lookback,
        fallback_fields=fallback_fields,
        unit_guards=unit_guards,
        heart_rate=heart_rate,
        default_age=default_age,
        activity=activity,
        proxy_recovery=proxy,
        recovery=recovery,
        norms=norms,
        stress=stress,
        metabolic_age=metabolic_age,
        backfill=backfill,
        _raw=raw,
    )


def _configured_path() -> Path:
    """Return the YAML path from settings, or the bundled file."""
    override = get_settings().reconcile_config_path
    return Path(override) if override else _CONFIG_PATH


def load_reconcile_config(path: Path | None = None) -> ReconcileConfig:
    """Load and validate the reconciliation config from disk.

    Args:
        path: Override path to YAML. Uses the bundled reconcile_config.yaml by default.

    Returns:
        Validated ReconcileConfig instance.
    """
    target = path or _configured_path()
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded reconcile config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: ReconcileConfig | None = None
_config_lock = threading.Lock()


def get_reconcile_config() -> ReconcileConfig:
    """Return the global ReconcileConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_reconcile_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_reconcile_config()
    return _config


def reload_reconcile_config(path: Path | None = None) -> ReconcileConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Args:
        path: Override path to YAML. Defaults to bundled reconcile_config.yaml.

    Returns:
        The newly loaded ReconcileConfig.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_reconcile_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded reconcile config: %s → %s", old_version, new_config.version)
    return new_config
