"""Tests for reconcile_config.yaml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.reconcile.config_loader import (
    ConfigValidationError,
    ReconcileConfig,
    _validate_and_build,
    get_reconcile_config,
    load_reconcile_config,
    reload_reconcile_config,
)


def _minimal_raw() -> dict:
    return {
        "version": "1.0",
        "source_priorities": {"manual": 1, "renpho": 4},
        "sleep": {"day_cutoff_hour": 18, "stage_codes": {1: "awake", 5: "deep"}},
        "activity": {
            "steps": {"low": 3000, "high": 12000, "low_score": 100, "high_score": 50},
            "calories": {"low": 200, "high": 800, "low_score": 100, "high_score": 50},
        },
    }


class TestConfigLoading:
    """Tests for loading the bundled reconcile_config.yaml."""

    def test_load_default_config(self, reconcile_config: ReconcileConfig) -> None:
        assert reconcile_config.version == "1.0"
        assert reconcile_config.source_priorities
        assert reconcile_config.fallback_fields

    def test_manual_ranks_first(self, reconcile_config: ReconcileConfig) -> None:
        assert reconcile_config.sources_by_priority()[0] == "manual"
        assert reconcile_config.priority("weight", "manual") == 1.0

    def test_source_order(self, reconcile_config: ReconcileConfig) -> None:
        assert reconcile_config.sources_by_priority() == [
            "manual", "health_connect", "google_drive", "renpho", "mi_fitness", "calculated",
        ]

    def test_field_override_for_sleep_duration(self, reconcile_config: ReconcileConfig) -> None:
        assert reconcile_config.priority("sleep_duration", "health_connect") == 1.5
        assert reconcile_config.priority("steps", "health_connect") == 2.0

    def test_unknown_source_gets_unknown_rank(self, reconcile_config: ReconcileConfig) -> None:
        assert reconcile_config.priority("weight", "fitbit") == 99.0
        assert reconcile_config.priority("weight", None) == 99.0

    def test_sleep_settings(self, reconcile_config: ReconcileConfig) -> None:
        assert reconcile_config.sleep.day_cutoff_hour == 18
        assert reconcile_config.sleep.stage_name(5) == "deep"
        assert reconcile_config.sleep.stage_name(42) == "unknown"

    def test_lookback_bounds(self, reconcile_config: ReconcileConfig) -> None:
        assert reconcile_config.lookback.fallback_days == 365
        assert reconcile_config.lookback.heart_rate_search_days == 30

    def test_metabolic_tables_end_unbounded(self, reconcile_config: ReconcileConfig) -> None:
        for metric, rules in reconcile_config.metabolic_age.items():
            assert rules[-1].below is None and rules[-1].at_most is None, metric

    def test_recovery_weights_sum_to_one(self, reconcile_config: ReconcileConfig) -> None:
        rc = reconcile_config.recovery
        assert rc.hrv_weight + rc.rhr_weight + rc.sleep_weight == pytest.approx(1.0)


class TestConfigValidation:
    """Tests for config validation logic."""

    def test_valid_minimal_config(self) -> None:
        config = _validate_and_build(_minimal_raw())
        assert config.version == "1.0"
        assert config.min_recency_gap_hours == 2.0
        assert config.lookback.fallback_days == 365

    def test_missing_source_priorities_raises(self) -> None:
        raw = _minimal_raw()
        del raw["source_priorities"]
        with pytest.raises(ConfigValidationError, match="source_priorities"):
            _validate_and_build(raw)

    def test_manual_must_rank_first(self) -> None:
        raw = _minimal_raw()
        raw["source_priorities"] = {"manual": 5, "renpho": 1}
        with pytest.raises(ConfigValidationError, match="manual"):
            _validate_and_build(raw)

    def test_non_numeric_priority_raises(self) -> None:
        raw = _minimal_raw()
        raw["source_priorities"]["renpho"] = "best"
        with pytest.raises(ConfigValidationError):
            _validate_and_build(raw)

    def test_cutoff_out_of_range_raises(self) -> None:
        raw = _minimal_raw()
        raw["sleep"]["day_cutoff_hour"] = 25
        with pytest.raises(ConfigValidationError, match="day_cutoff_hour"):
            _validate_and_build(raw)

    def test_unknown_section_key_raises(self) -> None:
        raw = _minimal_raw()
        raw["lookback"] = {"fallback_days": 30, "forever": True}
        with pytest.raises(ConfigValidationError, match="forever"):
            _validate_and_build(raw)

    def test_bounded_final_tier_raises(self) -> None:
        raw = _minimal_raw()
        raw["metabolic_age"] = {"vo2_max": [{"below": 35, "adjust": 2}]}
        with pytest.raises(ConfigValidationError, match="unbounded"):
            _validate_and_build(raw)

    def test_all_errors_reported_together(self) -> None:
        raw = _minimal_raw()
        raw["sleep"]["day_cutoff_hour"] = 30
        raw["freshness"] = {"min_recency_gap_hours": -1}
        with pytest.raises(ConfigValidationError, match="2 validation error"):
            _validate_and_build(raw)

    def test_hot_reload(self, tmp_path: Path) -> None:
        """reload_reconcile_config() replaces the global singleton."""
        config_content = """
version: "2.0-test"
source_priorities:
  manual: 1
  renpho: 2
sleep:
  day_cutoff_hour: 18
  stage_codes:
    1: awake
    4: light
activity:
  steps: {low: 3000, high: 12000, low_score: 100, high_score: 50}
  calories: {low: 200, high: 800, low_score: 100, high_score: 50}
"""
        config_file = tmp_path / "reconcile_config.yaml"
        config_file.write_text(config_content.strip())

        try:
            new_config = reload_reconcile_config(path=config_file)
            assert new_config.version == "2.0-test"
            assert get_reconcile_config() is new_config
        finally:
            reload_reconcile_config()

    def test_failed_reload_keeps_old_config(self, tmp_path: Path) -> None:
        before = get_reconcile_config()
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("version: '3.0'\nsource_priorities: {}\n")
        with pytest.raises(ConfigValidationError):
            reload_reconcile_config(path=config_file)
        assert get_reconcile_config() is before

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_reconcile_config(path=Path("/nonexistent/path/config.yaml"))
