"""HealthSync Health Data Reconciliation Engine.

This package merges health readings from several sources into one
canonical record per user per day, deciding field by field which source
wins, and derives composite metrics from the stored values.

Subpackages:
    adapters/ — Source adapters (Health Connect, Google Drive, RENPHO, Mi Fitness)
    sync/     — Ingest pipeline, derived-metrics backfill, deduplication

Core modules:
    base               — SourceAdapter ABC and canonical data models
    config_loader      — Load/validate/hot-reload reconcile_config.yaml
    field_mapper       — Source-native keys → canonical DayRecord fields
    arbiter            — Freshness/priority overwrite decisions
    sleep_attribution  — Local-day and sleep-night attribution
    day_store          — Canonical day records and data points
    locks              — Per-user data lock
    metrics_calculator — Derived scores (recovery, strain, stress, ages)
    manual_entries     — Same-day manual heart-rate overrides
    import_log         — Import summaries and history
    errors             — Error and warning taxonomy
    service            — Health metrics read/write facade
"""

from src.reconcile.base import (
    DataPoint,
    DayRecord,
    ExtractionResult,
    FieldProvenance,
    PartialDayRecord,
    RawRecord,
    RecordShape,
    SourceAdapter,
)
from src.reconcile.config_loader import ReconcileConfig, get_reconcile_config

__all__ = [
    "SourceAdapter",
    "DayRecord",
    "PartialDayRecord",
    "FieldProvenance",
    "DataPoint",
    "RawRecord",
    "RecordShape",
    "ExtractionResult",
    "ReconcileConfig",
    "get_reconcile_config",
]
