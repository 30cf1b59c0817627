"""Sync infrastructure for HealthSync reconciliation.

Modules:
    ingest   — Adapter output → FieldMapper → arbiter → DayStore pipeline
    backfill — Derived-metrics backfill (batched, resumable)
    dedup    — Deduplication keys (data point natural key, imported files)
"""
