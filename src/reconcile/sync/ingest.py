"""Adapter → FieldMapper → FreshnessArbiter → DayStore pipeline.

Each extracted item is processed independently: a record that fails to
parse, hits a locked date or loses arbitration is counted and the batch
carries on.  Only the ImportSummary tells the caller how the run went.

Usage::

    pipeline = IngestPipeline(store)
    summary = await pipeline.run(RenphoAdapter(), user_id, csv_path)
    logger.info(summary.message)
"""

from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import UUID

import httpx

from src.reconcile.base import ExtractionResult, SourceAdapter
from src.reconcile.day_store import DayStore
from src.reconcile.errors import LockViolationAttempt, ParseError, StorageConflict
from src.reconcile.field_mapper import FieldMapper
from src.reconcile.import_log import ImportSummary

logger = logging.getLogger("healthsync.reconcile.sync.ingest")


class IngestPipeline:
    """Feed adapter output through mapping, arbitration and storage.

    Args:
        store:      Target DayStore.
        mapper:     FieldMapper (defaults to one on the store's config).
        on_changed: Called with the user id whenever something was stored.
    """

    def __init__(
        self,
        store: DayStore,
        mapper: FieldMapper | None = None,
        on_changed: Callable[[UUID], None] | None = None,
    ) -> None:
        self._store = store
        self._mapper = mapper or FieldMapper()
        self._on_changed = on_changed

    async def run(
        self,
        adapter: SourceAdapter,
        user_id: UUID,
        origin: Any,
        operation: str = "import",
    ) -> ImportSummary:
        """Extract from ``origin`` with ``adapter`` and ingest the result.

        An extraction that fails outright (unreadable archive, network
        failure) is reported in the summary rather than raised.
        """
        try:
            result = await adapter.extract(user_id, origin)
        except (ParseError, httpx.HTTPError) as exc:
            logger.error("%s extraction failed for %s: %s", adapter.DISPLAY_NAME, user_id, exc)
            summary = ImportSummary(user_id=user_id, source=adapter.SOURCE_ID, operation=operation)
            summary.log_file_error(f"{origin}: {exc}")
            return summary.finish()
        return self.ingest(user_id, result, operation)

    def ingest(self, user_id: UUID, result: ExtractionResult, operation: str = "import") -> ImportSummary:
        """Store every record and data point of an extraction result."""
        summary = ImportSummary(user_id=user_id, source=result.source, operation=operation)
        summary.files_processed = result.files_processed
        for message in result.errors:
            summary.log_file_error(message)

        for item in result:
            if item.points:
                summary.points_added += self._store.append_data_points(item.points)

            try:
                partial = self._mapper.normalize(item.raw)
            except ParseError as exc:
                summary.log_error(f"{exc.origin or item.raw.origin or result.source}: {exc}")
                continue
            if partial is None:
                if not item.points:
                    summary.log_skipped(f"{item.raw.shape.value} record with no known fields")
                continue
            for warning in partial.warnings:
                summary.log_info(str(warning))

            try:
                outcome = self._store.merge(partial)
            except LockViolationAttempt as exc:
                summary.log_skipped(str(exc))
                continue
            except StorageConflict as exc:
                summary.log_error(f"{partial.date}: {exc}")
                continue

            if outcome.changed:
                summary.log_imported(f"{partial.date} {', '.join(outcome.changed)}")
            else:
                summary.log_skipped(f"{partial.date}: no field won arbitration")

        if self._on_changed and (summary.records_imported or summary.points_added):
            self._on_changed(user_id)
        return summary.finish()
