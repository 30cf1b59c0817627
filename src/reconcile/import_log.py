"""Import run summaries.

Each adapter run produces one ImportSummary: counts of imported, skipped
and failed records, the files touched and human-readable detail lines.  A
run that imported something but also hit errors is reported as ``partial``
rather than failed, so one bad file never hides the rest of an import.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

logger = logging.getLogger("healthsync.reconcile.import_log")

_MAX_DETAILS = 500


@dataclass
class ImportSummary:
    """Outcome of one adapter run.

    Attributes:
        user_id:          Internal HealthSync user UUID.
        source:           Source slug.
        operation:        'import', 'sync', 'backfill', ...
        records_imported: Day records that changed at least one field.
        records_skipped:  Records rejected (lock, freshness, empty).
        records_errors:   Records that failed to parse or store.
        points_added:     New granular data points.
        files_processed:  Files / endpoints read successfully.
        details:          Human-readable detail lines.
        errors:           Error messages (per record or per file).
        started_at:       UTC start time.
        finished_at:      UTC finish time, once finished.
    """

    user_id: UUID
    source: str
    operation: str = "import"
    records_imported: int = 0
    records_skipped: int = 0
    records_errors: int = 0
    points_added: int = 0
    files_processed: int = 0
    details: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def status(self) -> str:
        if self.records_errors or self.errors:
            return "partial" if self.records_imported or self.points_added else "error"
        return "success"

    @property
    def success(self) -> bool:
        return self.status != "error"

    def _detail(self, line: str) -> None:
        if len(self.details) < _MAX_DETAILS:
            self.details.append(line)

    def log_imported(self, message: str) -> None:
        self.records_imported += 1
        self._detail(f"imported: {message}")
        logger.debug("[%s] imported %s", self.source, message)

    def log_skipped(self, message: str) -> None:
        self.records_skipped += 1
        self._detail(f"skipped: {message}")
        logger.debug("[%s] skipped %s", self.source, message)

    def log_error(self, message: str) -> None:
        self.records_errors += 1
        self.errors.append(message)
        logger.warning("[%s] error: %s", self.source, message)

    def log_file_error(self, message: str) -> None:
        self.errors.append(message)
        logger.warning("[%s] file error: %s", self.source, message)

    def log_info(self, message: str) -> None:
        self._detail(message)
        logger.info("[%s] %s", self.source, message)

    def finish(self) -> "ImportSummary":
        self.finished_at = datetime.now(timezone.utc)
        logger.info(
            "%s %s for %s finished (%s): %d imported, %d skipped, %d errors, %d points, %d files",
            self.source, self.operation, self.user_id, self.status,
            self.records_imported, self.records_skipped, self.records_errors,
            self.points_added, self.files_processed,
        )
        return self

    @property
    def message(self) -> str:
        return (
            f"{self.records_imported} records imported, {self.records_skipped} skipped, "
            f"{len(self.errors)} errors from {self.files_processed} files"
        )


class ImportLogStore:
    """Keeps finished summaries per user."""

    def __init__(self) -> None:
        self._logs: dict[UUID, list[ImportSummary]] = {}
        self._lock = threading.Lock()

    def add(self, summary: ImportSummary) -> None:
        with self._lock:
            self._logs.setdefault(summary.user_id, []).append(summary)

    def for_user(self, user_id: UUID, limit: int | None = None) -> list[ImportSummary]:
        with self._lock:
            logs = list(reversed(self._logs.get(user_id, [])))
        return logs[:limit] if limit else logs

    def clear(self, user_id: UUID) -> int:
        with self._lock:
            return len(self._logs.pop(user_id, []))
