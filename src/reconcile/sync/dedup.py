"""Deduplication logic for granular data points.

The same reading often arrives more than once: a re-imported archive, the
same file found both locally and in the drive backup folder, or overlapping
API windows.  DataPoint appends are idempotent on the natural key.

Dedup keys:
    - data point:  (user_id, data_type, start_time, value)
    - import file: (user_id, source, file name, modified time)
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from uuid import UUID

from src.reconcile.base import DataPoint

logger = logging.getLogger("healthsync.reconcile.sync.dedup")


def data_point_key(point: DataPoint) -> str:
    """Generate a dedup key for a data point.

    Start times are normalized to UTC so the same instant from two sources
    with different offsets yields one key.

    Args:
        point: The data point.

    Returns:
        Colon-separated dedup key string.
    """
    start = point.start_time
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return f"{point.user_id}:{point.data_type}:{start.timestamp()!r}:{float(point.value)!r}"


def import_file_key(user_id: UUID, source: str, name: str, modified_at: datetime | None) -> str:
    """Generate a dedup key for an imported file.

    Args:
        user_id:     Internal HealthSync user UUID.
        source:      Source slug.
        name:        File name.
        modified_at: Last-modified time reported by the origin.

    Returns:
        Dedup key string.
    """
    stamp = modified_at.isoformat() if modified_at else "unknown"
    return f"{user_id}:{source}:{name}:{stamp}"


class InMemoryDedupCache:
    """Keys of files already imported by this process.

    The Drive adapter consults it so a folder polled again does not
    download the same backup twice.  Only successful imports are marked,
    so a failed file is retried on the next run.  The oldest keys are
    evicted once ``max_entries`` is exceeded.

    Usage::

        key = import_file_key(user_id, "google_drive", name, modified_at)
        if not cache.is_seen(key):
            ...  # download and import
            cache.mark_seen(key)
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._max_entries = max_entries

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self._max_entries:
            evicted, _ = self._seen.popitem(last=False)
            logger.debug("Dedup cache full, evicted %s", evicted)

    def __len__(self) -> int:
        return len(self._seen)
