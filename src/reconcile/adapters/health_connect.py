"""Health Connect export adapter.

Health Connect has no server-side API.  The phone app writes a backup zip
holding one SQLite database, which the user uploads (or the drive backup
adapter downloads).  This adapter extracts the database to a temporary
directory, reads the known record tables and removes the extracted copy
again, whatever happens.

Tables read (all timestamps are epoch milliseconds, UTC):
    steps_record_table                 — start_time, count
    sleep_stages_table                 — stage_start_time, stage_end_time, stage_type
    heart_rate_record_series_table     — epoch_millis, beats_per_minute
    resting_heart_rate_record_table    — time, beats_per_minute
    weight_record_table                — time, weight (grams)
    body_fat_record_table              — time, percentage
    blood_pressure_record_table        — time, systolic, diastolic
    oxygen_saturation_record_table     — time, percentage
    vo2_max_record_table               — time, vo2_milliliters_per_minute_kilogram

The export day itself is usually incomplete, so by default data dated on
or after the archive's creation date is skipped.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import tempfile
import zipfile
from collections import defaultdict
from contextlib import closing
from datetime import date, datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Iterable
from uuid import UUID

from src.config import get_settings
from src.reconcile.base import DataPoint, ExtractionResult, RecordShape, SourceAdapter
from src.reconcile.config_loader import ReconcileConfig
from src.reconcile.errors import ParseError, PayloadTooLarge
from src.reconcile.sleep_attribution import StageSegment, group_sleep_nights

logger = logging.getLogger("healthsync.reconcile.adapters.health_connect")

# Single-reading tables: table → (value columns → canonical field, shape, data_type, unit)
_READING_TABLES: dict[str, tuple[dict[str, str], RecordShape, str, str]] = {
    "resting_heart_rate_record_table": (
        {"beats_per_minute": "resting_heart_rate"}, RecordShape.VITALS, "resting_heart_rate", "bpm",
    ),
    "weight_record_table": ({"weight": "weight"}, RecordShape.BODY_COMPOSITION, "weight", "kg"),
    "body_fat_record_table": (
        {"percentage": "body_fat_percentage"}, RecordShape.BODY_COMPOSITION, "body_fat", "percentage",
    ),
    "blood_pressure_record_table": (
        {"systolic": "blood_pressure_systolic", "diastolic": "blood_pressure_diastolic"},
        RecordShape.VITALS, "blood_pressure", "mmHg",
    ),
    "oxygen_saturation_record_table": (
        {"percentage": "oxygen_saturation"}, RecordShape.VITALS, "oxygen_saturation", "percentage",
    ),
    "vo2_max_record_table": (
        {"vo2_milliliters_per_minute_kilogram": "vo2_max"}, RecordShape.VITALS, "vo2_max", "ml/kg/min",
    ),
}

# Health Connect stores mass in grams
_GRAM_COLUMNS = frozenset({"weight"})


def is_health_connect_archive(name: str) -> bool:
    """Return True if a file name looks like a Health Connect backup zip."""
    lowered = name.lower()
    return lowered.endswith(".zip") and any(
        tag in lowered for tag in ("health connect", "health_connect", "healthconnect")
    )


class HealthConnectAdapter(SourceAdapter):
    """Reads Health Connect backup archives (zip → SQLite).

    Args:
        config:            Reconciliation policy.
        timezone_name:     User's IANA timezone.
        cutoff_date:       Skip data dated on or after this local date.
        use_export_cutoff: Without an explicit cutoff, use the archive's
                           creation date as the cutoff.
    """

    SOURCE_ID = "health_connect"
    DISPLAY_NAME = "Health Connect"

    def __init__(
        self,
        config: ReconcileConfig | None = None,
        timezone_name: str | None = None,
        cutoff_date: date | None = None,
        use_export_cutoff: bool = True,
    ) -> None:
        super().__init__(config, timezone_name)
        self._cutoff_date = cutoff_date
        self._use_export_cutoff = use_export_cutoff
        settings = get_settings()
        self._max_download_bytes = settings.max_download_bytes
        self._max_archive_bytes = settings.max_archive_bytes

    # ------------------------------------------------------------------
    # SourceAdapter interface
    # ------------------------------------------------------------------

    async def extract(self, user_id: UUID, origin: Any) -> ExtractionResult:
        """Extract one archive given as a path or raw bytes.

        An unreadable archive is reported in ``errors``; nothing is raised.
        """
        name = Path(origin).name if isinstance(origin, (str, Path)) else "upload.zip"
        try:
            data = Path(origin).read_bytes() if isinstance(origin, (str, Path)) else bytes(origin)
            return await self.read_archive(user_id, data, name)
        except (ParseError, OSError) as exc:
            logger.warning("Health Connect archive %s failed: %s", name, exc)
            return ExtractionResult(source=self.SOURCE_ID, errors=[f"{name}: {exc}"])

    async def read_archive(self, user_id: UUID, data: bytes, name: str = "upload.zip") -> ExtractionResult:
        """Extract an archive held in memory.

        Raises:
            PayloadTooLarge: If the archive or its database exceeds the size caps.
            ParseError:      If the archive or database is unreadable.
        """
        if len(data) > self._max_download_bytes:
            raise PayloadTooLarge(
                f"{name} is {len(data)} bytes (limit {self._max_download_bytes})",
                source=self.SOURCE_ID, origin=name,
            )
        # zip and sqlite are blocking
        return await asyncio.to_thread(self._read_archive_sync, user_id, data, name)

    # ------------------------------------------------------------------
    # Archive handling
    # ------------------------------------------------------------------

    def _read_archive_sync(self, user_id: UUID, data: bytes, name: str) -> ExtractionResult:
        try:
            archive = zipfile.ZipFile(BytesIO(data))
        except zipfile.BadZipFile as exc:
            raise ParseError(f"{name} is not a zip archive", source=self.SOURCE_ID, origin=name) from exc

        with archive, tempfile.TemporaryDirectory(prefix="healthsync-hc-") as workdir:
            entry = next((i for i in archive.infolist() if i.filename.endswith(".db")), None)
            if entry is None:
                raise ParseError(f"{name} contains no database file", source=self.SOURCE_ID, origin=name)
            if entry.file_size > self._max_archive_bytes:
                raise PayloadTooLarge(
                    f"{entry.filename} expands to {entry.file_size} bytes (limit {self._max_archive_bytes})",
                    source=self.SOURCE_ID, origin=name,
                )
            db_path = Path(workdir) / "health_connect_export.db"
            with archive.open(entry) as src, db_path.open("wb") as dst:
                while chunk := src.read(1 << 20):
                    dst.write(chunk)

            cutoff = self._cutoff_date
            if cutoff is None and self._use_export_cutoff:
                cutoff = date(*entry.date_time[:3])
                logger.info("Health Connect cutoff for %s: only data before %s", name, cutoff)

            result = self.read_database(user_id, db_path, cutoff)
            result.files_processed += 1
            logger.info(
                "Health Connect archive %s: %d records for %s", name, len(result), user_id
            )
            return result

    def read_database(self, user_id: UUID, db_path: Path, cutoff: date | None = None) -> ExtractionResult:
        """Read every known table of an extracted database.

        A failing table is recorded in ``errors`` and the other tables are
        still read.

        Raises:
            ParseError: If the file is not a SQLite database.
        """
        result = ExtractionResult(source=self.SOURCE_ID)
        try:
            conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        except sqlite3.Error as exc:
            raise ParseError(f"Cannot open database: {exc}", source=self.SOURCE_ID) from exc

        with closing(conn):
            try:
                tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
            except sqlite3.DatabaseError as exc:
                raise ParseError(f"Not a Health Connect database: {exc}", source=self.SOURCE_ID) from exc

            readers = [
                ("steps_record_table", self._read_steps),
                ("sleep_stages_table", self._read_sleep),
                ("heart_rate_record_series_table", self._read_heart_rate),
            ] + [(table, self._read_readings) for table in _READING_TABLES]

            for table, reader in readers:
                if table not in tables:
                    logger.debug("Health Connect export has no %s", table)
                    continue
                try:
                    reader(conn, table, user_id, cutoff, result)
                except (sqlite3.Error, ValueError, TypeError) as exc:
                    logger.warning("Reading %s failed: %s", table, exc)
                    result.errors.append(f"{table}: {exc}")
        return result

    def _before_cutoff(self, day: date, cutoff: date | None) -> bool:
        return cutoff is None or day < cutoff

    # ------------------------------------------------------------------
    # Table readers
    # ------------------------------------------------------------------

    def _read_steps(
        self, conn: sqlite3.Connection, table: str, user_id: UUID, cutoff: date | None, result: ExtractionResult
    ) -> None:
        rows = conn.execute(f"SELECT DISTINCT start_time, count FROM {table} ORDER BY start_time")
        by_day: dict[date, list[DataPoint]] = defaultdict(list)
        for start_ms, raw_count in rows:
            count = self._safe_float(raw_count)
            if start_ms is None or count is None:
                if raw_count is not None:
                    logger.warning("Skipping %s row with count %r", table, raw_count)
                continue
            start = self._from_epoch(start_ms)
            day = self._local_date(start)
            if not self._before_cutoff(day, cutoff):
                continue
            by_day[day].append(
                self._point(user_id, RecordShape.DAILY_ACTIVITY, "steps", start, count)
            )
        for day, points in sorted(by_day.items()):
            total = int(sum(p.value for p in points))
            if total <= 0:
                continue
            raw = self._raw(
                user_id, RecordShape.DAILY_ACTIVITY,
                {"date": day.isoformat(), "steps": total},
                recorded_at=max(p.start_time for p in points), origin=table,
            )
            result.add(raw, points)

    def _read_sleep(
        self, conn: sqlite3.Connection, table: str, user_id: UUID, cutoff: date | None, result: ExtractionResult
    ) -> None:
        sleep_cfg = self._config.sleep
        segments = []
        for start_ms, end_ms, stage_type in conn.execute(
            f"SELECT stage_start_time, stage_end_time, stage_type FROM {table} ORDER BY stage_start_time"
        ):
            if start_ms is None or end_ms is None or end_ms <= start_ms:
                continue
            segments.append(
                StageSegment(
                    start=self._from_epoch(start_ms),
                    end=self._from_epoch(end_ms),
                    stage=sleep_cfg.stage_name(self._safe_int(stage_type) or 0),
                )
            )

        for night_date, night in sorted(group_sleep_nights(segments, self._tz, sleep_cfg.day_cutoff_hour).items()):
            if not self._before_cutoff(night_date, cutoff):
                continue
            asleep = night.asleep_minutes(sleep_cfg.asleep_stages)
            if asleep <= 0:
                continue
            points = [
                self._point(
                    user_id, RecordShape.SLEEP_SESSION, "sleep_stage", seg.start, round(seg.minutes, 2),
                    end=seg.end, metadata={"stage": seg.stage},
                )
                for seg in night.segments
            ]
            values = {
                "date": night_date.isoformat(),
                "sleep_duration": asleep,
                "deep_sleep": round(night.stage_minutes.get("deep", 0)),
                "rem_sleep": round(night.stage_minutes.get("rem", 0)),
                "light_sleep": round(night.stage_minutes.get("light", 0)),
                "sleep_efficiency": night.efficiency(sleep_cfg.asleep_stages),
                "wake_events": night.wake_events(),
                "start_time": night.start.isoformat(),
                "end_time": night.end.isoformat(),
            }
            raw = self._raw(user_id, RecordShape.SLEEP_SESSION, values, recorded_at=night.end, origin=table)
            result.add(raw, points)

    def _read_heart_rate(
        self, conn: sqlite3.Connection, table: str, user_id: UUID, cutoff: date | None, result: ExtractionResult
    ) -> None:
        hr_cfg = self._config.heart_rate
        by_day: dict[date, list[DataPoint]] = defaultdict(list)
        for epoch_ms, raw_bpm in conn.execute(f"SELECT epoch_millis, beats_per_minute FROM {table}"):
            bpm = self._safe_float(raw_bpm)
            if epoch_ms is None or bpm is None:
                continue
            if not hr_cfg.valid_min_bpm < bpm < hr_cfg.valid_max_bpm:
                continue
            moment = self._from_epoch(epoch_ms)
            day = self._local_date(moment)
            if not self._before_cutoff(day, cutoff):
                continue
            by_day[day].append(
                self._point(user_id, RecordShape.VITALS, "heart_rate", moment, bpm)
            )
        # Points only; resting HR is derived from them on read
        for day, points in sorted(by_day.items()):
            raw = self._raw(user_id, RecordShape.VITALS, {"date": day.isoformat()}, origin=table)
            result.add(raw, points)

    def _read_readings(
        self, conn: sqlite3.Connection, table: str, user_id: UUID, cutoff: date | None, result: ExtractionResult
    ) -> None:
        columns, shape, data_type, unit = _READING_TABLES[table]
        query = f"SELECT time, {', '.join(columns)} FROM {table} ORDER BY time"
        latest: dict[date, tuple[datetime, dict[str, float]]] = {}
        points: dict[date, list[DataPoint]] = defaultdict(list)

        for row in conn.execute(query):
            if row[0] is None:
                continue
            moment = self._from_epoch(row[0])
            day = self._local_date(moment)
            if not self._before_cutoff(day, cutoff):
                continue
            try:
                values = self._reading_values(columns, row[1:])
            except ValueError as exc:
                logger.warning("Skipping %s row at %s: %s", table, moment.isoformat(), exc)
                continue
            if not values:
                continue
            # rows are time-ordered, so the last reading of a day wins
            latest[day] = (moment, values)
            first = next(iter(values.values()))
            points[day].append(
                self._point(user_id, shape, data_type, moment, first, unit=unit, metadata=dict(values))
            )

        for day, (moment, values) in sorted(latest.items()):
            raw = self._raw(
                user_id, shape, {"date": day.isoformat(), **values}, recorded_at=moment, origin=table
            )
            result.add(raw, points[day])

    def _reading_values(self, columns: dict[str, str], row: Iterable[Any]) -> dict[str, float]:
        values: dict[str, float] = {}
        for (column, canonical), value in zip(columns.items(), row):
            if value is None:
                continue
            number = self._safe_float(value)
            if number is None:
                raise ValueError(f"{column} is not numeric: {value!r}")
            if column in _GRAM_COLUMNS:
                number = round(number / 1000.0, 2)
            values[canonical] = number
        return values
