"""RENPHO smart-scale CSV adapter.

The RENPHO app exports one CSV row per weigh-in.  Headers carry their unit
in parentheses (``Weight(lb)``, ``Body Fat(%)``, ``BMR(kcal)``); columns in
pounds are converted to kilograms and the unit suffix is dropped from the
key.  Empty and zero cells mean "not measured" on this scale and are
dropped.  Rows without a positive weight, and weigh-ins from the current
(still incomplete) local day, are skipped.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

from src.reconcile.base import ExtractionResult, RecordShape, SourceAdapter
from src.reconcile.config_loader import ReconcileConfig
from src.reconcile.errors import ParseError

logger = logging.getLogger("healthsync.reconcile.adapters.renpho")

_UNIT_SUFFIX = re.compile(r"\s*\(([^)]*)\)\s*$")

# Date columns, most specific first
_DATE_COLUMNS = ("datetime", "date", "time", "time_of_measurement", "measurement_time")

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y",
)

_EMPTY_VALUES = frozenset({"", "0", "0.0", "--", "-"})


def is_renpho_file(name: str) -> bool:
    return "renpho" in name.lower()


def normalize_header(header: str) -> tuple[str, str | None]:
    """Split a RENPHO header into a snake_case key and its unit.

    ``"Body Fat(%)"`` → ``("body_fat", "%")``; ``"Weight(lb)"`` → ``("weight", "lb")``.
    """
    text = header.strip().lstrip("\ufeff")
    unit = None
    match = _UNIT_SUFFIX.search(text)
    if match:
        unit = match.group(1).strip().lower()
        text = text[: match.start()]
    key = re.sub(r"[^0-9a-zA-Z]+", "_", text).strip("_").lower()
    return key, unit


class RenphoAdapter(SourceAdapter):
    """Reads RENPHO CSV exports.

    Args:
        config:        Reconciliation policy.
        timezone_name: User's IANA timezone; naive CSV times are local.
        today:         Local "today" (rows on this date are skipped).
    """

    SOURCE_ID = "renpho"
    DISPLAY_NAME = "RENPHO"

    def __init__(
        self,
        config: ReconcileConfig | None = None,
        timezone_name: str | None = None,
        today: date | None = None,
    ) -> None:
        super().__init__(config, timezone_name)
        self._today = today

    async def extract(self, user_id: UUID, origin: Any) -> ExtractionResult:
        """Extract a CSV given as a path, bytes or text.

        An unreadable file is reported in ``errors``; nothing is raised.
        """
        name = Path(origin).name if isinstance(origin, Path) else "renpho.csv"
        try:
            if isinstance(origin, Path):
                content: bytes | str = origin.read_bytes()
            else:
                content = origin
            result = self.parse_csv(user_id, content, name)
        except (ParseError, OSError) as exc:
            logger.warning("RENPHO file %s failed: %s", name, exc)
            return ExtractionResult(source=self.SOURCE_ID, errors=[f"{name}: {exc}"])
        return result

    def parse_csv(self, user_id: UUID, content: bytes | str, name: str = "renpho.csv") -> ExtractionResult:
        """Parse RENPHO CSV content.

        Raises:
            ParseError: If the content is not decodable or has no header row.
        """
        if isinstance(content, bytes):
            try:
                text = content.decode("utf-8-sig")
            except UnicodeDecodeError as exc:
                raise ParseError(f"{name} is not UTF-8 text", source=self.SOURCE_ID, origin=name) from exc
        else:
            text = content.lstrip("\ufeff")

        reader = csv.reader(io.StringIO(text))
        header_row = next(reader, None)
        if not header_row:
            raise ParseError(f"{name} has no header row", source=self.SOURCE_ID, origin=name)
        headers = [normalize_header(h) for h in header_row]

        result = ExtractionResult(source=self.SOURCE_ID, files_processed=1)
        today = self._today or datetime.now(self._tz).date()
        skipped = 0

        for line_no, row in enumerate(reader, start=2):
            if not any(cell.strip() for cell in row):
                continue
            fields = self._row_fields(headers, row)
            moment = self._row_time(fields)
            weight = self._safe_float(fields.get("weight"))
            if moment is None or not weight or weight <= 0:
                skipped += 1
                logger.debug("RENPHO %s line %d skipped: no date or weight", name, line_no)
                continue
            day = self._local_date(moment)
            if day >= today:
                skipped += 1
                continue
            for column in _DATE_COLUMNS:
                fields.pop(column, None)
            fields["date"] = day.isoformat()
            raw = self._raw(
                user_id, RecordShape.BODY_COMPOSITION, fields, recorded_at=moment, origin=name
            )
            point = self._point(user_id, RecordShape.BODY_COMPOSITION, "weight", moment, weight)
            result.add(raw, [point])

        logger.info("RENPHO %s: %d weigh-ins, %d rows skipped", name, len(result), skipped)
        return result

    def _row_fields(self, headers: list[tuple[str, str | None]], row: list[str]) -> dict[str, Any]:
        lb_to_kg = self._config.unit_guards.pounds_to_kg
        fields: dict[str, Any] = {}
        for (key, unit), cell in zip(headers, row):
            value = cell.strip()
            if not key or value in _EMPTY_VALUES:
                continue
            if unit == "lb":
                number = self._safe_float(value)
                if number is None:
                    continue
                fields[key] = round(number * lb_to_kg, 2)
            else:
                fields[key] = value
        return fields

    def _row_time(self, fields: dict[str, Any]) -> datetime | None:
        """Resolve a row's measurement time as aware UTC.  Naive times are local."""
        for column in _DATE_COLUMNS:
            text = fields.get(column)
            if not text:
                continue
            parsed = self._parse_local(str(text))
            if parsed is not None:
                return parsed
        return None

    def _parse_local(self, text: str) -> datetime | None:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in _DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self._tz)
        return parsed.astimezone(timezone.utc)
