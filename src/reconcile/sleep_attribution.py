"""Local-time conversion and sleep-night attribution.

All timestamps arrive as UTC.  They are converted to the user's civil time
with ``zoneinfo`` (DST-aware) before any calendar-day decision is made.

Sleep-night rule: a session that starts at or after the cutoff hour (18:00
by default) local time belongs to the next calendar day; anything earlier
belongs to the same local day.  An evening bedtime and the early-morning
continuation of the same night therefore land on one date.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo

logger = logging.getLogger("healthsync.reconcile.sleep_attribution")


def to_local(moment: datetime, tz: ZoneInfo) -> datetime:
    """Convert a UTC datetime to local civil time.  Naive input is treated as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz)


def local_date(moment: datetime, tz: ZoneInfo) -> date:
    """Return the user's local calendar date for a UTC instant."""
    return to_local(moment, tz).date()


def sleep_night_date(sleep_start: datetime, tz: ZoneInfo, cutoff_hour: int = 18) -> date:
    """Determine which calendar date a sleep session belongs to.

    Args:
        sleep_start: UTC datetime when sleep began.
        tz:          User's timezone.
        cutoff_hour: Local hour (0–23) at or after which sleep belongs to the next day.

    Returns:
        The canonical sleep date for this session.
    """
    local_start = to_local(sleep_start, tz)
    d = local_start.date()
    if local_start.hour < cutoff_hour:
        # e.g. sleep started at 02:00 → the night that ends this morning
        return d
    # e.g. fell asleep at 22:00 → next-morning wake date
    return d + timedelta(days=1)


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Return the UTC [start, end) instants of a local calendar day."""
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    end = start + timedelta(days=1)
    # Re-anchor the end on the wall clock so DST days are 23 or 25 hours long
    end = datetime(end.year, end.month, end.day, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Stage segment aggregation
# ---------------------------------------------------------------------------


@dataclass
class StageSegment:
    """One staged interval of a sleep session.

    Attributes:
        start: UTC start.
        end:   UTC end.
        stage: Canonical stage name ('light', 'deep', 'rem', 'awake', ...).
    """

    start: datetime
    end: datetime
    stage: str

    @property
    def minutes(self) -> float:
        return max(0.0, (self.end - self.start).total_seconds() / 60.0)


@dataclass
class SleepNight:
    """All stage segments attributed to one sleep date.

    Attributes:
        sleep_date:    Canonical sleep date.
        segments:      Segments in start order.
        stage_minutes: Stage name → total minutes.
    """

    sleep_date: date
    segments: list[StageSegment] = field(default_factory=list)
    stage_minutes: dict[str, float] = field(default_factory=dict)

    @property
    def start(self) -> datetime | None:
        return self.segments[0].start if self.segments else None

    @property
    def end(self) -> datetime | None:
        return max(s.end for s in self.segments) if self.segments else None

    def asleep_minutes(self, asleep_stages: Iterable[str]) -> int:
        wanted = set(asleep_stages)
        return round(sum(m for stage, m in self.stage_minutes.items() if stage in wanted))

    def time_in_bed_minutes(self) -> int:
        if not self.segments:
            return 0
        return round((self.end - self.start).total_seconds() / 60.0)

    def efficiency(self, asleep_stages: Iterable[str]) -> float | None:
        in_bed = self.time_in_bed_minutes()
        if in_bed <= 0:
            return None
        return round(min(100.0, self.asleep_minutes(asleep_stages) / in_bed * 100), 1)

    def wake_events(self) -> int:
        """Count awake segments that interrupt sleep (not the first or last)."""
        inner = self.segments[1:-1]
        return sum(1 for s in inner if s.stage in ("awake", "awake_in_bed", "out_of_bed"))


def group_sleep_nights(
    segments: Iterable[StageSegment],
    tz: ZoneInfo,
    cutoff_hour: int = 18,
) -> dict[date, SleepNight]:
    """Group stage segments into sleep nights by sleep-night attribution.

    Overlapping duplicates (same start, end and stage) are counted once.

    Args:
        segments:    Stage segments in any order.
        tz:          User's timezone.
        cutoff_hour: Sleep-night cutoff hour.

    Returns:
        Sleep date → SleepNight.
    """
    nights: dict[date, SleepNight] = {}
    seen: set[tuple[datetime, datetime, str]] = set()
    for seg in sorted(segments, key=lambda s: s.start):
        key = (seg.start, seg.end, seg.stage)
        if key in seen:
            continue
        seen.add(key)
        night_date = sleep_night_date(seg.start, tz, cutoff_hour)
        night = nights.setdefault(night_date, SleepNight(sleep_date=night_date))
        night.segments.append(seg)
        night.stage_minutes[seg.stage] = night.stage_minutes.get(seg.stage, 0.0) + seg.minutes
    logger.debug("Grouped %d sleep segments into %d nights", len(seen), len(nights))
    return nights
