"""Freshness / priority arbiter.

Decides, field by field, whether a candidate value may replace a stored one.

Decision order:
1. Date protected by an enabled data lock → never overwrite.
2. Nothing stored → overwrite.
3. Different source ranks (reconcile_config.yaml ``source_priorities``,
   lower wins) → the better rank wins.
4. Equal rank → the more recent measurement wins.  Different sources of
   equal rank must be newer by ``min_recency_gap_hours``; the same source
   must be strictly newer.
5. Anything else is a tie and the stored value is kept.

The arbiter holds no state of its own and is safe to call concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any

from src.reconcile.base import FieldProvenance, LockState
from src.reconcile.config_loader import ReconcileConfig, get_reconcile_config
from src.reconcile.errors import FreshnessRejected

logger = logging.getLogger("healthsync.reconcile.arbiter")


class DecisionReason(str, Enum):
    LOCKED = "locked"
    NEW = "new"
    HIGHER_PRIORITY = "higher_priority"
    LOWER_PRIORITY = "lower_priority"
    NEWER = "newer"
    NOT_NEWER = "not_newer"
    WITHIN_RECENCY_GAP = "within_recency_gap"
    TIE = "tie"


@dataclass(frozen=True)
class FieldValue:
    """A value for one field together with its provenance.

    Attributes:
        field_name: Canonical DayRecord field.
        value:      The value (None means unknown).
        provenance: Source and measurement time, or None for legacy values.
    """

    field_name: str
    value: Any
    provenance: FieldProvenance | None = None

    @property
    def source(self) -> str | None:
        return self.provenance.source if self.provenance else None


@dataclass(frozen=True)
class OverwriteDecision:
    """Verdict for one candidate value.

    Attributes:
        field_name: Canonical field decided.
        overwrite:  True if the candidate should be installed.
        reason:     Why.
    """

    field_name: str
    overwrite: bool
    reason: DecisionReason

    def rejection(self, candidate_source: str | None) -> FreshnessRejected | None:
        if self.overwrite:
            return None
        return FreshnessRejected(self.field_name, self.reason.value, candidate_source)


class FreshnessArbiter:
    """Decide whether a candidate value may overwrite a stored value."""

    def __init__(self, config: ReconcileConfig | None = None) -> None:
        self._config = config or get_reconcile_config()
        self._min_gap = timedelta(hours=self._config.min_recency_gap_hours)

    def decide(
        self,
        existing: FieldValue | None,
        candidate: FieldValue,
        target_date: date,
        lock_state: LockState,
    ) -> OverwriteDecision:
        """Return the overwrite verdict for one field on one date.

        Args:
            existing:    Stored value, or None if the field is unknown.
            candidate:   Incoming value.
            target_date: Local calendar date of the record.
            lock_state:  The user's current lock state.

        Returns:
            OverwriteDecision.  Every decision is logged with its reason.
        """
        decision = self._decide(existing, candidate, target_date, lock_state)
        if decision.reason is DecisionReason.LOCKED:
            logger.info(
                "Rejected %s=%r from %s for %s: date is locked through %s",
                candidate.field_name, candidate.value, candidate.source,
                target_date, lock_state.lock_date,
            )
        else:
            logger.debug(
                "%s %s on %s: %r (%s) vs %r (%s) → %s",
                "Overwrite" if decision.overwrite else "Keep",
                candidate.field_name, target_date,
                candidate.value, candidate.source,
                existing.value if existing else None,
                existing.source if existing else None,
                decision.reason.value,
            )
        return decision

    def _decide(
        self,
        existing: FieldValue | None,
        candidate: FieldValue,
        target_date: date,
        lock_state: LockState,
    ) -> OverwriteDecision:
        name = candidate.field_name

        if lock_state.protects(target_date):
            return OverwriteDecision(name, False, DecisionReason.LOCKED)

        if existing is None or existing.value is None:
            return OverwriteDecision(name, True, DecisionReason.NEW)

        cand_rank = self._config.priority(name, candidate.source)
        exist_rank = self._config.priority(name, existing.source)
        if cand_rank < exist_rank:
            return OverwriteDecision(name, True, DecisionReason.HIGHER_PRIORITY)
        if cand_rank > exist_rank:
            return OverwriteDecision(name, False, DecisionReason.LOWER_PRIORITY)

        cand_at = candidate.provenance.recorded_at if candidate.provenance else None
        exist_at = existing.provenance.recorded_at if existing.provenance else None
        if cand_at is None:
            return OverwriteDecision(name, False, DecisionReason.TIE)
        if exist_at is None:
            # A timed measurement beats an untimed one of the same rank
            return OverwriteDecision(name, True, DecisionReason.NEWER)
        if cand_at <= exist_at:
            return OverwriteDecision(name, False, DecisionReason.NOT_NEWER)
        if candidate.source != existing.source and cand_at - exist_at <= self._min_gap:
            return OverwriteDecision(name, False, DecisionReason.WITHIN_RECENCY_GAP)
        return OverwriteDecision(name, True, DecisionReason.NEWER)
