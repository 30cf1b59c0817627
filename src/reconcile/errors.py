"""Error taxonomy for the reconciliation engine.

Fatal-to-the-record conditions are exceptions.  Conditions that are normal
outcomes of reconciliation (a unit repair, a refused overwrite) are warning
objects collected on result types; they are never raised.

A calculator input that is unknown is not an error at all: the calculator
returns ``None`` for the affected metric.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID


class ReconcileError(Exception):
    """Base class for reconciliation failures."""


class ParseError(ReconcileError):
    """A record, file or archive could not be parsed.

    The ingest pipeline logs it, skips the record and continues the import.
    """

    def __init__(self, message: str, source: str | None = None, origin: str | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.origin = origin


class PayloadTooLarge(ParseError):
    """A download or extracted archive exceeded the configured size cap."""


class LockViolationAttempt(ReconcileError):
    """A write targeted a date protected by the user's data lock."""

    def __init__(self, user_id: UUID, target_date: date, lock_date: date) -> None:
        super().__init__(
            f"{target_date.isoformat()} is locked (lock date {lock_date.isoformat()})"
        )
        self.user_id = user_id
        self.target_date = target_date
        self.lock_date = lock_date


class StorageConflict(ReconcileError):
    """The stored record changed between the read and the commit of an upsert."""


# ---------------------------------------------------------------------------
# Non-fatal, collected conditions
# ---------------------------------------------------------------------------


class UnitAmbiguityWarning(UserWarning):
    """A unit-repair heuristic rewrote a value (e.g. BMI computed from grams)."""

    def __init__(self, field_name: str, original: float, repaired: float) -> None:
        super().__init__(f"{field_name}: {original} looked like grams, repaired to {repaired}")
        self.field_name = field_name
        self.original = original
        self.repaired = repaired


class FreshnessRejected(UserWarning):
    """The arbiter kept the stored value instead of a candidate."""

    def __init__(self, field_name: str, reason: str, candidate_source: str | None) -> None:
        super().__init__(f"{field_name} kept ({reason}); candidate from {candidate_source}")
        self.field_name = field_name
        self.reason = reason
        self.candidate_source = candidate_source
