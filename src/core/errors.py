from __future__ import annotations


class RecurrenceError(Exception):
    """Base class for recurrence engine failures."""


class InvalidRuleError(RecurrenceError, ValueError):
    """A recurrence rule has an out-of-range or unsupported field."""


class NonAdvancingOccurrenceError(RecurrenceError):
    """The evaluator produced a candidate that is not strictly after the cursor."""

    def __init__(self, cursor, candidate) -> None:
        super().__init__(f"occurrence did not advance: cursor={cursor.isoformat()} candidate={candidate.isoformat()}")
        self.cursor = cursor
        self.candidate = candidate


class PersistenceError(RecurrenceError):
    """Writing recurrence state for a single task failed."""
