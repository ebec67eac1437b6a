"""Error taxonomy for the reconciliation pipeline.

Only ``MalformedEventError`` and ``StoreUnavailable`` escape to callers as
exceptions.  ``ConflictRejected`` and ``FoldError`` are raised inside the fold
and turned into outcomes by the engine; ``GapDetected`` is returned as a
value describing the missing sequence range.
"""


class ReconcileError(Exception):
    """Base class for all reconciliation errors."""


class MalformedEventError(ReconcileError, ValueError):
    """A raw event is structurally invalid and was dropped."""

    def __init__(self, reason: str, raw=None):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class GapDetected(ReconcileError):
    """Sequence numbers ``start..end`` (inclusive) are missing for a session."""

    def __init__(self, session_id: str, start: int, end: int):
        super().__init__(f"gap in session {session_id}: [{start}, {end}]")
        self.session_id = session_id
        self.start = start
        self.end = end

    def as_dict(self) -> dict:
        return {"start": self.start, "end": self.end}

    def __eq__(self, other):
        if not isinstance(other, GapDetected):
            return NotImplemented
        return (self.session_id, self.start, self.end) == (
            other.session_id, other.start, other.end,
        )

    def __hash__(self):
        return hash((self.session_id, self.start, self.end))


class ConflictRejected(ReconcileError):
    """An action lost the tie-break for a slot already claimed by a lower seq."""

    def __init__(
        self,
        session_id: str,
        seq: int,
        slot: str,
        participant_id: str | None,
        winner_seq: int,
    ):
        super().__init__(
            f"seq {seq} rejected: slot {slot!r} already claimed by seq {winner_seq}"
        )
        self.session_id = session_id
        self.seq = seq
        self.slot = slot
        self.participant_id = participant_id
        self.winner_seq = winner_seq

    def as_dict(self) -> dict:
        return {
            "seq": self.seq,
            "slot": self.slot,
            "participant_id": self.participant_id,
            "winner_seq": self.winner_seq,
        }


class FoldError(ReconcileError):
    """A well-formed event could not be applied to the session view."""


class StoreUnavailable(ReconcileError):
    """The durable session store could not be reached or failed an operation."""
