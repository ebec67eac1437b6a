"""Reconcile engine -- the authoritative state machine of one session.

The engine turns an at-least-once, possibly out-of-order stream of events
into a SessionView that depends only on the *set* of events, never on the
order they arrived in:

1. Events behind the expected sequence number (or already buffered) are
   duplicates and change nothing.
2. The expected event is folded at once, then every buffered event that has
   become contiguous is folded after it.
3. Events up to ``reorder_window`` ahead wait in the reorder buffer.  When the
   buffer is full the event is dropped and its position remembered; once the
   clock reaches a dropped position a gap is opened for it.
4. Events further ahead open a *gap*: the missing range is reported so the
   caller can ask the match authority for a backfill, and the session reads
   as degraded until the range is filled.

Every folded event consumes its sequence position, including actions that
lose a slot tie-break and events that fail to fold, so the logical clock is
always the last contiguous sequence number.  ``(session_id, clock)`` therefore
names exactly one state, which is what makes checkpoints idempotent and
``recover()`` a plain replay of the log tail after the checkpoint clock.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from cardsync.game import metrics
from cardsync.game.errors import ConflictRejected, FoldError, GapDetected
from cardsync.game.events import Event, EventKind, SessionStatus
from cardsync.game.session_view import SessionView, fold

log = logging.getLogger(__name__)

DEFAULT_REORDER_WINDOW = 16
DEFAULT_BUFFER_LIMIT = 256
DEFAULT_CHECKPOINT_EVERY = 50
DEFAULT_CHECKPOINT_INTERVAL = 30.0


class Outcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"  # lost the slot tie-break
    FAILED = "failed"  # fold error, position consumed
    BUFFERED = "buffered"
    DROPPED = "dropped"  # reorder buffer full
    DUPLICATE = "duplicate"
    GAP = "gap"


@dataclass
class FoldOutcome:
    seq: int
    kind: EventKind
    outcome: Outcome
    clock: int
    conflict: ConflictRejected | None = None
    error: str | None = None
    transition: tuple[SessionStatus | None, SessionStatus | None] | None = None

    def as_dict(self) -> dict:
        data = {
            "seq": self.seq,
            "kind": self.kind.value,
            "outcome": self.outcome.value,
            "clock": self.clock,
        }
        if self.conflict is not None:
            data["conflict"] = self.conflict.as_dict()
        if self.error is not None:
            data["error"] = self.error
        if self.transition is not None:
            before, after = self.transition
            data["transition"] = [
                before.value if before else None,
                after.value if after else None,
            ]
        return data


@dataclass
class ApplyResult:
    """What happened to one submitted event, plus everything it unblocked."""

    outcome: Outcome
    clock: int
    folded: list[FoldOutcome] = field(default_factory=list)
    gap: GapDetected | None = None

    @property
    def conflicts(self) -> list[ConflictRejected]:
        return [f.conflict for f in self.folded if f.conflict is not None]

    @property
    def transitions(self) -> list[FoldOutcome]:
        return [f for f in self.folded if f.transition is not None]

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "clock": self.clock,
            "folded": [f.as_dict() for f in self.folded],
            "gap": self.gap.as_dict() if self.gap else None,
        }


class ReconcileEngine:
    def __init__(
        self,
        session_id: str,
        *,
        min_participants: int = 2,
        reorder_window: int = DEFAULT_REORDER_WINDOW,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
        checkpoint_every: int = DEFAULT_CHECKPOINT_EVERY,
        checkpoint_interval: float = DEFAULT_CHECKPOINT_INTERVAL,
        clock=time.time,
    ) -> None:
        self.session_id = session_id
        self.min_participants = min_participants
        self.reorder_window = reorder_window
        self.buffer_limit = buffer_limit
        self.checkpoint_every = checkpoint_every
        self.checkpoint_interval = checkpoint_interval
        self._clock = clock

        self.view = SessionView(session_id)
        self._buffer: dict[int, Event] = {}
        self._highest_seen = 0
        self._dropped: set[int] = set()
        self.gap: GapDetected | None = None
        self.fold_faulted = False

        self.last_checkpoint_clock: int | None = None
        self._last_checkpoint_at = clock()
        self._folded_since_checkpoint = 0
        self._transition_pending = False

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def clock(self) -> int:
        return self.view.clock

    @property
    def next_seq(self) -> int:
        return self.view.clock + 1

    @property
    def status(self) -> SessionStatus | None:
        return self.view.status

    @property
    def degraded(self) -> bool:
        return self.gap is not None or self.fold_faulted or bool(self._dropped)

    @property
    def buffered(self) -> list[int]:
        return sorted(self._buffer)

    @property
    def dropped(self) -> list[int]:
        return sorted(self._dropped)

    @property
    def highest_seen(self) -> int:
        return self._highest_seen

    @property
    def in_flight(self) -> bool:
        """True if anything past the clock has been seen but not folded yet."""
        return self._highest_seen > self.clock

    def snapshot(self) -> dict:
        """Read-only copy of the view plus the engine's sequencing flags."""
        state = self.view.to_state()
        state.update({
            "degraded": self.degraded,
            "gap": self.gap.as_dict() if self.gap else None,
            "buffered": self.buffered,
            "dropped": self.dropped,
            "next_seq": self.next_seq,
            "last_checkpoint_clock": self.last_checkpoint_clock,
        })
        return state

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self, event: Event) -> ApplyResult:
        """Fold or buffer *event*; see the module docstring for the rules."""
        if event.session_id != self.session_id:
            raise ValueError(
                f"engine for {self.session_id} got event for {event.session_id}"
            )

        if event.seq < self.next_seq or event.seq in self._buffer:
            metrics.EVENTS_DUPLICATE.labels(stage="engine").inc()
            return ApplyResult(Outcome.DUPLICATE, self.clock)

        self._highest_seen = max(self._highest_seen, event.seq)

        if event.seq == self.next_seq:
            folded = [self._fold(event)]
            folded.extend(self._drain())
            gap = self._reassess_gap()
            return ApplyResult(folded[0].outcome, self.clock, folded, gap=gap)

        held = self._hold(event)
        if event.seq - self.next_seq <= self.reorder_window:
            return ApplyResult(Outcome.BUFFERED if held else Outcome.DROPPED, self.clock)

        gap = self._open_gap(event.seq - 1)
        return ApplyResult(Outcome.GAP if held else Outcome.DROPPED, self.clock, gap=gap)

    def _hold(self, event: Event) -> bool:
        if len(self._buffer) >= self.buffer_limit:
            # Still in the durable log; picked up again through a backfill.
            self._dropped.add(event.seq)
            log.warning(
                "Reorder buffer full for session %s (%d events); dropping seq %d",
                self.session_id, len(self._buffer), event.seq,
            )
            return False
        self._dropped.discard(event.seq)
        self._buffer[event.seq] = event
        return True

    def _drain(self) -> list[FoldOutcome]:
        folded: list[FoldOutcome] = []
        while self.next_seq in self._buffer:
            folded.append(self._fold(self._buffer.pop(self.next_seq)))
        return folded

    def _fold(self, event: Event) -> FoldOutcome:
        before = self.view.status
        conflict = None
        error = None
        try:
            fold(self.view, event, min_participants=self.min_participants)
            outcome = Outcome.APPLIED
        except ConflictRejected as exc:
            outcome = Outcome.REJECTED
            conflict = exc
            self.view.rejected.append(exc.as_dict())
            metrics.CONFLICTS_REJECTED.inc()
            log.info("Session %s: %s", self.session_id, exc)
        except FoldError as exc:
            outcome = Outcome.FAILED
            error = str(exc)
            log.warning(
                "Fold error in session %s at seq %d: %s (event=%r)",
                self.session_id, event.seq, exc, event,
            )
        except Exception as exc:
            outcome = Outcome.FAILED
            error = f"{type(exc).__name__}: {exc}"
            log.exception(
                "Unexpected fold failure in session %s at seq %d (event=%r)",
                self.session_id, event.seq, event,
            )

        if outcome is Outcome.FAILED:
            self.fold_faulted = True
            self.view.faults.append({
                "seq": event.seq,
                "kind": event.kind.value,
                "participant_id": event.participant_id,
                "error": error,
            })
            metrics.FOLD_ERRORS.inc()
        else:
            self.fold_faulted = False

        self.view.clock = event.seq
        self._dropped.discard(event.seq)
        self._folded_since_checkpoint += 1
        metrics.EVENTS_APPLIED.labels(outcome=outcome.value).inc()

        transition = None
        if self.view.status is not before:
            transition = (before, self.view.status)
            self._transition_pending = True
            log.info(
                "Session %s: %s -> %s at clock %d",
                self.session_id,
                before.value if before else "new",
                self.view.status.value if self.view.status else None,
                self.view.clock,
            )

        return FoldOutcome(
            seq=event.seq,
            kind=event.kind,
            outcome=outcome,
            clock=self.view.clock,
            conflict=conflict,
            error=error,
            transition=transition,
        )

    # ------------------------------------------------------------------
    # Gaps
    # ------------------------------------------------------------------

    def _open_gap(self, end: int) -> GapDetected | None:
        """Record that ``next_seq..end`` is missing; None if already known."""
        if self.gap is not None and self.gap.end >= end:
            return None
        self.gap = GapDetected(self.session_id, self.next_seq, end)
        metrics.GAPS_OPENED.inc()
        log.warning(
            "Session %s degraded: missing seq %d..%d",
            self.session_id, self.gap.start, self.gap.end,
        )
        return self.gap

    def _reassess_gap(self) -> GapDetected | None:
        if self.gap is not None:
            if self.next_seq <= self.gap.end:
                return None
            log.info(
                "Session %s: gap %d..%d closed at clock %d",
                self.session_id, self.gap.start, self.gap.end, self.clock,
            )
            self.gap = None

        if self._highest_seen < self.next_seq:
            return None
        if self.next_seq in self._dropped:
            end = min(self._buffer) - 1 if self._buffer else self._highest_seen
            return self._open_gap(end)
        if self._buffer:
            lowest = min(self._buffer)
            if lowest - self.next_seq <= self.reorder_window:
                return None
            return self._open_gap(lowest - 1)
        # Events beyond this point were seen but not kept.
        return self._open_gap(self._highest_seen)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def needs_checkpoint(self, now: float | None = None) -> bool:
        if not self.view.exists or self.last_checkpoint_clock == self.clock:
            return False
        if self._transition_pending:
            return True
        if self._folded_since_checkpoint >= self.checkpoint_every:
            return True
        now = self._clock() if now is None else now
        return now - self._last_checkpoint_at >= self.checkpoint_interval

    async def checkpoint(self, store):
        """Write the current view to *store*; safe to repeat for the same clock."""
        clock = self.clock
        status = self.status.value if self.status else None
        started = time.perf_counter()
        record = await store.put_checkpoint(
            self.session_id, clock, status, self.view.to_state()
        )
        metrics.CHECKPOINT_LATENCY.observe(time.perf_counter() - started)
        self._mark_checkpointed(clock)
        log.debug("Checkpointed session %s at clock %d", self.session_id, clock)
        return record

    def _mark_checkpointed(self, clock: int) -> None:
        self.last_checkpoint_clock = clock
        self._last_checkpoint_at = self._clock()
        if clock == self.clock:
            self._folded_since_checkpoint = 0
            self._transition_pending = False

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    @classmethod
    async def recover(cls, session_id: str, store, **options) -> "ReconcileEngine":
        """Rebuild an engine from the latest checkpoint plus the log tail.

        Raises ``StoreUnavailable`` if the store cannot be read.
        """
        engine = cls(session_id, **options)
        record = await store.get_latest_checkpoint(session_id)
        if record is not None:
            if record.is_intact():
                engine.view = SessionView.from_state(record.state)
                engine._highest_seen = engine.view.clock
                engine._mark_checkpointed(record.clock)
            else:
                log.error(
                    "Checkpoint of session %s at clock %d failed its checksum; "
                    "replaying the full log",
                    session_id, record.clock,
                )

        events = await store.get_events_since(session_id, engine.clock)
        for event in events:
            engine.apply(event)
        if events:
            log.info(
                "Recovered session %s: replayed %d events to clock %d",
                session_id, len(events), engine.clock,
            )
        return engine
