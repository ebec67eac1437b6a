"""Session view -- the materialized state of one session and the fold over events.

``fold()`` is the only place a SessionView changes.  Each handler validates
before it mutates, so a ``FoldError`` or ``ConflictRejected`` leaves the view
exactly as it was.  The view is a pure function of the events folded into it:
every value stored here comes from the events themselves (including their
``arrived_at`` stamps), never from the local clock.

Status transitions
------------------
- first ``join`` creates the session in ``forming``
- ``forming -> active`` once ``min_participants`` have joined
- ``active -> suspended`` when no participant is connected
- ``suspended -> active`` on ``reconnect`` (or a fresh ``join``)
- ``* -> closed`` on ``terminate``, on a system ``timeout`` while suspended,
  or when the last participant leaves
"""
import hashlib
import json
from dataclasses import dataclass, field

from cardsync.game.errors import ConflictRejected, FoldError
from cardsync.game.events import Event, EventKind, SessionStatus

SLOT_KEYS = ("turn", "slot")


@dataclass
class SessionView:
    session_id: str
    status: SessionStatus | None = None
    clock: int = 0
    participants: list[str] = field(default_factory=list)
    connected: list[str] = field(default_factory=list)
    # slot -> {"seq", "participant_id", "payload"} of the winning action
    slots: dict[str, dict] = field(default_factory=dict)
    rejected: list[dict] = field(default_factory=list)
    faults: list[dict] = field(default_factory=list)
    created_at: float | None = None
    suspended_at: float | None = None
    closed_at: float | None = None

    @property
    def exists(self) -> bool:
        return self.status is not None

    @property
    def is_closed(self) -> bool:
        return self.status is SessionStatus.CLOSED

    def to_state(self) -> dict:
        """Return a JSON-serializable copy of the view."""
        return {
            "session_id": self.session_id,
            "status": self.status.value if self.status else None,
            "clock": self.clock,
            "participants": list(self.participants),
            "connected": list(self.connected),
            "slots": {k: dict(v) for k, v in self.slots.items()},
            "rejected": [dict(r) for r in self.rejected],
            "faults": [dict(f) for f in self.faults],
            "created_at": self.created_at,
            "suspended_at": self.suspended_at,
            "closed_at": self.closed_at,
        }

    @classmethod
    def from_state(cls, state: dict) -> "SessionView":
        status = state.get("status")
        return cls(
            session_id=state["session_id"],
            status=SessionStatus(status) if status else None,
            clock=int(state.get("clock", 0)),
            participants=list(state.get("participants", [])),
            connected=list(state.get("connected", [])),
            slots={k: dict(v) for k, v in state.get("slots", {}).items()},
            rejected=[dict(r) for r in state.get("rejected", [])],
            faults=[dict(f) for f in state.get("faults", [])],
            created_at=state.get("created_at"),
            suspended_at=state.get("suspended_at"),
            closed_at=state.get("closed_at"),
        )


def encode_state(state: dict) -> str:
    """Canonical JSON encoding; equal views always encode to equal text."""
    return json.dumps(state, sort_keys=True, separators=(",", ":"))


def state_checksum(encoded: str) -> str:
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Fold
# ---------------------------------------------------------------------------


def fold(view: SessionView, event: Event, *, min_participants: int = 2) -> None:
    """Apply *event* to *view* in place.

    Raises ``FoldError`` for an event the view cannot accept and
    ``ConflictRejected`` for an action whose slot is already taken.  Does not
    touch ``view.clock``; the engine owns sequence bookkeeping.
    """
    if event.session_id != view.session_id:
        raise FoldError(
            f"event for session {event.session_id} folded into {view.session_id}"
        )

    if not view.exists and event.kind is not EventKind.JOIN:
        raise FoldError(f"session {view.session_id} has not been created by a join")

    if view.is_closed and not _allowed_after_close(event):
        raise FoldError(f"session {view.session_id} is closed; {event.kind.value} refused")

    handler = _HANDLERS[event.kind]
    if event.kind is EventKind.JOIN:
        handler(view, event, min_participants)
    else:
        handler(view, event)


def _allowed_after_close(event: Event) -> bool:
    if event.kind is EventKind.TERMINATE:
        return True
    return event.kind is EventKind.TIMEOUT and event.participant_id is None


def _require_member(view: SessionView, event: Event) -> str:
    pid = event.participant_id
    if pid not in view.participants:
        raise FoldError(
            f"{pid!r} is not a participant of session {view.session_id}"
        )
    return pid


def _slot_of(event: Event) -> str:
    for key in SLOT_KEYS:
        value = event.payload.get(key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (str, int)):
            return str(value)
    raise FoldError(f"action {event.seq} does not name a turn or slot")


def _suspend(view: SessionView, at: float) -> None:
    view.status = SessionStatus.SUSPENDED
    view.suspended_at = at


def _resume(view: SessionView) -> None:
    view.status = SessionStatus.ACTIVE
    view.suspended_at = None


def _close(view: SessionView, at: float) -> None:
    view.status = SessionStatus.CLOSED
    view.suspended_at = None
    view.closed_at = at


def _fold_join(view: SessionView, event: Event, min_participants: int) -> None:
    pid = event.participant_id
    if not view.exists:
        view.status = SessionStatus.FORMING
        view.created_at = event.arrived_at
    if pid not in view.participants:
        view.participants.append(pid)
    if pid not in view.connected:
        view.connected.append(pid)

    if view.status is SessionStatus.FORMING and len(view.participants) >= min_participants:
        view.status = SessionStatus.ACTIVE
    elif view.status is SessionStatus.SUSPENDED:
        _resume(view)


def _fold_leave(view: SessionView, event: Event) -> None:
    pid = _require_member(view, event)
    view.participants.remove(pid)
    if pid in view.connected:
        view.connected.remove(pid)

    if not view.participants:
        _close(view, event.arrived_at)
    elif view.status is SessionStatus.ACTIVE and not view.connected:
        _suspend(view, event.arrived_at)


def _fold_action(view: SessionView, event: Event) -> None:
    if view.status is not SessionStatus.ACTIVE:
        raise FoldError(
            f"action {event.seq} refused: session is {view.status.value}, not active"
        )
    pid = _require_member(view, event)
    slot = _slot_of(event)

    winner = view.slots.get(slot)
    if winner is not None:
        raise ConflictRejected(
            session_id=view.session_id,
            seq=event.seq,
            slot=slot,
            participant_id=pid,
            winner_seq=winner["seq"],
        )
    view.slots[slot] = {
        "seq": event.seq,
        "participant_id": pid,
        "payload": dict(event.payload),
    }


def _fold_disconnect(view: SessionView, event: Event) -> None:
    pid = _require_member(view, event)
    if pid in view.connected:
        view.connected.remove(pid)
    if view.status is SessionStatus.ACTIVE and not view.connected:
        _suspend(view, event.arrived_at)


def _fold_reconnect(view: SessionView, event: Event) -> None:
    pid = _require_member(view, event)
    if pid not in view.connected:
        view.connected.append(pid)
    if view.status is SessionStatus.SUSPENDED:
        _resume(view)


def _fold_timeout(view: SessionView, event: Event) -> None:
    if event.participant_id is not None:
        # A participant's turn timer ran out at the authority.
        _fold_disconnect(view, event)
        return
    # System timeout: the reconnect grace period ran out.
    if view.status is SessionStatus.SUSPENDED:
        _close(view, event.arrived_at)


def _fold_terminate(view: SessionView, event: Event) -> None:
    if not view.is_closed:
        _close(view, event.arrived_at)


_HANDLERS = {
    EventKind.JOIN: _fold_join,
    EventKind.LEAVE: _fold_leave,
    EventKind.ACTION: _fold_action,
    EventKind.DISCONNECT: _fold_disconnect,
    EventKind.RECONNECT: _fold_reconnect,
    EventKind.TIMEOUT: _fold_timeout,
    EventKind.TERMINATE: _fold_terminate,
}
