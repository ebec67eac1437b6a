"""Event normalizer -- turns raw match-authority messages into canonical Events.

The match authority delivers at-least-once and in no particular order.  The
normalizer only checks that a message is well formed and drops exact
duplicates it has already seen; ordering is the reconcile engine's job.

Accepted shapes
---------------
Canonical keys (``session_id``, ``seq``, ``kind``, ``participant_id``,
``payload``) or the authority's own vocabulary (``match_id``, ``sequence``,
``type``, ``player_id``/``playerId``, ``data``).  Message types from the
authority's socket protocol (``JOIN_MATCH``, ``GAME_ACTION``,
``PLAYER_DISCONNECTED`` ...) map onto the canonical kinds.
"""
import logging
import time
from collections import OrderedDict
from collections.abc import Mapping

from cardsync.game.errors import MalformedEventError
from cardsync.game.events import PARTICIPANT_KINDS, Event, EventKind

log = logging.getLogger(__name__)

SESSION_ID_KEYS = ("session_id", "sessionId", "match_id", "matchId")
SEQ_KEYS = ("seq", "sequence", "seq_no", "sequence_number", "sequenceNumber")
KIND_KEYS = ("kind", "type", "event")
PARTICIPANT_KEYS = ("participant_id", "participantId", "player_id", "playerId", "user_id")
PAYLOAD_KEYS = ("payload", "data")

# session_events and session_checkpoints key columns are String(64)
MAX_ID_LENGTH = 64

KIND_ALIASES = {
    "join_match": EventKind.JOIN,
    "player_joined": EventKind.JOIN,
    "leave_match": EventKind.LEAVE,
    "player_left": EventKind.LEAVE,
    "game_action": EventKind.ACTION,
    "player_action": EventKind.ACTION,
    "player_disconnected": EventKind.DISCONNECT,
    "player_reconnected": EventKind.RECONNECT,
    "turn_timeout": EventKind.TIMEOUT,
    "game_end": EventKind.TERMINATE,
    "match_end": EventKind.TERMINATE,
}


def _first(raw: Mapping, keys: tuple[str, ...]):
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def parse_kind(value) -> EventKind:
    if isinstance(value, EventKind):
        return value
    if not isinstance(value, str) or not value.strip():
        raise MalformedEventError(f"event kind must be a non-empty string, got {value!r}")
    name = value.strip().lower()
    try:
        return EventKind(name)
    except ValueError:
        pass
    kind = KIND_ALIASES.get(name)
    if kind is None:
        raise MalformedEventError(f"unrecognized event kind: {value!r}")
    return kind


def parse_seq(value) -> int:
    # int64 fields often arrive as JSON strings
    if isinstance(value, bool):
        raise MalformedEventError(f"sequence number must be an integer, got {value!r}")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise MalformedEventError(f"sequence number must be an integer, got {value!r}")
    if value < 1:
        raise MalformedEventError(f"sequence number must be positive, got {value}")
    return value


class EventNormalizer:
    """Validates raw events and suppresses duplicates within a bounded window."""

    def __init__(self, dedup_window: int = 10_000, clock=time.time) -> None:
        self.dedup_window = dedup_window
        self._clock = clock
        # (session_id, seq) -> None, oldest first
        self._seen: OrderedDict[tuple[str, int], None] = OrderedDict()

    def normalize(self, raw, *, arrived_at: float | None = None) -> Event | None:
        """Return the canonical Event for *raw*, or ``None`` for a duplicate.

        Raises ``MalformedEventError`` when *raw* is structurally invalid.
        """
        event = self.parse(raw, arrived_at=arrived_at)
        if event.key in self._seen:
            self._seen.move_to_end(event.key)
            log.debug("Duplicate event %s/%d dropped", event.session_id, event.seq)
            return None
        self._remember(event.key)
        return event

    def readmit(self, raw, *, arrived_at: float | None = None) -> Event:
        """Like ``normalize`` but never treats *raw* as a duplicate.

        Used for events fetched on purpose to fill a gap, which the window
        may already hold from the delivery that was dropped downstream.
        """
        event = self.parse(raw, arrived_at=arrived_at)
        self._remember(event.key)
        return event

    def parse(self, raw, *, arrived_at: float | None = None) -> Event:
        """Validate *raw* and build an Event without touching the dedup window."""
        if not isinstance(raw, Mapping):
            raise MalformedEventError(f"event must be an object, got {type(raw).__name__}", raw)

        session_id = _first(raw, SESSION_ID_KEYS)
        if not isinstance(session_id, str) or not session_id.strip():
            raise MalformedEventError("missing session id", raw)
        session_id = session_id.strip()
        if len(session_id) > MAX_ID_LENGTH:
            raise MalformedEventError(
                f"session id longer than {MAX_ID_LENGTH} characters", raw
            )

        seq_value = _first(raw, SEQ_KEYS)
        if seq_value is None:
            raise MalformedEventError("missing sequence number", raw)
        try:
            seq = parse_seq(seq_value)
            kind = parse_kind(_first(raw, KIND_KEYS))
        except MalformedEventError as exc:
            exc.raw = raw
            raise

        participant_id = _first(raw, PARTICIPANT_KEYS)
        if participant_id is not None:
            if isinstance(participant_id, int) and not isinstance(participant_id, bool):
                participant_id = str(participant_id)
            if not isinstance(participant_id, str) or not participant_id.strip():
                raise MalformedEventError(f"invalid participant id: {participant_id!r}", raw)
            if len(participant_id) > MAX_ID_LENGTH:
                raise MalformedEventError(
                    f"participant id longer than {MAX_ID_LENGTH} characters", raw
                )
        if kind in PARTICIPANT_KINDS and participant_id is None:
            raise MalformedEventError(f"{kind.value} event requires a participant id", raw)

        payload = _first(raw, PAYLOAD_KEYS)
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise MalformedEventError("payload must be an object", raw)

        if arrived_at is None:
            stamped = raw.get("arrived_at")
            if isinstance(stamped, (int, float)) and not isinstance(stamped, bool):
                arrived_at = float(stamped)
            else:
                arrived_at = self._clock()

        return Event(
            session_id=session_id,
            seq=seq,
            kind=kind,
            participant_id=participant_id,
            payload=dict(payload),
            arrived_at=arrived_at,
        )

    def forget(self, session_id: str) -> int:
        """Drop every remembered key of *session_id*; returns how many were dropped."""
        stale = [key for key in self._seen if key[0] == session_id]
        for key in stale:
            del self._seen[key]
        return len(stale)

    def _remember(self, key: tuple[str, int]) -> None:
        self._seen[key] = None
        while len(self._seen) > self.dedup_window:
            self._seen.popitem(last=False)

    def __len__(self) -> int:
        return len(self._seen)
