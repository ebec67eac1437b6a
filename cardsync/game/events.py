"""Canonical event and status types shared by the reconciliation pipeline."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    ACTION = "action"
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"
    TIMEOUT = "timeout"
    TERMINATE = "terminate"


class SessionStatus(str, Enum):
    FORMING = "forming"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


# Kinds that must name the participant they concern.
PARTICIPANT_KINDS = frozenset({
    EventKind.JOIN,
    EventKind.LEAVE,
    EventKind.ACTION,
    EventKind.DISCONNECT,
    EventKind.RECONNECT,
})


@dataclass(frozen=True)
class Event:
    """An immutable fact about one session, as numbered by the match authority."""

    session_id: str
    seq: int
    kind: EventKind
    participant_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    arrived_at: float = 0.0

    @property
    def key(self) -> tuple[str, int]:
        return (self.session_id, self.seq)

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "seq": self.seq,
            "kind": self.kind.value,
            "participant_id": self.participant_id,
            "payload": dict(self.payload),
            "arrived_at": self.arrived_at,
        }
