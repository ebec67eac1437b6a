"""Tests for the /ws/events push channel and the app lifespan."""
from fastapi.testclient import TestClient

from cardsync.game.session_store import CheckpointRecord
from cardsync.game.session_supervisor import SessionSupervisor
from cardsync.game.session_view import encode_state, state_checksum
from cardsync.main import create_app


class MemoryStore:
    """Dict-backed stand-in for SessionStore."""

    def __init__(self):
        self.events = {}
        self.checkpoints = {}

    async def put_event(self, event):
        if event.key in self.events:
            return False
        self.events[event.key] = event
        return True

    async def get_events_since(self, session_id, seq):
        return [
            self.events[key] for key in sorted(self.events)
            if key[0] == session_id and key[1] > seq
        ]

    async def put_checkpoint(self, session_id, clock, status, state):
        record = CheckpointRecord(
            session_id, clock, status or "", state, state_checksum(encode_state(state))
        )
        self.checkpoints[(session_id, clock)] = record
        return record

    async def get_latest_checkpoint(self, session_id):
        clocks = [clock for sid, clock in self.checkpoints if sid == session_id]
        return self.checkpoints[(session_id, max(clocks))] if clocks else None


def _app(settings, store):
    async def factory():
        return SessionSupervisor(store, settings=settings)

    return create_app(supervisor_factory=factory)


def _raw(seq, kind, pid=None):
    raw = {"session_id": "m1", "seq": seq, "kind": kind}
    if pid is not None:
        raw["participant_id"] = pid
    return raw


def test_event_stream(test_settings):
    store = MemoryStore()
    with TestClient(_app(test_settings, store)) as tc:
        with tc.websocket_connect("/ws/events") as ws:
            ws.send_json({"type": "heartbeat"})
            assert ws.receive_json() == {"type": "heartbeat_ack"}

            ws.send_json({"type": "event", "event": _raw(1, "join", "alice")})
            assert ws.receive_json() == {"type": "event_ack", "session_id": "m1", "seq": 1}

            ws.send_json({"type": "event", "event": _raw(1, "join", "alice")})
            assert ws.receive_json() == {"type": "event_duplicate"}

            ws.send_json({"type": "events", "events": [
                _raw(2, "join", "bob"),
                {"session_id": "m1", "kind": "join"},
            ]})
            assert ws.receive_json()["type"] == "event_ack"
            error = ws.receive_json()
            assert error == {"type": "error", "detail": "missing sequence number"}

            ws.send_json({"type": "events", "events": "nope"})
            assert ws.receive_json()["type"] == "error"

            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "detail": "Invalid JSON"}

            ws.send_json({"type": "shuffle"})
            assert ws.receive_json()["detail"] == "Unknown message type: shuffle"

            ws.send_json({"type": "snapshot", "session_id": "m1"})
            reply = ws.receive_json()
            assert reply["type"] == "session_snapshot"
            assert reply["session_id"] == "m1"

    # Lifespan shutdown wrote the final checkpoint.
    assert max(clock for _, clock in store.checkpoints) == 2
