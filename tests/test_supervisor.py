"""Tests for the session supervisor: workers, sweep, backfill and store failures."""
import asyncio
from collections import Counter

import pytest
from prometheus_client import REGISTRY

from cardsync.game.errors import MalformedEventError, StoreUnavailable
from cardsync.game.events import EventKind
from cardsync.game.match_authority import MatchAuthority
from cardsync.game.reconcile_engine import Outcome, ReconcileEngine
from cardsync.game.session_supervisor import SessionSupervisor


# -- Helpers -------------------------------------------------------------------

def _raw(sid, seq, kind, pid=None, **payload):
    raw = {"session_id": sid, "seq": seq, "kind": kind, "payload": payload}
    if pid is not None:
        raw["participant_id"] = pid
    return raw


def _opening(sid="m1"):
    return [
        _raw(sid, 1, "join", "alice"),
        _raw(sid, 2, "join", "bob"),
        _raw(sid, 3, "action", "alice", turn=1, card="7H"),
        _raw(sid, 4, "action", "bob", turn=2, card="9S"),
    ]


async def _submit_all(supervisor, raws):
    for raw in raws:
        await supervisor.submit(raw)
    await supervisor.drain()


def _sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class FlakyStore:
    """Wraps a SessionStore and fails chosen operations a set number of times."""

    def __init__(self, inner, **failures):
        self.inner = inner
        self.failures = failures
        self.calls = Counter()

    def _maybe_fail(self, operation):
        self.calls[operation] += 1
        if self.failures.get(operation, 0) > 0:
            self.failures[operation] -= 1
            raise StoreUnavailable(f"{operation} is down")

    async def put_event(self, event):
        self._maybe_fail("put_event")
        return await self.inner.put_event(event)

    async def get_events_since(self, session_id, seq):
        self._maybe_fail("get_events_since")
        return await self.inner.get_events_since(session_id, seq)

    async def put_checkpoint(self, session_id, clock, status, state):
        self._maybe_fail("put_checkpoint")
        return await self.inner.put_checkpoint(session_id, clock, status, state)

    async def get_latest_checkpoint(self, session_id):
        self._maybe_fail("get_latest_checkpoint")
        return await self.inner.get_latest_checkpoint(session_id)


class FakeAuthority(MatchAuthority):
    """Serves backfills out of an in-memory copy of the authority's log."""

    def __init__(self, raws=()):
        self.log = {raw["seq"]: raw for raw in raws}
        self.requests = []

    async def backfill(self, session_id, start, end):
        self.requests.append((session_id, start, end))
        return [self.log[seq] for seq in range(start, end + 1) if seq in self.log]


# -- Ingest --------------------------------------------------------------------

@pytest.mark.asyncio
async def test_events_are_applied_by_a_worker(supervisor, store):
    await _submit_all(supervisor, _opening())

    snap = supervisor.snapshot("m1")
    assert snap["status"] == "active"
    assert snap["clock"] == 4
    assert snap["degraded"] is False
    assert [s["session_id"] for s in supervisor.active_sessions()] == ["m1"]
    assert [e.seq for e in await store.get_events_since("m1", 0)] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_submit_and_wait_returns_the_apply_result(supervisor):
    event, result = await supervisor.submit_and_wait(_raw("m1", 1, "join", "alice"))
    assert event.seq == 1
    assert result.outcome is Outcome.APPLIED
    assert result.clock == 1

    assert await supervisor.submit_and_wait(_raw("m1", 1, "join", "alice")) == (None, None)


@pytest.mark.asyncio
async def test_duplicates_and_malformed_events_are_dropped(supervisor):
    malformed_before = _sample("cardsync_events_malformed_total")

    assert await supervisor.submit(_raw("m1", 1, "join", "alice")) is not None
    assert await supervisor.submit(_raw("m1", 1, "join", "alice")) is None
    with pytest.raises(MalformedEventError):
        await supervisor.submit({"session_id": "m1", "kind": "join"})

    await supervisor.drain()
    assert supervisor.snapshot("m1")["clock"] == 1
    assert _sample("cardsync_events_malformed_total") == malformed_before + 1


@pytest.mark.asyncio
async def test_one_worker_per_session(supervisor):
    await asyncio.gather(*(
        supervisor.submit(_raw("m1", seq, "join", f"p{seq}")) for seq in range(1, 6)
    ))
    await supervisor.drain()
    assert len(supervisor.active_sessions()) == 1
    assert supervisor.snapshot("m1")["clock"] == 5


@pytest.mark.asyncio
async def test_sessions_are_isolated(supervisor):
    await _submit_all(supervisor, _opening("a") + _opening("b"))

    def explode(event):
        raise RuntimeError("boom")

    supervisor.worker("a").engine.apply = explode
    await supervisor.submit(_raw("a", 5, "action", "alice", turn=3))
    await supervisor.submit(_raw("b", 5, "action", "alice", turn=3))
    await supervisor.drain()

    assert supervisor.snapshot("a")["degraded"] is True
    snap_b = supervisor.snapshot("b")
    assert snap_b["clock"] == 5
    assert snap_b["degraded"] is False


@pytest.mark.asyncio
async def test_fold_errors_degrade_only_their_session(supervisor):
    await _submit_all(supervisor, [
        _raw("a", 1, "action", "alice", turn=1),  # no session yet
        _raw("b", 1, "join", "alice"),
    ])
    assert supervisor.snapshot("a")["degraded"] is True
    assert supervisor.snapshot("a")["clock"] == 1
    assert supervisor.snapshot("b")["degraded"] is False


# -- Sweep ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_idle_session_is_evicted_with_exactly_one_checkpoint(
    store, test_settings, clock
):
    flaky = FlakyStore(store)
    supervisor = SessionSupervisor(flaky, settings=test_settings, clock=clock)
    await _submit_all(supervisor, _opening())
    view = supervisor.worker("m1").engine.view.to_state()
    writes = flaky.calls["put_checkpoint"]

    clock.advance(test_settings.IDLE_TIMEOUT_SECONDS - 1)
    await supervisor.sweep()
    assert supervisor.worker("m1") is not None

    clock.advance(2)
    await supervisor.sweep()
    await supervisor.sweep()
    assert supervisor.worker("m1") is None
    assert flaky.calls["put_checkpoint"] == writes + 1
    assert (await store.get_latest_checkpoint("m1")).clock == 4

    recovered = await ReconcileEngine.recover("m1", store, **supervisor.engine_options())
    assert recovered.view.to_state() == view
    await supervisor.stop()


@pytest.mark.asyncio
async def test_evicted_session_resumes_from_the_store(supervisor):
    await _submit_all(supervisor, _opening())
    assert await supervisor.evict("m1") is True
    assert supervisor.snapshot("m1") is None

    await _submit_all(supervisor, [_raw("m1", 5, "action", "alice", turn=3)])
    snap = supervisor.snapshot("m1")
    assert snap["clock"] == 5
    assert snap["slots"]["3"]["seq"] == 5


@pytest.mark.asyncio
async def test_grace_expiry_closes_a_suspended_session(supervisor, store, clock, test_settings):
    await _submit_all(supervisor, _opening() + [
        _raw("m1", 5, "disconnect", "alice"),
        _raw("m1", 6, "disconnect", "bob"),
    ])
    assert supervisor.snapshot("m1")["status"] == "suspended"

    clock.advance(test_settings.GRACE_PERIOD_SECONDS - 1)
    await supervisor.sweep()
    await supervisor.drain()
    assert supervisor.snapshot("m1")["status"] == "suspended"

    clock.advance(2)
    await supervisor.sweep()
    await supervisor.drain()
    snap = supervisor.snapshot("m1")
    assert snap["status"] == "closed"
    assert snap["clock"] == 7

    [timeout] = await store.get_events_since("m1", 6)
    assert timeout.kind is EventKind.TIMEOUT
    assert timeout.participant_id is None

    # Closed sessions are evicted on the next sweep.
    await supervisor.sweep()
    assert supervisor.worker("m1") is None
    assert (await store.get_latest_checkpoint("m1")).status == "closed"


@pytest.mark.asyncio
async def test_reconnect_within_grace_keeps_the_session(supervisor, clock, test_settings):
    await _submit_all(supervisor, _opening() + [
        _raw("m1", 5, "disconnect", "alice"),
        _raw("m1", 6, "disconnect", "bob"),
        _raw("m1", 7, "reconnect", "bob"),
    ])
    clock.advance(test_settings.GRACE_PERIOD_SECONDS + 1)
    await supervisor.sweep()
    await supervisor.drain()
    assert supervisor.snapshot("m1")["status"] == "active"
    assert supervisor.snapshot("m1")["clock"] == 7


@pytest.mark.asyncio
async def test_grace_expiry_waits_for_a_buffered_authority_event(
    supervisor, store, clock, test_settings
):
    await _submit_all(supervisor, _opening() + [
        _raw("m1", 5, "disconnect", "alice"),
        _raw("m1", 6, "disconnect", "bob"),
        _raw("m1", 8, "reconnect", "alice"),
    ])
    assert supervisor.snapshot("m1")["buffered"] == [8]

    clock.advance(test_settings.GRACE_PERIOD_SECONDS + 1)
    await supervisor.sweep()
    await supervisor.drain()
    snap = supervisor.snapshot("m1")
    assert snap["status"] == "suspended"
    assert snap["clock"] == 6
    assert [e.seq for e in await store.get_events_since("m1", 6)] == [8]

    await _submit_all(supervisor, [_raw("m1", 7, "reconnect", "bob")])
    snap = supervisor.snapshot("m1")
    assert snap["status"] == "active"
    assert snap["clock"] == 8
    seven, eight = await store.get_events_since("m1", 6)
    assert (seven.kind, seven.participant_id) == (EventKind.RECONNECT, "bob")
    assert eight.kind is EventKind.RECONNECT


# -- Backfill ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_gap_is_backfilled_from_the_authority(store, test_settings, clock):
    raws = _opening() + [_raw("m1", 5, "action", "alice", turn=3)]
    authority = FakeAuthority(raws)
    settings = test_settings.model_copy(update={"REORDER_WINDOW": 1})
    supervisor = SessionSupervisor(store, authority=authority, settings=settings, clock=clock)

    await _submit_all(supervisor, [raws[0], raws[1], raws[4]])

    assert authority.requests == [("m1", 3, 4)]
    snap = supervisor.snapshot("m1")
    assert snap["clock"] == 5
    assert snap["degraded"] is False
    assert snap["gap"] is None
    await supervisor.stop()


@pytest.mark.asyncio
async def test_open_gap_is_requested_again_by_the_sweep(store, test_settings, clock):
    raws = _opening() + [_raw("m1", 5, "action", "alice", turn=3)]
    authority = FakeAuthority()
    settings = test_settings.model_copy(update={"REORDER_WINDOW": 1})
    supervisor = SessionSupervisor(store, authority=authority, settings=settings, clock=clock)

    await _submit_all(supervisor, [raws[0], raws[1], raws[4]])
    assert supervisor.snapshot("m1")["degraded"] is True
    assert supervisor.snapshot("m1")["gap"] == {"start": 3, "end": 4}

    authority.log = {raw["seq"]: raw for raw in raws}
    await supervisor.sweep()
    assert len(authority.requests) == 1  # too soon to ask again

    clock.advance(settings.BACKFILL_RETRY_SECONDS + 1)
    await supervisor.sweep()
    await supervisor.drain()
    assert len(authority.requests) == 2
    assert supervisor.snapshot("m1")["clock"] == 5
    assert supervisor.snapshot("m1")["degraded"] is False
    await supervisor.stop()


def _overflow_game():
    return _opening()[:2] + [
        _raw("m1", 3, "action", "alice", turn=1),
        _raw("m1", 4, "action", "bob", turn=2),
        _raw("m1", 5, "action", "alice", turn=3),
    ]


def _overflow_settings(test_settings):
    return test_settings.model_copy(
        update={"REORDER_WINDOW": 10, "REORDER_BUFFER_LIMIT": 2}
    )


@pytest.mark.asyncio
async def test_event_dropped_by_a_full_buffer_is_refilled_from_the_log(
    store, test_settings, clock
):
    raws = _overflow_game()
    authority = FakeAuthority(raws)
    supervisor = SessionSupervisor(
        store, authority=authority, settings=_overflow_settings(test_settings), clock=clock
    )

    # 5 overflows the buffer holding 3 and 4.
    await _submit_all(supervisor, [raws[0], raws[2], raws[3], raws[4], raws[1]])

    snap = supervisor.snapshot("m1")
    assert snap["clock"] == 5
    assert snap["gap"] is None
    assert snap["dropped"] == []
    assert snap["degraded"] is False
    assert authority.requests == []
    await supervisor.stop()


class LossyStore(FlakyStore):
    """Acknowledges writes of the chosen seqs without logging them."""

    def __init__(self, inner, lost):
        super().__init__(inner)
        self.lost = set(lost)

    async def put_event(self, event):
        if event.seq in self.lost:
            self.calls["put_event"] += 1
            return True
        return await super().put_event(event)


@pytest.mark.asyncio
async def test_dropped_event_missing_from_the_log_is_refetched_past_the_dedup_window(
    store, test_settings, clock
):
    raws = _overflow_game()
    authority = FakeAuthority(raws)
    supervisor = SessionSupervisor(
        LossyStore(store, lost=[5]),
        authority=authority,
        settings=_overflow_settings(test_settings),
        clock=clock,
    )

    await _submit_all(supervisor, [raws[0], raws[2], raws[3], raws[4], raws[1]])

    assert authority.requests == [("m1", 5, 5)]
    snap = supervisor.snapshot("m1")
    assert snap["clock"] == 5
    assert snap["slots"]["3"]["seq"] == 5
    assert snap["degraded"] is False
    # A plain redelivery is still a duplicate.
    assert await supervisor.submit(raws[4]) is None
    await supervisor.stop()


# -- Store failures ------------------------------------------------------------

@pytest.mark.asyncio
async def test_recovery_is_retried_until_the_store_answers(store, test_settings, clock):
    flaky = FlakyStore(store, get_latest_checkpoint=2)
    supervisor = SessionSupervisor(flaky, settings=test_settings, clock=clock)

    await _submit_all(supervisor, _opening())
    assert flaky.calls["get_latest_checkpoint"] == 3
    assert supervisor.snapshot("m1")["clock"] == 4
    await supervisor.stop()


@pytest.mark.asyncio
async def test_failed_event_write_does_not_block_application(store, test_settings, clock):
    flaky = FlakyStore(store, put_event=100)
    supervisor = SessionSupervisor(flaky, settings=test_settings, clock=clock)

    await _submit_all(supervisor, _opening()[:2])
    assert supervisor.snapshot("m1")["clock"] == 2
    assert flaky.calls["put_event"] == 2 * test_settings.EVENT_WRITE_ATTEMPTS
    assert await store.get_events_since("m1", 0) == []
    await supervisor.stop()


@pytest.mark.asyncio
async def test_checkpoint_failure_is_retried_later(store, test_settings, clock):
    failures_before = _sample("cardsync_checkpoint_failures_total")
    flaky = FlakyStore(store, put_checkpoint=1)
    supervisor = SessionSupervisor(flaky, settings=test_settings, clock=clock)

    await _submit_all(supervisor, _opening()[:2])
    assert supervisor.snapshot("m1")["status"] == "active"
    assert _sample("cardsync_checkpoint_failures_total") == failures_before + 1
    # Still backing off: the forming -> active transition was not written.
    assert await store.get_latest_checkpoint("m1") is None

    clock.advance(test_settings.STORE_RETRY_MAX_SECONDS)
    await _submit_all(supervisor, _opening()[2:3])
    assert (await store.get_latest_checkpoint("m1")).clock == 3
    await supervisor.stop()


@pytest.mark.asyncio
async def test_stop_writes_final_checkpoints(store, test_settings, clock):
    supervisor = SessionSupervisor(store, settings=test_settings, clock=clock)
    await _submit_all(supervisor, _opening("a") + _opening("b")[:3])
    await supervisor.stop()

    assert supervisor.active_sessions() == []
    assert (await store.get_latest_checkpoint("a")).clock == 4
    assert (await store.get_latest_checkpoint("b")).clock == 3
