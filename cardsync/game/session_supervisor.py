"""Session supervisor -- owns exactly one reconcile worker per live session.

Each ``SessionWorker`` is an ``asyncio.Task`` draining its own queue, so the
events of one session are applied strictly one after another while sessions
never wait on each other.  A worker:

1. Recovers its engine from the store (checkpoint + log tail), retrying with
   backoff while the store is down.  Events that arrive meanwhile queue up.
2. For each event: appends it to the durable log, applies it, refills any gap
   from the log or else the match authority, and checkpoints when the engine
   says so.
3. Contains its own failures: an exception handling one event is logged,
   marks the session degraded, and the next event is processed normally.

The supervisor starts/stops with the FastAPI lifespan and runs a sweep every
``SWEEP_INTERVAL_SECONDS`` that:

- evicts closed sessions and workers idle for ``IDLE_TIMEOUT_SECONDS``
  (final checkpoint, bounded by ``CHECKPOINT_TIMEOUT_SECONDS``);
- closes sessions suspended longer than ``GRACE_PERIOD_SECONDS`` by feeding
  them a system ``timeout`` event at the next sequence position, so the close
  is in the log and replays like any other event.  Nothing is injected while
  a later authority event is buffered or a gap is open;
- re-requests backfills for gaps still open after ``BACKFILL_RETRY_SECONDS``.
"""
import asyncio
import logging
import time

from cardsync.config import settings as default_settings
from cardsync.game import metrics
from cardsync.game.errors import GapDetected, MalformedEventError, StoreUnavailable
from cardsync.game.event_normalizer import EventNormalizer
from cardsync.game.events import Event, EventKind, SessionStatus
from cardsync.game.match_authority import MatchAuthority, NullMatchAuthority
from cardsync.game.reconcile_engine import ApplyResult, ReconcileEngine

log = logging.getLogger(__name__)


class SessionWorker:
    """Serializes every event of one session through its ReconcileEngine."""

    def __init__(self, session_id: str, supervisor: "SessionSupervisor") -> None:
        self.session_id = session_id
        self._supervisor = supervisor
        self._settings = supervisor.settings
        self._clock = supervisor.clock
        self.queue: asyncio.Queue = asyncio.Queue()
        self.engine: ReconcileEngine | None = None
        self.task: asyncio.Task | None = None
        self.ready = asyncio.Event()
        self.closed = asyncio.Event()
        self.closing = False
        self.busy = False
        self.faulted = False
        self.last_activity = self._clock()
        self._checkpoint_backoff = self._settings.STORE_RETRY_BASE_SECONDS
        self._checkpoint_retry_at = 0.0
        self._backfill_requested_at: float | None = None
        # seq of an injected grace timeout that has not been folded yet
        self.timeout_seq: int | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.task = asyncio.create_task(
            self._run(), name=f"session-worker:{self.session_id}"
        )

    def enqueue(self, event: Event, future: asyncio.Future | None = None) -> None:
        self.last_activity = self._clock()
        self.queue.put_nowait((event, future))

    @property
    def degraded(self) -> bool:
        return self.faulted or (self.engine is not None and self.engine.degraded)

    def idle_for(self, now: float) -> float:
        return now - self.last_activity

    def backfill_due(self, now: float) -> bool:
        if self._backfill_requested_at is None:
            return True
        return now - self._backfill_requested_at >= self._settings.BACKFILL_RETRY_SECONDS

    async def shutdown(self, timeout: float) -> bool:
        """Cancel the worker and write a final checkpoint; True if it was written."""
        self.closing = True
        if self.task is not None:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            except Exception:
                log.exception("Worker for session %s had crashed", self.session_id)

        dropped = 0
        while not self.queue.empty():
            _, future = self.queue.get_nowait()
            self.queue.task_done()
            _resolve(future, None)
            dropped += 1
        if dropped:
            log.warning(
                "Session %s torn down with %d undrained events", self.session_id, dropped
            )

        if self.engine is None or not self.engine.view.exists:
            return False
        try:
            await asyncio.wait_for(
                self.engine.checkpoint(self._supervisor.store), timeout
            )
        except asyncio.TimeoutError:
            metrics.CHECKPOINT_FAILURES.inc()
            log.warning(
                "Final checkpoint of session %s timed out after %.1fs",
                self.session_id, timeout,
            )
            return False
        except StoreUnavailable as exc:
            metrics.CHECKPOINT_FAILURES.inc()
            log.warning("Final checkpoint of session %s failed: %s", self.session_id, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        await self._recover()
        while True:
            event, future = await self.queue.get()
            self.busy = True
            try:
                result = await self._handle(event)
            except asyncio.CancelledError:
                _resolve(future, None)
                raise
            except Exception as exc:
                self.faulted = True
                log.exception(
                    "Worker for session %s failed on seq %d; session degraded",
                    self.session_id, event.seq,
                )
                if future is not None and not future.done():
                    future.set_exception(exc)
            else:
                self.faulted = False
                _resolve(future, result)
            finally:
                self.busy = False
                self.queue.task_done()

    async def _recover(self) -> None:
        delay = self._settings.STORE_RETRY_BASE_SECONDS
        while True:
            try:
                self.engine = await ReconcileEngine.recover(
                    self.session_id,
                    self._supervisor.store,
                    **self._supervisor.engine_options(),
                )
                break
            except StoreUnavailable as exc:
                log.warning(
                    "Recovery of session %s failed (%s); retrying in %.1fs",
                    self.session_id, exc, delay,
                )
            except Exception:
                log.exception(
                    "Recovery of session %s crashed; retrying in %.1fs",
                    self.session_id, delay,
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._settings.STORE_RETRY_MAX_SECONDS)

        self.ready.set()
        log.info(
            "Session %s ready at clock %d (status=%s)",
            self.session_id, self.engine.clock,
            self.engine.status.value if self.engine.status else "new",
        )
        if self.engine.gap is not None:
            await self.request_backfill(self.engine.gap)

    async def _handle(self, event: Event) -> ApplyResult:
        self.last_activity = self._clock()
        if event.seq >= self.engine.next_seq:
            await self._persist(event)

        result = self.engine.apply(event)

        if result.gap is not None:
            await self.request_backfill(result.gap)
        if self.engine.needs_checkpoint():
            await self.try_checkpoint()
        self.last_activity = self._clock()
        return result

    async def _persist(self, event: Event) -> bool:
        attempts = max(1, self._settings.EVENT_WRITE_ATTEMPTS)
        delay = self._settings.STORE_RETRY_BASE_SECONDS
        for attempt in range(1, attempts + 1):
            try:
                await self._supervisor.store.put_event(event)
                return True
            except StoreUnavailable as exc:
                if attempt == attempts:
                    log.error(
                        "Event %s/%d not logged after %d attempts (%s); applying anyway",
                        event.session_id, event.seq, attempts, exc,
                    )
                    return False
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._settings.STORE_RETRY_MAX_SECONDS)
        return False

    # ------------------------------------------------------------------
    # Durability and backfill
    # ------------------------------------------------------------------

    async def try_checkpoint(self) -> bool:
        """Checkpoint unless a previous failure is still backing off."""
        now = self._clock()
        if now < self._checkpoint_retry_at:
            return False
        try:
            await self.engine.checkpoint(self._supervisor.store)
        except StoreUnavailable as exc:
            metrics.CHECKPOINT_FAILURES.inc()
            self._checkpoint_retry_at = now + self._checkpoint_backoff
            log.warning(
                "Checkpoint of session %s failed (%s); next attempt in %.1fs",
                self.session_id, exc, self._checkpoint_backoff,
            )
            self._checkpoint_backoff = min(
                self._checkpoint_backoff * 2, self._settings.STORE_RETRY_MAX_SECONDS
            )
            return False
        self._checkpoint_backoff = self._settings.STORE_RETRY_BASE_SECONDS
        self._checkpoint_retry_at = 0.0
        return True

    async def request_backfill(self, gap: GapDetected) -> int:
        """Fill *gap* from the durable log, then from the authority.

        Events dropped by a full reorder buffer were logged before they were
        dropped, so the log usually covers the gap on its own.  Whatever it
        does not cover is fetched from the authority and queued past the
        normalizer's duplicate window.  Returns the number of events queued.
        """
        self._backfill_requested_at = self._clock()
        queued = 0
        try:
            logged = await self._supervisor.store.get_events_since(
                self.session_id, gap.start - 1
            )
        except StoreUnavailable as exc:
            log.warning(
                "Could not read the log of session %s for seq %d..%d: %s",
                self.session_id, gap.start, gap.end, exc,
            )
            logged = []

        have = set()
        for event in logged:
            if event.seq > gap.end:
                break
            self.enqueue(event)
            have.add(event.seq)
            queued += 1

        first, last = gap.start, gap.end
        while first in have:
            first += 1
        if first > last:
            log.info(
                "Session %s: seq %d..%d refilled from the log",
                self.session_id, gap.start, gap.end,
            )
            return queued
        while last in have:
            last -= 1

        raws = await self._supervisor.authority.backfill(self.session_id, first, last)
        for raw in raws:
            try:
                await self._supervisor.resubmit(raw)
            except MalformedEventError:
                continue  # logged and counted by resubmit()
            queued += 1
        return queued


def _resolve(future: asyncio.Future | None, result) -> None:
    if future is not None and not future.done():
        future.set_result(result)


class SessionSupervisor:
    """Registry of session workers plus the background sweep that tends them."""

    def __init__(
        self,
        store,
        *,
        authority: MatchAuthority | None = None,
        normalizer: EventNormalizer | None = None,
        settings=None,
        clock=time.time,
    ) -> None:
        self.settings = settings or default_settings
        self.store = store
        self.authority = authority or NullMatchAuthority()
        self.clock = clock
        self.normalizer = normalizer or EventNormalizer(
            self.settings.DEDUP_WINDOW_SIZE, clock=clock
        )
        self._workers: dict[str, SessionWorker] = {}
        self._lock = asyncio.Lock()
        self._running: bool = False
        self._task: asyncio.Task | None = None

    def engine_options(self) -> dict:
        return {
            "min_participants": self.settings.MIN_PARTICIPANTS,
            "reorder_window": self.settings.REORDER_WINDOW,
            "buffer_limit": self.settings.REORDER_BUFFER_LIMIT,
            "checkpoint_every": self.settings.CHECKPOINT_EVERY_EVENTS,
            "checkpoint_interval": self.settings.CHECKPOINT_INTERVAL_SECONDS,
            "clock": self.clock,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        log.info(
            "Session supervisor started (sweep every %.1fs)",
            self.settings.SWEEP_INTERVAL_SECONDS,
        )

    async def stop(self) -> None:
        """Stop sweeping and tear down every worker with a final checkpoint."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await asyncio.gather(
            *(self.evict(sid, reason="shutdown") for sid in list(self._workers))
        )
        log.info("Session supervisor stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.SWEEP_INTERVAL_SECONDS)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Unhandled error in session sweep")

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def submit(self, raw, *, arrived_at: float | None = None) -> Event | None:
        """Normalize *raw* and queue it on its session's worker.

        Returns the canonical Event, or None for a duplicate.  Raises
        ``MalformedEventError`` after logging it.
        """
        event = self._normalize(raw, arrived_at)
        if event is not None:
            await self.dispatch(event)
        return event

    async def submit_and_wait(
        self, raw, *, arrived_at: float | None = None
    ) -> tuple[Event | None, ApplyResult | None]:
        """Like ``submit`` but waits for the worker to apply the event.

        The result is None when the event was a duplicate or its worker was
        torn down before reaching it.
        """
        event = self._normalize(raw, arrived_at)
        if event is None:
            return None, None
        future = asyncio.get_running_loop().create_future()
        await self.dispatch(event, future)
        return event, await future

    async def resubmit(self, raw) -> Event:
        """Queue a backfilled event even if the duplicate window has seen it."""
        event = self._normalize(raw, None, readmit=True)
        await self.dispatch(event)
        return event

    def _normalize(
        self, raw, arrived_at: float | None, *, readmit: bool = False
    ) -> Event | None:
        try:
            if readmit:
                return self.normalizer.readmit(raw, arrived_at=arrived_at)
            event = self.normalizer.normalize(raw, arrived_at=arrived_at)
        except MalformedEventError as exc:
            metrics.EVENTS_MALFORMED.inc()
            log.warning("Dropping malformed event: %s (raw=%r)", exc.reason, raw)
            raise
        if event is None:
            metrics.EVENTS_DUPLICATE.labels(stage="normalizer").inc()
        return event

    async def dispatch(self, event: Event, future: asyncio.Future | None = None) -> None:
        worker = await self._worker_for(event.session_id)
        worker.enqueue(event, future)

    async def _worker_for(self, session_id: str) -> SessionWorker:
        while True:
            async with self._lock:
                worker = self._workers.get(session_id)
                if worker is None:
                    worker = SessionWorker(session_id, self)
                    self._workers[session_id] = worker
                    worker.start()
                    metrics.ACTIVE_WORKERS.set(len(self._workers))
                    log.info("Started worker for session %s", session_id)
                    return worker
                if not worker.closing:
                    return worker
                closed = worker.closed
            # The previous worker is still flushing; wait for its checkpoint.
            await closed.wait()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        for worker in list(self._workers.values()):
            if not worker.closing:
                await worker.queue.join()

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: float | None = None) -> None:
        """Evict, expire and re-request backfills; see the module docstring."""
        now = self.clock() if now is None else now
        degraded = 0

        for session_id, worker in list(self._workers.items()):
            engine = worker.engine
            if worker.closing or engine is None:
                continue
            pending = worker.busy or not worker.queue.empty()

            if engine.status is SessionStatus.CLOSED and not pending:
                await self.evict(session_id, reason="closed")
                continue

            if not pending:
                if self._grace_expired(worker, now):
                    await self._expire_grace(worker, now)
                elif worker.idle_for(now) >= self.settings.IDLE_TIMEOUT_SECONDS:
                    await self.evict(session_id, reason="idle")
                    continue
                elif engine.gap is not None and worker.backfill_due(now):
                    await worker.request_backfill(engine.gap)

            if worker.degraded:
                degraded += 1

        metrics.DEGRADED_SESSIONS.set(degraded)

    def _grace_expired(self, worker: SessionWorker, now: float) -> bool:
        engine = worker.engine
        if engine.status is not SessionStatus.SUSPENDED or engine.gap is not None:
            return False
        # Seqs past the clock were seen, so next_seq belongs to the authority.
        if engine.in_flight:
            return False
        if engine.view.suspended_at is None:
            return False
        if worker.timeout_seq is not None and engine.clock < worker.timeout_seq:
            return False
        return now - engine.view.suspended_at >= self.settings.GRACE_PERIOD_SECONDS

    async def _expire_grace(self, worker: SessionWorker, now: float) -> None:
        seq = worker.engine.next_seq
        log.info(
            "Session %s suspended past its grace period; closing at seq %d",
            worker.session_id, seq,
        )
        event = await self.submit(
            {
                "session_id": worker.session_id,
                "seq": seq,
                "kind": EventKind.TIMEOUT.value,
                "payload": {"reason": "grace_expired"},
            },
            arrived_at=now,
        )
        if event is not None:
            worker.timeout_seq = seq

    async def evict(self, session_id: str, reason: str = "idle") -> bool:
        """Tear down a session's worker; True if its final checkpoint was written."""
        worker = self._workers.get(session_id)
        if worker is None or worker.closing:
            return False
        log.info("Evicting session %s (%s)", session_id, reason)
        written = await worker.shutdown(self.settings.CHECKPOINT_TIMEOUT_SECONDS)
        async with self._lock:
            if self._workers.get(session_id) is worker:
                del self._workers[session_id]
            metrics.ACTIVE_WORKERS.set(len(self._workers))
        self.normalizer.forget(session_id)
        worker.closed.set()
        return written

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def worker(self, session_id: str) -> SessionWorker | None:
        return self._workers.get(session_id)

    def snapshot(self, session_id: str) -> dict | None:
        """Current view of a live session, or None if no worker holds it."""
        worker = self._workers.get(session_id)
        if worker is None or worker.engine is None:
            return None
        snap = worker.engine.snapshot()
        snap["degraded"] = worker.degraded
        snap["queued"] = worker.queue.qsize()
        return snap

    def active_sessions(self) -> list[dict]:
        sessions = []
        for session_id, worker in sorted(self._workers.items()):
            engine = worker.engine
            sessions.append({
                "session_id": session_id,
                "ready": engine is not None,
                "status": engine.status.value if engine and engine.status else None,
                "clock": engine.clock if engine else None,
                "participants": list(engine.view.participants) if engine else [],
                "degraded": worker.degraded,
            })
        return sessions
