"""Session store -- durable event log and checkpoints for every session.

Both tables are keyed so that every write is an idempotent upsert:

- ``session_events`` by (session_id, seq); a redelivered event keeps the row
  that was written first, since events never change.
- ``session_checkpoints`` by (session_id, clock); rewriting a checkpoint for
  the same clock overwrites it with the same content.

Every database or driver failure surfaces as ``StoreUnavailable`` so callers
can retry without knowing which backend is behind the store.
"""
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.game.errors import StoreUnavailable
from cardsync.game.event_normalizer import parse_kind
from cardsync.game.events import Event
from cardsync.game.session_view import encode_state, state_checksum
from cardsync.models.checkpoint import SessionCheckpoint
from cardsync.models.session_event import SessionEvent

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointRecord:
    session_id: str
    clock: int
    status: str
    state: dict
    checksum: str

    def is_intact(self) -> bool:
        return state_checksum(encode_state(self.state)) == self.checksum

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "clock": self.clock,
            "status": self.status,
            "state": self.state,
            "checksum": self.checksum,
        }


def event_from_row(row: SessionEvent) -> Event:
    return Event(
        session_id=row.session_id,
        seq=row.seq,
        kind=parse_kind(row.kind),
        participant_id=row.participant_id,
        payload=json.loads(row.payload or "{}"),
        arrived_at=row.arrived_at,
    )


def checkpoint_from_row(row: SessionCheckpoint) -> CheckpointRecord:
    return CheckpointRecord(
        session_id=row.session_id,
        clock=row.clock,
        status=row.status,
        state=json.loads(row.state),
        checksum=row.checksum,
    )


class SessionStore:
    """Async SQLAlchemy implementation of the session store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _io(self, operation: str):
        try:
            yield
        except (SQLAlchemyError, OSError) as exc:
            log.warning("Session store %s failed: %s", operation, exc)
            raise StoreUnavailable(f"{operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def put_event(self, event: Event) -> bool:
        """Append *event* to the log.  Returns False if it was already there."""
        async with self._io("put_event"):
            async with self._session_factory() as db:
                existing = await db.get(SessionEvent, (event.session_id, event.seq))
                if existing is not None:
                    return False
                db.add(SessionEvent(
                    session_id=event.session_id,
                    seq=event.seq,
                    kind=event.kind.value,
                    participant_id=event.participant_id,
                    payload=json.dumps(event.payload, sort_keys=True),
                    arrived_at=event.arrived_at,
                ))
                try:
                    await db.commit()
                except IntegrityError:
                    # A concurrent writer stored the same (session_id, seq) first.
                    await db.rollback()
                    return False
                return True

    async def get_events_since(self, session_id: str, seq: int) -> list[Event]:
        """Return the logged events of *session_id* with sequence number > *seq*."""
        async with self._io("get_events_since"):
            async with self._session_factory() as db:
                rows = (
                    await db.execute(
                        select(SessionEvent)
                        .where(
                            SessionEvent.session_id == session_id,
                            SessionEvent.seq > seq,
                        )
                        .order_by(SessionEvent.seq)
                    )
                ).scalars().all()
                return [event_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def put_checkpoint(
        self,
        session_id: str,
        clock: int,
        status: str | None,
        state: dict,
    ) -> CheckpointRecord:
        """Write (or overwrite) the checkpoint of *session_id* at *clock*."""
        encoded = encode_state(state)
        checksum = state_checksum(encoded)
        async with self._io("put_checkpoint"):
            async with self._session_factory() as db:
                row = await db.get(SessionCheckpoint, (session_id, clock))
                if row is None:
                    row = SessionCheckpoint(session_id=session_id, clock=clock)
                    db.add(row)
                row.status = status or ""
                row.state = encoded
                row.checksum = checksum
                await db.commit()
        return CheckpointRecord(
            session_id=session_id,
            clock=clock,
            status=status or "",
            state=json.loads(encoded),
            checksum=checksum,
        )

    async def get_latest_checkpoint(self, session_id: str) -> CheckpointRecord | None:
        async with self._io("get_latest_checkpoint"):
            async with self._session_factory() as db:
                row = (
                    await db.execute(
                        select(SessionCheckpoint)
                        .where(SessionCheckpoint.session_id == session_id)
                        .order_by(SessionCheckpoint.clock.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
                return checkpoint_from_row(row) if row is not None else None
