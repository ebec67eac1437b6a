from datetime import datetime

from sqlalchemy import Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SessionEvent(Base):
    """One entry of a session's append-only event log.

    Keyed by (session_id, seq) so a redelivered event upserts onto itself.
    """

    __tablename__ = "session_events"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[str] = mapped_column(String(16))  # "join", "leave", "action", ...
    participant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[str] = mapped_column(Text, default="{}")  # JSON string
    arrived_at: Mapped[float] = mapped_column(Float)
    recorded_at: Mapped[datetime] = mapped_column(server_default=func.now())
