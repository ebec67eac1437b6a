from datetime import datetime

from sqlalchemy import Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SessionCheckpoint(Base):
    __tablename__ = "session_checkpoints"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    clock: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(16))
    state: Mapped[str] = mapped_column(Text)  # canonical JSON of the session view
    checksum: Mapped[str] = mapped_column(String(64))  # sha256 hex of ``state``
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
