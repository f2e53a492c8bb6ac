"""Models backing the DM rate limit ledger."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class DmSendEvent(SqlalchemyBase):
    """A successful DM send, counted against the hourly cap."""

    __tablename__ = "dm_send_events"
    __table_args__ = (Index("idx_dm_send_events_sent_at", "sent_at"),)

    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class DispatchState(SqlalchemyBase):
    """Singleton row: send spacing and whether the dispatch loop is scheduled."""

    __tablename__ = "dispatch_state"

    last_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    worker_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    worker_last_run: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
