"""DmJob model for queued Instagram direct messages."""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class DmJobStatus(str, PyEnum):
    """Lifecycle states for a DM job."""

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class TriggerType(str, PyEnum):
    """What caused a DM job to be queued."""

    COMMENT = "comment"
    DM = "dm"


# A recipient gets at most one of these per reel
ACTIVE_STATUSES = (DmJobStatus.PENDING, DmJobStatus.PROCESSING, DmJobStatus.SENT)

_ACTIVE_WHERE = text("status IN ('pending', 'processing', 'sent')")


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class DmJob(SqlalchemyBase):
    """One intent to DM a section's product list to an Instagram user."""

    __tablename__ = "dm_jobs"
    __table_args__ = (
        Index("idx_dm_jobs_status_position", "status", "queue_position"),
        Index("idx_dm_jobs_recipient_reel", "recipient_id", "reel_id"),
        Index(
            "uq_dm_jobs_active_recipient_reel",
            "recipient_id",
            "reel_id",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
    )

    # Who and why
    recipient_id: Mapped[str] = mapped_column(String, nullable=False)
    username: Mapped[str] = mapped_column(String, nullable=False)
    reel_id: Mapped[str] = mapped_column(String, nullable=False)
    trigger_type: Mapped[TriggerType] = mapped_column(
        Enum(TriggerType, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
    )
    trigger_id: Mapped[str] = mapped_column(String, nullable=False)  # comment or message id

    # What to send
    section_id: Mapped[str] = mapped_column(String, nullable=False)
    max_items: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    include_link: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Lifecycle
    status: Mapped[DmJobStatus] = mapped_column(
        Enum(DmJobStatus, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=DmJobStatus.PENDING,
    )
    queue_position: Mapped[int] = mapped_column(BigInteger, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<DmJob(id={self.id}, recipient={self.username}, reel_id={self.reel_id}, "
            f"status={self.status.value if self.status else None}, attempts={self.attempt_count})>"
        )
