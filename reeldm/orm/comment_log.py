"""CommentLog model for auditing inbound webhook triggers."""

from typing import Optional

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class CommentLog(SqlalchemyBase):
    """Record what happened to each comment or DM trigger we evaluated."""

    __tablename__ = "comment_logs"
    __table_args__ = (
        Index("idx_comment_logs_comment_id", "comment_id", unique=True),
        Index("idx_comment_logs_reel_id", "reel_id"),
        Index("idx_comment_logs_created_at", "created_at"),
    )

    comment_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    reel_id: Mapped[str] = mapped_column(String, nullable=False)
    recipient_id: Mapped[str] = mapped_column(String, nullable=False)
    username: Mapped[str] = mapped_column(String, nullable=False)
    comment_text: Mapped[str] = mapped_column(String, nullable=False)
    keyword: Mapped[str] = mapped_column(String, nullable=False)
    section_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    job_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)  # queued, duplicate, invalid, no_mapping
