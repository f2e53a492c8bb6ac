"""Section, item and reel mapping models.

These rows are managed by the dashboard; the DM queue only reads them.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class Section(SqlalchemyBase):
    """A curated product list."""

    __tablename__ = "sections"

    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Item(SqlalchemyBase):
    """An affiliate product inside a section."""

    __tablename__ = "items"
    __table_args__ = (Index("idx_items_section_id", "section_id"),)

    section_id: Mapped[str] = mapped_column(
        String, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    affiliate_link: Mapped[str] = mapped_column(String, nullable=False)
    price: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    platform: Mapped[str] = mapped_column(String, nullable=False, default="other")  # amazon, flipkart, ...
    item_title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ReelMapping(SqlalchemyBase):
    """Links a reel and a comment keyword to the section that gets DM'd."""

    __tablename__ = "reel_mappings"
    __table_args__ = (
        Index("idx_reel_mappings_reel_id", "reel_id"),
        Index("idx_reel_mappings_active", "active"),
    )

    reel_id: Mapped[str] = mapped_column(String, nullable=False)
    reel_url: Mapped[str] = mapped_column(String, nullable=False)
    section_id: Mapped[str] = mapped_column(
        String, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    keyword: Mapped[str] = mapped_column(String, nullable=False)  # stored lower-cased
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_items_in_dm: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    include_website_link: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
