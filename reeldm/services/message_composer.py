"""Render the product-list DM for a section."""

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select

from ..orm.content import Item, Section
from .database import DatabaseService

logger = logging.getLogger(__name__)

TRUNCATION_SUFFIX = "\n\n... (visit link for full list)"


class SectionNotFoundError(LookupError):
    """The section a job points at no longer exists."""


@dataclass
class ComposedMessage:
    """Rendered DM text plus a few numbers for the dashboard."""

    text: str
    item_count: int
    character_count: int


class MessageComposer(Protocol):
    """Anything that can turn a section into DM text."""

    async def compose(self, section_id: str, max_items: int, include_link: bool) -> ComposedMessage:
        ...


def truncate_message(text: str, char_limit: int = 1000, truncate_at: int = 950) -> str:
    """Fit a message into the transport's character cap.

    Messages over ``char_limit`` are cut to ``truncate_at`` characters and
    get a pointer to the full list appended. The result never exceeds
    ``char_limit``.
    """
    if len(text) <= char_limit:
        return text

    keep = min(truncate_at, char_limit - len(TRUNCATION_SUFFIX))
    return text[:keep] + TRUNCATION_SUFFIX


class SectionMessageComposer:
    """Builds the DM from the section's newest items."""

    def __init__(self, db_service: DatabaseService, site_url: str):
        self.db_service = db_service
        self.site_url = site_url.rstrip("/")

    async def compose(self, section_id: str, max_items: int, include_link: bool) -> ComposedMessage:
        """Render the message for ``section_id``.

        Raises:
            SectionNotFoundError: If the section was deleted.
        """
        async with self.db_service.session() as session:
            section = await session.get(Section, section_id)
            if section is None or section.is_deleted:
                raise SectionNotFoundError(f"Collection not found: {section_id}")

            result = await session.execute(
                select(Item)
                .where(Item.section_id == section_id, Item.is_deleted == False)  # noqa: E712
                .order_by(Item.created_at.desc())
                .limit(max_items)
            )
            items = result.scalars().all()

        lines = [f'Hi! Here are my top picks from "{section.title}":\n\n']

        if include_link:
            lines.append(f"\U0001f517 View full collection: {self.site_url}/list/{section_id}\n\n")

        for index, item in enumerate(items, start=1):
            entry = f"{index}. {item.item_title or 'Product'}"
            if item.price:
                entry += f" - ₹{item.price}"
            entry += f"\n\U0001f449 {item.affiliate_link}\n\n"
            lines.append(entry)

        if len(items) < max_items:
            lines.append(f"(Showing all {len(items)} items)\n\n")
        else:
            lines.append(f"(Showing top {max_items} items - visit link for more)\n\n")

        lines.append("\U0001f495 Thank you for your support! xoxo")

        text = "".join(lines)
        logger.debug("Composed DM for section %s: %d items, %d chars", section_id, len(items), len(text))
        return ComposedMessage(text=text, item_count=len(items), character_count=len(text))
