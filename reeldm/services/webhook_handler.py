"""Instagram webhook event handler."""

import logging
import re
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..orm.base import utcnow
from ..orm.comment_log import CommentLog
from ..orm.content import ReelMapping
from ..orm.dm_job import TriggerType
from .database import DatabaseService
from .intake import DmTrigger, IntakeGate

logger = logging.getLogger(__name__)

REEL_URL_PATTERN = re.compile(r"instagram\.com/reels?/([A-Za-z0-9_-]+)", re.IGNORECASE)

COMMENT_FIELDS = ("comments", "comment")
MESSAGE_FIELDS = ("messages", "message")


def trigger_outcome(trigger: DmTrigger, job_id: Optional[str]) -> str:
    """Audit outcome for a trigger that reached the intake gate."""
    if job_id:
        return "queued"
    if not trigger.is_valid():
        return "invalid"
    return "duplicate"


def extract_reel_id(text: Optional[str]) -> Optional[str]:
    """Pull the reel ID out of a shared reel URL, if the text contains one."""
    if not text:
        return None
    match = REEL_URL_PATTERN.search(text)
    return match.group(1) if match else None


class WebhookHandler:
    """Turns Instagram webhook changes into DM triggers."""

    def __init__(self, db_service: DatabaseService, intake_gate: IntakeGate):
        """Initialize webhook handler.

        Args:
            db_service: Database service for mapping lookups and audit logs
            intake_gate: Gate that deduplicates and queues DM jobs
        """
        self.db_service = db_service
        self.intake_gate = intake_gate

    async def handle_payload(self, payload: dict[str, Any]) -> None:
        """Process every change in a webhook delivery.

        Errors are logged per change; one bad change never stops the rest.

        Args:
            payload: Parsed webhook body with an ``entry`` list
        """
        entries = payload.get("entry") or []
        logger.info("Processing webhook payload with %d entr(y/ies)", len(entries))

        for entry in entries:
            if not isinstance(entry, dict):
                continue
            for change in entry.get("changes") or []:
                try:
                    await self.handle_change(change)
                except Exception as e:
                    logger.error("Error processing webhook change: %s", e, exc_info=True)

    async def handle_change(self, change: dict[str, Any]) -> Optional[str]:
        """Route one change to the comment or message handler.

        Returns:
            The queued job ID, or None if nothing was queued.
        """
        if not isinstance(change, dict):
            return None

        field = change.get("field")
        value = change.get("value")
        if not isinstance(value, dict):
            logger.debug("Ignoring change without a value: field=%s", field)
            return None

        if field in COMMENT_FIELDS:
            return await self._handle_comment(value)
        elif field in MESSAGE_FIELDS:
            return await self._handle_message(value)

        logger.debug("Ignoring unhandled change field: %s", field)
        return None

    async def _handle_comment(self, value: dict[str, Any]) -> Optional[str]:
        """Handle a comment under a reel.

        The comment text (lower-cased, trimmed) must equal the keyword of an
        active mapping for that reel.
        """
        comment_text = (value.get("text") or "").lower().strip()
        media_id = (value.get("media") or {}).get("id")
        sender = value.get("from") or {}
        user_id = sender.get("id")
        username = sender.get("username")

        if not comment_text or not media_id or not user_id or not username:
            logger.debug("Missing required comment data, dropping event")
            return None

        # Comment ID is optional in some deliveries
        comment_id = value.get("id") or f"comment:{media_id}:{user_id}"

        logger.info("Comment from @%s on reel %s: %r", username, media_id, comment_text)

        mapping = await self.find_mapping_for_comment(media_id, comment_text)
        if mapping is None:
            logger.info("No mapping found for reel %s and keyword %r", media_id, comment_text)
            await self._log_trigger(
                comment_id=comment_id,
                reel_id=media_id,
                recipient_id=user_id,
                username=username,
                comment_text=comment_text,
                keyword=comment_text,
                outcome="no_mapping",
            )
            return None

        trigger = DmTrigger(
            recipient_id=user_id,
            username=username,
            section_id=mapping.section_id,
            reel_id=mapping.reel_id,
            trigger_type=TriggerType.COMMENT,
            trigger_id=comment_id,
            max_items=mapping.max_items_in_dm,
            include_link=mapping.include_website_link,
        )
        job_id = await self.intake_gate.submit(trigger)
        await self._log_trigger(
            comment_id=comment_id,
            reel_id=mapping.reel_id,
            recipient_id=user_id,
            username=username,
            comment_text=comment_text,
            keyword=mapping.keyword,
            section_id=mapping.section_id,
            job_id=job_id,
            outcome=trigger_outcome(trigger, job_id),
        )
        return job_id

    async def _handle_message(self, value: dict[str, Any]) -> Optional[str]:
        """Handle a DM that shares a reel link."""
        sender = value.get("from") or value.get("sender") or {}
        user_id = sender.get("id")
        username = sender.get("username") or user_id

        message = value.get("message") or {}
        text = message.get("text") or value.get("text")
        message_id = message.get("mid") or value.get("id")
        reel_ref = extract_reel_id(text)

        if not user_id or not message_id or not reel_ref:
            logger.debug("Message without sender, id or reel link, dropping event")
            return None

        mapping = await self.find_mapping_for_reel(reel_ref)
        if mapping is None:
            logger.info("No active mapping for shared reel %s", reel_ref)
            await self._log_trigger(
                comment_id=message_id,
                reel_id=reel_ref,
                recipient_id=user_id,
                username=username,
                comment_text=text,
                keyword=reel_ref,
                outcome="no_mapping",
            )
            return None

        trigger = DmTrigger(
            recipient_id=user_id,
            username=username,
            section_id=mapping.section_id,
            reel_id=mapping.reel_id,
            trigger_type=TriggerType.DM,
            trigger_id=message_id,
            max_items=mapping.max_items_in_dm,
            include_link=mapping.include_website_link,
        )
        job_id = await self.intake_gate.submit(trigger)
        await self._log_trigger(
            comment_id=message_id,
            reel_id=mapping.reel_id,
            recipient_id=user_id,
            username=username,
            comment_text=text,
            keyword=mapping.keyword,
            section_id=mapping.section_id,
            job_id=job_id,
            outcome=trigger_outcome(trigger, job_id),
        )
        return job_id

    async def find_mapping_for_comment(self, reel_id: str, comment_text: str) -> Optional[ReelMapping]:
        """Active mapping for this reel whose keyword matches the comment."""
        keyword = comment_text.lower().strip()
        async with self.db_service.session() as session:
            result = await session.execute(
                select(ReelMapping)
                .where(
                    ReelMapping.reel_id == reel_id,
                    ReelMapping.keyword == keyword,
                    ReelMapping.active == True,  # noqa: E712
                    ReelMapping.is_deleted == False,  # noqa: E712
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_mapping_for_reel(self, reel_ref: str) -> Optional[ReelMapping]:
        """Active mapping for a reel, matched by media ID or by the ID in its URL."""
        async with self.db_service.session() as session:
            result = await session.execute(
                select(ReelMapping)
                .where(
                    ReelMapping.active == True,  # noqa: E712
                    ReelMapping.is_deleted == False,  # noqa: E712
                    (ReelMapping.reel_id == reel_ref) | ReelMapping.reel_url.contains(reel_ref),
                )
                .order_by(ReelMapping.created_at.desc())
            )
            for mapping in result.scalars():
                if mapping.reel_id == reel_ref or extract_reel_id(mapping.reel_url) == reel_ref:
                    return mapping
            return None

    async def _log_trigger(
        self,
        comment_id: str,
        reel_id: str,
        recipient_id: str,
        username: str,
        comment_text: str,
        keyword: str,
        outcome: str,
        section_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> None:
        """Write an audit row; a comment ID already logged is left as is."""
        async with self.db_service.session() as session:
            await session.execute(
                sqlite_insert(CommentLog)
                .values(
                    comment_id=comment_id,
                    reel_id=reel_id,
                    recipient_id=recipient_id,
                    username=username,
                    comment_text=comment_text,
                    keyword=keyword,
                    section_id=section_id,
                    job_id=job_id,
                    outcome=outcome,
                    created_at=utcnow(),
                    is_deleted=False,
                )
                .on_conflict_do_nothing(index_elements=["comment_id"])
            )
            await session.commit()
