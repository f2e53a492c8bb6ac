"""Admission of DM triggers into the job queue."""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.exc import IntegrityError

from ..orm.dm_job import TriggerType
from .job_store import JobStore

logger = logging.getLogger(__name__)


class WorkerStarter(Protocol):
    """The part of the dispatch worker the intake gate needs."""

    async def ensure_running(self) -> bool:
        ...


@dataclass
class DmTrigger:
    """A request to DM a section to someone, from a comment or a DM."""

    recipient_id: str
    username: str
    section_id: str
    reel_id: str
    trigger_type: TriggerType
    trigger_id: str
    max_items: int = 10
    include_link: bool = True

    def is_valid(self) -> bool:
        """All identifiers present and a usable item count."""
        required = (self.recipient_id, self.username, self.section_id, self.reel_id, self.trigger_id)
        return all(required) and self.max_items >= 1


class IntakeGate:
    """Deduplicates triggers and queues a job for each new one.

    A recipient gets at most one pending, processing or sent job per reel.
    Duplicates and malformed triggers are skipped without raising.
    """

    def __init__(self, job_store: JobStore, worker: WorkerStarter):
        self.job_store = job_store
        self.worker = worker

    async def submit(self, trigger: DmTrigger) -> Optional[str]:
        """Queue a DM job for ``trigger``.

        Returns:
            The new job ID, or None if the trigger was malformed or a job
            already exists for this recipient and reel.
        """
        if not trigger.is_valid():
            logger.debug("Dropping incomplete trigger %s", trigger.trigger_id)
            return None

        existing = await self.job_store.find_active_job(trigger.recipient_id, trigger.reel_id)
        if existing is not None:
            logger.info(
                "Duplicate job detected for @%s on reel %s - skipping",
                trigger.username,
                trigger.reel_id,
            )
            return None

        try:
            job = await self.job_store.create_job(
                recipient_id=trigger.recipient_id,
                username=trigger.username,
                section_id=trigger.section_id,
                reel_id=trigger.reel_id,
                trigger_type=trigger.trigger_type,
                trigger_id=trigger.trigger_id,
                max_items=trigger.max_items,
                include_link=trigger.include_link,
            )
        except IntegrityError:
            # Lost a race with a concurrent webhook for the same pair
            logger.info(
                "Concurrent duplicate for @%s on reel %s - skipping",
                trigger.username,
                trigger.reel_id,
            )
            return None

        logger.info(
            "Queued job %s for @%s (%s %s)",
            job.id,
            trigger.username,
            trigger.trigger_type.value,
            trigger.trigger_id,
        )

        await self.worker.ensure_running()
        return job.id
