"""Service for persisting DM jobs and their status transitions."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..orm.base import utcnow
from ..orm.dm_job import ACTIVE_STATUSES, DmJob, DmJobStatus, TriggerType
from .database import DatabaseService

logger = logging.getLogger(__name__)


class JobStore:
    """Durable queue of DM jobs.

    Jobs are never deleted. Pending jobs are served in ``queue_position``
    order; a job that goes back to pending after a failed attempt gets a
    fresh position at the back of the queue.
    """

    def __init__(self, db_service: DatabaseService):
        self.db_service = db_service

    async def _next_position(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.max(DmJob.queue_position)))
        return (result.scalar() or 0) + 1

    async def create_job(
        self,
        recipient_id: str,
        username: str,
        section_id: str,
        reel_id: str,
        trigger_type: TriggerType,
        trigger_id: str,
        max_items: int,
        include_link: bool,
    ) -> DmJob:
        """Insert a new pending job at the back of the queue.

        Raises:
            IntegrityError: If an active job for the same recipient and reel
                was inserted concurrently.
        """
        async with self.db_service.session() as session:
            job = DmJob(
                recipient_id=recipient_id,
                username=username,
                section_id=section_id,
                reel_id=reel_id,
                trigger_type=trigger_type,
                trigger_id=trigger_id,
                max_items=max_items,
                include_link=include_link,
                status=DmJobStatus.PENDING,
                attempt_count=0,
                queue_position=await self._next_position(session),
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def find_active_job(self, recipient_id: str, reel_id: str) -> Optional[DmJob]:
        """Return the pending, processing or sent job for this recipient and reel."""
        async with self.db_service.session() as session:
            result = await session.execute(
                select(DmJob)
                .where(
                    DmJob.recipient_id == recipient_id,
                    DmJob.reel_id == reel_id,
                    DmJob.status.in_(ACTIVE_STATUSES),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_job(self, job_id: str) -> Optional[DmJob]:
        """Get a job by ID."""
        async with self.db_service.session() as session:
            return await session.get(DmJob, job_id)

    async def next_pending(self) -> Optional[DmJob]:
        """Oldest pending job, or None if the queue is empty."""
        async with self.db_service.session() as session:
            result = await session.execute(
                select(DmJob)
                .where(DmJob.status == DmJobStatus.PENDING)
                .order_by(DmJob.queue_position, DmJob.created_at)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def mark_processing(self, job_id: str, now: Optional[datetime] = None):
        """Claim a job for the current attempt."""
        async with self.db_service.session() as session:
            await session.execute(
                update(DmJob)
                .where(DmJob.id == job_id)
                .values(status=DmJobStatus.PROCESSING, last_attempt_at=now or utcnow())
            )
            await session.commit()

    async def mark_sent(self, job_id: str, message_text: str, now: Optional[datetime] = None):
        """Record a successful delivery."""
        async with self.db_service.session() as session:
            await session.execute(
                update(DmJob)
                .where(DmJob.id == job_id)
                .values(
                    status=DmJobStatus.SENT,
                    sent_at=now or utcnow(),
                    message_text=message_text,
                    error=None,
                )
            )
            await session.commit()

    async def mark_failed(self, job_id: str, error: str, max_attempts: int) -> Optional[DmJob]:
        """Record a failed attempt.

        The job goes back to pending at the end of the queue until
        ``max_attempts`` failures have been recorded, then becomes failed.
        """
        async with self.db_service.session() as session:
            job = await session.get(DmJob, job_id)
            if job is None:
                logger.warning("Cannot record failure for missing job %s", job_id)
                return None

            job.attempt_count += 1
            job.error = error
            if job.attempt_count >= max_attempts:
                job.status = DmJobStatus.FAILED
            else:
                job.status = DmJobStatus.PENDING
                job.queue_position = await self._next_position(session)

            await session.commit()
            await session.refresh(job)
            return job

    async def list_pending(self, limit: Optional[int] = None) -> List[DmJob]:
        """Pending jobs in the order the worker will take them."""
        return await self.list_by_status(DmJobStatus.PENDING, limit=limit)

    async def list_by_status(self, status: DmJobStatus, limit: Optional[int] = None) -> List[DmJob]:
        """Jobs with the given status, queue order first."""
        async with self.db_service.session() as session:
            query = (
                select(DmJob)
                .where(DmJob.status == status)
                .order_by(DmJob.queue_position, DmJob.created_at)
            )
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_by_status(self) -> dict[DmJobStatus, int]:
        """Job counts for every status, zero-filled."""
        counts = {status: 0 for status in DmJobStatus}
        async with self.db_service.session() as session:
            result = await session.execute(
                select(DmJob.status, func.count(DmJob.id)).group_by(DmJob.status)
            )
            for status, count in result.all():
                counts[DmJobStatus(status)] = count
        return counts

    async def requeue_stale_processing(self) -> int:
        """Put jobs left in processing by a dead worker back in the queue.

        The interrupted attempt is not counted against the job.
        """
        async with self.db_service.session() as session:
            result = await session.execute(
                select(DmJob)
                .where(DmJob.status == DmJobStatus.PROCESSING)
                .order_by(DmJob.queue_position)
            )
            stale = result.scalars().all()
            position = await self._next_position(session)
            for offset, job in enumerate(stale):
                job.status = DmJobStatus.PENDING
                job.queue_position = position + offset
            await session.commit()
            return len(stale)
