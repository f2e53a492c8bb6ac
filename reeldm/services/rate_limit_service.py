"""Service for the DM rate limit ledger and worker liveness flag."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..orm.base import ensure_utc, utcnow
from ..orm.dm_job import DmJob, DmJobStatus
from ..orm.rate_limit import DispatchState, DmSendEvent
from .database import DatabaseService

logger = logging.getLogger(__name__)

# Primary key of the single dispatch_state row
STATE_ID = "dispatch"


class RateLimitService:
    """Hourly cap and send spacing for outgoing DMs.

    Sends are recorded as ``DmSendEvent`` rows; anything older than the
    window no longer counts and is pruned whenever a new send is recorded.
    The ``DispatchState`` row is created lazily on first access.
    """

    def __init__(
        self,
        db_service: DatabaseService,
        max_per_hour: int = 195,
        min_spacing_ms: int = 1000,
        window: timedelta = timedelta(hours=1),
    ):
        self.db_service = db_service
        self.max_per_hour = max_per_hour
        self.min_spacing = timedelta(milliseconds=min_spacing_ms)
        self.window = window

    async def _get_state(self, session: AsyncSession) -> DispatchState:
        await session.execute(
            sqlite_insert(DispatchState)
            .values(id=STATE_ID, worker_active=False, is_deleted=False)
            .on_conflict_do_nothing(index_elements=["id"])
        )
        return await session.get(DispatchState, STATE_ID)

    async def _count_since(self, session: AsyncSession, cutoff: datetime) -> int:
        result = await session.execute(
            select(func.count(DmSendEvent.id)).where(DmSendEvent.sent_at > cutoff)
        )
        return result.scalar_one()

    async def reserve_slot(self, now: Optional[datetime] = None) -> bool:
        """Check whether a DM may be sent right now.

        Nothing is written: the send is only counted once ``record_send`` is
        called after a successful delivery.
        """
        now = now or utcnow()
        async with self.db_service.session() as session:
            state = await self._get_state(session)

            last_sent_at = ensure_utc(state.last_sent_at)
            if last_sent_at is not None and now - last_sent_at < self.min_spacing:
                logger.debug("Refusing slot: last send at %s is too recent", last_sent_at)
                return False

            recent = await self._count_since(session, now - self.window)
            if recent >= self.max_per_hour:
                logger.info("Refusing slot: %d DMs sent in the last hour", recent)
                return False

            return True

    async def record_send(self, sent_at: Optional[datetime] = None, job_id: Optional[str] = None):
        """Record a successful send and prune events outside the window."""
        sent_at = sent_at or utcnow()
        async with self.db_service.session() as session:
            state = await self._get_state(session)
            session.add(DmSendEvent(sent_at=sent_at, job_id=job_id))
            state.last_sent_at = sent_at

            await session.execute(
                delete(DmSendEvent).where(DmSendEvent.sent_at <= sent_at - self.window)
            )
            await session.commit()

    async def recent_send_count(self, now: Optional[datetime] = None) -> int:
        """Number of sends inside the current window."""
        now = now or utcnow()
        async with self.db_service.session() as session:
            return await self._count_since(session, now - self.window)

    async def get_remaining(self, now: Optional[datetime] = None) -> int:
        """Sends left before the hourly cap is hit."""
        return max(0, self.max_per_hour - await self.recent_send_count(now))

    async def is_worker_active(self) -> bool:
        """Whether a dispatch loop is currently scheduled."""
        async with self.db_service.session() as session:
            state = await self._get_state(session)
            return state.worker_active

    async def try_activate_worker(self) -> bool:
        """Flip ``worker_active`` from False to True.

        Returns True only for the caller whose update changed the row, so
        concurrent callers can never both believe they started the loop.
        """
        async with self.db_service.session() as session:
            await self._get_state(session)
            result = await session.execute(
                update(DispatchState)
                .where(
                    DispatchState.id == STATE_ID,
                    DispatchState.worker_active == False,  # noqa: E712
                )
                .values(worker_active=True)
            )
            await session.commit()
            return result.rowcount == 1

    async def set_worker_active(self, active: bool):
        """Unconditionally set the liveness flag."""
        async with self.db_service.session() as session:
            await self._get_state(session)
            await session.execute(
                update(DispatchState)
                .where(DispatchState.id == STATE_ID)
                .values(worker_active=active)
            )
            await session.commit()

    async def release_worker_if_idle(self) -> bool:
        """Clear ``worker_active`` only if no job is pending.

        The emptiness check and the flag write are one statement, so a job
        admitted while the loop is winding down keeps the loop alive instead
        of being left behind with no worker.

        Returns:
            True if the flag was cleared and the loop should exit.
        """
        pending = select(DmJob.id).where(DmJob.status == DmJobStatus.PENDING).exists()
        async with self.db_service.session() as session:
            await self._get_state(session)
            result = await session.execute(
                update(DispatchState)
                .where(DispatchState.id == STATE_ID, ~pending)
                .values(worker_active=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_worker_run(self, now: Optional[datetime] = None):
        """Stamp the time of the latest worker tick."""
        async with self.db_service.session() as session:
            await self._get_state(session)
            await session.execute(
                update(DispatchState)
                .where(DispatchState.id == STATE_ID)
                .values(worker_last_run=now or utcnow())
            )
            await session.commit()

    async def get_state(self) -> DispatchState:
        """Return a detached copy of the dispatch state row."""
        async with self.db_service.session() as session:
            return await self._get_state(session)
