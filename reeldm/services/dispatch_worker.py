"""Background worker that drains the DM queue."""

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from ..config import QueueConfig
from ..orm.base import ensure_utc, utcnow
from ..orm.dm_job import DmJob, DmJobStatus
from .delivery_client import DeliveryClient, InstagramCredentials
from .job_store import JobStore
from .message_composer import MessageComposer, truncate_message
from .rate_limit_service import RateLimitService

logger = logging.getLogger(__name__)


class CredentialsProvider(Protocol):
    """Source of the Instagram access token for each send."""

    def get_credentials(self) -> Optional[InstagramCredentials]:
        ...


@dataclass
class QueueStats:
    """Queue numbers shown on the dashboard."""

    pending: int
    processing: int
    sent: int
    failed: int
    dms_sent_last_hour: int
    worker_active: bool
    estimated_minutes_to_clear: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AttemptOutcome:
    """Result of one delivery attempt, waiting to be written to the store."""

    job_id: str
    message_text: Optional[str]
    error: Optional[str]
    finished_at: datetime


class DispatchWorker:
    """Single-instance loop that sends one queued DM per tick.

    Each tick checks the rate limit ledger, takes the oldest pending job,
    composes and sends its message, records the outcome, and returns the
    delay before the next tick. The loop ends when a tick finds the queue
    empty or ``stop()`` is called. ``worker_active`` in the ledger is the
    single gate that keeps a second loop from starting.
    """

    def __init__(
        self,
        job_store: JobStore,
        rate_limit_service: RateLimitService,
        composer: MessageComposer,
        delivery_client: DeliveryClient,
        credentials_provider: CredentialsProvider,
        queue_config: Optional[QueueConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_store = job_store
        self.rate_limit_service = rate_limit_service
        self.composer = composer
        self.delivery_client = delivery_client
        self.credentials_provider = credentials_provider
        self.queue_config = queue_config or QueueConfig()
        self.clock = clock

        self.tick_spacing = self.queue_config.tick_spacing_ms / 1000
        self.rate_limit_backoff = self.queue_config.rate_limit_backoff_ms / 1000

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._unsettled: dict[str, AttemptOutcome] = {}

    @property
    def is_running(self) -> bool:
        """Whether this process currently owns a live loop task."""
        return self._task is not None and not self._task.done()

    async def ensure_running(self) -> bool:
        """Start the loop unless one is already active.

        Returns:
            True if this call started the loop.
        """
        if not await self.rate_limit_service.try_activate_worker():
            logger.debug("Worker already active")
            return False

        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="reeldm-dispatch-worker"
        )
        logger.info("Worker started")
        return True

    async def stop(self) -> None:
        """Stop the loop after the in-flight tick and clear the liveness flag."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._unsettled:
            try:
                await self._settle_outstanding()
            except Exception as e:
                logger.error(
                    "Stopping with %d unrecorded outcome(s): %s", len(self._unsettled), e, exc_info=True
                )
        await self.rate_limit_service.set_worker_active(False)
        logger.info("Worker stopped")

    async def wait_until_idle(self) -> None:
        """Block until the current loop exits on its own."""
        if self._task is not None:
            await self._task

    async def recover(self) -> int:
        """Reset state left behind by a process that died mid-loop.

        Returns:
            Number of jobs moved from processing back to pending.
        """
        requeued = await self.job_store.requeue_stale_processing()
        await self.rate_limit_service.set_worker_active(False)
        if requeued:
            logger.warning("Requeued %d job(s) left in processing", requeued)
        return requeued

    async def start_if_pending(self) -> bool:
        """Start the loop if anything is waiting in the queue."""
        if await self.job_store.next_pending() is None:
            return False
        return await self.ensure_running()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                delay = await self.tick()
            except Exception as e:
                logger.error("Worker tick failed: %s", e, exc_info=True)
                delay = self.rate_limit_backoff

            if delay is None:
                return

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> Optional[float]:
        """Process at most one job.

        Returns:
            Seconds to wait before the next tick, or None when the queue is
            empty and the worker has marked itself inactive.
        """
        now = self.clock()
        await self.rate_limit_service.mark_worker_run(now)
        await self._settle_outstanding()

        if not await self.rate_limit_service.reserve_slot(now):
            logger.info("Rate limited - will retry in %.0f seconds", self.rate_limit_backoff)
            return self.rate_limit_backoff

        job = await self.job_store.next_pending()
        if job is None:
            if await self.rate_limit_service.release_worker_if_idle():
                logger.info("Queue empty - worker stopping")
                return None
            logger.info("Job admitted while stopping - worker continuing")
            return self.tick_spacing

        logger.info("Processing job %s for @%s", job.id, job.username)
        await self.job_store.mark_processing(job.id, now)

        message_text, error = await self._attempt(job, now)
        outcome = AttemptOutcome(
            job_id=job.id,
            message_text=message_text,
            error=error,
            finished_at=self.clock() if error is None else now,
        )

        try:
            await self._record_outcome(outcome)
        except Exception as e:
            # The job stays claimed until the outcome is written on a later tick
            logger.error("Could not record outcome of job %s, will retry: %s", job.id, e, exc_info=True)
            self._unsettled[job.id] = outcome

        return self.tick_spacing

    async def _record_outcome(self, outcome: AttemptOutcome) -> None:
        if outcome.error is None:
            await self.job_store.mark_sent(outcome.job_id, outcome.message_text, outcome.finished_at)
            await self.rate_limit_service.record_send(outcome.finished_at, job_id=outcome.job_id)
            logger.info("Job %s sent successfully", outcome.job_id)
            return

        updated = await self.job_store.mark_failed(
            outcome.job_id, outcome.error, self.queue_config.max_attempts
        )
        if updated is not None and updated.status == DmJobStatus.FAILED:
            logger.warning(
                "Job %s failed permanently after %d attempts: %s",
                outcome.job_id,
                updated.attempt_count,
                outcome.error,
            )
        else:
            logger.info("Job %s failed, will retry: %s", outcome.job_id, outcome.error)

    async def _settle_outstanding(self) -> None:
        """Write outcomes that a previous tick could not record."""
        for job_id, outcome in list(self._unsettled.items()):
            await self._record_outcome(outcome)
            del self._unsettled[job_id]
            logger.info("Recorded delayed outcome of job %s", job_id)

    async def _attempt(self, job: DmJob, now: datetime) -> tuple[Optional[str], Optional[str]]:
        """Compose and deliver one job.

        Returns:
            (sent text, None) on success, (None, error message) on failure.
        """
        credentials = self.credentials_provider.get_credentials()
        if credentials is None:
            return None, "Not configured"

        expires_at = ensure_utc(credentials.expires_at)
        if expires_at is not None and expires_at <= now:
            return None, "Access token expired"

        try:
            composed = await self.composer.compose(job.section_id, job.max_items, job.include_link)
            message_text = truncate_message(
                composed.text,
                char_limit=self.queue_config.message_char_limit,
                truncate_at=self.queue_config.truncate_at,
            )
            result = await self.delivery_client.send(job.recipient_id, message_text, credentials)
        except Exception as e:
            logger.error("Error delivering job %s: %s", job.id, e, exc_info=True)
            return None, str(e) or e.__class__.__name__

        if not result.success:
            return None, result.error or "Unknown error"

        return message_text, None

    async def get_stats(self) -> QueueStats:
        """Counts, ledger usage and a rough time to drain the queue."""
        counts = await self.job_store.count_by_status()
        pending = counts[DmJobStatus.PENDING]
        estimated = (
            math.ceil(pending * self.queue_config.tick_spacing_ms / 60000) if pending > 0 else 0
        )

        return QueueStats(
            pending=pending,
            processing=counts[DmJobStatus.PROCESSING],
            sent=counts[DmJobStatus.SENT],
            failed=counts[DmJobStatus.FAILED],
            dms_sent_last_hour=await self.rate_limit_service.recent_send_count(self.clock()),
            worker_active=await self.rate_limit_service.is_worker_active(),
            estimated_minutes_to_clear=estimated,
        )
