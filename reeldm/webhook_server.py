"""FastAPI webhook server for Instagram webhooks and queue status."""

import hashlib
import hmac
import json
import logging
from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Config
from .orm.dm_job import DmJob, DmJobStatus
from .services.dispatch_worker import DispatchWorker
from .services.job_store import JobStore
from .services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify a Meta webhook signature using HMAC SHA-256.

    Args:
        payload: Raw request body bytes
        signature: X-Hub-Signature-256 header value (format: "sha256=...")
        secret: App secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature.startswith("sha256="):
        logger.warning("Invalid signature format (missing sha256= prefix)")
        return False

    received_signature = signature[7:]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256
    ).hexdigest()

    # Timing-safe comparison
    is_valid = hmac.compare_digest(expected_signature, received_signature)

    if not is_valid:
        logger.warning("Signature verification failed")

    return is_valid


def serialize_job(job: DmJob) -> dict[str, Any]:
    """JSON view of a job for the dashboard."""
    return {
        "job_id": job.id,
        "status": job.status.value,
        "recipient_id": job.recipient_id,
        "username": job.username,
        "reel_id": job.reel_id,
        "section_id": job.section_id,
        "trigger_type": job.trigger_type.value,
        "trigger_id": job.trigger_id,
        "attempt_count": job.attempt_count,
        "queued_at": job.created_at.isoformat() if job.created_at else None,
        "last_attempt_at": job.last_attempt_at.isoformat() if job.last_attempt_at else None,
        "sent_at": job.sent_at.isoformat() if job.sent_at else None,
        "error": job.error,
    }


def create_webhook_app(
    config: Config,
    webhook_handler: WebhookHandler,
    worker: DispatchWorker,
    job_store: JobStore,
) -> FastAPI:
    """Create and configure the FastAPI webhook application.

    Args:
        config: Application configuration
        webhook_handler: WebhookHandler instance
        worker: Dispatch worker, for stats and manual starts
        job_store: Job store, for job listings

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Reel DM Webhooks",
        description="Instagram webhook receiver and DM queue status",
        version="1.0.0"
    )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "reeldm-webhooks"
        }

    @app.get("/webhooks/instagram")
    async def verify_subscription(
        mode: Optional[str] = Query(default=None, alias="hub.mode"),
        token: Optional[str] = Query(default=None, alias="hub.verify_token"),
        challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    ) -> PlainTextResponse:
        """Answer Meta's subscription handshake by echoing the challenge."""
        logger.info("Webhook verification: mode=%s", mode)

        expected = config.webhook.verify_token.get_secret_value()
        if mode == "subscribe" and token is not None and hmac.compare_digest(token, expected):
            logger.info("Webhook verified successfully")
            return PlainTextResponse(challenge or "", status_code=200)

        logger.warning("Webhook verification failed")
        return PlainTextResponse("Forbidden", status_code=403)

    @app.post("/webhooks/instagram")
    async def instagram_webhook(
        request: Request,
        background_tasks: BackgroundTasks
    ) -> JSONResponse:
        """Handle incoming Instagram webhook events.

        Returns 200 as soon as the payload parses; events are processed in
        the background and their outcomes are never reported to the caller.
        """
        body = await request.body()

        if config.webhook.app_secret is not None:
            signature = request.headers.get("X-Hub-Signature-256", "")
            if not verify_signature(body, signature, config.webhook.app_secret.get_secret_value()):
                raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("Failed to parse webhook payload: %s", e)
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        if not isinstance(payload, dict) or not payload.get("entry"):
            return JSONResponse({"status": "no_entry"}, status_code=200)

        logger.info("Webhook event received with %d entr(y/ies)", len(payload["entry"]))
        background_tasks.add_task(webhook_handler.handle_payload, payload)

        return JSONResponse({"status": "success"}, status_code=200)

    @app.get("/queue/stats")
    async def queue_stats() -> dict[str, Any]:
        """Queue counts, hourly usage and worker liveness."""
        stats = await worker.get_stats()
        return stats.to_dict()

    @app.get("/queue/jobs")
    async def list_jobs(
        status: DmJobStatus = DmJobStatus.PENDING,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> dict[str, Any]:
        """Jobs with a given status, in queue order."""
        jobs = await job_store.list_by_status(status, limit=limit)
        return {"status": status.value, "jobs": [serialize_job(job) for job in jobs]}

    @app.post("/queue/start")
    async def start_worker() -> dict[str, Any]:
        """Manually kick the worker; a no-op if it is already running."""
        started = await worker.ensure_running()
        return {"message": "Worker started" if started else "Worker already running", "started": started}

    return app
