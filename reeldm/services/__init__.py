"""Service layer for business logic and database operations."""

from .database import DatabaseService, init_db_service
from .delivery_client import (
    ConfigCredentialsProvider,
    DeliveryResult,
    InstagramCredentials,
    InstagramDeliveryClient,
)
from .dispatch_worker import DispatchWorker, QueueStats
from .intake import DmTrigger, IntakeGate
from .job_store import JobStore
from .message_composer import ComposedMessage, SectionMessageComposer, SectionNotFoundError
from .rate_limit_service import RateLimitService
from .webhook_handler import WebhookHandler

__all__ = [
    "ComposedMessage",
    "ConfigCredentialsProvider",
    "DatabaseService",
    "DeliveryResult",
    "DispatchWorker",
    "DmTrigger",
    "InstagramCredentials",
    "InstagramDeliveryClient",
    "IntakeGate",
    "JobStore",
    "QueueStats",
    "RateLimitService",
    "SectionMessageComposer",
    "SectionNotFoundError",
    "WebhookHandler",
    "init_db_service",
]
