"""ORM models for database persistence."""

from .base import Base, SqlalchemyBase
from .comment_log import CommentLog
from .content import Item, ReelMapping, Section
from .dm_job import ACTIVE_STATUSES, DmJob, DmJobStatus, TriggerType
from .rate_limit import DispatchState, DmSendEvent

__all__ = [
    "ACTIVE_STATUSES",
    "Base",
    "SqlalchemyBase",
    "CommentLog",
    "DispatchState",
    "DmJob",
    "DmJobStatus",
    "DmSendEvent",
    "Item",
    "ReelMapping",
    "Section",
    "TriggerType",
]
