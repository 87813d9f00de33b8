"""Database infrastructure: engine, ORM models, and repositories."""

from deal_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from deal_escrow.infrastructure.database.orm_models import (
    Base,
    Deal,
    DealDocument,
    DealLog,
    DealParticipant,
    LogSyncJob,
    Milestone,
    User,
)
from deal_escrow.infrastructure.database.repositories import (
    DealLogRepository,
    DealRepository,
    LogSyncJobRepository,
    UserRepository,
)

__all__ = [
    "Base",
    "Deal",
    "DealDocument",
    "DealLog",
    "DealParticipant",
    "LogSyncJob",
    "Milestone",
    "User",
    "DealLogRepository",
    "DealRepository",
    "LogSyncJobRepository",
    "UserRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
