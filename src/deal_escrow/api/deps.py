"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the authenticated user and the services. Long-lived collaborators (settlement
registry, notifier, finance client) are built once in the lifespan and kept
on ``app.state``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from deal_escrow.api.security import decode_access_token_subject
from deal_escrow.config import Settings, get_settings
from deal_escrow.domain.enums import UserRole
from deal_escrow.domain.exceptions import ForbiddenError, UnauthorizedError
from deal_escrow.infrastructure.database.engine import get_async_session
from deal_escrow.infrastructure.database.orm_models import User
from deal_escrow.infrastructure.database.repositories import UserRepository
from deal_escrow.services.deal_service import DealService
from deal_escrow.services.ledger_service import LedgerService
from deal_escrow.services.milestone_service import MilestoneService

bearer_scheme = HTTPBearer(auto_error=False)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_db_session),
) -> User:
    """Resolve the bearer token to a registered user."""
    if credentials is None:
        raise UnauthorizedError("Missing bearer token")
    user_id = decode_access_token_subject(credentials.credentials)
    if user_id is None:
        raise UnauthorizedError("Invalid or expired token")
    user = await UserRepository(session).get_by_id(user_id)
    if user is None:
        raise UnauthorizedError("Unknown user")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN.value:
        raise ForbiddenError("Admin role required")
    return user


def get_deal_service(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> DealService:
    state = request.app.state
    return DealService(
        session, state.registry, state.notifier, state.finance_app, settings=settings
    )


def get_milestone_service(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> MilestoneService:
    state = request.app.state
    return MilestoneService(
        session, state.registry, state.notifier, state.finance_app, settings=settings
    )


def get_ledger_service(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> LedgerService:
    return LedgerService(session, request.app.state.registry)
