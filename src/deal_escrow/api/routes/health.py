"""Health check endpoint.

Reports database and Redis connectivity plus the settlement mode the process
runs in. Redis is optional, so ``"disabled"`` does not degrade the status.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from deal_escrow.infrastructure.database.engine import ping_database
from deal_escrow.infrastructure.redis_client import ping_redis
from deal_escrow.schemas.common import HealthResponse

router = APIRouter(tags=["Health"])

VERSION = "0.1.0"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(request: Request) -> HealthResponse:
    database = await ping_database()
    redis = await ping_redis()

    registry = getattr(request.app.state, "registry", None)
    settlement = str(registry.default_kind) if registry is not None else "not-configured"

    healthy = database == "healthy" and not redis.startswith("unhealthy")
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=VERSION,
        database=database,
        redis=redis,
        settlement=settlement,
    )
