"""Schemas shared across routers."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    settlement: str = "unknown"


class ErrorResponse(BaseModel):
    """Body rendered by ErrorHandlerMiddleware for every domain error."""

    error: str
    message: str
