"""FastAPI application entry point for the Deal Escrow service.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, the settlement registry
       and the background pollers (vault log sync, deposit bridge).
    2. Running: Serve the REST API on a single Uvicorn process.
    3. Shutdown: Stop the pollers, then close database and Redis connections.

Run with:
    uv run uvicorn deal_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from deal_escrow.config import get_settings
from deal_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from deal_escrow.config import Settings
    from deal_escrow.orchestration.pollers import SingleFlightPoller
    from deal_escrow.settlement import SettlementRegistry


def build_pollers(settings: Settings, registry: SettlementRegistry) -> list[SingleFlightPoller]:
    """Pollers for the live EVM chain; none when settlement is simulated."""
    from deal_escrow.infrastructure.database.engine import get_session_factory
    from deal_escrow.infrastructure.redis_client import get_redis, redis_available
    from deal_escrow.orchestration.pollers import SingleFlightPoller
    from deal_escrow.services.deposit_bridge import (
        DepositBridge,
        ProcessedEventWindow,
        RedisBackedEventWindow,
    )
    from deal_escrow.services.log_sync_service import LogSyncService

    chain = registry.evm_chain
    if not settings.pollers_enabled or chain is None:
        return []

    factory = get_session_factory()
    log_sync = LogSyncService(chain, factory, token_decimals=settings.investment_token_decimals)
    pollers = [SingleFlightPoller("log_sync", log_sync.run_once, settings.poll_interval_seconds)]

    if settings.use_xrpl and settings.investment_token_contract_address:
        window: ProcessedEventWindow
        if redis_available():
            window = RedisBackedEventWindow(
                get_redis(),
                capacity=settings.deposit_dedup_window,
                ttl_seconds=settings.redis_dedup_ttl_seconds,
            )
        else:
            window = ProcessedEventWindow(settings.deposit_dedup_window)
        bridge = DepositBridge.from_settings(settings, chain, factory, registry, window)
        pollers.append(
            SingleFlightPoller("deposit_bridge", bridge.run_once, settings.poll_interval_seconds)
        )
    return pollers


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
        use_xrpl=settings.use_xrpl,
        simulate=settings.settlement_simulate,
    )

    # 2. Initialize database
    from deal_escrow.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis (optional; the deposit bridge falls back to memory)
    from deal_escrow.infrastructure.redis_client import close_redis, init_redis

    await init_redis()

    # 4. Settlement and outbound integrations
    from deal_escrow.infrastructure.finance_app import FinanceAppClient
    from deal_escrow.services.notification_service import NotificationService
    from deal_escrow.settlement import SettlementRegistry

    registry = SettlementRegistry.from_settings(settings)
    app.state.registry = registry
    app.state.notifier = NotificationService.from_settings(settings)
    app.state.finance_app = (
        FinanceAppClient(settings.finance_app_url, settings.finance_app_api_key)
        if settings.finance_app_url
        else None
    )

    # 5. Background pollers
    pollers = build_pollers(settings, registry)
    for poller in pollers:
        poller.start()

    logger.info(
        "app.started",
        host=settings.app_host,
        port=settings.app_port,
        pollers=[p.name for p in pollers],
    )

    yield

    # Shutdown
    logger.info("app.shutting_down")
    for poller in pollers:
        await poller.stop()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Deal Escrow",
        description=(
            "Milestone-based trade finance deals between buyers and suppliers, "
            "settled through EVM vault contracts or XRP Ledger issued currency."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from deal_escrow.api.middleware import setup_middleware

    setup_middleware(app, settings)

    # --- REST API Routes ---
    from deal_escrow.api.routes.deals import router as deals_router
    from deal_escrow.api.routes.health import router as health_router
    from deal_escrow.api.routes.ledger import router as ledger_router
    from deal_escrow.api.routes.milestones import router as milestones_router

    app.include_router(health_router)
    app.include_router(deals_router)
    app.include_router(milestones_router)
    app.include_router(ledger_router)

    return app


# The app instance used by Uvicorn
app = create_app()
