"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, lifespan
events for database initialization and service wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.dealflow.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealflow.api.v1.router import router as v1_router
from src.dealflow.config import Settings, get_settings
from src.dealflow.core.database import close_db, get_session, init_db
from src.dealflow.core.locks import KeyedLocks
from src.dealflow.core.monitoring import MetricsMiddleware, get_metrics_response
from src.dealflow.gate.bulk import BulkOperationExecutor
from src.dealflow.gate.deal_client import DealCreationClient, build_deal_client
from src.dealflow.gate.funnel import FunnelAggregator
from src.dealflow.gate.ledger import ResponseLedger
from src.dealflow.gate.progression import DealProgressionController
from src.dealflow.gate.registry import DistributionRegistry
from src.dealflow.gate.repository import GateRepository, SqlGateRepository


def attach_services(
    state: Any,
    repository: GateRepository,
    deal_client: DealCreationClient,
    settings: Settings,
) -> None:
    """Build the gating services over one repository and store them on ``state``.

    All services share one lock registry so ledger, registry and progression
    serialize on the same keys.
    """
    ledger = ResponseLedger(repository, KeyedLocks())
    funnel = FunnelAggregator(repository, ledger)

    state.repository = repository
    state.ledger = ledger
    state.registry = DistributionRegistry(repository, ledger)
    state.funnel = funnel
    state.bulk_executor = BulkOperationExecutor(
        ledger,
        max_concurrency=settings.BULK_MAX_CONCURRENCY,
        default_decline_reason=settings.BULK_DEFAULT_DECLINE_REASON,
    )
    state.progression = DealProgressionController(repository, ledger, funnel, deal_client)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    deal_client = build_deal_client(settings)
    attach_services(app.state, SqlGateRepository(session_factory=get_session), deal_client, settings)
    log.info(
        "app.services_initialized",
        environment=settings.ENVIRONMENT.value,
        deal_client=type(deal_client).__name__,
        bulk_max_concurrency=settings.BULK_MAX_CONCURRENCY,
    )

    yield

    await app.state.bulk_executor.shutdown()
    await close_db()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Dealflow Gate API",
        version="0.1.0",
        description="Deal distribution and buyer access gating engine",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
