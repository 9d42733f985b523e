"""FastAPI application entrypoint.

Initializes observability, manages the shared outbound HTTP client,
includes routers, and exposes a healthcheck endpoint.
"""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import capi as capi_router
from .telemetry import init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    status = init_observability()
    logger.info(f"[STARTUP] Observability initialized: {status}")

    # One pooled client for every outbound CAPI call in this process.
    app.state.capi_http_client = httpx.AsyncClient(timeout=settings.CAPI_REQUEST_TIMEOUT_SECONDS)
    try:
        yield
    finally:
        await app.state.capi_http_client.aclose()
        logger.info("[SHUTDOWN] CAPI HTTP client closed")


def create_app() -> FastAPI:
    app = FastAPI(
        title="CAPI Outbox API",
        description="""
        Multi-tenant delivery of conversion events to the Meta Conversions API.

        This API provides endpoints for:
        - Triggering an outbox delivery pass (scheduler or operator)
        - Per-tenant delivery health
        - Payload dry-runs and re-queueing of failed events

        ## Authentication

        Scheduler calls send `X-Cron-Secret`; operators send an admin JWT as
        `Authorization: Bearer <token>`.
        """,
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(capi_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.
        Does not require authentication.
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
