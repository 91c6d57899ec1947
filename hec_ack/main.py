"""
FastAPI application entry point — an HTTP relay in front of one
acknowledging HEC client.

Run with:
    uvicorn hec_ack.main:app --port 8000

Or:
    hec-ack serve --port 8000
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from hec_ack.core.config import Settings, settings
from hec_ack.core.errors import ConfigurationError, register_error_handlers
from hec_ack.core.health import HealthStatus, run_health_check
from hec_ack.core.logging_config import get_logger, setup_logging
from hec_ack.core.middleware import RequestLoggingMiddleware
from hec_ack.delivery.client import AckingClient

# ── API routers ──
from hec_ack.api.v1.delivery import router as delivery_router

logger = get_logger(__name__)


def create_app(
    config: Optional[Settings] = None, client: Optional[AckingClient] = None
) -> FastAPI:
    """
    Build the relay application.

    `client` is used as-is when given (tests); otherwise one is created
    from `config` at startup and shut down (with a final ack poll) on exit.
    """
    config = config or settings

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s] → %s",
            config.APP_NAME, config.APP_VERSION, config.ENVIRONMENT, config.base_url,
        )
        app.state.client = client
        if app.state.client is None:
            try:
                app.state.client = AckingClient(config)
            except ConfigurationError as exc:
                logger.error("Relay started without a client: %s", exc.message)
        if app.state.client is not None:
            app.state.client.start()
        yield
        if app.state.client is not None:
            report = await app.state.client.shutdown()
            logger.info(
                "Shutting down %s (%d unconfirmed)", config.APP_NAME, len(report.unconfirmed)
            )

    app = FastAPI(
        title=config.APP_NAME,
        description=(
            "Reliable HTTP Event Collector ingestion with indexer acknowledgment. "
            "Events are sent on a dedicated channel, their ackIds polled until "
            "the indexer confirms durability, and resent when confirmation "
            "times out or the channel is lost."
        ),
        version=config.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.client = client

    # ── Middleware ──
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app, config)

    # ── Routers ──
    app.include_router(delivery_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": config.APP_NAME,
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
            "hec_url": config.base_url,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — configuration, client state, capacity."""
        report = await run_health_check(app.state.client, config)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we accept events?"""
        report = await run_health_check(app.state.client, config)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


# ── Initialise logging ──
setup_logging()

app = create_app()
