"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.services import AlertServices, build_services

# ── API routers ──
from backend.app.api.v1.alerts import admin_router, me_router, router as alert_router

# ── Initialise logging ──
setup_logging()
logger = logging.getLogger(__name__)


def create_app(services: Optional[AlertServices] = None) -> FastAPI:
    """
    Build the application.

    ``services`` lets tests inject pre-wired components; otherwise they
    are built from settings when the lifespan starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown events."""
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        active = services or build_services(settings)
        await active.start()
        app.state.services = active
        yield
        logger.info("Shutting down %s", settings.APP_NAME)
        await active.close()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Citizen flood reporting for Rio Branco: submit geolocated "
            "reports with photo evidence, manage them with a reporter "
            "token, and follow a live list of active alerts that expire "
            "after 24 hours."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(me_router)
    app.include_router(admin_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks store, feed and sync."""
        active: AlertServices = app.state.services
        report = await run_health_check(active.store, active.feed, active.broadcaster)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        active: AlertServices = app.state.services
        report = await run_health_check(active.store, active.feed)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
