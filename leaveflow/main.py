"""Leaveflow — FastAPI Application Factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from leaveflow.common.exceptions import register_exception_handlers
from leaveflow.common.rate_limit import limiter
from leaveflow.config import settings
from leaveflow.database import engine
from leaveflow.leave.router import router as leave_router

logger = logging.getLogger("leaveflow")

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    logger.setLevel(settings.LOG_LEVEL.upper())
    logger.info("Leaveflow starting (%s, policy %s)", settings.ENVIRONMENT, settings.POLICY_VERSION)
    yield
    await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Leaveflow",
        description="Leave-request lifecycle and approval-workflow engine",
        version=VERSION,
        docs_url="/api/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url="/api/redoc" if settings.ENVIRONMENT != "production" else None,
        lifespan=lifespan,
    )

    # Exception handlers (RFC 7807)
    register_exception_handlers(app)

    # Rate limiting (slowapi)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check (no auth)
    @app.get("/api/v1/health", tags=["system"])
    async def health_check():
        return {
            "status": "healthy",
            "version": VERSION,
            "environment": settings.ENVIRONMENT,
            "policy_version": settings.POLICY_VERSION,
        }

    app.include_router(leave_router, prefix="/api/v1/leaves", tags=["leave"])

    return app


app = create_app()
