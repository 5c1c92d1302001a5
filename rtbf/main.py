"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize request store and identity store engines
4. Build the forget service container and start its workers
5. Include all routers

Shutdown order:
1. Drain the work queue, close shard connections and the cache
2. Close DB connection pools
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rtbf.api.forget import status_for
from rtbf.api.router import api_v1_router, public_router
from rtbf.config import get_settings
from rtbf.database import close_db, get_identity_engine, get_session_factory, init_db
from rtbf.errors import ForgetError
from rtbf.telemetry.logging import configure_logging
from rtbf.wiring import build_container

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
        shards=sorted(settings.shard_database_urls),
    )

    init_db(settings)
    container = build_container(settings, get_session_factory(), get_identity_engine())
    await container.start()
    app.state.forget = container

    log.info("app.ready")
    yield

    await container.stop()
    await close_db()
    log.info("app.shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="Right To Be Forgotten",
        description="Anonymises a user account across every wiki shard.",
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    app.include_router(public_router)
    app.include_router(api_v1_router)

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(ForgetError)
    async def forget_error_handler(request: Request, exc: ForgetError) -> JSONResponse:
        status_code = status_for(exc)
        log.info(
            "app.forget_error",
            path=request.url.path,
            code=exc.code,
            status_code=status_code,
        )
        return JSONResponse(
            status_code=status_code,
            content={"code": exc.code, "detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
