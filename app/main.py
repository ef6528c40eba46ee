"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.api.router import api_router
from app.engine.errors import EngineError, PersistenceFailure, ReceiptAlreadyConfirmed, RecordNotFound
from app.models.database import close_db
from app.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup
    setup_logging()
    logger.info("app_starting", version=settings.APP_VERSION)

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    yield

    # Shutdown
    await close_db()


def _error_body(e: EngineError) -> dict:
    return {"error_code": e.error_code, "detail": e.message}


async def record_not_found_handler(request: Request, exc: RecordNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_body(exc))


async def persistence_failure_handler(request: Request, exc: PersistenceFailure) -> JSONResponse:
    logger.error("persistence_failure", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=_error_body(exc))


async def already_confirmed_handler(request: Request, exc: ReceiptAlreadyConfirmed) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_body(exc))


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    logger.warning("engine_error", path=request.url.path, error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_body(exc))


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Expense Reconciliation Engine",
        description="Receipt matching, duplicate detection, fraud screening and advanced matching for expenses.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Engine errors
    app.add_exception_handler(RecordNotFound, record_not_found_handler)
    app.add_exception_handler(PersistenceFailure, persistence_failure_handler)
    app.add_exception_handler(ReceiptAlreadyConfirmed, already_confirmed_handler)
    app.add_exception_handler(EngineError, engine_error_handler)

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    # Include all API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
