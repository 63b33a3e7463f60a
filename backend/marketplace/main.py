# backend/marketplace/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import DomainException
from .core.logging_config import setup_logging
from .monitoring.prometheus_metrics import prometheus_metrics
from .routes import bookings, internal, payments, webhooks, withdrawals

logger = logging.getLogger(__name__)

API_TITLE = "Marketplace Settlement API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: logging on startup, log line on shutdown."""
    setup_logging()
    logger.info(
        "%s starting (environment=%s, fake_gateway=%s)",
        API_TITLE,
        settings.environment,
        settings.use_fake_gateway,
    )
    yield
    logger.info("%s shutting down...", API_TITLE)


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        # Fallback for domain errors raised outside the route try/except blocks
        logger.warning("Unhandled domain error on %s: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": {"message": exc.message, "code": exc.code, "details": exc.details}
            },
        )

    api = APIRouter(prefix="/api")
    api.include_router(bookings.router, prefix="/bookings")
    api.include_router(payments.router, prefix="/payments")
    api.include_router(withdrawals.router, prefix="/withdrawals")
    api.include_router(webhooks.router, prefix="/webhooks")
    api.include_router(internal.router, prefix="/internal")
    app.include_router(api)

    @app.get("/health", include_in_schema=False)
    def health() -> dict[str, str]:
        return {"status": "healthy", "environment": settings.environment}

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.get_content_type(),
        )

    return app


app = create_app()
